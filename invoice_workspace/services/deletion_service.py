"""Cascade deletion of uploaded source files and their derived records"""

import asyncio
from typing import List, Optional
import logging

from invoice_workspace.exceptions import OrphanRiskError, RemoteWriteError
from invoice_workspace.ingestion.file_handler import FileHandler
from invoice_workspace.models.invoice import Invoice, UploadJob
from invoice_workspace.models.results import DeletionResult, HistoryClearResult
from invoice_workspace.services.events import EventBus, WorkspaceEvent
from invoice_workspace.services.record_store import RecordStore

logger = logging.getLogger(__name__)


class DeletionCoordinator:
    """
    Deletes a source file together with every job and invoice derived from it

    Each step is a precondition for the next: invoices, then their job,
    then the stored file. A failure stops the cascade so no Invoice
    outlives its job and no job outlives its file.
    """

    def __init__(
        self,
        store: RecordStore,
        file_handler: Optional[FileHandler] = None,
        events: Optional[EventBus] = None
    ):
        self.store = store
        self.file_handler = file_handler or FileHandler()
        self.events = events or EventBus()

    async def delete_file(self, source_path: str) -> DeletionResult:
        """
        Delete a stored source file and all records derived from it

        Args:
            source_path: Storage path of the uploaded file

        Returns:
            DeletionResult with the removed job ids and invoice count

        Raises:
            RemoteWriteError: If a lookup or delete is rejected
            OrphanRiskError: If some invoices of a job could not be deleted
        """
        logger.info(f"Starting file deletion for {source_path}")
        result = DeletionResult(source_path=source_path)

        # Step 1: Find the jobs created from this file
        jobs_result = await self.store.upload_jobs.list({"source_path": source_path})
        if not jobs_result.ok:
            logger.error(f"Error finding jobs for {source_path}: {jobs_result.errors}")
            raise RemoteWriteError(
                "Failed to find associated processing job",
                operation="list_upload_jobs",
                errors=jobs_result.errors
            )
        jobs: List[UploadJob] = jobs_result.data
        logger.info(f"Found {len(jobs)} job(s) for {source_path}")

        for job in jobs:
            # Step 2: Find the job's invoices
            invoices_result = await self.store.invoices.list({"upload_job_id": job.id})
            if not invoices_result.ok:
                logger.error(f"Error finding invoices of job {job.id}: {invoices_result.errors}")
                raise RemoteWriteError(
                    "Failed to find associated invoices",
                    operation="list_invoices",
                    errors=invoices_result.errors
                )

            # Step 3: Delete them all before touching the job
            result.deleted_invoices += await self._delete_invoices(job, invoices_result.data)

            # Step 4: Delete the job
            job_delete = await self.store.upload_jobs.delete(job.id)
            if not job_delete.ok:
                logger.error(f"Failed to delete job {job.id}: {job_delete.errors}")
                raise RemoteWriteError(
                    f"Failed to delete processing job: {job_delete.first_error}",
                    operation="delete_upload_job",
                    errors=job_delete.errors
                )
            result.deleted_jobs.append(job.id)
            logger.info(f"Deleted job {job.id} ({job.file_name})")

        # Step 5: Delete the stored file
        try:
            await self.file_handler.delete(source_path)
        except Exception as e:
            logger.error(f"Failed to delete {source_path} from storage: {e}", exc_info=True)
            raise RemoteWriteError(
                f"Failed to delete file from storage: {e}",
                operation="delete_file"
            ) from e

        # Step 6: Refresh dependent views
        await self.events.emit(WorkspaceEvent.UPLOADED_FILES_CHANGED, path=source_path)
        await self.events.emit(WorkspaceEvent.INVOICES_REFRESH_REQUESTED)

        logger.info(
            f"Deleted {source_path} with {len(result.deleted_jobs)} job(s) "
            f"and {result.deleted_invoices} invoice(s)"
        )
        return result

    async def _delete_invoices(self, job: UploadJob, invoices: List[Invoice]) -> int:
        """Delete invoices concurrently; raises OrphanRiskError unless all are gone"""
        if not invoices:
            return 0

        results = await asyncio.gather(
            *(self.store.invoices.delete(invoice.id) for invoice in invoices),
            return_exceptions=True
        )

        errors = []
        for invoice, outcome in zip(invoices, results):
            if isinstance(outcome, Exception):
                errors.append(f"Failed to delete invoice {invoice.id}: {outcome}")
            elif not outcome.ok:
                errors.append(f"Failed to delete invoice {invoice.id}: {outcome.first_error}")

        logger.info(
            f"Invoice deletion for job {job.id}: "
            f"{len(invoices) - len(errors)} deleted, {len(errors)} failed"
        )
        if errors:
            for error in errors:
                logger.error(error)
            raise OrphanRiskError(len(errors), len(invoices), errors=errors)
        return len(invoices)

    async def clear_processing_history(
        self,
        jobs: Optional[List[UploadJob]] = None,
        invoices: Optional[List[Invoice]] = None
    ) -> HistoryClearResult:
        """
        Delete finished upload jobs that no longer own any invoices

        Args:
            jobs: Jobs to consider (defaults to every job in the store)
            invoices: Current invoices (defaults to every invoice in the store)

        Returns:
            HistoryClearResult; jobs still processing or still owning
            invoices are counted as skipped
        """
        if jobs is None:
            jobs = await self._list_all(self.store.upload_jobs, "list_upload_jobs")
        if invoices is None:
            invoices = await self._list_all(self.store.invoices, "list_invoices")

        owning = {invoice.upload_job_id for invoice in invoices}
        removable = [job for job in jobs if job.status.is_terminal and job.id not in owning]
        result = HistoryClearResult(skipped=len(jobs) - len(removable))

        outcomes = await asyncio.gather(
            *(self.store.upload_jobs.delete(job.id) for job in removable),
            return_exceptions=True
        )
        for job, outcome in zip(removable, outcomes):
            if isinstance(outcome, Exception):
                error = f"Failed to delete job {job.id}: {outcome}"
            elif not outcome.ok:
                error = f"Failed to delete job {job.id}: {outcome.first_error}"
            else:
                result.deleted += 1
                continue
            logger.error(error)
            result.failed += 1
            result.errors.append(error)

        logger.info(
            f"Processing history cleanup completed: {result.deleted} deleted, "
            f"{result.failed} failed, {result.skipped} kept"
        )
        return result

    async def _list_all(self, collection, operation: str) -> list:
        listed = await collection.list()
        if not listed.ok:
            raise RemoteWriteError(
                f"Failed to load records: {listed.first_error}",
                operation=operation,
                errors=listed.errors
            )
        return listed.data
