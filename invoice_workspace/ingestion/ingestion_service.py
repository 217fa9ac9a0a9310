"""Batched ingestion of tabular invoice files into the record store"""

import asyncio
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import logging

from .file_handler import FileHandler, source_file_path
from .row_validator import validate_row
from .tabular_parser import detect_file_type, parse
from invoice_workspace.config import settings
from invoice_workspace.exceptions import (
    FileTooLargeError,
    ParseError,
    RemoteWriteError,
    UnsupportedFileTypeError,
)
from invoice_workspace.models.invoice import FileType, JobStatus, UploadJob, ValidatedInvoice
from invoice_workspace.models.results import FileUploadResult, IngestionResult
from invoice_workspace.services.events import EventBus, WorkspaceEvent
from invoice_workspace.services.progress_tracker import ProcessingStep, ProgressTracker, progress_tracker
from invoice_workspace.services.record_store import RecordStore
from invoice_workspace.utils import summarize_row_errors

logger = logging.getLogger(__name__)

# Upload transfer occupies the first 10% of the overall progress
UPLOAD_PROGRESS_SHARE = 10
JOB_CREATED_PROGRESS = 20
VALIDATED_PROGRESS = 40
PERSISTENCE_PROGRESS_SHARE = 50


class IngestionService:
    """Service for ingesting CSV/XLSX invoice files"""

    def __init__(
        self,
        store: RecordStore,
        file_handler: Optional[FileHandler] = None,
        identity_id: Optional[str] = None,
        events: Optional[EventBus] = None,
        progress: Optional[ProgressTracker] = None,
        batch_size: Optional[int] = None,
        persist_invalid_rows: Optional[bool] = None
    ):
        """
        Initialize ingestion service

        Args:
            store: RecordStore for the current identity
            file_handler: FileHandler instance
            identity_id: Authenticated identity used for storage paths
            events: EventBus notified when the uploaded files change
            progress: ProgressTracker instance (defaults to the shared tracker)
            batch_size: Rows written concurrently per batch
            persist_invalid_rows: Whether invalid rows are stored with their errors
        """
        self.store = store
        self.file_handler = file_handler or FileHandler()
        self.identity_id = identity_id
        self.events = events or EventBus()
        self.progress = progress or progress_tracker
        self.batch_size = max(1, batch_size or settings.INGESTION_BATCH_SIZE)
        self.persist_invalid_rows = (
            settings.PERSIST_INVALID_ROWS if persist_invalid_rows is None else persist_invalid_rows
        )

    async def upload_files(self, files: Sequence[Tuple[str, bytes]]) -> List[FileUploadResult]:
        """
        Upload and ingest several files one after another

        The whole selection is rejected if any file has an unsupported
        type. Otherwise a failing file is reported in its own entry and
        the remaining files are still processed.

        Args:
            files: (file_name, content) pairs

        Returns:
            One FileUploadResult per file, in input order
        """
        unsupported = []
        for file_name, _ in files:
            try:
                detect_file_type(file_name)
            except UnsupportedFileTypeError:
                unsupported.append(file_name)
        if unsupported:
            raise UnsupportedFileTypeError(
                f"Please select only CSV or Excel (.xlsx) files. Unsupported: {', '.join(unsupported)}"
            )

        results = []
        for file_name, content in files:
            try:
                ingestion = await self.upload_and_ingest(content, file_name)
                results.append(FileUploadResult(file_name=file_name, ingestion=ingestion))
            except Exception as e:
                logger.error(f"Error processing {file_name}: {e}", exc_info=True)
                results.append(FileUploadResult(file_name=file_name, error=str(e)))

        succeeded = sum(1 for result in results if result.ingestion is not None)
        logger.info(f"Processed {succeeded}/{len(results)} uploaded files")
        return results

    async def upload_and_ingest(self, content: bytes, file_name: str) -> IngestionResult:
        """
        Store the source file, then ingest it

        Args:
            content: File content as bytes
            file_name: Original file name

        Returns:
            IngestionResult of the stored file
        """
        file_type = detect_file_type(file_name)

        max_size = settings.MAX_FILE_SIZE_MB * 1024 * 1024
        if len(content) > max_size:
            raise FileTooLargeError(
                f"{file_name} exceeds maximum file size of {settings.MAX_FILE_SIZE_MB}MB"
            )

        path = source_file_path(self.identity_id, file_name)
        await self.progress.start(path, ProcessingStep.UPLOAD, f"Uploading {file_name}")

        async def on_progress(transferred: int, total: Optional[int]) -> None:
            percentage = 100 if not total else transferred * 100 / total
            await self.progress.update(
                path,
                percentage * UPLOAD_PROGRESS_SHARE / 100,
                step_progress=percentage
            )

        try:
            await self.file_handler.upload(path, content, on_progress=on_progress)
        except Exception as e:
            await self.progress.error(path, f"Upload failed: {e}", ProcessingStep.UPLOAD)
            raise RemoteWriteError(f"Failed to upload {file_name}: {e}", operation="upload") from e

        await self.progress.complete_step(path, ProcessingStep.UPLOAD, f"Uploaded {file_name}")
        await self.events.emit(WorkspaceEvent.UPLOADED_FILES_CHANGED, path=path)

        return await self.ingest(content, file_name, source_path=path, file_type=file_type)

    async def ingest(
        self,
        content: bytes,
        file_name: str,
        source_path: str,
        file_type: Optional[Union[FileType, str]] = None
    ) -> IngestionResult:
        """
        Create an upload job and persist every row of a file in batches

        Args:
            content: File content as bytes
            file_name: Original file name
            source_path: Storage path of the stored source file
            file_type: Declared file type (detected from the name when omitted)

        Returns:
            IngestionResult with the final job counters

        Raises:
            RemoteWriteError: If the upload job cannot be created
            ParseError: If the content cannot be read as the declared type
        """
        file_type = FileType(file_type) if file_type else detect_file_type(file_name)
        progress_id = source_path
        await self.progress.start(progress_id, ProcessingStep.PARSING, f"Processing {file_name}")

        # Step 1: Create the job
        created = await self.store.upload_jobs.create({
            "file_name": file_name,
            "file_type": file_type,
            "status": JobStatus.PROCESSING,
            "source_path": source_path,
            "total_rows": 0,
            "successful_rows": 0,
            "failed_rows": 0,
            "started_at": datetime.now(timezone.utc),
        })
        if not created.ok:
            await self.progress.error(progress_id, "Failed to create upload job", ProcessingStep.PARSING)
            raise RemoteWriteError(
                f"Failed to create upload job: {created.first_error}",
                operation="create_upload_job",
                errors=created.errors
            )
        job: UploadJob = created.data
        logger.info(f"Created upload job {job.id} for {file_name}")
        await self.progress.update(progress_id, JOB_CREATED_PROGRESS, "Upload job created")

        # Step 2: Parse and validate everything before any row is written
        try:
            raw_rows = parse(content, file_type)
            validated = [validate_row(raw_row, index + 2) for index, raw_row in enumerate(raw_rows)]
        except ParseError as e:
            logger.error(f"Failed to parse {file_name}: {e}")
            await self._mark_failed(job.id, str(e))
            await self.progress.error(progress_id, str(e), ProcessingStep.PARSING)
            raise
        except Exception as e:
            logger.error(f"Unexpected error reading {file_name}: {e}", exc_info=True)
            await self._mark_failed(job.id, str(e))
            await self.progress.error(progress_id, str(e), ProcessingStep.PARSING)
            raise

        valid_count = sum(1 for row in validated if row.is_valid)
        logger.info(f"Validated {len(validated)} rows of {file_name}: {valid_count} valid")
        await self.progress.complete_step(progress_id, ProcessingStep.PARSING)
        await self.progress.update(
            progress_id,
            VALIDATED_PROGRESS,
            f"Validated {len(validated)} rows",
            step=ProcessingStep.PERSISTENCE
        )

        # Step 3: Persist rows in sequential batches
        try:
            successful, failed, row_errors = await self._persist_rows(job.id, validated, progress_id)
        except Exception as e:
            logger.error(f"Ingestion of {file_name} aborted: {e}", exc_info=True)
            await self._mark_failed(job.id, str(e))
            await self.progress.error(progress_id, str(e), ProcessingStep.PERSISTENCE)
            raise

        # Step 4: Finalize the job
        total = len(validated)
        status = JobStatus.FAILED if successful == 0 and total > 0 else JobStatus.COMPLETED
        error_summary = summarize_row_errors(row_errors, limit=settings.ERROR_SAMPLE_SIZE)

        job_update_failed = False
        try:
            updated = await self.store.upload_jobs.update({
                "id": job.id,
                "status": status,
                "total_rows": total,
                "successful_rows": successful,
                "failed_rows": failed,
                "error_summary": error_summary,
                "processing_errors": row_errors[:settings.MAX_STORED_ROW_ERRORS],
                "completed_at": datetime.now(timezone.utc),
            })
        except Exception as e:
            # Rows are already written; the job keeps its last known state
            logger.error(f"Failed to finalize upload job {job.id}: {e}", exc_info=True)
            job_update_failed = True
        else:
            if not updated.ok:
                logger.error(f"Failed to finalize upload job {job.id}: {updated.first_error}")
                job_update_failed = True

        logger.info(
            f"Ingestion of {file_name} finished with {status.value}: "
            f"{successful}/{total} rows succeeded, {failed} failed"
        )
        await self.progress.complete(progress_id, f"Processed {successful}/{total} rows")

        return IngestionResult(
            job_id=job.id,
            file_name=file_name,
            source_path=source_path,
            status=status,
            total_rows=total,
            successful_rows=successful,
            failed_rows=failed,
            error_summary=error_summary,
            row_errors=row_errors,
            job_update_failed=job_update_failed,
        )

    async def _persist_rows(
        self,
        job_id: str,
        rows: List[ValidatedInvoice],
        progress_id: str
    ) -> Tuple[int, int, List[Dict[str, Any]]]:
        """Write rows batch by batch; returns (successful, failed, row_errors)"""
        upload_date = datetime.now(timezone.utc).date()
        batches = [rows[start:start + self.batch_size] for start in range(0, len(rows), self.batch_size)]
        successful = 0
        failed = 0
        row_errors: List[Dict[str, Any]] = []

        for number, batch in enumerate(batches, start=1):
            results = await asyncio.gather(
                *(self._persist_row(job_id, row, upload_date) for row in batch),
                return_exceptions=True
            )

            for row, result in zip(batch, results):
                errors = [] if row.is_valid else list(row.validation_errors)
                if isinstance(result, Exception):
                    logger.error(f"Failed to save row {row.row_number} of job {job_id}: {result}")
                    errors.append(str(result))

                if errors:
                    failed += 1
                    row_errors.append({
                        "row": row.row_number,
                        "invoice_id": row.invoice_id or None,
                        "errors": errors,
                    })
                else:
                    successful += 1

            logger.info(
                f"Batch {number}/{len(batches)} of job {job_id} done: "
                f"{successful} succeeded, {failed} failed so far"
            )
            await self._record_batch_counts(job_id, len(rows), successful, failed)
            await self.progress.update(
                progress_id,
                VALIDATED_PROGRESS + PERSISTENCE_PROGRESS_SHARE * number / len(batches),
                f"Saved batch {number} of {len(batches)}",
                step_progress=100 * number / len(batches)
            )

        return successful, failed, row_errors

    async def _persist_row(self, job_id: str, row: ValidatedInvoice, upload_date: date) -> None:
        """Create the Invoice record of one row; raises RemoteWriteError if rejected"""
        if not row.is_valid and not self.persist_invalid_rows:
            return

        result = await self.store.invoices.create(row.to_record_fields(job_id, upload_date))
        if not result.ok:
            raise RemoteWriteError(
                f"Failed to save invoice: {result.first_error}",
                operation="create_invoice",
                errors=result.errors
            )

    async def _record_batch_counts(self, job_id: str, total: int, successful: int, failed: int) -> None:
        """Best-effort incremental counter update while the job is processing"""
        try:
            result = await self.store.upload_jobs.update({
                "id": job_id,
                "total_rows": total,
                "successful_rows": successful,
                "failed_rows": failed,
            })
        except Exception as e:
            logger.warning(f"Could not record progress on job {job_id}: {e}")
            return
        if not result.ok:
            logger.warning(f"Could not record progress on job {job_id}: {result.first_error}")

    async def _mark_failed(self, job_id: str, message: str) -> None:
        """Best-effort transition of a job to FAILED; never raises"""
        try:
            result = await self.store.upload_jobs.update({
                "id": job_id,
                "status": JobStatus.FAILED,
                "error_summary": message,
                "completed_at": datetime.now(timezone.utc),
            })
            if not result.ok:
                logger.error(f"Failed to mark job {job_id} as FAILED: {result.first_error}")
        except Exception as e:
            logger.error(f"Failed to mark job {job_id} as FAILED: {e}", exc_info=True)
