"""Submission of workspace invoices to permanent storage"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4
import logging

from invoice_workspace.config import settings
from invoice_workspace.models.invoice import Invoice
from invoice_workspace.models.results import SubmissionResult
from invoice_workspace.services.events import EventBus, WorkspaceEvent
from invoice_workspace.services.progress_tracker import ProcessingStep, ProgressTracker, progress_tracker
from invoice_workspace.services.record_store import RecordStore
from invoice_workspace.utils import error_sample

logger = logging.getLogger(__name__)

COPY_PROGRESS_SHARE = 40
DELETE_PROGRESS_SHARE = 40
REFRESH_PROGRESS = 85
CLEARED_PROGRESS = 90


def submitted_fields(invoice: Invoice, submitted_at: datetime, submitted_by: Optional[str]) -> Dict[str, Any]:
    """Fields of the SubmittedInvoice copy of a workspace invoice"""
    return {
        "invoice_id": invoice.invoice_id,
        "seller_id": invoice.seller_id,
        "debtor_id": invoice.debtor_id,
        "currency": invoice.currency,
        "amount": invoice.amount,
        "product": invoice.product,
        "issue_date": invoice.issue_date,
        "due_date": invoice.due_date,
        "upload_date": invoice.upload_date,
        "submitted_date": submitted_at.date(),
        "submitted_at": submitted_at,
        "original_upload_job_id": invoice.upload_job_id,
        "original_invoice_id": invoice.id,
        "submitted_by": submitted_by,
        # PDF objects stay where they are; both records share the path
        "pdf_path": invoice.pdf_path,
        "pdf_file_name": invoice.pdf_file_name,
        "pdf_attached_at": invoice.pdf_attached_at,
    }


class SubmissionService:
    """
    Moves valid, PDF-backed invoices into the SubmittedInvoice collection

    Copies run sequentially with independent error handling per invoice.
    Only invoices whose copy succeeded are deleted from the workspace,
    tracked by record id. Object storage is never touched.
    """

    def __init__(
        self,
        store: RecordStore,
        events: Optional[EventBus] = None,
        progress: Optional[ProgressTracker] = None,
        submitted_by: Optional[str] = None
    ):
        self.store = store
        self.events = events or EventBus()
        self.progress = progress or progress_tracker
        self.submitted_by = submitted_by

    async def submit(self, invoices: List[Invoice], operation_id: Optional[str] = None) -> SubmissionResult:
        """
        Submit invoices and clear them from the workspace

        The caller is responsible for only offering valid invoices that
        all carry a PDF; this is not re-checked here.

        Args:
            invoices: Workspace invoices to submit
            operation_id: Progress key (generated when omitted)

        Returns:
            SubmissionResult with copy and delete counters
        """
        operation_id = operation_id or f"submission-{uuid4()}"
        result = SubmissionResult(total=len(invoices))
        submitted_at = datetime.now(timezone.utc)

        logger.info(f"Starting submission of {len(invoices)} invoices ({operation_id})")
        await self.progress.start(
            operation_id,
            ProcessingStep.SUBMISSION,
            f"Copying {len(invoices)} invoices to permanent storage"
        )

        # Step 1: Copy each invoice
        copied: List[Invoice] = []
        for index, invoice in enumerate(invoices, start=1):
            try:
                created = await self.store.submitted_invoices.create(
                    submitted_fields(invoice, submitted_at, self.submitted_by)
                )
                if created.ok:
                    copied.append(invoice)
                    result.submitted_ids.append(created.data.id)
                else:
                    result.errors.append(f"Failed to submit invoice {invoice.invoice_id}: {created.first_error}")
            except Exception as e:
                logger.error(f"Exception copying invoice {invoice.invoice_id}: {e}", exc_info=True)
                result.errors.append(f"Failed to submit invoice {invoice.invoice_id}: {e}")

            await self.progress.update(operation_id, COPY_PROGRESS_SHARE * index / len(invoices))

        result.submitted = len(copied)
        result.failed = len(invoices) - len(copied)
        logger.info(f"Copy phase completed: {result.submitted} successful, {result.failed} failed")

        # Step 2: Delete exactly the originals that were copied
        if copied:
            await self.progress.update(
                operation_id,
                COPY_PROGRESS_SHARE,
                f"Cleaning up workspace (deleting {len(copied)} original records)"
            )
        for index, invoice in enumerate(copied, start=1):
            try:
                deleted = await self.store.invoices.delete(invoice.id)
                if deleted.ok:
                    result.deleted += 1
                else:
                    result.delete_failures += 1
                    result.errors.append(
                        f"Failed to delete original invoice {invoice.invoice_id}: {deleted.first_error}"
                    )
            except Exception as e:
                logger.error(f"Exception deleting invoice {invoice.invoice_id}: {e}", exc_info=True)
                result.delete_failures += 1
                result.errors.append(f"Failed to delete original invoice {invoice.invoice_id}: {e}")

            await self.progress.update(
                operation_id,
                COPY_PROGRESS_SHARE + DELETE_PROGRESS_SHARE * index / len(copied)
            )

        logger.info(f"Delete phase completed: {result.deleted} deleted, {result.delete_failures} failed")

        # Step 3: Refresh the dashboard
        await self.progress.update(operation_id, REFRESH_PROGRESS, "Refreshing workspace")
        await self.events.emit(WorkspaceEvent.INVOICES_REFRESH_REQUESTED)

        # Step 4: Reset the uploaded files list (storage is untouched)
        await self.progress.update(operation_id, CLEARED_PROGRESS, "Clearing uploaded files list")
        await self.events.emit(WorkspaceEvent.UPLOADED_FILES_CLEARED)

        if result.errors:
            result.error_sample = error_sample(result.errors, limit=settings.ERROR_SAMPLE_SIZE)
            for error in result.errors:
                logger.warning(error)

        await self.progress.complete(
            operation_id,
            f"Submitted {result.submitted} invoices, {result.failed} failed"
        )
        logger.info(
            f"Submission {operation_id} finished with {result.outcome.value}: "
            f"{result.submitted}/{result.total} submitted, {result.deleted} removed from workspace"
        )
        return result
