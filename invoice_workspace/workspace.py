"""Invoice workspace for one authenticated identity

Wires the record store, object storage, caches and services together and
exposes the actions a dashboard offers. Destructive actions ask the
injected ``confirm`` callback first and do nothing when it declines.
"""

import inspect
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Union
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from invoice_workspace.exceptions import InvalidInvoiceError, SubmissionNotAllowedError
from invoice_workspace.ingestion.file_handler import FileHandler, ProgressCallback, display_name
from invoice_workspace.ingestion.ingestion_service import IngestionService
from invoice_workspace.models.database import init_models
from invoice_workspace.models.invoice import Invoice, UploadJob
from invoice_workspace.models.results import (
    DeletionResult,
    FileUploadResult,
    HistoryClearResult,
    IngestionResult,
    SubmissionResult,
)
from invoice_workspace.services.dashboard_views import (
    DEFAULT_PAGE_SIZE,
    InvoiceSummary,
    Page,
    SubmissionGate,
    paginate,
    sort_invoices,
    sort_jobs,
    submission_gate,
    summarize,
)
from invoice_workspace.services.deletion_service import DeletionCoordinator
from invoice_workspace.services.events import EventBus, WorkspaceEvent
from invoice_workspace.services.operation_state import OperationStateTracker
from invoice_workspace.services.pdf_attachment_service import PdfAttachmentService
from invoice_workspace.services.progress_tracker import ProgressTracker, progress_tracker
from invoice_workspace.services.record_store import RecordStore
from invoice_workspace.services.submission_service import SubmissionService
from invoice_workspace.services.workspace_cache import SnapshotCache, UploadedFilesCache

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str], Union[bool, Awaitable[bool]]]

HISTORY_KEY = "processing_history"
SUBMISSION_KEY = "submission"


class InvoiceWorkspace:
    """Upload, review, attach and submit invoices for one identity"""

    def __init__(
        self,
        identity_id: str,
        confirm: ConfirmCallback,
        store: Optional[RecordStore] = None,
        file_handler: Optional[FileHandler] = None,
        events: Optional[EventBus] = None,
        progress: Optional[ProgressTracker] = None,
        session_factory: Optional[async_sessionmaker] = None
    ):
        """
        Initialize workspace

        Args:
            identity_id: Authenticated identity scoping records and storage paths
            confirm: Asked before every destructive action; returns True to proceed
            store: RecordStore (defaults to one scoped to identity_id)
            file_handler: FileHandler instance
            events: EventBus shared by services and caches
            progress: ProgressTracker instance
            session_factory: Async session factory for the default store
        """
        if not identity_id:
            raise ValueError("User not authenticated")

        self.identity_id = identity_id
        self.confirm = confirm
        self.store = store or RecordStore(session_factory, owner=identity_id)
        self.file_handler = file_handler or FileHandler()
        self.events = events or EventBus()
        self.progress = progress or progress_tracker

        self.ingestion = IngestionService(
            self.store,
            self.file_handler,
            identity_id=identity_id,
            events=self.events,
            progress=self.progress,
        )
        self.deletion = DeletionCoordinator(self.store, self.file_handler, events=self.events)
        self.submission = SubmissionService(
            self.store,
            events=self.events,
            progress=self.progress,
            submitted_by=identity_id,
        )
        self.pdfs = PdfAttachmentService(
            self.store,
            self.file_handler,
            identity_id=identity_id,
            events=self.events,
        )

        self.invoices = SnapshotCache(self.store.invoices)
        self.jobs = SnapshotCache(self.store.upload_jobs)
        self.uploaded_files = UploadedFilesCache(self.file_handler, identity_id)

        # In-flight markers per entity
        self.file_operations = OperationStateTracker("files")
        self.pdf_operations = OperationStateTracker("pdfs")
        self.workspace_operations = OperationStateTracker("workspace")

        self._unsubscribers: List[Callable[[], None]] = []

    async def start(self) -> None:
        """Open live subscriptions and load the uploaded files list"""
        await self.invoices.start()
        await self.jobs.start()
        self.uploaded_files.bind(self.events)
        self._unsubscribers.append(
            self.events.subscribe(WorkspaceEvent.INVOICES_REFRESH_REQUESTED, self._on_refresh_requested)
        )
        await self.uploaded_files.reload()
        logger.info(f"Workspace started for {self.identity_id}")

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self.uploaded_files.unbind()
        await self.invoices.stop()
        await self.jobs.stop()
        logger.info(f"Workspace stopped for {self.identity_id}")

    async def __aenter__(self) -> "InvoiceWorkspace":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _on_refresh_requested(self, **_) -> None:
        await self.invoices.refresh()
        await self.jobs.refresh()

    async def _confirmed(self, message: str) -> bool:
        answer = self.confirm(message)
        if inspect.isawaitable(answer):
            answer = await answer
        if not answer:
            logger.info("Action cancelled by user")
        return bool(answer)

    async def _settle(self) -> None:
        await self.invoices.settle()
        await self.jobs.settle()

    # Uploads

    async def upload_files(self, files: Sequence[Tuple[str, bytes]]) -> List[FileUploadResult]:
        """Upload and ingest files sequentially (see IngestionService.upload_files)"""
        results = await self.ingestion.upload_files(files)
        await self._settle()
        return results

    async def upload_file(self, content: bytes, file_name: str) -> IngestionResult:
        result = await self.ingestion.upload_and_ingest(content, file_name)
        await self._settle()
        return result

    async def delete_file(self, source_path: str) -> Optional[DeletionResult]:
        """
        Delete an uploaded file with its jobs and invoices

        Returns:
            DeletionResult, or None when the user declined
        """
        name = display_name(source_path)
        if not await self._confirmed(
            f'Are you sure you want to delete "{name}"?\n\n'
            f"This will also delete all associated invoice data from the database. "
            f"This action cannot be undone."
        ):
            return None

        async with self.file_operations.track(source_path):
            result = await self.deletion.delete_file(source_path)
        await self._settle()
        return result

    async def clear_processing_history(self) -> Optional[HistoryClearResult]:
        """Delete finished jobs that no longer own invoices; None when declined"""
        if not await self._confirmed(
            "Are you sure you want to clear all processing history? This action cannot be undone."
        ):
            return None

        async with self.workspace_operations.track(HISTORY_KEY):
            await self._settle()
            result = await self.deletion.clear_processing_history(
                jobs=list(self.jobs.items),
                invoices=list(self.invoices.items),
            )
        await self.jobs.refresh()
        if result.message:
            logger.warning(f"Warning: {result.message}")
        return result

    # Submission

    def submission_gate(self) -> SubmissionGate:
        return submission_gate(self.invoices.items)

    async def submit(self) -> Optional[SubmissionResult]:
        """
        Submit every valid invoice to permanent storage

        Returns:
            SubmissionResult, or None when the user declined

        Raises:
            SubmissionNotAllowedError: If some valid invoice has no PDF, or none is valid
        """
        await self._settle()
        gate = self.submission_gate()
        if not gate.enabled:
            raise SubmissionNotAllowedError(gate.reason)

        valid = [invoice for invoice in self.invoices.items if invoice.is_valid]
        if not await self._confirmed(
            f"Are you sure you want to submit {len(valid)} valid invoice(s)?\n\n"
            f"This will move all invoice data to permanent storage, clear the current "
            f"invoice workspace and clear the uploaded files list. PDF files stay in storage.\n\n"
            f"This action cannot be undone."
        ):
            return None

        async with self.workspace_operations.track(SUBMISSION_KEY):
            result = await self.submission.submit(valid)
        await self._settle()
        return result

    # PDF attachments

    async def attach_pdf(
        self,
        invoice_record_id: str,
        content: bytes,
        file_name: str,
        content_type: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None
    ) -> Invoice:
        """Attach a PDF to a valid invoice"""
        cached = self.invoices.get(invoice_record_id)
        if cached is not None and not cached.is_valid:
            raise InvalidInvoiceError("PDF upload is disabled for invoices with validation errors")

        async with self.pdf_operations.track(invoice_record_id):
            invoice = await self.pdfs.attach(
                invoice_record_id,
                content,
                file_name,
                content_type=content_type,
                on_progress=on_progress,
            )
        await self._settle()
        return invoice

    async def detach_pdf(self, invoice_record_id: str) -> Optional[Invoice]:
        """Remove the PDF reference of an invoice; None when declined"""
        cached = self.invoices.get(invoice_record_id)
        name = cached.pdf_file_name if cached is not None and cached.pdf_file_name else "document"
        if not await self._confirmed(
            f'Are you sure you want to delete the PDF "{name}"?\n\nThis action cannot be undone.'
        ):
            return None

        async with self.pdf_operations.track(invoice_record_id):
            invoice = await self.pdfs.detach(invoice_record_id)
        await self._settle()
        return invoice

    async def get_pdf_url(self, path: str) -> str:
        return await self.pdfs.get_view_url(path)

    # Views

    def invoice_page(
        self,
        page: int = 1,
        sort_by: str = "issue_date",
        direction: str = "asc",
        per_page: int = DEFAULT_PAGE_SIZE,
        valid_only: bool = False
    ) -> Page:
        invoices = [
            invoice for invoice in self.invoices.items
            if invoice.is_valid or not valid_only
        ]
        return paginate(sort_invoices(invoices, sort_by, direction), page, per_page)

    def summary(self) -> InvoiceSummary:
        return summarize(self.invoices.items)

    def processing_jobs(self) -> List[UploadJob]:
        return sort_jobs(self.jobs.items)


async def open_workspace(
    identity_id: str,
    confirm: ConfirmCallback,
    engine: Optional[AsyncEngine] = None,
    **kwargs
) -> InvoiceWorkspace:
    """Create the record store tables if needed and start a workspace"""
    await init_models(engine)
    workspace = InvoiceWorkspace(identity_id, confirm, **kwargs)
    await workspace.start()
    return workspace
