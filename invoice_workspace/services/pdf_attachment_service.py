"""PDF evidence attached to workspace invoices"""

import mimetypes
from datetime import datetime, timezone
from typing import Optional
import logging

from invoice_workspace.config import settings
from invoice_workspace.exceptions import FileTooLargeError, RemoteWriteError, UnsupportedFileTypeError
from invoice_workspace.ingestion.file_handler import FileHandler, ProgressCallback, pdf_file_path
from invoice_workspace.models.invoice import Invoice
from invoice_workspace.services.events import EventBus, WorkspaceEvent
from invoice_workspace.services.record_store import RecordStore

logger = logging.getLogger(__name__)


def check_pdf(content: bytes, file_name: str, content_type: Optional[str] = None) -> None:
    """
    Check an attachment before upload

    The content type is taken from the caller or guessed from the file
    name. PDF content itself is never inspected.

    Raises:
        UnsupportedFileTypeError: If the file is not a non-empty PDF
        FileTooLargeError: If the file exceeds the size limit
    """
    content_type = content_type or mimetypes.guess_type(file_name)[0] or ""
    if "pdf" not in content_type.lower():
        raise UnsupportedFileTypeError("Please select a PDF file")

    if not content:
        raise UnsupportedFileTypeError("File is empty")

    max_bytes = settings.MAX_FILE_SIZE_MB * 1024 * 1024
    if len(content) > max_bytes:
        raise FileTooLargeError(
            f"File size ({len(content) / 1024 / 1024:.2f} MB) exceeds "
            f"maximum allowed size ({settings.MAX_FILE_SIZE_MB} MB)"
        )


class PdfAttachmentService:
    """
    Attaches and detaches PDF files on Invoice records

    Detaching only clears the record's PDF fields; the stored object is
    kept so it can be recovered.
    """

    def __init__(
        self,
        store: RecordStore,
        file_handler: Optional[FileHandler] = None,
        identity_id: Optional[str] = None,
        events: Optional[EventBus] = None
    ):
        self.store = store
        self.file_handler = file_handler or FileHandler()
        self.identity_id = identity_id
        self.events = events or EventBus()

    async def attach(
        self,
        invoice_record_id: str,
        content: bytes,
        file_name: str,
        content_type: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None
    ) -> Invoice:
        """
        Upload a PDF and record it on an invoice

        Args:
            invoice_record_id: Record id of the Invoice
            content: PDF bytes
            file_name: Original file name
            content_type: MIME type reported by the caller
            on_progress: Upload progress callback

        Returns:
            The updated Invoice

        Raises:
            UnsupportedFileTypeError: If the file is not a PDF (nothing is uploaded)
            FileTooLargeError: If the file exceeds the size limit
            RemoteWriteError: If the upload or the record update fails
        """
        check_pdf(content, file_name, content_type)

        path = pdf_file_path(self.identity_id, invoice_record_id, file_name)
        logger.info(f"Uploading PDF for invoice {invoice_record_id} to {path}")
        try:
            await self.file_handler.upload(path, content, on_progress=on_progress)
        except Exception as e:
            logger.error(f"PDF upload failed for invoice {invoice_record_id}: {e}", exc_info=True)
            raise RemoteWriteError(f"Failed to upload PDF: {e}", operation="upload_pdf") from e

        updated = await self.store.invoices.update({
            "id": invoice_record_id,
            "pdf_path": path,
            "pdf_file_name": file_name,
            "pdf_attached_at": datetime.now(timezone.utc),
        })
        if not updated.ok:
            # The uploaded object stays in storage unreferenced
            logger.error(
                f"Failed to update invoice {invoice_record_id} with PDF info: {updated.errors}; "
                f"orphaned object at {path}"
            )
            raise RemoteWriteError(
                "Failed to save PDF information",
                operation="update_invoice",
                errors=updated.errors
            )

        logger.info(f"Attached {file_name} to invoice {invoice_record_id}")
        await self.events.emit(WorkspaceEvent.INVOICES_REFRESH_REQUESTED)
        return updated.data

    async def detach(self, invoice_record_id: str) -> Invoice:
        """
        Clear the PDF fields of an invoice, keeping the stored object

        Raises:
            RemoteWriteError: If the record update fails
        """
        updated = await self.store.invoices.update({
            "id": invoice_record_id,
            "pdf_path": None,
            "pdf_file_name": None,
            "pdf_attached_at": None,
        })
        if not updated.ok:
            logger.error(f"Failed to remove PDF info from invoice {invoice_record_id}: {updated.errors}")
            raise RemoteWriteError(
                "Failed to remove PDF information from database",
                operation="update_invoice",
                errors=updated.errors
            )

        logger.info(f"Detached PDF from invoice {invoice_record_id}")
        await self.events.emit(WorkspaceEvent.INVOICES_REFRESH_REQUESTED)
        return updated.data

    async def get_view_url(self, path: str, expires_in: Optional[int] = None) -> str:
        """Time-limited URL for viewing a stored PDF (one hour by default)"""
        return await self.file_handler.get_signed_url(
            path,
            expires_in=expires_in or settings.PDF_URL_EXPIRY_SECONDS
        )
