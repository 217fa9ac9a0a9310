"""Exception hierarchy for the invoice workspace"""

from typing import List, Optional


class InvoiceWorkspaceError(Exception):
    """Base exception for all workspace errors."""


class ParseError(InvoiceWorkspaceError):
    """Raised when file bytes cannot be interpreted as the declared file type."""


class UnsupportedFileTypeError(InvoiceWorkspaceError):
    """Raised when a file is not a supported tabular file or not a PDF attachment."""


class FileTooLargeError(InvoiceWorkspaceError):
    """Raised when an upload exceeds the configured size limit."""


class RemoteWriteError(InvoiceWorkspaceError):
    """Raised when a record store or object storage call is rejected or fails."""

    def __init__(self, message: str, operation: Optional[str] = None, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.operation = operation
        self.errors = list(errors or [])


class OrphanRiskError(RemoteWriteError):
    """Raised when a cascade delete could not remove every dependent invoice."""

    def __init__(self, failed: int, total: int, errors: Optional[List[str]] = None):
        super().__init__(
            f"Failed to delete {failed} out of {total} invoices",
            operation="delete_invoices",
            errors=errors,
        )
        self.failed = failed
        self.total = total


class OperationInFlightError(InvoiceWorkspaceError):
    """Raised when an entity already has an operation in flight."""


class SubmissionNotAllowedError(InvoiceWorkspaceError):
    """Raised when the submit gate is closed."""


class InvalidInvoiceError(InvoiceWorkspaceError):
    """Raised when an action needs a valid invoice but the invoice has validation errors."""
