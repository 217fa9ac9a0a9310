"""Invoice workspace data models"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field
from enum import Enum


class FileType(str, Enum):
    """Supported tabular upload formats"""
    CSV = "CSV"
    XLSX = "XLSX"


class JobStatus(str, Enum):
    """Upload job lifecycle states"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Allowed forward moves; terminal states have none
JOB_STATUS_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    """Whether a job may move from ``current`` to ``new`` (same state is a no-op)"""
    return current == new or new in JOB_STATUS_TRANSITIONS[current]


class Currency(str, Enum):
    """Accepted invoice currencies"""
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    JPY = "JPY"
    CAD = "CAD"
    AUD = "AUD"
    CHF = "CHF"
    CNY = "CNY"


class OperationOutcome(str, Enum):
    """Three-way result reported to the user"""
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


# Required columns of an ingestion file, in canonical order
REQUIRED_COLUMNS = [
    "invoice_id",
    "seller_id",
    "debtor_id",
    "currency",
    "amount",
    "product",
    "issue_date",
    "due_date",
]

# The only Invoice fields that may change after creation
PDF_FIELDS = ("pdf_path", "pdf_file_name", "pdf_attached_at")


class UploadJob(BaseModel):
    """One uploaded tabular file and its processing counters"""
    id: str
    file_name: str
    file_type: FileType
    status: JobStatus = JobStatus.PENDING
    source_path: str
    total_rows: int = 0
    successful_rows: int = 0
    failed_rows: int = 0
    error_summary: Optional[str] = None
    processing_errors: List[Dict[str, Any]] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    owner: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ValidatedInvoice(BaseModel):
    """A raw row after validation; failed fields keep their zero values"""
    row_number: int
    invoice_id: str = ""
    seller_id: str = ""
    debtor_id: str = ""
    currency: str = ""
    amount: Decimal = Decimal("0")
    product: str = ""
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    is_valid: bool = True
    validation_errors: List[str] = Field(default_factory=list)

    def to_record_fields(self, upload_job_id: str, upload_date: date) -> Dict[str, Any]:
        """Fields for creating the Invoice record of this row"""
        return {
            "invoice_id": self.invoice_id,
            "seller_id": self.seller_id,
            "debtor_id": self.debtor_id,
            "currency": self.currency,
            "amount": self.amount,
            "product": self.product,
            "issue_date": self.issue_date,
            "due_date": self.due_date,
            "upload_date": upload_date,
            "upload_job_id": upload_job_id,
            "is_valid": self.is_valid,
            "validation_errors": list(self.validation_errors),
        }


class Invoice(BaseModel):
    """Transient workspace invoice, one per uploaded row"""
    id: str
    invoice_id: str = ""
    seller_id: str = ""
    debtor_id: str = ""
    currency: str = ""
    amount: Decimal = Decimal("0")
    product: str = ""
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    upload_date: date
    upload_job_id: str
    is_valid: bool = False
    validation_errors: List[str] = Field(default_factory=list)

    # PDF evidence
    pdf_path: Optional[str] = None
    pdf_file_name: Optional[str] = None
    pdf_attached_at: Optional[datetime] = None

    owner: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_pdf(self) -> bool:
        return bool(self.pdf_path)

    @property
    def days_to_due_date(self) -> Optional[int]:
        if self.issue_date is None or self.due_date is None:
            return None
        return (self.due_date - self.issue_date).days


class SubmittedInvoice(BaseModel):
    """Permanent copy of a valid invoice with its PDF reference"""
    id: str
    invoice_id: str
    seller_id: str
    debtor_id: str
    currency: str
    amount: Decimal
    product: str
    issue_date: date
    due_date: date
    upload_date: date
    submitted_date: date
    submitted_at: datetime
    original_upload_job_id: str
    original_invoice_id: str
    submitted_by: Optional[str] = None

    pdf_path: Optional[str] = None
    pdf_file_name: Optional[str] = None
    pdf_attached_at: Optional[datetime] = None

    owner: Optional[str] = None
    created_at: Optional[datetime] = None
