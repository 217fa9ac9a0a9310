"""Result models returned by workspace operations"""

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field

from .invoice import JobStatus, OperationOutcome


def derive_outcome(succeeded: int, failed: int) -> OperationOutcome:
    """SUCCESS with no failures, FAILED when nothing succeeded, PARTIAL otherwise"""
    if failed == 0:
        return OperationOutcome.SUCCESS
    if succeeded == 0:
        return OperationOutcome.FAILED
    return OperationOutcome.PARTIAL


class IngestionResult(BaseModel):
    """Outcome of ingesting one tabular file"""
    job_id: str
    file_name: str
    source_path: str
    status: JobStatus
    total_rows: int = 0
    successful_rows: int = 0
    failed_rows: int = 0
    error_summary: Optional[str] = None
    row_errors: List[Dict[str, Any]] = Field(default_factory=list)
    job_update_failed: bool = False

    @property
    def outcome(self) -> OperationOutcome:
        return derive_outcome(self.successful_rows, self.failed_rows)


class FileUploadResult(BaseModel):
    """Per-file entry of a multi-file upload"""
    file_name: str
    ingestion: Optional[IngestionResult] = None
    error: Optional[str] = None

    @property
    def outcome(self) -> OperationOutcome:
        if self.ingestion is None:
            return OperationOutcome.FAILED
        return self.ingestion.outcome


class DeletionResult(BaseModel):
    """Outcome of a cascade file deletion"""
    source_path: str
    deleted_jobs: List[str] = Field(default_factory=list)
    deleted_invoices: int = 0


class HistoryClearResult(BaseModel):
    """Outcome of clearing finished upload jobs"""
    deleted: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)

    @property
    def outcome(self) -> OperationOutcome:
        return derive_outcome(self.deleted, self.failed)

    @property
    def message(self) -> Optional[str]:
        if not self.failed:
            return None
        return f"{self.failed} out of {self.deleted + self.failed} jobs could not be deleted"


class SubmissionResult(BaseModel):
    """Outcome of submitting workspace invoices to permanent storage"""
    total: int = 0
    submitted: int = 0
    failed: int = 0
    deleted: int = 0
    delete_failures: int = 0
    submitted_ids: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    error_sample: Optional[str] = None

    @property
    def outcome(self) -> OperationOutcome:
        if self.total == 0 or (self.failed == 0 and self.delete_failures == 0):
            return OperationOutcome.SUCCESS
        if self.submitted == 0:
            return OperationOutcome.FAILED
        return OperationOutcome.PARTIAL
