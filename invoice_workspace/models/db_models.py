"""SQLAlchemy ORM models for the record store collections"""

from sqlalchemy import Column, String, Integer, DateTime, Date, Numeric, Text, JSON, Boolean, ForeignKey, Index
from datetime import datetime, timezone
import uuid

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadJob(Base):
    """One row per uploaded tabular file"""
    __tablename__ = "upload_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner = Column(String(255), nullable=True)

    file_name = Column(String, nullable=False)
    file_type = Column(String(10), nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")
    source_path = Column(String, nullable=False)

    total_rows = Column(Integer, nullable=False, default=0)
    successful_rows = Column(Integer, nullable=False, default=0)
    failed_rows = Column(Integer, nullable=False, default=0)
    error_summary = Column(Text, nullable=True)
    processing_errors = Column(JSON, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index('ix_upload_jobs_owner', 'owner'),
        Index('ix_upload_jobs_source_path', 'source_path'),
    )


class Invoice(Base):
    """Transient workspace invoice, one row per uploaded data row"""
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner = Column(String(255), nullable=True)

    invoice_id = Column(String(36), nullable=False, default="")
    seller_id = Column(String(36), nullable=False, default="")
    debtor_id = Column(String(36), nullable=False, default="")
    currency = Column(String(3), nullable=False, default="")
    amount = Column(Numeric(18, 2), nullable=False, default=0)
    product = Column(String, nullable=False, default="")
    issue_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    upload_date = Column(Date, nullable=False)
    upload_job_id = Column(String(36), ForeignKey("upload_jobs.id"), nullable=False, index=True)

    is_valid = Column(Boolean, nullable=False, default=False)
    validation_errors = Column(JSON, nullable=True)

    # PDF evidence
    pdf_path = Column(String, nullable=True)
    pdf_file_name = Column(String, nullable=True)
    pdf_attached_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index('ix_invoices_owner', 'owner'),
        Index('ix_invoices_is_valid', 'is_valid'),
    )


class SubmittedInvoice(Base):
    """Permanent invoice record created by submission"""
    __tablename__ = "submitted_invoices"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner = Column(String(255), nullable=True)

    invoice_id = Column(String(36), nullable=False)
    seller_id = Column(String(36), nullable=False)
    debtor_id = Column(String(36), nullable=False)
    currency = Column(String(3), nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)
    product = Column(String, nullable=False)
    issue_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    upload_date = Column(Date, nullable=False)

    submitted_date = Column(Date, nullable=False)
    submitted_at = Column(DateTime, nullable=False)
    original_upload_job_id = Column(String(36), nullable=False)
    original_invoice_id = Column(String(36), nullable=False, index=True)
    submitted_by = Column(String(255), nullable=True)

    pdf_path = Column(String, nullable=True)
    pdf_file_name = Column(String, nullable=True)
    pdf_attached_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index('ix_submitted_invoices_owner', 'owner'),
    )
