"""Derived dashboard views

Pure functions recomputed from the cached snapshots; nothing here
mutates its input.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from math import ceil
from typing import Any, Callable, Dict, List, Sequence, Tuple

from invoice_workspace.models.invoice import Invoice, UploadJob

DEFAULT_PAGE_SIZE = 20


SORT_KEYS: Dict[str, Callable[[Invoice], Any]] = {
    "issue_date": lambda invoice: invoice.issue_date,
    "due_date": lambda invoice: invoice.due_date,
    "amount": lambda invoice: invoice.amount,
    "days_to_due_date": lambda invoice: invoice.days_to_due_date,
    "invoice_id": lambda invoice: invoice.invoice_id.lower(),
    "seller_id": lambda invoice: invoice.seller_id.lower(),
    "debtor_id": lambda invoice: invoice.debtor_id.lower(),
    "product": lambda invoice: invoice.product.lower(),
    "currency": lambda invoice: invoice.currency,
    "is_valid": lambda invoice: invoice.is_valid,
    "has_pdf": lambda invoice: invoice.has_pdf,
}


def sort_invoices(invoices: Sequence[Invoice], sort_by: str = "issue_date", direction: str = "asc") -> List[Invoice]:
    """
    Sort invoices by one column

    Missing values (dates of invalid rows) always sort last. Ties keep
    their snapshot order.

    Raises:
        ValueError: On an unknown field or direction
    """
    if sort_by not in SORT_KEYS:
        raise ValueError(f"Cannot sort by {sort_by}; expected one of: {', '.join(SORT_KEYS)}")
    if direction not in ("asc", "desc"):
        raise ValueError(f"Sort direction must be 'asc' or 'desc', got {direction}")

    key = SORT_KEYS[sort_by]
    present = [invoice for invoice in invoices if key(invoice) is not None]
    missing = [invoice for invoice in invoices if key(invoice) is None]
    return sorted(present, key=key, reverse=direction == "desc") + missing


@dataclass(frozen=True)
class Page:
    items: Tuple[Any, ...]
    page: int
    per_page: int
    total_items: int
    total_pages: int


def paginate(items: Sequence[Any], page: int = 1, per_page: int = DEFAULT_PAGE_SIZE) -> Page:
    """Slice one page; out-of-range pages are clamped to the nearest valid page"""
    if per_page < 1:
        raise ValueError("per_page must be at least 1")
    total_pages = max(1, ceil(len(items) / per_page))
    page = min(max(1, page), total_pages)
    start = (page - 1) * per_page
    return Page(
        items=tuple(items[start:start + per_page]),
        page=page,
        per_page=per_page,
        total_items=len(items),
        total_pages=total_pages,
    )


@dataclass(frozen=True)
class InvoiceSummary:
    total: int
    valid: int
    invalid: int
    with_pdf: int
    total_amount: Decimal
    amount_by_currency: Dict[str, Decimal] = field(default_factory=dict)


def summarize(invoices: Sequence[Invoice]) -> InvoiceSummary:
    """Dashboard counters; amounts only include valid invoices"""
    valid = [invoice for invoice in invoices if invoice.is_valid]
    by_currency: Dict[str, Decimal] = {}
    for invoice in valid:
        by_currency[invoice.currency] = by_currency.get(invoice.currency, Decimal("0")) + invoice.amount
    return InvoiceSummary(
        total=len(invoices),
        valid=len(valid),
        invalid=len(invoices) - len(valid),
        with_pdf=sum(1 for invoice in invoices if invoice.has_pdf),
        total_amount=sum((invoice.amount for invoice in valid), Decimal("0")),
        amount_by_currency=by_currency,
    )


@dataclass(frozen=True)
class SubmissionGate:
    visible: bool
    enabled: bool
    valid_invoices: int
    valid_invoices_with_pdf: int
    missing_pdfs: int

    @property
    def reason(self) -> str:
        if not self.visible:
            return "There are no valid invoices to submit"
        if self.missing_pdfs:
            return f"Upload PDF files for {self.missing_pdfs} invoice(s) to enable submission"
        return ""


def submission_gate(invoices: Sequence[Invoice]) -> SubmissionGate:
    """Submit is offered only when every valid invoice has a PDF attached"""
    valid = [invoice for invoice in invoices if invoice.is_valid]
    with_pdf = [invoice for invoice in valid if invoice.has_pdf]
    return SubmissionGate(
        visible=bool(valid),
        enabled=bool(valid) and len(with_pdf) == len(valid),
        valid_invoices=len(valid),
        valid_invoices_with_pdf=len(with_pdf),
        missing_pdfs=len(valid) - len(with_pdf),
    )


def _job_timestamp(job: UploadJob) -> datetime:
    moment = job.started_at or job.created_at or datetime.min
    # The store returns naive UTC values
    return moment.replace(tzinfo=None)


def sort_jobs(jobs: Sequence[UploadJob]) -> List[UploadJob]:
    """Upload jobs newest first"""
    return sorted(jobs, key=_job_timestamp, reverse=True)
