"""Row validation for uploaded invoice data

Pure and deterministic: converts one raw row into a ValidatedInvoice,
collecting every failed check rather than stopping at the first one.
"""

import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from invoice_workspace.models.invoice import Currency, ValidatedInvoice

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

VALID_CURRENCIES = [currency.value for currency in Currency]

# Example values quoted in error messages
_UUID_EXAMPLES = {
    "invoice_id": "550e8400-e29b-41d4-a716-446655440001",
    "seller_id": "550e8400-e29b-41d4-a716-446655440011",
    "debtor_id": "550e8400-e29b-41d4-a716-446655440021",
}
_DATE_EXAMPLES = {
    "issue_date": "2024-01-15",
    "due_date": "2024-02-15",
}


def is_valid_uuid(value: str) -> bool:
    return bool(UUID_PATTERN.match(value))


def parse_iso_date(value: str) -> Optional[date]:
    """Parse a strict YYYY-MM-DD calendar date, or return None"""
    if not DATE_PATTERN.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def parse_amount(value: str) -> Optional[Decimal]:
    """Parse a finite, strictly positive amount, or return None"""
    # Decimal accepts digit-group underscores; no separators are allowed here
    if "_" in value:
        return None
    try:
        amount = Decimal(value)
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount


def validate_row(raw_row: Dict[str, str], row_number: int) -> ValidatedInvoice:
    """
    Validate one raw row

    Args:
        raw_row: Column name to string value
        row_number: 1-based file line of the row, counting the header (first data row is 2)

    Returns:
        ValidatedInvoice; is_valid is True iff validation_errors is empty
    """
    errors = []
    invoice = ValidatedInvoice(row_number=row_number)

    def value_of(column: str) -> str:
        value = raw_row.get(column)
        return str(value).strip() if value is not None else ""

    for column, attribute in (("invoice_id", "invoice_id"), ("seller_id", "seller_id"), ("debtor_id", "debtor_id")):
        value = value_of(column)
        if not value or not is_valid_uuid(value):
            errors.append(
                f"Row {row_number}: Invalid or missing {column} "
                f"(must be UUID format like: {_UUID_EXAMPLES[column]})"
            )
        else:
            setattr(invoice, attribute, value)

    currency = value_of("currency").upper()
    if not currency or currency not in VALID_CURRENCIES:
        errors.append(f"Row {row_number}: Invalid currency. Must be one of: {', '.join(VALID_CURRENCIES)}")
    else:
        invoice.currency = currency

    amount = parse_amount(value_of("amount"))
    if amount is None:
        errors.append(f"Row {row_number}: Invalid amount (must be positive number like: 1500.50)")
    else:
        invoice.amount = amount

    product = value_of("product")
    if not product:
        errors.append(f"Row {row_number}: Product field is required")
    else:
        invoice.product = product

    for column in ("issue_date", "due_date"):
        parsed = parse_iso_date(value_of(column))
        if parsed is None:
            errors.append(
                f"Row {row_number}: Invalid {column} "
                f"(must be YYYY-MM-DD format like: {_DATE_EXAMPLES[column]})"
            )
        else:
            setattr(invoice, column, parsed)

    if invoice.issue_date and invoice.due_date and invoice.due_date <= invoice.issue_date:
        errors.append(f"Row {row_number}: Due date must be after issue date")

    invoice.is_valid = not errors
    invoice.validation_errors = errors
    return invoice
