"""Utilities for converting between Pydantic and SQLAlchemy models"""

from enum import Enum
from typing import Any, Dict, Type

from pydantic import BaseModel
from sqlalchemy import inspect

from .invoice import (
    UploadJob as UploadJobPydantic,
    Invoice as InvoicePydantic,
    SubmittedInvoice as SubmittedInvoicePydantic,
)
from .db_models import (
    UploadJob as UploadJobDB,
    Invoice as InvoiceDB,
    SubmittedInvoice as SubmittedInvoiceDB,
)


# ORM model -> Pydantic model crossing the store boundary
SCHEMA_FOR_MODEL = {
    UploadJobDB: UploadJobPydantic,
    InvoiceDB: InvoicePydantic,
    SubmittedInvoiceDB: SubmittedInvoicePydantic,
}

# JSON list columns stored as NULL when empty
_LIST_COLUMNS = {"processing_errors", "validation_errors"}


def column_names(model_cls: Type) -> set:
    """Names of the mapped columns of an ORM model"""
    return {attr.key for attr in inspect(model_cls).mapper.column_attrs}


def to_column_value(value: Any) -> Any:
    """Convert a Pydantic-side value into what the column stores"""
    if isinstance(value, Enum):
        return value.value
    return value


def fields_to_columns(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a dict of entity fields into column values"""
    return {key: to_column_value(value) for key, value in fields.items()}


def db_to_pydantic(record: Any) -> BaseModel:
    """Convert an ORM row into the Pydantic model of its collection"""
    schema = SCHEMA_FOR_MODEL[type(record)]
    data = {}
    for key in column_names(type(record)):
        value = getattr(record, key)
        if key in _LIST_COLUMNS and value is None:
            value = []
        data[key] = value
    return schema.model_validate(data)
