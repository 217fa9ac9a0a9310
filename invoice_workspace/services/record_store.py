"""Async record store over SQLAlchemy

Exposes the three workspace collections (UploadJob, Invoice,
SubmittedInvoice) with create/update/delete/list and a live subscription
that pushes the full current result set after every committed change.
Calls never raise for store-side rejections: they return a StoreResult
whose ``errors`` list is non-empty.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
import logging

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from invoice_workspace.models.database import AsyncSessionLocal
from invoice_workspace.models.db_models import (
    UploadJob as UploadJobDB,
    Invoice as InvoiceDB,
    SubmittedInvoice as SubmittedInvoiceDB,
)
from invoice_workspace.models.db_utils import column_names, db_to_pydantic, fields_to_columns, to_column_value
from invoice_workspace.models.invoice import PDF_FIELDS, JobStatus, UploadJob, can_transition

logger = logging.getLogger(__name__)

# Columns managed by the store itself
_RESERVED_FIELDS = {"id", "owner", "created_at", "updated_at"}

UpdateGuard = Callable[[BaseModel, Dict[str, Any]], Optional[str]]


@dataclass
class StoreResult:
    """Result of a record store call"""
    data: Any = None
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def first_error(self) -> str:
        return self.errors[0] if self.errors else "Unknown error"


@dataclass
class Snapshot:
    """Full current result set of a collection"""
    items: List[Any]


_CLOSED = object()


class Subscription:
    """Async iterator of snapshots pushed by a collection until unsubscribed"""

    def __init__(self, collection: "SqlCollection"):
        self._collection = collection
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, snapshot: Snapshot) -> None:
        if not self.closed:
            self._queue.put_nowait(snapshot)

    @property
    def pending(self) -> int:
        """Snapshots pushed but not yet consumed"""
        return self._queue.qsize()

    def unsubscribe(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._collection._subscribers.discard(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Snapshot:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class SqlCollection:
    """One record store collection backed by an ORM model"""

    def __init__(
        self,
        name: str,
        model_cls: type,
        session_factory: Optional[async_sessionmaker] = None,
        owner: Optional[str] = None,
        updatable_fields: Optional[Iterable[str]] = None,
        update_guard: Optional[UpdateGuard] = None,
        lock: Optional[asyncio.Lock] = None,
    ):
        """
        Initialize collection

        Args:
            name: Collection name used in messages
            model_cls: SQLAlchemy model class
            session_factory: Async session factory (defaults to AsyncSessionLocal)
            owner: Identity every row is scoped to (None disables scoping)
            updatable_fields: Fields update() may change (None allows all)
            update_guard: Callable returning an error message to reject an update
            lock: Lock serializing database access (shared by a RecordStore)
        """
        self.name = name
        self.model_cls = model_cls
        self.session_factory = session_factory or AsyncSessionLocal
        self.owner = owner
        self.updatable_fields = set(updatable_fields) if updatable_fields is not None else None
        self.update_guard = update_guard
        self._lock = lock or asyncio.Lock()
        self._columns = column_names(model_cls)
        self._subscribers: Set[Subscription] = set()

    def _unknown_fields(self, fields: Dict[str, Any]) -> List[str]:
        return sorted(set(fields) - self._columns)

    def _scoped(self, query):
        if self.owner is not None:
            query = query.where(self.model_cls.owner == self.owner)
        return query

    async def _get_record(self, session: AsyncSession, record_id: str):
        result = await session.execute(
            self._scoped(select(self.model_cls).where(self.model_cls.id == record_id))
        )
        return result.scalar_one_or_none()

    async def create(self, fields: Dict[str, Any]) -> StoreResult:
        """Create a record from entity fields"""
        invalid = sorted(set(fields) & _RESERVED_FIELDS) + self._unknown_fields(fields)
        if invalid:
            return StoreResult(errors=[f"{self.name}: unknown or reserved field(s): {', '.join(invalid)}"])

        async with self._lock, self.session_factory() as session:
            try:
                record = self.model_cls(**fields_to_columns(fields), owner=self.owner)
                session.add(record)
                await session.commit()
                await session.refresh(record)
                data = db_to_pydantic(record)
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Error creating {self.name} record: {e}", exc_info=True)
                return StoreResult(errors=[str(e)])

        logger.debug(f"Created {self.name} record: {data.id}")
        await self.publish()
        return StoreResult(data=data)

    async def update(self, fields: Dict[str, Any]) -> StoreResult:
        """Update a record; ``fields`` must contain its id"""
        record_id = fields.get("id")
        if not record_id:
            return StoreResult(errors=[f"{self.name}: update requires an id"])

        changes = {key: value for key, value in fields.items() if key != "id"}
        invalid = sorted(set(changes) & _RESERVED_FIELDS) + self._unknown_fields(changes)
        if invalid:
            return StoreResult(errors=[f"{self.name}: unknown or reserved field(s): {', '.join(invalid)}"])
        if self.updatable_fields is not None:
            locked = sorted(set(changes) - self.updatable_fields)
            if locked:
                return StoreResult(errors=[f"{self.name}: field(s) cannot be updated: {', '.join(locked)}"])

        async with self._lock, self.session_factory() as session:
            try:
                record = await self._get_record(session, record_id)
                if record is None:
                    return StoreResult(errors=[f"{self.name} {record_id} not found"])

                if self.update_guard:
                    rejection = self.update_guard(db_to_pydantic(record), changes)
                    if rejection:
                        return StoreResult(errors=[rejection])

                for key, value in changes.items():
                    setattr(record, key, to_column_value(value))

                await session.commit()
                await session.refresh(record)
                data = db_to_pydantic(record)
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Error updating {self.name} {record_id}: {e}", exc_info=True)
                return StoreResult(errors=[str(e)])

        await self.publish()
        return StoreResult(data=data)

    async def delete(self, record_id: str) -> StoreResult:
        """Delete a record by id"""
        async with self._lock, self.session_factory() as session:
            try:
                record = await self._get_record(session, record_id)
                if record is None:
                    return StoreResult(errors=[f"{self.name} {record_id} not found"])

                data = db_to_pydantic(record)
                await session.delete(record)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Error deleting {self.name} {record_id}: {e}", exc_info=True)
                return StoreResult(errors=[str(e)])

        await self.publish()
        return StoreResult(data=data)

    async def list(self, filter: Optional[Dict[str, Any]] = None) -> StoreResult:
        """
        List records, optionally filtered by field equality

        Args:
            filter: Mapping of field name to required value

        Returns:
            StoreResult whose data is a list of Pydantic models
        """
        filter = filter or {}
        unknown = self._unknown_fields(filter)
        if unknown:
            return StoreResult(data=[], errors=[f"{self.name}: unknown filter field(s): {', '.join(unknown)}"])

        query = self._scoped(select(self.model_cls))
        for key, value in filter.items():
            query = query.where(getattr(self.model_cls, key) == to_column_value(value))
        query = query.order_by(self.model_cls.created_at, self.model_cls.id)

        async with self._lock, self.session_factory() as session:
            try:
                result = await session.execute(query)
                records = result.scalars().all()
                return StoreResult(data=[db_to_pydantic(record) for record in records])
            except SQLAlchemyError as e:
                logger.error(f"Error listing {self.name} records: {e}", exc_info=True)
                return StoreResult(data=[], errors=[str(e)])

    async def subscribe(self) -> Subscription:
        """Open a live query; the current snapshot is delivered first"""
        subscription = Subscription(self)
        self._subscribers.add(subscription)
        result = await self.list()
        if result.ok:
            subscription.push(Snapshot(items=result.data))
        else:
            logger.warning(f"Initial {self.name} snapshot failed: {result.first_error}")
        return subscription

    async def publish(self) -> None:
        """Push the full current result set to every subscriber"""
        if not self._subscribers:
            return
        result = await self.list()
        if not result.ok:
            logger.warning(f"Skipping {self.name} snapshot push: {result.first_error}")
            return
        for subscription in list(self._subscribers):
            subscription.push(Snapshot(items=list(result.data)))


def _guard_job_status(current: UploadJob, changes: Dict[str, Any]) -> Optional[str]:
    """Reject job updates that would move status backwards"""
    if "status" not in changes:
        return None
    try:
        new_status = JobStatus(to_column_value(changes["status"]))
    except ValueError:
        return f"Unknown job status: {changes['status']}"
    if not can_transition(current.status, new_status):
        return f"Invalid status transition {current.status.value} -> {new_status.value}"
    return None


class RecordStore:
    """The three workspace collections for one identity"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        owner: Optional[str] = None
    ):
        self.owner = owner
        # SQLite connections cannot interleave transactions
        lock = asyncio.Lock()
        self.upload_jobs = SqlCollection(
            "UploadJob",
            UploadJobDB,
            session_factory,
            owner=owner,
            update_guard=_guard_job_status,
            lock=lock,
        )
        self.invoices = SqlCollection(
            "Invoice",
            InvoiceDB,
            session_factory,
            owner=owner,
            updatable_fields=PDF_FIELDS,
            lock=lock,
        )
        self.submitted_invoices = SqlCollection(
            "SubmittedInvoice",
            SubmittedInvoiceDB,
            session_factory,
            owner=owner,
            updatable_fields=(),
            lock=lock,
        )
