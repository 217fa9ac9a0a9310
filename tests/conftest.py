"""Pytest configuration and shared fixtures"""

import pytest
import uuid
import zipfile
from io import BytesIO
from typing import AsyncGenerator, Callable, Dict, List
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock
from openpyxl import Workbook
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from invoice_workspace.ingestion.file_handler import FileHandler
from invoice_workspace.models.database import Base
from invoice_workspace.models import db_models  # noqa: F401
from invoice_workspace.models.invoice import JobStatus, REQUIRED_COLUMNS
from invoice_workspace.services.events import EventBus
from invoice_workspace.services.progress_tracker import ProgressTracker
from invoice_workspace.services.record_store import RecordStore


# Test database setup (SQLite in-memory)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_IDENTITY = "us-east-1:0f6f4c1e-identity"


@pytest.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory engine with fresh tables for each test"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    # Create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop tables after test
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """
    Raw database session for assertions below the record store

    Yields:
        Async database session
    """
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


@pytest.fixture
def identity_id() -> str:
    return TEST_IDENTITY


@pytest.fixture
def store(session_factory, identity_id) -> RecordStore:
    """Record store scoped to the test identity"""
    return RecordStore(session_factory, owner=identity_id)


@pytest.fixture
def file_handler(tmp_path) -> FileHandler:
    """Local FileHandler rooted in the test's temporary directory"""
    return FileHandler(storage_path=str(tmp_path / "storage"), use_azure=False)


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def progress() -> ProgressTracker:
    return ProgressTracker()


@pytest.fixture
def make_row() -> Callable[..., Dict[str, str]]:
    """Build a valid raw row; keyword arguments override single columns"""
    def _make_row(**overrides) -> Dict[str, str]:
        row = {
            "invoice_id": str(uuid.uuid4()),
            "seller_id": str(uuid.uuid4()),
            "debtor_id": str(uuid.uuid4()),
            "currency": "USD",
            "amount": "1500.50",
            "product": "Consulting services",
            "issue_date": "2024-01-15",
            "due_date": "2024-02-15",
        }
        row.update(overrides)
        return row
    return _make_row


@pytest.fixture
def make_csv() -> Callable[[List[Dict[str, str]]], bytes]:
    """Render raw rows as CSV bytes with the standard header"""
    def _make_csv(rows: List[Dict[str, str]], columns: List[str] = REQUIRED_COLUMNS) -> bytes:
        lines = [",".join(columns)]
        for row in rows:
            lines.append(",".join(row.get(column, "") for column in columns))
        return ("\n".join(lines) + "\n").encode("utf-8")
    return _make_csv


@pytest.fixture
def make_xlsx() -> Callable[[List[list]], bytes]:
    """Build an XLSX workbook whose first sheet holds the given rows"""
    def _make_xlsx(rows: List[list]) -> bytes:
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = "Invoices"
        for row in rows:
            sheet.append(row)
        buffer = BytesIO()
        workbook.save(buffer)
        return buffer.getvalue()
    return _make_xlsx


@pytest.fixture
def sample_csv_content(make_row, make_csv) -> bytes:
    """One valid row and one row with a malformed invoice_id"""
    return make_csv([
        make_row(invoice_id="550e8400-e29b-41d4-a716-446655440001"),
        make_row(invoice_id="not-a-uuid"),
    ])


@pytest.fixture
def corrupt_xlsx_content(make_row, make_xlsx) -> bytes:
    """A valid workbook archive whose first worksheet XML is cut in half"""
    source = BytesIO(make_xlsx([list(make_row().keys()), list(make_row().values())]))
    target = BytesIO()
    with zipfile.ZipFile(source) as original, zipfile.ZipFile(target, "w") as damaged:
        for item in original.infolist():
            data = original.read(item.filename)
            if item.filename == "xl/worksheets/sheet1.xml":
                data = data[:len(data) // 2]
            damaged.writestr(item, data)
    return target.getvalue()


@pytest.fixture
def sample_pdf_content() -> bytes:
    """Sample PDF content for testing"""
    # Minimal valid PDF
    return b"%PDF-1.4\n1 0 obj\n<<\n/Type /Catalog\n>>\nendobj\nxref\n0 1\ntrailer\n<<\n/Root 1 0 R\n>>\n%%EOF"


@pytest.fixture
def create_job(store) -> Callable:
    """Create an UploadJob directly in the store"""
    async def _create_job(source_path: str = "user-files/test/1-invoices.csv", status: JobStatus = JobStatus.COMPLETED):
        result = await store.upload_jobs.create({
            "file_name": source_path.rsplit("/", 1)[-1],
            "file_type": "CSV",
            "status": status,
            "source_path": source_path,
            "started_at": datetime.now(timezone.utc),
        })
        assert result.ok, result.errors
        return result.data
    return _create_job


@pytest.fixture
def create_invoice(store) -> Callable:
    """Create a workspace Invoice directly in the store"""
    async def _create_invoice(upload_job_id: str, **overrides):
        fields = {
            "invoice_id": str(uuid.uuid4()),
            "seller_id": str(uuid.uuid4()),
            "debtor_id": str(uuid.uuid4()),
            "currency": "EUR",
            "amount": Decimal("250.00"),
            "product": "Widgets",
            "issue_date": date(2024, 3, 1),
            "due_date": date(2024, 3, 31),
            "upload_date": date(2024, 3, 2),
            "upload_job_id": upload_job_id,
            "is_valid": True,
            "validation_errors": [],
        }
        fields.update(overrides)
        result = await store.invoices.create(fields)
        assert result.ok, result.errors
        return result.data
    return _create_invoice


@pytest.fixture
def mock_event_handler():
    """Handler that records the payloads it receives"""
    return MagicMock(return_value=None)
