"""Unit tests for IngestionService"""

import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from invoice_workspace.config import settings
from invoice_workspace.exceptions import (
    FileTooLargeError,
    ParseError,
    RemoteWriteError,
    UnsupportedFileTypeError,
)
from invoice_workspace.ingestion.ingestion_service import IngestionService
from invoice_workspace.models.invoice import JobStatus, OperationOutcome
from invoice_workspace.services.events import WorkspaceEvent
from invoice_workspace.services.record_store import StoreResult

SOURCE_PATH = "user-files/us-east-1:0f6f4c1e-identity/1700000000000-invoices.csv"


@pytest.fixture
def service(store, file_handler, identity_id, events, progress):
    return IngestionService(
        store,
        file_handler=file_handler,
        identity_id=identity_id,
        events=events,
        progress=progress,
        batch_size=25,
        persist_invalid_rows=True,
    )


@pytest.mark.unit
@pytest.mark.requires_db
class TestIngest:
    """Test job lifecycle and batched persistence"""

    @pytest.mark.asyncio
    async def test_all_valid_rows(self, service, store, make_row, make_csv):
        content = make_csv([make_row(), make_row(), make_row()])

        result = await service.ingest(content, "invoices.csv", SOURCE_PATH)

        assert result.status == JobStatus.COMPLETED
        assert (result.total_rows, result.successful_rows, result.failed_rows) == (3, 3, 0)
        assert result.error_summary is None
        assert result.outcome == OperationOutcome.SUCCESS

        job = (await store.upload_jobs.list()).data[0]
        assert job.id == result.job_id
        assert job.status == JobStatus.COMPLETED
        assert job.successful_rows == 3
        assert job.started_at is not None
        assert job.completed_at is not None

        invoices = (await store.invoices.list({"upload_job_id": job.id})).data
        assert len(invoices) == 3
        assert all(invoice.is_valid for invoice in invoices)
        assert invoices[0].amount == Decimal("1500.50")

    @pytest.mark.asyncio
    async def test_mixed_rows(self, service, store, sample_csv_content):
        result = await service.ingest(sample_csv_content, "invoices.csv", SOURCE_PATH)

        assert result.status == JobStatus.COMPLETED
        assert (result.successful_rows, result.failed_rows) == (1, 1)
        assert result.outcome == OperationOutcome.PARTIAL
        assert result.error_summary.startswith(
            "1 row errors. Sample: Row 3: Invalid or missing invoice_id"
        )
        assert result.row_errors[0]["row"] == 3
        assert result.row_errors[0]["invoice_id"] is None

        job = (await store.upload_jobs.list()).data[0]
        assert job.error_summary == result.error_summary
        assert job.processing_errors == result.row_errors

    @pytest.mark.asyncio
    async def test_invalid_rows_are_persisted_with_their_errors(self, service, store, sample_csv_content):
        await service.ingest(sample_csv_content, "invoices.csv", SOURCE_PATH)

        invoices = (await store.invoices.list()).data
        invalid = [invoice for invoice in invoices if not invoice.is_valid]

        assert len(invoices) == 2
        assert len(invalid) == 1
        assert "invoice_id" in invalid[0].validation_errors[0]

    @pytest.mark.asyncio
    async def test_invalid_rows_can_be_left_out(self, service, store, sample_csv_content):
        service.persist_invalid_rows = False

        result = await service.ingest(sample_csv_content, "invoices.csv", SOURCE_PATH)

        invoices = (await store.invoices.list()).data
        assert [invoice.invoice_id for invoice in invoices] == ["550e8400-e29b-41d4-a716-446655440001"]
        assert result.failed_rows == 1

    @pytest.mark.asyncio
    async def test_all_rows_invalid_fails_job(self, service, store, make_row, make_csv):
        content = make_csv([make_row(amount="-1"), make_row(currency="ZZZ")])

        result = await service.ingest(content, "invoices.csv", SOURCE_PATH)

        assert result.status == JobStatus.FAILED
        assert result.outcome == OperationOutcome.FAILED
        assert (await store.upload_jobs.list()).data[0].status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_header_only_file_completes_with_zero_rows(self, service, make_csv):
        result = await service.ingest(make_csv([]), "invoices.csv", SOURCE_PATH)

        assert result.status == JobStatus.COMPLETED
        assert result.total_rows == 0

    @pytest.mark.asyncio
    async def test_rows_are_written_in_batches(self, service, make_row, make_csv):
        content = make_csv([make_row() for _ in range(60)])

        with patch.object(service, "_record_batch_counts", new=AsyncMock()) as record_counts:
            result = await service.ingest(content, "invoices.csv", SOURCE_PATH)

        assert result.successful_rows == 60
        assert record_counts.await_count == 3
        counts = [call.args[1:] for call in record_counts.await_args_list]
        assert counts == [(60, 25, 0), (60, 50, 0), (60, 60, 0)]

    @pytest.mark.asyncio
    async def test_batch_counts_are_recorded_on_the_job(self, service, store, make_row, make_csv):
        content = make_csv([make_row() for _ in range(3)])
        service.batch_size = 2
        updates = []
        original_update = store.upload_jobs.update

        async def recording_update(fields):
            updates.append(dict(fields))
            return await original_update(fields)

        with patch.object(store.upload_jobs, "update", side_effect=recording_update):
            await service.ingest(content, "invoices.csv", SOURCE_PATH)

        progress_updates = [fields for fields in updates if "status" not in fields]
        assert [fields["successful_rows"] for fields in progress_updates] == [2, 3]

    @pytest.mark.asyncio
    async def test_rejected_row_counts_as_failed(self, service, store, make_row, make_csv):
        rejected_id = "550e8400-e29b-41d4-a716-446655440099"
        content = make_csv([make_row(), make_row(invoice_id=rejected_id), make_row()])
        original_create = store.invoices.create

        async def rejecting_create(fields):
            if fields["invoice_id"] == rejected_id:
                return StoreResult(errors=["Not authorized"])
            return await original_create(fields)

        with patch.object(store.invoices, "create", side_effect=rejecting_create):
            result = await service.ingest(content, "invoices.csv", SOURCE_PATH)

        assert (result.successful_rows, result.failed_rows) == (2, 1)
        assert result.row_errors == [{
            "row": 3,
            "invoice_id": rejected_id,
            "errors": ["Failed to save invoice: Not authorized"],
        }]
        assert result.error_summary == "1 row errors. Sample: Row 3: Failed to save invoice: Not authorized"

    @pytest.mark.asyncio
    async def test_raising_row_write_counts_as_failed(self, service, store, make_row, make_csv):
        content = make_csv([make_row(), make_row()])
        original_create = store.invoices.create
        calls = []

        async def flaky_create(fields):
            calls.append(fields)
            if len(calls) == 1:
                raise ConnectionError("connection reset")
            return await original_create(fields)

        with patch.object(store.invoices, "create", side_effect=flaky_create):
            result = await service.ingest(content, "invoices.csv", SOURCE_PATH)

        assert (result.successful_rows, result.failed_rows) == (1, 1)
        assert result.row_errors[0]["errors"] == ["connection reset"]
        assert result.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_parse_error_fails_job_without_writing_rows(self, service, store):
        with pytest.raises(ParseError):
            await service.ingest(b"not a workbook", "invoices.xlsx", SOURCE_PATH)

        job = (await store.upload_jobs.list()).data[0]
        assert job.status == JobStatus.FAILED
        assert job.error_summary
        assert job.completed_at is not None
        assert (await store.invoices.list()).data == []

    @pytest.mark.asyncio
    async def test_corrupt_worksheet_fails_job(self, service, store, corrupt_xlsx_content):
        with pytest.raises(ParseError):
            await service.ingest(corrupt_xlsx_content, "invoices.xlsx", SOURCE_PATH)

        job = (await store.upload_jobs.list()).data[0]
        assert job.status == JobStatus.FAILED
        assert job.error_summary
        assert (await store.invoices.list()).data == []

    @pytest.mark.asyncio
    async def test_unexpected_validation_error_fails_job(self, service, store, sample_csv_content):
        with patch(
            "invoice_workspace.ingestion.ingestion_service.validate_row",
            side_effect=RuntimeError("validator crashed")
        ):
            with pytest.raises(RuntimeError, match="validator crashed"):
                await service.ingest(sample_csv_content, "invoices.csv", SOURCE_PATH)

        job = (await store.upload_jobs.list()).data[0]
        assert job.status == JobStatus.FAILED
        assert job.error_summary == "validator crashed"
        assert (await store.invoices.list()).data == []

    @pytest.mark.asyncio
    async def test_job_create_rejection_raises(self, service, store, sample_csv_content):
        with patch.object(store.upload_jobs, "create", new=AsyncMock(return_value=StoreResult(errors=["denied"]))):
            with pytest.raises(RemoteWriteError, match="Failed to create upload job: denied"):
                await service.ingest(sample_csv_content, "invoices.csv", SOURCE_PATH)

        assert (await store.invoices.list()).data == []

    @pytest.mark.asyncio
    async def test_finalize_failure_is_reported_not_raised(self, service, store, sample_csv_content):
        original_update = store.upload_jobs.update

        async def failing_finalize(fields):
            if "completed_at" in fields:
                return StoreResult(errors=["throttled"])
            return await original_update(fields)

        with patch.object(store.upload_jobs, "update", side_effect=failing_finalize):
            result = await service.ingest(sample_csv_content, "invoices.csv", SOURCE_PATH)

        assert result.job_update_failed is True
        assert result.successful_rows == 1
        job = (await store.upload_jobs.list()).data[0]
        assert job.status == JobStatus.PROCESSING
        assert job.successful_rows == 1

    @pytest.mark.asyncio
    async def test_raising_finalize_is_reported_not_raised(self, service, store, sample_csv_content):
        original_update = store.upload_jobs.update

        async def offline_finalize(fields):
            if "completed_at" in fields:
                raise ConnectionError("offline")
            return await original_update(fields)

        with patch.object(store.upload_jobs, "update", side_effect=offline_finalize):
            result = await service.ingest(sample_csv_content, "invoices.csv", SOURCE_PATH)

        assert result.job_update_failed is True
        assert (result.successful_rows, result.failed_rows) == (1, 1)
        job = (await store.upload_jobs.list()).data[0]
        assert job.status == JobStatus.PROCESSING
        assert job.successful_rows == 1
        assert len((await store.invoices.list()).data) == 2

    @pytest.mark.asyncio
    async def test_raising_batch_count_update_does_not_abort(self, service, store, sample_csv_content):
        original_update = store.upload_jobs.update

        async def offline_batch_counts(fields):
            if "status" not in fields:
                raise ConnectionError("offline")
            return await original_update(fields)

        with patch.object(store.upload_jobs, "update", side_effect=offline_batch_counts):
            result = await service.ingest(sample_csv_content, "invoices.csv", SOURCE_PATH)

        assert result.status == JobStatus.COMPLETED
        assert result.job_update_failed is False
        job = (await store.upload_jobs.list()).data[0]
        assert job.status == JobStatus.COMPLETED
        assert (job.successful_rows, job.failed_rows) == (1, 1)
        assert len((await store.invoices.list()).data) == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_job_failed(self, service, store, sample_csv_content):
        with patch.object(service, "_persist_rows", new=AsyncMock(side_effect=RuntimeError("disk full"))):
            with pytest.raises(RuntimeError, match="disk full"):
                await service.ingest(sample_csv_content, "invoices.csv", SOURCE_PATH)

        job = (await store.upload_jobs.list()).data[0]
        assert job.status == JobStatus.FAILED
        assert job.error_summary == "disk full"

    @pytest.mark.asyncio
    async def test_original_error_survives_failed_job_update(self, service, store, sample_csv_content):
        with patch.object(service, "_persist_rows", new=AsyncMock(side_effect=RuntimeError("disk full"))), \
                patch.object(store.upload_jobs, "update", new=AsyncMock(side_effect=ConnectionError("offline"))):
            with pytest.raises(RuntimeError, match="disk full"):
                await service.ingest(sample_csv_content, "invoices.csv", SOURCE_PATH)

    @pytest.mark.asyncio
    async def test_progress_milestones(self, service, progress, sample_csv_content):
        reported = []
        original_update = progress.update

        async def recording_update(operation_id, progress_percentage, *args, **kwargs):
            reported.append(progress_percentage)
            await original_update(operation_id, progress_percentage, *args, **kwargs)

        with patch.object(progress, "update", side_effect=recording_update):
            await service.ingest(sample_csv_content, "invoices.csv", SOURCE_PATH)

        assert reported == [20, 40, 90]
        assert (await progress.get(SOURCE_PATH))["progress_percentage"] == 100


@pytest.mark.unit
@pytest.mark.requires_db
class TestUploadAndIngest:
    """Test storing the source file before ingestion"""

    @pytest.mark.asyncio
    async def test_stores_file_then_ingests(
        self, service, store, file_handler, events, progress, identity_id, sample_csv_content, mock_event_handler
    ):
        events.subscribe(WorkspaceEvent.UPLOADED_FILES_CHANGED, mock_event_handler)

        result = await service.upload_and_ingest(sample_csv_content, "invoices.csv")

        assert result.source_path.startswith(f"user-files/{identity_id}/")
        assert result.source_path.endswith("-invoices.csv")
        stored = await file_handler.list(f"user-files/{identity_id}/")
        assert [stored_file.path for stored_file in stored] == [result.source_path]
        mock_event_handler.assert_called_once_with(path=result.source_path)
        assert (await progress.get(result.source_path))["progress_percentage"] == 100
        job = (await store.upload_jobs.list()).data[0]
        assert job.source_path == result.source_path

    @pytest.mark.asyncio
    async def test_oversized_file_is_rejected_before_upload(self, service, file_handler, identity_id, sample_csv_content):
        with patch.object(settings, "MAX_FILE_SIZE_MB", 0):
            with pytest.raises(FileTooLargeError):
                await service.upload_and_ingest(sample_csv_content, "invoices.csv")

        assert await file_handler.list(f"user-files/{identity_id}/") == []

    @pytest.mark.asyncio
    async def test_upload_failure_creates_no_job(self, service, store, file_handler, sample_csv_content):
        with patch.object(file_handler, "upload", new=AsyncMock(side_effect=OSError("network down"))):
            with pytest.raises(RemoteWriteError) as exc_info:
                await service.upload_and_ingest(sample_csv_content, "invoices.csv")

        assert exc_info.value.operation == "upload"
        assert (await store.upload_jobs.list()).data == []

    @pytest.mark.asyncio
    async def test_unsupported_selection_is_rejected(self, service, file_handler, identity_id, sample_csv_content):
        with pytest.raises(UnsupportedFileTypeError, match="notes.txt"):
            await service.upload_files([("a.csv", sample_csv_content), ("notes.txt", b"hi")])

        assert await file_handler.list(f"user-files/{identity_id}/") == []

    @pytest.mark.asyncio
    async def test_failing_file_does_not_stop_the_rest(self, service, store, sample_csv_content):
        results = await service.upload_files([
            ("broken.xlsx", b"not a workbook"),
            ("good.csv", sample_csv_content),
        ])

        assert [result.file_name for result in results] == ["broken.xlsx", "good.csv"]
        assert results[0].ingestion is None
        assert results[0].error
        assert results[0].outcome == OperationOutcome.FAILED
        assert results[1].ingestion.successful_rows == 1
        statuses = sorted(job.status.value for job in (await store.upload_jobs.list()).data)
        assert statuses == ["COMPLETED", "FAILED"]
