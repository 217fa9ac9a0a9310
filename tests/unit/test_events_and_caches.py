"""Unit tests for the event bus and workspace caches"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from invoice_workspace.services.events import WorkspaceEvent
from invoice_workspace.services.workspace_cache import SnapshotCache, UploadedFilesCache


@pytest.mark.unit
class TestEventBus:
    """Test publish/subscribe"""

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers_receive_payload(self, events, mock_event_handler):
        async_handler = AsyncMock()
        events.subscribe(WorkspaceEvent.UPLOADED_FILES_CHANGED, mock_event_handler)
        events.subscribe(WorkspaceEvent.UPLOADED_FILES_CHANGED, async_handler)

        completed = await events.emit(WorkspaceEvent.UPLOADED_FILES_CHANGED, path="a.csv")

        assert completed == 2
        mock_event_handler.assert_called_once_with(path="a.csv")
        async_handler.assert_awaited_once_with(path="a.csv")

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self, events, mock_event_handler):
        events.subscribe(WorkspaceEvent.INVOICES_REFRESH_REQUESTED, MagicMock(side_effect=RuntimeError("boom")))
        events.subscribe(WorkspaceEvent.INVOICES_REFRESH_REQUESTED, mock_event_handler)

        completed = await events.emit(WorkspaceEvent.INVOICES_REFRESH_REQUESTED)

        assert completed == 1
        mock_event_handler.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, events, mock_event_handler):
        unsubscribe = events.subscribe(WorkspaceEvent.UPLOADED_FILES_CLEARED, mock_event_handler)

        unsubscribe()
        unsubscribe()
        completed = await events.emit(WorkspaceEvent.UPLOADED_FILES_CLEARED)

        assert completed == 0
        assert events.handler_count(WorkspaceEvent.UPLOADED_FILES_CLEARED) == 0
        mock_event_handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_events_are_independent(self, events, mock_event_handler):
        events.subscribe(WorkspaceEvent.UPLOADED_FILES_CLEARED, mock_event_handler)

        await events.emit(WorkspaceEvent.UPLOADED_FILES_CHANGED, path="a.csv")

        mock_event_handler.assert_not_called()


@pytest.mark.unit
@pytest.mark.requires_db
class TestSnapshotCache:
    """Test the subscription-fed collection cache"""

    @pytest.mark.asyncio
    async def test_start_applies_initial_snapshot(self, store, create_job):
        job = await create_job()
        cache = SnapshotCache(store.upload_jobs)

        await cache.start()
        try:
            assert [item.id for item in cache.items] == [job.id]
            assert cache.get(job.id) == job
            assert cache.get("missing") is None
            assert cache.version == 1
        finally:
            await cache.stop()

    @pytest.mark.asyncio
    async def test_writes_are_pushed_into_the_cache(self, store, create_job):
        cache = SnapshotCache(store.upload_jobs)
        seen = []
        cache.add_listener(lambda items: seen.append(len(items)))
        await cache.start()
        try:
            await create_job("user-files/x/1-a.csv")
            await create_job("user-files/x/2-b.csv")
            await cache.settle()

            assert len(cache.items) == 2
            assert seen == [0, 1, 2]
        finally:
            await cache.stop()

    @pytest.mark.asyncio
    async def test_refresh_and_stop(self, store, create_job):
        cache = SnapshotCache(store.upload_jobs)
        await cache.start()
        version = cache.version

        await cache.refresh()
        assert cache.version == version + 1

        await cache.stop()
        assert not cache.running
        await create_job()
        assert cache.items == ()

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self, store, create_job):
        cache = SnapshotCache(store.upload_jobs)
        cache.add_listener(MagicMock(side_effect=RuntimeError("boom")))
        await cache.start()
        try:
            await create_job()
            await cache.settle()

            assert len(cache.items) == 1
            assert cache.running
        finally:
            await cache.stop()


@pytest.mark.unit
class TestUploadedFilesCache:
    """Test the uploaded files presentation list"""

    @pytest.mark.asyncio
    async def test_reload_lists_source_files_only(self, file_handler, identity_id):
        await file_handler.upload(f"user-files/{identity_id}/1-a.csv", b"a")
        await file_handler.upload(f"user-files/{identity_id}/invoices/rec/1-a.pdf", b"%PDF")
        await file_handler.upload("user-files/someone-else/1-b.csv", b"b")
        cache = UploadedFilesCache(file_handler, identity_id)

        files = await cache.reload()

        assert [stored.path for stored in files] == [f"user-files/{identity_id}/1-a.csv"]

    @pytest.mark.asyncio
    async def test_follows_workspace_events(self, file_handler, identity_id, events):
        cache = UploadedFilesCache(file_handler, identity_id)
        cache.bind(events)
        path = f"user-files/{identity_id}/1-a.csv"
        await file_handler.upload(path, b"a")

        await events.emit(WorkspaceEvent.UPLOADED_FILES_CHANGED, path=path)
        assert [stored.path for stored in cache.files] == [path]

        await events.emit(WorkspaceEvent.UPLOADED_FILES_CLEARED)
        assert cache.files == ()
        assert len(await file_handler.list(f"user-files/{identity_id}/")) == 1

        cache.unbind()
        await events.emit(WorkspaceEvent.UPLOADED_FILES_CHANGED, path=path)
        assert cache.files == ()
