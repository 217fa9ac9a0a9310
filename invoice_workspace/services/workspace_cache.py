"""Client-side caches of the workspace state

SnapshotCache mirrors one record store collection. Its subscription
consumer is the only writer, and every pushed snapshot replaces the
whole view. UploadedFilesCache is the presentation list of uploaded
source files, driven by workspace events.
"""

import asyncio
from typing import Any, Callable, List, Optional, Tuple
import logging

from invoice_workspace.ingestion.file_handler import (
    FileHandler,
    StoredFile,
    identity_prefix,
    pdf_attachment_prefix,
)
from invoice_workspace.services.events import EventBus, WorkspaceEvent
from invoice_workspace.services.record_store import SqlCollection, Subscription

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[Tuple[Any, ...]], None]


class SnapshotCache:
    """Read-only view of a collection, kept current by its live subscription"""

    def __init__(self, collection: SqlCollection):
        self.collection = collection
        self.version = 0
        self._items: Tuple[Any, ...] = ()
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self._listeners: List[SnapshotListener] = []

    @property
    def items(self) -> Tuple[Any, ...]:
        return self._items

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_listener(self, listener: SnapshotListener) -> None:
        """Call ``listener(items)`` after every applied snapshot"""
        self._listeners.append(listener)

    def get(self, record_id: str) -> Optional[Any]:
        for item in self._items:
            if item.id == record_id:
                return item
        return None

    async def start(self) -> None:
        """Open the subscription and apply its initial snapshot"""
        if self.running:
            return
        self._subscription = await self.collection.subscribe()
        self._task = asyncio.create_task(self._consume())
        await self.settle()
        logger.info(f"Watching {self.collection.name} ({len(self._items)} records)")

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
        if self._task is not None:
            await self._task
        self._subscription = None
        self._task = None

    async def refresh(self) -> None:
        """Ask the collection for a fresh snapshot and wait until it is applied"""
        if not self.running:
            return
        await self.collection.publish()
        await self.settle()

    async def settle(self) -> None:
        """Wait until every snapshot pushed so far has been applied"""
        while self.running and self._subscription.pending:
            await asyncio.sleep(0)

    async def _consume(self) -> None:
        async for snapshot in self._subscription:
            self._items = tuple(snapshot.items)
            self.version += 1
            for listener in list(self._listeners):
                try:
                    listener(self._items)
                except Exception as e:
                    logger.error(f"Snapshot listener for {self.collection.name} failed: {e}", exc_info=True)


class UploadedFilesCache:
    """Uploaded source files of one identity, excluding PDF attachments"""

    def __init__(self, file_handler: FileHandler, identity_id: str):
        self.file_handler = file_handler
        self.identity_id = identity_id
        self._files: Tuple[StoredFile, ...] = ()
        self._unsubscribers: List[Callable[[], None]] = []

    @property
    def files(self) -> Tuple[StoredFile, ...]:
        return self._files

    def bind(self, events: EventBus) -> None:
        """Reload on UPLOADED_FILES_CHANGED and empty on UPLOADED_FILES_CLEARED"""
        self._unsubscribers.append(events.subscribe(WorkspaceEvent.UPLOADED_FILES_CHANGED, self._on_changed))
        self._unsubscribers.append(events.subscribe(WorkspaceEvent.UPLOADED_FILES_CLEARED, self._on_cleared))

    def unbind(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def reload(self) -> Tuple[StoredFile, ...]:
        """List the identity's source files from storage"""
        pdf_prefix = pdf_attachment_prefix(self.identity_id)
        stored = await self.file_handler.list(identity_prefix(self.identity_id))
        self._files = tuple(
            stored_file for stored_file in stored
            if not stored_file.path.startswith(pdf_prefix)
        )
        logger.debug(f"Loaded {len(self._files)} uploaded files")
        return self._files

    def clear(self) -> None:
        """Reset the presentation list; stored files are untouched"""
        self._files = ()
        logger.info("Uploaded files list cleared")

    async def _on_changed(self, **_) -> None:
        await self.reload()

    def _on_cleared(self, **_) -> None:
        self.clear()
