"""Workspace event bus

Producers (ingestion, deletion, submission) and consumers (caches, views)
share one explicitly injected EventBus instead of a global callback slot.
"""

import inspect
from enum import Enum
from typing import Any, Callable, Dict, List
import logging

logger = logging.getLogger(__name__)

EventHandler = Callable[..., Any]


class WorkspaceEvent(str, Enum):
    """Events emitted by workspace services"""
    INVOICES_REFRESH_REQUESTED = "invoices_refresh_requested"
    UPLOADED_FILES_CHANGED = "uploaded_files_changed"
    UPLOADED_FILES_CLEARED = "uploaded_files_cleared"


class EventBus:
    """Publish/subscribe hub; handlers may be plain functions or coroutines"""

    def __init__(self):
        self._handlers: Dict[WorkspaceEvent, List[EventHandler]] = {}

    def subscribe(self, event: WorkspaceEvent, handler: EventHandler) -> Callable[[], None]:
        """
        Register a handler for an event

        Returns:
            Callable that removes the handler again
        """
        handlers = self._handlers.setdefault(event, [])
        handlers.append(handler)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def handler_count(self, event: WorkspaceEvent) -> int:
        return len(self._handlers.get(event, []))

    async def emit(self, event: WorkspaceEvent, **payload: Any) -> int:
        """
        Call every handler of an event in registration order

        A failing handler is logged and does not stop the others; the
        operation that emitted the event has already happened.

        Returns:
            Number of handlers that completed
        """
        completed = 0
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(**payload)
                if inspect.isawaitable(result):
                    await result
                completed += 1
            except Exception as e:
                logger.error(f"Handler for {event.value} failed: {e}", exc_info=True)
        logger.debug(f"Emitted {event.value} to {completed} handler(s)")
        return completed
