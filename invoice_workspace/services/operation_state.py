"""Per-entity operation state for in-flight UI actions"""

from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Dict, Hashable, List, Optional
import logging

from invoice_workspace.exceptions import OperationInFlightError

logger = logging.getLogger(__name__)


class OperationState(str, Enum):
    """IDLE -> IN_FLIGHT -> DONE | FAILED"""
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    FAILED = "failed"


class OperationStateTracker:
    """
    Tracks one operation state per entity key

    Keys are whatever identifies the entity (a storage path, an invoice
    record id, "submission"). Distinct keys are independent, so
    operations on different rows can run concurrently.
    """

    def __init__(self, name: str = "operations"):
        self.name = name
        self._states: Dict[Hashable, OperationState] = {}
        self._errors: Dict[Hashable, str] = {}

    def state(self, key: Hashable) -> OperationState:
        return self._states.get(key, OperationState.IDLE)

    def error(self, key: Hashable) -> Optional[str]:
        return self._errors.get(key)

    def is_in_flight(self, key: Hashable) -> bool:
        return self.state(key) == OperationState.IN_FLIGHT

    def in_flight(self) -> List[Hashable]:
        return [key for key, state in self._states.items() if state == OperationState.IN_FLIGHT]

    def begin(self, key: Hashable) -> None:
        """Move a key to IN_FLIGHT; a second concurrent operation is refused"""
        if self.is_in_flight(key):
            raise OperationInFlightError(f"An operation is already in progress for {key}")
        self._states[key] = OperationState.IN_FLIGHT
        self._errors.pop(key, None)

    def finish(self, key: Hashable, error: Optional[BaseException] = None) -> None:
        """Leave IN_FLIGHT for DONE, or FAILED when an error is given"""
        if error is None:
            self._states[key] = OperationState.DONE
        else:
            self._states[key] = OperationState.FAILED
            self._errors[key] = str(error)

    def reset(self, key: Hashable) -> None:
        """Forget a finished operation"""
        if self.is_in_flight(key):
            raise OperationInFlightError(f"Cannot reset {key} while in progress")
        self._states.pop(key, None)
        self._errors.pop(key, None)

    @asynccontextmanager
    async def track(self, key: Hashable) -> AsyncIterator[None]:
        """
        Run a block as the operation of ``key``

        The key always leaves IN_FLIGHT when the block exits, whether it
        returns or raises; exceptions propagate unchanged.
        """
        self.begin(key)
        try:
            yield
        except BaseException as e:
            self.finish(key, e)
            logger.debug(f"{self.name}: {key} failed: {e}")
            raise
        else:
            self.finish(key)
            logger.debug(f"{self.name}: {key} done")
