"""Progress tracking for uploads, ingestion and submission

Tracks progress for:
- Upload transfer
- Parsing and validation
- Batched persistence
- Submission

Progress is an observational side channel for the UI. The overall
percentage is clamped to 0-100 and never moves backwards. Finished
operations stay readable until newer ones push them out.
"""

from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from typing import Dict, Any, Optional
from datetime import datetime, timezone
from enum import Enum
import asyncio
import logging

from invoice_workspace.config import settings

logger = logging.getLogger(__name__)


class ProcessingStep(str, Enum):
    """Steps an operation reports progress for"""
    UPLOAD = "upload"
    PARSING = "parsing"
    PERSISTENCE = "persistence"
    SUBMISSION = "submission"
    COMPLETE = "complete"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clamp(value: float) -> float:
    return max(0, min(100, value))


@dataclass
class StepProgress:
    status: str = "running"
    progress: float = 0
    started_at: str = field(default_factory=_now)
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None


@dataclass
class OperationProgress:
    operation_id: str
    current_step: str
    progress_percentage: float = 0
    status: str = "running"
    message: str = ""
    started_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    completed_at: Optional[str] = None
    steps: Dict[str, StepProgress] = field(default_factory=dict)

    def enter(self, step: ProcessingStep) -> StepProgress:
        """Make step current, creating its record on first entry"""
        self.current_step = step.value
        return self.steps.setdefault(step.value, StepProgress())

    def touch(self, message: Optional[str] = None) -> None:
        if message:
            self.message = message
        self.updated_at = _now()


class ProgressTracker:
    """Async-safe progress tracker keyed by operation id"""

    def __init__(self, retain_finished: Optional[int] = None):
        """
        Args:
            retain_finished: Completed or failed operations kept for reading
                (defaults to settings.PROGRESS_RETAINED_FINISHED)
        """
        self._operations: Dict[str, OperationProgress] = {}
        self._finished: "OrderedDict[str, None]" = OrderedDict()
        self.retain_finished = (
            settings.PROGRESS_RETAINED_FINISHED if retain_finished is None else retain_finished
        )
        self._lock = asyncio.Lock()

    def _finish(self, operation_id: str) -> None:
        self._finished[operation_id] = None
        self._finished.move_to_end(operation_id)
        while len(self._finished) > self.retain_finished:
            evicted, _ = self._finished.popitem(last=False)
            self._operations.pop(evicted, None)
            logger.debug(f"Evicted finished operation from progress tracking: {evicted}")

    def _lookup(self, operation_id: str, action: str) -> Optional[OperationProgress]:
        operation = self._operations.get(operation_id)
        if operation is None:
            logger.warning(f"{action} for unknown operation: {operation_id}")
        return operation

    async def start(self, operation_id: str, step: ProcessingStep, message: str = "") -> None:
        """
        Start tracking an operation, or move a tracked one to a new step

        Args:
            operation_id: Operation key (source path, submission id, ...)
            step: Processing step
            message: Optional status message
        """
        async with self._lock:
            # A finished operation started again begins from a fresh record
            if operation_id in self._finished:
                del self._finished[operation_id]
                self._operations.pop(operation_id, None)
            operation = self._operations.setdefault(
                operation_id,
                OperationProgress(operation_id=operation_id, current_step=step.value),
            )
            operation.enter(step)
            operation.message = message
            operation.touch()

    async def update(
        self,
        operation_id: str,
        progress_percentage: float,
        message: Optional[str] = None,
        step: Optional[ProcessingStep] = None,
        step_progress: Optional[float] = None
    ) -> None:
        """
        Update overall progress for an operation

        Args:
            operation_id: Operation key
            progress_percentage: Overall progress (0-100); lower values than the current one are ignored
            message: Optional status message
            step: Optional step to move to
            step_progress: Optional progress of the current step (0-100)
        """
        async with self._lock:
            operation = self._lookup(operation_id, "Progress update")
            if operation is None:
                return

            operation.progress_percentage = max(operation.progress_percentage, _clamp(progress_percentage))
            operation.touch(message)
            if step:
                operation.enter(step)

            current = operation.steps.get(operation.current_step)
            if step_progress is not None and current is not None:
                current.progress = _clamp(step_progress)
                current.updated_at = _now()

    async def complete_step(
        self,
        operation_id: str,
        step: ProcessingStep,
        message: Optional[str] = None
    ) -> None:
        async with self._lock:
            operation = self._lookup(operation_id, "Step completion")
            if operation is None:
                return

            record = operation.steps.get(step.value)
            if record is not None:
                record.status = "complete"
                record.progress = 100
                record.completed_at = _now()
            operation.touch(message)

    async def complete(self, operation_id: str, message: str = "Processing complete") -> None:
        """Mark an operation as complete at 100%"""
        async with self._lock:
            operation = self._lookup(operation_id, "Completion")
            if operation is None:
                return

            operation.status = "complete"
            operation.current_step = ProcessingStep.COMPLETE.value
            operation.progress_percentage = 100
            operation.touch(message)
            operation.completed_at = operation.updated_at
            self._finish(operation_id)

    async def error(self, operation_id: str, error_message: str, step: Optional[ProcessingStep] = None) -> None:
        """
        Mark an operation as failed

        The percentage is left where it was.
        """
        async with self._lock:
            operation = self._lookup(operation_id, "Error")
            if operation is None:
                return

            operation.status = "error"
            operation.touch(error_message)
            record = operation.steps.get(step.value) if step else None
            if record is not None:
                record.status = "error"
                record.error = error_message
            self._finish(operation_id)

    async def get(self, operation_id: str) -> Optional[Dict[str, Any]]:
        """Snapshot of an operation's progress as a plain dict"""
        async with self._lock:
            operation = self._operations.get(operation_id)
            return asdict(operation) if operation is not None else None

    async def clear(self, operation_id: str) -> None:
        async with self._lock:
            self._operations.pop(operation_id, None)
            self._finished.pop(operation_id, None)


# Default instance shared by services that are not given their own
progress_tracker = ProgressTracker()
