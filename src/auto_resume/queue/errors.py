"""Error taxonomy for the task queue engine."""

from __future__ import annotations


class QueueError(Exception):
    """Base class for queue engine errors."""


class NotFoundError(QueueError, LookupError):
    """Unknown task id."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class PersistenceError(QueueError):
    """Queue document is unreadable, unwritable or corrupt."""


class InvalidTransitionError(QueueError, ValueError):
    """Requested status change is not part of the task lifecycle."""

    def __init__(self, task_id: str, status_from: str, status_to: str) -> None:
        super().__init__(f"Task {task_id}: cannot move from {status_from} to {status_to}")
        self.task_id = task_id
        self.status_from = status_from
        self.status_to = status_to


class DetectionAmbiguousError(QueueError, ValueError):
    """Unavailability text matched a time marker but the time could not be parsed."""


class TaskTimeoutError(QueueError, TimeoutError):
    """Completion monitor deadline elapsed before a completion marker appeared."""

    def __init__(self, task_id: str, timeout_seconds: float) -> None:
        super().__init__(f"Task {task_id} timed out after {timeout_seconds:.0f}s")
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds


class PermanentFailure(QueueError):
    """Task exhausted its retries."""

    def __init__(self, task_id: str, retry_count: int) -> None:
        super().__init__(f"Task {task_id} failed permanently after {retry_count} retries")
        self.task_id = task_id
        self.retry_count = retry_count
