"""Domain models for the persistent task queue."""

from __future__ import annotations

import random
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from auto_resume.queue.common import from_iso, to_iso, utc_now
from auto_resume.queue.errors import InvalidTransitionError, PermanentFailure, TaskTimeoutError

QUEUE_SCHEMA_VERSION = 1
MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5
TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    FAILED_PERMANENT = "failed_permanent"


class TaskType(str, Enum):
    """Closed set of task variants understood by the scheduler."""

    CUSTOM = "custom"
    ISSUE_REFERENCE = "issue_reference"
    PR_REFERENCE = "pr_reference"


class PauseReason(str, Enum):
    """Why the whole queue stopped dispatching."""

    USAGE_LIMIT = "usage_limit"
    PERMANENT_FAILURE = "permanent_failure"
    MANUAL = "manual"


class ErrorSeverity(str, Enum):
    """How bad a failed attempt looks, from its reason and final output."""

    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"
    UNKNOWN = "unknown"


_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.FAILED_PERMANENT}),
    TaskStatus.IN_PROGRESS: frozenset(
        {
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.PENDING,
            TaskStatus.FAILED_PERMANENT,
        },
    ),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING, TaskStatus.FAILED_PERMANENT}),
    TaskStatus.FAILED_PERMANENT: frozenset({TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.PENDING}),
}


def ensure_transition(task_id: str, status_from: TaskStatus, status_to: TaskStatus) -> None:
    """Raise when ``status_from -> status_to`` is not a lifecycle edge."""

    if status_to not in _ALLOWED_TRANSITIONS[status_from]:
        raise InvalidTransitionError(task_id, status_from.value, status_to.value)


def generate_task_id(prefix: str, *, rng: random.Random | None = None) -> str:
    """Build ``{prefix}-{epoch}-{random}`` ids."""

    source = rng or random.Random()  # noqa: S311
    return f"{prefix}-{int(time.time())}-{source.randrange(10_000)}"


def validate_task_id(task_id: str) -> str:
    if not task_id or not TASK_ID_PATTERN.match(task_id):
        raise ValueError(f"Invalid task id {task_id!r}: use letters, digits, '-' and '_'.")
    return task_id


def validate_priority(priority: int) -> int:
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValueError(
            f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority}.",
        )
    return priority


@dataclass(slots=True)
class Task:
    """One unit of work dispatched to the execution session."""

    id: str
    type: TaskType
    command: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: int = DEFAULT_PRIORITY
    timeout_seconds: int = 3_600
    max_retries: int = 3
    retry_count: int = 0
    reference: int | None = None
    clear_context: bool | None = None
    available_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None

    def is_eligible(self, now: datetime) -> bool:
        """Pending and past any retry delay."""

        if self.status != TaskStatus.PENDING:
            return False
        return self.available_at is None or self.available_at <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "command": self.command,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority,
            "timeout_seconds": self.timeout_seconds,
            "max_retries": self.max_retries,
            "retry_count": self.retry_count,
            "reference": self.reference,
            "clear_context": self.clear_context,
            "available_at": to_iso(self.available_at),
            "last_error": self.last_error,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "completed_at": to_iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        reference = payload.get("reference")
        clear_context = payload.get("clear_context")
        return cls(
            id=str(payload["id"]),
            type=TaskType(payload.get("type", TaskType.CUSTOM.value)),
            command=str(payload.get("command", "")),
            description=str(payload.get("description", "")),
            status=TaskStatus(payload.get("status", TaskStatus.PENDING.value)),
            priority=int(payload.get("priority", DEFAULT_PRIORITY)),
            timeout_seconds=int(payload.get("timeout_seconds", 3_600)),
            max_retries=int(payload.get("max_retries", 3)),
            retry_count=int(payload.get("retry_count", 0)),
            reference=int(reference) if reference is not None else None,
            clear_context=bool(clear_context) if clear_context is not None else None,
            available_at=from_iso(payload.get("available_at")),
            last_error=payload.get("last_error"),
            created_at=from_iso(payload.get("created_at")) or utc_now(),
            updated_at=from_iso(payload.get("updated_at")) or utc_now(),
            completed_at=from_iso(payload.get("completed_at")),
        )


@dataclass(slots=True)
class QueueDocument:
    """The single persisted unit: tasks plus queue-level metadata."""

    tasks: list[Task] = field(default_factory=list)
    paused: bool = False
    pause_reason: PauseReason | None = None
    paused_at: datetime | None = None
    revision: int = 0
    version: int = QUEUE_SCHEMA_VERSION
    last_modified: datetime = field(default_factory=utc_now)

    def find(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def in_progress(self) -> list[Task]:
        return [task for task in self.tasks if task.status == TaskStatus.IN_PROGRESS]

    def pause(self, reason: PauseReason, *, now: datetime | None = None) -> None:
        self.paused = True
        self.pause_reason = reason
        self.paused_at = now or utc_now()

    def unpause(self) -> None:
        self.paused = False
        self.pause_reason = None
        self.paused_at = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "revision": self.revision,
            "paused": self.paused,
            "pause_reason": self.pause_reason.value if self.pause_reason else None,
            "paused_at": to_iso(self.paused_at),
            "last_modified": to_iso(self.last_modified),
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> QueueDocument:
        tasks_raw = payload.get("tasks", [])
        if not isinstance(tasks_raw, list):
            raise TypeError("Queue document field 'tasks' must be a list.")
        pause_reason = payload.get("pause_reason")
        return cls(
            tasks=[Task.from_dict(item) for item in tasks_raw if isinstance(item, dict)],
            paused=bool(payload.get("paused", False)),
            pause_reason=PauseReason(pause_reason) if pause_reason else None,
            paused_at=from_iso(payload.get("paused_at")),
            revision=int(payload.get("revision", 0)),
            version=int(payload.get("version", QUEUE_SCHEMA_VERSION)),
            last_modified=from_iso(payload.get("last_modified")) or utc_now(),
        )


@dataclass(slots=True)
class BackoffState:
    """Persisted pause marker written when the session reports unavailability."""

    active: bool
    task_id: str | None
    detected_pattern: str
    occurrence_count: int
    pause_started_at: datetime
    estimated_resume_at: datetime
    wait_seconds: int
    pause_reason: str = PauseReason.USAGE_LIMIT.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "current_task_id": self.task_id,
            "detected_pattern": self.detected_pattern,
            "occurrence_count": self.occurrence_count,
            "pause_time": to_iso(self.pause_started_at),
            "estimated_resume_time": to_iso(self.estimated_resume_at),
            "estimated_wait_time": self.wait_seconds,
            "pause_reason": self.pause_reason,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> BackoffState:
        pause_started_at = from_iso(payload.get("pause_time"))
        estimated_resume_at = from_iso(payload.get("estimated_resume_time"))
        if pause_started_at is None or estimated_resume_at is None:
            raise ValueError("Pause marker is missing pause_time or estimated_resume_time.")
        return cls(
            active=bool(payload.get("active", True)),
            task_id=payload.get("current_task_id"),
            detected_pattern=str(payload.get("detected_pattern", "")),
            occurrence_count=int(payload.get("occurrence_count", 1)),
            pause_started_at=pause_started_at,
            estimated_resume_at=estimated_resume_at,
            wait_seconds=int(payload.get("estimated_wait_time", 0)),
            pause_reason=str(payload.get("pause_reason", PauseReason.USAGE_LIMIT.value)),
        )


@dataclass(slots=True)
class Checkpoint:
    """In-flight task snapshot that lets a restarted process resume the same point."""

    task_id: str | None
    reason: str
    pattern: str
    created_at: datetime
    estimated_resume_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "reason": self.reason,
            "pattern": self.pattern,
            "created_at": to_iso(self.created_at),
            "estimated_resume_at": to_iso(self.estimated_resume_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Checkpoint:
        created_at = from_iso(payload.get("created_at"))
        estimated_resume_at = from_iso(payload.get("estimated_resume_at"))
        if created_at is None or estimated_resume_at is None:
            raise ValueError("Checkpoint is missing created_at or estimated_resume_at.")
        return cls(
            task_id=payload.get("task_id"),
            reason=str(payload.get("reason", "")),
            pattern=str(payload.get("pattern", "")),
            created_at=created_at,
            estimated_resume_at=estimated_resume_at,
        )


@dataclass(slots=True)
class Retried:
    """Failure handled by scheduling another attempt."""

    task_id: str
    retry_count: int
    delay_seconds: int


@dataclass(slots=True)
class PermanentlyFailed:
    """Failure handled by giving up on the task."""

    task_id: str
    retry_count: int
    queue_paused: bool
    escalated: bool = False

    @property
    def error(self) -> PermanentFailure:
        return PermanentFailure(self.task_id, self.retry_count)


@dataclass(slots=True)
class Superseded:
    """Failure ignored because someone else already moved the task on."""

    task_id: str
    status: TaskStatus


FailureOutcome = Retried | PermanentlyFailed | Superseded


class MonitorState(str, Enum):
    """Terminal states of one completion wait."""

    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    UNAVAILABLE = "unavailable"
    STOPPED = "stopped"


@dataclass(slots=True)
class MonitorResult:
    """Completion monitor verdict for one task execution."""

    state: MonitorState
    task_id: str
    elapsed_seconds: float
    polls: int
    output: str = ""
    matched_pattern: str | None = None
    timeout_seconds: float = 0.0

    @property
    def error(self) -> TaskTimeoutError | None:
        if self.state != MonitorState.TIMED_OUT:
            return None
        return TaskTimeoutError(self.task_id, self.timeout_seconds)
