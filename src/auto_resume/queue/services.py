"""Use-case services behind the queue command surface."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from auto_resume.config import Settings
from auto_resume.queue.backoff import BackoffController, BackoffStatistics
from auto_resume.queue.cache import CacheStats, QueueCache
from auto_resume.queue.errors import NotFoundError
from auto_resume.queue.models import BackoffState, PauseReason, Task, TaskStatus, TaskType
from auto_resume.queue.store import QueueStore
from auto_resume.queue.tasks import resolve_command

logger = logging.getLogger(__name__)

SKIPPED_REASON = "skipped by operator"
_RETRYABLE_STATUSES = frozenset(
    {
        TaskStatus.IN_PROGRESS,
        TaskStatus.FAILED,
        TaskStatus.FAILED_PERMANENT,
        TaskStatus.COMPLETED,
    },
)
_SKIPPABLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.FAILED})


@dataclass(slots=True)
class AddTask:
    """High-level command to enqueue a task."""

    task_type: TaskType
    command: str | None = None
    description: str = ""
    reference: int | None = None
    task_id: str | None = None
    priority: int | None = None
    timeout_seconds: int | None = None
    max_retries: int | None = None
    clear_context: bool | None = None


@dataclass(slots=True)
class ConfigureTask:
    """Per-task overrides; ``None`` leaves a value unchanged."""

    task_id: str
    priority: int | None = None
    timeout_seconds: int | None = None
    max_retries: int | None = None
    clear_context: bool | None = None


@dataclass(slots=True)
class QueueStatus:
    """Snapshot of queue health for operators."""

    counts: dict[TaskStatus, int]
    paused: bool
    pause_reason: PauseReason | None
    next_task: Task | None
    backoff: BackoffState | None
    cache: CacheStats


@dataclass(slots=True)
class CleanupResult:
    backups_removed: int
    completed_removed: int
    remaining_backups: list[Path] = field(default_factory=list)


class QueueService:
    """Coordinates store, cache and backoff state for operator commands."""

    def __init__(
        self,
        *,
        store: QueueStore,
        cache: QueueCache,
        backoff: BackoffController,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.backoff = backoff
        self.settings = settings

    def add_task(self, command: AddTask) -> Task:
        task = Task(
            id=command.task_id or "",
            type=command.task_type,
            command=resolve_command(
                command.task_type,
                command=command.command,
                reference=command.reference,
            ),
            description=command.description,
            priority=(
                command.priority
                if command.priority is not None
                else self.settings.queue.default_priority
            ),
            timeout_seconds=command.timeout_seconds or self.settings.queue.default_timeout_seconds,
            max_retries=(
                command.max_retries
                if command.max_retries is not None
                else self.settings.retry.max_retries
            ),
            reference=command.reference,
            clear_context=command.clear_context,
        )
        return self.store.append(task)

    def list_tasks(self, *, status: TaskStatus | None = None) -> list[Task]:
        return self.cache.list_tasks(status=status)

    def get_task(self, task_id: str) -> Task:
        task = self.cache.get(task_id)
        if task is None:
            raise NotFoundError(task_id)
        return task

    def status(self) -> QueueStatus:
        counts = self.cache.stats()
        return QueueStatus(
            counts=counts,
            paused=self.cache.is_paused(),
            pause_reason=self.cache.pause_reason(),
            next_task=self.cache.get_next_pending(),
            backoff=self.backoff.state(),
            cache=self.cache.cache_stats(),
        )

    def pause_queue(self) -> bool:
        return self.store.set_paused(PauseReason.MANUAL)

    def resume_queue(self) -> bool:
        """Lift any pause; a usage-limit pause is handed to the backoff controller."""

        usage_limited = self.cache.pause_reason() == PauseReason.USAGE_LIMIT
        if usage_limited or self.backoff.state() is not None:
            logger.info("Operator resumed the queue before the usage-limit wait ended")
            return self.backoff.resume()
        return self.store.set_unpaused()

    def clear_queue(self, *, status: TaskStatus | None = None) -> int:
        return self.store.clear(status=status)

    def retry_task(self, task_id: str) -> Task:
        """Put a finished, failed or running task back in the queue with a fresh retry budget."""

        current = self.get_task(task_id)
        if current.status not in _RETRYABLE_STATUSES:
            raise ValueError(f"Task {task_id} is {current.status.value}; nothing to retry.")
        updated = self.store.update_status_if(
            task_id,
            current.status,
            TaskStatus.PENDING,
            retry_count=0,
            available_at=None,
            last_error=None,
        )
        if updated is None:
            raise ValueError(f"Task {task_id} changed while retrying; try again.")
        return updated

    def skip_task(self, task_id: str | None = None) -> Task:
        """Give up on ``task_id`` (default: the task in progress) without pausing the queue."""

        if task_id is None:
            running = self.cache.list_tasks(status=TaskStatus.IN_PROGRESS)
            if not running:
                raise NotFoundError("<in progress>")
            task_id = running[0].id
        current = self.get_task(task_id)
        if current.status not in _SKIPPABLE_STATUSES:
            raise ValueError(f"Task {task_id} is {current.status.value}; nothing to skip.")
        updated = self.store.update_status_if(
            task_id,
            current.status,
            TaskStatus.FAILED_PERMANENT,
            last_error=SKIPPED_REASON,
            available_at=None,
        )
        if updated is None:
            raise ValueError(f"Task {task_id} changed while skipping; try again.")
        return updated

    def configure_task(self, command: ConfigureTask) -> Task:
        if not self.cache.exists(command.task_id):
            raise NotFoundError(command.task_id)
        changes: dict[str, object] = {}
        if command.priority is not None:
            changes["priority"] = command.priority
        if command.timeout_seconds is not None:
            if command.timeout_seconds <= 0:
                raise ValueError("Timeout must be a positive number of seconds.")
            changes["timeout_seconds"] = command.timeout_seconds
        if command.max_retries is not None:
            if command.max_retries < 0:
                raise ValueError("Max retries must be >= 0.")
            changes["max_retries"] = command.max_retries
        if command.clear_context is not None:
            changes["clear_context"] = command.clear_context
        if not changes:
            return self.get_task(command.task_id)
        return self.store.update_fields(command.task_id, **changes)

    def cleanup(
        self,
        *,
        backup_retention_days: int | None = None,
        completed_older_than_days: int | None = None,
    ) -> CleanupResult:
        completed_days = (
            self.settings.queue.auto_cleanup_days
            if completed_older_than_days is None
            else completed_older_than_days
        )
        completed_removed = self.store.cleanup_completed(older_than_days=completed_days)
        backups_removed = self.store.cleanup_backups(retention_days=backup_retention_days)
        return CleanupResult(
            backups_removed=backups_removed,
            completed_removed=completed_removed,
            remaining_backups=self.store.list_backups(),
        )

    def list_backups(self) -> list[Path]:
        return self.store.list_backups()

    def backoff_statistics(self) -> BackoffStatistics:
        return self.backoff.statistics()

    def reset_backoff_statistics(self) -> None:
        self.backoff.reset_statistics()
