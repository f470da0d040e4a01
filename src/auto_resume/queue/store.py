"""Durable JSON-document storage for the task queue."""

from __future__ import annotations

import json
import logging
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

from auto_resume.queue.common import load_json, utc_now, write_json_atomic
from auto_resume.queue.errors import NotFoundError, PersistenceError
from auto_resume.queue.models import (
    PauseReason,
    QueueDocument,
    Task,
    TaskStatus,
    ensure_transition,
    generate_task_id,
    validate_priority,
    validate_task_id,
)

logger = logging.getLogger(__name__)

QUEUE_FILE_NAME = "task-queue.json"
BACKUP_DIR_NAME = "backups"

T = TypeVar("T")

_MUTABLE_TASK_FIELDS = frozenset(
    {
        "priority",
        "timeout_seconds",
        "max_retries",
        "retry_count",
        "clear_context",
        "available_at",
        "last_error",
        "description",
        "command",
    },
)


@dataclass(frozen=True, slots=True)
class ModificationMarker:
    """Identity of one published document version on disk.

    ``generation`` counts writes made through this store instance, so a
    recycled inode with an identical size and timestamp is still told apart.
    """

    mtime_ns: int
    inode: int
    size: int
    generation: int = 0


class QueueStore:
    """Owns the queue document and publishes every change with an atomic rename.

    Writers never lock. Each read-modify-write remembers the document
    ``revision`` it started from and re-checks it just before publishing; if
    another process published in between, the change is replayed on top of
    the newer document.
    """

    def __init__(  # noqa: PLR0913
        self,
        queue_dir: Path,
        *,
        write_retries: int = 3,
        retry_delay_seconds: float = 0.05,
        backup_retention_days: int = 30,
        max_conflict_retries: int = 10,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.queue_dir = queue_dir
        self.write_retries = max(1, write_retries)
        self.retry_delay_seconds = retry_delay_seconds
        self.backup_retention_days = backup_retention_days
        self.max_conflict_retries = max(1, max_conflict_retries)
        self._clock = clock
        self._corrupt_marker: ModificationMarker | None = None
        self._generation = 0

    @property
    def path(self) -> Path:
        return self.queue_dir / QUEUE_FILE_NAME

    @property
    def backups_dir(self) -> Path:
        return self.queue_dir / BACKUP_DIR_NAME

    def modification_marker(self) -> ModificationMarker | None:
        """Current on-disk version identity, or None when no document exists yet."""

        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return None
        return ModificationMarker(
            mtime_ns=stat.st_mtime_ns,
            inode=stat.st_ino,
            size=stat.st_size,
            generation=self._generation,
        )

    def load_strict(self) -> QueueDocument:
        """Read the document, raising PersistenceError when it is unreadable or corrupt."""

        if not self.path.exists():
            return QueueDocument()
        try:
            payload = load_json(self.path)
            return QueueDocument.from_dict(payload)
        except (OSError, json.JSONDecodeError, TypeError, ValueError, KeyError) as error:
            raise PersistenceError(f"Queue document {self.path} is unreadable: {error}") from error

    def load(self) -> QueueDocument:
        """Read the document, falling back to an empty queue when it cannot be parsed."""

        try:
            return self.load_strict()
        except PersistenceError as error:
            logger.error("Falling back to an empty queue: %s", error)  # noqa: TRY400
            self._preserve_corrupt_document()
            return QueueDocument()

    def save(self, document: QueueDocument) -> None:
        """Publish ``document`` as the next revision."""

        document.revision += 1
        document.last_modified = self._clock()
        self._write(document)

    def mutate(self, change: Callable[[QueueDocument], T]) -> T:
        """Apply ``change`` to the latest document and publish it if anything changed.

        ``change`` may be called more than once when a concurrent writer wins
        the race; it must derive everything from the document it is given.
        Exceptions raised by ``change`` abort the mutation without a write.
        """

        for attempt in range(1, self.max_conflict_retries + 1):
            document = self.load()
            base_revision = document.revision
            before = document.to_dict()
            result = change(document)
            if document.to_dict() == before:
                return result
            if self._read_revision() != base_revision:
                logger.warning(
                    "Queue document changed concurrently (attempt %d/%d), replaying update",
                    attempt,
                    self.max_conflict_retries,
                )
                continue
            self.save(document)
            return result
        raise PersistenceError(
            f"Queue document kept changing concurrently; gave up after "
            f"{self.max_conflict_retries} attempts.",
        )

    def append(self, task: Task) -> Task:
        """Insert a new task at the end of the queue, assigning an id when missing."""

        if not task.id:
            task.id = generate_task_id(task.type.value)
        validate_task_id(task.id)
        validate_priority(task.priority)

        def _append(document: QueueDocument) -> Task:
            if document.find(task.id) is not None:
                raise ValueError(f"Task id already exists: {task.id}")
            now = self._clock()
            task.created_at = now
            task.updated_at = now
            document.tasks.append(task)
            return task

        appended = self.mutate(_append)
        logger.info("Task %s added (priority=%d)", appended.id, appended.priority)
        return appended

    def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        error: str | None = None,
    ) -> Task:
        """Move a task to ``status`` regardless of its current state (lifecycle still applies).

        Asking for the status the task already has is a no-op: nothing is
        written, so ``updated_at`` (the stale-recovery clock) is not touched.
        """

        def _update(document: QueueDocument) -> Task:
            task = require_task(document, task_id)
            if task.status == status:
                return task
            ensure_transition(task_id, task.status, status)
            self._apply_status(task, status, error=error)
            return task

        return self.mutate(_update)

    def update_status_if(
        self,
        task_id: str,
        expected: TaskStatus,
        status: TaskStatus,
        **changes: Any,
    ) -> Task | None:
        """Compare-and-set: change status only if the task is currently ``expected``.

        Returns the updated task, or None when the task is in another state
        (for example another scheduler instance already claimed it).
        """

        unknown = set(changes) - _MUTABLE_TASK_FIELDS
        if unknown:
            raise ValueError(f"Unsupported task fields: {sorted(unknown)}")

        def _update(document: QueueDocument) -> Task | None:
            task = require_task(document, task_id)
            if task.status != expected:
                return None
            ensure_transition(task_id, task.status, status)
            for name, value in changes.items():
                setattr(task, name, value)
            self._apply_status(task, status, error=changes.get("last_error"))
            return task

        return self.mutate(_update)

    def claim(self, task_id: str) -> Task | None:
        """Move a pending task to ``in_progress`` unless any task is already running.

        Both checks happen inside one read-modify-write, so two schedulers
        sharing a queue directory never run tasks side by side. Returns None
        when the claim is refused.
        """

        def _claim(document: QueueDocument) -> Task | None:
            task = require_task(document, task_id)
            if task.status != TaskStatus.PENDING:
                logger.debug("Task %s is %s, not claimable", task_id, task.status.value)
                return None
            running = [other.id for other in document.in_progress()]
            if running:
                logger.debug("Task %s not claimed, %s still in progress", task_id, running[0])
                return None
            self._apply_status(task, TaskStatus.IN_PROGRESS, error=None)
            return task

        return self.mutate(_claim)

    def update_fields(self, task_id: str, **changes: Any) -> Task:
        """Change task attributes other than status."""

        unknown = set(changes) - _MUTABLE_TASK_FIELDS
        if unknown:
            raise ValueError(f"Unsupported task fields: {sorted(unknown)}")
        if "priority" in changes:
            validate_priority(changes["priority"])

        def _update(document: QueueDocument) -> Task:
            task = require_task(document, task_id)
            for name, value in changes.items():
                setattr(task, name, value)
            task.updated_at = self._clock()
            return task

        return self.mutate(_update)

    def set_paused(self, reason: PauseReason) -> bool:
        """Pause dispatching. Returns False if the queue was already paused for ``reason``."""

        def _pause(document: QueueDocument) -> bool:
            if document.paused and document.pause_reason == reason:
                return False
            document.pause(reason, now=self._clock())
            return True

        changed = self.mutate(_pause)
        if changed:
            logger.info("Queue paused (reason=%s)", reason.value)
        return changed

    def set_unpaused(self, *, reason: PauseReason | None = None) -> bool:
        """Resume dispatching; with ``reason`` only when the current pause has that reason."""

        def _unpause(document: QueueDocument) -> bool:
            if not document.paused:
                return False
            if reason is not None and document.pause_reason != reason:
                return False
            document.unpause()
            return True

        changed = self.mutate(_unpause)
        if changed:
            logger.info("Queue resumed")
        return changed

    def recover_stale(self, *, grace_seconds: int) -> list[str]:
        """Return in-progress tasks abandoned past their timeout to ``pending``."""

        now = self._clock()

        def _recover(document: QueueDocument) -> list[str]:
            recovered: list[str] = []
            for task in document.in_progress():
                allowance = timedelta(seconds=task.timeout_seconds + grace_seconds)
                if task.updated_at + allowance >= now:
                    continue
                task.status = TaskStatus.PENDING
                task.updated_at = now
                task.last_error = "recovered after interrupted execution"
                recovered.append(task.id)
            return recovered

        recovered = self.mutate(_recover)
        for task_id in recovered:
            logger.warning("Recovered stale in-progress task %s", task_id)
        return recovered

    def clear(self, *, status: TaskStatus | None = None) -> int:
        """Remove all tasks (or only tasks in ``status``) after taking a backup."""

        self.snapshot_backup("before-clear")

        def _clear(document: QueueDocument) -> int:
            if status is None:
                keep: list[Task] = []
            else:
                keep = [task for task in document.tasks if task.status != status]
            removed = len(document.tasks) - len(keep)
            document.tasks = keep
            return removed

        removed = self.mutate(_clear)
        logger.info("Cleared %d task(s) from queue", removed)
        return removed

    def cleanup_completed(self, *, older_than_days: int) -> int:
        """Drop completed tasks whose completion is older than the cutoff."""

        cutoff = self._clock() - timedelta(days=older_than_days)

        def _is_expired(task: Task) -> bool:
            finished = task.completed_at or task.updated_at
            return task.status == TaskStatus.COMPLETED and finished < cutoff

        if not any(_is_expired(task) for task in self.load().tasks):
            return 0
        self.snapshot_backup("before-cleanup")

        def _cleanup(document: QueueDocument) -> int:
            keep = [task for task in document.tasks if not _is_expired(task)]
            removed = len(document.tasks) - len(keep)
            document.tasks = keep
            return removed

        return self.mutate(_cleanup)

    def snapshot_backup(self, reason: str) -> Path:
        """Copy the current document to ``backups/backup-{timestamp}-{reason}.json``."""

        self.backups_dir.mkdir(parents=True, exist_ok=True)
        stamp = self._clock().strftime("%Y%m%d-%H%M%S")
        target = self.backups_dir / f"backup-{stamp}-{reason}.json"
        counter = 1
        while target.exists():
            target = self.backups_dir / f"backup-{stamp}-{reason}-{counter}.json"
            counter += 1
        try:
            if self.path.exists():
                shutil.copyfile(self.path, target)
            else:
                write_json_atomic(target, QueueDocument().to_dict())
        except OSError as error:
            raise PersistenceError(f"Cannot write backup {target}: {error}") from error
        logger.info("Queue backup created: %s", target.name)
        return target

    def list_backups(self) -> list[Path]:
        """Backups, newest first."""

        if not self.backups_dir.exists():
            return []
        backups = [path for path in self.backups_dir.glob("backup-*.json") if path.is_file()]
        return sorted(backups, key=lambda path: path.stat().st_mtime, reverse=True)

    def cleanup_backups(self, *, retention_days: int | None = None) -> int:
        """Delete backups older than the retention window. Returns the number removed."""

        days = self.backup_retention_days if retention_days is None else retention_days
        cutoff = time.time() - days * 86_400
        removed = 0
        for path in self.list_backups():
            if path.stat().st_mtime < cutoff:
                path.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info("Removed %d backup(s) older than %d day(s)", removed, days)
        return removed

    def _apply_status(self, task: Task, status: TaskStatus, *, error: str | None) -> None:
        now = self._clock()
        task.status = status
        task.updated_at = now
        if status == TaskStatus.COMPLETED:
            task.completed_at = now
            task.available_at = None
        if error is not None:
            task.last_error = error

    def _write(self, document: QueueDocument) -> None:
        payload = document.to_dict()
        last_error: Exception | None = None
        for attempt in range(1, self.write_retries + 1):
            try:
                write_json_atomic(self.path, payload)
                self._generation += 1
                return
            except (OSError, TypeError, ValueError) as error:
                last_error = error
                logger.warning(
                    "Queue write failed (attempt %d/%d): %s",
                    attempt,
                    self.write_retries,
                    error,
                )
                if attempt < self.write_retries:
                    time.sleep(self.retry_delay_seconds)
        raise PersistenceError(
            f"Cannot write queue document {self.path} after {self.write_retries} attempts: "
            f"{last_error}",
        ) from last_error

    def _read_revision(self) -> int:
        try:
            return self.load_strict().revision
        except PersistenceError:
            return 0

    def _preserve_corrupt_document(self) -> None:
        marker = self.modification_marker()
        if marker is None or marker == self._corrupt_marker:
            return
        self._corrupt_marker = marker
        try:
            self.snapshot_backup("corrupt")
        except PersistenceError as error:
            logger.error("Could not preserve corrupt queue document: %s", error)  # noqa: TRY400


def require_task(document: QueueDocument, task_id: str) -> Task:
    task = document.find(task_id)
    if task is None:
        raise NotFoundError(task_id)
    return task

