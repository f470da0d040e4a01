"""In-memory read index over the queue document, invalidated by on-disk modification."""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from auto_resume.queue.common import utc_now
from auto_resume.queue.errors import PersistenceError
from auto_resume.queue.models import PauseReason, QueueDocument, Task, TaskStatus
from auto_resume.queue.store import ModificationMarker, QueueStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CacheIndex:
    """Derived snapshot of one queue document version."""

    task_index: dict[str, Task]
    pending_order: list[str]
    status_counts: dict[TaskStatus, int]
    paused: bool
    pause_reason: PauseReason | None
    source_mtime: ModificationMarker | None

    @classmethod
    def build(cls, document: QueueDocument, marker: ModificationMarker | None) -> CacheIndex:
        status_counts = {status: 0 for status in TaskStatus}
        task_index: dict[str, Task] = {}
        for task in document.tasks:
            task_index[task.id] = task
            status_counts[task.status] += 1
        insertion = {task.id: position for position, task in enumerate(document.tasks)}
        pending = [task for task in document.tasks if task.status == TaskStatus.PENDING]
        pending.sort(key=lambda task: (task.priority, insertion[task.id]))
        return cls(
            task_index=task_index,
            pending_order=[task.id for task in pending],
            status_counts=status_counts,
            paused=document.paused,
            pause_reason=document.pause_reason,
            source_mtime=marker,
        )


@dataclass(slots=True)
class CacheStats:
    """Cache effectiveness counters."""

    hits: int = 0
    misses: int = 0
    rebuilds: int = 0
    last_invalidation: str | None = None
    last_error: str | None = None

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total


class QueueCache:
    """Answers queue lookups from an index rebuilt whenever the document changes on disk.

    One instance is meant to be shared by every caller in a process. Other
    processes are only observed through the store's modification marker, so a
    cache is at most one access behind another writer.
    """

    def __init__(
        self,
        store: QueueStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self._clock = clock
        self._lock = threading.RLock()
        self._index: CacheIndex | None = None
        self._stats = CacheStats()

    def get_next_pending(self) -> Task | None:
        """Most urgent eligible pending task, or None when paused or nothing is ready."""

        with self._lock:
            index = self._current_index()
            if index.paused:
                return None
            now = self._clock()
            for task_id in index.pending_order:
                task = index.task_index[task_id]
                if task.is_eligible(now):
                    return copy.copy(task)
            return None

    def get(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._current_index().task_index.get(task_id)
            return copy.copy(task) if task is not None else None

    def get_eligible(self, task_id: str) -> Task | None:
        """``task_id`` if it could be dispatched right now, else None."""

        with self._lock:
            index = self._current_index()
            task = index.task_index.get(task_id)
            if index.paused or task is None or not task.is_eligible(self._clock()):
                return None
            return copy.copy(task)

    def exists(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._current_index().task_index

    def stats(self) -> dict[TaskStatus, int]:
        with self._lock:
            return dict(self._current_index().status_counts)

    def list_tasks(self, *, status: TaskStatus | None = None) -> list[Task]:
        """Tasks in document order, optionally filtered by status."""

        with self._lock:
            tasks = self._current_index().task_index.values()
            return [copy.copy(task) for task in tasks if status is None or task.status == status]

    def is_paused(self) -> bool:
        with self._lock:
            return self._current_index().paused

    def pause_reason(self) -> PauseReason | None:
        with self._lock:
            index = self._current_index()
            return index.pause_reason if index.paused else None

    def invalidate(self, reason: str) -> None:
        """Drop the index; the next access rebuilds it."""

        with self._lock:
            self._index = None
            self._stats.last_invalidation = reason
            logger.debug("Queue cache invalidated: %s", reason)

    def cache_stats(self) -> CacheStats:
        with self._lock:
            return copy.copy(self._stats)

    def _current_index(self) -> CacheIndex:
        marker = self.store.modification_marker()
        index = self._index
        if index is not None and index.source_mtime == marker:
            self._stats.hits += 1
            return index

        self._stats.misses += 1
        try:
            document = self.store.load_strict()
        except PersistenceError as error:
            self._stats.last_error = str(error)
            if index is None:
                raise
            logger.error("Queue cache rebuild failed, serving previous index: %s", error)  # noqa: TRY400
            return index

        rebuilt = CacheIndex.build(document, marker)
        self._index = rebuilt
        self._stats.rebuilds += 1
        self._stats.last_error = None
        return rebuilt
