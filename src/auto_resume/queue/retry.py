"""Retry scheduling and escalation to permanent failure."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from auto_resume.config import RetrySettings
from auto_resume.queue.common import utc_now
from auto_resume.queue.models import (
    ErrorSeverity,
    FailureOutcome,
    PauseReason,
    PermanentlyFailed,
    QueueDocument,
    Retried,
    Superseded,
    TaskStatus,
    ensure_transition,
)
from auto_resume.queue.store import QueueStore, require_task

logger = logging.getLogger(__name__)

_FAILABLE_STATUSES = frozenset({TaskStatus.IN_PROGRESS, TaskStatus.FAILED})


class RetryHandler:
    """Decides between another attempt and permanent failure for a failed task."""

    def __init__(
        self,
        store: QueueStore,
        *,
        settings: RetrySettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings or RetrySettings()
        self._clock = clock

    def compute_delay(self, retry_count: int) -> int:
        """Linear delay for the attempt after ``retry_count`` earlier retries."""

        delay = self.settings.base_delay_seconds * (retry_count + 1)
        return min(delay, self.settings.max_delay_seconds)

    def handle_failure(
        self,
        task_id: str,
        reason: str,
        *,
        severity: ErrorSeverity = ErrorSeverity.UNKNOWN,
    ) -> FailureOutcome:
        """Record a failed attempt of ``task_id`` and either reschedule it or give up.

        The whole decision is one document write, so the queue pause for a
        permanent failure lands together with the status change. A critical
        ``severity`` skips the remaining retries when escalation is enabled.
        A task that is no longer running (re-queued by an operator, recovered
        by another instance) is left untouched and reported as ``Superseded``.
        """

        escalate = severity == ErrorSeverity.CRITICAL and self.settings.escalate_critical_errors

        def _handle(document: QueueDocument) -> FailureOutcome:
            task = require_task(document, task_id)
            if task.status == TaskStatus.FAILED_PERMANENT:
                return PermanentlyFailed(
                    task_id=task.id,
                    retry_count=task.retry_count,
                    queue_paused=False,
                )
            if task.status not in _FAILABLE_STATUSES:
                return Superseded(task_id=task.id, status=task.status)

            now = self._clock()
            task.last_error = reason
            task.updated_at = now
            if task.status == TaskStatus.IN_PROGRESS:
                task.status = TaskStatus.FAILED
            if task.retry_count < task.max_retries and not escalate:
                ensure_transition(task.id, task.status, TaskStatus.PENDING)
                delay = self.compute_delay(task.retry_count)
                task.retry_count += 1
                task.status = TaskStatus.PENDING
                task.available_at = now + timedelta(seconds=delay)
                return Retried(task_id=task.id, retry_count=task.retry_count, delay_seconds=delay)

            ensure_transition(task.id, task.status, TaskStatus.FAILED_PERMANENT)
            task.status = TaskStatus.FAILED_PERMANENT
            task.available_at = None
            queue_paused = False
            if self.settings.auto_pause_on_permanent_failure:
                document.pause(PauseReason.PERMANENT_FAILURE, now=now)
                queue_paused = True
            return PermanentlyFailed(
                task_id=task.id,
                retry_count=task.retry_count,
                queue_paused=queue_paused,
                escalated=escalate,
            )

        outcome = self.store.mutate(_handle)
        if isinstance(outcome, Retried):
            logger.info(
                "Task %s failed (%s); retry %d scheduled in %ds",
                task_id,
                reason,
                outcome.retry_count,
                outcome.delay_seconds,
            )
        elif isinstance(outcome, Superseded):
            logger.warning(
                "Task %s failed (%s) but is already %s; run superseded, nothing recorded",
                task_id,
                reason,
                outcome.status.value,
            )
        else:
            if outcome.escalated:
                logger.error("Task %s hit a critical error; retries skipped", task_id)
            logger.error("%s: %s", outcome.error, reason)
            if outcome.queue_paused:
                logger.warning("Queue auto-paused after permanent failure of task %s", task_id)
        return outcome
