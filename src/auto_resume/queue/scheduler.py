"""Scheduler loop that dispatches queued tasks to the execution session one at a time."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from auto_resume.queue.backoff import BackoffController
from auto_resume.queue.cache import QueueCache
from auto_resume.queue.detection import DetectionResult
from auto_resume.queue.errors import NotFoundError, PersistenceError
from auto_resume.queue.failures import classify_failure
from auto_resume.queue.models import (
    ErrorSeverity,
    MonitorResult,
    MonitorState,
    PauseReason,
    Retried,
    Superseded,
    Task,
    TaskStatus,
)
from auto_resume.queue.monitor import DEFAULT_COMPLETION_MARKER, CompletionMonitor
from auto_resume.queue.retry import RetryHandler
from auto_resume.queue.store import QueueStore
from auto_resume.queue.tasks import variant_for
from auto_resume.session.base import ExecutionSession, SessionError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SchedulerRunSummary:
    """Aggregate scheduler counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    timeouts: int = 0
    backoffs: int = 0
    resumed: int = 0
    recovered: int = 0
    paused_polls: int = 0
    idle_polls: int = 0
    superseded: int = 0

    def add(self, other: SchedulerRunSummary) -> None:
        for name in self.__slots__:
            setattr(self, name, getattr(self, name) + getattr(other, name))


class QueueScheduler:
    """Runs the check-pause, select, dispatch, monitor, classify cycle."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: QueueStore,
        cache: QueueCache,
        backoff: BackoffController,
        retry_handler: RetryHandler,
        session: ExecutionSession,
        monitor: CompletionMonitor | None = None,
        poll_interval_seconds: float = 5.0,
        check_interval_seconds: float = 5.0,
        completion_marker: str = DEFAULT_COMPLETION_MARKER,
        stale_grace_seconds: int = 300,
        clear_between_tasks: bool = True,
        clear_command: str = "/clear",
        recovery_attempts: int = 3,
    ) -> None:
        self.store = store
        self.cache = cache
        self.backoff = backoff
        self.retry_handler = retry_handler
        self.session = session
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_grace_seconds = stale_grace_seconds
        self.clear_between_tasks = clear_between_tasks
        self.clear_command = clear_command
        self.recovery_attempts = recovery_attempts
        self.monitor = monitor or CompletionMonitor(
            check_interval_seconds=check_interval_seconds,
            completion_marker=completion_marker,
            sleep=self._sleep_with_stop,
            stop_requested=lambda: self._stop_requested,
        )
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._current_task_id: str | None = None
        self._resumed_from_backoff = False
        self._resume_task_id: str | None = None
        self._last_state: MonitorState | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, reason: str = "requested") -> None:
        self._stop_requested = True
        self._stop_signal_name = reason
        if self._current_task_id is not None:
            logger.info(
                "Stop requested (%s); task %s stays in progress for recovery",
                reason,
                self._current_task_id,
            )

    def run_once(self) -> SchedulerRunSummary:
        """Run one scheduling cycle; dispatches at most one task."""

        summary = SchedulerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        try:
            recovered = self.store.recover_stale(grace_seconds=self.stale_grace_seconds)
            summary.recovered = len(recovered)
            if not self._check_paused(summary):
                return summary

            task = self._claim_task()
            if task is None:
                summary.idle_polls = 1
                return summary

            summary.processed = 1
            self._current_task_id = task.id
            self._execute(task=task, summary=summary)
        except NotFoundError as error:
            logger.warning("Task vanished from the queue while running: %s", error)
        except PersistenceError as error:
            logger.error("Queue storage failed, stopping scheduler: %s", error)  # noqa: TRY400
            self.request_stop("persistence_error")
        finally:
            self._current_task_id = None
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> SchedulerRunSummary:
        """Run cycles until the queue is idle, ``max_tasks`` were processed or a stop is requested.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = keep polling forever). Waiting out a usage-limit pause
                never counts as idle.
        """

        aggregate = SchedulerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.paused_polls and not summary.idle_polls:
                    consecutive_idle = 0
                    self._sleep_with_stop(self._backoff_poll_seconds())
                    continue

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                consecutive_idle = 0
                if self._stop_requested:
                    return aggregate
                if self.poll_interval_seconds > 0:
                    self._sleep_with_stop(self.poll_interval_seconds)

    def _check_paused(self, summary: SchedulerRunSummary) -> bool:
        """Return True when dispatching may proceed in this cycle."""

        reason = self.cache.pause_reason()
        if reason is None:
            return True
        if reason == PauseReason.USAGE_LIMIT:
            if not self.backoff.is_wait_complete():
                summary.paused_polls = 1
                return False
            checkpoint = self.backoff.checkpoint()
            if checkpoint is not None:
                logger.info(
                    "Resuming from usage-limit checkpoint: task=%s pattern=%r paused at %s",
                    checkpoint.task_id,
                    checkpoint.pattern,
                    checkpoint.created_at.isoformat(timespec="seconds"),
                )
                self._resume_task_id = checkpoint.task_id
            self.backoff.resume()
            self._resumed_from_backoff = True
            summary.resumed = 1
            return True
        summary.paused_polls = 1
        summary.idle_polls = 1
        return False

    def _claim_task(self) -> Task | None:
        if self._stop_requested:
            return None
        if self.cache.stats().get(TaskStatus.IN_PROGRESS, 0) > 0:
            logger.debug("Another task is in progress; not dispatching")
            return None
        candidate = self._checkpointed_task() or self.cache.get_next_pending()
        if candidate is None:
            return None
        claimed = self.store.claim(candidate.id)
        if claimed is None:
            logger.warning(
                "Task %s was not claimed; another scheduler got there first",
                candidate.id,
            )
        return claimed

    def _checkpointed_task(self) -> Task | None:
        """The task interrupted by the last usage-limit pause, if it can run now."""

        task_id, self._resume_task_id = self._resume_task_id, None
        if task_id is None:
            return None
        return self.cache.get_eligible(task_id)

    def _execute(self, *, task: Task, summary: SchedulerRunSummary) -> None:
        variant = variant_for(task)
        if not self._ensure_session():
            self._fail(task=task, reason="session_unresponsive", summary=summary)
            return

        if self._should_clear_context(task):
            try:
                self.session.send(self.clear_command)
            except SessionError as error:
                logger.warning("Context reset before task %s failed: %s", task.id, error)
        self._resumed_from_backoff = False

        baseline = self._read_output()
        try:
            command = variant.execute(self.session)
        except SessionError as error:
            self._fail(task=task, reason=f"dispatch failed: {error}", summary=summary)
            return
        logger.info("Task %s dispatched: %s", task.id, command)
        already_seen = f"{baseline}\n{command}"

        result = self.monitor.await_completion(
            self.session,
            task.timeout_seconds,
            task.id,
            patterns=variant.completion_patterns(),
            command=command,
            baseline=baseline,
            unavailable=lambda output: _fresh_unavailability(
                self.backoff,
                output,
                already_seen=already_seen,
            ),
        )
        self._classify(task=task, result=result, already_seen=already_seen, summary=summary)

    def _classify(
        self,
        *,
        task: Task,
        result: MonitorResult,
        already_seen: str,
        summary: SchedulerRunSummary,
    ) -> None:
        self._last_state = result.state
        if result.state == MonitorState.COMPLETED:
            if self._settle(task, TaskStatus.COMPLETED, summary=summary):
                summary.completed = 1
            return

        if result.state == MonitorState.STOPPED:
            return

        detection = _fresh_unavailability(self.backoff, result.output, already_seen=already_seen)
        if detection is not None:
            self.backoff.handle(detection, task.id)
            self._settle(task, TaskStatus.PENDING, summary=summary)
            summary.backoffs = 1
            return

        if result.state == MonitorState.TIMED_OUT:
            summary.timeouts = 1
        error = result.error
        self._fail(
            task=task,
            reason=str(error) if error else result.state.value,
            summary=summary,
            output=result.output,
            already_seen=already_seen,
        )

    def _settle(self, task: Task, status: TaskStatus, *, summary: SchedulerRunSummary) -> bool:
        """Move the running task to ``status``; False when it is no longer ours to move."""

        if self.store.update_status_if(task.id, TaskStatus.IN_PROGRESS, status) is not None:
            return True
        current = self.cache.get(task.id)
        logger.warning(
            "Task %s is %s, not in progress; run superseded and result (%s) dropped",
            task.id,
            current.status.value if current is not None else "gone",
            status.value,
        )
        summary.superseded = 1
        return False

    def _fail(  # noqa: PLR0913
        self,
        *,
        task: Task,
        reason: str,
        summary: SchedulerRunSummary,
        output: str = "",
        already_seen: str = "",
    ) -> None:
        classification = classify_failure(reason, output, already_seen=already_seen)
        if classification.severity != ErrorSeverity.UNKNOWN:
            logger.info(
                "Task %s failure classified as %s (%s)",
                task.id,
                classification.severity.value,
                classification.matched_pattern,
            )
        outcome = self.retry_handler.handle_failure(
            task.id,
            reason,
            severity=classification.severity,
        )
        if isinstance(outcome, Retried):
            summary.retried = 1
        elif isinstance(outcome, Superseded):
            summary.superseded = 1
        else:
            summary.failed = 1

    def _ensure_session(self) -> bool:
        if self.session.is_responsive():
            return True
        for attempt in range(1, self.recovery_attempts + 1):
            logger.warning(
                "Execution session unresponsive, recovery attempt %d/%d",
                attempt,
                self.recovery_attempts,
            )
            if self.session.recover() and self.session.is_responsive():
                return True
        return False

    def _should_clear_context(self, task: Task) -> bool:
        if self._resumed_from_backoff:
            return False
        if task.clear_context is not None:
            return task.clear_context
        if self._last_state in {MonitorState.TIMED_OUT, MonitorState.UNAVAILABLE}:
            return False
        return self.clear_between_tasks

    def _read_output(self) -> str:
        try:
            return self.session.read_recent_output()
        except SessionError as error:
            logger.warning("Cannot read session output before dispatch: %s", error)
            return ""

    def _backoff_poll_seconds(self) -> float:
        interval = self.poll_interval_seconds if self.poll_interval_seconds > 0 else 1.0
        return max(0.1, min(interval, self.backoff.remaining_seconds()))

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _fresh_unavailability(
    backoff: BackoffController,
    output: str,
    *,
    already_seen: str,
) -> DetectionResult | None:
    """Detection in ``output`` that was not already on screen before dispatch."""

    detection = backoff.detect(output)
    if detection is None:
        return None
    needle = detection.matched_text.lower()
    if output.lower().count(needle) <= already_seen.lower().count(needle):
        return None
    return detection
