"""Completion monitor: polls session output until a completion marker or timeout."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

from auto_resume.queue.models import MonitorResult, MonitorState
from auto_resume.session.base import ExecutionSession, SessionError

logger = logging.getLogger(__name__)

DEFAULT_COMPLETION_MARKER = "###TASK_COMPLETE###"

_ERROR_HINTS: tuple[str, ...] = (
    "traceback (most recent call last)",
    "error:",
    "exception:",
    "command not found",
    "permission denied",
)


class CompletionMonitor:
    """Waits for one running task to finish.

    Only a completion marker, the timeout, an unavailability signal (when a
    detector is supplied) or a stop request end the wait. Error-looking output
    is logged and polling continues.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        check_interval_seconds: float = 5.0,
        completion_marker: str = DEFAULT_COMPLETION_MARKER,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        stop_requested: Callable[[], bool] | None = None,
    ) -> None:
        self.check_interval_seconds = check_interval_seconds
        self.completion_marker = completion_marker
        self._monotonic = monotonic
        self._sleep = sleep
        self._stop_requested = stop_requested or (lambda: False)

    def await_completion(  # noqa: PLR0913
        self,
        session: ExecutionSession,
        timeout_seconds: float,
        task_id: str,
        *,
        patterns: Sequence[str] = (),
        command: str = "",
        baseline: str = "",
        unavailable: Callable[[str], Any] | None = None,
    ) -> MonitorResult:
        completion_patterns = _dedupe((self.completion_marker, *patterns))
        started = self._monotonic()
        reported_decile = 0
        polls = 0
        output = ""
        seen_errors: set[str] = set()

        def _finish(state: MonitorState, matched: str | None = None) -> MonitorResult:
            return MonitorResult(
                state=state,
                task_id=task_id,
                elapsed_seconds=self._monotonic() - started,
                polls=polls,
                output=output,
                matched_pattern=matched,
                timeout_seconds=timeout_seconds,
            )

        while True:
            if self._stop_requested():
                logger.info("Stop requested while monitoring task %s", task_id)
                return _finish(MonitorState.STOPPED)

            polls += 1
            try:
                output = session.read_recent_output()
            except SessionError as error:
                logger.warning("Task %s: cannot read session output: %s", task_id, error)
                output = ""

            matched = _completion_match(output, completion_patterns, command + "\n" + baseline)
            if matched is not None:
                result = _finish(MonitorState.COMPLETED, matched)
                logger.info(
                    "Task %s completed after %.0fs (%s)",
                    task_id,
                    result.elapsed_seconds,
                    matched,
                )
                return result

            if unavailable is not None and unavailable(output):
                logger.warning("Task %s: session reports it is unavailable", task_id)
                return _finish(MonitorState.UNAVAILABLE)

            _log_new_errors(task_id, output, seen_errors)

            elapsed = self._monotonic() - started
            if elapsed >= timeout_seconds:
                logger.warning("Task %s timed out after %.0fs", task_id, elapsed)
                return _finish(MonitorState.TIMED_OUT)

            decile = int(elapsed * 10 // timeout_seconds) if timeout_seconds > 0 else 0
            if decile > reported_decile:
                reported_decile = decile
                logger.info(
                    "Task %s still running: %d%% of %.0fs timeout elapsed",
                    task_id,
                    decile * 10,
                    timeout_seconds,
                )

            remaining = timeout_seconds - elapsed
            self._sleep(max(0.0, min(self.check_interval_seconds, remaining)))


def _completion_match(output: str, patterns: Sequence[str], already_seen: str) -> str | None:
    # Markers already on screen before dispatch, or echoed with the command, do not count.
    for pattern in patterns:
        if output.count(pattern) > already_seen.count(pattern):
            return pattern
    return None


def _log_new_errors(task_id: str, output: str, seen: set[str]) -> None:
    for line in output.splitlines():
        lowered = line.strip().lower()
        if not lowered or lowered in seen:
            continue
        if any(hint in lowered for hint in _ERROR_HINTS):
            seen.add(lowered)
            logger.warning("Task %s output reports an error: %s", task_id, line.strip()[:200])


def _dedupe(values: Sequence[str]) -> tuple[str, ...]:
    deduped: list[str] = []
    for value in values:
        if value and value not in deduped:
            deduped.append(value)
    return tuple(deduped)
