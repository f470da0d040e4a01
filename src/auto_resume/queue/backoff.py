"""Usage-limit backoff: wait computation, pause marker and recovery checkpoint."""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from auto_resume.config import BackoffSettings
from auto_resume.queue.common import load_json, local_now, to_iso, write_json_atomic
from auto_resume.queue.detection import DetectionResult, detect_unavailability, resolve_resume_time
from auto_resume.queue.errors import DetectionAmbiguousError, PersistenceError
from auto_resume.queue.models import BackoffState, Checkpoint, PauseReason
from auto_resume.queue.store import QueueStore

logger = logging.getLogger(__name__)

PAUSE_MARKER_NAME = "usage-limit-pause.marker"
HISTORY_FILE_NAME = "backoff-history.json"
CHECKPOINT_DIR_NAME = "checkpoints"
CHECKPOINT_FILE_NAME = "checkpoint.json"


@dataclass(slots=True)
class BackoffStatistics:
    """Aggregated usage-limit history for operators."""

    total_occurrences: int
    unique_patterns: int
    per_pattern: dict[str, int]
    active: BackoffState | None
    recent_events: list[dict[str, Any]] = field(default_factory=list)


class BackoffController:
    """Owns the usage-limit pause lifecycle for one queue directory.

    Occurrence counts are kept per ``(task, pattern)`` pair and drive the
    exponential wait for generic markers. A time-specific marker ("try again
    at 3pm") is waited out exactly, without the exponential policy or its cap.
    """

    def __init__(
        self,
        store: QueueStore,
        *,
        settings: BackoffSettings | None = None,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        self.store = store
        self.settings = settings or BackoffSettings()
        self._clock = clock
        self._occurrences: dict[str, int] = {}
        self._events: list[dict[str, Any]] = []
        self._load_history()

    @property
    def marker_path(self) -> Path:
        return self.store.queue_dir / PAUSE_MARKER_NAME

    @property
    def checkpoint_path(self) -> Path:
        return self.store.queue_dir / CHECKPOINT_DIR_NAME / CHECKPOINT_FILE_NAME

    @property
    def history_path(self) -> Path:
        return self.store.queue_dir / HISTORY_FILE_NAME

    def detect(self, output_text: str) -> DetectionResult | None:
        return detect_unavailability(output_text)

    def compute_wait_seconds(self, detection: DetectionResult, history: int) -> int:
        """Seconds to wait for ``detection`` after ``history`` earlier hits of its pattern."""

        settings = self.settings
        if detection.is_time_specific:
            now = self._clock()
            try:
                resume_at = resolve_resume_time(detection, now)
            except DetectionAmbiguousError as error:
                logger.warning("Falling back to exponential backoff: %s", error)
            else:
                wait = math.ceil((resume_at - now).total_seconds())
                return max(wait, settings.min_wait_seconds)

        occurrence = max(1, history + 1)
        wait = settings.base_cooldown_seconds * settings.backoff_factor ** (occurrence - 1)
        wait = min(wait, settings.max_wait_seconds)
        return max(round(wait), settings.min_wait_seconds)

    def occurrences(self, task_id: str | None, pattern: str) -> int:
        return self._occurrences.get(_history_key(task_id, pattern), 0)

    def handle(self, detection: DetectionResult, task_id: str | None) -> BackoffState:
        """Compute the wait for ``detection`` and pause the queue for it."""

        prior = self.occurrences(task_id, detection.pattern)
        active = self.state()
        if _same_pause(active, task_id, detection.pattern):
            prior = max(0, active.occurrence_count - 1)
        wait_seconds = self.compute_wait_seconds(detection, prior)
        return self.pause(wait_seconds, task_id, detection.pattern)

    def pause(self, wait_seconds: int, task_id: str | None, pattern: str) -> BackoffState:
        """Persist the pause marker and checkpoint, and pause the queue.

        Calling it again for the pause that is already active only moves the
        resume estimate; the occurrence count and checkpoint are not duplicated.
        """

        now = self._clock()
        active = self.state()
        repeated = _same_pause(active, task_id, pattern)
        if repeated:
            occurrence_count = active.occurrence_count
            started_at = active.pause_started_at
        else:
            key = _history_key(task_id, pattern)
            occurrence_count = self._occurrences.get(key, 0) + 1
            self._occurrences[key] = occurrence_count
            started_at = now

        resume_at = now + timedelta(seconds=wait_seconds)
        state = BackoffState(
            active=True,
            task_id=task_id,
            detected_pattern=pattern,
            occurrence_count=occurrence_count,
            pause_started_at=started_at,
            estimated_resume_at=resume_at,
            wait_seconds=wait_seconds,
        )
        checkpoint = Checkpoint(
            task_id=task_id,
            reason=PauseReason.USAGE_LIMIT.value,
            pattern=pattern,
            created_at=started_at,
            estimated_resume_at=resume_at,
        )
        if not repeated:
            self._record_event(state)
        self._write(self.marker_path, state.to_dict())
        self._write(self.checkpoint_path, checkpoint.to_dict())
        self._save_history()
        self.store.set_paused(PauseReason.USAGE_LIMIT)
        logger.info(
            "Usage limit (%s) for task %s: pausing %ds until %s (occurrence %d)",
            pattern,
            task_id or "-",
            wait_seconds,
            resume_at.isoformat(timespec="seconds"),
            occurrence_count,
        )
        return state

    def is_wait_complete(self) -> bool:
        """True when no pause is active or its estimated resume time has passed."""

        state = self.state()
        if state is None or not state.active:
            return True
        return self._clock() >= state.estimated_resume_at

    def remaining_seconds(self) -> float:
        state = self.state()
        if state is None or not state.active:
            return 0.0
        return max(0.0, (state.estimated_resume_at - self._clock()).total_seconds())

    def resume(self) -> bool:
        """Clear the pause marker and checkpoint, and un-pause a usage-limit pause.

        Returns True when anything was cleared.
        """

        had_marker = self.marker_path.exists()
        self.marker_path.unlink(missing_ok=True)
        self.checkpoint_path.unlink(missing_ok=True)
        unpaused = self.store.set_unpaused(reason=PauseReason.USAGE_LIMIT)
        if had_marker or unpaused:
            logger.info("Usage-limit pause cleared; queue processing resumes")
        return had_marker or unpaused

    def state(self) -> BackoffState | None:
        payload = self._read(self.marker_path)
        if payload is None:
            return None
        try:
            return BackoffState.from_dict(payload)
        except (TypeError, ValueError) as error:
            logger.error("Ignoring unreadable pause marker %s: %s", self.marker_path, error)  # noqa: TRY400
            return None

    def checkpoint(self) -> Checkpoint | None:
        payload = self._read(self.checkpoint_path)
        if payload is None:
            return None
        try:
            return Checkpoint.from_dict(payload)
        except (TypeError, ValueError) as error:
            logger.error("Ignoring unreadable checkpoint %s: %s", self.checkpoint_path, error)  # noqa: TRY400
            return None

    def statistics(self) -> BackoffStatistics:
        per_pattern: dict[str, int] = {}
        for key, count in self._occurrences.items():
            pattern = key.split(":", 1)[1]
            per_pattern[pattern] = per_pattern.get(pattern, 0) + count
        return BackoffStatistics(
            total_occurrences=sum(self._occurrences.values()),
            unique_patterns=len(per_pattern),
            per_pattern=per_pattern,
            active=self.state(),
            recent_events=list(self._events),
        )

    def reset_statistics(self) -> None:
        """Forget occurrence counts and pause history."""

        self._occurrences.clear()
        self._events.clear()
        self._save_history()
        logger.info("Usage-limit statistics reset")

    def _record_event(self, state: BackoffState) -> None:
        self._events.append(
            {
                "task_id": state.task_id,
                "pattern": state.detected_pattern,
                "occurrence_count": state.occurrence_count,
                "wait_seconds": state.wait_seconds,
                "paused_at": to_iso(self._clock()),
                "estimated_resume_at": to_iso(state.estimated_resume_at),
            },
        )
        limit = max(0, self.settings.history_limit)
        if len(self._events) > limit:
            del self._events[: len(self._events) - limit]

    def _load_history(self) -> None:
        payload = self._read(self.history_path)
        if payload is None:
            return
        occurrences = payload.get("occurrences", {})
        events = payload.get("events", [])
        if isinstance(occurrences, dict):
            self._occurrences = {str(key): int(value) for key, value in occurrences.items()}
        if isinstance(events, list):
            self._events = [event for event in events if isinstance(event, dict)]

    def _save_history(self) -> None:
        self._write(
            self.history_path,
            {"occurrences": self._occurrences, "events": self._events},
        )

    def _read(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            return load_json(path)
        except (OSError, json.JSONDecodeError, TypeError) as error:
            logger.error("Cannot read %s: %s", path, error)  # noqa: TRY400
            return None

    def _write(self, path: Path, payload: dict[str, Any]) -> None:
        try:
            write_json_atomic(path, payload)
        except (OSError, TypeError, ValueError) as error:
            raise PersistenceError(f"Cannot write {path}: {error}") from error


def _history_key(task_id: str | None, pattern: str) -> str:
    return f"{task_id or '-'}:{pattern}"


def _same_pause(state: BackoffState | None, task_id: str | None, pattern: str) -> bool:
    return (
        state is not None
        and state.active
        and state.task_id == task_id
        and state.detected_pattern == pattern
    )
