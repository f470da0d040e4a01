"""Deterministic detection of "temporarily unavailable" signals in session output."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from auto_resume.queue.errors import DetectionAmbiguousError

logger = logging.getLogger(__name__)

GENERIC_KIND = "generic"
TIME_SPECIFIC_KIND = "time_specific"

_GENERIC_PATTERNS: tuple[str, ...] = (
    "daily usage limit",
    "hourly rate limit",
    "api quota exceeded",
    "service temporarily overloaded",
    "request limit exceeded",
    "please try again later",
    "too many requests",
    "temporarily unavailable",
    "quota exceeded",
    "usage limit",
    "rate limit",
)

_TIME_PHRASES: tuple[str, ...] = (
    "available again at",
    "blocked until",
    "try again at",
    "available at",
    "wait until",
    "retry at",
    "resets at",
    "reset at",
)

_TIME_MARKER_RE = re.compile(
    r"(?P<phrase>"
    + "|".join(re.escape(phrase) for phrase in _TIME_PHRASES)
    + r")\s+"
    r"(?P<before>tomorrow\s+(?:at\s+)?)?"
    r"(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?"
    r"\s*(?P<meridiem>[ap]\.?\s?m\.?)?"
    r"(?P<after>\s+tomorrow)?",
    re.IGNORECASE,
)


@dataclass(slots=True)
class DetectionResult:
    """Unavailability signal found in session output."""

    kind: str
    pattern: str
    matched_text: str
    hour: int | None = None
    minute: int | None = None
    tomorrow: bool = False
    ambiguous: bool = False

    @property
    def is_time_specific(self) -> bool:
        return self.kind == TIME_SPECIFIC_KIND


def detect_unavailability(output_text: str) -> DetectionResult | None:
    """Scan output for a time-specific marker first, then for generic markers."""

    if not output_text:
        return None
    haystack = output_text.lower()

    ambiguous_text: str | None = None
    for match in _TIME_MARKER_RE.finditer(haystack):
        if match.group("minute") is None and match.group("meridiem") is None:
            # A bare number ("retry at 5") is not a clock time.
            continue
        try:
            hour, minute = parse_clock_time(
                match.group("hour"),
                match.group("minute"),
                match.group("meridiem"),
            )
        except DetectionAmbiguousError as error:
            logger.warning("Unparseable resume time in session output: %s", error)
            ambiguous_text = match.group(0)
            continue
        return DetectionResult(
            kind=TIME_SPECIFIC_KIND,
            pattern=match.group("phrase"),
            matched_text=match.group(0).strip(),
            hour=hour,
            minute=minute,
            tomorrow=bool(match.group("before") or match.group("after")),
        )

    generic = _first_match(haystack, _GENERIC_PATTERNS)
    if generic is not None:
        return DetectionResult(
            kind=GENERIC_KIND,
            pattern=generic,
            matched_text=generic,
            ambiguous=ambiguous_text is not None,
        )
    if ambiguous_text is not None:
        phrase_match = _TIME_MARKER_RE.match(ambiguous_text)
        pattern = phrase_match.group("phrase") if phrase_match else ambiguous_text
        return DetectionResult(
            kind=GENERIC_KIND,
            pattern=pattern,
            matched_text=ambiguous_text.strip(),
            ambiguous=True,
        )
    return None


def parse_clock_time(
    hour_text: str,
    minute_text: str | None,
    meridiem_text: str | None,
) -> tuple[int, int]:
    """Normalize ``hour[:minute] [am|pm]`` to a 24-hour ``(hour, minute)`` pair."""

    try:
        hour = int(hour_text)
        minute = int(minute_text) if minute_text else 0
    except ValueError as error:
        raise DetectionAmbiguousError(f"not a clock time: {hour_text}:{minute_text}") from error

    if not 0 <= minute <= 59:
        raise DetectionAmbiguousError(f"minute out of range: {minute}")

    if meridiem_text:
        meridiem = re.sub(r"[^ap]", "", meridiem_text.lower())
        if not 1 <= hour <= 12:
            raise DetectionAmbiguousError(f"12-hour value out of range: {hour}{meridiem_text}")
        if meridiem == "a":
            hour = 0 if hour == 12 else hour
        else:
            hour = 12 if hour == 12 else hour + 12

    if not 0 <= hour <= 23:
        raise DetectionAmbiguousError(f"hour out of range: {hour}")
    return hour, minute


def resolve_resume_time(detection: DetectionResult, now: datetime) -> datetime:
    """Absolute resume timestamp for a time-specific detection, in ``now``'s timezone.

    Today's occurrence is used when it is strictly in the future, otherwise the
    next day. An explicit "tomorrow" always means the next day.
    """

    if detection.hour is None:
        raise DetectionAmbiguousError(f"detection has no clock time: {detection.matched_text}")
    candidate = now.replace(
        hour=detection.hour,
        minute=detection.minute or 0,
        second=0,
        microsecond=0,
    )
    if detection.tomorrow or candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
