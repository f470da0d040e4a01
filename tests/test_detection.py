from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from auto_resume.queue.detection import (
    GENERIC_KIND,
    TIME_SPECIFIC_KIND,
    DetectionResult,
    detect_unavailability,
    parse_clock_time,
    resolve_resume_time,
)
from auto_resume.queue.errors import DetectionAmbiguousError

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Usage Limit Detection"),
]


def test_generic_marker_is_detected() -> None:
    result = detect_unavailability("Error: Usage limit reached for this workspace.")

    assert result is not None
    assert result.kind == GENERIC_KIND
    assert result.pattern == "usage limit"
    assert result.is_time_specific is False


def test_longest_generic_marker_wins() -> None:
    result = detect_unavailability("Your daily usage limit was exceeded")

    assert result.pattern == "daily usage limit"


def test_time_specific_marker_with_meridiem() -> None:
    result = detect_unavailability("Claude usage limit reached. Try again at 3pm.")

    assert result.kind == TIME_SPECIFIC_KIND
    assert result.pattern == "try again at"
    assert (result.hour, result.minute) == (15, 0)
    assert result.tomorrow is False


def test_time_specific_marker_with_trailing_tomorrow() -> None:
    result = detect_unavailability("Service will be available again at 9:30am tomorrow")

    assert result.is_time_specific
    assert (result.hour, result.minute) == (9, 30)
    assert result.tomorrow is True


def test_time_specific_marker_with_leading_tomorrow() -> None:
    result = detect_unavailability("Requests blocked until tomorrow at 6:15 AM")

    assert result.pattern == "blocked until"
    assert (result.hour, result.minute) == (6, 15)
    assert result.tomorrow is True


def test_24_hour_clock_time() -> None:
    result = detect_unavailability("Limit resets at 17:45")

    assert (result.hour, result.minute) == (17, 45)


def test_bare_number_is_not_a_clock_time() -> None:
    assert detect_unavailability("retry at 5 attempts maximum") is None


def test_unparseable_time_falls_back_to_generic() -> None:
    result = detect_unavailability("Rate limit hit, try again at 13pm")

    assert result.kind == GENERIC_KIND
    assert result.pattern == "rate limit"
    assert result.ambiguous is True


@pytest.mark.parametrize("text", ["", "All tests passed", "Reviewing the limit() helper"])
def test_ordinary_output_is_not_unavailability(text: str) -> None:
    assert detect_unavailability(text) is None


@pytest.mark.parametrize(
    ("hour", "minute", "meridiem", "expected"),
    [
        ("12", None, "am", (0, 0)),
        ("12", "05", "pm", (12, 5)),
        ("1", "30", "p.m.", (13, 30)),
        ("7", "00", None, (7, 0)),
    ],
)
def test_parse_clock_time(hour: str, minute: str | None, meridiem: str | None, expected) -> None:
    assert parse_clock_time(hour, minute, meridiem) == expected


@pytest.mark.parametrize(
    ("hour", "minute", "meridiem"),
    [("25", "00", None), ("0", None, "am"), ("10", "75", None)],
)
def test_parse_clock_time_rejects_impossible_values(
    hour: str,
    minute: str | None,
    meridiem: str | None,
) -> None:
    with pytest.raises(DetectionAmbiguousError):
        parse_clock_time(hour, minute, meridiem)


def _at(hour: int, minute: int = 0, *, tomorrow: bool = False) -> DetectionResult:
    return DetectionResult(
        kind=TIME_SPECIFIC_KIND,
        pattern="try again at",
        matched_text="try again at",
        hour=hour,
        minute=minute,
        tomorrow=tomorrow,
    )


def test_resume_time_later_today() -> None:
    now = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)

    assert resolve_resume_time(_at(15), now) == datetime(2026, 3, 2, 15, 0, tzinfo=UTC)


def test_resume_time_already_passed_rolls_to_next_day() -> None:
    now = datetime(2026, 3, 2, 16, 0, tzinfo=UTC)

    assert resolve_resume_time(_at(15), now) == datetime(2026, 3, 3, 15, 0, tzinfo=UTC)
    assert resolve_resume_time(_at(16), now) == datetime(2026, 3, 3, 16, 0, tzinfo=UTC)


def test_explicit_tomorrow_always_means_next_day() -> None:
    now = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)

    resume = resolve_resume_time(_at(9, 30, tomorrow=True), now)

    assert resume == datetime(2026, 3, 3, 9, 30, tzinfo=UTC)


def test_resume_time_requires_clock_time() -> None:
    generic = DetectionResult(kind=GENERIC_KIND, pattern="rate limit", matched_text="rate limit")

    with pytest.raises(DetectionAmbiguousError):
        resolve_resume_time(generic, datetime(2026, 3, 2, 8, 0, tzinfo=UTC))
