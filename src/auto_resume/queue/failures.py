"""Deterministic severity classification of failed task attempts."""

from __future__ import annotations

import re
from dataclasses import dataclass

from auto_resume.queue.models import ErrorSeverity

_CRITICAL_PATTERNS: tuple[str, ...] = (
    r"segmentation fault",
    r"\bsegfault\b",
    r"core dumped",
    r"out of memory",
    r"no space left on device",
    r"disk full",
    r"permission denied",
    r"access denied",
    r"authentication failed",
    r"\bauth\w*\b[^\n]*\bfail",
    r"\bunauthori[sz]ed\b",
    r"fatal error",
    r"\bpanic\b",
    r"\bcorrupt(?:ed|ion)?\b",
    r"system halt",
)
_WARNING_PATTERNS: tuple[str, ...] = (
    r"network timeout",
    r"connection (?:timeout|refused|reset|lost)",
    r"\btime(?:d)? ?out\b",
    r"temporary failure",
    r"temporar(?:y|ily) unavailable",
    r"service unavailable",
    r"bad gateway",
    r"gateway timeout",
    r"network[^\n]*error",
    r"dns[^\n]*error",
    r"host[^\n]*unreachable",
    r"no route to host",
    r"disconnected",
    r"interrupted",
    r"session_unresponsive",
    r"dispatch failed",
)
_INFO_PATTERNS: tuple[str, ...] = (
    r"command not found",
    r"file not found",
    r"directory not found",
    r"no such file",
    r"syntax error",
    r"invalid[^\n]*(?:argument|option)",
    r"parse[^\n]*error",
    r"validation[^\n]*error",
    r"config[^\n]*error",
    r"missing[^\n]*parameter",
    r"unexpected[^\n]*token",
    r"malformed",
)

_RULES: tuple[tuple[ErrorSeverity, tuple[re.Pattern[str], ...]], ...] = tuple(
    (severity, tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns))
    for severity, patterns in (
        (ErrorSeverity.CRITICAL, _CRITICAL_PATTERNS),
        (ErrorSeverity.WARNING, _WARNING_PATTERNS),
        (ErrorSeverity.INFO, _INFO_PATTERNS),
    )
)


@dataclass(slots=True)
class FailureClassification:
    """Severity of one failed attempt and the rule that decided it."""

    severity: ErrorSeverity
    matched_pattern: str | None = None

    @property
    def retryable(self) -> bool:
        return self.severity != ErrorSeverity.CRITICAL


def classify_failure(
    reason: str,
    output: str = "",
    *,
    already_seen: str = "",
) -> FailureClassification:
    """Classify a failed attempt, most severe rule first.

    ``reason`` always counts. A pattern in ``output`` only counts when it
    occurs more often than in ``already_seen``, so errors left on screen by
    an earlier task do not condemn the current one.
    """

    for severity, patterns in _RULES:
        for pattern in patterns:
            if pattern.search(reason) or _fresh_match(pattern, output, already_seen):
                return FailureClassification(severity=severity, matched_pattern=pattern.pattern)
    return FailureClassification(severity=ErrorSeverity.UNKNOWN)


def _fresh_match(pattern: re.Pattern[str], output: str, already_seen: str) -> bool:
    if not output:
        return False
    return len(pattern.findall(output)) > len(pattern.findall(already_seen))
