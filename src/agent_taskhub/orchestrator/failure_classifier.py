"""Deterministic classification of agent output and exit codes."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(error|status|http|code)[:\s]+429",
        r"rate\s+limit\s+(exceeded|hit|reached|error)",
        r"(error|failed).*quota\s+exceeded",
        r"quota\s+exceeded.*(error|failed)",
        r"(error|status)[:\s].*too\s+many\s+requests",
        r"rate_limit_exceeded",
        r"RateLimitError",
    )
)
_RETRY_AFTER_PATTERN = re.compile(
    r"retry[\s_-]*after[:\s=]+(\d+(?:\.\d+)?)\s*"
    r"(ms|milliseconds?|m|mins?|minutes?|s|secs?|seconds?)?\b",
    re.IGNORECASE,
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
    "overloaded",
)


class ExitOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    RATE_LIMITED = "RATE_LIMITED"
    INTERRUPTED = "INTERRUPTED"
    FAILED = "FAILED"


@dataclass(slots=True, frozen=True)
class RateLimitSignal:
    """A rate-limit line reported by the agent."""

    line: str
    matched_pattern: str
    retry_after_seconds: float | None = None


@dataclass(slots=True, frozen=True)
class ExitClassification:
    outcome: ExitOutcome
    exit_code: int
    matched_rule: str
    matched_pattern: str | None = None
    retry_after_seconds: float | None = None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task audit events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def detect_rate_limit(line: str) -> RateLimitSignal | None:
    """Return a signal when ``line`` looks like a provider rate-limit error."""

    for pattern in _RATE_LIMIT_PATTERNS:
        if pattern.search(line):
            return RateLimitSignal(
                line=line,
                matched_pattern=pattern.pattern,
                retry_after_seconds=parse_retry_after(line),
            )
    return None


def parse_retry_after(line: str) -> float | None:
    match = _RETRY_AFTER_PATTERN.search(line)
    if match is None:
        return None
    value = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    if unit == "ms" or unit.startswith("milli"):
        return value / 1000.0
    if unit.startswith("m"):
        return value * 60.0
    return value


def classify_exit(
    *,
    exit_code: int,
    tail: Sequence[str],
    transient_exit_codes: tuple[int, ...] = (137, 143),
) -> ExitClassification:
    """Map an agent exit onto the next lifecycle step.

    ``tail`` holds the last output lines; rate-limit lines win over the exit code
    because agents often exit non-zero after printing them.
    """

    for line in reversed(tail):
        signal = detect_rate_limit(line)
        if signal is not None:
            return ExitClassification(
                outcome=ExitOutcome.RATE_LIMITED,
                exit_code=exit_code,
                matched_rule="rate_limit",
                matched_pattern=signal.matched_pattern,
                retry_after_seconds=signal.retry_after_seconds,
            )

    if exit_code == 0:
        return ExitClassification(
            outcome=ExitOutcome.COMPLETED,
            exit_code=exit_code,
            matched_rule="exit_zero",
        )

    haystack = "\n".join(tail).lower()
    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None or exit_code in transient_exit_codes or exit_code < 0:
        return ExitClassification(
            outcome=ExitOutcome.INTERRUPTED,
            exit_code=exit_code,
            matched_rule="generic_transient" if pattern is not None else "transient_exit_code",
            matched_pattern=pattern,
        )

    return ExitClassification(
        outcome=ExitOutcome.FAILED,
        exit_code=exit_code,
        matched_rule="fallback_non_retryable",
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
