from __future__ import annotations

import allure
import pytest

from agent_taskhub.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    ExitOutcome,
    classify_exit,
    detect_rate_limit,
    parse_retry_after,
)

pytestmark = [
    allure.epic("Runner"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize(
    "line",
    [
        "Error: 429 Too Many Requests",
        "API Error: rate limit exceeded",
        "anthropic.RateLimitError: slow down",
        "{\"type\": \"rate_limit_exceeded\"}",
        "request failed: quota exceeded for model",
    ],
)
def test_rate_limit_lines_are_detected(line: str) -> None:
    signal = detect_rate_limit(line)

    assert signal is not None
    assert signal.line == line


@pytest.mark.parametrize(
    "line",
    [
        "Refactoring rate limiter module",
        "Wrote 429 lines to report.txt",
        "All tests passed",
    ],
)
def test_ordinary_output_is_not_a_rate_limit(line: str) -> None:
    assert detect_rate_limit(line) is None


def test_retry_after_units() -> None:
    assert parse_retry_after("429: retry after 30s") == 30.0
    assert parse_retry_after("retry-after: 1500ms") == 1.5
    assert parse_retry_after("Retry_After=12") == 12.0
    assert parse_retry_after("rate limit exceeded, retry after 2 minutes") == 120.0
    assert parse_retry_after("retry after 1.5 min") == 90.0
    assert parse_retry_after("retry after 3m") == 180.0
    assert parse_retry_after("retry-after: 250 milliseconds") == 0.25
    assert parse_retry_after("try again later") is None


def test_rate_limit_in_tail_wins_over_exit_code() -> None:
    classified = classify_exit(
        exit_code=0,
        tail=["working...", "Error: 429 rate limited, retry after 20 seconds"],
    )

    assert classified.outcome == ExitOutcome.RATE_LIMITED
    assert classified.matched_rule == "rate_limit"
    assert classified.retry_after_seconds == 20.0


def test_zero_exit_completes() -> None:
    classified = classify_exit(exit_code=0, tail=["done"])

    assert classified.outcome == ExitOutcome.COMPLETED
    assert classified.matched_rule == "exit_zero"


@pytest.mark.parametrize("exit_code", [137, 143, -9])
def test_signal_exits_are_transient(exit_code: int) -> None:
    classified = classify_exit(exit_code=exit_code, tail=[])

    assert classified.outcome == ExitOutcome.INTERRUPTED
    assert classified.matched_rule == "transient_exit_code"


def test_transient_output_marks_interruption() -> None:
    classified = classify_exit(exit_code=1, tail=["fetch failed: Connection reset by peer"])

    assert classified.outcome == ExitOutcome.INTERRUPTED
    assert classified.matched_rule == "generic_transient"
    assert classified.matched_pattern == "connection reset"


def test_other_non_zero_exit_fails() -> None:
    classified = classify_exit(
        exit_code=2,
        tail=["fatal: unknown option"],
        transient_exit_codes=(75,),
    )

    assert classified.outcome == ExitOutcome.FAILED
    assert classified.to_event_details() == {
        "classifier_version": 1,
        "outcome": "FAILED",
        "exit_code": 2,
        "matched_rule": "fallback_non_retryable",
        "matched_pattern": None,
    }
