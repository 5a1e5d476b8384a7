from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from agent_taskhub.config import RecoverySettings
from agent_taskhub.orchestrator.models import (
    ExecutionMode,
    RecoveryAction,
    RecoveryAttempt,
    RecoveryResult,
    SessionMode,
    Task,
    TaskStatus,
)
from agent_taskhub.orchestrator.recovery import BackoffMode, RecoveryCondition, RecoveryPolicy

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Recovery Policy"),
]

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


def _task(
    *,
    retry_count: int = 0,
    history: list[RecoveryAttempt] | None = None,
    rate_limit_hits: int = 0,
) -> Task:
    return Task(
        task_id=1,
        instruction="refactor module",
        status=TaskStatus.INTERRUPTED,
        priority=100,
        session_mode=SessionMode.PERSIST,
        execution_mode=ExecutionMode.QUEUED,
        created_at=NOW,
        updated_at=NOW,
        retry_count=retry_count,
        recovery_history=history or [],
        rate_limit_hits=rate_limit_hits,
    )


def _attempt(number: int, action: RecoveryAction, result: RecoveryResult) -> RecoveryAttempt:
    return RecoveryAttempt(attempt_number=number, timestamp=NOW, action=action, result=result)


def _policy(**kwargs) -> RecoveryPolicy:  # noqa: ANN003
    return RecoveryPolicy(clock=lambda: NOW, **kwargs)


def test_first_interruption_retries() -> None:
    decision = _policy().decide(_task(), RecoveryCondition.INTERRUPTION, error_message="boom")

    assert decision.action == RecoveryAction.RETRY
    assert decision.attempt is not None
    assert decision.attempt.attempt_number == 1
    assert decision.attempt.timestamp == NOW
    assert decision.attempt.result is None
    assert decision.attempt.error_message == "boom"


def test_exhausted_budget_skips() -> None:
    decision = _policy(max_retries=3).decide(_task(retry_count=3), RecoveryCondition.INTERRUPTION)

    assert decision.action == RecoveryAction.SKIP


def test_repeated_failed_retries_restart_session() -> None:
    history = [
        _attempt(1, RecoveryAction.RETRY, RecoveryResult.FAILED),
        _attempt(2, RecoveryAction.RETRY, RecoveryResult.FAILED),
    ]

    decision = _policy(max_retries=5, restart_after_failed_retries=2).decide(
        _task(retry_count=2, history=history),
        RecoveryCondition.INTERRUPTION,
    )

    assert decision.action == RecoveryAction.RESTART_SESSION
    assert decision.attempt is not None
    assert decision.attempt.attempt_number == 3


def test_restart_session_resets_failure_streak() -> None:
    history = [
        _attempt(1, RecoveryAction.RETRY, RecoveryResult.FAILED),
        _attempt(2, RecoveryAction.RESTART_SESSION, RecoveryResult.FAILED),
    ]

    decision = _policy(max_retries=5, restart_after_failed_retries=2).decide(
        _task(retry_count=2, history=history),
        RecoveryCondition.INTERRUPTION,
    )

    assert decision.action == RecoveryAction.RETRY


def test_restart_window_zero_never_restarts() -> None:
    history = [_attempt(n, RecoveryAction.RETRY, RecoveryResult.FAILED) for n in (1, 2, 3)]

    decision = _policy(max_retries=10, restart_after_failed_retries=0).decide(
        _task(retry_count=3, history=history),
        RecoveryCondition.INTERRUPTION,
    )

    assert decision.action == RecoveryAction.RETRY


def test_rate_limit_never_skips_and_is_uncounted_by_default() -> None:
    decision = _policy(max_retries=1, backoff_base_seconds=30).decide(
        _task(retry_count=5, rate_limit_hits=1),
        RecoveryCondition.RATE_LIMIT,
    )

    assert decision.action == RecoveryAction.RETRY
    assert decision.attempt is None
    assert decision.backoff_seconds == 30


def test_counted_rate_limit_carries_attempt() -> None:
    decision = _policy(count_rate_limits=True).decide(
        _task(rate_limit_hits=1),
        RecoveryCondition.RATE_LIMIT,
        error_message="429",
    )

    assert decision.attempt is not None
    assert decision.attempt.action == RecoveryAction.RETRY


@pytest.mark.parametrize(
    ("hits", "expected"),
    [(1, 10.0), (2, 20.0), (3, 40.0), (6, 100.0)],
)
def test_exponential_backoff_is_capped(hits: int, expected: float) -> None:
    policy = _policy(
        backoff_mode=BackoffMode.EXPONENTIAL,
        backoff_base_seconds=10,
        backoff_max_seconds=100,
    )

    assert policy.backoff_seconds(hits=hits) == expected


def test_signaled_backoff_prefers_retry_after() -> None:
    policy = _policy(backoff_mode=BackoffMode.SIGNALED, backoff_base_seconds=60)

    assert policy.backoff_seconds(hits=1, retry_after_seconds=12) == 12
    assert policy.backoff_seconds(hits=1, retry_after_seconds=None) == 60


def test_fixed_backoff_ignores_hits() -> None:
    policy = _policy(backoff_base_seconds=45)

    assert policy.backoff_seconds(hits=7, retry_after_seconds=3) == 45


def test_policy_from_settings() -> None:
    policy = RecoveryPolicy.from_settings(
        RecoverySettings(max_retries=4, backoff_mode="exponential", count_rate_limits=True),
    )

    assert policy.max_retries == 4
    assert policy.backoff_mode == BackoffMode.EXPONENTIAL
    assert policy.count_rate_limits is True
