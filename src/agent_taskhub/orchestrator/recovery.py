"""Recovery decisions for interrupted and rate-limited tasks."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from agent_taskhub.orchestrator.models import (
    RecoveryAction,
    RecoveryAttempt,
    RecoveryResult,
    Task,
)
from agent_taskhub.storage.common import utc_now

if TYPE_CHECKING:
    from agent_taskhub.config import RecoverySettings


class RecoveryCondition(str, Enum):
    INTERRUPTION = "INTERRUPTION"
    RATE_LIMIT = "RATE_LIMIT"


class BackoffMode(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    SIGNALED = "signaled"


@dataclass(slots=True, frozen=True)
class RecoveryDecision:
    """What to do next. ``attempt`` is ``None`` for uncounted rate-limit waits."""

    action: RecoveryAction
    attempt: RecoveryAttempt | None
    backoff_seconds: float = 0.0


class RecoveryPolicy:
    """Pure decision logic; callers apply the decision through the lifecycle."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        max_retries: int = 3,
        restart_after_failed_retries: int = 2,
        backoff_mode: BackoffMode = BackoffMode.FIXED,
        backoff_base_seconds: float = 60.0,
        backoff_max_seconds: float = 900.0,
        count_rate_limits: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.max_retries = max_retries
        self.restart_after_failed_retries = restart_after_failed_retries
        self.backoff_mode = backoff_mode
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.count_rate_limits = count_rate_limits
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: RecoverySettings) -> RecoveryPolicy:
        return cls(
            max_retries=settings.max_retries,
            restart_after_failed_retries=settings.restart_after_failed_retries,
            backoff_mode=BackoffMode(settings.backoff_mode),
            backoff_base_seconds=settings.backoff_base_seconds,
            backoff_max_seconds=settings.backoff_max_seconds,
            count_rate_limits=settings.count_rate_limits,
        )

    def decide(
        self,
        task: Task,
        condition: RecoveryCondition,
        *,
        error_message: str | None = None,
        retry_after_seconds: float | None = None,
    ) -> RecoveryDecision:
        if condition == RecoveryCondition.RATE_LIMIT:
            backoff = self.backoff_seconds(
                hits=task.rate_limit_hits,
                retry_after_seconds=retry_after_seconds,
            )
            attempt = (
                self.attempt_for(task, RecoveryAction.RETRY, error_message)
                if self.count_rate_limits
                else None
            )
            return RecoveryDecision(
                action=RecoveryAction.RETRY,
                attempt=attempt,
                backoff_seconds=backoff,
            )

        if task.retry_count >= self.max_retries:
            action = RecoveryAction.SKIP
        elif self._should_restart_session(task.recovery_history):
            action = RecoveryAction.RESTART_SESSION
        else:
            action = RecoveryAction.RETRY
        return RecoveryDecision(
            action=action,
            attempt=self.attempt_for(task, action, error_message),
        )

    def backoff_seconds(self, *, hits: int, retry_after_seconds: float | None = None) -> float:
        """Wait before resuming after a rate limit; ``hits`` counts limits so far."""

        base = max(0.0, self.backoff_base_seconds)
        if self.backoff_mode == BackoffMode.SIGNALED and retry_after_seconds is not None:
            delay = retry_after_seconds
        elif self.backoff_mode == BackoffMode.EXPONENTIAL:
            delay = base * (2 ** max(hits - 1, 0))
        else:
            delay = base
        return min(max(0.0, delay), self.backoff_max_seconds)

    def attempt_for(
        self,
        task: Task,
        action: RecoveryAction,
        error_message: str | None,
    ) -> RecoveryAttempt:
        return RecoveryAttempt(
            attempt_number=len(task.recovery_history) + 1,
            timestamp=self._clock(),
            action=action,
            error_message=error_message,
        )

    def _should_restart_session(self, history: Sequence[RecoveryAttempt]) -> bool:
        window = self.restart_after_failed_retries
        if window <= 0 or len(history) < window:
            return False
        return all(
            attempt.action == RecoveryAction.RETRY and attempt.result == RecoveryResult.FAILED
            for attempt in history[-window:]
        )
