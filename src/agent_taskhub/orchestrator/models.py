"""Domain models for the agent task queue and runner lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "PENDING"
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    PAUSED_BY_LIMIT = "PAUSED_BY_LIMIT"
    RATE_LIMITED = "RATE_LIMITED"
    INTERRUPTED = "INTERRUPTED"
    CANCELLING = "CANCELLING"
    CANCELLED = "CANCELLED"
    TERMINATING = "TERMINATING"
    KILLED = "KILLED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED, TaskStatus.KILLED},
)
ACTIVE_STATUSES = frozenset(
    {
        TaskStatus.RUNNING,
        TaskStatus.PAUSED,
        TaskStatus.PAUSED_BY_LIMIT,
        TaskStatus.RATE_LIMITED,
        TaskStatus.CANCELLING,
        TaskStatus.TERMINATING,
    },
)


class SessionMode(str, Enum):
    """Whether a task gets a fresh agent context or reuses its own."""

    NEW = "NEW"
    PERSIST = "PERSIST"


class ExecutionMode(str, Enum):
    QUEUED = "QUEUED"
    DIRECT = "DIRECT"


class RecoveryAction(str, Enum):
    RETRY = "RETRY"
    SKIP = "SKIP"
    RESTART_SESSION = "RESTART_SESSION"


class RecoveryResult(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class RunnerStatus(str, Enum):
    IDLE = "IDLE"
    BUSY = "BUSY"


class ControlAction(str, Enum):
    """Operator requests handed from CLI processes to the worker."""

    CANCEL = "cancel"
    KILL = "kill"
    PAUSE = "pause"
    RESUME = "resume"
    RETRY = "retry"


class FailureReason(str, Enum):
    """Reason codes stored in ``Task.failure_reason``."""

    AGENT_FAILED = "AGENT_FAILED"
    AGENT_CRASHED = "AGENT_CRASHED"
    LAUNCH_FAILED = "LAUNCH_FAILED"
    RATE_LIMIT = "RATE_LIMIT"
    RUNNER_DISCONNECT = "RUNNER_DISCONNECT"
    RUNNER_BUSY = "RUNNER_BUSY"
    RECOVERY_EXHAUSTED = "RECOVERY_EXHAUSTED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"
    FORCE_KILLED = "FORCE_KILLED"
    TIMEOUT_KILL = "TIMEOUT_KILL"
    SERVICE_RESTART = "SERVICE_RESTART"


@dataclass(slots=True, frozen=True)
class RecoveryAttempt:
    """One recorded recovery decision; ``result`` stays ``None`` until known."""

    attempt_number: int
    timestamp: datetime
    action: RecoveryAction
    result: RecoveryResult | None = None
    error_message: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.result is None

    def resolved(
        self,
        result: RecoveryResult,
        error_message: str | None = None,
    ) -> RecoveryAttempt:
        return replace(
            self,
            result=result,
            error_message=error_message if error_message is not None else self.error_message,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "attemptNumber": self.attempt_number,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "result": self.result.value if self.result is not None else None,
            "errorMessage": self.error_message,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> RecoveryAttempt:
        result = payload.get("result")
        return cls(
            attempt_number=int(payload["attemptNumber"]),
            timestamp=datetime.fromisoformat(str(payload["timestamp"])),
            action=RecoveryAction(payload["action"]),
            result=RecoveryResult(result) if result is not None else None,
            error_message=payload.get("errorMessage"),
        )


@dataclass(slots=True)
class TaskCreate:
    """Input payload for submitting a task."""

    instruction: str
    script_content: str | None = None
    priority: int = 100
    skip_permissions: bool = False
    session_mode: SessionMode = SessionMode.PERSIST
    execution_mode: ExecutionMode = ExecutionMode.QUEUED
    base_branch: str | None = None
    current_branch: str | None = None
    ticket_key: str | None = None


@dataclass(slots=True)
class Task:
    """Readable task view shared by the store, the lifecycle and observers.

    ``queue_position`` is derived from the in-memory queue and never persisted.
    """

    task_id: int
    instruction: str
    status: TaskStatus
    priority: int
    session_mode: SessionMode
    execution_mode: ExecutionMode
    created_at: datetime
    updated_at: datetime
    skip_permissions: bool = False
    script_content: str | None = None
    base_branch: str | None = None
    current_branch: str | None = None
    ticket_key: str | None = None
    failure_reason: str | None = None
    error_summary: str | None = None
    retry_count: int = 0
    rate_limit_hits: int = 0
    session_id: str | None = None
    recovery_history: list[RecoveryAttempt] = field(default_factory=list)
    queued_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    is_archived: bool = False
    deleted_at: datetime | None = None
    control_request: ControlAction | None = None
    queue_position: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def prompt(self) -> str:
        """Text handed to the agent: the script when present, else the instruction."""

        return self.script_content or self.instruction

    @property
    def pending_recovery(self) -> RecoveryAttempt | None:
        if self.recovery_history and self.recovery_history[-1].is_pending:
            return self.recovery_history[-1]
        return None

    def snapshot(self) -> Task:
        """Detached copy safe to hand to other threads."""

        return replace(self, recovery_history=list(self.recovery_history))

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the camelCase wire shape used by event observers."""

        return {
            "id": self.task_id,
            "instruction": self.instruction,
            "scriptContent": self.script_content,
            "status": self.status.value,
            "priority": self.priority,
            "queuePosition": self.queue_position,
            "skipPermissions": self.skip_permissions,
            "sessionMode": self.session_mode.value,
            "executionMode": self.execution_mode.value,
            "baseBranch": self.base_branch,
            "currentBranch": self.current_branch,
            "ticketKey": self.ticket_key,
            "failureReason": self.failure_reason,
            "errorSummary": self.error_summary,
            "retryCount": self.retry_count,
            "createdAt": _iso(self.created_at),
            "queuedAt": _iso(self.queued_at),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "cancelledAt": _iso(self.cancelled_at),
            "isArchived": self.is_archived,
            "deletedAt": _iso(self.deleted_at),
            "recoveryHistory": [attempt.to_payload() for attempt in self.recovery_history],
        }


@dataclass(slots=True)
class ExecutionLog:
    """Append-only chunk of agent output."""

    log_id: int
    task_id: int
    chunk: str
    is_error: bool
    created_at: datetime


@dataclass(slots=True)
class AuditEventWrite:
    """Audit trail entry persisted together with a task update."""

    event_type: str
    status_from: TaskStatus | None = None
    status_to: TaskStatus | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AuditEventView:
    """Task event entry for the audit trail."""

    event_id: int
    task_id: int
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task with its audit trail and execution log."""

    task: Task
    events: list[AuditEventView]
    logs: list[ExecutionLog]


@dataclass(slots=True)
class RunningTaskInfo:
    task_id: int
    instruction: str
    status: TaskStatus
    started_at: datetime | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.task_id,
            "instruction": self.instruction,
            "status": self.status.value,
            "startedAt": _iso(self.started_at),
        }


@dataclass(slots=True)
class SystemState:
    """Point-in-time view of runner connectivity and queue depth."""

    is_runner_connected: bool
    is_rate_limited: bool
    runner_status: RunnerStatus
    running_tasks: list[RunningTaskInfo]
    queued_task_count: int
    timestamp: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "isRunnerConnected": self.is_runner_connected,
            "isRateLimited": self.is_rate_limited,
            "runnerStatus": self.runner_status.value,
            "runningTasks": [task.to_payload() for task in self.running_tasks],
            "queuedTaskCount": self.queued_task_count,
            "timestamp": self.timestamp.isoformat(),
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
