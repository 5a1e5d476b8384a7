"""Error taxonomy for queue, lifecycle and runner operations."""

from __future__ import annotations

from agent_taskhub.orchestrator.models import TaskStatus


class TaskHubError(RuntimeError):
    """Base class for operational errors surfaced to callers."""


class TaskNotFound(TaskHubError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTransition(TaskHubError):
    """Trigger is not allowed from the task's current status."""

    def __init__(self, task_id: int, status: TaskStatus, trigger: str) -> None:
        super().__init__(
            f"Transition {trigger} is not allowed for task {task_id} in status {status.value}",
        )
        self.task_id = task_id
        self.status = status
        self.trigger = trigger


class QueueEmpty(TaskHubError):
    def __init__(self) -> None:
        super().__init__("No queued tasks.")


class RunnerBusy(TaskHubError):
    def __init__(self, active_task_id: int) -> None:
        super().__init__(f"Runner is busy with task {active_task_id}")
        self.active_task_id = active_task_id


class RunnerDisconnected(TaskHubError):
    def __init__(self) -> None:
        super().__init__("Agent runner is not connected.")


class NoActiveTask(TaskHubError):
    def __init__(self) -> None:
        super().__init__("Runner has no active task.")


class CancelTimedOut(TaskHubError):
    """The agent did not acknowledge cancellation in time; task stays CANCELLING."""

    def __init__(self, task_id: int, timeout_seconds: float) -> None:
        super().__init__(
            f"Task {task_id} did not acknowledge cancellation within {timeout_seconds:g}s",
        )
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds


class KillFailed(TaskHubError):
    """The agent process outlived the kill timeout; task stays TERMINATING."""

    def __init__(self, task_id: int, timeout_seconds: float) -> None:
        super().__init__(f"Task {task_id} was not confirmed killed within {timeout_seconds:g}s")
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds


class TaskStoreError(TaskHubError):
    """Persistence failure; the attempted transition did not happen."""
