"""Controllers for task hub CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_taskhub.config import Settings
from agent_taskhub.orchestrator.backend import CliAgentBackend
from agent_taskhub.orchestrator.errors import InvalidTransition, RunnerBusy, TaskNotFound
from agent_taskhub.orchestrator.events import EventBroadcaster, EventType, Subscription
from agent_taskhub.orchestrator.models import (
    ACTIVE_STATUSES,
    ControlAction,
    ExecutionMode,
    SessionMode,
    Task,
    TaskCreate,
    TaskStatus,
)
from agent_taskhub.orchestrator.repository import TaskRepository
from agent_taskhub.orchestrator.retention import RetentionSweeper
from agent_taskhub.orchestrator.services import QUEUE_CANCELLABLE, TaskHubService
from agent_taskhub.orchestrator.worker import TaskHubWorker

RATE_LIMIT_STATUSES = frozenset({TaskStatus.RATE_LIMITED, TaskStatus.PAUSED_BY_LIMIT})


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for task submission."""

    db_path: Path | None
    instruction: str
    script_path: Path | None
    priority: int
    skip_permissions: bool
    fresh_sessions: bool
    base_branch: str | None
    current_branch: str | None
    ticket_key: str | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for the worker loop."""

    db_path: Path | None
    max_idle_polls: int | None


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    status: str | None
    limit: int
    include_archived: bool = False
    output_format: str = "table"


@dataclass(slots=True)
class InspectTaskCommand:
    db_path: Path | None
    task_id: int
    output_format: str = "table"


@dataclass(slots=True)
class TaskLogsCommand:
    db_path: Path | None
    task_id: int
    after_log_id: int | None


@dataclass(slots=True)
class MutateTaskCommand:
    """CLI input for cancel/kill/pause/resume/retry/skip."""

    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class StatusCommand:
    db_path: Path | None
    output_format: str = "table"


@dataclass(slots=True)
class ArchiveCommand:
    db_path: Path | None
    purge: bool


class TaskHubCliController:
    """Coordinates submission, worker, inspection and control CLI operations.

    Commands that need the live runner (everything touching an active task) are
    recorded as control requests and applied by the worker process.
    """

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        payload = _build_payload(command, ExecutionMode.QUEUED)
        if not payload.instruction.strip() and not (payload.script_content or "").strip():
            raise ValueError("Task instruction must not be empty.")
        with _repository(settings) as repository:
            task = repository.create(payload, status=TaskStatus.QUEUED)
        return [
            f"Task queued: task_id={task.task_id} priority={task.priority} "
            f"session_mode={task.session_mode.value}",
        ]

    def run_direct(self, command: SubmitCommand) -> list[str]:
        """Run one task in this process, bypassing the queue; the runner must be idle."""

        settings = _settings(command.db_path)
        payload = _build_payload(command, ExecutionMode.DIRECT)
        with _repository(settings) as repository:
            busy = repository.find_by_status(*ACTIVE_STATUSES)
            if busy:
                raise RunnerBusy(busy[0].task_id)
            service = TaskHubService(
                store=repository,
                backend=CliAgentBackend.from_settings(settings.runner),
                settings=settings,
            )
            subscription = service.subscribe()
            service.supervisor.connect()
            lines: list[str] = []
            try:
                task = service.submit(payload)
                lines.append(f"Task started: task_id={task.task_id}")
                while not _settled(service, task.task_id):
                    event = subscription.get(timeout=settings.runner.poll_interval_seconds)
                    if event is not None and event.type == EventType.LOG:
                        lines.append(event.line or "")
                lines.extend(_drain_logs(subscription))
                task = service.get_task(task.task_id)
            finally:
                subscription.close()
                service.stop()
        lines.append(_task_line(task))
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            service = TaskHubService(
                store=repository,
                backend=CliAgentBackend.from_settings(settings.runner),
                settings=settings,
            )
            worker = TaskHubWorker(
                service=service,
                sweeper=RetentionSweeper(
                    store=repository,
                    broadcaster=service.broadcaster,
                    retention_hours=settings.retention.retention_hours,
                ),
                poll_interval_seconds=settings.runner.poll_interval_seconds,
                archive_interval_seconds=settings.retention.archive_interval_seconds,
            )
            summary = worker.run_loop(max_idle_polls=command.max_idle_polls)

        return [
            "Worker summary: "
            f"passes={summary.passes} dispatched={summary.dispatched} "
            f"control_requests={summary.control_requests} archived={summary.archived} "
            f"idle_polls={summary.idle_polls}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                status=status_filter,
                limit=command.limit,
                include_archived=command.include_archived,
            )
            queued = repository.find_all_ordered_by_priority_then_created_at()
        positions = _queue_positions(queued)
        for task in tasks:
            task.queue_position = positions.get(task.task_id)

        if command.output_format == "json":
            return [
                json.dumps(
                    {"tasks": [task.to_payload() for task in tasks], "count": len(tasks)},
                    indent=2,
                    ensure_ascii=False,
                ),
            ]
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        if command.output_format == "json":
            payload = task.to_payload()
            payload["events"] = [
                {
                    "eventType": event.event_type,
                    "statusFrom": event.status_from.value if event.status_from else None,
                    "statusTo": event.status_to.value if event.status_to else None,
                    "createdAt": event.created_at.isoformat(),
                    "details": event.details,
                }
                for event in details.events
            ]
            return [json.dumps(payload, indent=2, ensure_ascii=False)]

        lines = [
            f"Task: {task.task_id}",
            f"Status: {task.status.value}",
            f"Instruction: {task.instruction}",
            f"Priority: {task.priority}",
            f"Session: {task.session_id or '-'} ({task.session_mode.value})",
            f"Retries: {task.retry_count}",
            f"Failure reason: {task.failure_reason or '-'}",
            f"Error: {task.error_summary or '-'}",
            f"Recovery attempts: {len(task.recovery_history)}",
        ]
        for attempt in task.recovery_history:
            result = attempt.result.value if attempt.result else "PENDING"
            lines.append(
                f"  #{attempt.attempt_number} {attempt.timestamp.isoformat()} "
                f"{attempt.action.value} {result} {attempt.error_message or '-'}",
            )
        lines.append(f"Log lines: {len(details.logs)}")
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def task_logs(self, command: TaskLogsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            if repository.find_by_id(command.task_id) is None:
                raise TaskNotFound(command.task_id)
            logs = repository.list_logs(command.task_id, after_log_id=command.after_log_id)
        return [f"[{log.log_id}]{' !' if log.is_error else ''} {log.chunk}" for log in logs]

    def cancel_task(self, command: MutateTaskCommand) -> list[str]:
        """Cancel queued tasks here; running ones are handed to the worker."""

        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            task = _require_task(repository, command.task_id)
            if task.status in QUEUE_CANCELLABLE:
                service = TaskHubService(
                    store=repository,
                    backend=CliAgentBackend.from_settings(settings.runner),
                    settings=settings,
                )
                cancelled = service.cancel(command.task_id)
                return [f"Task cancelled: {_task_line(cancelled)}"]
            return [_request(repository, task, ControlAction.CANCEL)]

    def kill_task(self, command: MutateTaskCommand) -> list[str]:
        return self._control(command, ControlAction.KILL)

    def pause_task(self, command: MutateTaskCommand) -> list[str]:
        return self._control(command, ControlAction.PAUSE)

    def resume_task(self, command: MutateTaskCommand) -> list[str]:
        return self._control(command, ControlAction.RESUME)

    def retry_task(self, command: MutateTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            task = _require_task(repository, command.task_id)
            if task.status != TaskStatus.INTERRUPTED:
                raise InvalidTransition(task.task_id, task.status, "RECOVER")
            return [_request(repository, task, ControlAction.RETRY)]

    def skip_task(self, command: MutateTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            service = TaskHubService(
                store=repository,
                backend=CliAgentBackend.from_settings(settings.runner),
                settings=settings,
            )
            skipped = service.skip(command.task_id)
        return [f"Task skipped: {_task_line(skipped)}"]

    def status(self, command: StatusCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            active = repository.find_by_status(*ACTIVE_STATUSES)
            queued = repository.find_by_status(TaskStatus.QUEUED)
            interrupted = repository.find_by_status(TaskStatus.INTERRUPTED)
        rate_limited = any(task.status in RATE_LIMIT_STATUSES for task in active)

        if command.output_format == "json":
            return [
                json.dumps(
                    {
                        "runnerStatus": "BUSY" if active else "IDLE",
                        "isRateLimited": rate_limited,
                        "runningTasks": [task.to_payload() for task in active],
                        "queuedTaskCount": len(queued),
                        "interruptedTaskCount": len(interrupted),
                    },
                    indent=2,
                    ensure_ascii=False,
                ),
            ]
        lines = [
            f"Runner: {'BUSY' if active else 'IDLE'}",
            f"Rate limited: {'yes' if rate_limited else 'no'}",
            f"Queued: {len(queued)}",
            f"Interrupted: {len(interrupted)}",
        ]
        lines.extend(f"  active {_task_line(task)}" for task in active)
        return lines

    def archive(self, command: ArchiveCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            sweeper = RetentionSweeper(
                store=repository,
                broadcaster=EventBroadcaster(),
                retention_hours=settings.retention.retention_hours,
            )
            report = sweeper.archive_expired()
            lines = [
                f"Archived: {len(report.archived)} (settled before {report.cutoff.isoformat()})",
            ]
            if command.purge:
                lines.append(f"Purged: {sweeper.purge_archived()}")
        return lines

    def _control(self, command: MutateTaskCommand, action: ControlAction) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            task = _require_task(repository, command.task_id)
            if not task.is_active:
                raise InvalidTransition(task.task_id, task.status, action.value.upper())
            return [_request(repository, task, action)]


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


def _build_payload(command: SubmitCommand, execution_mode: ExecutionMode) -> TaskCreate:
    script_content = (
        command.script_path.read_text("utf-8") if command.script_path is not None else None
    )
    return TaskCreate(
        instruction=command.instruction,
        script_content=script_content,
        priority=command.priority,
        skip_permissions=command.skip_permissions,
        session_mode=SessionMode.NEW if command.fresh_sessions else SessionMode.PERSIST,
        execution_mode=execution_mode,
        base_branch=command.base_branch,
        current_branch=command.current_branch,
        ticket_key=command.ticket_key,
    )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().upper())


def _require_task(repository: TaskRepository, task_id: int) -> Task:
    task = repository.find_by_id(task_id)
    if task is None:
        raise TaskNotFound(task_id)
    return task


def _request(repository: TaskRepository, task: Task, action: ControlAction) -> str:
    repository.request_control(task.task_id, action)
    return f"Requested {action.value} for task {task.task_id} (status={task.status.value})"


def _queue_positions(tasks: list[Task]) -> dict[int, int]:
    queued = [task for task in tasks if task.status == TaskStatus.QUEUED]
    return {task.task_id: position for position, task in enumerate(queued)}


def _settled(service: TaskHubService, task_id: int) -> bool:
    task = service.get_task(task_id)
    if task.is_terminal:
        return True
    return task.status == TaskStatus.INTERRUPTED and service.supervisor.active_task_id != task_id


def _drain_logs(subscription: Subscription) -> Iterator[str]:
    for event in subscription.drain():
        if event.type == EventType.LOG:
            yield event.line or ""


def _task_line(task: Task) -> str:
    position = f" position={task.queue_position}" if task.queue_position is not None else ""
    return (
        f"{task.task_id} status={task.status.value} priority={task.priority}{position} "
        f"retries={task.retry_count} reason={task.failure_reason or '-'} "
        f"instruction={_preview(task.instruction)}"
    )


def _preview(text: str, limit: int = 60) -> str:
    flattened = " ".join(text.split())
    if len(flattened) <= limit:
        return flattened
    return flattened[: limit - 3] + "..."
