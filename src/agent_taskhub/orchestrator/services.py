"""Service layer wiring the queue, lifecycle, recovery, supervisor and broadcaster."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime

from agent_taskhub.config import Settings
from agent_taskhub.orchestrator.backend.base import AgentBackend
from agent_taskhub.orchestrator.errors import (
    InvalidTransition,
    QueueEmpty,
    RunnerBusy,
    RunnerDisconnected,
    TaskHubError,
    TaskNotFound,
)
from agent_taskhub.orchestrator.events import EventBroadcaster, OverflowPolicy, Subscription
from agent_taskhub.orchestrator.lifecycle import TaskLifecycle, Trigger
from agent_taskhub.orchestrator.models import (
    ACTIVE_STATUSES,
    ControlAction,
    ExecutionLog,
    ExecutionMode,
    FailureReason,
    RecoveryAction,
    RecoveryResult,
    RunnerStatus,
    RunningTaskInfo,
    SystemState,
    Task,
    TaskCreate,
    TaskStatus,
)
from agent_taskhub.orchestrator.queue_manager import QueueManager
from agent_taskhub.orchestrator.recovery import RecoveryPolicy
from agent_taskhub.orchestrator.repository import TaskRepository
from agent_taskhub.orchestrator.supervisor import RunnerSupervisor, TimerFactory
from agent_taskhub.storage.common import utc_now

logger = logging.getLogger(__name__)

QUEUE_CANCELLABLE = frozenset({TaskStatus.PENDING, TaskStatus.QUEUED})


class TaskHubService:
    """Application facade used by the worker loop and the CLI controllers."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskRepository,
        backend: AgentBackend,
        settings: Settings | None = None,
        recovery: RecoveryPolicy | None = None,
        broadcaster: EventBroadcaster | None = None,
        clock: Callable[[], datetime] = utc_now,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store
        self.broadcaster = broadcaster or EventBroadcaster(
            buffer_size=self.settings.broadcast.buffer_size,
            overflow_policy=OverflowPolicy(self.settings.broadcast.overflow_policy),
        )
        self.lifecycle = TaskLifecycle(store=store, broadcaster=self.broadcaster, clock=clock)
        self.queue = QueueManager(broadcaster=self.broadcaster)
        self.recovery = recovery or RecoveryPolicy.from_settings(self.settings.recovery)
        self.supervisor = RunnerSupervisor(
            lifecycle=self.lifecycle,
            recovery=self.recovery,
            backend=backend,
            broadcaster=self.broadcaster,
            settings=self.settings.runner,
            on_idle=self.dispatch_next,
            timer_factory=timer_factory,
        )
        self.broadcaster.set_state_provider(self.snapshot)
        self._clock = clock
        self._dispatch_lock = threading.Lock()
        self._dispatch_requested = threading.Event()

    def start(self) -> None:
        """Connect the runner and reconcile state left behind by a previous process."""

        self.supervisor.connect()
        self.recover_on_startup()

    def stop(self) -> None:
        self.supervisor.disconnect()

    def submit(self, payload: TaskCreate) -> Task:
        """Persist a new task and queue it, or start it directly.

        A DIRECT submission that finds the runner busy or disconnected is
        cancelled with reason ``RUNNER_BUSY`` and the error is re-raised.
        """

        if not payload.instruction.strip() and not (payload.script_content or "").strip():
            raise ValueError("Task instruction must not be empty.")

        if payload.execution_mode == ExecutionMode.DIRECT:
            task = self.store.create(payload, status=TaskStatus.PENDING)
            logger.info("Submitted direct task %s", task.task_id)
            try:
                return self.supervisor.start(task)
            except (RunnerBusy, RunnerDisconnected):
                self.lifecycle.transition(
                    task.task_id,
                    Trigger.CANCEL,
                    failure_reason=FailureReason.RUNNER_BUSY.value,
                )
                raise

        task = self.store.create(payload, status=TaskStatus.QUEUED)
        position = self.queue.enqueue(task)
        logger.info("Submitted task %s at queue position %s", task.task_id, position)
        self.dispatch_next()
        return self.get_task(task.task_id)

    def dispatch_next(self) -> Task | None:
        """Start the queue head when the runner is idle; safe to call from any thread."""

        self._dispatch_requested.set()
        if not self._dispatch_lock.acquire(blocking=False):
            return None
        started: Task | None = None
        try:
            while self._dispatch_requested.is_set():
                self._dispatch_requested.clear()
                task = self._dispatch_once()
                if task is not None:
                    started = task
        finally:
            self._dispatch_lock.release()
        if self._dispatch_requested.is_set() and self.supervisor.is_idle:
            return self.dispatch_next() or started
        return started

    def _dispatch_once(self) -> Task | None:
        supervisor = self.supervisor
        if not supervisor.is_connected or not supervisor.is_idle or supervisor.is_rate_limited:
            return None
        try:
            task = self.queue.dequeue_next()
        except QueueEmpty:
            return None
        try:
            return supervisor.start(task)
        except RunnerBusy:
            self.queue.enqueue(task)
        except (InvalidTransition, TaskNotFound) as error:
            logger.warning("Dropping stale queue entry for task %s: %s", task.task_id, error)
        return None

    def cancel(self, task_id: int) -> Task:
        task = self.get_task(task_id)
        if task.status in QUEUE_CANCELLABLE:
            try:
                cancelled = self.lifecycle.transition(
                    task_id,
                    Trigger.CANCEL,
                    failure_reason=FailureReason.CANCELLED.value,
                    expect=QUEUE_CANCELLABLE,
                )
            except InvalidTransition:
                logger.info("Task %s left the queue while cancelling; cancelling run", task_id)
            else:
                self.queue.remove(task_id)
                return cancelled
        return self.supervisor.cancel(task_id)

    def kill(self, task_id: int) -> Task:
        return self.supervisor.kill(task_id)

    def pause(self) -> Task:
        return self.supervisor.pause()

    def resume(self) -> Task:
        return self.supervisor.resume()

    def clear_rate_limit(self) -> Task | None:
        return self.supervisor.clear_rate_limit()

    def retry(self, task_id: int) -> Task:
        """Relaunch a task resting in INTERRUPTED."""

        return self.supervisor.retry(task_id)

    def skip(self, task_id: int) -> Task:
        """Give up on a task resting in INTERRUPTED; it becomes FAILED."""

        task = self.get_task(task_id)
        if task.status != TaskStatus.INTERRUPTED:
            raise InvalidTransition(task_id, task.status, Trigger.SKIP.value)
        attempt = self.recovery.attempt_for(task, RecoveryAction.SKIP, "Skipped by operator")

        def _record_skip(current: Task) -> None:
            current.recovery_history.append(attempt.resolved(RecoveryResult.SUCCESS))

        return self.lifecycle.transition(
            task_id,
            Trigger.SKIP,
            failure_reason=FailureReason.SKIPPED.value,
            expect={TaskStatus.INTERRUPTED},
            mutate=_record_skip,
        )

    def recover_on_startup(self) -> list[Task]:
        """Settle tasks left active by a crash and rebuild the queue from the store."""

        settled: list[Task] = []
        for task in self.store.find_by_status(*ACTIVE_STATUSES):
            if task.task_id == self.supervisor.active_task_id:
                continue
            logger.warning("Recovering task %s left in %s", task.task_id, task.status.value)
            settled.append(self.supervisor.adopt(task))
        self.sync_queue()
        self.dispatch_next()
        return settled

    def sync_queue(self) -> None:
        queued = self.store.find_by_status(TaskStatus.QUEUED)
        self.queue.sync(queued)

    def apply_control_requests(self) -> int:
        """Apply operator requests recorded by other processes; returns how many ran."""

        applied = 0
        for task_id, action in self.store.pop_control_requests():
            try:
                if action == ControlAction.CANCEL:
                    self.cancel(task_id)
                elif action == ControlAction.KILL:
                    self.kill(task_id)
                elif action == ControlAction.PAUSE:
                    self._require_active(task_id)
                    self.pause()
                elif action == ControlAction.RESUME:
                    self._require_active(task_id)
                    self.resume()
                elif action == ControlAction.RETRY:
                    self.retry(task_id)
            except TaskHubError as error:
                logger.warning(
                    "Control request %s for task %s failed: %s",
                    action.value,
                    task_id,
                    error,
                )
                self.lifecycle.audit(
                    task_id,
                    "control_failed",
                    action=action.value,
                    error=str(error),
                )
                continue
            applied += 1
        return applied

    def snapshot(self) -> SystemState:
        running: list[RunningTaskInfo] = []
        active_id = self.supervisor.active_task_id
        if active_id is not None:
            task = self.store.find_by_id(active_id)
            if task is not None and task.is_active:
                running.append(
                    RunningTaskInfo(
                        task_id=task.task_id,
                        instruction=task.instruction,
                        status=task.status,
                        started_at=task.started_at,
                    ),
                )
        return SystemState(
            is_runner_connected=self.supervisor.is_connected,
            is_rate_limited=self.supervisor.is_rate_limited,
            runner_status=RunnerStatus.IDLE if active_id is None else RunnerStatus.BUSY,
            running_tasks=running,
            queued_task_count=self.queue.count(),
            timestamp=self._clock(),
        )

    def subscribe(self, task_id: int | None = None) -> Subscription:
        return self.broadcaster.subscribe(task_id)

    def get_task(self, task_id: int) -> Task:
        task = self.store.find_by_id(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        task.queue_position = self.queue.position_of(task_id)
        return task

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[Task]:
        tasks = self.store.list_tasks(status=status, limit=limit)
        for task in tasks:
            task.queue_position = self.queue.position_of(task.task_id)
        return tasks

    def task_logs(self, task_id: int, *, after_log_id: int | None = None) -> list[ExecutionLog]:
        return self.store.list_logs(task_id, after_log_id=after_log_id)

    def _require_active(self, task_id: int) -> None:
        if self.supervisor.active_task_id != task_id:
            task = self.get_task(task_id)
            raise InvalidTransition(task_id, task.status, "CONTROL")
