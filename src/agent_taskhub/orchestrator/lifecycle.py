"""Task lifecycle state machine: the only writer of ``Task.status``."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Collection, Mapping
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from agent_taskhub.orchestrator.errors import InvalidTransition, TaskNotFound
from agent_taskhub.orchestrator.events import EventBroadcaster, EventType, TaskEvent
from agent_taskhub.orchestrator.models import (
    TERMINAL_STATUSES,
    AuditEventWrite,
    ExecutionLog,
    Task,
    TaskStatus,
)
from agent_taskhub.orchestrator.repository import TaskStore
from agent_taskhub.storage.common import utc_now

logger = logging.getLogger(__name__)


class Trigger(str, Enum):
    START = "START"
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    RATE_LIMIT = "RATE_LIMIT"
    BACKOFF = "BACKOFF"
    LIMIT_CLEARED = "LIMIT_CLEARED"
    INTERRUPT = "INTERRUPT"
    RECOVER = "RECOVER"
    SKIP = "SKIP"
    CANCEL = "CANCEL"
    CONFIRM_CANCEL = "CONFIRM_CANCEL"
    TERMINATE = "TERMINATE"
    CONFIRM_KILL = "CONFIRM_KILL"
    COMPLETE = "COMPLETE"
    FAIL = "FAIL"


S = TaskStatus
TRANSITIONS: Mapping[tuple[TaskStatus, Trigger], TaskStatus] = MappingProxyType(
    {
        (S.PENDING, Trigger.START): S.RUNNING,
        (S.QUEUED, Trigger.START): S.RUNNING,
        (S.RUNNING, Trigger.PAUSE): S.PAUSED,
        (S.PAUSED, Trigger.RESUME): S.RUNNING,
        (S.RUNNING, Trigger.RATE_LIMIT): S.RATE_LIMITED,
        (S.RATE_LIMITED, Trigger.BACKOFF): S.PAUSED_BY_LIMIT,
        (S.PAUSED_BY_LIMIT, Trigger.LIMIT_CLEARED): S.RUNNING,
        (S.RUNNING, Trigger.INTERRUPT): S.INTERRUPTED,
        (S.INTERRUPTED, Trigger.RECOVER): S.RUNNING,
        (S.INTERRUPTED, Trigger.SKIP): S.FAILED,
        (S.RUNNING, Trigger.CANCEL): S.CANCELLING,
        (S.PAUSED, Trigger.CANCEL): S.CANCELLING,
        (S.PAUSED_BY_LIMIT, Trigger.CANCEL): S.CANCELLING,
        (S.CANCELLING, Trigger.CONFIRM_CANCEL): S.CANCELLED,
        (S.PENDING, Trigger.CANCEL): S.CANCELLED,
        (S.QUEUED, Trigger.CANCEL): S.CANCELLED,
        (S.RUNNING, Trigger.TERMINATE): S.TERMINATING,
        (S.CANCELLING, Trigger.TERMINATE): S.TERMINATING,
        (S.TERMINATING, Trigger.CONFIRM_KILL): S.KILLED,
        (S.RUNNING, Trigger.COMPLETE): S.COMPLETED,
        (S.RUNNING, Trigger.FAIL): S.FAILED,
    },
)
del S


def next_status(status: TaskStatus, trigger: Trigger) -> TaskStatus | None:
    """Destination for ``trigger`` from ``status``, or ``None`` when not allowed."""

    return TRANSITIONS.get((status, trigger))


def allowed_triggers(status: TaskStatus) -> frozenset[Trigger]:
    return frozenset(trigger for (source, trigger) in TRANSITIONS if source == status)


class TaskLifecycle:
    """Validates, persists and announces every task status change.

    Transitions of one task are serialized by a per-task lock. The new status is
    written through the store before the ``STATUS_UPDATE`` event is published, so
    observers never see a status the store does not have.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        broadcaster: EventBroadcaster,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self._clock = clock
        self._locks: dict[int, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def get(self, task_id: int) -> Task:
        task = self.store.find_by_id(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def transition(  # noqa: PLR0913
        self,
        task_id: int,
        trigger: Trigger,
        *,
        failure_reason: str | None = None,
        error_summary: str | None = None,
        expect: Collection[TaskStatus] | None = None,
        mutate: Callable[[Task], None] | None = None,
        details: dict[str, Any] | None = None,
    ) -> Task:
        """Apply ``trigger`` and return the persisted task.

        ``expect`` narrows the allowed source states further than the table does.
        Raises :class:`InvalidTransition` without touching the task otherwise.
        """

        with self._lock(task_id):
            current = self.get(task_id)
            target = next_status(current.status, trigger)
            if target is None or (expect is not None and current.status not in expect):
                logger.warning(
                    "Rejected transition task=%s status=%s trigger=%s",
                    task_id,
                    current.status.value,
                    trigger.value,
                )
                raise InvalidTransition(task_id, current.status, trigger.value)

            updated = current.snapshot()
            updated.status = target
            self._stamp(updated, trigger=trigger, target=target)
            if failure_reason is not None:
                updated.failure_reason = failure_reason
            if error_summary is not None:
                updated.error_summary = error_summary
            if mutate is not None:
                mutate(updated)

            event_details: dict[str, Any] = {"trigger": trigger.value}
            if failure_reason is not None:
                event_details["failure_reason"] = failure_reason
            if details:
                event_details.update(details)
            self.store.update(
                updated,
                event=AuditEventWrite(
                    event_type="transition",
                    status_from=current.status,
                    status_to=target,
                    details=event_details,
                ),
            )
            logger.info(
                "Task %s: %s -[%s]-> %s",
                task_id,
                current.status.value,
                trigger.value,
                target.value,
            )
            self.broadcaster.publish(TaskEvent.for_task(EventType.STATUS_UPDATE, updated))
            if target == TaskStatus.INTERRUPTED:
                self.broadcaster.publish(TaskEvent.for_task(EventType.TASK_INTERRUPTED, updated))
            return updated

    def amend(
        self,
        task_id: int,
        mutate: Callable[[Task], None],
        *,
        event: AuditEventWrite | None = None,
    ) -> Task:
        """Persist non-status changes (recovery history, counters) under the task lock."""

        with self._lock(task_id):
            current = self.get(task_id)
            updated = current.snapshot()
            mutate(updated)
            if updated.status != current.status:
                raise ValueError("Status changes must go through transition().")
            self.store.update(updated, event=event)
            return updated

    def record_log(self, task_id: int, line: str, *, is_error: bool) -> ExecutionLog:
        """Append agent output and forward it to observers."""

        entry = self.store.append_log(task_id, line, is_error=is_error)
        self.broadcaster.publish(TaskEvent.log(task_id, line, is_error=is_error))
        return entry

    def audit(self, task_id: int, event_type: str, **details: Any) -> None:
        event = AuditEventWrite(event_type=event_type, details=details)
        self.store.add_audit_event(task_id, event)

    def _lock(self, task_id: int) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(task_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[task_id] = lock
            return lock

    def _stamp(self, task: Task, *, trigger: Trigger, target: TaskStatus) -> None:
        now = self._clock()
        if trigger == Trigger.START and task.started_at is None:
            task.started_at = now
        if trigger == Trigger.CANCEL:
            task.cancelled_at = now
        if target in TERMINAL_STATUSES:
            task.completed_at = now
            task.rate_limit_hits = 0
        if target == TaskStatus.COMPLETED:
            task.failure_reason = None
            task.error_summary = None
