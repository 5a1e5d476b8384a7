"""Push channel for task events and system state snapshots."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from agent_taskhub.orchestrator.models import SystemState, Task, TaskStatus
from agent_taskhub.storage.common import utc_now

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    TASK_QUEUED = "TASK_QUEUED"
    TASK_DEQUEUED = "TASK_DEQUEUED"
    STATUS_UPDATE = "STATUS_UPDATE"
    TASK_INTERRUPTED = "TASK_INTERRUPTED"
    TASK_RUNNING = "TASK_RUNNING"
    TASK_ARCHIVED = "TASK_ARCHIVED"
    LOG = "LOG"
    SYSTEM = "SYSTEM"
    SYSTEM_READY = "SYSTEM_READY"
    SYSTEM_DISCONNECTED = "SYSTEM_DISCONNECTED"
    DISPATCHER_PAUSED = "DISPATCHER_PAUSED"
    DISPATCHER_RESUMED = "DISPATCHER_RESUMED"


SYSTEM_EVENT_TYPES = frozenset(
    {
        EventType.SYSTEM,
        EventType.SYSTEM_READY,
        EventType.SYSTEM_DISCONNECTED,
        EventType.DISPATCHER_PAUSED,
        EventType.DISPATCHER_RESUMED,
    },
)


RATE_LIMIT_PAUSE_LINE = "Dispatcher paused: rate limited"


class OverflowPolicy(str, Enum):
    DROP_OLDEST = "drop_oldest"
    DISCONNECT = "disconnect"


@dataclass(slots=True, frozen=True)
class TaskEvent:
    """Transient notification; never persisted."""

    type: EventType
    task_id: int | None = None
    task: Task | None = None
    status: TaskStatus | None = None
    line: str | None = None
    is_error: bool = False
    created_at: datetime = field(default_factory=utc_now)

    @property
    def is_system(self) -> bool:
        return self.type in SYSTEM_EVENT_TYPES

    @classmethod
    def for_task(cls, event_type: EventType, task: Task) -> TaskEvent:
        return cls(
            type=event_type,
            task_id=task.task_id,
            task=task.snapshot(),
            status=task.status,
        )

    @classmethod
    def log(cls, task_id: int, line: str, *, is_error: bool) -> TaskEvent:
        return cls(type=EventType.LOG, task_id=task_id, line=line, is_error=is_error)

    @classmethod
    def system(cls, event_type: EventType, line: str) -> TaskEvent:
        return cls(type=event_type, line=line)

    def to_payload(self) -> dict[str, Any]:
        """camelCase JSON-ready representation."""

        payload: dict[str, Any] = {
            "type": self.type.value,
            "taskId": self.task_id,
            "timestamp": self.created_at.isoformat(),
        }
        if self.task is not None:
            payload["task"] = self.task.to_payload()
        if self.status is not None:
            payload["status"] = self.status.value
        if self.line is not None:
            payload["line"] = self.line
            payload["isError"] = self.is_error
        return payload


def snapshot_events(state: SystemState) -> list[TaskEvent]:
    """Events that bring a fresh observer up to date with ``state``."""

    events = [
        TaskEvent.system(EventType.SYSTEM_READY, "Runner connected")
        if state.is_runner_connected
        else TaskEvent.system(EventType.SYSTEM_DISCONNECTED, "Runner disconnected"),
    ]
    if state.is_rate_limited:
        events.append(TaskEvent.system(EventType.DISPATCHER_PAUSED, RATE_LIMIT_PAUSE_LINE))
    for running in state.running_tasks:
        events.append(
            TaskEvent(
                type=EventType.TASK_RUNNING,
                task_id=running.task_id,
                status=running.status,
                line=running.instruction,
            ),
        )
    return events


class Subscription:
    """Bounded per-observer buffer fed by :class:`EventBroadcaster`.

    ``offer`` never blocks: on overflow the subscription either drops its oldest
    event or closes itself, depending on ``overflow_policy``.
    """

    def __init__(
        self,
        *,
        broadcaster: EventBroadcaster,
        maxsize: int,
        overflow_policy: OverflowPolicy,
        task_id: int | None = None,
    ) -> None:
        self.task_id = task_id
        self.maxsize = max(1, maxsize)
        self.overflow_policy = overflow_policy
        self.dropped = 0
        self._broadcaster = broadcaster
        self._buffer: deque[TaskEvent] = deque()
        self._condition = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def accepts(self, event: TaskEvent) -> bool:
        if self.task_id is None or event.is_system:
            return True
        return event.task_id == self.task_id

    def offer(self, event: TaskEvent) -> bool:
        """Buffer ``event``; returns ``False`` once the subscription is closed."""

        with self._condition:
            if self._closed:
                return False
            if not self.accepts(event):
                return True
            if len(self._buffer) >= self.maxsize:
                if self.overflow_policy == OverflowPolicy.DISCONNECT:
                    self._closed = True
                    self._condition.notify_all()
                    logger.warning(
                        "Disconnecting slow subscriber: buffer of %s full",
                        self.maxsize,
                    )
                    return False
                self._buffer.popleft()
                self.dropped += 1
            self._buffer.append(event)
            self._condition.notify()
            return True

    def get(self, timeout: float | None = None) -> TaskEvent | None:
        """Next event, or ``None`` on timeout or when closed and drained."""

        with self._condition:
            if not self._buffer and not self._closed:
                self._condition.wait(timeout)
            if self._buffer:
                return self._buffer.popleft()
            return None

    def drain(self) -> list[TaskEvent]:
        with self._condition:
            events = list(self._buffer)
            self._buffer.clear()
        return events

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()
        self._broadcaster.unsubscribe(self)

    def __iter__(self) -> Iterator[TaskEvent]:
        while True:
            event = self.get()
            if event is None:
                if self._closed:
                    return
                continue
            yield event


class EventBroadcaster:
    """Fan-out of task events to subscribers; holds no task state of its own."""

    def __init__(
        self,
        *,
        buffer_size: int = 1_000,
        overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
        state_provider: Callable[[], SystemState] | None = None,
    ) -> None:
        self.buffer_size = buffer_size
        self.overflow_policy = overflow_policy
        self._state_provider = state_provider
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()

    def set_state_provider(self, provider: Callable[[], SystemState]) -> None:
        self._state_provider = provider

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(
        self,
        task_id: int | None = None,
        *,
        replay_snapshot: bool = True,
    ) -> Subscription:
        """Register an observer, optionally primed with the current snapshot."""

        subscription = Subscription(
            broadcaster=self,
            maxsize=self.buffer_size,
            overflow_policy=self.overflow_policy,
            task_id=task_id,
        )
        if replay_snapshot and self._state_provider is not None:
            for event in snapshot_events(self._state_provider()):
                subscription.offer(event)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def publish(self, event: TaskEvent) -> int:
        """Deliver to every matching subscriber; returns how many accepted it."""

        with self._lock:
            subscribers = list(self._subscribers)
        delivered = 0
        closed: list[Subscription] = []
        for subscription in subscribers:
            if not subscription.accepts(event):
                continue
            if subscription.offer(event):
                delivered += 1
            else:
                closed.append(subscription)
        if closed:
            with self._lock:
                self._subscribers = [sub for sub in self._subscribers if sub not in closed]
        logger.debug(
            "Published %s task=%s to %s subscribers",
            event.type.value,
            event.task_id,
            delivered,
        )
        return delivered

    def snapshot(self) -> SystemState:
        if self._state_provider is None:
            raise RuntimeError("Event broadcaster has no system state provider.")
        return self._state_provider()
