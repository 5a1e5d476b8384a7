"""In-memory priority queue of tasks waiting for the runner."""

from __future__ import annotations

import bisect
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from agent_taskhub.orchestrator.errors import QueueEmpty
from agent_taskhub.orchestrator.events import EventBroadcaster, EventType, TaskEvent
from agent_taskhub.orchestrator.models import Task

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True, order=True)
class QueueEntry:
    """Sort key is (priority, created_at, task_id); ids grow with submission order."""

    priority: int
    created_at: datetime
    task_id: int
    task: Task = field(compare=False)


@dataclass(slots=True)
class SyncReport:
    added: list[int] = field(default_factory=list)
    removed: list[int] = field(default_factory=list)


class QueueManager:
    """Ordered pending tasks with O(1) position lookup.

    The position index is rebuilt from the mutation point on every change, so
    ``position_of`` is a dictionary lookup.
    """

    def __init__(self, *, broadcaster: EventBroadcaster) -> None:
        self._broadcaster = broadcaster
        self._entries: list[QueueEntry] = []
        self._positions: dict[int, int] = {}
        self._lock = threading.RLock()

    def enqueue(self, task: Task) -> int:
        """Insert ``task`` and return its zero-based position."""

        with self._lock:
            existing = self._positions.get(task.task_id)
            if existing is not None:
                logger.warning("Task %s is already queued at position %s", task.task_id, existing)
                return existing
            entry = QueueEntry(
                priority=task.priority,
                created_at=task.created_at,
                task_id=task.task_id,
                task=task.snapshot(),
            )
            index = bisect.bisect_right(self._entries, entry)
            self._entries.insert(index, entry)
            self._refresh_positions(index)
            queued = entry.task.snapshot()
            queued.queue_position = index
            self._broadcaster.publish(TaskEvent.for_task(EventType.TASK_QUEUED, queued))
            logger.debug("Queued task %s at position %s", task.task_id, index)
            return index

    def dequeue_next(self) -> Task:
        """Remove and return the head; raises :class:`QueueEmpty` when nothing waits."""

        with self._lock:
            if not self._entries:
                raise QueueEmpty()
            entry = self._entries.pop(0)
            del self._positions[entry.task_id]
            self._refresh_positions(0)
            self._broadcaster.publish(TaskEvent.for_task(EventType.TASK_DEQUEUED, entry.task))
            return entry.task.snapshot()

    def remove(self, task_id: int) -> bool:
        with self._lock:
            index = self._positions.pop(task_id, None)
            if index is None:
                return False
            del self._entries[index]
            self._refresh_positions(index)
            return True

    def position_of(self, task_id: int) -> int | None:
        return self._positions.get(task_id)

    def count(self) -> int:
        return len(self._entries)

    def task_ids(self) -> list[int]:
        with self._lock:
            return [entry.task_id for entry in self._entries]

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._positions

    def __len__(self) -> int:
        return self.count()

    def sync(self, queued_tasks: Iterable[Task]) -> SyncReport:
        """Reconcile with the store's QUEUED tasks: add missing, drop orphans."""

        report = SyncReport()
        with self._lock:
            expected = {task.task_id: task for task in queued_tasks}
            for task_id in list(self._positions):
                if task_id not in expected:
                    self.remove(task_id)
                    report.removed.append(task_id)
            for task_id, task in expected.items():
                if task_id not in self._positions:
                    self.enqueue(task)
                    report.added.append(task_id)
        if report.added or report.removed:
            logger.info(
                "Queue reconciled: added=%s removed=%s",
                report.added,
                report.removed,
            )
        return report

    def _refresh_positions(self, start: int) -> None:
        for index in range(start, len(self._entries)):
            self._positions[self._entries[index].task_id] = index
