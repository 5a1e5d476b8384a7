from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from agent_taskhub.orchestrator.errors import QueueEmpty
from agent_taskhub.orchestrator.events import EventBroadcaster, EventType
from agent_taskhub.orchestrator.models import ExecutionMode, SessionMode, Task, TaskStatus
from agent_taskhub.orchestrator.queue_manager import QueueManager

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Priority Ordering"),
]

BASE_TIME = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)


def _task(task_id: int, *, priority: int = 100, minutes: int = 0) -> Task:
    created_at = BASE_TIME + timedelta(minutes=minutes)
    return Task(
        task_id=task_id,
        instruction=f"task {task_id}",
        status=TaskStatus.QUEUED,
        priority=priority,
        session_mode=SessionMode.PERSIST,
        execution_mode=ExecutionMode.QUEUED,
        created_at=created_at,
        updated_at=created_at,
    )


@pytest.fixture()
def queue(broadcaster: EventBroadcaster) -> QueueManager:
    return QueueManager(broadcaster=broadcaster)


def test_lower_priority_value_runs_first(queue: QueueManager) -> None:
    queue.enqueue(_task(1, priority=100))
    queue.enqueue(_task(2, priority=10))
    queue.enqueue(_task(3, priority=50))

    assert queue.task_ids() == [2, 3, 1]
    assert queue.dequeue_next().task_id == 2
    assert queue.position_of(3) == 0
    assert queue.position_of(1) == 1


def test_equal_priority_is_fifo_by_creation_time(queue: QueueManager) -> None:
    queue.enqueue(_task(7, minutes=2))
    queue.enqueue(_task(5, minutes=0))
    queue.enqueue(_task(6, minutes=1))

    assert [queue.dequeue_next().task_id for _ in range(3)] == [5, 6, 7]


def test_same_timestamp_ties_break_by_id(queue: QueueManager) -> None:
    queue.enqueue(_task(9))
    queue.enqueue(_task(8))

    assert queue.task_ids() == [8, 9]


def test_enqueue_returns_position_and_is_idempotent(queue: QueueManager) -> None:
    assert queue.enqueue(_task(1, priority=5)) == 0
    assert queue.enqueue(_task(2, priority=1)) == 0
    assert queue.enqueue(_task(1, priority=5)) == 1
    assert len(queue) == 2


def test_dequeue_empty_raises(queue: QueueManager) -> None:
    with pytest.raises(QueueEmpty):
        queue.dequeue_next()


def test_remove_shifts_positions(queue: QueueManager) -> None:
    for task_id in (1, 2, 3):
        queue.enqueue(_task(task_id, minutes=task_id))

    assert queue.remove(2) is True
    assert queue.remove(2) is False
    assert 2 not in queue
    assert queue.position_of(3) == 1
    assert queue.position_of(2) is None


def test_enqueue_and_dequeue_publish_events(
    queue: QueueManager,
    broadcaster: EventBroadcaster,
) -> None:
    subscription = broadcaster.subscribe(replay_snapshot=False)

    queue.enqueue(_task(1))
    queue.dequeue_next()

    events = subscription.drain()
    assert [event.type for event in events] == [EventType.TASK_QUEUED, EventType.TASK_DEQUEUED]
    assert events[0].task is not None
    assert events[0].task.queue_position == 0


def test_sync_adds_missing_and_drops_orphans(queue: QueueManager) -> None:
    queue.enqueue(_task(1))
    queue.enqueue(_task(2, minutes=1))

    report = queue.sync([_task(2, minutes=1), _task(3, minutes=2)])

    assert report.added == [3]
    assert report.removed == [1]
    assert queue.task_ids() == [2, 3]
