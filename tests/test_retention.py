from __future__ import annotations

from datetime import timedelta

import allure

from agent_taskhub.orchestrator.events import EventBroadcaster, EventType
from agent_taskhub.orchestrator.models import TaskCreate, TaskStatus
from agent_taskhub.orchestrator.repository import TaskRepository
from agent_taskhub.orchestrator.retention import RetentionSweeper
from agent_taskhub.storage.common import utc_now

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Retention"),
]


def _settled(repository: TaskRepository, instruction: str, status: TaskStatus) -> int:
    task = repository.create(TaskCreate(instruction=instruction), status=TaskStatus.QUEUED)
    task.status = status
    if status == TaskStatus.COMPLETED:
        task.completed_at = utc_now()
    repository.update(task)
    return task.task_id


def test_archive_expired_soft_deletes_settled_tasks(
    repository: TaskRepository,
    broadcaster: EventBroadcaster,
) -> None:
    completed = _settled(repository, "done", TaskStatus.COMPLETED)
    interrupted = _settled(repository, "stuck", TaskStatus.INTERRUPTED)
    running = _settled(repository, "busy", TaskStatus.RUNNING)
    queued = repository.create(TaskCreate(instruction="waiting"), status=TaskStatus.QUEUED)
    subscription = broadcaster.subscribe(replay_snapshot=False)
    sweeper = RetentionSweeper(store=repository, broadcaster=broadcaster, retention_hours=24)

    report = sweeper.archive_expired(now=utc_now() + timedelta(hours=25))

    assert set(report.archived) == {completed, interrupted}
    assert report.skipped == []
    events = subscription.drain()
    assert {event.task_id for event in events} == {completed, interrupted}
    assert {event.type for event in events} == {EventType.TASK_ARCHIVED}
    visible = {task.task_id for task in repository.list_tasks()}
    assert visible == {running, queued.task_id}


def test_recent_tasks_are_kept(
    repository: TaskRepository,
    broadcaster: EventBroadcaster,
) -> None:
    _settled(repository, "fresh", TaskStatus.FAILED)
    sweeper = RetentionSweeper(store=repository, broadcaster=broadcaster, retention_hours=24)

    report = sweeper.archive_expired(now=utc_now() + timedelta(hours=1))

    assert report.archived == []
    assert len(repository.list_tasks()) == 1


def test_purge_removes_only_archived_tasks(
    repository: TaskRepository,
    broadcaster: EventBroadcaster,
) -> None:
    old = _settled(repository, "old", TaskStatus.CANCELLED)
    repository.append_log(old, "bye", is_error=False)
    kept = _settled(repository, "kept", TaskStatus.KILLED)
    sweeper = RetentionSweeper(
        store=repository,
        broadcaster=broadcaster,
        retention_hours=0,
        clock=lambda: utc_now() + timedelta(seconds=5),
    )
    sweeper.archive_expired()
    repository.create(TaskCreate(instruction="new"), status=TaskStatus.QUEUED)

    assert sweeper.purge_archived() == 2
    assert repository.find_by_id(old) is None
    assert repository.find_by_id(kept) is None
    assert repository.list_logs(old) == []
    assert [task.instruction for task in repository.list_tasks()] == ["new"]
