from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import allure

from agent_taskhub.config import Settings
from agent_taskhub.orchestrator.models import ControlAction, TaskCreate, TaskStatus
from agent_taskhub.orchestrator.repository import TaskRepository
from agent_taskhub.orchestrator.retention import RetentionSweeper
from agent_taskhub.orchestrator.services import TaskHubService
from agent_taskhub.orchestrator.worker import TaskHubWorker
from agent_taskhub.storage.common import utc_now

if TYPE_CHECKING:
    from conftest import FakeBackend, TimerFactory

pytestmark = [
    allure.epic("Task Hub"),
    allure.feature("Worker Loop"),
]


def test_run_once_picks_up_submissions_and_control_requests(
    service: TaskHubService,
    repository: TaskRepository,
    backend: FakeBackend,
) -> None:
    worker = TaskHubWorker(service=service, poll_interval_seconds=0)
    submitted = repository.create(TaskCreate(instruction="from cli"), status=TaskStatus.QUEUED)

    first = worker.run_once()

    assert first.dispatched == 1
    assert first.idle_polls == 0
    assert service.get_task(submitted.task_id).status == TaskStatus.RUNNING

    repository.request_control(submitted.task_id, ControlAction.CANCEL)
    second = worker.run_once()

    assert second.control_requests == 1
    assert backend.last.signals == ["terminate"]
    assert service.get_task(submitted.task_id).status == TaskStatus.CANCELLED

    third = worker.run_once()
    assert third.idle_polls == 1


def test_run_loop_stops_after_idle_polls_and_archives(
    repository: TaskRepository,
    backend: FakeBackend,
    settings: Settings,
    timers: TimerFactory,
) -> None:
    hub = TaskHubService(
        store=repository,
        backend=backend,
        settings=settings,
        timer_factory=timers,
    )
    old = repository.create(TaskCreate(instruction="old"), status=TaskStatus.QUEUED)
    old.status = TaskStatus.COMPLETED
    old.completed_at = utc_now()
    repository.update(old)
    sweeper = RetentionSweeper(
        store=repository,
        broadcaster=hub.broadcaster,
        retention_hours=0,
        clock=lambda: utc_now() + timedelta(seconds=5),
    )
    worker = TaskHubWorker(service=hub, sweeper=sweeper, poll_interval_seconds=0)

    summary = worker.run_loop(max_idle_polls=2)

    assert summary.passes == 2
    assert summary.idle_polls == 2
    assert summary.archived == 1
    assert repository.list_tasks() == []
    assert hub.supervisor.is_connected is False


def test_stop_request_ends_loop_before_next_pass(service: TaskHubService) -> None:
    worker = TaskHubWorker(service=service, poll_interval_seconds=0)
    worker.request_stop()

    assert worker.run_once().dispatched == 0
    assert worker.run_loop().passes == 0
    assert worker.stop_signal_name == "request"
