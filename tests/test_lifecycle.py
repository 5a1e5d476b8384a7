from __future__ import annotations

import allure
import pytest

from agent_taskhub.orchestrator.errors import InvalidTransition, TaskNotFound
from agent_taskhub.orchestrator.events import EventBroadcaster, EventType
from agent_taskhub.orchestrator.lifecycle import (
    TRANSITIONS,
    TaskLifecycle,
    Trigger,
    allowed_triggers,
    next_status,
)
from agent_taskhub.orchestrator.models import (
    TERMINAL_STATUSES,
    Task,
    TaskCreate,
    TaskStatus,
)
from agent_taskhub.orchestrator.repository import TaskRepository

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("State Machine"),
]


@pytest.fixture()
def lifecycle(repository: TaskRepository, broadcaster: EventBroadcaster) -> TaskLifecycle:
    return TaskLifecycle(store=repository, broadcaster=broadcaster)


def _queued(repository: TaskRepository) -> Task:
    return repository.create(TaskCreate(instruction="fix the build"), status=TaskStatus.QUEUED)


def test_transition_table_matches_lifecycle() -> None:
    assert len(TRANSITIONS) == 21
    assert next_status(TaskStatus.QUEUED, Trigger.START) == TaskStatus.RUNNING
    assert next_status(TaskStatus.PENDING, Trigger.START) == TaskStatus.RUNNING
    assert next_status(TaskStatus.RATE_LIMITED, Trigger.BACKOFF) == TaskStatus.PAUSED_BY_LIMIT
    assert next_status(TaskStatus.PAUSED_BY_LIMIT, Trigger.LIMIT_CLEARED) == TaskStatus.RUNNING
    assert next_status(TaskStatus.INTERRUPTED, Trigger.SKIP) == TaskStatus.FAILED
    assert next_status(TaskStatus.QUEUED, Trigger.CANCEL) == TaskStatus.CANCELLED
    assert next_status(TaskStatus.RUNNING, Trigger.CANCEL) == TaskStatus.CANCELLING
    assert next_status(TaskStatus.CANCELLING, Trigger.TERMINATE) == TaskStatus.TERMINATING
    assert next_status(TaskStatus.QUEUED, Trigger.COMPLETE) is None
    assert next_status(TaskStatus.RATE_LIMITED, Trigger.CANCEL) is None


@pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES, key=lambda status: status.value))
def test_terminal_statuses_accept_no_trigger(status: TaskStatus) -> None:
    assert allowed_triggers(status) == frozenset()


def test_interrupted_only_recovers_or_skips() -> None:
    assert allowed_triggers(TaskStatus.INTERRUPTED) == {Trigger.RECOVER, Trigger.SKIP}


def test_start_persists_before_publishing(
    lifecycle: TaskLifecycle,
    repository: TaskRepository,
    broadcaster: EventBroadcaster,
) -> None:
    task = _queued(repository)
    subscription = broadcaster.subscribe(replay_snapshot=False)

    started = lifecycle.transition(task.task_id, Trigger.START)

    assert started.status == TaskStatus.RUNNING
    assert started.started_at is not None
    stored = repository.find_by_id(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.RUNNING
    events = subscription.drain()
    assert [event.type for event in events] == [EventType.STATUS_UPDATE]
    assert events[0].status == TaskStatus.RUNNING
    assert events[0].task is not None
    assert events[0].task.status == TaskStatus.RUNNING


def test_invalid_transition_leaves_task_untouched(
    lifecycle: TaskLifecycle,
    repository: TaskRepository,
    broadcaster: EventBroadcaster,
) -> None:
    task = _queued(repository)
    subscription = broadcaster.subscribe(replay_snapshot=False)

    with pytest.raises(InvalidTransition) as error:
        lifecycle.transition(task.task_id, Trigger.COMPLETE)

    assert error.value.status == TaskStatus.QUEUED
    assert error.value.trigger == "COMPLETE"
    stored = repository.find_by_id(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.QUEUED
    assert subscription.drain() == []


def test_expect_narrows_allowed_sources(
    lifecycle: TaskLifecycle,
    repository: TaskRepository,
) -> None:
    task = _queued(repository)
    lifecycle.transition(task.task_id, Trigger.START)

    with pytest.raises(InvalidTransition):
        lifecycle.transition(
            task.task_id,
            Trigger.CANCEL,
            expect={TaskStatus.PENDING, TaskStatus.QUEUED},
        )


def test_unknown_task_raises_not_found(lifecycle: TaskLifecycle) -> None:
    with pytest.raises(TaskNotFound):
        lifecycle.transition(999, Trigger.START)


def test_interrupt_publishes_dedicated_event(
    lifecycle: TaskLifecycle,
    repository: TaskRepository,
    broadcaster: EventBroadcaster,
) -> None:
    task = _queued(repository)
    lifecycle.transition(task.task_id, Trigger.START)
    subscription = broadcaster.subscribe(task.task_id, replay_snapshot=False)

    interrupted = lifecycle.transition(
        task.task_id,
        Trigger.INTERRUPT,
        failure_reason="AGENT_CRASHED",
        error_summary="Agent exited with code 137",
    )

    assert interrupted.failure_reason == "AGENT_CRASHED"
    assert [event.type for event in subscription.drain()] == [
        EventType.STATUS_UPDATE,
        EventType.TASK_INTERRUPTED,
    ]


def test_terminal_transition_stamps_and_resets_limit_counter(
    lifecycle: TaskLifecycle,
    repository: TaskRepository,
) -> None:
    task = _queued(repository)
    lifecycle.transition(task.task_id, Trigger.START)

    def _hit(current: Task) -> None:
        current.rate_limit_hits += 1

    limited = lifecycle.transition(task.task_id, Trigger.RATE_LIMIT, mutate=_hit)
    assert limited.rate_limit_hits == 1
    lifecycle.transition(task.task_id, Trigger.BACKOFF)
    cancelling = lifecycle.transition(task.task_id, Trigger.CANCEL)
    assert cancelling.status == TaskStatus.CANCELLING
    assert cancelling.cancelled_at is not None

    cancelled = lifecycle.transition(task.task_id, Trigger.CONFIRM_CANCEL)

    assert cancelled.status == TaskStatus.CANCELLED
    assert cancelled.completed_at is not None
    assert cancelled.rate_limit_hits == 0


def test_completion_clears_previous_failure(
    lifecycle: TaskLifecycle,
    repository: TaskRepository,
) -> None:
    task = _queued(repository)
    lifecycle.transition(task.task_id, Trigger.START)
    lifecycle.transition(task.task_id, Trigger.INTERRUPT, failure_reason="AGENT_CRASHED")
    lifecycle.transition(task.task_id, Trigger.RECOVER)

    completed = lifecycle.transition(task.task_id, Trigger.COMPLETE)

    assert completed.failure_reason is None
    assert completed.error_summary is None


def test_amend_refuses_status_changes(
    lifecycle: TaskLifecycle,
    repository: TaskRepository,
) -> None:
    task = _queued(repository)

    def _sneaky(current: Task) -> None:
        current.status = TaskStatus.RUNNING

    with pytest.raises(ValueError, match="transition"):
        lifecycle.amend(task.task_id, _sneaky)


def test_transitions_are_written_to_audit_trail(
    lifecycle: TaskLifecycle,
    repository: TaskRepository,
) -> None:
    task = _queued(repository)
    lifecycle.transition(task.task_id, Trigger.START)
    lifecycle.transition(task.task_id, Trigger.FAIL, failure_reason="AGENT_FAILED")

    details = repository.get_task_details(task.task_id)

    assert details is not None
    transitions = [event for event in details.events if event.event_type == "transition"]
    assert [(event.status_from, event.status_to) for event in transitions] == [
        (TaskStatus.QUEUED, TaskStatus.RUNNING),
        (TaskStatus.RUNNING, TaskStatus.FAILED),
    ]
    assert transitions[1].details["failure_reason"] == "AGENT_FAILED"
    assert transitions[1].details["trigger"] == "FAIL"
