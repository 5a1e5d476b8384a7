from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_taskhub.main import agent_taskhub
from agent_taskhub.orchestrator.models import ControlAction, TaskCreate, TaskStatus
from agent_taskhub.orchestrator.repository import TaskRepository

pytestmark = [
    allure.epic("Task Hub"),
    allure.feature("CLI Operations"),
]


def _invoke(runner: CliRunner, db_path: Path, *args: str):  # noqa: ANN202
    return runner.invoke(agent_taskhub, [args[0], "--db-path", str(db_path), *args[1:]])


def test_submit_list_cancel_and_inspect(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    first = _invoke(runner, db_path, "submit", "write docs", "--priority", "50")
    assert first.exit_code == 0, first.output
    assert "Task queued: task_id=1 priority=50" in first.output
    second = _invoke(
        runner,
        db_path,
        "submit",
        "fix tests",
        "--priority",
        "5",
        "--ticket",
        "HUB-7",
    )
    assert second.exit_code == 0, second.output

    listed = _invoke(runner, db_path, "tasks", "--format", "json")
    assert listed.exit_code == 0, listed.output
    payload = json.loads(listed.output)
    positions = {task["id"]: task["queuePosition"] for task in payload["tasks"]}
    assert payload["count"] == 2
    assert positions == {1: 1, 2: 0}

    status = _invoke(runner, db_path, "status")
    assert "Runner: IDLE" in status.output
    assert "Queued: 2" in status.output

    cancelled = _invoke(runner, db_path, "cancel", "--task-id", "1")
    assert cancelled.exit_code == 0, cancelled.output
    assert "Task cancelled: 1 status=CANCELLED" in cancelled.output

    inspected = _invoke(runner, db_path, "inspect", "--task-id", "1")
    assert "Status: CANCELLED" in inspected.output
    assert "Failure reason: CANCELLED" in inspected.output
    assert "transition QUEUED -> CANCELLED" in inspected.output

    queued_only = _invoke(runner, db_path, "tasks", "--status", "queued")
    assert "Tasks: 1" in queued_only.output
    assert "instruction=fix tests" in queued_only.output


def test_control_commands_validate_task_state(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    _invoke(runner, db_path, "submit", "queued work")

    paused = _invoke(runner, db_path, "pause", "--task-id", "1")
    retried = _invoke(runner, db_path, "retry", "--task-id", "1")
    missing = _invoke(runner, db_path, "kill", "--task-id", "99")

    assert paused.exit_code == 1
    assert "not allowed" in paused.output
    assert retried.exit_code == 1
    assert missing.exit_code == 1
    assert "Task not found: 99" in missing.output


def test_control_requests_are_recorded_for_worker(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    repository = TaskRepository(db_path)
    repository.init_schema()
    task = repository.create(TaskCreate(instruction="busy"), status=TaskStatus.QUEUED)
    task.status = TaskStatus.RUNNING
    repository.update(task)
    repository.close()
    runner = CliRunner()

    result = _invoke(runner, db_path, "kill", "--task-id", str(task.task_id))
    status = _invoke(runner, db_path, "status", "--format", "json")

    assert result.exit_code == 0, result.output
    assert f"Requested kill for task {task.task_id} (status=RUNNING)" in result.output
    assert json.loads(status.output)["runnerStatus"] == "BUSY"

    repository = TaskRepository(db_path)
    try:
        assert repository.pop_control_requests() == [(task.task_id, ControlAction.KILL)]
    finally:
        repository.close()


def test_skip_interrupted_task(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    repository = TaskRepository(db_path)
    repository.init_schema()
    task = repository.create(TaskCreate(instruction="stuck"), status=TaskStatus.QUEUED)
    task.status = TaskStatus.INTERRUPTED
    repository.update(task)
    repository.close()
    runner = CliRunner()

    skipped = _invoke(runner, db_path, "skip", "--task-id", str(task.task_id))

    assert skipped.exit_code == 0, skipped.output
    assert "status=FAILED" in skipped.output
    assert "reason=SKIPPED" in skipped.output


@pytest.mark.usefixtures("echo_agent")
def test_run_executes_task_in_process(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    result = _invoke(runner, db_path, "run", "hello hub")

    assert result.exit_code == 0, result.output
    assert "Task started: task_id=1" in result.output
    assert "echo: hello hub" in result.output
    assert "status=COMPLETED" in result.output

    logs = _invoke(runner, db_path, "logs", "--task-id", "1")
    assert "echo: hello hub" in logs.output


@pytest.mark.usefixtures("echo_agent")
def test_worker_drains_queue_and_exits_when_idle(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    _invoke(runner, db_path, "submit", "first job")
    _invoke(runner, db_path, "submit", "second job")

    result = _invoke(runner, db_path, "worker", "--max-idle-polls", "2")

    assert result.exit_code == 0, result.output
    assert "Worker summary:" in result.output
    listed = json.loads(_invoke(runner, db_path, "tasks", "--format", "json").output)
    assert {task["status"] for task in listed["tasks"]} == {"COMPLETED"}


def test_archive_reports_counts(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    result = _invoke(runner, db_path, "archive", "--purge")

    assert result.exit_code == 0, result.output
    assert "Archived: 0" in result.output
    assert "Purged: 0" in result.output
