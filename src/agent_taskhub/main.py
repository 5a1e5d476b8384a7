"""CLI entrypoint for agent-taskhub."""

import logging
from pathlib import Path

import rich_click as click

from agent_taskhub import __version__
from agent_taskhub.orchestrator.controllers import (
    ArchiveCommand,
    InspectTaskCommand,
    ListTasksCommand,
    MutateTaskCommand,
    StatusCommand,
    SubmitCommand,
    TaskHubCliController,
    TaskLogsCommand,
    WorkerCommand,
)
from agent_taskhub.orchestrator.errors import TaskHubError
from agent_taskhub.orchestrator.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskHubCliController()
STATUS_CHOICES = [status.value.lower() for status in TaskStatus]

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
task_id_option = click.option("--task-id", type=int, required=True, help="Task id.")
format_option = click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-taskhub")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def agent_taskhub(log_level: str) -> None:
    """Queue and supervise CLI coding agent tasks."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def submit_options(function):  # noqa: ANN001, ANN201
    for option in reversed(
        [
            db_path_option,
            click.argument("instruction"),
            click.option(
                "--script",
                "script_path",
                type=click.Path(path_type=Path, exists=True, dir_okay=False),
                default=None,
                help="File whose content is sent to the agent instead of the instruction.",
            ),
            click.option(
                "--priority",
                type=int,
                default=100,
                show_default=True,
                help="Lower runs first.",
            ),
            click.option(
                "--skip-permissions",
                is_flag=True,
                default=False,
                help="Pass the agent's permission-skipping flag.",
            ),
            click.option(
                "--fresh-sessions",
                is_flag=True,
                default=False,
                help="Never resume the previous agent session on recovery.",
            ),
            click.option("--base-branch", default=None, help="Base branch exported to the agent."),
            click.option(
                "--current-branch",
                default=None,
                help="Working branch exported to the agent.",
            ),
            click.option("--ticket", "ticket_key", default=None, help="Ticket key."),
        ],
    ):
        function = option(function)
    return function


@agent_taskhub.command("submit")
@submit_options
def submit(  # noqa: PLR0913
    db_path: Path | None,
    instruction: str,
    script_path: Path | None,
    priority: int,
    skip_permissions: bool,
    fresh_sessions: bool,
    base_branch: str | None,
    current_branch: str | None,
    ticket_key: str | None,
) -> None:
    """Queue a task for the worker."""

    _run(
        CONTROLLER.submit,
        SubmitCommand(
            db_path=db_path,
            instruction=instruction,
            script_path=script_path,
            priority=priority,
            skip_permissions=skip_permissions,
            fresh_sessions=fresh_sessions,
            base_branch=base_branch,
            current_branch=current_branch,
            ticket_key=ticket_key,
        ),
    )


@agent_taskhub.command("run")
@submit_options
def run(  # noqa: PLR0913
    db_path: Path | None,
    instruction: str,
    script_path: Path | None,
    priority: int,
    skip_permissions: bool,
    fresh_sessions: bool,
    base_branch: str | None,
    current_branch: str | None,
    ticket_key: str | None,
) -> None:
    """Run a task right now in this process; fails if the runner is busy."""

    _run(
        CONTROLLER.run_direct,
        SubmitCommand(
            db_path=db_path,
            instruction=instruction,
            script_path=script_path,
            priority=priority,
            skip_permissions=skip_permissions,
            fresh_sessions=fresh_sessions,
            base_branch=base_branch,
            current_branch=current_branch,
            ticket_key=ticket_key,
        ),
    )


@agent_taskhub.command("worker")
@db_path_option
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive idle polls (default: run until signalled).",
)
def worker(db_path: Path | None, max_idle_polls: int | None) -> None:
    """Run the queue worker: dispatch, supervise, recover and archive."""

    _run(CONTROLLER.run_worker, WorkerCommand(db_path=db_path, max_idle_polls=max_idle_polls))


@agent_taskhub.command("tasks")
@db_path_option
@click.option(
    "--status",
    type=click.Choice(STATUS_CHOICES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
@click.option("--archived", "include_archived", is_flag=True, help="Include archived tasks.")
@format_option
def tasks(
    db_path: Path | None,
    status: str | None,
    limit: int,
    include_archived: bool,
    output_format: str,
) -> None:
    """List tasks, newest first."""

    _run(
        CONTROLLER.list_tasks,
        ListTasksCommand(
            db_path=db_path,
            status=status,
            limit=limit,
            include_archived=include_archived,
            output_format=output_format.lower(),
        ),
    )


@agent_taskhub.command("inspect")
@db_path_option
@task_id_option
@format_option
def inspect(db_path: Path | None, task_id: int, output_format: str) -> None:
    """Inspect one task with recovery history and audit trail."""

    _run(
        CONTROLLER.inspect_task,
        InspectTaskCommand(db_path=db_path, task_id=task_id, output_format=output_format.lower()),
    )


@agent_taskhub.command("logs")
@db_path_option
@task_id_option
@click.option("--after", "after_log_id", type=int, default=None, help="Only logs after this id.")
def logs(db_path: Path | None, task_id: int, after_log_id: int | None) -> None:
    """Print captured agent output."""

    _run(
        CONTROLLER.task_logs,
        TaskLogsCommand(db_path=db_path, task_id=task_id, after_log_id=after_log_id),
    )


@agent_taskhub.command("cancel")
@db_path_option
@task_id_option
def cancel(db_path: Path | None, task_id: int) -> None:
    """Cancel a queued task, or ask the worker to cancel a running one."""

    _run(CONTROLLER.cancel_task, MutateTaskCommand(db_path=db_path, task_id=task_id))


@agent_taskhub.command("kill")
@db_path_option
@task_id_option
def kill(db_path: Path | None, task_id: int) -> None:
    """Ask the worker to force-terminate an active task."""

    _run(CONTROLLER.kill_task, MutateTaskCommand(db_path=db_path, task_id=task_id))


@agent_taskhub.command("pause")
@db_path_option
@task_id_option
def pause(db_path: Path | None, task_id: int) -> None:
    """Ask the worker to pause the running task."""

    _run(CONTROLLER.pause_task, MutateTaskCommand(db_path=db_path, task_id=task_id))


@agent_taskhub.command("resume")
@db_path_option
@task_id_option
def resume(db_path: Path | None, task_id: int) -> None:
    """Ask the worker to resume a paused task."""

    _run(CONTROLLER.resume_task, MutateTaskCommand(db_path=db_path, task_id=task_id))


@agent_taskhub.command("retry")
@db_path_option
@task_id_option
def retry(db_path: Path | None, task_id: int) -> None:
    """Ask the worker to relaunch an interrupted task."""

    _run(CONTROLLER.retry_task, MutateTaskCommand(db_path=db_path, task_id=task_id))


@agent_taskhub.command("skip")
@db_path_option
@task_id_option
def skip(db_path: Path | None, task_id: int) -> None:
    """Give up on an interrupted task (it becomes FAILED)."""

    _run(CONTROLLER.skip_task, MutateTaskCommand(db_path=db_path, task_id=task_id))


@agent_taskhub.command("status")
@db_path_option
@format_option
def status(db_path: Path | None, output_format: str) -> None:
    """Show runner occupancy and queue depth."""

    _run(CONTROLLER.status, StatusCommand(db_path=db_path, output_format=output_format.lower()))


@agent_taskhub.command("archive")
@db_path_option
@click.option("--purge", is_flag=True, help="Also hard-delete archived tasks.")
def archive(db_path: Path | None, purge: bool) -> None:
    """Archive settled tasks older than the retention window."""

    _run(CONTROLLER.archive, ArchiveCommand(db_path=db_path, purge=purge))


def _run(handler, command) -> None:  # noqa: ANN001
    try:
        lines = handler(command)
    except (TaskHubError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_taskhub()
