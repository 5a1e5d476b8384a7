"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_taskhub.config import RecoverySettings, RunnerSettings, Settings
from agent_taskhub.orchestrator.backend import AgentExit, AgentLaunchRequest, AgentSink
from agent_taskhub.orchestrator.backend.cli_backend import BackendRunError
from agent_taskhub.orchestrator.events import EventBroadcaster
from agent_taskhub.orchestrator.repository import TaskRepository
from agent_taskhub.orchestrator.services import TaskHubService

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m agent_taskhub.orchestrator.backend.echo_agent "
    "--session-id {session_id} -- {prompt}"
)
ECHO_AGENT_RESUME_TEMPLATE = (
    f"{sys.executable} -m agent_taskhub.orchestrator.backend.echo_agent "
    "--resume --session-id {session_id} -- {prompt}"
)


class FakeSession:
    """Agent session steered by the test; exits are delivered synchronously."""

    def __init__(
        self,
        request: AgentLaunchRequest,
        sink: AgentSink,
        *,
        exit_on_terminate: bool = True,
    ) -> None:
        self.task_id = request.task_id
        self.session_id = request.session_id
        self.request = request
        self.sink = sink
        self.exit_on_terminate = exit_on_terminate
        self.signals: list[str] = []
        self._returncode: int | None = None

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def pause(self) -> None:
        self.signals.append("pause")

    def resume(self) -> None:
        self.signals.append("resume")

    def terminate(self) -> None:
        self.signals.append("terminate")
        if self.exit_on_terminate:
            self.finish(-15)

    def kill(self) -> None:
        self.signals.append("kill")
        if self.is_alive():
            self.finish(-9)

    def is_alive(self) -> bool:
        return self._returncode is None

    def wait(self, timeout: float | None = None) -> int | None:
        return self._returncode

    def emit(self, line: str, *, is_error: bool = False) -> None:
        self.sink.on_output(self.task_id, line, is_error=is_error)

    def finish(self, exit_code: int) -> None:
        self._returncode = exit_code
        self.sink.on_exit(self, AgentExit(task_id=self.task_id, exit_code=exit_code))


class FakeBackend:
    def __init__(self) -> None:
        self.sessions: list[FakeSession] = []
        self.launch_errors: list[BackendRunError] = []
        self.exit_on_terminate = True

    @property
    def last(self) -> FakeSession:
        return self.sessions[-1]

    def launch(self, request: AgentLaunchRequest, sink: AgentSink) -> FakeSession:
        if self.launch_errors:
            raise self.launch_errors.pop(0)
        session = FakeSession(request, sink, exit_on_terminate=self.exit_on_terminate)
        self.sessions.append(session)
        return session


class ManualTimer:
    """Stand-in for ``threading.Timer`` fired explicitly by the test."""

    def __init__(self, interval: float, function, args=()) -> None:  # noqa: ANN001
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.function(*self.args)


class TimerFactory:
    def __init__(self) -> None:
        self.timers: list[ManualTimer] = []

    @property
    def pending(self) -> list[ManualTimer]:
        return [timer for timer in self.timers if not timer.cancelled]

    def __call__(self, interval: float, function, args=()) -> ManualTimer:  # noqa: ANN001
        timer = ManualTimer(interval, function, args=args)
        self.timers.append(timer)
        return timer


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(tmp_path / "taskhub.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster(buffer_size=100)


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def timers() -> TimerFactory:
    return TimerFactory()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "taskhub.db",
        runner=RunnerSettings(cancel_timeout_seconds=0.2, kill_timeout_seconds=0.2),
        recovery=RecoverySettings(max_retries=2, backoff_base_seconds=5, backoff_max_seconds=60),
    )


@pytest.fixture()
def service(
    repository: TaskRepository,
    backend: FakeBackend,
    settings: Settings,
    timers: TimerFactory,
) -> Iterator[TaskHubService]:
    hub = TaskHubService(
        store=repository,
        backend=backend,
        settings=settings,
        timer_factory=timers,
    )
    hub.start()
    yield hub
    hub.stop()


@pytest.fixture()
def echo_agent(monkeypatch: pytest.MonkeyPatch) -> None:
    """Point the runner at the bundled echo agent."""

    monkeypatch.setenv("AGENT_TASKHUB_COMMAND_TEMPLATE", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("AGENT_TASKHUB_RESUME_COMMAND_TEMPLATE", ECHO_AGENT_RESUME_TEMPLATE)
    monkeypatch.setenv("AGENT_TASKHUB_POLL_INTERVAL_SECONDS", "0.05")
