"""Backend interface for launching and steering one agent session."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class AgentLaunchRequest:
    """Inputs required to start or resume one agent session."""

    task_id: int
    prompt: str
    session_id: str
    resume_session: bool = False
    skip_permissions: bool = False
    model: str = ""
    workdir: Path | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class AgentExit:
    """How an agent session ended."""

    task_id: int
    exit_code: int
    tail: tuple[str, ...] = ()


class AgentSession(Protocol):
    """Handle on a running agent process."""

    task_id: int
    session_id: str

    @property
    def returncode(self) -> int | None:
        """Exit code once the agent has exited, else ``None``."""

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def terminate(self) -> None:
        """Ask the agent to stop gracefully."""

    def kill(self) -> None: ...

    def is_alive(self) -> bool: ...

    def wait(self, timeout: float | None = None) -> int | None: ...


class AgentSink(Protocol):
    """Receiver of agent output and exit notifications."""

    def on_output(self, task_id: int, line: str, *, is_error: bool) -> None: ...

    def on_exit(self, session: AgentSession, result: AgentExit) -> None: ...


class AgentBackend(Protocol):
    """Protocol implemented by agent runners."""

    def launch(self, request: AgentLaunchRequest, sink: AgentSink) -> AgentSession:
        """Start the agent; raises ``BackendRunError`` when it cannot be started."""
