"""Subprocess-based backend for CLI coding agents."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
from collections import deque
from typing import IO, TYPE_CHECKING

from agent_taskhub.config import (
    DEFAULT_COMMAND_TEMPLATE,
    DEFAULT_RESUME_COMMAND_TEMPLATE,
)
from agent_taskhub.orchestrator.backend.base import AgentExit, AgentLaunchRequest, AgentSink

if TYPE_CHECKING:
    from agent_taskhub.config import RunnerSettings

logger = logging.getLogger(__name__)

SKIP_PERMISSIONS_FLAG = "--dangerously-skip-permissions"


class BackendRunError(RuntimeError):
    """Backend launch error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Start the agent CLI in its own process group and stream its output."""

    def __init__(
        self,
        *,
        command_template: str = DEFAULT_COMMAND_TEMPLATE,
        resume_command_template: str = DEFAULT_RESUME_COMMAND_TEMPLATE,
        output_tail_lines: int = 20,
    ) -> None:
        self.command_template = command_template
        self.resume_command_template = resume_command_template
        self.output_tail_lines = output_tail_lines

    @classmethod
    def from_settings(cls, settings: RunnerSettings) -> CliAgentBackend:
        return cls(
            command_template=settings.command_template,
            resume_command_template=settings.resume_command_template,
            output_tail_lines=settings.output_tail_lines,
        )

    def launch(self, request: AgentLaunchRequest, sink: AgentSink) -> CliAgentSession:
        template = (
            self.resume_command_template if request.resume_session else self.command_template
        )
        argv = build_run_args(
            command_template=template,
            prompt=request.prompt,
            session_id=request.session_id,
            skip_permissions=request.skip_permissions,
            model=request.model,
        )

        env = os.environ.copy()
        env.update(request.env)
        env["AGENT_TASKHUB_TASK_ID"] = str(request.task_id)
        env["AGENT_TASKHUB_SESSION_ID"] = request.session_id

        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                env=env,
                cwd=request.workdir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"CLI backend command not found: {argv[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"CLI backend failed to start: {error}",
                transient=True,
            ) from error

        logger.info(
            "Started agent pid=%s task=%s session=%s resume=%s",
            process.pid,
            request.task_id,
            request.session_id,
            request.resume_session,
        )
        session = CliAgentSession(
            task_id=request.task_id,
            session_id=request.session_id,
            process=process,
            sink=sink,
            tail_lines=self.output_tail_lines,
        )
        session.start()
        return session


class CliAgentSession:
    """Running agent process; output is pumped by reader threads.

    The exit is reported to the sink only after both streams are drained, so the
    last log line always precedes the exit notification.
    """

    def __init__(
        self,
        *,
        task_id: int,
        session_id: str,
        process: subprocess.Popen[str],
        sink: AgentSink,
        tail_lines: int = 20,
    ) -> None:
        self.task_id = task_id
        self.session_id = session_id
        self._process = process
        self._sink = sink
        self._tail: deque[str] = deque(maxlen=max(1, tail_lines))
        self._tail_lock = threading.Lock()
        self._returncode: int | None = None
        self._exited = threading.Event()
        self._readers = [
            threading.Thread(
                target=self._pump,
                args=(process.stdout, False),
                name=f"agent-{task_id}-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=self._pump,
                args=(process.stderr, True),
                name=f"agent-{task_id}-stderr",
                daemon=True,
            ),
        ]
        self._watcher = threading.Thread(
            target=self._watch,
            name=f"agent-{task_id}-watch",
            daemon=True,
        )

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def start(self) -> None:
        for reader in self._readers:
            reader.start()
        self._watcher.start()

    def pause(self) -> None:
        self._signal(signal.SIGSTOP)

    def resume(self) -> None:
        self._signal(signal.SIGCONT)

    def terminate(self) -> None:
        # A stopped process only acts on SIGTERM once continued.
        self._signal(signal.SIGTERM)
        self._signal(signal.SIGCONT)

    def kill(self) -> None:
        self._signal(signal.SIGKILL)

    def is_alive(self) -> bool:
        return self._process.poll() is None

    def wait(self, timeout: float | None = None) -> int | None:
        self._exited.wait(timeout)
        return self._returncode

    def _signal(self, signum: signal.Signals) -> None:
        if self._process.poll() is not None:
            return
        try:
            os.killpg(self._process.pid, signum)
        except ProcessLookupError:
            return
        logger.debug("Sent %s to agent task=%s pid=%s", signum.name, self.task_id, self.pid)

    def _pump(self, stream: IO[str] | None, is_error: bool) -> None:
        if stream is None:
            return
        with stream:
            for raw in iter(stream.readline, ""):
                line = raw.rstrip("\r\n")
                with self._tail_lock:
                    self._tail.append(line)
                try:
                    self._sink.on_output(self.task_id, line, is_error=is_error)
                except Exception:
                    logger.exception("Output handler failed for task %s", self.task_id)

    def _watch(self) -> None:
        exit_code = self._process.wait()
        for reader in self._readers:
            reader.join()
        with self._tail_lock:
            tail = tuple(self._tail)
        self._returncode = exit_code
        logger.info("Agent exited task=%s pid=%s code=%s", self.task_id, self.pid, exit_code)
        try:
            self._sink.on_exit(
                self,
                AgentExit(task_id=self.task_id, exit_code=exit_code, tail=tail),
            )
        except Exception:
            logger.exception("Exit handler failed for task %s", self.task_id)
        finally:
            self._exited.set()


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    session_id: str,
    skip_permissions: bool,
    model: str = "",
) -> list[str]:
    """Render the command template into argv."""

    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("CLI backend command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise BackendRunError(
            "CLI backend command template must include {prompt}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            session_id=shlex.quote(session_id),
            model=shlex.quote(model) if model else "",
            skip_permissions=SKIP_PERMISSIONS_FLAG if skip_permissions else "",
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "CLI backend command template rendered empty command.",
            transient=False,
        )
    return argv
