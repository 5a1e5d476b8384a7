"""Runner supervisor: owns the single execution slot and the live agent session."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from typing import Any
from uuid import uuid4

from agent_taskhub.config import RunnerSettings
from agent_taskhub.orchestrator.backend.base import (
    AgentBackend,
    AgentExit,
    AgentLaunchRequest,
    AgentSession,
)
from agent_taskhub.orchestrator.backend.cli_backend import BackendRunError
from agent_taskhub.orchestrator.errors import (
    CancelTimedOut,
    InvalidTransition,
    KillFailed,
    NoActiveTask,
    RunnerBusy,
    RunnerDisconnected,
    TaskHubError,
)
from agent_taskhub.orchestrator.events import (
    RATE_LIMIT_PAUSE_LINE,
    EventBroadcaster,
    EventType,
    TaskEvent,
)
from agent_taskhub.orchestrator.failure_classifier import (
    ExitOutcome,
    classify_exit,
    detect_rate_limit,
)
from agent_taskhub.orchestrator.lifecycle import TaskLifecycle, Trigger
from agent_taskhub.orchestrator.models import (
    AuditEventWrite,
    FailureReason,
    RecoveryAction,
    RecoveryAttempt,
    RecoveryResult,
    SessionMode,
    Task,
    TaskStatus,
)
from agent_taskhub.orchestrator.recovery import RecoveryCondition, RecoveryPolicy

logger = logging.getLogger(__name__)

TimerFactory = Callable[..., Any]


class RunnerSupervisor:
    """Drives one agent at a time through the lifecycle state machine.

    Every agent signal (output line, exit, rate limit) is turned into a lifecycle
    transition; task status is never changed or announced here directly. State
    changes happen under one re-entrant lock. Waiting for cancel or kill
    acknowledgment happens outside it, and the read-only properties never take
    it, so snapshots stay responsive.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        lifecycle: TaskLifecycle,
        recovery: RecoveryPolicy,
        backend: AgentBackend,
        broadcaster: EventBroadcaster,
        settings: RunnerSettings | None = None,
        on_idle: Callable[[], object] | None = None,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self.settings = settings or RunnerSettings()
        self._lifecycle = lifecycle
        self._recovery = recovery
        self._backend = backend
        self._broadcaster = broadcaster
        self._on_idle = on_idle
        self._timer_factory = timer_factory

        self._lock = threading.RLock()
        self._active_task_id: int | None = None
        self._session: AgentSession | None = None
        self._connected = False
        self._rate_limited = False
        self._idle_pending = False
        self._backoff_timer: Any = None
        self._settled: dict[int, threading.Event] = {}
        self._recent_output: deque[str] = deque(maxlen=max(1, self.settings.output_tail_lines))

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_rate_limited(self) -> bool:
        return self._rate_limited

    @property
    def active_task_id(self) -> int | None:
        return self._active_task_id

    @property
    def is_idle(self) -> bool:
        return self._active_task_id is None

    def set_idle_callback(self, callback: Callable[[], object] | None) -> None:
        self._on_idle = callback

    def connect(self) -> None:
        """Mark the agent backend available and let the dispatcher run."""

        with self._lock:
            if self._connected:
                return
            self._connected = True
            self._idle_pending = True
            backend_name = type(self._backend).__name__
            logger.info("Runner connected (backend=%s)", backend_name)
            self._broadcaster.publish(
                TaskEvent.system(EventType.SYSTEM, f"Runner {backend_name} connected"),
            )
            self._broadcaster.publish(TaskEvent.system(EventType.SYSTEM_READY, "Runner connected"))
            task_id = self._active_task_id
            if task_id is not None and self._backoff_timer is None:
                self._clear_limit(task_id)
        self._notify_idle()

    def disconnect(self) -> None:
        """Drop the backend; a RUNNING task is interrupted and its agent killed."""

        with self._lock:
            if not self._connected:
                return
            self._connected = False
            task_id = self._active_task_id
            session = self._session
            if task_id is not None:
                self._settle_on_disconnect(task_id)
            if session is not None and session.is_alive():
                session.kill()
        logger.warning("Runner disconnected (active task=%s)", task_id)
        self._broadcaster.publish(
            TaskEvent.system(EventType.SYSTEM_DISCONNECTED, "Runner disconnected"),
        )

    def start(self, task: Task) -> Task:
        """Claim the slot for ``task`` and launch the agent."""

        with self._lock:
            self._reserve(task.task_id)
            try:
                self._recent_output.clear()
                started = self._launch(task.task_id, Trigger.START, fresh_session=True)
            except InvalidTransition:
                self._release(task.task_id)
                raise
            except TaskHubError:
                self._release_if_inactive(task.task_id)
                raise
        self._notify_idle()
        return started

    def retry(self, task_id: int) -> Task:
        """Operator-requested relaunch of a task resting in INTERRUPTED."""

        with self._lock:
            task = self._lifecycle.get(task_id)
            if task.status != TaskStatus.INTERRUPTED:
                raise InvalidTransition(task_id, task.status, Trigger.RECOVER.value)
            self._reserve(task_id)
            try:
                attempt = self._recovery.attempt_for(task, RecoveryAction.RETRY, "Manual retry")
                self._record_attempt(task_id, attempt, counted=True)
                self._recent_output.clear()
                relaunched = self._launch(task_id, Trigger.RECOVER, fresh_session=False)
            except TaskHubError:
                self._release_if_inactive(task_id)
                raise
        self._notify_idle()
        return relaunched

    def pause(self) -> Task:
        with self._lock:
            task_id = self._require_active()
            paused = self._lifecycle.transition(task_id, Trigger.PAUSE)
            if self._session is not None and self._session.is_alive():
                self._session.pause()
        return paused

    def resume(self) -> Task:
        """Continue a PAUSED task, relaunching its session if the agent is gone."""

        with self._lock:
            task_id = self._require_active()
            session = self._session
            if session is not None and session.is_alive():
                resumed = self._lifecycle.transition(task_id, Trigger.RESUME)
                session.resume()
            else:
                if not self._connected:
                    raise RunnerDisconnected()
                self._recent_output.clear()
                resumed = self._launch(task_id, Trigger.RESUME, fresh_session=False)
        self._notify_idle()
        return resumed

    def cancel(self, task_id: int) -> Task:
        """Cancel the active task and wait for the agent to acknowledge.

        Without acknowledgment within ``cancel_timeout_seconds`` the cancel is
        escalated to :meth:`kill` or :class:`CancelTimedOut` is raised, leaving
        the task CANCELLING.
        """

        with self._lock:
            self._require_slot_owner(task_id, Trigger.CANCEL)
            self._cancel_backoff()
            self._lifecycle.transition(
                task_id,
                Trigger.CANCEL,
                failure_reason=FailureReason.CANCELLED.value,
            )
            settled = self._settled[task_id]
            session = self._session
            if session is None:
                self._confirm(task_id, Trigger.CONFIRM_CANCEL)
            else:
                session.terminate()

        timeout = self.settings.cancel_timeout_seconds
        if not settled.wait(timeout):
            if self.settings.escalate_cancel_to_kill:
                logger.warning("Task %s ignored cancel for %ss; killing", task_id, timeout)
                try:
                    return self.kill(task_id, reason=FailureReason.TIMEOUT_KILL)
                except InvalidTransition:
                    task = self._lifecycle.get(task_id)
                    if not task.is_terminal:
                        raise
                    self._notify_idle()
                    return task
            raise CancelTimedOut(task_id, timeout)
        self._notify_idle()
        return self._lifecycle.get(task_id)

    def kill(self, task_id: int, *, reason: FailureReason = FailureReason.FORCE_KILLED) -> Task:
        """Force-terminate the active task; :class:`KillFailed` leaves it TERMINATING."""

        with self._lock:
            self._require_slot_owner(task_id, Trigger.TERMINATE)
            self._lifecycle.transition(task_id, Trigger.TERMINATE, failure_reason=reason.value)
            settled = self._settled[task_id]
            session = self._session
            if session is None:
                self._confirm(task_id, Trigger.CONFIRM_KILL)
            else:
                session.kill()

        timeout = self.settings.kill_timeout_seconds
        if not settled.wait(timeout):
            raise KillFailed(task_id, timeout)
        self._notify_idle()
        return self._lifecycle.get(task_id)

    def clear_rate_limit(self) -> Task | None:
        """External "limit cleared" signal: resume the waiting task now."""

        with self._lock:
            self._cancel_backoff()
            task_id = self._active_task_id
            resumed = None
            if task_id is not None:
                resumed = self._clear_limit(task_id)
            else:
                self._set_rate_limited(False)
        self._notify_idle()
        return resumed

    def adopt(self, task: Task) -> Task:
        """Settle a task left in an active status by a previous process."""

        with self._lock:
            if self._active_task_id not in (None, task.task_id):
                settled = self._settle_orphan(task)
            else:
                if self._active_task_id is None:
                    self._reserve(task.task_id)
                settled = self._adopt_active(task)
        self._notify_idle()
        return settled

    def on_output(self, task_id: int, line: str, *, is_error: bool) -> None:
        self._lifecycle.record_log(task_id, line, is_error=is_error)
        if task_id != self._active_task_id:
            return
        self._recent_output.append(line)
        signal = detect_rate_limit(line)
        if signal is None:
            return
        with self._lock:
            if task_id != self._active_task_id:
                return
            task = self._lifecycle.get(task_id)
            if task.status == TaskStatus.RUNNING:
                self._enter_rate_limit(task, signal.retry_after_seconds, signal.line)

    def on_exit(self, session: AgentSession, result: AgentExit) -> None:
        with self._lock:
            if session is not self._session:
                logger.debug("Ignoring exit of stale session for task %s", result.task_id)
                return
            self._session = None
            task_id = result.task_id
            if task_id != self._active_task_id:
                return
            task = self._lifecycle.get(task_id)
            if task.status == TaskStatus.CANCELLING:
                self._confirm(task_id, Trigger.CONFIRM_CANCEL)
            elif task.status == TaskStatus.TERMINATING:
                self._confirm(task_id, Trigger.CONFIRM_KILL)
            elif task.status == TaskStatus.RUNNING:
                self._handle_running_exit(task, result)
            else:
                logger.info(
                    "Agent for task %s exited while %s; it will be relaunched on resume",
                    task_id,
                    task.status.value,
                )
        self._notify_idle()

    def _handle_running_exit(self, task: Task, result: AgentExit) -> None:
        tail = list(self._recent_output)
        classification = classify_exit(
            exit_code=result.exit_code,
            tail=tail,
            transient_exit_codes=self.settings.transient_exit_codes,
        )
        self._lifecycle.audit(task.task_id, "agent_exit", **classification.to_event_details())
        summary = _error_summary(result.exit_code, tail)

        if classification.outcome == ExitOutcome.COMPLETED:
            self._lifecycle.transition(
                task.task_id,
                Trigger.COMPLETE,
                mutate=_resolve_pending(RecoveryResult.SUCCESS),
            )
            self._release(task.task_id)
        elif classification.outcome == ExitOutcome.RATE_LIMITED:
            self._enter_rate_limit(task, classification.retry_after_seconds, summary)
        elif classification.outcome == ExitOutcome.INTERRUPTED:
            interrupted = self._lifecycle.transition(
                task.task_id,
                Trigger.INTERRUPT,
                failure_reason=FailureReason.AGENT_CRASHED.value,
                error_summary=summary,
                mutate=_resolve_pending(RecoveryResult.FAILED, summary),
            )
            self._after_interrupt(interrupted, summary)
        else:
            self._lifecycle.transition(
                task.task_id,
                Trigger.FAIL,
                failure_reason=FailureReason.AGENT_FAILED.value,
                error_summary=summary,
                mutate=_resolve_pending(RecoveryResult.FAILED, summary),
            )
            self._release(task.task_id)

    def _launch(self, task_id: int, trigger: Trigger, *, fresh_session: bool) -> Task:
        resume_flag = [False]

        def _assign_session(task: Task) -> None:
            reuse = (
                not fresh_session
                and task.session_mode == SessionMode.PERSIST
                and task.session_id is not None
            )
            resume_flag[0] = reuse
            if not reuse:
                task.session_id = str(uuid4())

        task = self._lifecycle.transition(task_id, trigger, mutate=_assign_session)
        return self._spawn(task, resume=resume_flag[0])

    def _spawn(self, task: Task, *, resume: bool) -> Task:
        request = AgentLaunchRequest(
            task_id=task.task_id,
            prompt=task.prompt,
            session_id=task.session_id or str(uuid4()),
            resume_session=resume,
            skip_permissions=task.skip_permissions,
            model=self.settings.model,
            workdir=self.settings.workdir,
            env=_task_env(task),
        )
        try:
            session = self._backend.launch(request, self)
        except BackendRunError as error:
            message = f"Agent launch failed: {error}"
            logger.warning("Task %s: %s", task.task_id, message)
            self._lifecycle.record_log(task.task_id, message, is_error=True)
            if error.transient:
                interrupted = self._lifecycle.transition(
                    task.task_id,
                    Trigger.INTERRUPT,
                    failure_reason=FailureReason.LAUNCH_FAILED.value,
                    error_summary=message,
                    mutate=_resolve_pending(RecoveryResult.FAILED, message),
                )
                return self._after_interrupt(interrupted, message)
            failed = self._lifecycle.transition(
                task.task_id,
                Trigger.FAIL,
                failure_reason=FailureReason.LAUNCH_FAILED.value,
                error_summary=message,
                mutate=_resolve_pending(RecoveryResult.FAILED, message),
            )
            self._release(task.task_id)
            return failed
        self._session = session
        return task

    def _after_interrupt(self, task: Task, error_message: str) -> Task:
        if not self._connected or not self.settings.auto_recover:
            self._release(task.task_id)
            return task
        return self._recover(task, error_message)

    def _recover(self, task: Task, error_message: str) -> Task:
        decision = self._recovery.decide(
            task,
            RecoveryCondition.INTERRUPTION,
            error_message=error_message,
        )
        if decision.attempt is None:
            raise RuntimeError("Interruption decisions always carry a recovery attempt.")
        self._record_attempt(
            task.task_id,
            decision.attempt,
            counted=decision.action != RecoveryAction.SKIP,
        )
        logger.info(
            "Task %s recovery attempt %s: %s",
            task.task_id,
            decision.attempt.attempt_number,
            decision.action.value,
        )
        if decision.action == RecoveryAction.SKIP:
            failed = self._lifecycle.transition(
                task.task_id,
                Trigger.SKIP,
                failure_reason=FailureReason.RECOVERY_EXHAUSTED.value,
                error_summary=error_message,
                mutate=_resolve_pending(RecoveryResult.SUCCESS),
            )
            self._release(task.task_id)
            return failed
        self._recent_output.clear()
        return self._launch(
            task.task_id,
            Trigger.RECOVER,
            fresh_session=decision.action == RecoveryAction.RESTART_SESSION,
        )

    def _record_attempt(self, task_id: int, attempt: RecoveryAttempt, *, counted: bool) -> None:
        def _append(task: Task) -> None:
            task.recovery_history.append(attempt)
            if counted:
                task.retry_count += 1

        self._lifecycle.amend(
            task_id,
            _append,
            event=AuditEventWrite(
                event_type="recovery_decision",
                details={
                    "attempt_number": attempt.attempt_number,
                    "action": attempt.action.value,
                    "error_message": attempt.error_message,
                },
            ),
        )

    def _enter_rate_limit(self, task: Task, retry_after: float | None, message: str) -> None:
        def _count_hit(current: Task) -> None:
            current.rate_limit_hits += 1

        limited = self._lifecycle.transition(
            task.task_id,
            Trigger.RATE_LIMIT,
            failure_reason=FailureReason.RATE_LIMIT.value,
            error_summary=message,
            mutate=_count_hit,
        )
        if self._session is not None and self._session.is_alive():
            self._session.pause()
        self._set_rate_limited(True)

        decision = self._recovery.decide(
            limited,
            RecoveryCondition.RATE_LIMIT,
            error_message=message,
            retry_after_seconds=retry_after,
        )
        if decision.attempt is not None:
            self._record_attempt(task.task_id, decision.attempt, counted=True)
        else:
            self._lifecycle.audit(
                task.task_id,
                "rate_limit_wait",
                backoff_seconds=decision.backoff_seconds,
                hits=limited.rate_limit_hits,
            )
        self._lifecycle.transition(
            task.task_id,
            Trigger.BACKOFF,
            details={"backoff_seconds": decision.backoff_seconds},
        )
        self._schedule_backoff(task.task_id, decision.backoff_seconds)

    def _clear_limit(self, task_id: int) -> Task:
        task = self._lifecycle.get(task_id)
        if task.status != TaskStatus.PAUSED_BY_LIMIT:
            return task
        if not self._connected:
            logger.info("Task %s resumes after the runner reconnects", task_id)
            return task
        self._set_rate_limited(False)
        session = self._session
        self._recent_output.clear()
        if session is not None and session.is_alive():
            resumed = self._lifecycle.transition(task_id, Trigger.LIMIT_CLEARED)
            session.resume()
            return resumed
        return self._launch(task_id, Trigger.LIMIT_CLEARED, fresh_session=False)

    def _schedule_backoff(self, task_id: int, seconds: float) -> None:
        self._cancel_backoff()
        timer = self._timer_factory(seconds, self._on_backoff_elapsed, args=(task_id,))
        timer.daemon = True
        self._backoff_timer = timer
        timer.start()
        logger.info("Task %s waiting %.1fs for rate limit to clear", task_id, seconds)

    def _on_backoff_elapsed(self, task_id: int) -> None:
        try:
            with self._lock:
                self._backoff_timer = None
                if task_id == self._active_task_id:
                    self._clear_limit(task_id)
        except TaskHubError:
            logger.exception("Failed to resume task %s after rate-limit backoff", task_id)
        self._notify_idle()

    def _cancel_backoff(self) -> None:
        if self._backoff_timer is not None:
            self._backoff_timer.cancel()
            self._backoff_timer = None

    def _set_rate_limited(self, value: bool) -> None:
        if self._rate_limited == value:
            return
        self._rate_limited = value
        if value:
            event = TaskEvent.system(EventType.DISPATCHER_PAUSED, RATE_LIMIT_PAUSE_LINE)
        else:
            event = TaskEvent.system(EventType.DISPATCHER_RESUMED, "Dispatcher resumed")
        self._broadcaster.publish(event)

    def _confirm(self, task_id: int, trigger: Trigger) -> Task:
        """Settle an acknowledged cancel or kill; a recovery that relaunched the agent held."""

        confirmed = self._lifecycle.transition(
            task_id,
            trigger,
            mutate=_resolve_pending(RecoveryResult.SUCCESS),
        )
        self._release(task_id)
        return confirmed

    def _settle_on_disconnect(self, task_id: int) -> None:
        task = self._lifecycle.get(task_id)
        if task.status == TaskStatus.RUNNING:
            self._lifecycle.transition(
                task_id,
                Trigger.INTERRUPT,
                failure_reason=FailureReason.RUNNER_DISCONNECT.value,
                error_summary="Runner disconnected while the task was running",
                mutate=_resolve_pending(RecoveryResult.FAILED),
            )
            self._release(task_id)
        elif task.status == TaskStatus.CANCELLING:
            self._confirm(task_id, Trigger.CONFIRM_CANCEL)
        elif task.status == TaskStatus.TERMINATING:
            self._confirm(task_id, Trigger.CONFIRM_KILL)
        else:
            logger.info("Task %s stays %s until the runner reconnects", task_id, task.status.value)

    def _adopt_active(self, task: Task) -> Task:
        status = task.status
        if status == TaskStatus.RUNNING:
            message = "Service restarted while the task was running"
            interrupted = self._lifecycle.transition(
                task.task_id,
                Trigger.INTERRUPT,
                failure_reason=FailureReason.SERVICE_RESTART.value,
                error_summary=message,
                mutate=_resolve_pending(RecoveryResult.FAILED, message),
            )
            return self._after_interrupt(interrupted, message)
        if status == TaskStatus.CANCELLING:
            return self._confirm(task.task_id, Trigger.CONFIRM_CANCEL)
        if status == TaskStatus.TERMINATING:
            return self._confirm(task.task_id, Trigger.CONFIRM_KILL)
        if status in (TaskStatus.RATE_LIMITED, TaskStatus.PAUSED_BY_LIMIT):
            if status == TaskStatus.RATE_LIMITED:
                task = self._lifecycle.transition(task.task_id, Trigger.BACKOFF)
            self._set_rate_limited(True)
            self._schedule_backoff(
                task.task_id,
                self._recovery.backoff_seconds(hits=task.rate_limit_hits),
            )
            return task
        if status == TaskStatus.PAUSED:
            return task
        self._release(task.task_id)
        return task

    def _settle_orphan(self, task: Task) -> Task:
        """Second leftover active task while the slot is taken: end it."""

        status = task.status
        reason = FailureReason.SERVICE_RESTART.value
        if status == TaskStatus.RUNNING:
            return self._lifecycle.transition(
                task.task_id,
                Trigger.INTERRUPT,
                failure_reason=reason,
                mutate=_resolve_pending(RecoveryResult.FAILED),
            )
        if status == TaskStatus.TERMINATING:
            return self._lifecycle.transition(
                task.task_id,
                Trigger.CONFIRM_KILL,
                mutate=_resolve_pending(RecoveryResult.SUCCESS),
            )
        if status == TaskStatus.RATE_LIMITED:
            self._lifecycle.transition(task.task_id, Trigger.BACKOFF)
        if status != TaskStatus.CANCELLING:
            self._lifecycle.transition(task.task_id, Trigger.CANCEL, failure_reason=reason)
        return self._lifecycle.transition(
            task.task_id,
            Trigger.CONFIRM_CANCEL,
            mutate=_resolve_pending(RecoveryResult.SUCCESS),
        )

    def _reserve(self, task_id: int) -> None:
        if not self._connected:
            raise RunnerDisconnected()
        if self._active_task_id is not None:
            raise RunnerBusy(self._active_task_id)
        self._active_task_id = task_id
        self._settled[task_id] = threading.Event()

    def _release(self, task_id: int) -> None:
        if self._active_task_id != task_id:
            return
        self._active_task_id = None
        self._cancel_backoff()
        self._set_rate_limited(False)
        self._recent_output.clear()
        settled = self._settled.pop(task_id, None)
        if settled is not None:
            settled.set()
        self._idle_pending = True
        logger.info("Runner slot released by task %s", task_id)

    def _release_if_inactive(self, task_id: int) -> None:
        task = self._lifecycle.store.find_by_id(task_id)
        if task is None or not task.is_active:
            self._release(task_id)

    def _require_active(self) -> int:
        if self._active_task_id is None:
            raise NoActiveTask()
        return self._active_task_id

    def _require_slot_owner(self, task_id: int, trigger: Trigger) -> None:
        if self._active_task_id != task_id:
            task = self._lifecycle.get(task_id)
            raise InvalidTransition(task_id, task.status, trigger.value)

    def _notify_idle(self) -> None:
        with self._lock:
            if not self._idle_pending or not self._connected or self._active_task_id is not None:
                return
            self._idle_pending = False
        callback = self._on_idle
        if callback is not None:
            callback()


def _resolve_pending(
    result: RecoveryResult,
    error_message: str | None = None,
) -> Callable[[Task], None]:
    def _apply(task: Task) -> None:
        pending = task.pending_recovery
        if pending is not None:
            task.recovery_history[-1] = pending.resolved(result, error_message)

    return _apply


def _error_summary(exit_code: int, tail: list[str]) -> str:
    last_line = next((line.strip() for line in reversed(tail) if line.strip()), "")
    summary = f"Agent exited with code {exit_code}"
    if last_line:
        summary = f"{summary}: {last_line}"
    return summary[:500]


def _task_env(task: Task) -> dict[str, str]:
    env: dict[str, str] = {}
    if task.base_branch:
        env["AGENT_TASKHUB_BASE_BRANCH"] = task.base_branch
    if task.current_branch:
        env["AGENT_TASKHUB_CURRENT_BRANCH"] = task.current_branch
    if task.ticket_key:
        env["AGENT_TASKHUB_TICKET_KEY"] = task.ticket_key
    return env
