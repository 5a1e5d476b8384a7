"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Protocol

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from agent_taskhub.orchestrator.errors import TaskNotFound, TaskStoreError
from agent_taskhub.orchestrator.models import (
    TERMINAL_STATUSES,
    AuditEventView,
    AuditEventWrite,
    ControlAction,
    ExecutionLog,
    ExecutionMode,
    RecoveryAttempt,
    SessionMode,
    Task,
    TaskCreate,
    TaskDetails,
    TaskStatus,
)
from agent_taskhub.storage.alembic_runner import upgrade_head
from agent_taskhub.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_taskhub.storage.sqlmodel_models import ExecutionLogRow, TaskEventRow, TaskRow

logger = logging.getLogger(__name__)

RETENTION_STATUSES = TERMINAL_STATUSES | {TaskStatus.INTERRUPTED}


class TaskStore(Protocol):
    """Durable record of tasks, logs and their audit trail."""

    def create(self, payload: TaskCreate, *, status: TaskStatus) -> Task: ...

    def update(self, task: Task, *, event: AuditEventWrite | None = None) -> Task: ...

    def find_by_id(self, task_id: int) -> Task | None: ...

    def find_by_status(self, *statuses: TaskStatus) -> list[Task]: ...

    def find_all_ordered_by_priority_then_created_at(self) -> list[Task]: ...

    def append_log(self, task_id: int, chunk: str, *, is_error: bool) -> ExecutionLog: ...

    def add_audit_event(self, task_id: int, event: AuditEventWrite) -> None: ...


class TaskRepository:
    """SQLite implementation of :class:`TaskStore` plus retention and control helpers."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def create(self, payload: TaskCreate, *, status: TaskStatus) -> Task:
        """Insert a new task; ids are assigned monotonically by SQLite."""

        now = utc_now()
        with self._session() as session:
            row = TaskRow(
                instruction=payload.instruction,
                script_content=payload.script_content,
                base_branch=payload.base_branch,
                current_branch=payload.current_branch,
                ticket_key=payload.ticket_key,
                skip_permissions=payload.skip_permissions,
                session_mode=payload.session_mode.value,
                execution_mode=payload.execution_mode.value,
                status=status.value,
                priority=payload.priority,
                created_at=to_db_datetime(now),
                queued_at=to_db_datetime(now) if status == TaskStatus.QUEUED else None,
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            if row.task_id is None:
                raise TaskStoreError("Task insert did not return an id.")
            self._add_event(
                session=session,
                task_id=row.task_id,
                event=AuditEventWrite(
                    event_type="created",
                    status_to=status,
                    details={
                        "priority": payload.priority,
                        "execution_mode": payload.execution_mode.value,
                        "session_mode": payload.session_mode.value,
                    },
                ),
            )
            session.commit()
            session.refresh(row)
            return _to_task(row)

    def update(self, task: Task, *, event: AuditEventWrite | None = None) -> Task:
        """Persist every mutable field of ``task`` and optionally one audit event."""

        now = utc_now()
        with self._session() as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(col(TaskRow.task_id) == task.task_id)
                .values(
                    status=task.status.value,
                    priority=task.priority,
                    failure_reason=task.failure_reason,
                    error_summary=task.error_summary,
                    retry_count=task.retry_count,
                    rate_limit_hits=task.rate_limit_hits,
                    session_id=task.session_id,
                    recovery_history_json=_dump_history(task.recovery_history),
                    queued_at=_optional_db_datetime(task.queued_at),
                    started_at=_optional_db_datetime(task.started_at),
                    completed_at=_optional_db_datetime(task.completed_at),
                    cancelled_at=_optional_db_datetime(task.cancelled_at),
                    is_archived=task.is_archived,
                    deleted_at=_optional_db_datetime(task.deleted_at),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskNotFound(task.task_id)
            if event is not None:
                self._add_event(session=session, task_id=task.task_id, event=event)
            session.commit()
        task.updated_at = now
        return task

    def find_by_id(self, task_id: int) -> Task | None:
        with self._session() as session:
            row = session.get(TaskRow, task_id)
            return _to_task(row) if row is not None else None

    def find_by_status(self, *statuses: TaskStatus) -> list[Task]:
        """Non-archived tasks in any of ``statuses``, oldest first."""

        with self._session() as session:
            rows = session.exec(
                select(TaskRow)
                .where(
                    col(TaskRow.status).in_([status.value for status in statuses]),
                    col(TaskRow.is_archived).is_(False),
                )
                .order_by(col(TaskRow.created_at).asc(), col(TaskRow.task_id).asc()),
            ).all()
        return [_to_task(row) for row in rows]

    def find_all_ordered_by_priority_then_created_at(self) -> list[Task]:
        with self._session() as session:
            rows = session.exec(
                select(TaskRow)
                .where(col(TaskRow.is_archived).is_(False))
                .order_by(
                    col(TaskRow.priority).asc(),
                    col(TaskRow.created_at).asc(),
                    col(TaskRow.task_id).asc(),
                ),
            ).all()
        return [_to_task(row) for row in rows]

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
        include_archived: bool = False,
    ) -> list[Task]:
        """List recent tasks, optionally filtered by status."""

        with self._session() as session:
            statement = select(TaskRow).order_by(col(TaskRow.task_id).desc()).limit(limit)
            if status is not None:
                statement = statement.where(TaskRow.status == status.value)
            if not include_archived:
                statement = statement.where(col(TaskRow.is_archived).is_(False))
            rows = session.exec(statement).all()
        return [_to_task(row) for row in rows]

    def append_log(self, task_id: int, chunk: str, *, is_error: bool) -> ExecutionLog:
        with self._session() as session:
            row = ExecutionLogRow(
                task_id=task_id,
                chunk=chunk,
                is_error=is_error,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_log(row)

    def list_logs(
        self,
        task_id: int,
        *,
        after_log_id: int | None = None,
        limit: int | None = None,
    ) -> list[ExecutionLog]:
        """Logs in append order."""

        with self._session() as session:
            statement = (
                select(ExecutionLogRow)
                .where(ExecutionLogRow.task_id == task_id)
                .order_by(col(ExecutionLogRow.log_id).asc())
            )
            if after_log_id is not None:
                statement = statement.where(col(ExecutionLogRow.log_id) > after_log_id)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_log(row) for row in rows]

    def add_audit_event(self, task_id: int, event: AuditEventWrite) -> None:
        with self._session() as session:
            self._add_event(session=session, task_id=task_id, event=event)
            session.commit()

    def get_task_details(self, task_id: int) -> TaskDetails | None:
        """Return task details with audit trail and execution log."""

        with self._session() as session:
            task = session.get(TaskRow, task_id)
            if task is None:
                return None
            event_rows = session.exec(
                select(TaskEventRow)
                .where(TaskEventRow.task_id == task_id)
                .order_by(col(TaskEventRow.created_at).asc(), col(TaskEventRow.id).asc()),
            ).all()
            view = _to_task(task)

        events: list[AuditEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                AuditEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=view, events=events, logs=self.list_logs(task_id))

    def find_expired(self, *, cutoff: datetime) -> list[Task]:
        """Unarchived terminal or interrupted tasks last settled before ``cutoff``."""

        settled_at = func.coalesce(col(TaskRow.completed_at), col(TaskRow.updated_at))
        with self._session() as session:
            rows = session.exec(
                select(TaskRow).where(
                    col(TaskRow.status).in_([status.value for status in RETENTION_STATUSES]),
                    col(TaskRow.is_archived).is_(False),
                    settled_at < to_db_datetime(cutoff),
                ),
            ).all()
        return [_to_task(row) for row in rows]

    def archive(self, task_id: int, *, now: datetime) -> bool:
        """Soft-delete one task. Returns ``False`` when it changed concurrently."""

        with self._session() as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                return False
            status = TaskStatus(row.status)
            if row.is_archived or status not in RETENTION_STATUSES:
                return False
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.status) == status.value,
                    col(TaskRow.is_archived).is_(False),
                )
                .values(
                    is_archived=True,
                    deleted_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event=AuditEventWrite(
                    event_type="archived",
                    status_from=status,
                    status_to=status,
                ),
            )
            session.commit()
        return True

    def purge_archived(self) -> int:
        """Hard-delete archived tasks; logs and audit rows cascade."""

        with self._session() as session:
            result = session.exec(
                sa_delete(TaskRow).where(col(TaskRow.is_archived).is_(True)),
            )
            session.commit()
        return int(result.rowcount or 0)

    def request_control(self, task_id: int, action: ControlAction) -> None:
        """Record an operator request for the worker process to apply."""

        with self._session() as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(col(TaskRow.task_id) == task_id)
                .values(control_request=action.value, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskNotFound(task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                event=AuditEventWrite(
                    event_type="control_requested",
                    details={"action": action.value},
                ),
            )
            session.commit()

    def pop_control_requests(self) -> list[tuple[int, ControlAction]]:
        """Claim pending control requests; each one is returned exactly once."""

        with self._session() as session:
            rows = session.exec(
                select(TaskRow)
                .where(col(TaskRow.control_request).is_not(None))
                .order_by(col(TaskRow.updated_at).asc()),
            ).all()
            pending = [(row.task_id, row.control_request) for row in rows]

            claimed: list[tuple[int, ControlAction]] = []
            for task_id, action in pending:
                if task_id is None or action is None:
                    continue
                result = session.exec(
                    sa_update(TaskRow)
                    .where(
                        col(TaskRow.task_id) == task_id,
                        col(TaskRow.control_request) == action,
                    )
                    .values(control_request=None),
                )
                if result.rowcount == 1:
                    claimed.append((task_id, ControlAction(action)))
            session.commit()
        return claimed

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            logger.error("Task store operation failed: %s", error)
            raise TaskStoreError(f"Task store operation failed: {error}") from error

    def _add_event(self, *, session: Session, task_id: int, event: AuditEventWrite) -> None:
        session.add(
            TaskEventRow(
                task_id=task_id,
                event_type=event.event_type,
                status_from=event.status_from.value if event.status_from is not None else None,
                status_to=event.status_to.value if event.status_to is not None else None,
                details_json=json.dumps(event.details, ensure_ascii=False, sort_keys=True)
                if event.details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _optional_db_datetime(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _dump_history(history: Sequence[RecoveryAttempt]) -> str | None:
    if not history:
        return None
    return json.dumps([attempt.to_payload() for attempt in history], ensure_ascii=False)


def _load_history(raw: str | None) -> list[RecoveryAttempt]:
    if not raw:
        return []
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        return []
    return [RecoveryAttempt.from_payload(item) for item in parsed]


def _to_log(row: ExecutionLogRow) -> ExecutionLog:
    return ExecutionLog(
        log_id=row.log_id or 0,
        task_id=row.task_id,
        chunk=row.chunk,
        is_error=row.is_error,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_task(row: TaskRow) -> Task:
    return Task(
        task_id=row.task_id or 0,
        instruction=row.instruction,
        status=TaskStatus(row.status),
        priority=row.priority,
        session_mode=SessionMode(row.session_mode),
        execution_mode=ExecutionMode(row.execution_mode),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        skip_permissions=row.skip_permissions,
        script_content=row.script_content,
        base_branch=row.base_branch,
        current_branch=row.current_branch,
        ticket_key=row.ticket_key,
        failure_reason=row.failure_reason,
        error_summary=row.error_summary,
        retry_count=row.retry_count,
        rate_limit_hits=row.rate_limit_hits,
        session_id=row.session_id,
        recovery_history=_load_history(row.recovery_history_json),
        queued_at=optional_utc(row.queued_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        cancelled_at=optional_utc(row.cancelled_at),
        is_archived=row.is_archived,
        deleted_at=optional_utc(row.deleted_at),
        control_request=ControlAction(row.control_request) if row.control_request else None,
    )
