"""SQLModel ORM tables for the task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_queue", "status", "priority", "created_at"),)

    task_id: int | None = Field(default=None, primary_key=True)
    instruction: str = Field(sa_column=Column(Text, nullable=False))
    script_content: str | None = Field(default=None, sa_column=Column(Text))
    base_branch: str | None = None
    current_branch: str | None = None
    ticket_key: str | None = None
    skip_permissions: bool = False
    session_mode: str
    execution_mode: str
    status: str = Field(index=True)
    priority: int = Field(default=100, index=True)
    failure_reason: str | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    retry_count: int = 0
    rate_limit_hits: int = 0
    session_id: str | None = None
    recovery_history_json: str | None = Field(default=None, sa_column=Column(Text))
    control_request: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    queued_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    cancelled_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    is_archived: bool = Field(default=False, index=True)
    deleted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class ExecutionLogRow(SQLModel, table=True):
    __tablename__ = "execution_logs"  # type: ignore[bad-override]

    log_id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    chunk: str = Field(sa_column=Column(Text, nullable=False))
    is_error: bool = False
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
