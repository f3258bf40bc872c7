"""SQLModel ORM tables for the task queue and machine registry."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_queue", "status", "priority", "created_at"),)

    task_id: str = Field(primary_key=True)
    project: str = Field(index=True)
    description: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    priority: int = Field(default=0)
    max_budget_usd: float | None = None
    assigned_machine: str | None = Field(default=None, index=True)
    worker_id: str | None = None
    session_id: str | None = None
    topic_id: str | None = None
    workspace_path: str | None = None
    result_summary: str | None = Field(default=None, sa_column=Column(Text))
    error_reason: str | None = Field(default=None, sa_column=Column(Text))
    files_changed_json: str | None = Field(default=None, sa_column=Column(Text))
    pr_url: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MachineRow(SQLModel, table=True):
    __tablename__ = "machines"  # type: ignore[bad-override]

    machine_id: str = Field(primary_key=True)
    display_name: str | None = None
    status: str = Field(index=True)
    last_heartbeat: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    active_tasks: int = Field(default=0)
    max_concurrency: int = Field(default=3)
    engine_priority_json: str | None = Field(default=None, sa_column=Column(Text))
    projects_json: str | None = Field(default=None, sa_column=Column(Text))
    os: str | None = None
    registered_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
