"""Create task queue, task event and machine registry tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("project", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_budget_usd", sa.Float(), nullable=True),
        sa.Column("assigned_machine", sa.String(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("topic_id", sa.String(), nullable=True),
        sa.Column("workspace_path", sa.String(), nullable=True),
        sa.Column("result_summary", sa.Text(), nullable=True),
        sa.Column("error_reason", sa.Text(), nullable=True),
        sa.Column("files_changed_json", sa.Text(), nullable=True),
        sa.Column("pr_url", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index(
        "idx_tasks_queue",
        "tasks",
        ["status", "priority", "created_at"],
        unique=False,
    )
    op.create_index("ix_tasks_project", "tasks", ["project"], unique=False)
    op.create_index("ix_tasks_assigned_machine", "tasks", ["assigned_machine"], unique=False)

    op.create_table(
        "task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_task_events_task_time",
        "task_events",
        ["task_id", "created_at"],
        unique=False,
    )
    op.create_index("ix_task_events_event_type", "task_events", ["event_type"], unique=False)

    op.create_table(
        "machines",
        sa.Column("machine_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active_tasks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_concurrency", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("engine_priority_json", sa.Text(), nullable=True),
        sa.Column("projects_json", sa.Text(), nullable=True),
        sa.Column("os", sa.String(), nullable=True),
        sa.Column("registered_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("machine_id"),
    )
    op.create_index("ix_machines_status", "machines", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_machines_status", table_name="machines")
    op.drop_table("machines")
    op.drop_index("ix_task_events_event_type", table_name="task_events")
    op.drop_index("idx_task_events_task_time", table_name="task_events")
    op.drop_table("task_events")
    op.drop_index("ix_tasks_assigned_machine", table_name="tasks")
    op.drop_index("ix_tasks_project", table_name="tasks")
    op.drop_index("idx_tasks_queue", table_name="tasks")
    op.drop_table("tasks")
