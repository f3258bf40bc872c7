"""Persistent task queue repository."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_dispatch.orchestrator.models import (
    IN_FLIGHT_STATUSES,
    RecoveryReason,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskSubmission,
    TaskView,
)
from agent_dispatch.orchestrator.store import TaskNotFoundError, TaskStateError
from agent_dispatch.storage.alembic_runner import upgrade_head
from agent_dispatch.storage.common import (
    build_engine,
    dump_json_list,
    load_json_list,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_dispatch.storage.sqlmodel_models import TaskEventRow, TaskRow

logger = logging.getLogger(__name__)

_CANCELLABLE_STATUSES = (TaskStatus.QUEUED, TaskStatus.CLAIMED, TaskStatus.RUNNING)


class TaskRepository:
    """Task queue persistence facade backed by SQLModel.

    Works with SQLite for single-host setups and with PostgreSQL when several
    machines share one queue; on PostgreSQL the claim skips rows locked by
    concurrent claimers.
    """

    def __init__(self, db_url: str, *, busy_timeout_ms: int = 5000) -> None:
        self.db_url = db_url
        self.engine = build_engine(db_url=db_url, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_url)

    def submit_task(self, payload: TaskSubmission) -> TaskView:
        """Create a queued task."""

        project = payload.project.strip()
        description = payload.description.strip()
        if not project:
            raise ValueError("Task project must not be empty.")
        if not description:
            raise ValueError("Task description must not be empty.")
        if payload.max_budget_usd is not None and payload.max_budget_usd <= 0:
            raise ValueError("Task budget must be positive when set.")

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            row = TaskRow(
                task_id=task_id,
                project=project,
                description=description,
                status=TaskStatus.QUEUED.value,
                priority=payload.priority,
                max_budget_usd=payload.max_budget_usd,
                assigned_machine=payload.machine_affinity,
                topic_id=payload.topic_id,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            # task_events.task_id references tasks; the row must exist first.
            session.flush()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="submitted",
                status_from=None,
                status_to=TaskStatus.QUEUED,
                details={
                    "project": project,
                    "priority": payload.priority,
                    "machine_affinity": payload.machine_affinity,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def claim(
        self,
        *,
        worker_id: str,
        machine_id: str | None = None,
        project: str | None = None,
        now: datetime | None = None,
    ) -> TaskView | None:
        """Atomically claim the highest-priority eligible queued task.

        Selection and transition happen in one UPDATE statement so two
        claimers can never both observe the same row as queued.
        """

        claimed_at = to_db_datetime(now or utc_now())
        conditions = [col(TaskRow.status) == TaskStatus.QUEUED.value]
        if machine_id is None:
            conditions.append(col(TaskRow.assigned_machine).is_(None))
        else:
            conditions.append(
                or_(
                    col(TaskRow.assigned_machine).is_(None),
                    col(TaskRow.assigned_machine) == machine_id,
                ),
            )
        if project is not None:
            conditions.append(col(TaskRow.project) == project)

        candidate = (
            sa_select(col(TaskRow.task_id))
            .where(*conditions)
            .order_by(col(TaskRow.priority).desc(), col(TaskRow.created_at).asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        values: dict[str, object] = {
            "status": TaskStatus.CLAIMED.value,
            "worker_id": worker_id,
            "started_at": claimed_at,
            "updated_at": claimed_at,
        }
        if machine_id is not None:
            values["assigned_machine"] = machine_id

        with Session(self.engine) as session:
            task_id = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == candidate,
                    col(TaskRow.status) == TaskStatus.QUEUED.value,
                )
                .values(**values)
                .returning(col(TaskRow.task_id))
                .execution_options(synchronize_session=False),
            ).scalar_one_or_none()
            if task_id is None:
                session.rollback()
                return None

            self._add_event(
                session=session,
                task_id=task_id,
                event_type="claimed",
                status_from=TaskStatus.QUEUED,
                status_to=TaskStatus.CLAIMED,
                details={"worker_id": worker_id, "machine_id": machine_id},
            )
            session.commit()
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one()
            return _to_task_view(row)

    def mark_running(
        self,
        *,
        task_id: str,
        session_id: str,
        workspace_path: str | None = None,
        worker_id: str | None = None,
    ) -> bool:
        """Record the spawned session for a claimed task.

        With ``worker_id`` the transition only applies while that worker still
        holds the claim.
        """

        values: dict[str, object] = {"session_id": session_id}
        if workspace_path is not None:
            values["workspace_path"] = workspace_path
        return self._transition(
            task_id=task_id,
            allowed=(TaskStatus.CLAIMED,),
            status_to=TaskStatus.RUNNING,
            event_type="running",
            values=values,
            details={"session_id": session_id},
            worker_id=worker_id,
        )

    def set_topic(self, *, task_id: str, topic_id: str) -> bool:
        """Bind the chat topic a task streams into."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(col(TaskRow.task_id) == task_id)
                .values(topic_id=topic_id, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete_task(
        self,
        *,
        task_id: str,
        summary: str,
        files_changed: list[str],
        pr_url: str | None = None,
        worker_id: str | None = None,
    ) -> bool:
        """Mark a running task as completed."""

        now = to_db_datetime(utc_now())
        return self._transition(
            task_id=task_id,
            allowed=(TaskStatus.RUNNING,),
            status_to=TaskStatus.COMPLETED,
            event_type="completed",
            values={
                "result_summary": summary,
                "files_changed_json": dump_json_list(files_changed),
                "pr_url": pr_url,
                "completed_at": now,
            },
            details={"files_changed": len(files_changed), "pr_url": pr_url},
            worker_id=worker_id,
        )

    def fail_task(
        self,
        *,
        task_id: str,
        reason: str,
        status: TaskStatus = TaskStatus.FAILED,
        worker_id: str | None = None,
    ) -> bool:
        """Mark a claimed or running task as failed/timeout."""

        if status not in {TaskStatus.FAILED, TaskStatus.TIMEOUT}:
            raise ValueError(f"Unsupported failure status: {status}")

        now = to_db_datetime(utc_now())
        return self._transition(
            task_id=task_id,
            allowed=IN_FLIGHT_STATUSES,
            status_to=status,
            event_type="failed",
            values={"error_reason": reason, "completed_at": now},
            details={"reason": reason},
            worker_id=worker_id,
        )

    def cancel_task(self, *, task_id: str) -> bool:
        """Cancel a queued or in-flight task.

        Returns False when the task is already cancelled so that repeated
        cancellation is harmless.
        """

        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            if row is None:
                raise TaskNotFoundError(task_id)
            previous = TaskStatus(row.status)

        if previous == TaskStatus.CANCELLED:
            return False
        if previous not in _CANCELLABLE_STATUSES:
            raise TaskStateError(f"Task cannot be cancelled from status={previous.value}")

        now = to_db_datetime(utc_now())
        cancelled = self._transition(
            task_id=task_id,
            allowed=_CANCELLABLE_STATUSES,
            status_to=TaskStatus.CANCELLED,
            event_type="cancelled",
            values={"completed_at": now},
            details={},
        )
        if cancelled:
            return True

        current = self.get_task(task_id=task_id)
        if current is not None and current.status == TaskStatus.CANCELLED:
            return False
        raise TaskStateError(
            "Task state changed concurrently while cancelling; "
            f"please retry command (task_id={task_id}).",
        )

    def requeue_tasks_for_machine(
        self,
        *,
        machine_id: str,
        reason: RecoveryReason = RecoveryReason.MACHINE_OFFLINE,
    ) -> list[str]:
        """Return in-flight tasks of a machine to the queue."""

        requeued: list[str] = []
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow).where(
                    TaskRow.assigned_machine == machine_id,
                    col(TaskRow.status).in_([status.value for status in IN_FLIGHT_STATUSES]),
                ),
            ).all()
            candidates = [(row.task_id, TaskStatus(row.status)) for row in rows]
            for task_id, previous in candidates:
                result = session.exec(
                    sa_update(TaskRow)
                    .where(
                        col(TaskRow.task_id) == task_id,
                        col(TaskRow.status) == previous.value,
                    )
                    .values(
                        status=TaskStatus.QUEUED.value,
                        assigned_machine=None,
                        worker_id=None,
                        session_id=None,
                        started_at=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="requeued",
                    status_from=previous,
                    status_to=TaskStatus.QUEUED,
                    details={"reason": reason.value, "machine_id": machine_id},
                )
                requeued.append(task_id)
            session.commit()

        if requeued:
            logger.info(
                "Requeued %d task(s) from machine %s (%s)",
                len(requeued),
                machine_id,
                reason.value,
            )
        return requeued

    def recover_stale_running(
        self,
        *,
        timeout_seconds: int,
        now: datetime | None = None,
    ) -> list[str]:
        """Fail running tasks whose start is older than the timeout."""

        current = now or utc_now()
        cutoff = to_db_datetime(current - timedelta(seconds=timeout_seconds))
        recovered: list[str] = []
        with Session(self.engine) as session:
            task_ids = session.exec(
                select(TaskRow.task_id).where(
                    TaskRow.status == TaskStatus.RUNNING.value,
                    col(TaskRow.started_at).is_not(None),
                    col(TaskRow.started_at) < cutoff,
                ),
            ).all()
            for task_id in task_ids:
                result = session.exec(
                    sa_update(TaskRow)
                    .where(
                        col(TaskRow.task_id) == task_id,
                        col(TaskRow.status) == TaskStatus.RUNNING.value,
                    )
                    .values(
                        status=TaskStatus.FAILED.value,
                        error_reason=RecoveryReason.STALE_RECOVERY.value,
                        completed_at=to_db_datetime(current),
                        updated_at=to_db_datetime(current),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="stale_recovered",
                    status_from=TaskStatus.RUNNING,
                    status_to=TaskStatus.FAILED,
                    details={
                        "reason": RecoveryReason.STALE_RECOVERY.value,
                        "timeout_seconds": timeout_seconds,
                    },
                )
                recovered.append(task_id)
            session.commit()

        if recovered:
            logger.warning("Recovered %d stale running task(s)", len(recovered))
        return recovered

    def list_unassigned_queued(self, *, limit: int = 50) -> list[TaskView]:
        """Queued tasks without machine affinity, in claim order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(
                    TaskRow.status == TaskStatus.QUEUED.value,
                    col(TaskRow.assigned_machine).is_(None),
                )
                .order_by(col(TaskRow.priority).desc(), col(TaskRow.created_at).asc())
                .limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def assign_task(self, *, task_id: str, machine_id: str) -> bool:
        """Pin a queued unassigned task to a machine."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.status) == TaskStatus.QUEUED.value,
                    col(TaskRow.assigned_machine).is_(None),
                )
                .values(assigned_machine=machine_id, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="assigned",
                status_from=TaskStatus.QUEUED,
                status_to=TaskStatus.QUEUED,
                details={"machine_id": machine_id},
            )
            session.commit()
            return True

    def release_queued_for_machine(self, *, machine_id: str) -> list[str]:
        """Unpin queued tasks from an offline machine so any machine can claim them."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            task_ids = session.exec(
                select(TaskRow.task_id).where(
                    TaskRow.status == TaskStatus.QUEUED.value,
                    TaskRow.assigned_machine == machine_id,
                ),
            ).all()
            released: list[str] = []
            for task_id in task_ids:
                result = session.exec(
                    sa_update(TaskRow)
                    .where(
                        col(TaskRow.task_id) == task_id,
                        col(TaskRow.status) == TaskStatus.QUEUED.value,
                        col(TaskRow.assigned_machine) == machine_id,
                    )
                    .values(assigned_machine=None, updated_at=now),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="released",
                    status_from=TaskStatus.QUEUED,
                    status_to=TaskStatus.QUEUED,
                    details={
                        "reason": RecoveryReason.MACHINE_OFFLINE.value,
                        "machine_id": machine_id,
                    },
                )
                released.append(task_id)
            session.commit()

        if released:
            logger.info("Released %d queued task(s) pinned to %s", len(released), machine_id)
        return released

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
        return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(TaskRow).order_by(col(TaskRow.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(TaskRow.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            if task is None:
                return None
            event_rows = session.exec(
                select(TaskEventRow)
                .where(TaskEventRow.task_id == task_id)
                .order_by(col(TaskEventRow.created_at).asc(), col(TaskEventRow.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=_to_task_view(task), events=events)

    def add_task_event(
        self,
        *,
        task_id: str,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        """Append an informational event without changing status."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()

    def _transition(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        allowed: Iterable[TaskStatus],
        status_to: TaskStatus,
        event_type: str,
        values: dict[str, object],
        details: dict[str, object],
        worker_id: str | None = None,
    ) -> bool:
        allowed_values = [status.value for status in allowed]
        owner = [] if worker_id is None else [col(TaskRow.worker_id) == worker_id]
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(TaskRow).where(
                    TaskRow.task_id == task_id,
                    col(TaskRow.status).in_(allowed_values),
                    *owner,
                ),
            ).one_or_none()
            if row is None:
                return False
            previous = TaskStatus(row.status)
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.status) == previous.value,
                    *owner,
                )
                .values(status=status_to.value, updated_at=now, **values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=previous,
                status_to=status_to,
                details=details,
            )
            session.commit()
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRow(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_task_view(row: TaskRow) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        project=row.project,
        description=row.description,
        status=TaskStatus(row.status),
        priority=row.priority,
        max_budget_usd=row.max_budget_usd,
        assigned_machine=row.assigned_machine,
        worker_id=row.worker_id,
        session_id=row.session_id,
        topic_id=row.topic_id,
        workspace_path=row.workspace_path,
        result_summary=row.result_summary,
        error_reason=row.error_reason,
        files_changed=load_json_list(row.files_changed_json),
        pr_url=row.pr_url,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
