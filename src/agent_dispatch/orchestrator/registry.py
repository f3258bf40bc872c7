"""Persistent machine registry with heartbeat-based liveness."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_dispatch.orchestrator.models import MachineHeartbeat, MachineStatus, MachineView
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
from agent_dispatch.storage.sqlmodel_models import MachineRow

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 3


class MachineRepository:
    """Machine registry facade backed by SQLModel."""

    def __init__(self, db_url: str, *, busy_timeout_ms: int = 5000) -> None:
        self.db_url = db_url
        self.engine = build_engine(db_url=db_url, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_url)

    def heartbeat(
        self,
        report: MachineHeartbeat,
        *,
        now: datetime | None = None,
    ) -> MachineView:
        """Record a liveness report, registering unknown machines on the fly."""

        current = to_db_datetime(now or utc_now())
        status = report.status or (
            MachineStatus.BUSY if report.active_tasks > 0 else MachineStatus.ONLINE
        )
        with Session(self.engine) as session:
            row = session.exec(
                select(MachineRow).where(MachineRow.machine_id == report.machine_id),
            ).one_or_none()
            if row is None:
                row = MachineRow(
                    machine_id=report.machine_id,
                    display_name=report.display_name or report.machine_id,
                    status=status.value,
                    max_concurrency=report.capacity or DEFAULT_MAX_CONCURRENCY,
                    registered_at=current,
                )
                logger.info("Registered machine %s", report.machine_id)
            elif row.status == MachineStatus.OFFLINE.value and status != MachineStatus.OFFLINE:
                logger.info("Machine %s is back online", report.machine_id)

            row.status = status.value
            row.last_heartbeat = current
            row.active_tasks = max(0, report.active_tasks)
            if report.capacity is not None:
                row.max_concurrency = report.capacity
            if report.engine_priority is not None:
                row.engine_priority_json = dump_json_list(report.engine_priority)
            if report.projects is not None:
                row.projects_json = dump_json_list(report.projects)
            if report.display_name is not None:
                row.display_name = report.display_name
            if report.os is not None:
                row.os = report.os
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_machine_view(row)

    def get_machine(self, *, machine_id: str) -> MachineView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(MachineRow).where(MachineRow.machine_id == machine_id),
            ).one_or_none()
        return _to_machine_view(row) if row is not None else None

    def list_machines(self) -> list[MachineView]:
        with Session(self.engine) as session:
            rows = session.exec(select(MachineRow).order_by(col(MachineRow.machine_id))).all()
        return [_to_machine_view(row) for row in rows]

    def available_machines(
        self,
        *,
        heartbeat_window_seconds: int,
        now: datetime | None = None,
    ) -> list[MachineView]:
        """Online or busy machines with a fresh heartbeat and spare capacity."""

        current = now or utc_now()
        cutoff = to_db_datetime(current - timedelta(seconds=heartbeat_window_seconds))
        with Session(self.engine) as session:
            rows = session.exec(
                select(MachineRow)
                .where(
                    col(MachineRow.status).in_(
                        [MachineStatus.ONLINE.value, MachineStatus.BUSY.value],
                    ),
                    col(MachineRow.last_heartbeat).is_not(None),
                    col(MachineRow.last_heartbeat) >= cutoff,
                    col(MachineRow.active_tasks) < col(MachineRow.max_concurrency),
                )
                .order_by(col(MachineRow.active_tasks).asc(), col(MachineRow.machine_id)),
            ).all()
        return [_to_machine_view(row) for row in rows]

    def mark_stale_offline(
        self,
        *,
        timeout_seconds: int,
        now: datetime | None = None,
    ) -> list[str]:
        """Mark machines offline when their last heartbeat is too old."""

        current = now or utc_now()
        cutoff = to_db_datetime(current - timedelta(seconds=timeout_seconds))
        marked: list[str] = []
        with Session(self.engine) as session:
            machine_ids = session.exec(
                select(MachineRow.machine_id).where(
                    MachineRow.status != MachineStatus.OFFLINE.value,
                    or_(
                        col(MachineRow.last_heartbeat).is_(None),
                        col(MachineRow.last_heartbeat) < cutoff,
                    ),
                ),
            ).all()
            for machine_id in machine_ids:
                result = session.exec(
                    sa_update(MachineRow)
                    .where(
                        col(MachineRow.machine_id) == machine_id,
                        col(MachineRow.status) != MachineStatus.OFFLINE.value,
                    )
                    .values(status=MachineStatus.OFFLINE.value, active_tasks=0),
                )
                if result.rowcount == 1:
                    marked.append(machine_id)
            session.commit()

        for machine_id in marked:
            logger.warning("Machine %s missed heartbeats, marked offline", machine_id)
        return marked

    def mark_offline(self, *, machine_id: str) -> bool:
        """Graceful offline transition on worker shutdown."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(MachineRow)
                .where(
                    col(MachineRow.machine_id) == machine_id,
                    col(MachineRow.status) != MachineStatus.OFFLINE.value,
                )
                .values(status=MachineStatus.OFFLINE.value, active_tasks=0),
            )
            session.commit()
            return result.rowcount == 1

    def update_engine_priority(self, *, machine_id: str, engines: tuple[str, ...]) -> bool:
        """Replace the ordered engine preference list of a machine."""

        if not engines:
            raise ValueError("Engine priority must list at least one engine.")
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(MachineRow)
                .where(col(MachineRow.machine_id) == machine_id)
                .values(engine_priority_json=dump_json_list(engines)),
            )
            session.commit()
            return result.rowcount == 1


def select_machine_for_project(
    machines: list[MachineView],
    *,
    project: str,
) -> MachineView | None:
    """Prefer a machine that lists the project, else any machine with capacity."""

    with_capacity = [machine for machine in machines if machine.has_capacity]
    for machine in with_capacity:
        if project in machine.projects:
            return machine
    return with_capacity[0] if with_capacity else None


def _to_machine_view(row: MachineRow) -> MachineView:
    return MachineView(
        machine_id=row.machine_id,
        display_name=row.display_name,
        status=MachineStatus(row.status),
        last_heartbeat=optional_utc(row.last_heartbeat),
        active_tasks=row.active_tasks,
        max_concurrency=row.max_concurrency,
        engine_priority=load_json_list(row.engine_priority_json),
        projects=load_json_list(row.projects_json),
        os=row.os,
        registered_at=to_utc_aware_datetime(row.registered_at),
    )
