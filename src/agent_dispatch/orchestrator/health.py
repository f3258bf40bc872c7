"""Health monitoring and recovery sweeps.

A sweep marks machines with old heartbeats offline and returns their in-flight
tasks to the queue, fails running tasks that outlived the stale timeout, and
pins unassigned queued tasks to available machines. Every step is a guarded
transition, so repeating a sweep changes nothing.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from agent_dispatch.chat.base import ChatSender, MessageKind
from agent_dispatch.orchestrator.models import MachineStatus, RecoveryReason
from agent_dispatch.orchestrator.registry import select_machine_for_project
from agent_dispatch.orchestrator.store import MachineRegistry, TaskStore
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_TIMEOUT_SECONDS = 120
DEFAULT_DISPATCH_HEARTBEAT_WINDOW_SECONDS = 60
DEFAULT_STALE_TASK_TIMEOUT_SECONDS = 600
DEFAULT_ALERT_COOLDOWN_SECONDS = 600.0


class AlertKind(str, Enum):
    NO_MACHINES_ONLINE = "no_machines_online"
    MACHINES_OFFLINE = "machines_offline"
    STALE_TASKS_RECOVERED = "stale_tasks_recovered"


@dataclass(slots=True)
class HealthReport:
    """Result of one recovery pass."""

    machines_total: int = 0
    machines_online: int = 0
    machines_marked_offline: list[str] = field(default_factory=list)
    tasks_requeued: list[str] = field(default_factory=list)
    tasks_released: list[str] = field(default_factory=list)
    tasks_failed: list[str] = field(default_factory=list)
    tasks_assigned: list[tuple[str, str]] = field(default_factory=list)
    alerts_sent: list[AlertKind] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(
            self.machines_marked_offline
            or self.tasks_requeued
            or self.tasks_released
            or self.tasks_failed
            or self.tasks_assigned,
        )


class AlertThrottle:
    """Allows one alert per kind within the cooldown."""

    def __init__(
        self,
        cooldown_seconds: float = DEFAULT_ALERT_COOLDOWN_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._last_sent: dict[AlertKind, float] = {}

    def allow(self, kind: AlertKind) -> bool:
        now = self._clock()
        last = self._last_sent.get(kind)
        if last is not None and now - last < self.cooldown_seconds:
            return False
        self._last_sent[kind] = now
        return True


class RecoveryService:
    """Periodic liveness, staleness and dispatch sweeps over the shared queue."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        registry: MachineRegistry,
        sender: ChatSender | None = None,
        alert_topic_id: str | None = None,
        heartbeat_timeout_seconds: int = DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
        dispatch_heartbeat_window_seconds: int = DEFAULT_DISPATCH_HEARTBEAT_WINDOW_SECONDS,
        stale_task_timeout_seconds: int = DEFAULT_STALE_TASK_TIMEOUT_SECONDS,
        sweep_interval_seconds: float = 60.0,
        dispatch_enabled: bool = True,
        throttle: AlertThrottle | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.sender = sender
        self.alert_topic_id = alert_topic_id
        self.heartbeat_timeout_seconds = heartbeat_timeout_seconds
        self.dispatch_heartbeat_window_seconds = dispatch_heartbeat_window_seconds
        self.stale_task_timeout_seconds = stale_task_timeout_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.dispatch_enabled = dispatch_enabled
        self.throttle = throttle or AlertThrottle()

    def sweep_machines(self, *, now: datetime | None = None) -> HealthReport:
        """Mark silent machines offline and hand their tasks back to the queue.

        Requeueing covers every offline machine, not only the ones marked in
        this pass, so a pass interrupted between the two steps is completed by
        the next one.
        """

        current = now or utc_now()
        report = HealthReport()
        report.machines_marked_offline = self.registry.mark_stale_offline(
            timeout_seconds=self.heartbeat_timeout_seconds,
            now=current,
        )
        machines = self.registry.list_machines()
        for machine in machines:
            if machine.status != MachineStatus.OFFLINE:
                continue
            report.tasks_requeued.extend(
                self.store.requeue_tasks_for_machine(
                    machine_id=machine.machine_id,
                    reason=RecoveryReason.MACHINE_OFFLINE,
                ),
            )
            report.tasks_released.extend(
                self.store.release_queued_for_machine(machine_id=machine.machine_id),
            )
        report.machines_total = len(machines)
        report.machines_online = sum(
            1 for machine in machines if machine.status != MachineStatus.OFFLINE
        )
        return report

    def sweep_stale_tasks(self, *, now: datetime | None = None) -> list[str]:
        return self.store.recover_stale_running(
            timeout_seconds=self.stale_task_timeout_seconds,
            now=now or utc_now(),
        )

    def dispatch_unassigned(self, *, now: datetime | None = None) -> list[tuple[str, str]]:
        """Pin unassigned queued tasks to available machines, preferring project owners."""

        machines = self.registry.available_machines(
            heartbeat_window_seconds=self.dispatch_heartbeat_window_seconds,
            now=now or utc_now(),
        )
        if not machines:
            return []

        assigned: list[tuple[str, str]] = []
        for task in self.store.list_unassigned_queued():
            machine = select_machine_for_project(machines, project=task.project)
            if machine is None:
                break
            if self.store.assign_task(task_id=task.task_id, machine_id=machine.machine_id):
                machine.active_tasks += 1
                assigned.append((task.task_id, machine.machine_id))
        if assigned:
            logger.info("Dispatched %d queued task(s)", len(assigned))
        return assigned

    def sweep(self, *, now: datetime | None = None) -> HealthReport:
        """Run one full recovery pass."""

        current = now or utc_now()
        report = self.sweep_machines(now=current)
        report.tasks_failed = self.sweep_stale_tasks(now=current)
        if self.dispatch_enabled:
            report.tasks_assigned = self.dispatch_unassigned(now=current)
        if report.changed:
            logger.info(
                "Health sweep: offline=%d requeued=%d released=%d failed=%d assigned=%d",
                len(report.machines_marked_offline),
                len(report.tasks_requeued),
                len(report.tasks_released),
                len(report.tasks_failed),
                len(report.tasks_assigned),
            )
        return report

    async def run_once(self, *, now: datetime | None = None) -> HealthReport:
        report = await asyncio.to_thread(self.sweep, now=now)
        await self._send_alerts(report)
        return report

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> int:
        """Repeat sweeps until stopped; returns the number of completed passes."""

        stop = stop_event or asyncio.Event()
        passes = 0
        while not stop.is_set():
            try:
                await self.run_once()
                passes += 1
            except Exception:  # noqa: BLE001
                logger.exception("Health sweep failed")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self.sweep_interval_seconds)
        return passes

    async def _send_alerts(self, report: HealthReport) -> None:
        if self.sender is None or not self.alert_topic_id:
            return
        alerts: list[tuple[AlertKind, str]] = []
        if report.machines_total > 0 and report.machines_online == 0:
            alerts.append(
                (AlertKind.NO_MACHINES_ONLINE, "No worker machine is online; tasks will wait."),
            )
        if report.machines_marked_offline:
            alerts.append(
                (
                    AlertKind.MACHINES_OFFLINE,
                    "Machines went offline: "
                    f"{', '.join(report.machines_marked_offline)} "
                    f"({len(report.tasks_requeued)} task(s) requeued).",
                ),
            )
        if report.tasks_failed:
            alerts.append(
                (
                    AlertKind.STALE_TASKS_RECOVERED,
                    f"{len(report.tasks_failed)} stale task(s) failed after "
                    f"{self.stale_task_timeout_seconds}s: "
                    f"{', '.join(task_id[:8] for task_id in report.tasks_failed)}.",
                ),
            )
        for kind, text in alerts:
            if not self.throttle.allow(kind):
                logger.debug("Alert %s suppressed by cooldown", kind.value)
                continue
            if await self.sender.send(self.alert_topic_id, text, kind=MessageKind.NOTIFICATION):
                report.alerts_sent.append(kind)
