"""Storage interfaces used by the executor and the recovery service."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from agent_dispatch.orchestrator.models import (
    MachineHeartbeat,
    MachineView,
    RecoveryReason,
    TaskStatus,
    TaskSubmission,
    TaskView,
)


class TaskNotFoundError(LookupError):
    """Raised when a manual mutation targets an unknown task."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskStateError(RuntimeError):
    """Raised when a manual mutation is not allowed from the current status."""


class TaskStore(Protocol):
    """Shared task queue with an atomic claim.

    Every mutation is a compare-and-set on the current status and reports
    whether it applied; terminal statuses are never left. In-flight transitions
    given a ``worker_id`` also require that worker to still hold the claim.
    """

    def submit_task(self, payload: TaskSubmission) -> TaskView: ...

    def claim(
        self,
        *,
        worker_id: str,
        machine_id: str | None = None,
        project: str | None = None,
        now: datetime | None = None,
    ) -> TaskView | None: ...

    def mark_running(
        self,
        *,
        task_id: str,
        session_id: str,
        workspace_path: str | None = None,
        worker_id: str | None = None,
    ) -> bool: ...

    def set_topic(self, *, task_id: str, topic_id: str) -> bool: ...

    def complete_task(
        self,
        *,
        task_id: str,
        summary: str,
        files_changed: list[str],
        pr_url: str | None = None,
        worker_id: str | None = None,
    ) -> bool: ...

    def fail_task(
        self,
        *,
        task_id: str,
        reason: str,
        status: TaskStatus = TaskStatus.FAILED,
        worker_id: str | None = None,
    ) -> bool: ...

    def cancel_task(self, *, task_id: str) -> bool: ...

    def requeue_tasks_for_machine(
        self,
        *,
        machine_id: str,
        reason: RecoveryReason = RecoveryReason.MACHINE_OFFLINE,
    ) -> list[str]: ...

    def recover_stale_running(
        self,
        *,
        timeout_seconds: int,
        now: datetime | None = None,
    ) -> list[str]: ...

    def list_unassigned_queued(self, *, limit: int = 50) -> list[TaskView]: ...

    def assign_task(self, *, task_id: str, machine_id: str) -> bool: ...

    def release_queued_for_machine(self, *, machine_id: str) -> list[str]: ...

    def get_task(self, *, task_id: str) -> TaskView | None: ...

    def add_task_event(
        self,
        *,
        task_id: str,
        event_type: str,
        details: dict[str, object],
    ) -> None: ...


class MachineRegistry(Protocol):
    """Registry of worker machines and their liveness."""

    def heartbeat(
        self,
        report: MachineHeartbeat,
        *,
        now: datetime | None = None,
    ) -> MachineView: ...

    def get_machine(self, *, machine_id: str) -> MachineView | None: ...

    def list_machines(self) -> list[MachineView]: ...

    def available_machines(
        self,
        *,
        heartbeat_window_seconds: int,
        now: datetime | None = None,
    ) -> list[MachineView]: ...

    def mark_stale_offline(
        self,
        *,
        timeout_seconds: int,
        now: datetime | None = None,
    ) -> list[str]: ...

    def mark_offline(self, *, machine_id: str) -> bool: ...
