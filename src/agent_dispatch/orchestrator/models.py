"""Domain models for the task queue, machine registry and recovery."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    CLAIMED = "claimed"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
        TaskStatus.TIMEOUT,
    },
)
IN_FLIGHT_STATUSES = (TaskStatus.CLAIMED, TaskStatus.RUNNING)


class MachineStatus(str, Enum):
    """Liveness state reported by heartbeats and the recovery sweep."""

    ONLINE = "online"
    BUSY = "busy"
    OFFLINE = "offline"


class RecoveryReason(str, Enum):
    """Audit tags attached to recovery-driven transitions."""

    STALE_RECOVERY = "stale_recovery"
    MACHINE_OFFLINE = "machine_offline"
    WORKER_SHUTDOWN = "worker_shutdown"


@dataclass(slots=True)
class TaskSubmission:
    """Input payload for submitting a coding task."""

    project: str
    description: str
    priority: int = 0
    max_budget_usd: float | None = None
    machine_affinity: str | None = None
    topic_id: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI, executor and recovery logic."""

    task_id: str
    project: str
    description: str
    status: TaskStatus
    priority: int
    max_budget_usd: float | None
    assigned_machine: str | None
    worker_id: str | None
    session_id: str | None
    topic_id: str | None
    workspace_path: str | None
    result_summary: str | None
    error_reason: str | None
    files_changed: list[str]
    pr_url: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Readable task event row."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task with its audit trail."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class MachineHeartbeat:
    """Liveness report sent by a worker machine."""

    machine_id: str
    active_tasks: int = 0
    capacity: int | None = None
    status: MachineStatus | None = None
    engine_priority: tuple[str, ...] | None = None
    display_name: str | None = None
    projects: tuple[str, ...] | None = None
    os: str | None = None


@dataclass(slots=True)
class MachineView:
    """Readable machine registry entry."""

    machine_id: str
    display_name: str | None
    status: MachineStatus
    last_heartbeat: datetime | None
    active_tasks: int
    max_concurrency: int
    engine_priority: list[str]
    projects: list[str]
    os: str | None
    registered_at: datetime

    @property
    def has_capacity(self) -> bool:
        return self.active_tasks < self.max_concurrency
