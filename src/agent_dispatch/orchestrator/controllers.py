"""Controllers for agent-dispatch CLI commands."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_dispatch.chat.base import ChatSender, ConsoleSender, InboundSource, TopicProvider
from agent_dispatch.chat.suppression import GuardedSender, InMemorySuppressionRegistry
from agent_dispatch.chat.telegram import TelegramSender
from agent_dispatch.config import SUPPORTED_ENGINES, ConfigError, Settings, machine_os
from agent_dispatch.orchestrator.executor import ExecutorRunSummary, TaskExecutor
from agent_dispatch.orchestrator.health import AlertThrottle, HealthReport, RecoveryService
from agent_dispatch.orchestrator.models import TaskStatus, TaskSubmission
from agent_dispatch.orchestrator.registry import MachineRepository
from agent_dispatch.orchestrator.reporting import ChatResultReporter
from agent_dispatch.orchestrator.repository import TaskRepository
from agent_dispatch.orchestrator.workspace import DirectoryWorkspacePreparer
from agent_dispatch.sessions.failover import EngineFailoverController, FailoverPolicy
from agent_dispatch.sessions.inbound import InboundRelay
from agent_dispatch.sessions.outbound import OutboundBuffer
from agent_dispatch.sessions.process import SubprocessSpawner
from agent_dispatch.sessions.router import TopicRouter


@dataclass(slots=True)
class TaskSubmitCommand:
    """CLI input for task submission."""

    db_url: str | None
    project: str
    description: str
    priority: int
    max_budget_usd: float | None
    machine_id: str | None
    topic_id: str | None


@dataclass(slots=True)
class TaskListCommand:
    db_url: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    db_url: str | None
    task_id: str


@dataclass(slots=True)
class TaskCancelCommand:
    db_url: str | None
    task_id: str


@dataclass(slots=True)
class MachineListCommand:
    db_url: str | None


@dataclass(slots=True)
class MachineEnginesCommand:
    """CLI input for replacing a machine's engine priority."""

    db_url: str | None
    machine_id: str
    engines: tuple[str, ...]


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for executor runs."""

    db_url: str | None
    once: bool
    project_filter: str | None = None


@dataclass(slots=True)
class HealthCommand:
    """CLI input for recovery sweeps."""

    db_url: str | None
    watch: bool
    dispatch: bool = True


class DispatchCliController:
    """Coordinates queue, machine, worker and recovery CLI operations."""

    def submit_task(self, command: TaskSubmitCommand) -> list[str]:
        settings = _settings(command.db_url)
        with _repository(settings) as repository:
            task = repository.submit_task(
                TaskSubmission(
                    project=command.project,
                    description=command.description,
                    priority=command.priority,
                    max_budget_usd=command.max_budget_usd,
                    machine_affinity=command.machine_id,
                    topic_id=command.topic_id,
                ),
            )
        return [
            f"Task submitted: task_id={task.task_id} project={task.project} "
            f"status={task.status.value} priority={task.priority}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_url)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} project={task.project} status={task.status.value} "
                f"priority={task.priority} machine={task.assigned_machine or '-'} "
                f"created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = _settings(command.db_url)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Project: {task.project}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Machine: {task.assigned_machine or '-'}",
            f"Worker: {task.worker_id or '-'}",
            f"Session: {task.session_id or '-'}",
            f"Topic: {task.topic_id or '-'}",
            f"Workspace: {task.workspace_path or '-'}",
            f"Error: {task.error_reason or '-'}",
            f"Files changed: {len(task.files_changed)}",
            f"PR: {task.pr_url or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        if task.result_summary:
            lines.append("Summary:")
            lines.append(task.result_summary)
        return lines

    def cancel_task(self, command: TaskCancelCommand) -> list[str]:
        settings = _settings(command.db_url)
        with _repository(settings) as repository:
            cancelled = repository.cancel_task(task_id=command.task_id)
        if not cancelled:
            return [f"Task already cancelled: {command.task_id}"]
        return [f"Task cancelled: {command.task_id}"]

    def list_machines(self, command: MachineListCommand) -> list[str]:
        settings = _settings(command.db_url)
        with _machine_registry(settings) as registry:
            machines = registry.list_machines()

        lines = [f"Machines: {len(machines)}"]
        for machine in machines:
            heartbeat = machine.last_heartbeat.isoformat() if machine.last_heartbeat else "-"
            lines.append(
                f"  {machine.machine_id} status={machine.status.value} "
                f"tasks={machine.active_tasks}/{machine.max_concurrency} "
                f"engines={','.join(machine.engine_priority) or '-'} "
                f"last_heartbeat={heartbeat}",
            )
        return lines

    def set_engines(self, command: MachineEnginesCommand) -> list[str]:
        unknown = [engine for engine in command.engines if engine not in SUPPORTED_ENGINES]
        if unknown:
            raise ConfigError(
                f"Unsupported engine(s): {', '.join(unknown)}. "
                f"Supported: {', '.join(SUPPORTED_ENGINES)}",
            )
        settings = _settings(command.db_url)
        with _machine_registry(settings) as registry:
            updated = registry.update_engine_priority(
                machine_id=command.machine_id,
                engines=command.engines,
            )
        if not updated:
            return [f"Machine not found: {command.machine_id}"]
        return [f"Engine priority for {command.machine_id}: {' > '.join(command.engines)}"]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_url)
        if command.project_filter is not None:
            settings.worker.project_filter = command.project_filter
        summary = asyncio.run(_run_worker(settings, once=command.once))
        return [
            "Worker summary: "
            f"claimed={summary.claimed} completed={summary.completed} "
            f"failed={summary.failed} cancelled={summary.cancelled} "
            f"requeued={summary.requeued} handoffs={summary.handoffs} "
            f"reconnects={summary.reconnects} idle_polls={summary.idle_polls}",
        ]

    def health(self, command: HealthCommand) -> list[str]:
        settings = _settings(command.db_url)
        if command.watch:
            passes = asyncio.run(_watch_health(settings, dispatch=command.dispatch))
            return [f"Health watch stopped after {passes} pass(es)"]

        report = asyncio.run(_sweep_health(settings, dispatch=command.dispatch))
        lines = [
            "Health report: "
            f"machines={report.machines_total} online={report.machines_online} "
            f"marked_offline={len(report.machines_marked_offline)} "
            f"requeued={len(report.tasks_requeued)} released={len(report.tasks_released)} "
            f"failed={len(report.tasks_failed)} assigned={len(report.tasks_assigned)}",
        ]
        lines.extend(f"  offline: {machine_id}" for machine_id in report.machines_marked_offline)
        lines.extend(f"  requeued: {task_id}" for task_id in report.tasks_requeued)
        lines.extend(f"  stale: {task_id}" for task_id in report.tasks_failed)
        lines.extend(
            f"  assigned: {task_id} -> {machine_id}"
            for task_id, machine_id in report.tasks_assigned
        )
        return lines


async def _run_worker(settings: Settings, *, once: bool) -> ExecutorRunSummary:
    with _repository(settings) as repository, _machine_registry(settings) as registry:
        async with _chat(settings) as (sender, topics, inbound):
            suppressor = InMemorySuppressionRegistry(
                default_ttl_seconds=settings.suppression.ttl_seconds,
            )
            guarded = GuardedSender(sender, suppressor)
            router = TopicRouter(
                sender=guarded,
                suppressor=suppressor,
                outbound=OutboundBuffer(
                    guarded,
                    flush_interval_seconds=settings.session.flush_interval_seconds,
                    max_chars=settings.session.max_message_chars,
                ),
                spawn_guard_seconds=settings.session.spawn_guard_seconds,
                close_grace_seconds=settings.session.close_grace_seconds,
            )
            executor = TaskExecutor(
                store=repository,
                registry=registry,
                spawner=SubprocessSpawner(
                    command_templates=settings.engines.command_templates,
                    models=settings.engines.models,
                ),
                router=router,
                topics=topics,
                workspaces=DirectoryWorkspacePreparer(Path(settings.worker.workspace_root)),
                failover=EngineFailoverController(_failover_policy(settings)),
                reporter=ChatResultReporter(router),
                worker_id=settings.worker.worker_id,
                machine_id=settings.worker.machine_id,
                engine_priority=settings.worker.engine_priority,
                project_filter=settings.worker.project_filter,
                projects=settings.worker.projects,
                permission_mode=settings.engines.permission_mode,
                max_concurrency=settings.worker.max_concurrency,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                heartbeat_interval_seconds=settings.worker.heartbeat_interval_seconds,
                reconnect_delay_seconds=settings.worker.reconnect_delay_seconds,
                transport_exit_codes=settings.worker.transport_exit_codes,
                result_summary_max_chars=settings.worker.result_summary_max_chars,
                result_idle_seconds=settings.session.result_idle_seconds,
                machine_os=machine_os(),
            )
            relay_task: asyncio.Task[None] | None = None
            if inbound is not None:
                relay = InboundRelay(source=inbound, router=router, sender=guarded)
                relay_task = asyncio.create_task(relay.run_forever(), name="inbound-relay")
            try:
                if once:
                    return await executor.run_once()
                return await executor.run_forever()
            finally:
                if relay_task is not None:
                    relay_task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await relay_task


async def _sweep_health(settings: Settings, *, dispatch: bool) -> HealthReport:
    with _repository(settings) as repository, _machine_registry(settings) as registry:
        async with _chat(settings) as (sender, _, _):
            service = _recovery_service(settings, repository, registry, sender, dispatch=dispatch)
            return await service.run_once()


async def _watch_health(settings: Settings, *, dispatch: bool) -> int:
    with _repository(settings) as repository, _machine_registry(settings) as registry:
        async with _chat(settings) as (sender, _, _):
            service = _recovery_service(settings, repository, registry, sender, dispatch=dispatch)
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for signum in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                    loop.add_signal_handler(signum, stop.set)
            return await service.run_forever(stop)


def _recovery_service(
    settings: Settings,
    repository: TaskRepository,
    registry: MachineRepository,
    sender: ChatSender,
    *,
    dispatch: bool,
) -> RecoveryService:
    health = settings.health
    return RecoveryService(
        store=repository,
        registry=registry,
        sender=sender if health.alerts_enabled else None,
        alert_topic_id=health.alert_topic_id or None,
        heartbeat_timeout_seconds=health.heartbeat_timeout_seconds,
        dispatch_heartbeat_window_seconds=health.dispatch_heartbeat_window_seconds,
        stale_task_timeout_seconds=health.stale_task_timeout_seconds,
        sweep_interval_seconds=health.sweep_interval_seconds,
        dispatch_enabled=dispatch,
        throttle=AlertThrottle(health.alert_cooldown_seconds),
    )


def _failover_policy(settings: Settings) -> FailoverPolicy:
    failover = settings.failover
    return FailoverPolicy(
        window_seconds=failover.window_seconds,
        signal_threshold=failover.signal_threshold,
        retry_after_threshold_seconds=failover.retry_after_threshold_seconds,
        max_hops=failover.max_hops,
        excerpt_max_chars=failover.excerpt_max_chars,
        immediate_window_seconds=failover.immediate_window_seconds,
    )


def _settings(db_url: str | None) -> Settings:
    settings = Settings.from_env(db_url=db_url)
    settings.validate()
    return settings


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


@asynccontextmanager
async def _chat(
    settings: Settings,
) -> AsyncIterator[tuple[ChatSender, TopicProvider, InboundSource | None]]:
    """Chat backend as sender, topic provider and, for Telegram, inbound source."""

    if settings.chat.backend == "telegram":
        telegram = TelegramSender(
            bot_token=settings.chat.telegram_bot_token,
            chat_id=settings.chat.telegram_chat_id,
            api_base_url=settings.chat.telegram_api_base_url,
            timeout_seconds=settings.chat.request_timeout_seconds,
            poll_timeout_seconds=settings.chat.telegram_poll_timeout_seconds,
        )
        async with telegram:
            yield telegram, telegram, telegram
        return
    console = ConsoleSender()
    yield console, console, None


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_url,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _machine_registry(settings: Settings) -> Iterator[MachineRepository]:
    registry = MachineRepository(
        settings.db_url,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    registry.init_schema()
    try:
        yield registry
    finally:
        registry.close()
