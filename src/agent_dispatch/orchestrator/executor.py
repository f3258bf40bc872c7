"""Task executor: claims queued tasks and drives agent sessions to an outcome.

One executor runs per machine. It claims up to ``max_concurrency`` tasks,
gives each a conversation topic and a workspace, spawns the first engine of
the machine's priority list and pumps the session's output through the
protocol parser into the topic router. Rate limiting hands the session over to
the next engine, a dropped transport gets one reconnect, and the exit status
decides between ``completed`` and ``failed``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import AsyncIterator, Iterator
from contextlib import aclosing, contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_dispatch.chat.base import ChatDeliveryError, TopicProvider
from agent_dispatch.orchestrator.failure_classifier import (
    SessionFailureClass,
    SessionFailureClassification,
    classify_session_exit,
)
from agent_dispatch.orchestrator.models import (
    MachineHeartbeat,
    MachineView,
    RecoveryReason,
    TaskStatus,
    TaskView,
)
from agent_dispatch.orchestrator.reporting import ResultReporter, TaskReport
from agent_dispatch.orchestrator.store import MachineRegistry, TaskStore
from agent_dispatch.orchestrator.workspace import WorkspacePreparer
from agent_dispatch.sessions.failover import (
    EngineFailoverController,
    FailoverAction,
    FailoverDecision,
    HandoffRecord,
    build_excerpt,
    render_handoff_document,
)
from agent_dispatch.sessions.process import SessionSpawner, SpawnError, SpawnRequest
from agent_dispatch.sessions.protocol import FinalResult, RateLimitSignal, StreamMessage
from agent_dispatch.sessions.router import TopicRouter
from agent_dispatch.sessions.session import Session

logger = logging.getLogger(__name__)

DEFAULT_RESULT_SUMMARY_MAX_CHARS = 4000
DEFAULT_RESULT_IDLE_SECONDS = 300.0
TOPIC_NAME_MAX_CHARS = 60
NO_OUTPUT_SUMMARY = "(no output)"


@dataclass(slots=True)
class ExecutorRunSummary:
    """Aggregate executor counters for CLI reporting."""

    claimed: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    requeued: int = 0
    handoffs: int = 0
    reconnects: int = 0
    idle_polls: int = 0


@dataclass(slots=True)
class _PumpOutcome:
    exit_code: int
    final: FinalResult | None = None
    decision: FailoverDecision | None = None


class TaskExecutor:
    """Claims tasks for one machine and runs them as agent sessions."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        registry: MachineRegistry,
        spawner: SessionSpawner,
        router: TopicRouter,
        topics: TopicProvider,
        workspaces: WorkspacePreparer,
        failover: EngineFailoverController,
        reporter: ResultReporter | None,
        worker_id: str,
        machine_id: str,
        engine_priority: tuple[str, ...],
        project_filter: str | None = None,
        projects: tuple[str, ...] = (),
        permission_mode: str = "default",
        max_concurrency: int = 3,
        poll_interval_seconds: float = 5.0,
        heartbeat_interval_seconds: float = 30.0,
        reconnect_delay_seconds: float = 5.0,
        max_reconnects: int = 1,
        transport_exit_codes: tuple[int, ...] = (255,),
        result_summary_max_chars: int = DEFAULT_RESULT_SUMMARY_MAX_CHARS,
        result_idle_seconds: float = DEFAULT_RESULT_IDLE_SECONDS,
        machine_os: str | None = None,
    ) -> None:
        if not engine_priority:
            raise ValueError("engine_priority must list at least one engine.")
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0.")
        if result_idle_seconds <= 0:
            raise ValueError("result_idle_seconds must be > 0.")
        self.store = store
        self.registry = registry
        self.spawner = spawner
        self.router = router
        self.topics = topics
        self.workspaces = workspaces
        self.failover = failover
        self.reporter = reporter
        self.worker_id = worker_id
        self.machine_id = machine_id
        self.engine_priority = engine_priority
        self.project_filter = project_filter
        self.projects = projects
        self.permission_mode = permission_mode
        self.max_concurrency = max_concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.reconnect_delay_seconds = reconnect_delay_seconds
        self.max_reconnects = max_reconnects
        self.transport_exit_codes = transport_exit_codes
        self.result_summary_max_chars = result_summary_max_chars
        self.result_idle_seconds = result_idle_seconds
        self.machine_os = machine_os
        self.summary = ExecutorRunSummary()
        self._running: dict[str, asyncio.Task[None]] = {}
        self._topics: dict[str, str] = {}
        self._aborted: set[str] = set()
        self._released: set[str] = set()
        self._shutting_down = False
        self._registered = False

    @property
    def active_task_ids(self) -> list[str]:
        return sorted(self._running)

    async def run_once(self) -> ExecutorRunSummary:
        """Claim up to the free capacity and drive every claimed task to its end."""

        await self.heartbeat()
        if not await self._fill_slots():
            self.summary.idle_polls += 1
        await self._drain()
        await self.heartbeat()
        return self.summary

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> ExecutorRunSummary:
        """Poll until stopped, then hand unfinished tasks back to the queue."""

        stop = stop_event or asyncio.Event()
        await self.heartbeat()
        heartbeat_task = asyncio.create_task(self._heartbeat_loop(stop))
        try:
            with self._signal_handlers(stop):
                while not stop.is_set():
                    try:
                        await self._reconcile_local_tasks()
                        if not await self._fill_slots():
                            self.summary.idle_polls += 1
                    except Exception:  # noqa: BLE001
                        logger.exception("Executor poll failed on machine %s", self.machine_id)
                    await _wait_for_stop(stop, self.poll_interval_seconds)
        finally:
            heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat_task
            await self.shutdown()
        return self.summary

    async def heartbeat(self) -> MachineView:
        """Report liveness; the first report of a new machine seeds its engine priority."""

        engine_priority: tuple[str, ...] | None = None
        if not self._registered:
            existing = await asyncio.to_thread(
                self.registry.get_machine,
                machine_id=self.machine_id,
            )
            if existing is None or not existing.engine_priority:
                engine_priority = self.engine_priority
        view = await asyncio.to_thread(
            self.registry.heartbeat,
            MachineHeartbeat(
                machine_id=self.machine_id,
                active_tasks=len(self._running),
                capacity=self.max_concurrency,
                engine_priority=engine_priority,
                projects=self.projects or None,
                os=self.machine_os,
            ),
        )
        self._registered = True
        return view

    async def cancel_task(self, task_id: str) -> bool:
        """Cancel a task and stop its local session. Repeating the call is harmless."""

        changed = await asyncio.to_thread(self.store.cancel_task, task_id=task_id)
        await self._abort_local(task_id, reason="cancelled")
        return changed

    async def shutdown(self) -> None:
        """Stop local sessions and return their tasks to the queue."""

        self._shutting_down = True
        for topic_id in list(self._topics.values()):
            await self.router.close(topic_id, "worker shutdown")
        await self._drain()
        requeued = await asyncio.to_thread(
            self.store.requeue_tasks_for_machine,
            machine_id=self.machine_id,
            reason=RecoveryReason.WORKER_SHUTDOWN,
        )
        self.summary.requeued += len(requeued)
        await asyncio.to_thread(self.registry.mark_offline, machine_id=self.machine_id)
        logger.info(
            "Executor on machine %s stopped (requeued=%d)",
            self.machine_id,
            len(requeued),
        )

    async def _fill_slots(self) -> int:
        started = 0
        while not self._shutting_down and len(self._running) < self.max_concurrency:
            task = await asyncio.to_thread(
                self.store.claim,
                worker_id=self.worker_id,
                machine_id=self.machine_id,
                project=self.project_filter,
            )
            if task is None:
                break
            logger.info("Claimed task %s (project=%s)", task.task_id, task.project)
            self.summary.claimed += 1
            self._running[task.task_id] = asyncio.create_task(
                self._run_task(task),
                name=f"task-{task.task_id[:8]}",
            )
            started += 1
        return started

    async def _drain(self) -> None:
        while self._running:
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)

    async def _reconcile_local_tasks(self) -> None:
        """Stop sessions whose task was cancelled, finished or taken over elsewhere."""

        for task_id in list(self._running):
            view = await asyncio.to_thread(self.store.get_task, task_id=task_id)
            if view is None:
                await self._abort_local(task_id, reason="task deleted", cancelled=False)
            elif view.status.is_terminal:
                await self._abort_local(
                    task_id,
                    reason=f"task {view.status.value}",
                    cancelled=view.status == TaskStatus.CANCELLED,
                )
            elif view.worker_id != self.worker_id:
                # Requeued by recovery (and maybe re-claimed) while this worker was away.
                logger.warning(
                    "Task %s is no longer held by %s (status=%s, worker=%s)",
                    task_id,
                    self.worker_id,
                    view.status.value,
                    view.worker_id or "-",
                )
                await self._abort_local(task_id, reason="task reassigned", cancelled=False)

    async def _abort_local(self, task_id: str, *, reason: str, cancelled: bool = True) -> None:
        if task_id not in self._running or task_id in self._aborted:
            return
        self._aborted.add(task_id)
        if not cancelled:
            self._released.add(task_id)
        topic_id = self._topics.get(task_id)
        if topic_id is not None:
            await self.router.close(topic_id, reason)
        logger.info("Stopped local session of task %s (%s)", task_id, reason)

    async def _run_task(self, task: TaskView) -> None:
        report: TaskReport | None = None
        try:
            report = await self._execute(task)
        except Exception as error:  # noqa: BLE001
            logger.exception("Task %s crashed in the executor", task.task_id)
            report = await self._fail(task, f"Executor error: {error}")
        finally:
            topic_id = self._topics.pop(task.task_id, None)
            if topic_id is not None:
                await self.router.close(topic_id, "task finished")
            released = task.task_id in self._released
            if task.task_id in self._aborted and not released and not self._shutting_down:
                self.summary.cancelled += 1
            self._aborted.discard(task.task_id)
            self._released.discard(task.task_id)
            self.failover.forget(task.task_id)
            self._running.pop(task.task_id, None)
        if report is not None and self.reporter is not None:
            await self.reporter.report(report)

    async def _execute(self, task: TaskView) -> TaskReport | None:  # noqa: C901, PLR0911, PLR0912
        topic_id = await self._ensure_topic(task)
        if topic_id is None:
            return await self._fail(task, "Could not create a conversation topic")
        self._topics[task.task_id] = topic_id
        task.topic_id = topic_id

        try:
            workspace = await asyncio.to_thread(self.workspaces.prepare, task)
        except OSError as error:
            return await self._fail(task, f"Workspace preparation failed: {error}")
        if task.task_id in self._aborted or self._shutting_down:
            return None

        engine_priority = await self._engine_priority()
        engine = engine_priority[0]
        if not self.router.begin_spawn(topic_id):
            return await self._fail(task, f"Topic {topic_id} already has a live session")
        try:
            handle = await self.spawner.spawn(
                SpawnRequest(
                    workspace_path=str(workspace),
                    prompt=build_task_prompt(task, workspace),
                    engine=engine,
                    permission_mode=self.permission_mode,
                    task_id=task.task_id,
                ),
            )
        except SpawnError as error:
            self.router.abort_spawn(topic_id)
            return await self._fail(task, f"Spawn failed: {error}")

        session = Session(topic_id=topic_id, handle=handle, engine=engine, task_id=task.task_id)
        running = await asyncio.to_thread(
            self.store.mark_running,
            task_id=task.task_id,
            session_id=handle.session_id,
            workspace_path=str(workspace),
            worker_id=self.worker_id,
        )
        if not running:
            await handle.terminate()
            self.router.abort_spawn(topic_id)
            logger.info("Task %s left claimed state before its session started", task.task_id)
            return None
        if not self.router.attach(topic_id, session):
            await handle.terminate()
            if task.task_id in self._aborted or self._shutting_down:
                return None
            return await self._fail(task, "Spawn guard expired before the session attached")
        await self.router.notify(
            topic_id,
            f"Task {task.task_id[:8]} started on {self.machine_id} with {engine}.",
        )

        reconnects_left = self.max_reconnects
        while True:
            outcome = await self._pump(session, engine_priority)
            if task.task_id in self._aborted or self._shutting_down:
                return None

            decision = outcome.decision
            classification: SessionFailureClassification | None = None
            if decision is None and outcome.exit_code != 0:
                classification = classify_session_exit(
                    engine=session.engine,
                    exit_code=outcome.exit_code,
                    stderr=session.handle.stderr_tail(),
                    transport_exit_codes=self.transport_exit_codes,
                )
                if classification.failure_class == SessionFailureClass.RATE_LIMITED:
                    decision = self.failover.on_rate_limited_exit(
                        task.task_id,
                        engine=session.engine,
                        engine_priority=engine_priority,
                        transcript=session.transcript_text(),
                        reason=f"exit code {outcome.exit_code}, "
                        f"stderr matched {classification.matched_pattern!r}",
                    )
            if decision is not None and decision.action == FailoverAction.ESCALATE:
                return await self._fail(
                    task,
                    f"Rate limited on every available engine: {decision.reason}",
                )
            if decision is not None and decision.handoff is not None:
                replacement = await self._handoff(task, session, decision.handoff, workspace)
                if replacement is None:
                    return await self._fail(
                        task,
                        f"Handoff to {decision.handoff.engine_to} failed to start",
                    )
                session = replacement
                continue

            if classification is None:
                return await self._complete(task, session, workspace, outcome.final)

            details = classification.to_event_details(
                engine=session.engine,
                exit_code=outcome.exit_code,
            )
            if classification.reconnectable and reconnects_left > 0:
                reconnects_left -= 1
                replacement = await self._reconnect(task, session, workspace, details)
                if replacement is not None:
                    session = replacement
                    continue
            return await self._fail(
                task,
                f"Session exited with code {outcome.exit_code}",
                details=details,
            )

    async def _pump(self, session: Session, engine_priority: tuple[str, ...]) -> _PumpOutcome:
        """Forward session output to the router until the process ends or fails over.

        A final result ends the turn, not the session: input stays open for
        follow-up messages from the topic and is closed once the session has
        been idle for ``result_idle_seconds`` after its last result.
        """

        final: FinalResult | None = None
        decision: FailoverDecision | None = None
        turn_done = False
        async with aclosing(session.handle.output()) as chunks:
            pending: asyncio.Task[bytes | None] | None = None
            try:
                while decision is None:
                    if pending is None:
                        pending = asyncio.create_task(_next_chunk(chunks))
                    timeout = self.result_idle_seconds if turn_done else None
                    done, _ = await asyncio.wait({pending}, timeout=timeout)
                    if not done:
                        if not _awaits_reply(session):
                            logger.info(
                                "Session %s idle for %.0fs after its result, closing input",
                                session.session_id,
                                self.result_idle_seconds,
                            )
                            await session.handle.close_input()
                            turn_done = False
                        continue
                    chunk = pending.result()
                    pending = None
                    if chunk is None:
                        break
                    for message in session.parser.feed(chunk):
                        decision = await self._dispatch(session, message, engine_priority)
                        turn_done = isinstance(message, FinalResult)
                        if isinstance(message, FinalResult):
                            final = message
                        if decision is not None:
                            break
            finally:
                if pending is not None:
                    pending.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await pending

        if decision is not None:
            await session.handle.terminate()
            return _PumpOutcome(exit_code=await session.handle.wait(), decision=decision)

        for message in session.parser.finish():
            await self._dispatch(session, message, engine_priority)
            if isinstance(message, FinalResult):
                final = message
        exit_code = await session.handle.wait()
        if session.parser.noise_lines:
            logger.debug(
                "Session %s emitted %d non-protocol line(s)",
                session.session_id,
                session.parser.noise_lines,
            )
        return _PumpOutcome(exit_code=exit_code, final=final)

    async def _dispatch(
        self,
        session: Session,
        message: StreamMessage,
        engine_priority: tuple[str, ...],
    ) -> FailoverDecision | None:
        await self.router.deliver(session.topic_id, message, session=session)
        if not isinstance(message, RateLimitSignal) or session.task_id is None:
            return None
        decision = self.failover.on_rate_limit(
            session.task_id,
            message,
            engine=session.engine,
            engine_priority=engine_priority,
            transcript=session.transcript_text(),
        )
        return None if decision.action == FailoverAction.IGNORE else decision

    async def _handoff(
        self,
        task: TaskView,
        session: Session,
        record: HandoffRecord,
        workspace: Path,
    ) -> Session | None:
        replacement = await self._respawn(
            task,
            session,
            workspace,
            engine=record.engine_to,
            prompt=render_handoff_document(record, task_description=task.description),
        )
        if replacement is None:
            return None
        self.failover.complete_handoff(task.task_id)
        self.summary.handoffs += 1
        await asyncio.to_thread(
            self.store.add_task_event,
            task_id=task.task_id,
            event_type="engine_handoff",
            details=record.to_event_details(),
        )
        await self.router.notify(
            session.topic_id,
            f"{record.engine_from} is rate limited ({record.reason}); "
            f"continuing with {record.engine_to}.",
        )
        return replacement

    async def _reconnect(
        self,
        task: TaskView,
        session: Session,
        workspace: Path,
        details: dict[str, object],
    ) -> Session | None:
        logger.warning(
            "Session %s of task %s lost its transport, reconnecting in %.1fs",
            session.session_id,
            task.task_id,
            self.reconnect_delay_seconds,
        )
        await self.router.notify(session.topic_id, "Connection to the agent dropped, reconnecting.")
        await asyncio.sleep(self.reconnect_delay_seconds)
        if task.task_id in self._aborted or self._shutting_down:
            return None
        replacement = await self._respawn(
            task,
            session,
            workspace,
            engine=session.engine,
            prompt=render_reconnect_document(
                task,
                transcript_excerpt=build_excerpt(
                    session.transcript_text(),
                    self.failover.policy.excerpt_max_chars,
                ),
            ),
        )
        if replacement is None:
            return None
        self.summary.reconnects += 1
        await asyncio.to_thread(
            self.store.add_task_event,
            task_id=task.task_id,
            event_type="reconnected",
            details=details,
        )
        return replacement

    async def _respawn(
        self,
        task: TaskView,
        session: Session,
        workspace: Path,
        *,
        engine: str,
        prompt: str,
    ) -> Session | None:
        try:
            handle = await self.spawner.spawn(
                SpawnRequest(
                    workspace_path=str(workspace),
                    prompt=prompt,
                    engine=engine,
                    permission_mode=self.permission_mode,
                    task_id=task.task_id,
                ),
            )
        except SpawnError as error:
            logger.warning("Respawn of task %s on %s failed: %s", task.task_id, engine, error)
            return None

        replacement = Session(
            topic_id=session.topic_id,
            handle=handle,
            engine=engine,
            task_id=task.task_id,
        )
        replacement.transcript.extend(session.transcript)
        if self.router.replace_session(session.topic_id, replacement) is None:
            await handle.terminate()
            return None
        await session.handle.terminate()
        return replacement

    async def _complete(
        self,
        task: TaskView,
        session: Session,
        workspace: Path,
        final: FinalResult | None,
    ) -> TaskReport | None:
        files_changed = await asyncio.to_thread(self.workspaces.collect_changes, workspace)
        summary = build_result_summary(
            session.transcript_text(roles=("assistant",)),
            final_result=final.result if final is not None else None,
            max_chars=self.result_summary_max_chars,
        )
        completed = await asyncio.to_thread(
            self.store.complete_task,
            task_id=task.task_id,
            summary=summary,
            files_changed=files_changed,
            worker_id=self.worker_id,
        )
        if not completed:
            logger.warning("Task %s was no longer running when its session ended", task.task_id)
            return None
        self.summary.completed += 1
        logger.info("Task %s completed (%d file(s) changed)", task.task_id, len(files_changed))
        return TaskReport(
            task_id=task.task_id,
            project=task.project,
            status=TaskStatus.COMPLETED,
            topic_id=task.topic_id,
            summary=summary,
            files_changed=files_changed,
        )

    async def _fail(
        self,
        task: TaskView,
        reason: str,
        *,
        details: dict[str, object] | None = None,
    ) -> TaskReport | None:
        if details is not None:
            await asyncio.to_thread(
                self.store.add_task_event,
                task_id=task.task_id,
                event_type="session_exit",
                details=details,
            )
        failed = await asyncio.to_thread(
            self.store.fail_task,
            task_id=task.task_id,
            reason=reason,
            worker_id=self.worker_id,
        )
        if not failed:
            logger.warning("Task %s was no longer in flight when failing: %s", task.task_id, reason)
            return None
        self.summary.failed += 1
        logger.warning("Task %s failed: %s", task.task_id, reason)
        return TaskReport(
            task_id=task.task_id,
            project=task.project,
            status=TaskStatus.FAILED,
            topic_id=task.topic_id,
            error_reason=reason,
        )

    async def _ensure_topic(self, task: TaskView) -> str | None:
        if task.topic_id:
            return task.topic_id
        try:
            topic_id = await self.topics.create_topic(topic_name(task))
        except ChatDeliveryError as error:
            logger.warning("Topic creation for task %s failed: %s", task.task_id, error)
            return None
        await asyncio.to_thread(self.store.set_topic, task_id=task.task_id, topic_id=topic_id)
        return topic_id

    async def _engine_priority(self) -> tuple[str, ...]:
        machine = await asyncio.to_thread(self.registry.get_machine, machine_id=self.machine_id)
        if machine is not None and machine.engine_priority:
            return tuple(machine.engine_priority)
        return self.engine_priority

    async def _heartbeat_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            await _wait_for_stop(stop, self.heartbeat_interval_seconds)
            if stop.is_set():
                return
            try:
                await self.heartbeat()
            except Exception:  # noqa: BLE001
                logger.exception("Heartbeat from machine %s failed", self.machine_id)

    @contextmanager
    def _signal_handlers(self, stop: asyncio.Event) -> Iterator[None]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._request_stop, stop, signum.name)
            except (NotImplementedError, RuntimeError, ValueError):
                # Only the main thread of a Unix event loop can install handlers.
                continue
            installed.append(signum)
        try:
            yield
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)

    def _request_stop(self, stop: asyncio.Event, signal_name: str) -> None:
        logger.info(
            "Received %s, stopping executor (%d active task(s))",
            signal_name,
            len(self._running),
        )
        stop.set()


def topic_name(task: TaskView) -> str:
    first_line = task.description.strip().splitlines()[0] if task.description.strip() else ""
    if len(first_line) > TOPIC_NAME_MAX_CHARS:
        first_line = first_line[: TOPIC_NAME_MAX_CHARS - 1] + "…"
    return f"{task.project}: {first_line}" if first_line else task.project


def build_task_prompt(task: TaskView, workspace: Path) -> str:
    lines = [
        task.description.strip(),
        "",
        f"Project: {task.project}",
        f"Working directory: {workspace}",
    ]
    if task.max_budget_usd is not None:
        lines.append(f"Budget: stay under ${task.max_budget_usd:.2f} of model usage.")
    return "\n".join(lines) + "\n"


def render_reconnect_document(task: TaskView, *, transcript_excerpt: str) -> str:
    return (
        "The connection to your previous session on this task dropped.\n"
        "\n"
        "Original task:\n"
        f"{task.description}\n"
        "\n"
        "Recent session transcript:\n"
        f"{transcript_excerpt}\n"
        "\n"
        "Inspect the working tree and continue from where the session stopped.\n"
    )


def build_result_summary(
    assistant_text: str,
    *,
    final_result: str | None,
    max_chars: int,
) -> str:
    """Tail of the assistant output, bounded by ``max_chars``."""

    text = assistant_text.strip() or (final_result or "").strip()
    if not text:
        return NO_OUTPUT_SUMMARY
    if len(text) <= max_chars:
        return text
    return "…" + text[-(max_chars - 1) :]


async def _wait_for_stop(stop: asyncio.Event, seconds: float) -> None:
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout=seconds)


async def _next_chunk(chunks: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await anext(chunks)
    except StopAsyncIteration:
        return None


def _awaits_reply(session: Session) -> bool:
    """True when the last transcript entry is human input the agent has not answered yet."""

    return bool(session.transcript) and session.transcript[-1][0] in {"user", "answer"}
