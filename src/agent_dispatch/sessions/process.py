"""Subprocess-based session processes for agent CLIs."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
import signal
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from agent_dispatch.sessions.protocol import encode_user_message

logger = logging.getLogger(__name__)

DEFAULT_READ_SIZE = 64 * 1024
STDERR_TAIL_LINES = 50
_SUPPORTED_PLACEHOLDERS = ("prompt", "workspace", "permission_mode", "model")


class SpawnError(RuntimeError):
    """Session process could not be started."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class SessionClosedError(RuntimeError):
    """Write attempted on a session whose input is closed."""


@dataclass(slots=True)
class SpawnRequest:
    """What to run and where."""

    workspace_path: str
    prompt: str
    engine: str
    permission_mode: str = "default"
    task_id: str | None = None


class SessionHandle(Protocol):
    """Bidirectional byte stream to a running agent process."""

    @property
    def session_id(self) -> str: ...

    @property
    def engine(self) -> str: ...

    async def write(self, data: bytes) -> None: ...

    async def close_input(self) -> None: ...

    def output(self) -> AsyncIterator[bytes]: ...

    async def wait(self) -> int: ...

    async def terminate(self) -> None:
        """Stop the process group: SIGTERM, wait, then SIGKILL. Safe to call twice.

        Agents run in their own session (``start_new_session``), so the group id
        equals the leader pid and signalling the group also stops the tools the
        agent started.
        """

        if self._terminated:
            return
        self._terminated = True
        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()
        if self._process.returncode is not None:
            # Leader is gone but children may still hold the group.
            self._signal_group(signal.SIGKILL)
            return
        self._signal_group(signal.SIGTERM)
        try:
            await asyncio.wait_for(self._process.wait(), timeout=self._terminate_timeout_seconds)
        except TimeoutError:
            self._signal_group(signal.SIGKILL)
            await self._process.wait()
        else:
            self._signal_group(signal.SIGKILL)
        logger.info("Terminated session %s (engine=%s)", self._session_id, self._engine)

    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_lines)

    def _signal_group(self, signum: signal.Signals) -> None:
        try:
            os.killpg(self._process.pid, signum)
        except ProcessLookupError:
            return
        except PermissionError:
            # Not a group leader we own; fall back to the direct child.
            with contextlib.suppress(ProcessLookupError):
                self._process.send_signal(signum)

    async def _drain_stderr(self) -> None:
        stderr = self._process.stderr
        if stderr is None:
            return
        while True:
            line = await stderr.readline()
            if not line:
                return
            self._stderr_lines.append(line.decode("utf-8", errors="replace").rstrip())


class SubprocessSpawner:
    """Start agent CLIs from per-engine command templates.

    Templates are rendered with shell-quoted ``{prompt}``, ``{workspace}``,
    ``{permission_mode}`` and ``{model}`` values. When a template has no
    ``{prompt}`` the prompt is written to stdin as the first user frame. When it
    has no ``{workspace}`` the process runs with the workspace as its working
    directory.
    """

    def __init__(
        self,
        *,
        command_templates: dict[str, str],
        models: dict[str, str] | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command_templates = command_templates
        self.models = models or {}
        self.env = env

    async def spawn(self, request: SpawnRequest) -> SubprocessSession:
        template = self.command_templates.get(request.engine)
        if template is None:
            raise SpawnError(f"No command template for engine={request.engine!r}", transient=False)

        argv = build_run_args(
            command_template=template,
            prompt=request.prompt,
            workspace=request.workspace_path,
            permission_mode=request.permission_mode,
            model=self.models.get(request.engine, ""),
        )
        prompt_in_args = "{prompt}" in template
        cwd = None if "{workspace}" in template else request.workspace_path
        if cwd is not None and not Path(cwd).is_dir():
            raise SpawnError(f"Workspace does not exist: {cwd}", transient=False)

        env = dict(self.env) if self.env is not None else os.environ.copy()
        if request.task_id is not None:
            env["AGENT_DISPATCH_TASK_ID"] = request.task_id

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        except FileNotFoundError as error:
            raise SpawnError(f"Agent command not found: {argv[0]}", transient=False) from error
        except OSError as error:
            raise SpawnError(f"Agent process failed to start: {error}", transient=True) from error

        session = SubprocessSession(process, engine=request.engine)
        logger.info(
            "Spawned %s session %s (pid=%s, task=%s)",
            request.engine,
            session.session_id,
            process.pid,
            request.task_id or "-",
        )
        if not prompt_in_args:
            try:
                await session.write(encode_user_message(request.prompt))
            except SessionClosedError as error:
                await session.terminate()
                raise SpawnError(
                    f"Agent process exited before accepting the prompt: {session.stderr_tail()}",
                    transient=True,
                ) from error
        return session


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    workspace: str,
    permission_mode: str,
    model: str,
) -> list[str]:
    """Render a command template into argv."""

    stripped = command_template.strip()
    if not stripped:
        raise SpawnError("Agent command template is empty.", transient=False)
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            workspace=shlex.quote(workspace),
            permission_mode=shlex.quote(permission_mode),
            model=shlex.quote(model) if model else "",
        )
    except (KeyError, IndexError) as error:
        raise SpawnError(
            f"Unsupported command template placeholder: {error}. "
            f"Supported: {', '.join(_SUPPORTED_PLACEHOLDERS)}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise SpawnError("Agent command template rendered empty command.", transient=False)
    return argv
