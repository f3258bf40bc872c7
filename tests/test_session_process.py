from __future__ import annotations

import asyncio
from pathlib import Path

import allure
import pytest

from agent_dispatch.sessions.process import (
    SessionClosedError,
    SpawnError,
    SpawnRequest,
    SubprocessSession,
    SubprocessSpawner,
    build_run_args,
)
from agent_dispatch.sessions.protocol import (
    AssistantText,
    FinalResult,
    StreamMessage,
    StreamProtocolParser,
    encode_user_message,
)

pytestmark = [
    allure.epic("Agent Sessions"),
    allure.feature("Session Process"),
]


async def _collect(session: SubprocessSession) -> tuple[list[StreamMessage], int, int]:
    parser = StreamProtocolParser()
    messages: list[StreamMessage] = []
    async for chunk in session.output():
        messages.extend(parser.feed(chunk))
    messages.extend(parser.finish())
    return messages, await session.wait(), parser.noise_lines


def _texts(messages: list[StreamMessage]) -> list[str]:
    return [message.text for message in messages if isinstance(message, AssistantText)]


def _request(workspace: Path, prompt: str = "x", engine: str = "claude") -> SpawnRequest:
    return SpawnRequest(workspace_path=str(workspace), prompt=prompt, engine=engine)


def test_prompt_is_written_to_stdin_when_template_has_no_placeholder(
    tmp_path: Path,
    fake_agent: str,
) -> None:
    spawner = SubprocessSpawner(command_templates={"claude": fake_agent})

    async def _run() -> tuple[list[StreamMessage], int, int]:
        session = await spawner.spawn(_request(tmp_path, "Fix the bug\nDetails"))
        await session.close_input()
        return await _collect(session)

    messages, exit_code, _ = asyncio.run(_run())

    assert exit_code == 0
    assert _texts(messages) == ["Working on: Fix the bug\n"]
    assert isinstance(messages[-1], FinalResult)
    assert messages[-1].subtype == "success"


def test_prompt_placeholder_is_shell_quoted(tmp_path: Path, fake_agent: str) -> None:
    spawner = SubprocessSpawner(command_templates={"codex": f"{fake_agent} --prompt {{prompt}}"})

    async def _run() -> tuple[list[StreamMessage], int, int]:
        session = await spawner.spawn(
            _request(tmp_path, "it's $HOME; rm -rf nothing", engine="codex"),
        )
        return await _collect(session)

    messages, exit_code, _ = asyncio.run(_run())

    assert exit_code == 0
    assert _texts(messages) == ["Working on: it's $HOME; rm -rf nothing\n"]


def test_interactive_session_echoes_user_frames(tmp_path: Path, fake_agent: str) -> None:
    spawner = SubprocessSpawner(
        command_templates={"claude": f"{fake_agent} --interactive --noise"},
    )

    async def _run() -> tuple[list[StreamMessage], int, int]:
        session = await spawner.spawn(_request(tmp_path, "Pair with me"))
        await session.write(encode_user_message("first"))
        await session.write(encode_user_message("second"))
        await session.write(encode_user_message("/done"))
        return await _collect(session)

    messages, exit_code, noise_lines = asyncio.run(_run())

    assert exit_code == 0
    assert noise_lines == 2
    assert _texts(messages) == [
        "Working on: Pair with me\n",
        "Echo: first\n",
        "Echo: second\n",
    ]


def test_terminate_stops_hanging_process_and_closes_input(
    tmp_path: Path,
    fake_agent: str,
) -> None:
    spawner = SubprocessSpawner(command_templates={"claude": f"{fake_agent} --hang"})

    async def _run() -> int | None:
        session = await spawner.spawn(_request(tmp_path, "wait"))
        await session.terminate()
        await session.terminate()
        with pytest.raises(SessionClosedError):
            await session.write(encode_user_message("too late"))
        return session.returncode

    assert asyncio.run(_run()) is not None


@pytest.mark.skipif(not Path("/proc").is_dir(), reason="needs /proc")
def test_terminate_also_stops_processes_started_by_the_agent(
    tmp_path: Path,
    fake_agent: str,
) -> None:
    pid_file = tmp_path / "child.pid"
    spawner = SubprocessSpawner(
        command_templates={"claude": f"{fake_agent} --spawn-child {pid_file} --hang"},
    )

    async def _run() -> int:
        session = await spawner.spawn(_request(tmp_path, "work"))
        for _ in range(200):
            if pid_file.exists() and pid_file.read_text(encoding="utf-8"):
                break
            await asyncio.sleep(0.02)
        child_pid = int(pid_file.read_text(encoding="utf-8"))
        assert _alive(child_pid)
        await session.terminate()
        for _ in range(100):
            if not _alive(child_pid):
                break
            await asyncio.sleep(0.02)
        return child_pid

    child_pid = asyncio.run(_run())

    assert not _alive(child_pid)


def _alive(pid: int) -> bool:
    """False once the process is gone or only a zombie is left."""

    try:
        stat = Path(f"/proc/{pid}/stat").read_text(encoding="utf-8")
    except FileNotFoundError:
        return False
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


def test_exit_code_is_reported_after_final_result(tmp_path: Path, fake_agent: str) -> None:
    spawner = SubprocessSpawner(
        command_templates={"gemini": f"{fake_agent} --exit-code 3 --prompt {{prompt}}"},
    )

    async def _run() -> tuple[list[StreamMessage], int, int]:
        session = await spawner.spawn(_request(tmp_path, engine="gemini"))
        return await _collect(session)

    messages, exit_code, _ = asyncio.run(_run())

    assert exit_code == 3
    assert isinstance(messages[-1], FinalResult)
    assert messages[-1].subtype == "error"


def test_stderr_tail_is_kept(tmp_path: Path, fake_agent: str) -> None:
    spawner = SubprocessSpawner(
        command_templates={"gemini": f"{fake_agent} --bogus-flag --prompt {{prompt}}"},
    )

    async def _run() -> tuple[int, str]:
        session = await spawner.spawn(_request(tmp_path, engine="gemini"))
        _, exit_code, _ = await _collect(session)
        return exit_code, session.stderr_tail()

    exit_code, stderr = asyncio.run(_run())

    assert exit_code == 2
    assert "unrecognized arguments: --bogus-flag" in stderr


def test_missing_binary_is_permanent_spawn_error(tmp_path: Path) -> None:
    spawner = SubprocessSpawner(command_templates={"claude": "/nonexistent/agent-cli --json"})

    with pytest.raises(SpawnError) as error:
        asyncio.run(spawner.spawn(_request(tmp_path)))

    assert error.value.transient is False
    assert "not found" in str(error.value)


def test_unknown_engine_and_missing_workspace_fail_fast(tmp_path: Path, fake_agent: str) -> None:
    spawner = SubprocessSpawner(command_templates={"claude": fake_agent})

    with pytest.raises(SpawnError, match="No command template"):
        asyncio.run(spawner.spawn(_request(tmp_path, engine="codex")))
    with pytest.raises(SpawnError, match="Workspace does not exist"):
        asyncio.run(spawner.spawn(_request(tmp_path / "missing")))


def test_build_run_args_renders_placeholders() -> None:
    argv = build_run_args(
        command_template="agent --cwd {workspace} --mode {permission_mode} {model} -p {prompt}",
        prompt="two words",
        workspace="/srv/my repo",
        permission_mode="acceptEdits",
        model="",
    )

    assert argv == [
        "agent",
        "--cwd",
        "/srv/my repo",
        "--mode",
        "acceptEdits",
        "-p",
        "two words",
    ]


@pytest.mark.parametrize("template", ["", "   ", "agent {unknown}"])
def test_build_run_args_rejects_bad_templates(template: str) -> None:
    with pytest.raises(SpawnError):
        build_run_args(
            command_template=template,
            prompt="x",
            workspace="/tmp",
            permission_mode="default",
            model="",
        )
