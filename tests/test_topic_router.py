from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import allure

from agent_dispatch.chat.base import ChatButton, ConsoleSender, MessageKind
from agent_dispatch.chat.suppression import InMemorySuppressionRegistry
from agent_dispatch.sessions.outbound import OutboundBuffer
from agent_dispatch.sessions.process import SessionClosedError
from agent_dispatch.sessions.protocol import (
    AssistantText,
    FinalResult,
    InteractiveQuestion,
    ToolInvocation,
)
from agent_dispatch.sessions.router import (
    BindingState,
    RouteResult,
    TopicRouter,
    parse_question_callback,
    question_buttons,
)
from agent_dispatch.sessions.session import Session

pytestmark = [
    allure.epic("Agent Sessions"),
    allure.feature("Topic Binding & Routing"),
]


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class _FakeHandle:
    def __init__(self, session_id: str = "s1", *, closed: bool = False) -> None:
        self._session_id = session_id
        self.frames: list[dict[str, Any]] = []
        self.closed = closed
        self.terminated = False

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def engine(self) -> str:
        return "claude"

    async def write(self, data: bytes) -> None:
        if self.closed:
            raise SessionClosedError("closed")
        self.frames.append(json.loads(data))

    async def close_input(self) -> None:
        self.closed = True

    async def output(self) -> AsyncIterator[bytes]:
        for chunk in ():
            yield chunk

    async def wait(self) -> int:
        return 0

    async def terminate(self) -> None:
        self.terminated = True

    def stderr_tail(self) -> str:
        return ""


def _router(clock: _Clock) -> tuple[TopicRouter, ConsoleSender, InMemorySuppressionRegistry]:
    sender = ConsoleSender()
    suppressor = InMemorySuppressionRegistry(clock=clock)
    router = TopicRouter(
        sender=sender,
        suppressor=suppressor,
        outbound=OutboundBuffer(sender, flush_interval_seconds=60),
        clock=clock,
    )
    return router, sender, suppressor


def _attach(router: TopicRouter, topic_id: str, handle: _FakeHandle) -> Session:
    session = Session(topic_id=topic_id, handle=handle, engine="claude", task_id="task-1")
    assert router.begin_spawn(topic_id)
    assert router.attach(topic_id, session)
    return session


def test_unknown_topic_is_not_a_session_topic() -> None:
    router, _, suppressor = _router(_Clock())

    result = asyncio.run(router.route_inbound("t1", "hello"))

    assert result == RouteResult.NOT_SESSION_TOPIC
    assert router.state("t1") == BindingState.IDLE
    assert not router.is_session_topic("t1")
    assert suppressor.active_keys() == []


def test_active_session_receives_user_frames() -> None:
    router, _, suppressor = _router(_Clock())
    handle = _FakeHandle()
    session = _attach(router, "t1", handle)

    result = asyncio.run(router.route_inbound("t1", "please add tests"))

    assert result == RouteResult.DELIVERED
    assert handle.frames == [
        {
            "type": "user",
            "message": {
                "role": "user",
                "content": [{"type": "text", "text": "please add tests"}],
            },
        },
    ]
    assert list(session.transcript) == [("user", "please add tests")]
    assert suppressor.active_keys() == ["t1"]
    assert router.get_session("t1") is session
    assert router.active_sessions() == [session]


def test_non_active_states_reject_inbound_but_mark_suppression() -> None:
    router, _, suppressor = _router(_Clock())

    assert router.begin_browsing("t1")
    assert asyncio.run(router.route_inbound("t1", "x")) == RouteResult.BROWSING
    assert router.is_session_topic("t1")
    assert router.begin_spawn("t1")
    assert asyncio.run(router.route_inbound("t1", "y")) == RouteResult.SPAWNING
    assert suppressor.active_keys() == ["t1"]


def test_spawn_guard_expires_stalled_spawn() -> None:
    clock = _Clock()
    router, _, _ = _router(clock)
    assert router.begin_spawn("t1")
    assert not router.begin_spawn("t1")

    clock.now += 61

    assert router.state("t1") == BindingState.IDLE
    session = Session(topic_id="t1", handle=_FakeHandle(), engine="claude")
    assert not router.attach("t1", session)
    assert router.begin_spawn("t1")


def test_close_terminates_session_and_keeps_grace_window() -> None:
    clock = _Clock()
    router, _, _ = _router(clock)
    handle = _FakeHandle()
    _attach(router, "t1", handle)

    assert asyncio.run(router.close("t1", "task finished"))
    assert not asyncio.run(router.close("t1", "again"))

    assert handle.terminated
    assert router.state("t1") == BindingState.CLOSED
    assert asyncio.run(router.route_inbound("t1", "late reply")) == RouteResult.CLOSED
    assert handle.frames == []
    assert not router.begin_spawn("t1")

    clock.now += 31

    assert router.state("t1") == BindingState.IDLE
    assert router.begin_spawn("t1")


def test_question_is_rendered_and_answered_by_number() -> None:
    router, sender, _ = _router(_Clock())
    handle = _FakeHandle()
    session = _attach(router, "t1", handle)
    question = InteractiveQuestion(
        tool_id="q1",
        question="Apply the change?",
        options=("Proceed", "Abort"),
    )

    async def _run() -> RouteResult:
        await router.deliver("t1", AssistantText(text="Thinking...\n"), session=session)
        await router.deliver("t1", question, session=session)
        return await router.route_inbound("t1", "2")

    result = asyncio.run(_run())

    assert result == RouteResult.ANSWERED
    assert [text for _, text, _ in sender.sent] == [
        "Thinking...\n",
        "Apply the change?\n1. Proceed\n2. Abort\nReply with the option number or text.",
    ]
    assert sender.buttons["t1"] == (
        ChatButton(label="Proceed", callback_data="aq:q1:0"),
        ChatButton(label="Abort", callback_data="aq:q1:1"),
    )
    assert handle.frames[-1]["message"] == {
        "role": "user",
        "content": [{"type": "tool_result", "tool_use_id": "q1", "content": "Abort"}],
    }
    assert session.pending_questions == {}


def test_question_answered_by_label_and_button() -> None:
    router, _, _ = _router(_Clock())
    handle = _FakeHandle()
    session = _attach(router, "t1", handle)
    question = InteractiveQuestion(tool_id="q1", question="Go?", options=("Yes", "No"))

    async def _run() -> tuple[RouteResult, RouteResult, RouteResult]:
        await router.deliver("t1", question, session=session)
        by_label = await router.route_inbound("t1", "yes")
        await router.deliver("t1", question, session=session)
        bad_index = await router.answer_question("t1", "q1", 5)
        by_button = await router.answer_question("t1", "q1", 1)
        return by_label, bad_index, by_button

    by_label, bad_index, by_button = asyncio.run(_run())

    assert by_label == RouteResult.ANSWERED
    assert bad_index == RouteResult.NO_PENDING_QUESTION
    assert by_button == RouteResult.ANSWERED
    answers = [frame["message"]["content"][0]["content"] for frame in handle.frames]
    assert answers == ["Yes", "No"]


def test_free_text_goes_to_session_while_question_pending() -> None:
    router, _, _ = _router(_Clock())
    handle = _FakeHandle()
    session = _attach(router, "t1", handle)
    question = InteractiveQuestion(tool_id="q1", question="Go?", options=("Yes", "No"))

    async def _run() -> RouteResult:
        await router.deliver("t1", question, session=session)
        return await router.route_inbound("t1", "explain first")

    assert asyncio.run(_run()) == RouteResult.DELIVERED
    assert "q1" in session.pending_questions


def test_closed_input_reports_write_failure() -> None:
    router, _, _ = _router(_Clock())
    _attach(router, "t1", _FakeHandle(closed=True))

    assert asyncio.run(router.route_inbound("t1", "hello")) == RouteResult.WRITE_FAILED


def test_output_from_replaced_session_is_dropped() -> None:
    router, sender, _ = _router(_Clock())
    old = _attach(router, "t1", _FakeHandle("old"))
    new = Session(topic_id="t1", handle=_FakeHandle("new"), engine="codex", task_id="task-1")

    assert router.replace_session("t1", new) is old
    assert router.replace_session("t2", new) is None

    async def _run() -> None:
        await router.deliver("t1", AssistantText(text="stale"), session=old)
        await router.deliver("t1", AssistantText(text="fresh"), session=new)
        await router.outbound.flush_all()

    asyncio.run(_run())

    assert [text for _, text, _ in sender.sent] == ["fresh"]
    assert router.get_session("t1") is new


def test_transcript_records_tools_and_results() -> None:
    router, sender, _ = _router(_Clock())
    session = _attach(router, "t1", _FakeHandle())

    async def _run() -> None:
        await router.deliver("t1", AssistantText(text="Editing\n"), session=session)
        await router.deliver("t1", ToolInvocation(tool_id="x", name="Edit", input={}))
        await router.deliver("t1", FinalResult(subtype="success", result="done"))
        await router.notify("t1", "Task finished.")

    asyncio.run(_run())

    assert list(session.transcript) == [
        ("assistant", "Editing\n"),
        ("tool", "Edit"),
        ("result", "done"),
    ]
    assert sender.sent == [
        ("t1", "Editing\n", MessageKind.SESSION_OUTPUT),
        ("t1", "Task finished.", MessageKind.NOTIFICATION),
    ]
    assert session.transcript_text(roles=("assistant",)) == "Editing\n"


def test_question_buttons_are_dropped_when_callback_data_is_too_long() -> None:
    question = InteractiveQuestion(tool_id="t" * 70, question="Go?", options=("Yes", "No"))

    assert question_buttons(question) == ()


def test_question_callback_data_parsing() -> None:
    assert parse_question_callback("aq:toolu_01:2") == ("toolu_01", 2)
    assert parse_question_callback("aq:a:b:0") == ("a:b", 0)
    assert parse_question_callback("aq:toolu_01:x") is None
    assert parse_question_callback("menu:toolu_01:1") is None
    assert parse_question_callback("aq:1") is None
