from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import allure

from agent_dispatch.chat.base import (
    ChatDeliveryError,
    ConsoleSender,
    InboundCallback,
    InboundEvent,
    InboundMessage,
    MessageKind,
)
from agent_dispatch.chat.suppression import GuardedSender, InMemorySuppressionRegistry
from agent_dispatch.sessions.inbound import NO_SESSION_REPLY, InboundRelay
from agent_dispatch.sessions.outbound import OutboundBuffer
from agent_dispatch.sessions.protocol import InteractiveQuestion
from agent_dispatch.sessions.router import RouteResult, TopicRouter
from agent_dispatch.sessions.session import Session

pytestmark = [
    allure.epic("Agent Sessions"),
    allure.feature("Inbound Replies"),
]


class _Handle:
    def __init__(self) -> None:
        self.frames: list[dict[str, Any]] = []

    @property
    def session_id(self) -> str:
        return "s1"

    @property
    def engine(self) -> str:
        return "claude"

    async def write(self, data: bytes) -> None:
        self.frames.append(json.loads(data))

    async def close_input(self) -> None:
        return None

    async def output(self) -> AsyncIterator[bytes]:
        for chunk in ():
            yield chunk

    async def wait(self) -> int:
        return 0

    async def terminate(self) -> None:
        return None

    def stderr_tail(self) -> str:
        return ""


class _Source:
    """Serves queued poll batches, then stops the relay."""

    def __init__(self, batches: list[list[InboundEvent] | Exception], stop: asyncio.Event) -> None:
        self._batches = batches
        self._stop = stop
        self.answered: list[tuple[str, str | None]] = []

    async def poll(self) -> list[InboundEvent]:
        if not self._batches:
            self._stop.set()
            return []
        batch = self._batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch

    async def answer_callback(self, callback_id: str, text: str | None = None) -> None:
        self.answered.append((callback_id, text))


def _setup(
    batches: list[list[InboundEvent] | Exception] | None = None,
) -> tuple[InboundRelay, TopicRouter, ConsoleSender, _Source, asyncio.Event]:
    console = ConsoleSender()
    suppressor = InMemorySuppressionRegistry()
    guarded = GuardedSender(console, suppressor)
    router = TopicRouter(
        sender=guarded,
        suppressor=suppressor,
        outbound=OutboundBuffer(guarded, flush_interval_seconds=60),
    )
    stop = asyncio.Event()
    source = _Source(batches or [], stop)
    relay = InboundRelay(source=source, router=router, sender=guarded, error_backoff_seconds=0.01)
    return relay, router, console, source, stop


def _attach(router: TopicRouter, topic_id: str, handle: _Handle) -> Session:
    session = Session(topic_id=topic_id, handle=handle, engine="claude", task_id="task-1")
    assert router.begin_spawn(topic_id)
    assert router.attach(topic_id, session)
    return session


def _user_texts(handle: _Handle) -> list[str]:
    return [
        block["text"]
        for frame in handle.frames
        for block in frame["message"]["content"]
        if block["type"] == "text"
    ]


def test_reply_in_session_topic_reaches_agent_without_host_reply() -> None:
    relay, router, console, _, _ = _setup()
    handle = _Handle()
    _attach(router, "42", handle)

    result = asyncio.run(relay.handle(InboundMessage(topic_id="42", text="please also add tests")))

    assert result == RouteResult.DELIVERED
    assert _user_texts(handle) == ["please also add tests"]
    assert console.sent == []


def test_reply_outside_any_session_gets_host_reply() -> None:
    relay, _, console, _, _ = _setup()

    result = asyncio.run(relay.handle(InboundMessage(topic_id="7", text="hello?")))

    assert result == RouteResult.NOT_SESSION_TOPIC
    assert console.sent == [("7", NO_SESSION_REPLY, MessageKind.AUTOMATED_REPLY)]


def test_reply_to_ended_session_is_rejected_with_notice() -> None:
    relay, router, console, _, _ = _setup()
    handle = _Handle()
    _attach(router, "42", handle)

    async def _run() -> RouteResult:
        await router.close("42", "task finished")
        return await relay.handle(InboundMessage(topic_id="42", text="one more thing"))

    result = asyncio.run(_run())

    assert result == RouteResult.CLOSED
    assert handle.frames == []
    kinds = [kind for topic_id, _, kind in console.sent if topic_id == "42"]
    assert kinds == [MessageKind.NOTIFICATION]


def test_button_press_answers_pending_question() -> None:
    relay, router, _, source, _ = _setup()
    handle = _Handle()
    session = _attach(router, "42", handle)
    question = InteractiveQuestion(
        tool_id="toolu_1",
        question="Apply the change?",
        options=("Proceed", "Abort"),
    )

    async def _run() -> tuple[RouteResult | None, RouteResult | None]:
        await router.deliver("42", question, session=session)
        first = await relay.handle(
            InboundCallback(callback_id="cb-1", topic_id="42", data="aq:toolu_1:1"),
        )
        again = await relay.handle(
            InboundCallback(callback_id="cb-2", topic_id="42", data="aq:toolu_1:0"),
        )
        return first, again

    first, again = asyncio.run(_run())

    assert first == RouteResult.ANSWERED
    assert again == RouteResult.NO_PENDING_QUESTION
    assert handle.frames[-1]["message"]["content"][0] == {
        "type": "tool_result",
        "tool_use_id": "toolu_1",
        "content": "Abort",
    }
    assert source.answered == [
        ("cb-1", "Answer sent"),
        ("cb-2", "This question was already answered"),
    ]


def test_foreign_button_press_is_only_acknowledged() -> None:
    relay, _, _, source, _ = _setup()

    result = asyncio.run(
        relay.handle(InboundCallback(callback_id="cb-9", topic_id="42", data="menu:projects")),
    )

    assert result is None
    assert source.answered == [("cb-9", None)]


def test_run_forever_keeps_polling_after_backend_errors() -> None:
    handle = _Handle()
    relay, router, _, _, stop = _setup(
        [
            ChatDeliveryError("getUpdates timed out"),
            [
                InboundMessage(topic_id="42", text="first"),
                InboundMessage(topic_id="42", text="second"),
            ],
        ],
    )
    _attach(router, "42", handle)

    async def _run() -> None:
        await asyncio.wait_for(relay.run_forever(stop), timeout=5)

    asyncio.run(_run())

    assert stop.is_set()
    assert _user_texts(handle) == ["first", "second"]
