"""Binding of live sessions to conversation topics.

Each topic has one :class:`SessionBinding` moving through
``idle -> browsing -> spawning -> active -> closed -> idle``. Only an active
binding routes inbound text to a session; every other state rejects it with an
explicit :class:`RouteResult`. A spawning binding expires after the spawn guard
so a stalled spawn never wedges the topic, and a closed binding keeps
swallowing late output for the grace window before it returns to idle.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from agent_dispatch.chat.base import ChatButton, ChatSender, MessageKind
from agent_dispatch.chat.suppression import SuppressionRegistry
from agent_dispatch.sessions.outbound import OutboundBuffer
from agent_dispatch.sessions.process import SessionClosedError
from agent_dispatch.sessions.protocol import (
    AssistantText,
    FinalResult,
    InteractiveQuestion,
    StreamMessage,
    ToolInvocation,
    ToolResult,
    encode_question_answer,
    encode_user_message,
)
from agent_dispatch.sessions.session import PendingQuestion, Session

logger = logging.getLogger(__name__)

DEFAULT_SPAWN_GUARD_SECONDS = 60.0
DEFAULT_CLOSE_GRACE_SECONDS = 30.0
QUESTION_CALLBACK_PREFIX = "aq"
# Telegram rejects callback_data longer than this.
CALLBACK_DATA_MAX_BYTES = 64


class BindingState(str, Enum):
    IDLE = "idle"
    BROWSING = "browsing"
    SPAWNING = "spawning"
    ACTIVE = "active"
    CLOSED = "closed"


class RouteResult(str, Enum):
    """Outcome of routing one inbound human message."""

    DELIVERED = "delivered"
    ANSWERED = "answered"
    NOT_SESSION_TOPIC = "not_session_topic"
    BROWSING = "browsing"
    SPAWNING = "spawning"
    CLOSED = "closed"
    NO_PENDING_QUESTION = "no_pending_question"
    WRITE_FAILED = "write_failed"


@dataclass(slots=True)
class SessionBinding:
    state: BindingState
    entered_at: float
    session: Session | None = None
    close_reason: str | None = None


class TopicRouter:
    """Routes between conversation topics and live agent sessions."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        sender: ChatSender,
        suppressor: SuppressionRegistry,
        outbound: OutboundBuffer | None = None,
        spawn_guard_seconds: float = DEFAULT_SPAWN_GUARD_SECONDS,
        close_grace_seconds: float = DEFAULT_CLOSE_GRACE_SECONDS,
        suppression_ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sender = sender
        self._suppressor = suppressor
        self.outbound = outbound or OutboundBuffer(sender)
        self.spawn_guard_seconds = spawn_guard_seconds
        self.close_grace_seconds = close_grace_seconds
        self.suppression_ttl_seconds = suppression_ttl_seconds
        self._clock = clock
        self._bindings: dict[str, SessionBinding] = {}

    def state(self, topic_id: str) -> BindingState:
        binding = self._binding(topic_id)
        return binding.state if binding is not None else BindingState.IDLE

    def get_session(self, topic_id: str) -> Session | None:
        binding = self._binding(topic_id)
        if binding is None or binding.state != BindingState.ACTIVE:
            return None
        return binding.session

    def active_sessions(self) -> list[Session]:
        return [
            binding.session
            for topic_id in list(self._bindings)
            if (binding := self._binding(topic_id)) is not None
            and binding.state == BindingState.ACTIVE
            and binding.session is not None
        ]

    def is_session_topic(self, topic_id: str) -> bool:
        """True while the topic belongs to a session flow and must not reach other handlers."""

        return self.state(topic_id) != BindingState.IDLE

    def begin_browsing(self, topic_id: str) -> bool:
        state = self.state(topic_id)
        if state == BindingState.BROWSING:
            return True
        if state != BindingState.IDLE:
            return False
        self._bindings[topic_id] = SessionBinding(BindingState.BROWSING, self._clock())
        return True

    def begin_spawn(self, topic_id: str) -> bool:
        """Reserve the topic for a session that is being started."""

        state = self.state(topic_id)
        if state not in {BindingState.IDLE, BindingState.BROWSING}:
            logger.info("Topic %s cannot start a session while %s", topic_id, state.value)
            return False
        self._bindings[topic_id] = SessionBinding(BindingState.SPAWNING, self._clock())
        return True

    def abort_spawn(self, topic_id: str) -> None:
        if self.state(topic_id) == BindingState.SPAWNING:
            self._bindings.pop(topic_id, None)

    def attach(self, topic_id: str, session: Session) -> bool:
        """Make a freshly spawned session routable.

        Returns False when the spawn reservation expired or was closed; the
        caller then owns the session and must terminate it.
        """

        binding = self._binding(topic_id)
        if binding is None or binding.state != BindingState.SPAWNING:
            logger.warning("Topic %s is no longer spawning, refusing session attach", topic_id)
            return False
        self._bindings[topic_id] = SessionBinding(
            BindingState.ACTIVE,
            self._clock(),
            session=session,
        )
        return True

    def replace_session(self, topic_id: str, session: Session) -> Session | None:
        """Swap the session of an active binding, returning the previous one."""

        binding = self._binding(topic_id)
        if binding is None or binding.state != BindingState.ACTIVE:
            return None
        previous = binding.session
        binding.session = session
        return previous

    async def route_inbound(self, topic_id: str, text: str) -> RouteResult:
        """Deliver a human message to the session bound to the topic."""

        binding = self._binding(topic_id)
        if binding is None:
            return RouteResult.NOT_SESSION_TOPIC

        self._suppressor.suppress_next(topic_id, self.suppression_ttl_seconds)
        if binding.state == BindingState.BROWSING:
            return RouteResult.BROWSING
        if binding.state == BindingState.SPAWNING:
            return RouteResult.SPAWNING
        if binding.state == BindingState.CLOSED or binding.session is None:
            return RouteResult.CLOSED

        session = binding.session
        question = session.latest_question()
        choice = match_option(question, text) if question is not None else None
        if question is not None and choice is not None:
            return await self._answer(session, question, choice)

        try:
            await session.handle.write(encode_user_message(text))
        except SessionClosedError:
            logger.warning(
                "Session %s in topic %s stopped accepting input",
                session.session_id,
                topic_id,
            )
            return RouteResult.WRITE_FAILED
        session.record("user", text)
        return RouteResult.DELIVERED

    async def answer_question(
        self,
        topic_id: str,
        tool_id: str,
        option_index: int,
    ) -> RouteResult:
        """Answer a pending question by option index (button callbacks)."""

        session = self.get_session(topic_id)
        if session is None:
            return RouteResult.CLOSED
        question = session.pending_questions.get(tool_id)
        if question is None or not 0 <= option_index < len(question.options):
            return RouteResult.NO_PENDING_QUESTION
        self._suppressor.suppress_next(topic_id, self.suppression_ttl_seconds)
        return await self._answer(session, question, question.options[option_index])

    async def deliver(
        self,
        topic_id: str,
        message: StreamMessage,
        *,
        session: Session | None = None,
    ) -> None:
        """Handle one classified message produced by a session."""

        binding = self._binding(topic_id)
        if binding is None or binding.state != BindingState.ACTIVE or binding.session is None:
            return
        if session is not None and binding.session is not session:
            return
        current = binding.session

        if isinstance(message, AssistantText):
            current.record("assistant", message.text)
            await self.outbound.append(topic_id, message.text)
        elif isinstance(message, InteractiveQuestion):
            current.pending_questions[message.tool_id] = PendingQuestion(
                tool_id=message.tool_id,
                question=message.question,
                options=message.options,
            )
            current.record("question", message.question)
            await self.outbound.flush(topic_id)
            await self._sender.send(
                topic_id,
                render_question(message),
                kind=MessageKind.SESSION_OUTPUT,
                buttons=question_buttons(message),
            )
        elif isinstance(message, ToolInvocation):
            current.record("tool", message.name)
        elif isinstance(message, ToolResult):
            current.record("tool_result", message.content)
        elif isinstance(message, FinalResult):
            if message.result:
                current.record("result", message.result)
            await self.outbound.flush(topic_id)

    async def notify(self, topic_id: str, text: str) -> None:
        """Send a status notification after any buffered session output."""

        await self.outbound.flush(topic_id)
        await self._sender.send(topic_id, text, kind=MessageKind.NOTIFICATION)

    async def close(self, topic_id: str, reason: str) -> bool:
        """Close the topic's session: stop routing, terminate, flush buffered text."""

        binding = self._binding(topic_id)
        if binding is None or binding.state not in {BindingState.ACTIVE, BindingState.SPAWNING}:
            return False
        session = binding.session
        self._bindings[topic_id] = SessionBinding(
            BindingState.CLOSED,
            self._clock(),
            close_reason=reason,
        )
        if session is not None:
            await session.handle.terminate()
        await self.outbound.flush(topic_id)
        logger.info("Closed session topic %s (%s)", topic_id, reason)
        return True

    def _binding(self, topic_id: str) -> SessionBinding | None:
        binding = self._bindings.get(topic_id)
        if binding is None:
            return None
        age = self._clock() - binding.entered_at
        if binding.state == BindingState.SPAWNING and age > self.spawn_guard_seconds:
            logger.warning("Spawn guard for topic %s expired after %.0fs", topic_id, age)
            del self._bindings[topic_id]
            return None
        if binding.state == BindingState.CLOSED and age > self.close_grace_seconds:
            del self._bindings[topic_id]
            return None
        return binding

    async def _answer(
        self,
        session: Session,
        question: PendingQuestion,
        answer: str,
    ) -> RouteResult:
        try:
            await session.handle.write(encode_question_answer(question.tool_id, answer))
        except SessionClosedError:
            return RouteResult.WRITE_FAILED
        session.pending_questions.pop(question.tool_id, None)
        session.record("answer", answer)
        return RouteResult.ANSWERED


def match_option(question: PendingQuestion, text: str) -> str | None:
    """Resolve a reply to one of the question's options by number or label."""

    reply = text.strip()
    if reply.isdigit():
        index = int(reply) - 1
        if 0 <= index < len(question.options):
            return question.options[index]
        return None
    lowered = reply.casefold()
    for option in question.options:
        if option.casefold() == lowered:
            return option
    return None


def render_question(question: InteractiveQuestion) -> str:
    lines = []
    if question.header:
        lines.append(question.header)
    lines.append(question.question)
    lines.extend(f"{index}. {option}" for index, option in enumerate(question.options, start=1))
    lines.append("Reply with the option number or text.")
    return "\n".join(lines)


def encode_question_callback(tool_id: str, option_index: int) -> str | None:
    """Callback data for one option button, None when it would not fit."""

    data = f"{QUESTION_CALLBACK_PREFIX}:{tool_id}:{option_index}"
    return data if len(data.encode("utf-8")) <= CALLBACK_DATA_MAX_BYTES else None


def parse_question_callback(data: str) -> tuple[str, int] | None:
    prefix, _, rest = data.partition(":")
    tool_id, _, index = rest.rpartition(":")
    if prefix != QUESTION_CALLBACK_PREFIX or not tool_id or not index.isdigit():
        return None
    return tool_id, int(index)


def question_buttons(question: InteractiveQuestion) -> tuple[ChatButton, ...]:
    """One button per option; none at all if any option's data is too long."""

    buttons = []
    for index, option in enumerate(question.options):
        data = encode_question_callback(question.tool_id, index)
        if data is None:
            return ()
        buttons.append(ChatButton(label=option, callback_data=data))
    return tuple(buttons)
