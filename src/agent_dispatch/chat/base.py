"""Chat transport interfaces."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, TypeAlias

logger = logging.getLogger(__name__)


class ChatDeliveryError(RuntimeError):
    """Chat backend could not deliver a message or create a topic."""


class MessageKind(str, Enum):
    """Origin of an outbound chat message."""

    SESSION_OUTPUT = "session_output"
    NOTIFICATION = "notification"
    AUTOMATED_REPLY = "automated_reply"


@dataclass(frozen=True, slots=True)
class ChatButton:
    """Inline button; pressing it comes back as an :class:`InboundCallback`."""

    label: str
    callback_data: str


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """Human text posted into a topic."""

    topic_id: str
    text: str
    author: str | None = None


@dataclass(frozen=True, slots=True)
class InboundCallback:
    """Press of an inline button under a message in a topic."""

    callback_id: str
    topic_id: str
    data: str


InboundEvent: TypeAlias = InboundMessage | InboundCallback


class ChatSender(Protocol):
    """Delivers text into a conversation topic."""

    async def send(
        self,
        topic_id: str,
        text: str,
        *,
        kind: MessageKind = MessageKind.SESSION_OUTPUT,
        buttons: Sequence[ChatButton] = (),
    ) -> bool: ...


class TopicProvider(Protocol):
    """Creates conversation topics for task sessions."""

    async def create_topic(self, name: str) -> str: ...


class InboundSource(Protocol):
    """Yields human messages and button presses from the chat backend."""

    async def poll(self) -> list[InboundEvent]: ...

    async def answer_callback(self, callback_id: str, text: str | None = None) -> None: ...


class ConsoleSender:
    """Chat backend that writes messages to the log.

    Useful for local runs without a bot token; also acts as a topic provider
    handing out sequential topic ids.
    """

    def __init__(self) -> None:
        self._topic_ids = itertools.count(1)
        self.sent: list[tuple[str, str, MessageKind]] = []
        self.buttons: dict[str, tuple[ChatButton, ...]] = {}

    async def send(
        self,
        topic_id: str,
        text: str,
        *,
        kind: MessageKind = MessageKind.SESSION_OUTPUT,
        buttons: Sequence[ChatButton] = (),
    ) -> bool:
        self.sent.append((topic_id, text, kind))
        if buttons:
            self.buttons[topic_id] = tuple(buttons)
        logger.info("[topic %s] %s", topic_id, text)
        return True

    async def create_topic(self, name: str) -> str:
        topic_id = f"local-{next(self._topic_ids)}"
        logger.info("Created topic %s: %s", topic_id, name)
        return topic_id
