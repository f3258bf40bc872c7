"""Telegram Bot API sender, forum topic provider and update poller."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import httpx

from agent_dispatch.chat.base import (
    ChatButton,
    ChatDeliveryError,
    InboundCallback,
    InboundEvent,
    InboundMessage,
    MessageKind,
)
from agent_dispatch.chat.chunking import split_message

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.telegram.org"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_POLL_TIMEOUT_SECONDS = 25
TELEGRAM_MESSAGE_LIMIT = 4096
# Long polls are held open by the server; the HTTP timeout must outlast them.
POLL_REQUEST_MARGIN_SECONDS = 10.0


class TelegramApiError(ChatDeliveryError):
    """Telegram rejected a request or could not be reached."""


class TelegramSender:
    """Sends messages into forum topics of one Telegram supergroup.

    Also polls ``getUpdates`` for replies posted in those topics and for
    presses of the inline buttons attached to agent questions.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        bot_token: str,
        chat_id: str,
        api_base_url: str = DEFAULT_API_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        poll_timeout_seconds: int = DEFAULT_POLL_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not bot_token:
            raise ValueError("Telegram bot token is required.")
        self.chat_id = chat_id
        self.poll_timeout_seconds = poll_timeout_seconds
        self._update_offset: int | None = None
        self._client = httpx.AsyncClient(
            base_url=f"{api_base_url.rstrip('/')}/bot{bot_token}",
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport or httpx.AsyncHTTPTransport(retries=max_retries),
        )

    async def send(
        self,
        topic_id: str,
        text: str,
        *,
        kind: MessageKind = MessageKind.SESSION_OUTPUT,
        buttons: Sequence[ChatButton] = (),
    ) -> bool:
        """Send text, splitting it at the Telegram message limit.

        Buttons go under the last chunk, one per row.
        """

        delivered = True
        chunks = split_message(text, TELEGRAM_MESSAGE_LIMIT)
        for index, chunk in enumerate(chunks):
            payload: dict[str, Any] = {"chat_id": self.chat_id, "text": chunk}
            if topic_id.isdigit():
                payload["message_thread_id"] = int(topic_id)
            if buttons and index == len(chunks) - 1:
                payload["reply_markup"] = {
                    "inline_keyboard": [
                        [{"text": button.label, "callback_data": button.callback_data}]
                        for button in buttons
                    ],
                }
            try:
                await self._call("sendMessage", payload)
            except TelegramApiError as exc:
                logger.warning(
                    "Failed to send %s message to topic %s: %s",
                    kind.value,
                    topic_id,
                    exc,
                )
                delivered = False
        return delivered

    async def create_topic(self, name: str) -> str:
        result = await self._call("createForumTopic", {"chat_id": self.chat_id, "name": name[:128]})
        thread_id = result.get("message_thread_id") if isinstance(result, dict) else None
        if thread_id is None:
            raise TelegramApiError(f"createForumTopic returned no thread id: {result!r}")
        return str(thread_id)

    async def poll(self) -> list[InboundEvent]:
        """Long-poll ``getUpdates`` once and acknowledge everything received."""

        payload: dict[str, Any] = {
            "timeout": self.poll_timeout_seconds,
            "allowed_updates": ["message", "callback_query"],
        }
        if self._update_offset is not None:
            payload["offset"] = self._update_offset
        updates = await self._call(
            "getUpdates",
            payload,
            timeout=self.poll_timeout_seconds + POLL_REQUEST_MARGIN_SECONDS,
        )

        events: list[InboundEvent] = []
        for update in updates if isinstance(updates, list) else []:
            if not isinstance(update, dict):
                continue
            update_id = update.get("update_id")
            if isinstance(update_id, int):
                self._update_offset = max(self._update_offset or 0, update_id + 1)
            event = self._parse_update(update)
            if event is not None:
                events.append(event)
        return events

    async def answer_callback(self, callback_id: str, text: str | None = None) -> None:
        payload: dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            payload["text"] = text
        try:
            await self._call("answerCallbackQuery", payload)
        except TelegramApiError as exc:
            logger.warning("Failed to answer callback %s: %s", callback_id, exc)

    def _parse_update(self, update: dict[str, Any]) -> InboundEvent | None:
        message = update.get("message")
        if isinstance(message, dict):
            if not self._in_our_chat(message) or _from_bot(message):
                return None
            text = message.get("text")
            thread_id = message.get("message_thread_id")
            if not isinstance(text, str) or not text.strip() or not isinstance(thread_id, int):
                return None
            author = message.get("from")
            username = author.get("username") if isinstance(author, dict) else None
            return InboundMessage(
                topic_id=str(thread_id),
                text=text,
                author=username if isinstance(username, str) else None,
            )

        callback = update.get("callback_query")
        if isinstance(callback, dict):
            origin = callback.get("message")
            data = callback.get("data")
            callback_id = callback.get("id")
            if not isinstance(origin, dict) or not self._in_our_chat(origin):
                return None
            thread_id = origin.get("message_thread_id")
            if not isinstance(data, str) or callback_id is None or not isinstance(thread_id, int):
                return None
            return InboundCallback(callback_id=str(callback_id), topic_id=str(thread_id), data=data)
        return None

    def _in_our_chat(self, message: dict[str, Any]) -> bool:
        chat = message.get("chat")
        return isinstance(chat, dict) and str(chat.get("id")) == str(self.chat_id)

    async def _call(
        self,
        method: str,
        payload: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> Any:
        options: dict[str, Any] = {} if timeout is None else {"timeout": timeout}
        try:
            response = await self._client.post(f"/{method}", json=payload, **options)
        except httpx.TimeoutException as exc:
            raise TelegramApiError(f"{method} timed out") from exc
        except httpx.HTTPError as exc:
            raise TelegramApiError(f"{method} failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise TelegramApiError(f"{method} returned HTTP {response.status_code}") from exc
        if not response.is_success or not body.get("ok"):
            description = body.get("description") or f"HTTP {response.status_code}"
            raise TelegramApiError(f"{method} rejected: {description}")
        return body.get("result")

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> TelegramSender:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()


def _from_bot(message: dict[str, Any]) -> bool:
    author = message.get("from")
    return isinstance(author, dict) and bool(author.get("is_bot"))
