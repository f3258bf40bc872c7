"""Per-topic accumulation of streamed assistant text."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from agent_dispatch.chat.base import ChatSender, MessageKind
from agent_dispatch.chat.chunking import DEFAULT_MAX_MESSAGE_CHARS, split_message

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL_SECONDS = 1.5


class OutboundBuffer:
    """Batches text per topic and sends it on a timer or when it gets large.

    Text is forwarded verbatim: the concatenation of everything sent to a topic
    equals the concatenation of everything appended, and no single message is
    longer than ``max_chars``.
    """

    def __init__(
        self,
        sender: ChatSender,
        *,
        flush_interval_seconds: float = DEFAULT_FLUSH_INTERVAL_SECONDS,
        max_chars: int = DEFAULT_MAX_MESSAGE_CHARS,
    ) -> None:
        self._sender = sender
        self.flush_interval_seconds = flush_interval_seconds
        self.max_chars = max_chars
        self._pending: dict[str, str] = {}
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def pending_text(self, topic_id: str) -> str:
        return self._pending.get(topic_id, "")

    async def append(self, topic_id: str, text: str) -> None:
        if not text:
            return
        async with self._lock(topic_id):
            pending = self._pending.get(topic_id, "") + text
            if len(pending) < self.max_chars:
                self._pending[topic_id] = pending
            else:
                chunks = split_message(pending, self.max_chars)
                remainder = chunks.pop() if len(chunks[-1]) < self.max_chars else ""
                self._pending[topic_id] = remainder
                for chunk in chunks:
                    await self._send(topic_id, chunk)
        if self._pending.get(topic_id):
            self._schedule(topic_id)

    async def flush(self, topic_id: str) -> None:
        timer = self._timers.pop(topic_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        async with self._lock(topic_id):
            pending = self._pending.pop(topic_id, "")
            for chunk in split_message(pending, self.max_chars):
                await self._send(topic_id, chunk)

    async def flush_all(self) -> None:
        for topic_id in list(self._pending):
            await self.flush(topic_id)

    def discard(self, topic_id: str) -> None:
        timer = self._timers.pop(topic_id, None)
        if timer is not None:
            timer.cancel()
        self._pending.pop(topic_id, None)

    def _schedule(self, topic_id: str) -> None:
        timer = self._timers.get(topic_id)
        if timer is not None and not timer.done():
            return
        self._timers[topic_id] = asyncio.create_task(self._flush_later(topic_id))

    async def _flush_later(self, topic_id: str) -> None:
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.sleep(self.flush_interval_seconds)
            await self.flush(topic_id)

    async def _send(self, topic_id: str, text: str) -> None:
        delivered = await self._sender.send(topic_id, text, kind=MessageKind.SESSION_OUTPUT)
        if not delivered:
            logger.warning("Outbound chunk to topic %s was not delivered", topic_id)

    def _lock(self, topic_id: str) -> asyncio.Lock:
        lock = self._locks.get(topic_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[topic_id] = lock
        return lock
