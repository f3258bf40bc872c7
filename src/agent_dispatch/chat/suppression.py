"""Suppression of duplicate automated replies.

When a human reply is routed into an agent session, the hosting chat bot may
still produce its own automatic reply to the same message. The router marks the
conversation with :meth:`SuppressionRegistry.suppress_next`; the lowest-level
sender consumes the mark right before transmitting an automated reply and
drops it. Each mark swallows at most one reply and expires after its TTL.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from typing import Protocol

from agent_dispatch.chat.base import ChatButton, ChatSender, MessageKind

logger = logging.getLogger(__name__)

DEFAULT_SUPPRESSION_TTL_SECONDS = 60.0


class SuppressionRegistry(Protocol):
    def suppress_next(self, key: str, ttl_seconds: float | None = None) -> None: ...

    def consume_if_present(self, key: str) -> bool: ...


class InMemorySuppressionRegistry:
    """Process-local registry with an atomic check-and-consume."""

    def __init__(
        self,
        *,
        default_ttl_seconds: float = DEFAULT_SUPPRESSION_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._expiry_by_key: dict[str, float] = {}

    def suppress_next(self, key: str, ttl_seconds: float | None = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            now = self._clock()
            self._evict_expired(now)
            self._expiry_by_key[key] = now + ttl

    def consume_if_present(self, key: str) -> bool:
        with self._lock:
            expiry = self._expiry_by_key.pop(key, None)
            if expiry is None:
                return False
            if self._clock() >= expiry:
                logger.info("Suppression for %s expired before the reply was sent", key)
                return False
            return True

    def active_keys(self) -> list[str]:
        with self._lock:
            self._evict_expired(self._clock())
            return sorted(self._expiry_by_key)

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, expiry in self._expiry_by_key.items() if expiry <= now]
        for key in expired:
            del self._expiry_by_key[key]


class GuardedSender:
    """Sender wrapper that drops automated replies for suppressed topics."""

    def __init__(self, inner: ChatSender, registry: SuppressionRegistry) -> None:
        self._inner = inner
        self._registry = registry

    async def send(
        self,
        topic_id: str,
        text: str,
        *,
        kind: MessageKind = MessageKind.SESSION_OUTPUT,
        buttons: Sequence[ChatButton] = (),
    ) -> bool:
        if kind == MessageKind.AUTOMATED_REPLY and self._registry.consume_if_present(topic_id):
            logger.info("Suppressed automated reply in topic %s", topic_id)
            return False
        return await self._inner.send(topic_id, text, kind=kind, buttons=buttons)
