"""Relay of human replies from the chat backend into live sessions.

The relay long-polls an :class:`InboundSource`. Text posted in a topic goes to
the topic's session through :meth:`TopicRouter.route_inbound`; a press of a
question button answers that question by option index. Every routed message
is followed by the host's own automated reply, which the guarded sender drops
for topics owned by a session flow.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from agent_dispatch.chat.base import (
    ChatDeliveryError,
    ChatSender,
    InboundCallback,
    InboundEvent,
    InboundSource,
    MessageKind,
)
from agent_dispatch.sessions.router import RouteResult, TopicRouter, parse_question_callback

logger = logging.getLogger(__name__)

DEFAULT_ERROR_BACKOFF_SECONDS = 5.0
NO_SESSION_REPLY = "No agent session is running in this topic."

_REJECTION_NOTICES = {
    RouteResult.BROWSING: "Pick a project first; the session has not started yet.",
    RouteResult.SPAWNING: "The agent is still starting. Send the message again in a moment.",
    RouteResult.CLOSED: "This session has ended; the message was not delivered.",
    RouteResult.WRITE_FAILED: "The agent stopped accepting input; the message was not delivered.",
}

_CALLBACK_ANSWERS = {
    RouteResult.ANSWERED: "Answer sent",
    RouteResult.NO_PENDING_QUESTION: "This question was already answered",
    RouteResult.CLOSED: "This session has ended",
    RouteResult.WRITE_FAILED: "The agent stopped accepting input",
}


class InboundRelay:
    """Feeds chat replies and button presses into the topic router."""

    def __init__(
        self,
        *,
        source: InboundSource,
        router: TopicRouter,
        sender: ChatSender,
        error_backoff_seconds: float = DEFAULT_ERROR_BACKOFF_SECONDS,
    ) -> None:
        self.source = source
        self.router = router
        self.sender = sender
        self.error_backoff_seconds = error_backoff_seconds

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                events = await self.source.poll()
            except ChatDeliveryError as error:
                logger.warning("Polling chat updates failed: %s", error)
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(stop.wait(), timeout=self.error_backoff_seconds)
                continue
            for event in events:
                try:
                    await self.handle(event)
                except ChatDeliveryError:
                    logger.exception("Handling inbound %s failed", type(event).__name__)

    async def handle(self, event: InboundEvent) -> RouteResult | None:
        """Route one event; None for a button press this relay does not own."""

        if isinstance(event, InboundCallback):
            return await self._handle_callback(event)

        result = await self.router.route_inbound(event.topic_id, event.text)
        logger.info("Inbound message in topic %s: %s", event.topic_id, result.value)
        notice = _REJECTION_NOTICES.get(result)
        if notice is not None:
            await self.sender.send(event.topic_id, notice, kind=MessageKind.NOTIFICATION)
        await self.sender.send(event.topic_id, NO_SESSION_REPLY, kind=MessageKind.AUTOMATED_REPLY)
        return result

    async def _handle_callback(self, event: InboundCallback) -> RouteResult | None:
        parsed = parse_question_callback(event.data)
        if parsed is None:
            logger.debug("Ignoring callback %r in topic %s", event.data, event.topic_id)
            await self.source.answer_callback(event.callback_id)
            return None
        tool_id, option_index = parsed
        result = await self.router.answer_question(event.topic_id, tool_id, option_index)
        logger.info(
            "Question %s in topic %s answered with option %d: %s",
            tool_id,
            event.topic_id,
            option_index,
            result.value,
        )
        await self.source.answer_callback(event.callback_id, _CALLBACK_ANSWERS.get(result))
        return result
