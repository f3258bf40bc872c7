"""Engine failover on sustained rate limiting.

Rate-limit signals are counted per session in a sliding window. Crossing the
threshold, or a single signal asking to back off longer than the configured
limit, hands the session over to the next engine in the machine's priority
list together with a bounded transcript excerpt. A replacement engine that is
rate-limited again right after the handoff, or running out of engines,
escalates to a terminal failure instead of cycling.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from agent_dispatch.sessions.protocol import RateLimitSignal
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

EMPTY_TRANSCRIPT_PLACEHOLDER = "(no transcript captured before the handoff)"


@dataclass(frozen=True, slots=True)
class FailoverPolicy:
    window_seconds: float = 60.0
    signal_threshold: int = 3
    retry_after_threshold_seconds: float = 300.0
    max_hops: int | None = None
    excerpt_max_chars: int = 2000
    immediate_window_seconds: float = 30.0


class FailoverAction(str, Enum):
    IGNORE = "ignore"
    HANDOFF = "handoff"
    ESCALATE = "escalate"


@dataclass(frozen=True, slots=True)
class HandoffRecord:
    """Informational record of one engine switch."""

    engine_from: str
    engine_to: str
    reason: str
    transcript_excerpt: str
    created_at: datetime

    def to_event_details(self) -> dict[str, object]:
        return {
            "engine_from": self.engine_from,
            "engine_to": self.engine_to,
            "reason": self.reason,
            "excerpt_chars": len(self.transcript_excerpt),
        }


@dataclass(frozen=True, slots=True)
class FailoverDecision:
    action: FailoverAction
    handoff: HandoffRecord | None = None
    reason: str | None = None


@dataclass(slots=True)
class _SessionFailoverState:
    signals: deque[float] = field(default_factory=deque)
    attempted: list[str] = field(default_factory=list)
    in_progress: bool = False
    escalated: bool = False
    hops: int = 0
    last_handoff_at: float | None = None


class EngineFailoverController:
    """Per-session rate-limit accounting and handoff decisions."""

    def __init__(
        self,
        policy: FailoverPolicy | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy or FailoverPolicy()
        self._clock = clock
        self._states: dict[str, _SessionFailoverState] = {}

    def on_rate_limit(
        self,
        key: str,
        signal: RateLimitSignal,
        *,
        engine: str,
        engine_priority: Sequence[str],
        transcript: str,
    ) -> FailoverDecision:
        state = self._states.setdefault(key, _SessionFailoverState())
        if not state.attempted:
            state.attempted.append(engine)
        if state.in_progress or state.escalated:
            return FailoverDecision(FailoverAction.IGNORE)

        now = self._clock()
        if (
            state.last_handoff_at is not None
            and now - state.last_handoff_at <= self.policy.immediate_window_seconds
        ):
            return self._escalate(key, state, f"{engine} rate-limited right after handoff")

        state.signals.append(now)
        while state.signals and now - state.signals[0] > self.policy.window_seconds:
            state.signals.popleft()

        long_backoff = signal.retry_after_seconds >= self.policy.retry_after_threshold_seconds
        if len(state.signals) < self.policy.signal_threshold and not long_backoff:
            return FailoverDecision(FailoverAction.IGNORE)

        reason = (
            f"retry_after={signal.retry_after_seconds:.0f}s"
            if long_backoff
            else f"{len(state.signals)} rate-limit signals within {self.policy.window_seconds:.0f}s"
        )
        return self._hand_off(
            key,
            state,
            engine=engine,
            engine_priority=engine_priority,
            transcript=transcript,
            reason=reason,
        )

    def on_rate_limited_exit(
        self,
        key: str,
        *,
        engine: str,
        engine_priority: Sequence[str],
        transcript: str,
        reason: str,
    ) -> FailoverDecision:
        """Decide for an engine that exited because it was rate limited.

        The process is already gone, so there is no window to wait in: the
        session hands off right away, or escalates when the exit follows a
        handoff too closely or no engine is left.
        """

        state = self._states.setdefault(key, _SessionFailoverState())
        if not state.attempted:
            state.attempted.append(engine)
        if state.escalated:
            return FailoverDecision(FailoverAction.ESCALATE, reason="failover already escalated")
        if (
            state.last_handoff_at is not None
            and self._clock() - state.last_handoff_at <= self.policy.immediate_window_seconds
        ):
            return self._escalate(key, state, f"{engine} rate-limited right after handoff")
        return self._hand_off(
            key,
            state,
            engine=engine,
            engine_priority=engine_priority,
            transcript=transcript,
            reason=reason,
        )

    def _hand_off(  # noqa: PLR0913
        self,
        key: str,
        state: _SessionFailoverState,
        *,
        engine: str,
        engine_priority: Sequence[str],
        transcript: str,
        reason: str,
    ) -> FailoverDecision:
        max_hops = self.policy.max_hops
        if max_hops is not None and state.hops >= max_hops:
            return self._escalate(key, state, f"failover hop limit {max_hops} reached")

        next_engine = select_next_engine(engine_priority, engine, state.attempted)
        if next_engine is None:
            return self._escalate(key, state, "no untried engine left")

        state.in_progress = True
        state.attempted.append(next_engine)
        state.hops += 1
        record = HandoffRecord(
            engine_from=engine,
            engine_to=next_engine,
            reason=reason,
            transcript_excerpt=build_excerpt(transcript, self.policy.excerpt_max_chars),
            created_at=utc_now(),
        )
        logger.info("Session %s hands off %s -> %s (%s)", key, engine, next_engine, reason)
        return FailoverDecision(FailoverAction.HANDOFF, handoff=record, reason=reason)

    def complete_handoff(self, key: str) -> None:
        """Mark the replacement engine as running."""

        state = self._states.get(key)
        if state is None:
            return
        state.in_progress = False
        state.signals.clear()
        state.last_handoff_at = self._clock()

    def attempted_engines(self, key: str) -> list[str]:
        state = self._states.get(key)
        return list(state.attempted) if state is not None else []

    def forget(self, key: str) -> None:
        self._states.pop(key, None)

    def _escalate(self, key: str, state: _SessionFailoverState, reason: str) -> FailoverDecision:
        state.escalated = True
        state.in_progress = False
        logger.warning("Session %s failover escalated: %s", key, reason)
        return FailoverDecision(FailoverAction.ESCALATE, reason=reason)


def select_next_engine(
    engine_priority: Sequence[str],
    failed_engine: str,
    attempted: Sequence[str],
) -> str | None:
    """Next engine after the failed one in priority order, wrapping, skipping tried ones."""

    if not engine_priority:
        return None
    start = engine_priority.index(failed_engine) if failed_engine in engine_priority else -1
    count = len(engine_priority)
    for offset in range(1, count + 1):
        candidate = engine_priority[(start + offset) % count]
        if candidate != failed_engine and candidate not in attempted:
            return candidate
    return None


def build_excerpt(transcript: str, max_chars: int) -> str:
    """Tail of the transcript, never empty and never longer than ``max_chars``."""

    text = transcript.strip()
    if not text:
        return EMPTY_TRANSCRIPT_PLACEHOLDER[:max_chars]
    if len(text) <= max_chars:
        return text
    return "…" + text[-(max_chars - 1) :]


def render_handoff_document(record: HandoffRecord, *, task_description: str) -> str:
    """Prompt for the replacement engine."""

    return (
        f"You are taking over a coding task from the {record.engine_from} agent, "
        f"which was stopped because of rate limiting ({record.reason}).\n"
        "\n"
        "Original task:\n"
        f"{task_description}\n"
        "\n"
        "Recent session transcript:\n"
        f"{record.transcript_excerpt}\n"
        "\n"
        "Inspect the working tree to see what was already done, then continue "
        "from where the previous agent stopped.\n"
    )
