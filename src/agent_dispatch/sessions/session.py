"""In-memory state of one live agent session."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field

from agent_dispatch.sessions.process import SessionHandle
from agent_dispatch.sessions.protocol import StreamProtocolParser

DEFAULT_TRANSCRIPT_TAIL = 200


@dataclass(slots=True)
class PendingQuestion:
    tool_id: str
    question: str
    options: tuple[str, ...]


@dataclass(slots=True, eq=False)
class Session:
    """Live session bound to a conversation topic."""

    topic_id: str
    handle: SessionHandle
    engine: str
    task_id: str | None = None
    parser: StreamProtocolParser = field(default_factory=StreamProtocolParser)
    spawned_at: float = field(default_factory=time.monotonic)
    transcript: deque[tuple[str, str]] = field(
        default_factory=lambda: deque(maxlen=DEFAULT_TRANSCRIPT_TAIL),
    )
    pending_questions: dict[str, PendingQuestion] = field(default_factory=dict)

    @property
    def session_id(self) -> str:
        return self.handle.session_id

    def record(self, role: str, text: str) -> None:
        if text:
            self.transcript.append((role, text))

    def transcript_text(self, *, roles: tuple[str, ...] | None = None) -> str:
        return "\n".join(
            f"[{role}] {text}" if roles is None else text
            for role, text in self.transcript
            if roles is None or role in roles
        )

    def latest_question(self) -> PendingQuestion | None:
        if not self.pending_questions:
            return None
        return next(reversed(self.pending_questions.values()))
