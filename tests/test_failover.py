from __future__ import annotations

import allure
import pytest

from agent_dispatch.sessions.failover import (
    EMPTY_TRANSCRIPT_PLACEHOLDER,
    EngineFailoverController,
    FailoverAction,
    FailoverPolicy,
    build_excerpt,
    render_handoff_document,
    select_next_engine,
)
from agent_dispatch.sessions.protocol import RateLimitSignal

pytestmark = [
    allure.epic("Agent Sessions"),
    allure.feature("Engine Failover"),
]

PRIORITY = ("claude", "codex", "gemini")


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _signal(retry_after: float = 5.0) -> RateLimitSignal:
    return RateLimitSignal(retry_after_seconds=retry_after)


def test_three_signals_in_window_produce_exactly_one_handoff() -> None:
    clock = _Clock()
    controller = EngineFailoverController(clock=clock)
    actions = []
    for _ in range(6):
        decision = controller.on_rate_limit(
            "task-1",
            _signal(),
            engine="claude",
            engine_priority=PRIORITY,
            transcript="[assistant] edited src/app.py",
        )
        actions.append(decision.action)
        clock.now += 1

    assert actions.count(FailoverAction.HANDOFF) == 1
    assert actions[:3] == [FailoverAction.IGNORE, FailoverAction.IGNORE, FailoverAction.HANDOFF]
    assert controller.attempted_engines("task-1") == ["claude", "codex"]


def test_handoff_record_carries_bounded_excerpt() -> None:
    clock = _Clock()
    controller = EngineFailoverController(FailoverPolicy(excerpt_max_chars=50), clock=clock)
    transcript = "\n".join(f"[assistant] step {index}" for index in range(100))

    decision = None
    for _ in range(3):
        decision = controller.on_rate_limit(
            "task-1",
            _signal(),
            engine="claude",
            engine_priority=PRIORITY,
            transcript=transcript,
        )

    assert decision is not None and decision.handoff is not None
    record = decision.handoff
    assert record.engine_from == "claude"
    assert record.engine_to == "codex"
    assert 0 < len(record.transcript_excerpt) <= 50
    assert record.transcript_excerpt.endswith("step 99")
    assert record.to_event_details()["excerpt_chars"] == len(record.transcript_excerpt)


def test_signals_outside_window_do_not_accumulate() -> None:
    clock = _Clock()
    controller = EngineFailoverController(clock=clock)
    actions = []
    for _ in range(5):
        decision = controller.on_rate_limit(
            "task-1",
            _signal(),
            engine="claude",
            engine_priority=PRIORITY,
            transcript="",
        )
        actions.append(decision.action)
        clock.now += 31

    assert set(actions) == {FailoverAction.IGNORE}


def test_long_retry_after_hands_off_immediately() -> None:
    controller = EngineFailoverController(clock=_Clock())

    decision = controller.on_rate_limit(
        "task-1",
        _signal(retry_after=600),
        engine="codex",
        engine_priority=PRIORITY,
        transcript="",
    )

    assert decision.action == FailoverAction.HANDOFF
    assert decision.handoff is not None
    assert decision.handoff.engine_to == "gemini"
    assert decision.handoff.transcript_excerpt == EMPTY_TRANSCRIPT_PLACEHOLDER
    assert decision.reason == "retry_after=600s"


def test_rate_limit_right_after_handoff_escalates() -> None:
    clock = _Clock()
    controller = EngineFailoverController(clock=clock)
    controller.on_rate_limit(
        "task-1",
        _signal(retry_after=600),
        engine="claude",
        engine_priority=PRIORITY,
        transcript="",
    )
    controller.complete_handoff("task-1")
    clock.now += 10

    decision = controller.on_rate_limit(
        "task-1",
        _signal(),
        engine="codex",
        engine_priority=PRIORITY,
        transcript="",
    )

    assert decision.action == FailoverAction.ESCALATE
    assert decision.reason is not None and "right after handoff" in decision.reason
    follow_up = controller.on_rate_limit(
        "task-1",
        _signal(),
        engine="codex",
        engine_priority=PRIORITY,
        transcript="",
    )
    assert follow_up.action == FailoverAction.IGNORE


def test_running_out_of_engines_escalates() -> None:
    clock = _Clock()
    controller = EngineFailoverController(clock=clock)
    priority = ("claude", "codex")
    first = controller.on_rate_limit(
        "task-1",
        _signal(retry_after=600),
        engine="claude",
        engine_priority=priority,
        transcript="",
    )
    controller.complete_handoff("task-1")
    clock.now += 120

    second = controller.on_rate_limit(
        "task-1",
        _signal(retry_after=600),
        engine="codex",
        engine_priority=priority,
        transcript="",
    )

    assert first.action == FailoverAction.HANDOFF
    assert second.action == FailoverAction.ESCALATE
    assert second.reason == "no untried engine left"


def test_hop_limit_escalates() -> None:
    controller = EngineFailoverController(FailoverPolicy(max_hops=0), clock=_Clock())

    decision = controller.on_rate_limit(
        "task-1",
        _signal(retry_after=600),
        engine="claude",
        engine_priority=PRIORITY,
        transcript="",
    )

    assert decision.action == FailoverAction.ESCALATE


def test_signals_during_handoff_are_ignored() -> None:
    controller = EngineFailoverController(clock=_Clock())
    controller.on_rate_limit(
        "task-1",
        _signal(retry_after=600),
        engine="claude",
        engine_priority=PRIORITY,
        transcript="",
    )

    decision = controller.on_rate_limit(
        "task-1",
        _signal(retry_after=600),
        engine="claude",
        engine_priority=PRIORITY,
        transcript="",
    )

    assert decision.action == FailoverAction.IGNORE


def test_forget_resets_session_state() -> None:
    controller = EngineFailoverController(clock=_Clock())
    controller.on_rate_limit(
        "task-1",
        _signal(retry_after=600),
        engine="claude",
        engine_priority=PRIORITY,
        transcript="",
    )

    controller.forget("task-1")

    assert controller.attempted_engines("task-1") == []


def test_rate_limited_exit_hands_off_on_first_occurrence() -> None:
    clock = _Clock()
    controller = EngineFailoverController(clock=clock)

    first = controller.on_rate_limited_exit(
        "task-1",
        engine="claude",
        engine_priority=PRIORITY,
        transcript="[assistant] half done",
        reason="exit code 1",
    )
    controller.complete_handoff("task-1")
    clock.now += 5
    second = controller.on_rate_limited_exit(
        "task-1",
        engine="codex",
        engine_priority=PRIORITY,
        transcript="",
        reason="exit code 1",
    )
    again = controller.on_rate_limited_exit(
        "task-1",
        engine="codex",
        engine_priority=PRIORITY,
        transcript="",
        reason="exit code 1",
    )

    assert first.action == FailoverAction.HANDOFF
    assert first.handoff is not None
    assert (first.handoff.engine_from, first.handoff.engine_to) == ("claude", "codex")
    assert first.handoff.reason == "exit code 1"
    assert second.action == FailoverAction.ESCALATE
    assert again.action == FailoverAction.ESCALATE


def test_rate_limited_exit_after_quiet_period_moves_to_next_engine() -> None:
    clock = _Clock()
    controller = EngineFailoverController(FailoverPolicy(immediate_window_seconds=30), clock=clock)
    for engine in ("claude", "codex"):
        decision = controller.on_rate_limited_exit(
            "task-1",
            engine=engine,
            engine_priority=PRIORITY,
            transcript="",
            reason="quota",
        )
        assert decision.action == FailoverAction.HANDOFF
        controller.complete_handoff("task-1")
        clock.now += 120

    last = controller.on_rate_limited_exit(
        "task-1",
        engine="gemini",
        engine_priority=PRIORITY,
        transcript="",
        reason="quota",
    )

    assert last.action == FailoverAction.ESCALATE
    assert last.reason == "no untried engine left"
    assert controller.attempted_engines("task-1") == ["claude", "codex", "gemini"]


@pytest.mark.parametrize(
    ("failed", "attempted", "expected"),
    [
        ("claude", ["claude"], "codex"),
        ("gemini", ["gemini"], "claude"),
        ("codex", ["claude", "codex"], "gemini"),
        ("codex", ["claude", "codex", "gemini"], None),
        ("unknown", [], "claude"),
    ],
)
def test_select_next_engine_wraps_and_skips_attempted(
    failed: str,
    attempted: list[str],
    expected: str | None,
) -> None:
    assert select_next_engine(PRIORITY, failed, attempted) == expected


def test_build_excerpt_is_never_empty_or_too_long() -> None:
    assert build_excerpt("   ", 100) == EMPTY_TRANSCRIPT_PLACEHOLDER
    assert build_excerpt("short", 100) == "short"
    tail = build_excerpt("a" * 500 + "END", 20)
    assert len(tail) == 20
    assert tail.startswith("…")
    assert tail.endswith("END")


def test_handoff_document_contains_task_and_excerpt() -> None:
    controller = EngineFailoverController(clock=_Clock())
    decision = controller.on_rate_limit(
        "task-1",
        _signal(retry_after=600),
        engine="claude",
        engine_priority=PRIORITY,
        transcript="[assistant] renamed the module",
    )
    assert decision.handoff is not None

    document = render_handoff_document(decision.handoff, task_description="Rename the module")

    assert "claude agent" in document
    assert "Rename the module" in document
    assert "[assistant] renamed the module" in document
