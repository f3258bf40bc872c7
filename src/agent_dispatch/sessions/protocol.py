"""Incremental parser and encoders for the agent NDJSON streaming protocol.

Agent CLIs in stream-json mode write one JSON object per line on stdout and
read user frames on stdin. Codex (``exec --json``) and Gemini
(``--output-format stream-json``) use their own event vocabularies on the same
line framing and decode into the same message types. Output arrives in
arbitrary byte chunks, so the parser keeps the bytes after the last newline
until the next chunk completes the line. Decoding is fail-closed: unknown
``type`` tags become :class:`Ignorable` and malformed lines are dropped with a
log record.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeAlias

logger = logging.getLogger(__name__)

ASK_USER_TOOL_NAME = "AskUserQuestion"
DEFAULT_QUESTION = "Choose an option:"
DEFAULT_OPTIONS: tuple[str, ...] = ("Yes", "No")

_NUMBERED_OPTION_RE = re.compile(r"\d+[.)]\s*([^\d\n]+)")
_SLASH_OPTIONS_RE = re.compile(r"\(([^)]+/[^)]+)\)")


@dataclass(frozen=True, slots=True)
class AssistantText:
    text: str


@dataclass(frozen=True, slots=True)
class ToolInvocation:
    tool_id: str
    name: str
    input: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ToolResult:
    tool_id: str
    content: str
    is_error: bool = False


@dataclass(frozen=True, slots=True)
class InteractiveQuestion:
    """Agent asks the human to pick one of a fixed set of options."""

    tool_id: str
    question: str
    options: tuple[str, ...]
    header: str | None = None


@dataclass(frozen=True, slots=True)
class FinalResult:
    subtype: str
    result: str | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None
    is_error: bool = False
    session_id: str | None = None


@dataclass(frozen=True, slots=True)
class RateLimitSignal:
    retry_after_seconds: float


@dataclass(frozen=True, slots=True)
class Ignorable:
    """Recognised but irrelevant line (system init, hooks, user echo, unknown tags)."""

    tag: str


StreamMessage: TypeAlias = (
    AssistantText
    | ToolInvocation
    | ToolResult
    | InteractiveQuestion
    | FinalResult
    | RateLimitSignal
    | Ignorable
)


class StreamProtocolParser:
    """Reassembles byte chunks into lines and classifies each complete line.

    The sequence of messages produced for a stream does not depend on how the
    stream was split into chunks.
    """

    def __init__(self) -> None:
        self._pending = bytearray()
        self.noise_lines = 0

    @property
    def pending_bytes(self) -> int:
        return len(self._pending)

    def feed(self, chunk: bytes) -> list[StreamMessage]:
        """Append a chunk and return messages for every line it completed."""

        if not chunk:
            return []
        self._pending.extend(chunk)
        last_newline = self._pending.rfind(b"\n")
        if last_newline < 0:
            return []

        complete = bytes(self._pending[: last_newline + 1])
        del self._pending[: last_newline + 1]

        messages: list[StreamMessage] = []
        for raw_line in complete.split(b"\n"):
            messages.extend(self._decode(raw_line))
        return messages

    def finish(self) -> list[StreamMessage]:
        """Classify a trailing line that was never newline-terminated."""

        if not self._pending:
            return []
        remainder = bytes(self._pending)
        self._pending.clear()
        return self._decode(remainder)

    def _decode(self, raw_line: bytes) -> list[StreamMessage]:
        line = raw_line.decode("utf-8", errors="replace")
        if not line.strip():
            return []
        messages = decode_line(line)
        if messages is None:
            self.noise_lines += 1
            return []
        return messages


def decode_line(line: str) -> list[StreamMessage] | None:
    """Classify one protocol line.

    Returns None for protocol noise (non-JSON output, truncated objects,
    JSON values that are not objects).
    """

    stripped = line.strip()
    if not stripped.startswith("{"):
        logger.debug("Skipping non-protocol output line: %.120s", stripped)
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        logger.warning("Skipping malformed protocol line: %.120s", stripped)
        return None
    if not isinstance(payload, dict):
        return None

    tag = payload.get("type")
    handler = _HANDLERS.get(tag) if isinstance(tag, str) else None
    if handler is None:
        return [Ignorable(tag=str(tag) if tag is not None else "untyped")]
    return handler(payload)


def parse_question_options(question: str) -> tuple[str, ...]:
    """Extract answer options from free-form question text.

    Numbered lists win over parenthesised ``a/b`` lists; without either the
    question is treated as a yes/no prompt.
    """

    numbered = [match.strip() for match in _NUMBERED_OPTION_RE.findall(question)]
    numbered = [option for option in numbered if option]
    if len(numbered) >= 2:
        return tuple(numbered)

    slash_match = _SLASH_OPTIONS_RE.search(question)
    if slash_match is not None:
        options = [part.strip() for part in slash_match.group(1).split("/")]
        options = [option for option in options if option]
        if len(options) >= 2:
            return tuple(options)

    return DEFAULT_OPTIONS


def encode_user_message(text: str) -> bytes:
    """Frame a human reply as a stream-json user message."""

    frame = {
        "type": "user",
        "message": {"role": "user", "content": [{"type": "text", "text": text}]},
    }
    return _encode_frame(frame)


def encode_question_answer(tool_id: str, answer: str) -> bytes:
    """Frame the selected option as the result of the question tool call."""

    frame = {
        "type": "user",
        "message": {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": tool_id, "content": answer}],
        },
    }
    return _encode_frame(frame)


def _encode_frame(frame: dict[str, Any]) -> bytes:
    return (json.dumps(frame, ensure_ascii=False) + "\n").encode("utf-8")


def _decode_assistant(payload: dict[str, Any]) -> list[StreamMessage]:
    text = payload.get("text")
    if isinstance(text, str):
        return [AssistantText(text=text)] if text else []

    message = payload.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str):
        return [AssistantText(text=content)] if content else []
    if not isinstance(content, list):
        return [Ignorable(tag="assistant")]

    messages: list[StreamMessage] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            block_text = block.get("text")
            if isinstance(block_text, str) and block_text:
                messages.append(AssistantText(text=block_text))
        elif block_type == "tool_use":
            messages.extend(_decode_tool_use(block))
    return messages


def _decode_tool_use(block: dict[str, Any]) -> list[StreamMessage]:
    tool_id = str(block.get("id") or "")
    name = str(block.get("name") or "")
    tool_input = block.get("input")
    if not isinstance(tool_input, dict):
        tool_input = {}
    if name != ASK_USER_TOOL_NAME:
        return [ToolInvocation(tool_id=tool_id, name=name, input=tool_input)]

    questions = tool_input.get("questions")
    if not isinstance(questions, list) or not questions:
        question = tool_input.get("question")
        text = question if isinstance(question, str) and question else DEFAULT_QUESTION
        return [
            InteractiveQuestion(
                tool_id=tool_id,
                question=text,
                options=parse_question_options(text),
            ),
        ]

    messages: list[StreamMessage] = []
    for entry in questions:
        if not isinstance(entry, dict):
            continue
        question = entry.get("question")
        text = question if isinstance(question, str) and question else DEFAULT_QUESTION
        labels = [
            str(option.get("label"))
            for option in entry.get("options") or []
            if isinstance(option, dict) and option.get("label")
        ]
        options = tuple(labels) if len(labels) >= 2 else parse_question_options(text)
        header = entry.get("header")
        messages.append(
            InteractiveQuestion(
                tool_id=tool_id,
                question=text,
                options=options,
                header=header if isinstance(header, str) else None,
            ),
        )
    return messages


def _decode_user(payload: dict[str, Any]) -> list[StreamMessage]:
    message = payload.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return [Ignorable(tag="user")]

    results: list[StreamMessage] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "tool_result":
            continue
        results.append(
            ToolResult(
                tool_id=str(block.get("tool_use_id") or ""),
                content=_flatten_tool_content(block.get("content")),
                is_error=bool(block.get("is_error", False)),
            ),
        )
    return results or [Ignorable(tag="user")]


def _flatten_tool_content(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            str(item.get("text"))
            for item in content
            if isinstance(item, dict) and item.get("type") == "text" and item.get("text")
        ]
        return "\n".join(parts)
    return ""


def _decode_result(payload: dict[str, Any]) -> list[StreamMessage]:
    # Gemini reports ``status`` where Claude reports ``subtype``.
    subtype = payload.get("subtype") or payload.get("status")
    result = payload.get("result")
    session_id = payload.get("session_id")
    stats = payload.get("stats")
    duration_ms = payload.get("duration_ms")
    if duration_ms is None and isinstance(stats, dict):
        duration_ms = stats.get("duration_ms")
    return [
        FinalResult(
            subtype=subtype if isinstance(subtype, str) and subtype else "done",
            result=result if isinstance(result, str) else None,
            cost_usd=_optional_number(payload.get("total_cost_usd")),
            duration_ms=_optional_int(duration_ms),
            is_error=bool(payload.get("is_error", False)) or subtype == "error",
            session_id=session_id if isinstance(session_id, str) else None,
        ),
    ]


def _decode_rate_limit(payload: dict[str, Any]) -> list[StreamMessage]:
    retry_after = _optional_number(payload.get("retry_after"))
    return [RateLimitSignal(retry_after_seconds=retry_after or 0.0)]


def _decode_message(payload: dict[str, Any]) -> list[StreamMessage]:
    """Gemini ``message`` events; assistant content may arrive as deltas."""

    if payload.get("role") != "assistant":
        return [Ignorable(tag="message")]
    content = payload.get("content")
    if isinstance(content, str):
        return [AssistantText(text=content)] if content else []
    return [Ignorable(tag="message")]


def _decode_gemini_tool_use(payload: dict[str, Any]) -> list[StreamMessage]:
    parameters = payload.get("parameters")
    return [
        ToolInvocation(
            tool_id=str(payload.get("tool_id") or ""),
            name=str(payload.get("tool_name") or ""),
            input=parameters if isinstance(parameters, dict) else {},
        ),
    ]


def _decode_gemini_tool_result(payload: dict[str, Any]) -> list[StreamMessage]:
    output = payload.get("output")
    error = payload.get("error")
    if not isinstance(output, str) and isinstance(error, dict):
        output = error.get("message")
    return [
        ToolResult(
            tool_id=str(payload.get("tool_id") or ""),
            content=output if isinstance(output, str) else "",
            is_error=payload.get("status") == "error",
        ),
    ]


def _decode_codex_item(payload: dict[str, Any]) -> list[StreamMessage]:
    """Codex ``item.completed``: agent messages become text, commands become tool calls."""

    item = payload.get("item")
    if not isinstance(item, dict):
        return [Ignorable(tag="item.completed")]
    item_type = item.get("type")
    item_id = str(item.get("id") or "")
    if item_type == "agent_message":
        text = item.get("text")
        return [AssistantText(text=text)] if isinstance(text, str) and text else []
    if item_type == "command_execution":
        exit_code = item.get("exit_code")
        output = item.get("aggregated_output")
        return [
            ToolInvocation(
                tool_id=item_id,
                name="command_execution",
                input={"command": str(item.get("command") or "")},
            ),
            ToolResult(
                tool_id=item_id,
                content=output if isinstance(output, str) else "",
                is_error=isinstance(exit_code, int) and exit_code != 0,
            ),
        ]
    if item_type in {"file_change", "mcp_tool_call", "web_search"}:
        return [ToolInvocation(tool_id=item_id, name=str(item_type), input={})]
    return [Ignorable(tag=f"item.{item_type}")]


def _decode_codex_turn_completed(payload: dict[str, Any]) -> list[StreamMessage]:
    return [FinalResult(subtype="success")]


def _decode_codex_turn_failed(payload: dict[str, Any]) -> list[StreamMessage]:
    error = payload.get("error")
    message = error.get("message") if isinstance(error, dict) else None
    return [
        FinalResult(
            subtype="error",
            result=message if isinstance(message, str) else None,
            is_error=True,
        ),
    ]


def _decode_error(payload: dict[str, Any]) -> list[StreamMessage]:
    logger.warning("Agent reported an error: %.200s", payload.get("message"))
    return [Ignorable(tag="error")]


def _optional_number(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


def _optional_int(value: object) -> int | None:
    number = _optional_number(value)
    return int(number) if number is not None else None


_HANDLERS: dict[str, Callable[[dict[str, Any]], list[StreamMessage]]] = {
    "assistant": _decode_assistant,
    "user": _decode_user,
    "result": _decode_result,
    "rate_limit_event": _decode_rate_limit,
    "rate_limit": _decode_rate_limit,
    "message": _decode_message,
    "tool_use": _decode_gemini_tool_use,
    "tool_result": _decode_gemini_tool_result,
    "item.completed": _decode_codex_item,
    "turn.completed": _decode_codex_turn_completed,
    "turn.failed": _decode_codex_turn_failed,
    "error": _decode_error,
}
