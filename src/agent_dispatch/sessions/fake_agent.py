"""Local stream-json agent for session and executor integration tests.

Speaks the same NDJSON protocol as real agent CLIs in stream-json mode, with
behaviour selected by flags instead of a model.
"""

from __future__ import annotations

import argparse
import json
import subprocess
import sys
import time
from pathlib import Path
from typing import Any


def main(argv: list[str] | None = None) -> int:
    """Run one scripted agent session on stdin/stdout."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt", default=None)
    parser.add_argument("--rate-limits", type=int, default=0)
    parser.add_argument("--retry-after", type=float, default=5.0)
    parser.add_argument("--hang", action="store_true", help="Block until killed after rate limits.")
    parser.add_argument("--ask", action="store_true")
    parser.add_argument("--interactive", action="store_true")
    parser.add_argument("--noise", action="store_true", help="Emit non-protocol lines.")
    parser.add_argument(
        "--multi-turn",
        action="store_true",
        help="Answer every later user frame with its own result until stdin closes.",
    )
    parser.add_argument("--stderr", default=None, help="Line written to stderr before exiting.")
    parser.add_argument("--spawn-child", default=None, metavar="PIDFILE")
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    prompt = args.prompt if args.prompt is not None else _read_user_text() or ""
    if args.spawn_child:
        child = subprocess.Popen(["sleep", "300"])  # noqa: S603, S607
        Path(args.spawn_child).write_text(str(child.pid), encoding="utf-8")
    _emit({"type": "system", "subtype": "init", "tools": []})
    if args.noise:
        sys.stdout.write("warming up...\n")
        sys.stdout.write('{"type": "assistant", "text": \n')
        sys.stdout.flush()

    for _ in range(args.rate_limits):
        _emit({"type": "rate_limit_event", "retry_after": args.retry_after})
    if args.hang:
        while sys.stdin.readline():
            pass
        return 0

    first_line = prompt.strip().splitlines()[0] if prompt.strip() else "(empty prompt)"
    _emit(
        {
            "type": "assistant",
            "message": {"content": [{"type": "text", "text": f"Working on: {first_line}\n"}]},
        },
    )

    if args.ask:
        _emit(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {
                            "type": "tool_use",
                            "id": "toolu_fake_1",
                            "name": "AskUserQuestion",
                            "input": {
                                "questions": [
                                    {
                                        "question": "Apply the change?",
                                        "options": [{"label": "Proceed"}, {"label": "Abort"}],
                                    },
                                ],
                            },
                        },
                    ],
                },
            },
        )
        answer = _read_tool_answer()
        _emit({"type": "assistant", "text": f"Answer: {answer}\n"})

    if args.interactive:
        while True:
            text = _read_user_text()
            if text is None or text.strip() == "/done":
                break
            _emit({"type": "assistant", "text": f"Echo: {text}\n"})

    started = time.monotonic()
    _emit(
        {
            "type": "result",
            "subtype": "success" if args.exit_code == 0 else "error",
            "result": "done",
            "total_cost_usd": 0.0,
            "duration_ms": int((time.monotonic() - started) * 1000),
        },
    )
    if args.multi_turn:
        while (text := _read_user_text()) is not None:
            _emit({"type": "assistant", "text": f"Echo: {text}\n"})
            _emit({"type": "result", "subtype": "success", "result": "done"})
    if args.stderr:
        sys.stderr.write(args.stderr + "\n")
        sys.stderr.flush()
    return args.exit_code


def _emit(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


def _read_frame() -> dict[str, Any] | None:
    line = sys.stdin.readline()
    if not line:
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return {"type": "user", "message": {"content": [{"type": "text", "text": line.strip()}]}}
    return payload if isinstance(payload, dict) else None


def _content_blocks(frame: dict[str, Any]) -> list[dict[str, Any]]:
    message = frame.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    return [block for block in content or [] if isinstance(block, dict)]


def _read_user_text() -> str | None:
    frame = _read_frame()
    if frame is None:
        return None
    texts = [
        str(block.get("text", ""))
        for block in _content_blocks(frame)
        if block.get("type") == "text"
    ]
    return "\n".join(texts)


def _read_tool_answer() -> str:
    frame = _read_frame()
    if frame is None:
        return ""
    for block in _content_blocks(frame):
        if block.get("type") == "tool_result":
            return str(block.get("content", ""))
        if block.get("type") == "text":
            return str(block.get("text", ""))
    return ""


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
