"""Split long text into chat-sized messages."""

from __future__ import annotations

DEFAULT_MAX_MESSAGE_CHARS = 3500


def split_message(text: str, max_chars: int = DEFAULT_MAX_MESSAGE_CHARS) -> list[str]:
    """Split text into chunks of at most ``max_chars`` characters.

    Chunks break after the last newline inside the window when there is one,
    otherwise exactly at the limit. Joining the chunks gives back ``text``.
    """

    if max_chars <= 0:
        raise ValueError("max_chars must be positive")

    chunks: list[str] = []
    remaining = text
    while len(remaining) > max_chars:
        window = remaining[:max_chars]
        cut = window.rfind("\n") + 1
        if cut <= 0:
            cut = max_chars
        chunks.append(remaining[:cut])
        remaining = remaining[cut:]
    if remaining:
        chunks.append(remaining)
    return chunks
