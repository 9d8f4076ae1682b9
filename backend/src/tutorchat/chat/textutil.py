"""Text helpers shared by the planner, retriever and maintainer."""

import re
from typing import Iterable, Sequence

from tutorchat.models.db import ChatMessage

CHARS_PER_TOKEN = 4

_WS_RE = re.compile(r"\s+")


def estimate_tokens(text: str) -> int:
    """Rough token estimate (about 4 characters per token)."""
    if not text:
        return 0
    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


def trim_to_tokens(text: str, max_tokens: int) -> str:
    """
    Trim text to a token budget.

    Cuts on the last line break or space inside the budget when one exists
    and marks the cut with an ellipsis.
    """
    text = (text or "").strip()
    if max_tokens <= 0:
        return ""
    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    boundary = max(cut.rfind("\n"), cut.rfind(" "))
    if boundary > max_chars // 2:
        cut = cut[:boundary]
    return cut.rstrip() + " …"


def clamp_text(text: str, max_chars: int) -> str:
    """Collapse whitespace and clamp to max_chars."""
    text = collapse_whitespace(text)
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 1)].rstrip() + "…"


def collapse_whitespace(text: str) -> str:
    return _WS_RE.sub(" ", text or "").strip()


def chunk_by_chars(text: str, max_chars: int) -> list[str]:
    """
    Split text into chunks of at most max_chars.

    Prefers paragraph, then line, then word boundaries. Empty input yields
    no chunks.
    """
    text = (text or "").strip()
    if not text:
        return []
    if max_chars <= 0 or len(text) <= max_chars:
        return [text]

    chunks: list[str] = []
    rest = text
    while rest:
        if len(rest) <= max_chars:
            chunks.append(rest)
            break
        window = rest[:max_chars]
        cut = -1
        for sep in ("\n\n", "\n", " "):
            idx = window.rfind(sep)
            if idx > max_chars // 3:
                cut = idx
                break
        if cut <= 0:
            cut = max_chars
        piece = rest[:cut].strip()
        if piece:
            chunks.append(piece)
        rest = rest[cut:].strip()
    return chunks


def format_recent(messages: Sequence[ChatMessage], keep: int) -> str:
    """
    Render the tail of a conversation as "role: content" lines.

    Messages without content (streaming placeholders) are skipped.
    """
    rows = sorted((m for m in messages if m is not None), key=lambda m: m.seq)
    if keep > 0 and len(rows) > keep:
        rows = rows[-keep:]
    lines = []
    for message in rows:
        content = (message.content or "").strip()
        if not content:
            continue
        lines.append(f"{message.role}: {content}")
    return "\n".join(lines)


def dedupe_preserve_order(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        value = (value or "").strip()
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def contains_any(text: str, needles: Iterable[str]) -> bool:
    return any(needle in text for needle in needles)
