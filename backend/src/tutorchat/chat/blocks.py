"""
Helpers for the typed blocks of a path node doc.

A node doc is `{"summary": ..., "blocks": [{"id", "type", ...}, ...]}`. These
helpers turn one block into plain text for prompts and retrieval docs.
"""

from typing import Any, Optional

from tutorchat.models.db import PathNode

LIST_BLOCK_TYPES = frozenset(
    {
        "objectives",
        "prerequisites",
        "key_takeaways",
        "common_mistakes",
        "misconceptions",
        "edge_cases",
        "heuristics",
        "checklist",
        "connections",
    }
)

TITLED_MD_BLOCK_TYPES = frozenset({"callout", "intuition", "mental_model", "why_it_matters"})

CAPTION_BLOCK_TYPES = frozenset({"figure", "video", "table"})


def as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def _join(*parts: str) -> str:
    return " ".join(p for p in (as_text(x) for x in parts) if p).strip()


def block_text(block: Optional[dict[str, Any]]) -> tuple[str, str]:
    """
    Extract (block_type, text) from a block.

    Unknown block types yield empty text.
    """
    if not isinstance(block, dict):
        return "", ""
    block_type = as_text(block.get("type")).lower()

    if block_type == "heading":
        return block_type, as_text(block.get("text"))
    if block_type == "paragraph":
        return block_type, as_text(block.get("md"))
    if block_type == "code":
        return block_type, as_text(block.get("code"))
    if block_type in CAPTION_BLOCK_TYPES:
        return block_type, as_text(block.get("caption"))
    if block_type == "diagram":
        return block_type, _join(block.get("caption"), block.get("source"))
    if block_type == "quick_check":
        return block_type, _join(block.get("prompt_md"), block.get("answer_md"))
    if block_type in TITLED_MD_BLOCK_TYPES:
        return block_type, _join(block.get("title"), block.get("md"))
    if block_type in LIST_BLOCK_TYPES:
        items = block.get("items_md") or []
        return block_type, _join(block.get("title"), *[as_text(i) for i in items])
    if block_type == "steps":
        items = block.get("steps_md") or []
        return block_type, _join(block.get("title"), *[as_text(i) for i in items])
    if block_type == "glossary":
        parts = [block.get("title")]
        for term in block.get("terms") or []:
            if isinstance(term, dict):
                parts.extend([term.get("term"), term.get("definition_md")])
        return block_type, _join(*parts)
    if block_type == "faq":
        parts = [block.get("title")]
        for qa in block.get("qas") or []:
            if isinstance(qa, dict):
                parts.extend([qa.get("question_md"), qa.get("answer_md")])
        return block_type, _join(*parts)
    return block_type, ""


def block_title(block: Optional[dict[str, Any]]) -> str:
    """Display title of a block: title, then heading text, then label."""
    if not isinstance(block, dict):
        return ""
    for key in ("title", "text", "label"):
        value = as_text(block.get(key))
        if value:
            return value
    return ""


def doc_blocks(doc: Optional[dict[str, Any]]) -> list[dict[str, Any]]:
    """Blocks of a node doc; non-dict entries are dropped."""
    if not isinstance(doc, dict):
        return []
    return [b for b in (doc.get("blocks") or []) if isinstance(b, dict)]


def block_id(block: dict[str, Any], index: int) -> str:
    """Block id, falling back to its position."""
    return as_text(block.get("id")) or str(index)


def find_block(
    doc: Optional[dict[str, Any]], wanted_id: str
) -> tuple[int, Optional[dict[str, Any]]]:
    """Locate a block by id. Returns (-1, None) when missing."""
    wanted_id = (wanted_id or "").strip()
    if not wanted_id:
        return -1, None
    for index, block in enumerate(doc_blocks(doc)):
        if block_id(block, index) == wanted_id:
            return index, block
    return -1, None


def build_block_doc_body(
    node: Optional[PathNode], blk_id: str, block: dict[str, Any]
) -> tuple[str, str, str, str]:
    """
    Render a block as a retrieval doc.

    Returns:
        (text, contextual_text, block_type, title); text is empty when the
        block carries no readable content
    """
    block_type, body = block_text(block)
    title = block_title(block)
    if not body:
        return "", "", block_type, title

    unit_title = (node.title or "").strip() if node is not None else ""
    unit_index = node.index if node is not None else 0
    lines = [
        f"Unit {unit_index}: {unit_title or 'Untitled unit'}",
        f"Block ID: {(blk_id or '').strip() or '(unknown)'}",
    ]
    if block_type:
        lines.append(f"Block Type: {block_type}")
    if title:
        lines.append(f"Title: {title}")
    text = ("\n".join(lines) + "\n\n" + body).strip()
    return text, "Unit block (retrieval context):\n" + text, block_type, title


def parse_block_id(text: str) -> str:
    """Read the `Block ID:` header line of a rendered block doc."""
    for line in (text or "").splitlines():
        stripped = line.strip()
        lower = stripped.lower()
        for prefix in ("block id:", "block_id:"):
            if lower.startswith(prefix):
                return stripped[len(prefix):].strip()
    return ""


def parse_header_value(text: str, header: str) -> str:
    """Value of a `Header:` line in a rendered doc, or ""."""
    prefix = header.lower().rstrip(":") + ":"
    for line in (text or "").splitlines():
        stripped = line.strip()
        if stripped.lower().startswith(prefix):
            return stripped[len(prefix):].strip()
    return ""
