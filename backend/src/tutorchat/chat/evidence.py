"""
Evidence sources, citation markers and verbatim quote checks.

An evidence source is a labeled passage (unit block, retrieval doc, material
chunk, concept graph) that the answer may cite with `[[source:ID]]` markers
and quote verbatim.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from tutorchat.chat import prompts
from tutorchat.chat.blocks import parse_block_id, parse_header_value
from tutorchat.chat.textutil import clamp_text, estimate_tokens, trim_to_tokens
from tutorchat.config import settings
from tutorchat.exceptions import ChatEngineError
from tutorchat.llm.base import LLMClient
from tutorchat.models.db import ChatDoc, DocType

logger = logging.getLogger(__name__)

MATERIAL_CHUNK = "material_chunk"

CITATION_RE = re.compile(r"\[\[source:([^\]]+)\]\]")
QUOTE_RE = re.compile(r"[\"“”]([^\"“”]{6,})[\"“”]")

# Lower rank is offered first to the selector and the fallback
_TYPE_RANK = {
    DocType.PATH_UNIT_BLOCK.value: 1,
    "lesson_index": 2,
    DocType.PATH_OVERVIEW.value: 3,
    DocType.PATH_CONCEPTS.value: 4,
    MATERIAL_CHUNK: 5,
    DocType.PATH_MATERIALS.value: 6,
    DocType.MESSAGE_CHUNK.value: 7,
    DocType.MEMORY.value: 7,
    DocType.SUMMARY.value: 7,
}


@dataclass
class EvidenceSource:
    """A passage the answer may cite or quote."""

    id: str
    type: str
    title: str
    text: str
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def locator(self) -> str:
        return str(self.meta.get("locator") or "").strip()


@dataclass
class EvidenceCitation:
    """A resolved `[[source:ID]]` marker, persisted in message metadata."""

    source_id: str
    source_type: str
    title: str
    locator: str = ""
    quote: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = {
            "source_id": self.source_id,
            "source_type": self.source_type,
            "title": self.title,
            "locator": self.locator,
        }
        if self.quote:
            data["quote"] = self.quote
        return data


def evidence_from_chat_doc(doc: Optional[ChatDoc]) -> Optional[EvidenceSource]:
    """Build an evidence source from a retrieval doc; None when it has no text."""
    if doc is None or doc.id is None:
        return None
    text = (doc.text or "").strip() or (doc.contextual_text or "").strip()
    if not text:
        return None

    doc_type = (doc.doc_type or "").strip()
    title = ""
    meta: dict[str, Any] = {}
    if doc_type == DocType.PATH_UNIT_BLOCK.value:
        blk_id = parse_block_id(text)
        if blk_id:
            meta["locator"] = f"block:{blk_id}"
        title = parse_header_value(text, "Title")
    if doc.source_id is not None:
        meta["source_id"] = str(doc.source_id)
    return EvidenceSource(
        id=f"doc:{doc.id}",
        type=doc_type,
        title=title or doc_type,
        text=text,
        meta=meta,
    )


def render_evidence_sources(sources: Sequence[EvidenceSource], max_tokens: int) -> str:
    """
    Render sources with `[source_id=...]` headers, trimming the last one that fits.

    Args:
        sources: Sources in display order
        max_tokens: Budget for the whole rendering (0 for no limit)
    """
    parts: list[str] = []
    used = 0
    for source in sources:
        if not source.id.strip() or not source.text.strip():
            continue
        header = f"[source_id={source.id}]"
        if source.type:
            header += f" (type={source.type})"
        if source.title:
            header += f" {source.title}"
        if source.locator:
            header += f" - {source.locator}"
        header += "\n"
        body = source.text.strip()
        block = header + body + "\n\n"
        block_tokens = estimate_tokens(block)
        if max_tokens > 0 and used + block_tokens > max_tokens:
            remaining = max_tokens - used - estimate_tokens(header) - 6
            if remaining <= 0:
                break
            body = trim_to_tokens(body, remaining)
            if not body.strip():
                break
            block = header + body + "\n\n"
            block_tokens = estimate_tokens(block)
            if used + block_tokens > max_tokens:
                break
        parts.append(block)
        used += block_tokens
    return "".join(parts).strip()


def type_rank(source_type: str) -> int:
    return _TYPE_RANK.get((source_type or "").strip(), 8)


def selection_candidates(
    sources: Sequence[EvidenceSource], max_candidates: int
) -> list[EvidenceSource]:
    """Sources ordered by type preference (stable), capped."""
    ordered = sorted(sources, key=lambda s: type_rank(s.type))
    if max_candidates > 0:
        ordered = ordered[:max_candidates]
    return ordered


def filter_quote_sources(
    sources: Sequence[EvidenceSource], preference: str = ""
) -> list[EvidenceSource]:
    """
    Sources eligible for verbatim quotes.

    "materials" keeps material chunks only; otherwise unit blocks are allowed too.
    """
    preference = (preference or "").strip().lower()
    allowed = {MATERIAL_CHUNK}
    if preference != "materials":
        allowed.add(DocType.PATH_UNIT_BLOCK.value)
    return [s for s in sources if (s.type or "").strip().lower() in allowed]


def fallback_selection(sources: Sequence[EvidenceSource]) -> list[EvidenceSource]:
    """Best-ranked unique sources (at most 6) when the selector is unavailable."""
    candidates = selection_candidates(sources, 8)
    out: list[EvidenceSource] = []
    seen: set[str] = set()
    for source in candidates:
        if not source.id or source.id in seen:
            continue
        seen.add(source.id)
        out.append(source)
        if len(out) >= 6:
            break
    return out or candidates


def select_evidence_sources(
    llm: Optional[LLMClient], query: str, sources: Sequence[EvidenceSource]
) -> tuple[list[EvidenceSource], dict[str, Any]]:
    """
    Ask the model for the minimal set of sources needed to answer.

    Falls back to the best-ranked sources when the call fails or selects
    nothing known.

    Returns:
        (selected sources, trace)
    """
    trace: dict[str, Any] = {}
    if llm is None or not (query or "").strip() or not sources:
        return [], trace

    lines = []
    for source in selection_candidates(sources, 32):
        if not source.id or not source.text:
            continue
        lines.append(
            f"- id: {source.id}\n"
            f"  type: {source.type}\n"
            f"  title: {source.title}\n"
            f"  locator: {source.locator}\n"
            f"  excerpt: {clamp_text(source.text, 420)}"
        )
    if not lines:
        return [], trace

    model = settings.chat_evidence_select_model or settings.route_model
    trace["model"] = model
    system, user = prompts.evidence_select_prompt(query.strip(), "\n".join(lines))

    start = time.monotonic()
    try:
        obj = llm.with_model(model).generate_json(
            system,
            user,
            prompts.SCHEMA_EVIDENCE_SELECT,
            prompts.EVIDENCE_SELECT_SCHEMA,
            timeout=settings.chat_context_route_timeout_seconds,
        )
    except ChatEngineError as e:
        trace["ms"] = int((time.monotonic() - start) * 1000)
        trace["error"] = str(e)
        logger.warning(f"Evidence selection failed, using fallback: {e}")
        return fallback_selection(sources), trace
    trace["ms"] = int((time.monotonic() - start) * 1000)
    trace["confidence"] = obj.get("confidence")
    trace["reason"] = str(obj.get("reason") or "").strip()

    wanted = {str(i).strip() for i in obj.get("selected_ids") or [] if str(i).strip()}
    selected = [s for s in sources if s.id in wanted]
    if not selected:
        return fallback_selection(sources), trace
    return selected, trace


def parse_citation_markers(text: str) -> list[str]:
    """Source ids referenced by `[[source:ID]]` markers, in order of appearance."""
    return [m.strip() for m in CITATION_RE.findall(text or "") if m.strip()]


def strip_citation_markers(text: str) -> str:
    return CITATION_RE.sub("", text or "").strip()


def build_citations(
    ids: Sequence[str], sources: Sequence[EvidenceSource]
) -> list[EvidenceCitation]:
    """Resolve marker ids against known sources; unknown and repeated ids are dropped."""
    by_id = {s.id: s for s in sources}
    citations: list[EvidenceCitation] = []
    seen: set[str] = set()
    for source_id in ids:
        source_id = (source_id or "").strip()
        if not source_id or source_id in seen:
            continue
        seen.add(source_id)
        source = by_id.get(source_id)
        if source is None:
            continue
        citations.append(
            EvidenceCitation(
                source_id=source.id,
                source_type=source.type,
                title=source.title,
                locator=source.locator,
            )
        )
    return citations


def citation_label(citation: EvidenceCitation, source: Optional[EvidenceSource]) -> str:
    """Human-readable label: file + locator for material chunks, else the title."""
    if source is not None and source.type == MATERIAL_CHUNK:
        file_name = str(source.meta.get("file_name") or "").strip()
        return ", ".join(p for p in (file_name, source.locator) if p)
    return citation.title or citation.source_type


def apply_citation_replacements(
    text: str, citations: Sequence[EvidenceCitation], sources: Sequence[EvidenceSource]
) -> str:
    """Rewrite known markers into " (Source: label)" tags and drop unknown ones."""
    if not (text or "").strip():
        return text
    by_id = {s.id: s for s in sources}
    for citation in citations:
        label = citation_label(citation, by_id.get(citation.source_id))
        if not label:
            continue
        text = text.replace(f"[[source:{citation.source_id}]]", f" (Source: {label})")
    return CITATION_RE.sub("", text)


def extract_quoted_strings(text: str) -> list[str]:
    """Quoted substrings of at least 6 characters (straight or curly quotes)."""
    return [m.strip() for m in QUOTE_RE.findall(text or "") if m.strip()]


def normalize_for_quote_match(text: str) -> str:
    """Case-fold, unify curly quotes and collapse whitespace."""
    text = (text or "").strip().lower()
    text = text.replace("“", '"').replace("”", '"').replace("’", "'")
    return " ".join(text.split())


def verify_quotes_in_evidence(
    quotes: Sequence[str], sources: Sequence[EvidenceSource]
) -> tuple[bool, list[str]]:
    """
    Check every quote appears verbatim (after normalization) in some source.

    Returns:
        (all verified, quotes that failed)
    """
    if not quotes:
        return True, []
    if not sources:
        return False, list(quotes)
    haystacks = [normalize_for_quote_match(s.text) for s in sources if s.text.strip()]
    failed = []
    for quote in quotes:
        needle = normalize_for_quote_match(quote)
        if not needle:
            continue
        if not any(needle in hay for hay in haystacks):
            failed.append(quote)
    return not failed, failed


def repair_quoted_answer(llm: Optional[LLMClient], answer: str, evidence_text: str) -> str:
    """
    Ask the model to fix quotes so they match the evidence exactly.

    Returns the original answer when there is nothing to repair against or
    the model returns nothing.

    Raises:
        ChatEngineError: If the repair call fails
    """
    if llm is None or not answer.strip() or not evidence_text.strip():
        return answer
    model = settings.chat_evidence_answer_model or settings.chat_model
    system, user = prompts.repair_quotes_prompt(answer.strip(), evidence_text.strip())
    repaired = llm.with_model(model).generate_text(system, user)
    return repaired.strip() or answer
