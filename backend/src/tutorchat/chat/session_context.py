"""
Session context: what the learner is looking at when they send a message.

The client may attach a `session_ctx` envelope to a user message and the
server keeps a `UserSessionState` row per browser session. The planner merges
both into a `SessionSnapshot` and uses it to render the live unit lane, to
pick edit targets and to steer routing.
"""

import json
import logging
import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence

from tutorchat.chat.blocks import (
    as_text,
    block_id,
    block_text,
    block_title,
    build_block_doc_body,
    doc_blocks,
    parse_block_id,
)
from tutorchat.chat.evidence import EvidenceSource
from tutorchat.chat.retrieval import detached_copy
from tutorchat.chat.textutil import (
    contains_any,
    dedupe_preserve_order,
    estimate_tokens,
    trim_to_tokens,
)
from tutorchat.db.repositories import PathRepository, SessionStateRepository
from tutorchat.db.repositories.base import as_uuid
from tutorchat.models.db import (
    ChatDoc,
    ChatMessage,
    ChatThread,
    Concept,
    ConceptEdge,
    DocType,
    PathNode,
    UserSessionState,
)
from tutorchat.utils.timeutil import ensure_utc, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

SESSION_STALE_SECONDS = 90
LESSON_INDEX_TOKENS = 450
DEFAULT_UNIT_TOKENS = 2400
MAX_PROGRESS_REFS = 8

_QUERY_PUNCT_RE = re.compile(r"[.,?!:;()\[\]{}\"'`\-_/\\|+=]")

_STOPWORDS = frozenset(
    """
    the a an and or but to of in on for with about from by is are was were be been being
    this that these those it its as at into than then so if what which who whom whose why
    how does do did can could should would will show tell say explain read quote
    """.split()
)


@dataclass
class BlockRef:
    id: str
    ratio: float = 0.0
    confidence: float = 0.0
    top_delta: float = 0.0


@dataclass
class ProgressRef:
    id: str
    index: int = 0
    confidence: float = 0.0
    ratio: float = 0.0
    at: Optional[datetime] = None
    direction: str = ""
    jump: int = 0
    source: str = ""


@dataclass
class SessionSnapshot:
    """Merged view of the learner's screen at message time."""

    session_id: str = ""
    active_path_id: str = ""
    active_path_node_id: str = ""
    active_doc_block_id: str = ""
    active_view: str = ""
    active_route: str = ""
    scroll_percent: float = 0.0
    captured_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    visible_blocks: list[BlockRef] = field(default_factory=list)
    current_block: Optional[BlockRef] = None
    progress_state: str = ""
    progress_confidence: float = 0.0
    engaged_block: Optional[ProgressRef] = None
    engaged_seq: list[ProgressRef] = field(default_factory=list)
    completed_seq: list[ProgressRef] = field(default_factory=list)
    forward_count: int = 0
    regression_count: int = 0
    age_seconds: float = 0.0
    stale: bool = False
    source: str = ""

    @property
    def fresh_at(self) -> Optional[datetime]:
        return self.last_seen_at or self.captured_at

    @property
    def current_block_id(self) -> str:
        if self.current_block is not None and self.current_block.id:
            return self.current_block.id
        return self.active_doc_block_id


@dataclass
class EditTarget:
    """The block an edit request applies to."""

    path_id: str
    path_node_id: str
    block_id: str
    block_index: int = -1
    confidence: float = 0.0
    source: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "path_id": self.path_id,
            "path_node_id": self.path_node_id,
            "block_id": self.block_id,
            "block_index": self.block_index,
            "confidence": self.confidence,
            "source": self.source,
        }


@dataclass
class UnitContextOptions:
    full_current: bool = False
    include_current: bool = True
    current_block_max_tokens: int = 0
    include_visible: bool = True
    include_lesson_index: bool = True
    query: str = ""
    token_budget: int = 0


def _float(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value.strip())
        except ValueError:
            return 0.0
    return 0.0


def _int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip():
        try:
            return int(value.strip())
        except ValueError:
            return 0
    return 0


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [s for s in (as_text(v) for v in value) if s]
    text = as_text(value)
    return [text] if text else []


def _parse_progress_ref(raw: Any) -> Optional[ProgressRef]:
    if not isinstance(raw, dict):
        return None
    ref_id = as_text(raw.get("id"))
    if not ref_id:
        return None
    at = None
    for key in ("engaged_at", "completed_at", "at"):
        at = parse_timestamp(raw.get(key))
        if at is not None:
            break
    return ProgressRef(
        id=ref_id,
        index=_int(raw.get("index")),
        confidence=_float(raw.get("confidence")),
        ratio=_float(raw.get("ratio")),
        at=at,
        direction=as_text(raw.get("direction")),
        jump=_int(raw.get("jump")),
        source=as_text(raw.get("source")),
    )


def _parse_progress_seq(raw: Any, limit: int = MAX_PROGRESS_REFS) -> list[ProgressRef]:
    if not isinstance(raw, list):
        return []
    out = []
    for item in raw:
        ref = _parse_progress_ref(item)
        if ref is None:
            continue
        out.append(ref)
        if len(out) >= limit:
            break
    return out


def _apply_view_fields(snapshot: SessionSnapshot, raw: dict[str, Any]) -> None:
    """Fill visible blocks, current block and progress from an envelope dict."""
    visible = raw.get("visible_blocks")
    if isinstance(visible, list):
        refs = []
        for row in visible:
            if not isinstance(row, dict) or not as_text(row.get("id")):
                continue
            refs.append(
                BlockRef(
                    id=as_text(row.get("id")),
                    ratio=_float(row.get("ratio")),
                    top_delta=_float(row.get("top_delta")),
                )
            )
        if refs:
            snapshot.visible_blocks = refs

    current = raw.get("current_block")
    if isinstance(current, dict) and as_text(current.get("id")):
        snapshot.current_block = BlockRef(
            id=as_text(current.get("id")),
            confidence=_float(current.get("confidence")),
        )

    progress = raw.get("progress")
    if isinstance(progress, dict):
        snapshot.progress_state = as_text(progress.get("state"))
        snapshot.progress_confidence = _float(progress.get("confidence"))
        snapshot.forward_count = _int(progress.get("forward_count"))
        snapshot.regression_count = _int(progress.get("regression_count"))
        snapshot.engaged_block = _parse_progress_ref(progress.get("engaged_block"))
        snapshot.engaged_seq = _parse_progress_seq(progress.get("engaged_seq"))
        snapshot.completed_seq = _parse_progress_seq(progress.get("completed_seq"))


def parse_session_context(meta: Optional[dict[str, Any]]) -> Optional[SessionSnapshot]:
    """Parse the `session_ctx` envelope of a user message's metadata."""
    if not isinstance(meta, dict):
        return None
    raw = meta.get("session_ctx")
    if not isinstance(raw, dict):
        return None
    snapshot = SessionSnapshot(
        session_id=as_text(raw.get("session_id")),
        active_path_id=as_text(raw.get("active_path_id")),
        active_path_node_id=as_text(raw.get("active_path_node_id")),
        active_doc_block_id=as_text(raw.get("active_doc_block_id")),
        active_view=as_text(raw.get("active_view")),
        active_route=as_text(raw.get("active_route")),
        scroll_percent=_float(raw.get("scroll_percent")),
        captured_at=parse_timestamp(raw.get("captured_at")),
        last_seen_at=parse_timestamp(raw.get("last_seen_at")),
        source="message",
    )
    _apply_view_fields(snapshot, raw)
    return snapshot


def session_id_from_meta(meta: Optional[dict[str, Any]]) -> str:
    if not isinstance(meta, dict):
        return ""
    sid = as_text(meta.get("session_id"))
    if sid:
        return sid
    raw = meta.get("session_ctx")
    if isinstance(raw, dict):
        return as_text(raw.get("session_id"))
    return ""


def snapshot_from_state(state: Optional[UserSessionState]) -> Optional[SessionSnapshot]:
    """Build a snapshot from the server-side session row."""
    if state is None or state.session_id is None:
        return None
    snapshot = SessionSnapshot(
        session_id=str(state.session_id),
        active_path_id=str(state.active_path_id) if state.active_path_id else "",
        active_path_node_id=str(state.active_path_node_id) if state.active_path_node_id else "",
        active_doc_block_id=as_text(state.active_doc_block_id),
        active_view=as_text(state.active_view),
        active_route=as_text(state.active_route),
        scroll_percent=state.scroll_percent or 0.0,
        last_seen_at=ensure_utc(state.last_seen_at),
        source="server",
    )
    if isinstance(state.meta, dict):
        _apply_view_fields(snapshot, state.meta)
    return snapshot


def load_session_snapshot(
    states: SessionStateRepository,
    user_id: uuid.UUID,
    message: Optional[ChatMessage],
    now: Optional[datetime] = None,
) -> tuple[Optional[SessionSnapshot], dict[str, Any]]:
    """
    Merge the message envelope with the server session state.

    The fresher snapshot wins. The result is marked stale when it is older
    than SESSION_STALE_SECONDS.

    Returns:
        (snapshot or None, trace)
    """
    trace: dict[str, Any] = {}
    meta = message.meta if message is not None else None
    snapshot = parse_session_context(meta)
    session_id = (snapshot.session_id if snapshot else "") or session_id_from_meta(meta)

    state = None
    sid = as_uuid(session_id)
    if sid is not None:
        state = states.get_for_user(sid, user_id)
    if state is None:
        state = states.latest_for_user(user_id)
    server = snapshot_from_state(state)

    if server is not None:
        server_at = server.fresh_at
        client_at = snapshot.fresh_at if snapshot else None
        if snapshot is None or (server_at and (client_at is None or server_at > client_at)):
            snapshot = server
    if snapshot is None:
        return None, trace

    now = now or utcnow()
    fresh_at = ensure_utc(snapshot.fresh_at)
    if fresh_at is not None:
        snapshot.age_seconds = max(0.0, (now - fresh_at).total_seconds())
        snapshot.stale = snapshot.age_seconds > SESSION_STALE_SECONDS

    trace["source"] = snapshot.source
    trace["session_id"] = snapshot.session_id
    trace["age_seconds"] = int(snapshot.age_seconds)
    trace["stale"] = snapshot.stale
    trace["active_path_node_id"] = snapshot.active_path_node_id
    return snapshot, trace


def summarize_session_for_routing(snapshot: Optional[SessionSnapshot]) -> str:
    """Compact key/value rendering of a snapshot for the routing prompt."""
    if snapshot is None:
        return "(none)"

    def _or_none(value: str) -> str:
        return value or "(none)"

    visible_ids = [b.id for b in snapshot.visible_blocks if b.id][:6]
    engaged = snapshot.engaged_block.id if snapshot.engaged_block else ""
    completed = snapshot.completed_seq[-1].id if snapshot.completed_seq else ""
    lines = [
        f"session_id: {_or_none(snapshot.session_id)}",
        f"active_path_id: {_or_none(snapshot.active_path_id)}",
        f"active_path_node_id: {_or_none(snapshot.active_path_node_id)}",
        f"active_doc_block_id: {_or_none(snapshot.current_block_id)}",
        f"active_view: {_or_none(snapshot.active_view)}",
        f"scroll_percent: {snapshot.scroll_percent:.0f}",
        f"age_seconds: {snapshot.age_seconds:.0f}",
        f"stale: {str(snapshot.stale).lower()}",
        f"visible_block_count: {len(snapshot.visible_blocks)}",
        f"visible_block_ids: {', '.join(visible_ids)}",
        f"progress_state: {_or_none(snapshot.progress_state)}",
        f"progress_confidence: {snapshot.progress_confidence:.2f}",
        f"progress_engaged_block_id: {_or_none(engaged)}",
        f"progress_completed_block_id: {_or_none(completed)}",
        f"progress_forward/regress: {snapshot.forward_count}/{snapshot.regression_count}",
    ]
    return "\n".join(lines)


def index_blocks(doc: Optional[dict[str, Any]]) -> tuple[list[str], dict[str, dict[str, Any]]]:
    """Block ids in document order plus a lookup by id."""
    order: list[str] = []
    by_id: dict[str, dict[str, Any]] = {}
    for index, block in enumerate(doc_blocks(doc)):
        bid = block_id(block, index)
        if bid in by_id:
            continue
        by_id[bid] = block
        order.append(bid)
    return order, by_id


def normalize_query_tokens(query: str) -> list[str]:
    """Lowercased content words of a query (length >= 3, stopwords removed)."""
    query = (query or "").strip().lower()
    if not query:
        return []
    query = _QUERY_PUNCT_RE.sub(" ", query)
    return [t for t in query.split() if len(t) >= 3 and t not in _STOPWORDS]


def _rank_block_matches(scored: list[tuple[str, int]], token_count: int, limit: int) -> list[str]:
    scored.sort(key=lambda item: (-item[1], item[0]))
    min_score = max(2, math.ceil(token_count * 0.4))
    out = []
    for bid, score in scored:
        if score < min_score:
            break
        out.append(bid)
        if limit > 0 and len(out) >= limit:
            break
    return out


def match_blocks_for_query(
    block_by_id: dict[str, dict[str, Any]], query: str, limit: int
) -> list[str]:
    """
    Block ids whose title or body mention the query's content words.

    A title hit scores 2 and a body hit 1; blocks need at least
    max(2, ceil(0.4 * tokens)) points.
    """
    tokens = normalize_query_tokens(query)
    if not block_by_id or not tokens:
        return []
    scored = []
    for bid, block in block_by_id.items():
        _, body = block_text(block)
        title = block_title(block).lower()
        body = body.lower()
        if not title and not body:
            continue
        score = 0
        for token in tokens:
            if title and token in title:
                score += 2
            elif body and token in body:
                score += 1
        if score > 0:
            scored.append((bid, score))
    return _rank_block_matches(scored, len(tokens), limit)


def match_blocks_for_title_query(
    block_by_id: dict[str, dict[str, Any]], query: str, limit: int
) -> list[str]:
    """Like match_blocks_for_query, counting title hits only."""
    tokens = normalize_query_tokens(query)
    if not block_by_id or not tokens:
        return []
    scored = []
    for bid, block in block_by_id.items():
        title = block_title(block).lower()
        if not title:
            continue
        score = sum(2 for token in tokens if token in title)
        if score > 0:
            scored.append((bid, score))
    return _rank_block_matches(scored, len(tokens), limit)


def concept_keys_from_node(node: Optional[PathNode]) -> list[str]:
    """Concept and prerequisite keys declared on a node."""
    if node is None or not isinstance(node.meta, dict):
        return []
    keys = _string_list(node.meta.get("concept_keys")) + _string_list(
        node.meta.get("prereq_concept_keys")
    )
    return dedupe_preserve_order(k.lower() for k in keys)


def pick_top_concept_keys(concepts: Sequence[Concept], limit: int) -> list[str]:
    """Keys of the most important concepts (sort_index desc, then shallowest)."""
    ordered = sorted(
        (c for c in concepts if c is not None),
        key=lambda c: (-(c.sort_index or 0.0), c.depth or 0),
    )
    keys = [(c.key or "").strip().lower() for c in ordered if (c.key or "").strip()]
    if limit > 0:
        keys = keys[:limit]
    return dedupe_preserve_order(keys)


def build_user_knowledge_context(
    paths: PathRepository,
    user_id: uuid.UUID,
    concept_keys: Sequence[str],
    concepts: Sequence[Concept],
    max_tokens: int,
) -> tuple[str, dict[str, Any]]:
    """
    Render the learner's mastery estimates for the given concepts as JSON.

    States are keyed by the canonical concept when one is linked. Concepts
    without a state row are left out.

    Returns:
        (JSON text or "", trace)
    """
    trace: dict[str, Any] = {}
    if not concept_keys:
        return "", trace

    by_key = {(c.key or "").strip().lower(): c for c in concepts if (c.key or "").strip()}
    canonical_by_key: dict[str, uuid.UUID] = {}
    for key in concept_keys:
        concept = by_key.get(key.strip().lower())
        if concept is None:
            continue
        canonical_by_key[key.strip().lower()] = concept.canonical_concept_id or concept.id
    if not canonical_by_key:
        return "", trace

    states = paths.list_user_concept_states(user_id, list(canonical_by_key.values()))
    state_by_id = {s.concept_id: s for s in states}

    rows = []
    for key, concept_id in canonical_by_key.items():
        state = state_by_id.get(concept_id)
        if state is None:
            continue
        last_seen = ensure_utc(state.last_seen_at)
        rows.append(
            {
                "concept_key": key,
                "name": by_key[key].name,
                "mastery": round(state.mastery or 0.0, 3),
                "confidence": round(state.confidence or 0.0, 3),
                "last_seen_at": last_seen.isoformat() if last_seen else None,
            }
        )

    trace["concept_count"] = len(concept_keys)
    trace["active_concepts"] = len(rows)
    if not rows:
        return "", trace
    raw = json.dumps({"concepts": rows}, ensure_ascii=False)
    if max_tokens > 0:
        raw = trim_to_tokens(raw, max_tokens)
    return raw.strip(), trace


def build_learning_graph_context(
    concepts: Sequence[Concept], edges: Sequence[ConceptEdge], max_tokens: int
) -> str:
    """Up to 12 concepts and 24 typed edges between them."""
    if not concepts:
        return ""
    name_by_id = {c.id: (c.name or "").strip() for c in concepts if c.id is not None}

    lines = ["Concepts:"]
    for concept in list(concepts)[:12]:
        line = f"- {(concept.name or '').strip()}"
        if (concept.key or "").strip():
            line += f" ({concept.key.strip()})"
        lines.append(line)

    edge_lines = []
    for edge in edges:
        src = name_by_id.get(edge.from_concept_id)
        dst = name_by_id.get(edge.to_concept_id)
        if not src or not dst:
            continue
        edge_lines.append(f"- {src} --{(edge.edge_type or '').strip() or 'related'}--> {dst}")
        if len(edge_lines) >= 24:
            break
    if edge_lines:
        lines.append("")
        lines.append("Edges:")
        lines.extend(edge_lines)

    out = "\n".join(lines).strip()
    if max_tokens > 0:
        out = trim_to_tokens(out, max_tokens)
    return out


def wants_current_block_text(user_text: str) -> bool:
    text = (user_text or "").strip().lower()
    if not text:
        return False
    if "current block" in text or "active block" in text:
        return True
    if "what does the block say" in text or "what does this block say" in text:
        return True
    return "what does it say" in text and "block" in text


def wants_verbatim_quote(user_text: str) -> bool:
    text = (user_text or "").strip().lower()
    if not text:
        return False
    if "what does" in text and "say" in text:
        return True
    return contains_any(
        text,
        (
            "quote",
            "quoted",
            "quotation",
            "verbatim",
            "word for word",
            "word-for-word",
            "exact wording",
            "exact words",
            "exact text",
        ),
    )


def wants_material_quotes(user_text: str) -> bool:
    """True when the user wants verbatim text from the uploaded files."""
    if not wants_verbatim_quote(user_text):
        return False
    text = user_text.strip().lower()
    return contains_any(
        text,
        ("file", "slides", "slide", "ppt", "pptx", "pdf", "document", "materials", "source file"),
    )


def wants_top_section(user_text: str) -> bool:
    text = (user_text or "").strip().lower()
    return bool(text) and contains_any(
        text,
        (
            "top of the screen",
            "top of my screen",
            "top of the page",
            "top of my page",
            "section at the top",
            "at the top",
            "top section",
        ),
    )


def pick_top_visible_block(blocks: Sequence[BlockRef]) -> str:
    """
    The block nearest the top of the viewport.

    Prefers the block whose top edge is closest above the viewport top
    (top_delta <= 0), then the closest below. Without offsets, the most
    visible block wins.
    """
    if not blocks:
        return ""
    if not any(b.top_delta != 0 for b in blocks):
        return max(blocks, key=lambda b: b.ratio).id
    above = [b for b in blocks if b.top_delta <= 0]
    if above:
        best = max(above, key=lambda b: b.top_delta)
        if best.id:
            return best.id
    below = [b for b in blocks if b.top_delta > 0]
    if below:
        return min(below, key=lambda b: b.top_delta).id
    return ""


def resolve_edit_target(snapshot: Optional[SessionSnapshot], stale: bool) -> Optional[EditTarget]:
    """Edit target from the session: current block, active block, then top visible."""
    if snapshot is None or stale or not snapshot.active_path_node_id:
        return None
    target_id = ""
    confidence = 0.0
    source = ""
    if snapshot.current_block is not None and snapshot.current_block.id:
        target_id = snapshot.current_block.id
        confidence = snapshot.current_block.confidence
        source = "current_block"
    if not target_id and snapshot.active_doc_block_id:
        target_id = snapshot.active_doc_block_id
        confidence = 0.6
        source = "active_doc_block_id"
    if not target_id and snapshot.visible_blocks:
        target_id = pick_top_visible_block(snapshot.visible_blocks)
        confidence = 0.45
        source = "visible_top"
    if not target_id:
        return None
    return EditTarget(
        path_id=snapshot.active_path_id,
        path_node_id=snapshot.active_path_node_id,
        block_id=target_id,
        block_index=-1,
        confidence=confidence,
        source=source,
    )


def resolve_edit_target_from_query(
    paths: PathRepository,
    snapshot: Optional[SessionSnapshot],
    stale: bool,
    query: str,
) -> Optional[EditTarget]:
    """Edit target named by the query: title match first, then body match."""
    if snapshot is None or stale:
        return None
    node_id = as_uuid(snapshot.active_path_node_id)
    if node_id is None:
        return None
    node = paths.get_node(node_id)
    if node is None:
        return None
    order, by_id = index_blocks(node.doc)
    if not by_id:
        return None

    matches = match_blocks_for_title_query(by_id, query, 1)
    source = "query_match_title"
    if not matches:
        matches = match_blocks_for_query(by_id, query, 1)
        source = "query_match_body"
    if not matches:
        return None
    target_id = matches[0]
    return EditTarget(
        path_id=snapshot.active_path_id,
        path_node_id=snapshot.active_path_node_id,
        block_id=target_id,
        block_index=order.index(target_id),
        confidence=0.82,
        source=source,
    )


def build_lesson_index_text(
    block_order: Sequence[str], block_by_id: dict[str, dict[str, Any]], max_tokens: int
) -> str:
    """Block count, per-type counts and the ordered block titles of a unit."""
    if not block_order or not block_by_id:
        return ""
    type_counts: dict[str, int] = {}
    titles = []
    for bid in block_order:
        block = block_by_id.get(bid)
        if block is None:
            continue
        block_type = as_text(block.get("type")).lower()
        if block_type:
            type_counts[block_type] = type_counts.get(block_type, 0) + 1
        label = block_title(block) or block_type or "block"
        if block_type and label.lower() != block_type:
            titles.append(f"{label} ({block_type})")
        else:
            titles.append(label)

    lines = [f"Total blocks: {len(block_order)}"]
    if type_counts:
        lines.append("Block types:")
        lines.extend(f"- {k}: {v}" for k, v in sorted(type_counts.items()))
    if titles:
        lines.append("")
        lines.append("Block order:")
        lines.extend(f"- {t}" for t in titles)
    text = "\n".join(lines).strip()
    if max_tokens > 0:
        text = trim_to_tokens(text, max_tokens)
    return text.strip()


@dataclass
class _Snippet:
    id: str
    block_type: str
    text: str
    source: str
    title: str


def build_unit_context(
    paths: PathRepository,
    thread: ChatThread,
    snapshot: Optional[SessionSnapshot],
    opts: UnitContextOptions,
) -> tuple[str, dict[str, Any], list[EvidenceSource]]:
    """
    Render the unit the learner has open.

    Snippets are gathered in priority order (lesson index, current block,
    top and visible blocks, query matches, unit summary) and rendered under a
    header describing the viewport until the token budget runs out.

    Returns:
        (text, trace, evidence sources)
    """
    trace: dict[str, Any] = {}
    if snapshot is None or thread is None:
        return "", trace, []

    path_id = thread.path_id or as_uuid(snapshot.active_path_id)
    if path_id is None:
        return "", trace, []
    if snapshot.active_path_id and snapshot.active_path_id != str(path_id):
        return "", trace, []
    node_id = as_uuid(snapshot.active_path_node_id)
    if node_id is None:
        return "", trace, []
    node = paths.get_node(node_id)
    if node is None or node.path_id != path_id or not isinstance(node.doc, dict):
        return "", trace, []

    summary_text = as_text(node.doc.get("summary"))
    order, by_id = index_blocks(node.doc)
    if not order and not summary_text:
        return "", trace, []
    trace["block_total"] = len(order)

    snippets: list[_Snippet] = []
    evidence: list[EvidenceSource] = []
    seen: set[str] = set()

    def add_block(bid: str, source: str, max_tokens: int = 0) -> None:
        if not bid or bid in seen or bid not in by_id:
            return
        block = by_id[bid]
        block_type, text = block_text(block)
        if max_tokens > 0:
            text = trim_to_tokens(text, max_tokens)
        if not text.strip():
            return
        seen.add(bid)
        title = block_title(block)
        snippets.append(_Snippet(bid, block_type, text, source, title))
        evidence.append(
            EvidenceSource(
                id=f"unit:{bid}",
                type=DocType.PATH_UNIT_BLOCK.value,
                title=title,
                text=text,
                meta={"block_id": bid, "block_type": block_type, "source": source},
            )
        )

    if opts.include_lesson_index:
        index_text = build_lesson_index_text(order, by_id, LESSON_INDEX_TOKENS)
        if index_text:
            seen.add("lesson_index")
            snippets.append(_Snippet("lesson_index", "lesson_index", index_text, "index", "Lesson index"))
            evidence.append(
                EvidenceSource(
                    id="unit:lesson_index",
                    type="lesson_index",
                    title="Lesson index",
                    text=index_text,
                    meta={"source": "index"},
                )
            )

    current_id = snapshot.current_block_id
    if current_id and opts.include_current:
        limit = 0 if opts.full_current else opts.current_block_max_tokens
        add_block(current_id, "current", limit)

    if opts.include_visible and snapshot.visible_blocks:
        if wants_top_section(opts.query):
            top_id = pick_top_visible_block(snapshot.visible_blocks)
            if top_id:
                trace["top_block_id"] = top_id
                add_block(top_id, "top")
        for ref in sorted(snapshot.visible_blocks, key=lambda b: -b.ratio):
            add_block(ref.id, "visible")

    matches = match_blocks_for_query(by_id, opts.query, 3)
    for bid in matches:
        add_block(bid, "matched")

    query_lower = (opts.query or "").strip().lower()
    if summary_text and (
        contains_any(query_lower, ("summary", "overview", "tl;dr")) or not snippets
    ):
        snippets.append(_Snippet("summary", "summary", summary_text, "summary", "Unit summary"))
        evidence.append(
            EvidenceSource(
                id="unit:summary",
                type="unit_summary",
                title="Unit summary",
                text=summary_text,
                meta={"source": "summary"},
            )
        )

    if not snippets:
        return "", trace, evidence

    budget = opts.token_budget if opts.token_budget > 0 else DEFAULT_UNIT_TOKENS
    header_lines = [f"Unit {node.index}: {(node.title or '').strip() or 'Untitled unit'}"]
    if snapshot.active_view:
        header_lines.append(f"View: {snapshot.active_view}")
    if snapshot.scroll_percent > 0:
        header_lines.append(f"Scroll: {snapshot.scroll_percent:.0f}%")
    if snapshot.progress_state:
        header_lines.append(f"Progress state: {snapshot.progress_state}")
    if snapshot.progress_confidence > 0:
        header_lines.append(f"Progress confidence: {snapshot.progress_confidence:.2f}")
    if snapshot.engaged_block is not None and snapshot.engaged_block.id:
        header_lines.append(f"Engaged block: {snapshot.engaged_block.id}")
    if snapshot.completed_seq and snapshot.completed_seq[-1].id:
        header_lines.append(f"Last completed block: {snapshot.completed_seq[-1].id}")

    out = "\n".join(header_lines) + "\n\n"
    used = estimate_tokens(out)
    for snippet in snippets:
        if used >= budget:
            break
        header = f"[{snippet.source or 'context'}]"
        if snippet.block_type:
            header += f" ({snippet.block_type})"
        if snippet.title:
            header += f" {snippet.title}"
        body = snippet.text
        block = f"{header}\n{body}\n\n"
        block_tokens = estimate_tokens(block)
        if used + block_tokens > budget:
            remaining = budget - used - estimate_tokens(header + "\n") - 6
            if remaining <= 0:
                break
            body = trim_to_tokens(body, remaining)
            if not body.strip():
                break
            if body.strip() != snippet.text.strip():
                header += " (partial)"
            block = f"{header}\n{body}\n\n"
            block_tokens = estimate_tokens(block)
            if used + block_tokens > budget:
                break
        out += block
        used += block_tokens

    trace["node_id"] = str(node.id)
    trace["block_count"] = len(snippets)
    trace["current_full"] = opts.full_current
    trace["visible_count"] = len(snapshot.visible_blocks)
    trace["query_matches"] = len(matches)
    trace["tokens_used"] = used
    return out.strip(), trace, evidence


def hydrate_unit_block_docs(
    paths: PathRepository,
    docs: Sequence[ChatDoc],
    node_filter: Optional[uuid.UUID] = None,
) -> tuple[list[ChatDoc], dict[str, Any]]:
    """
    Replace retrieved unit-block bodies with the current node doc content.

    Block docs are dropped when their node, block id or block no longer
    exists, or when a node filter is given and they belong to another node.

    Returns:
        (docs, trace)
    """
    block_docs = [
        d
        for d in docs
        if d.doc_type == DocType.PATH_UNIT_BLOCK.value
        and d.source_id is not None
        and (node_filter is None or d.source_id == node_filter)
    ]
    if not block_docs:
        return list(docs), {}

    node_ids = list({d.source_id for d in block_docs})
    nodes = {n.id: n for n in paths.get_nodes(node_ids)}
    blocks_by_node = {}
    for node_id, node in nodes.items():
        _, by_id = index_blocks(node.doc)
        if by_id:
            blocks_by_node[node_id] = by_id

    out: list[ChatDoc] = []
    hydrated = 0
    dropped = 0
    for doc in docs:
        if doc.doc_type != DocType.PATH_UNIT_BLOCK.value:
            out.append(doc)
            continue
        if doc.source_id is None or (node_filter is not None and doc.source_id != node_filter):
            dropped += 1
            continue
        bid = parse_block_id(doc.text) or parse_block_id(doc.contextual_text)
        block = blocks_by_node.get(doc.source_id, {}).get(bid) if bid else None
        if block is None:
            dropped += 1
            continue
        text, contextual, _, _ = build_block_doc_body(nodes.get(doc.source_id), bid, block)
        if not text.strip():
            dropped += 1
            continue
        out.append(detached_copy(doc, text=text, contextual_text=contextual))
        hydrated += 1

    trace = {
        "block_docs": len(block_docs),
        "hydrated": hydrated,
        "dropped": dropped,
        "node_filter": node_filter is not None,
        "nodes_loaded": len(blocks_by_node),
    }
    return out, trace
