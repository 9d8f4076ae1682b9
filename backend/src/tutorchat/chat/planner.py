"""
Context planner.

Assembles the instructions for one product turn. The plan routes the query
into context lanes, rewrites it for retrieval, retrieves projection docs,
pins canonical path artifacts, hydrates unit blocks from the live node doc,
pulls source-material excerpts and renders every lane under its token
budget behind a fixed instruction firewall.

The new user message is never part of the instructions; it is returned as
the user payload.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from sqlalchemy.orm import Session

from tutorchat.chat import prompts
from tutorchat.chat.evidence import EvidenceSource, evidence_from_chat_doc
from tutorchat.chat.materials import MaterialRetriever
from tutorchat.chat.path_index import (
    CONCEPTS_PREFIX,
    MATERIALS_PREFIX,
    OVERVIEW_PREFIX,
    path_doc,
    render_path_concepts,
    render_path_materials,
    render_path_overview,
    sort_concepts,
)
from tutorchat.chat.retrieval import (
    HybridRetriever,
    RetrievalPlan,
    RetrievalResult,
    detached_copy,
)
from tutorchat.chat.routing import (
    MODE_EDIT,
    Budget,
    ContextPlanHints,
    adjust_budget,
    classify_context_route,
    route_context_llm,
)
from tutorchat.chat.session_context import (
    EditTarget,
    SessionSnapshot,
    UnitContextOptions,
    build_learning_graph_context,
    build_unit_context,
    build_user_knowledge_context,
    concept_keys_from_node,
    hydrate_unit_block_docs,
    load_session_snapshot,
    pick_top_concept_keys,
    resolve_edit_target,
    resolve_edit_target_from_query,
    wants_current_block_text,
    wants_material_quotes,
)
from tutorchat.chat.textutil import estimate_tokens, format_recent, trim_to_tokens
from tutorchat.db.repositories import (
    MaterialRepository,
    MessageRepository,
    PathRepository,
    SessionStateRepository,
    SummaryRepository,
)
from tutorchat.db.repositories.base import as_uuid
from tutorchat.exceptions import ChatEngineError, InputInvalidError
from tutorchat.jobs.queue import JobQueue
from tutorchat.llm.base import LLMClient
from tutorchat.models.db import (
    ChatDoc,
    ChatMessage,
    ChatThread,
    ChatThreadState,
    Concept,
    DocScope,
    DocType,
    JobStatus,
)
from tutorchat.utils.hashing import deterministic_uuid
from tutorchat.utils.timeutil import utcnow
from tutorchat.vector import VectorStore

logger = logging.getLogger(__name__)

HISTORY_MESSAGES = 30
HOT_WINDOW_MESSAGES = 18
ROUTER_RECENT_MESSAGES = 6
SQL_FALLBACK_LIMIT = 10
INTAKE_MESSAGE_KIND = "path_intake_questions"

PATH_DOC_TYPES = frozenset(
    {
        DocType.PATH_OVERVIEW.value,
        DocType.PATH_NODE.value,
        DocType.PATH_CONCEPTS.value,
        DocType.PATH_MATERIALS.value,
        DocType.PATH_UNIT_DOC.value,
        DocType.PATH_UNIT_BLOCK.value,
    }
)

PINNED_PATH_DOC_TYPES = (
    DocType.PATH_OVERVIEW.value,
    DocType.PATH_CONCEPTS.value,
    DocType.PATH_MATERIALS.value,
)

_MAX_DOC_CHARS = {
    DocType.PATH_OVERVIEW.value: 6000,
    DocType.PATH_CONCEPTS.value: 4500,
    DocType.PATH_MATERIALS.value: 2500,
    DocType.PATH_UNIT_DOC.value: 3000,
    DocType.PATH_UNIT_BLOCK.value: 2200,
}

_DOC_PRIORITY = {
    DocType.PATH_OVERVIEW.value: 0,
    DocType.PATH_MATERIALS.value: 1,
    DocType.PATH_CONCEPTS.value: 2,
    DocType.PATH_NODE.value: 3,
    DocType.PATH_UNIT_BLOCK.value: 4,
    DocType.PATH_UNIT_DOC.value: 5,
}

_ID_LINE_PREFIXES = ("pathid:", "nodeid:", "parentnodeid:", "block id:", "block_id:")
_INLINE_ID_TOKENS = ("node_id=", "activity_id=", "path_id=")
_INLINE_ID_STOP = " \t)],\n"


@dataclass
class ContextPlan:
    """Everything the responder needs for a product answer."""

    instructions: str = ""
    user_payload: str = ""
    used_docs: list[ChatDoc] = field(default_factory=list)
    evidence_sources: list[EvidenceSource] = field(default_factory=list)
    evidence_token_budget: int = 0
    retrieval_mode: str = "skipped"
    mode: str = "explain"
    edit_target: Optional[EditTarget] = None
    snapshot: Optional[SessionSnapshot] = None
    trace: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Rendering helpers
# =============================================================================


def _strip_inline_token(line: str, token: str) -> str:
    while True:
        idx = line.find(token)
        if idx < 0:
            return line
        start = idx
        end = idx + len(token)
        while end < len(line) and line[end] not in _INLINE_ID_STOP:
            end += 1
        if start > 0 and line[start - 1] == " ":
            start -= 1
        line = line[:start] + line[end:]


def strip_path_internal_identifiers(text: str) -> str:
    """Drop id header lines and inline id tokens from rendered path docs."""
    text = (text or "").strip()
    if not text:
        return ""
    out = []
    for line in text.split("\n"):
        if line.strip().lower().startswith(_ID_LINE_PREFIXES):
            continue
        for token in _INLINE_ID_TOKENS:
            line = _strip_inline_token(line, token)
        line = line.replace(" ()", "").replace("()", "").replace("( ", "(").replace(" )", ")")
        while "  " in line:
            line = line.replace("  ", " ")
        out.append(line.rstrip(" \t"))
    return "\n".join(out).strip()


def _doc_priority(doc: ChatDoc) -> int:
    return _DOC_PRIORITY.get((doc.doc_type or "").strip(), 10)


def _trim_chars(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "…"


def render_docs_budgeted(docs: Sequence[ChatDoc], token_budget: int) -> str:
    """
    Render docs as `[type=...]` blocks until the token budget is used.

    Canonical path docs come first, then newer docs. The last block that
    does not fit is trimmed to the remaining budget when possible.
    """
    if not docs or token_budget <= 0:
        return ""
    ordered = sorted(docs, key=lambda d: -(d.created_at.timestamp() if d.created_at else 0.0))
    ordered.sort(key=_doc_priority)

    used = 0
    blocks: list[str] = []
    for doc in ordered:
        doc_type = (doc.doc_type or "").strip()
        header = f"[type={doc_type}]"
        body = (doc.contextual_text or "").strip() or (doc.text or "").strip()
        if doc_type in PATH_DOC_TYPES:
            body = strip_path_internal_identifiers(body)
        body = _trim_chars(body, _MAX_DOC_CHARS.get(doc_type, 1200))

        block = f"{header}\n{body}\n\n"
        block_tokens = estimate_tokens(block)
        if used + block_tokens > token_budget:
            remaining = token_budget - used - estimate_tokens(header) - 6
            if remaining <= 0:
                break
            block = f"{header}\n{trim_to_tokens(body, remaining)}\n\n"
            block_tokens = estimate_tokens(block)
            if used + block_tokens > token_budget:
                break
        blocks.append(block)
        used += block_tokens
        if used >= token_budget:
            break
    return "".join(blocks).strip()


def split_docs_by_type(
    docs: Sequence[ChatDoc], doc_type: str
) -> tuple[list[ChatDoc], list[ChatDoc]]:
    matched = [d for d in docs if (d.doc_type or "").strip() == doc_type]
    rest = [d for d in docs if (d.doc_type or "").strip() != doc_type]
    return matched, rest


def thread_readiness(
    thread: ChatThread, state: Optional[ChatThreadState]
) -> Optional[dict[str, Any]]:
    """Maintenance progress of a thread relative to its next seq."""
    if thread is None or state is None:
        return None
    max_seq = max(0, thread.next_seq or 0)

    def pct(done: int) -> float:
        if max_seq <= 0:
            return 1.0
        if done <= 0:
            return 0.0
        return done / max_seq

    cursors = {
        "indexed": state.last_indexed_seq,
        "summarized": state.last_summarized_seq,
        "graph": state.last_graph_seq,
        "memory": state.last_memory_seq,
    }
    out: dict[str, Any] = {"next_seq": max_seq}
    for name, value in cursors.items():
        out[f"last_{name}_seq"] = value
    for name, value in cursors.items():
        out[f"{name}_pct"] = pct(value)
    for name, value in cursors.items():
        out[f"{name}_lag"] = max_seq - value
    return out


# =============================================================================
# Path pinning
# =============================================================================


def concept_doc_needs_rebuild(doc: Optional[ChatDoc]) -> bool:
    """A concepts doc that looks truncated or predates the counted header."""
    if doc is None:
        return True
    body = (doc.contextual_text or "").strip() or (doc.text or "").strip()
    if not body:
        return True
    if "…" in body:
        return True
    return "Concepts:" in body and "Concepts (" not in body


def pin_path_artifacts(
    session: Session, user_id: uuid.UUID, path_id: uuid.UUID, docs: Sequence[ChatDoc]
) -> tuple[list[ChatDoc], dict[str, Any]]:
    """
    Make sure the overview, concepts and materials docs of a path are present.

    Missing types are loaded from the projection table first and synthesized
    from canonical rows otherwise. A concepts doc that looks stale is
    supplemented with a freshly rendered compact list. Everything added is
    a transient copy.

    Returns:
        (docs, trace)
    """
    docs = list(docs)
    trace: dict[str, Any] = {}
    if user_id is None or path_id is None:
        return docs, trace

    seen: set[uuid.UUID] = set()
    have: set[str] = set()
    concept_doc: Optional[ChatDoc] = None
    for doc in docs:
        if doc.id is not None:
            seen.add(doc.id)
        if (doc.scope or "").strip() != DocScope.PATH.value or doc.scope_id != path_id:
            continue
        doc_type = (doc.doc_type or "").strip()
        have.add(doc_type)
        if doc_type == DocType.PATH_CONCEPTS.value and concept_doc is None:
            concept_doc = doc

    missing = [t for t in PINNED_PATH_DOC_TYPES if t not in have]
    force_concepts = concept_doc is None or concept_doc_needs_rebuild(concept_doc)
    if not missing and not force_concepts:
        return docs, trace

    now = utcnow()
    loaded: list[str] = []
    built: list[str] = []

    if missing:
        rows = (
            session.query(ChatDoc)
            .filter(
                ChatDoc.user_id == user_id,
                ChatDoc.scope == DocScope.PATH.value,
                ChatDoc.scope_id == path_id,
                ChatDoc.doc_type.in_(missing),
            )
            .all()
        )
        for row in rows:
            if row.id in seen:
                continue
            copy = detached_copy(row, created_at=now, updated_at=now)
            docs.append(copy)
            seen.add(copy.id)
            doc_type = (copy.doc_type or "").strip()
            if doc_type and doc_type not in have:
                have.add(doc_type)
                loaded.append(doc_type)

    still_missing = [t for t in PINNED_PATH_DOC_TYPES if t not in have]
    if force_concepts:
        still_missing = [t for t in still_missing if t != DocType.PATH_CONCEPTS.value]

    paths = PathRepository(session)
    path = None
    cache: dict[str, Any] = {}

    def load_concepts() -> list[Concept]:
        if "concepts" not in cache:
            cache["concepts"] = sort_concepts(paths.list_concepts(path_id))
        return cache["concepts"]

    def add(doc_type: str, suffix: str, source_id: uuid.UUID, body: str, prefix: str) -> bool:
        doc_id = deterministic_uuid(f"chat_doc|pin|{doc_type}|path:{path_id}|{suffix}")
        if doc_id in seen:
            return False
        docs.append(path_doc(doc_id, user_id, path_id, doc_type, source_id, body, prefix + body))
        seen.add(doc_id)
        built.append(doc_type)
        return True

    for doc_type in still_missing:
        if doc_type == DocType.PATH_OVERVIEW.value:
            path = path or paths.get_for_user(path_id, user_id)
            if path is None:
                continue
            body = render_path_overview(path, paths.list_nodes(path_id), load_concepts())
            if body:
                add(doc_type, "overview", path_id, body, OVERVIEW_PREFIX)
        elif doc_type == DocType.PATH_CONCEPTS.value:
            concepts = load_concepts()
            if concepts:
                add(doc_type, "concepts", path_id, render_path_concepts(concepts), CONCEPTS_PREFIX)
        elif doc_type == DocType.PATH_MATERIALS.value:
            path = path or paths.get_for_user(path_id, user_id)
            if path is None or path.material_set_id is None:
                continue
            materials = MaterialRepository(session)
            material_set = materials.get(path.material_set_id)
            if material_set is None or material_set.user_id != user_id:
                continue
            body = render_path_materials(materials.list_files(material_set.id), material_set)
            if body:
                add(doc_type, "materials", material_set.id, body, MATERIALS_PREFIX)

    if force_concepts:
        concepts = load_concepts()
        if concepts and add(
            DocType.PATH_CONCEPTS.value,
            "concepts_compact",
            path_id,
            render_path_concepts(concepts),
            CONCEPTS_PREFIX,
        ):
            trace["concepts_rebuilt"] = True

    if loaded:
        trace["loaded"] = loaded
    if built:
        trace["built"] = built
    trace["missing_before"] = missing
    return docs, trace


# =============================================================================
# Planner
# =============================================================================


def _evidence_add(evidence: dict[str, EvidenceSource], items: Sequence[EvidenceSource]) -> None:
    for item in items:
        if item.id and item.id.strip() and item.id not in evidence:
            evidence[item.id] = item


def _pinned_intake(
    session: Session, thread: ChatThread, user_id: uuid.UUID, hot_seqs: set[int]
) -> tuple[str, Optional[int]]:
    """Intake questions of a build paused at its intake waitpoint."""
    if thread.job_id is None:
        return "", None
    job = JobQueue(session).get_for_user(thread.job_id, user_id)
    if job is None or job.status != JobStatus.WAITING_USER.value:
        return "", None
    if "path_intake" not in (job.stage or "").lower():
        return "", None
    message = MessageRepository(session).get_last_with_kind(thread.id, INTAKE_MESSAGE_KIND)
    if message is None or message.user_id != user_id or message.seq in hot_seqs:
        return "", None
    return (message.content or "").strip(), message.seq


def build_context_plan(
    session: Session,
    llm: Optional[LLMClient],
    vector: Optional[VectorStore],
    user_id: uuid.UUID,
    thread: ChatThread,
    state: Optional[ChatThreadState],
    user_text: str,
    user_message: Optional[ChatMessage] = None,
) -> ContextPlan:
    """
    Build the prompt context for one product turn.

    Args:
        session: Database session
        llm: Model client (routing, query rewrite, rerank, embeddings)
        vector: Vector store, or None to use the SQL fallbacks
        user_id: Requesting user
        thread: Thread being answered
        state: Thread maintenance state (for the readiness trace)
        user_text: The new user message text
        user_message: The stored user message (carries the session envelope)

    Returns:
        ContextPlan

    Raises:
        InputInvalidError: If the thread or user text is missing
    """
    if thread is None or user_id is None:
        raise InputInvalidError("context plan: missing ids")
    q = (user_text or "").strip()
    if not q:
        raise InputInvalidError("context plan: empty user text")

    out = ContextPlan(user_payload=q)
    trace = out.trace
    budget = Budget()
    evidence: dict[str, EvidenceSource] = {}
    path_id = thread.path_id
    paths = PathRepository(session)

    history = MessageRepository(session).list_recent(thread.id, HISTORY_MESSAGES)
    hot_seqs = {m.seq for m in history[-HOT_WINDOW_MESSAGES:]}
    # The new user message and its reply placeholder travel as the user payload
    if user_message is not None:
        history = [m for m in history if m.seq < user_message.seq]
    hot = format_recent(history, HOT_WINDOW_MESSAGES)

    snapshot, _ = load_session_snapshot(SessionStateRepository(session), user_id, user_message)
    stale = snapshot.stale if snapshot is not None else False
    out.snapshot = snapshot

    # Routing: heuristic first, model refinement when confident
    route = classify_context_route(q)
    route_trace: dict[str, Any] = {"source": "heuristic", "mode": route.mode}
    hints = ContextPlanHints()
    llm_route, llm_hints, llm_trace, llm_ok = route_context_llm(
        llm, thread, q, format_recent(history, ROUTER_RECENT_MESSAGES), snapshot
    )
    if llm_ok:
        route = llm_route
        hints = llm_hints
        route_trace = {"source": "llm", "mode": route.mode, **llm_trace}
        route_trace["unit_detail"] = {
            "current_block": hints.unit_current,
            "include_visible": hints.include_visible,
            "include_lesson_index": hints.include_lesson_index,
        }
        route_trace["retrieval_scopes"] = {
            "scope_thread": hints.scope_thread,
            "scope_path": hints.scope_path,
            "scope_user": hints.scope_user,
        }
        if hints.materials_query:
            route_trace["materials_query"] = hints.materials_query
    elif llm_trace:
        trace["context_route_llm"] = llm_trace
    route_trace["lanes"] = route.lanes_trace()
    trace["context_route"] = route_trace
    out.mode = route.mode

    if route.mode == MODE_EDIT:
        target = resolve_edit_target_from_query(paths, snapshot, stale, q)
        out.edit_target = target or resolve_edit_target(snapshot, stale)
        if out.edit_target is not None:
            trace["edit_target"] = out.edit_target.to_dict()

    if snapshot is not None:
        trace["session_ctx"] = {
            "source": snapshot.source,
            "age_seconds": round(snapshot.age_seconds),
            "stale": stale,
            "progress_state": snapshot.progress_state,
            "progress_confidence": snapshot.progress_confidence,
            "progress_engaged": snapshot.engaged_block.id if snapshot.engaged_block else "",
        }

    include_unit = route.enabled("viewport") or route.enabled("unit")
    include_path = any(route.enabled(n) for n in ("path", "unit", "concept", "user"))
    include_concept = route.enabled("concept")
    include_user = route.enabled("user")
    include_retrieval = route.enabled("retrieve")
    if include_retrieval:
        include_path = True
    include_materials = route.enabled("materials") and include_retrieval
    include_graph = route.enabled("graph")
    if llm_ok:
        include_retrieval = hints.any_scope
        if hints.scope_path:
            include_path = True
        if hints.scope_user:
            include_user = True
        include_materials = route.enabled("materials") and include_retrieval
        if hints.materials_query:
            include_materials = True
    if wants_material_quotes(q):
        include_retrieval = True
        include_materials = True
        include_path = True
        if not hints.materials_query:
            hints.materials_query = q
        route_trace["materials_query_forced"] = True
    if snapshot is not None:
        include_unit = True

    # Live unit context
    unit_text = ""
    if include_unit and snapshot is not None:
        full_current = wants_current_block_text(q)
        opts = UnitContextOptions(query=q, token_budget=budget.unit_tokens)
        if llm_ok:
            current = hints.unit_current
            if current == "none":
                opts.include_current = False
            elif current == "summary":
                opts.current_block_max_tokens = 160
            opts.include_visible = hints.include_visible
            opts.include_lesson_index = hints.include_lesson_index
        if full_current:
            opts.full_current = True
            opts.include_current = True
            opts.current_block_max_tokens = 0
        text, unit_trace, unit_evidence = build_unit_context(paths, thread, snapshot, opts)
        if text:
            if stale:
                fresh_at = snapshot.fresh_at
                note = prompts.STALE_SESSION_NOTE.format(
                    last_seen_at=fresh_at.isoformat() if fresh_at else "(unknown)",
                    age=snapshot.age_seconds,
                )
                text = f"{note}\n{text}"
            unit_text = text
            trace["unit_context"] = unit_trace
            _evidence_add(evidence, unit_evidence)

    budget = adjust_budget(
        budget,
        include_unit,
        include_path,
        include_concept,
        include_user,
        include_retrieval,
        include_materials,
        include_graph,
    )
    trace["budget"] = budget.to_dict()

    # Concept and user knowledge lanes
    user_knowledge_text = ""
    learning_graph_text = ""
    concepts: list[Concept] = []
    concept_keys: list[str] = []
    if (include_concept or include_user) and path_id is not None:
        concepts = paths.list_concepts(path_id)
    if concepts:
        node_id = as_uuid(snapshot.active_path_node_id) if snapshot is not None else None
        if node_id is not None:
            concept_keys = concept_keys_from_node(paths.get_node(node_id))
        if not concept_keys:
            concept_keys = pick_top_concept_keys(concepts, 12)

    if include_user and concept_keys:
        text, uk_trace = build_user_knowledge_context(
            paths, user_id, concept_keys, concepts, budget.user_tokens
        )
        if text:
            user_knowledge_text = text
            trace["user_knowledge"] = uk_trace

    if include_concept and concept_keys:
        by_key = {(c.key or "").strip().lower(): c for c in concepts if (c.key or "").strip()}
        graph_concepts = [by_key[k] for k in (k.strip().lower() for k in concept_keys) if k in by_key]
        if graph_concepts:
            edges = paths.list_concept_edges([c.id for c in graph_concepts])
            learning_graph_text = build_learning_graph_context(
                graph_concepts, edges, budget.concept_tokens
            )
            if learning_graph_text.strip() and path_id is not None:
                _evidence_add(
                    evidence,
                    [
                        EvidenceSource(
                            id=f"concept_graph:{path_id}",
                            type="concept_graph",
                            title="Concept graph",
                            text=learning_graph_text,
                            meta={"path_id": str(path_id)},
                        )
                    ],
                )

    pinned_intake, intake_seq = _pinned_intake(session, thread, user_id, hot_seqs)
    if intake_seq is not None:
        trace["pinned_intake_seq"] = intake_seq

    root = SummaryRepository(session).get_root(thread.id)
    root_text = (root.summary_md or "").strip() if root is not None else ""

    # Query rewrite
    ctx_query = q
    if include_retrieval and llm is not None:
        system, user = prompts.contextualize_query_prompt(root_text, hot, q)
        try:
            obj = llm.generate_json(
                system,
                user,
                prompts.SCHEMA_CONTEXTUALIZE_QUERY,
                prompts.CONTEXTUALIZE_QUERY_SCHEMA,
            )
            rewritten = str(obj.get("contextual_query") or "").strip()
            if rewritten:
                ctx_query = rewritten
        except ChatEngineError as e:
            logger.info(f"Query rewrite failed, using raw query: {e}")
    trace["raw_query"] = q
    if include_retrieval:
        trace["contextual_query"] = ctx_query
    readiness = thread_readiness(thread, state)
    if readiness is not None:
        trace["thread_state"] = readiness

    # Hybrid retrieval
    retriever = HybridRetriever(session, llm, vector)
    result = RetrievalResult(mode="skipped")
    retrieved: list[ChatDoc] = []
    if include_retrieval:
        plan = RetrievalPlan(
            scope_thread=True,
            scope_path=path_id is not None,
            scope_user=path_id is None,
        )
        if llm_ok and hints.any_scope:
            plan = RetrievalPlan(hints.scope_thread, hints.scope_path, hints.scope_user)
        if path_id is not None:
            plan.scope_user = False
        result = retriever.retrieve(thread, ctx_query, plan)
        retrieved = list(result.docs)
        out.retrieval_mode = result.mode
        trace["retrieval"] = result.trace
        trace["retrieval_mode"] = result.mode
    else:
        trace["retrieval_mode"] = "skipped"

    if include_retrieval and retrieved and hot_seqs:
        kept = [
            d
            for d in retrieved
            if not (d.doc_type == DocType.MESSAGE_CHUNK.value and d.source_seq in hot_seqs)
        ]
        if len(kept) != len(retrieved):
            trace["dropped_overlap_hot"] = len(retrieved) - len(kept)
            retrieved = kept

    if include_retrieval and not retrieved:
        fallback = retriever.search_messages(
            thread, ctx_query, exclude_seqs=hot_seqs, limit=SQL_FALLBACK_LIMIT
        )
        trace["sql_message_fallback"] = {"used_count": len(fallback)}
        if fallback:
            retrieved = fallback
            out.retrieval_mode = f"{result.mode}+sql_messages"

    if include_path and path_id is not None:
        retrieved, pin_trace = pin_path_artifacts(session, user_id, path_id, retrieved)
        if pin_trace:
            trace["pinned_path_context"] = pin_trace

    if retrieved:
        node_filter = as_uuid(snapshot.active_path_node_id) if snapshot is not None else None
        retrieved, hydrate_trace = hydrate_unit_block_docs(paths, retrieved, node_filter)
        if hydrate_trace:
            trace["unit_block_hydrate"] = hydrate_trace
        for doc in retrieved:
            source = evidence_from_chat_doc(doc)
            if source is not None:
                _evidence_add(evidence, [source])

    # Source-material excerpts
    materials_text = ""
    if include_materials and path_id is not None:
        materials_query = ctx_query
        if llm_ok and hints.materials_query:
            materials_query = hints.materials_query
        material_ctx = MaterialRetriever(session, vector).retrieve(
            user_id,
            paths.get_for_user(path_id, user_id),
            materials_query,
            result.query_embedding,
            budget.materials_tokens,
        )
        if material_ctx.trace:
            trace["materials_retrieval"] = material_ctx.trace
        materials_text = material_ctx.text.strip()
        _evidence_add(evidence, material_ctx.sources)

    graph_text = ""
    if include_graph:
        graph_text = retriever.graph_context(retrieved, budget.graph_tokens)

    # Path docs get their own lanes
    overview_text = concepts_text = path_materials_text = ""
    if retrieved:
        overview_docs, rest = split_docs_by_type(retrieved, DocType.PATH_OVERVIEW.value)
        concept_docs, rest = split_docs_by_type(rest, DocType.PATH_CONCEPTS.value)
        material_docs, rest = split_docs_by_type(rest, DocType.PATH_MATERIALS.value)
        if include_path:
            overview_text = render_docs_budgeted(overview_docs, budget.path_tokens)
            concepts_text = render_docs_budgeted(concept_docs, budget.concept_tokens)
            path_materials_text = render_docs_budgeted(material_docs, budget.path_tokens)
        retrieved = rest

    sections = [
        (prompts.SECTION_SUMMARY, trim_to_tokens(root_text, budget.summary_tokens)),
        (prompts.SECTION_INTAKE, pinned_intake),
        (prompts.SECTION_HOT, trim_to_tokens(hot, budget.hot_tokens)),
        (prompts.SECTION_MODE, prompts.EDIT_MODE_NOTE if route.mode == MODE_EDIT else ""),
        (prompts.SECTION_UNIT, trim_to_tokens(unit_text, budget.unit_tokens)),
        (prompts.SECTION_PATH_OVERVIEW, overview_text),
        (prompts.SECTION_PATH_CONCEPTS, concepts_text),
        (prompts.SECTION_PATH_MATERIALS, path_materials_text),
        (
            prompts.SECTION_LEARNING_GRAPH,
            trim_to_tokens(learning_graph_text, budget.concept_tokens),
        ),
        (
            prompts.SECTION_USER_KNOWLEDGE,
            trim_to_tokens(user_knowledge_text, budget.user_tokens),
        ),
        (prompts.SECTION_RETRIEVED, render_docs_budgeted(retrieved, budget.retrieval_tokens)),
        (prompts.SECTION_MATERIALS, trim_to_tokens(materials_text, budget.materials_tokens)),
        (prompts.SECTION_GRAPH, trim_to_tokens(graph_text, budget.graph_tokens)),
    ]
    out.instructions = prompts.answer_instructions(sections)
    out.used_docs = retrieved
    out.evidence_sources = [evidence[k] for k in sorted(evidence)]
    out.evidence_token_budget = budget.retrieval_tokens + budget.materials_tokens
    return out
