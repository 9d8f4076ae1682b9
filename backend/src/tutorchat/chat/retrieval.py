"""
Hybrid retrieval over chat and path projections.

Dense candidates come from the vector store (or an in-process cosine scan of
stored embeddings when the store is unavailable), lexical candidates from
full-text search. Candidates are filtered, reranked by the model in small
batches, gated on score and diversified with MMR.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from sqlalchemy.orm import Session

from tutorchat.chat import prompts
from tutorchat.chat.textutil import clamp_text, trim_to_tokens
from tutorchat.db.repositories import DocRepository, GraphRepository, MessageRepository
from tutorchat.exceptions import ChatEngineError
from tutorchat.llm.base import LLMClient
from tutorchat.models.db import ChatDoc, ChatThread, DocScope, DocType
from tutorchat.utils.hashing import deterministic_uuid
from tutorchat.utils.timeutil import ensure_utc
from tutorchat.vector import Vector, VectorStore, chat_user_namespace
from tutorchat.vector.memory import cosine_similarity

logger = logging.getLogger(__name__)

RETRIEVABLE_DOC_TYPES = (
    DocType.MESSAGE_CHUNK.value,
    DocType.SUMMARY.value,
    DocType.MEMORY.value,
    DocType.ENTITY.value,
    DocType.CLAIM.value,
    DocType.PATH_OVERVIEW.value,
    DocType.PATH_NODE.value,
    DocType.PATH_CONCEPTS.value,
    DocType.PATH_MATERIALS.value,
    DocType.PATH_UNIT_DOC.value,
    DocType.PATH_UNIT_BLOCK.value,
)

# Transient doc type for canonical messages found by the SQL fallback
MESSAGE_RAW = "message_raw"

MAX_CANDIDATES_PER_SCOPE = 40
MAX_CANDIDATES = 60
USER_SCOPE_MIN_CANDIDATES = 30
RERANK_BATCH_SIZE = 20
RERANK_TIMEOUT_SECONDS = 10.0
MIN_KEEP_SCORE = 55.0
MIN_KEEP_SCORE_FALLBACK = 50.0
STRONG_THREAD_SCORE = 70.0
MMR_LAMBDA = 0.5
MMR_K = 12

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

_PROMPT_TOPIC_TERMS = (
    "system prompt",
    "developer message",
    "prompt injection",
    "jailbreak",
    "ignore previous",
    "instructions",
    "prompt",
)

_INJECTION_PATTERNS = (
    "ignore previous",
    "ignore all previous",
    "system prompt",
    "developer message",
    "you are chatgpt",
    "act as",
    "follow these instructions",
    "jailbreak",
    "do not follow",
    "override",
    "begin system",
    "end system",
)

_ROLE_LINE_PREFIXES = ("SYSTEM:", "ASSISTANT:", "DEVELOPER:")


@dataclass
class RetrievalPlan:
    """Which scopes to search."""

    scope_thread: bool = True
    scope_path: bool = True
    scope_user: bool = True


@dataclass
class RetrievalResult:
    docs: list[ChatDoc] = field(default_factory=list)
    mode: str = "normal"
    query_embedding: list[float] = field(default_factory=list)
    trace: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Candidate:
    doc: ChatDoc
    dense_hit: bool = False
    dense_score: float = 0.0
    lexical_hit: bool = False
    lexical_rank: float = 0.0
    score: float = 0.0


def is_low_signal(text: str) -> bool:
    """Short or mostly punctuation/whitespace text is useless as evidence."""
    text = (text or "").strip()
    if len(text) < 24:
        return True
    alnum = sum(1 for ch in text if ch.isascii() and ch.isalnum())
    return alnum < len(text) * 0.25


def query_mentions_prompt(query: str) -> bool:
    """True when the user is asking about prompting itself."""
    query = (query or "").lower()
    return any(term in query for term in _PROMPT_TOPIC_TERMS)


def looks_like_prompt_injection(text: str) -> bool:
    """Phrase list plus upper-case role lines such as `SYSTEM: ...`."""
    text = text or ""
    lower = text.lower()
    if any(pattern in lower for pattern in _INJECTION_PATTERNS):
        return True
    for line in text.splitlines():
        if line.strip().startswith(_ROLE_LINE_PREFIXES):
            return True
    return False


def doc_text(doc: ChatDoc) -> str:
    return (doc.contextual_text or "").strip() or (doc.text or "").strip()


def created_key(doc: ChatDoc) -> datetime:
    return ensure_utc(doc.created_at) or _EPOCH


_DOC_FIELDS = (
    "id",
    "user_id",
    "doc_type",
    "scope",
    "scope_id",
    "thread_id",
    "path_id",
    "job_id",
    "source_id",
    "source_seq",
    "chunk_index",
    "text",
    "contextual_text",
    "embedding",
    "vector_id",
    "created_at",
    "updated_at",
)


def detached_copy(doc: ChatDoc, **changes: Any) -> ChatDoc:
    """
    Transient copy of a doc with some fields replaced.

    Prompt-time rewrites go through copies so they are never flushed back
    to the projection table.
    """
    values = {name: getattr(doc, name) for name in _DOC_FIELDS}
    values.update(changes)
    return ChatDoc(**values)


def doc_metadata(doc: ChatDoc) -> dict[str, Any]:
    """Vector metadata used for scope filtering."""
    metadata: dict[str, Any] = {
        "user_id": str(doc.user_id),
        "doc_type": (doc.doc_type or "").strip(),
        "scope": (doc.scope or "").strip(),
        "chunk_idx": doc.chunk_index or 0,
    }
    for key in ("scope_id", "thread_id", "path_id", "job_id"):
        value = getattr(doc, key)
        if value is not None:
            metadata[key] = str(value)
    return metadata


def upsert_vectors(
    vector: Optional[VectorStore],
    namespace: str,
    docs: Sequence[ChatDoc],
    embeddings: Sequence[Sequence[float]],
) -> None:
    """Mirror docs into the vector store; docs without an embedding are skipped."""
    if vector is None or not docs:
        return
    if len(embeddings) != len(docs):
        raise ValueError("upsert_vectors: embeddings mismatch")
    vectors = [
        Vector(id=doc.vector_id, values=list(emb), metadata=doc_metadata(doc))
        for doc, emb in zip(docs, embeddings)
        if emb
    ]
    if vectors:
        vector.upsert(namespace, vectors)


def delete_vectors(vector: Optional[VectorStore], namespace: str, ids: Sequence[str]) -> None:
    """Best-effort vector cleanup; the relational store stays authoritative."""
    ids = [i for i in ids if i]
    if vector is None or not ids:
        return
    try:
        vector.delete_ids(namespace, ids)
    except ChatEngineError as e:
        logger.warning(f"Vector delete failed for {len(ids)} ids in {namespace}: {e}")


def selected_doc_trace(docs: Sequence[ChatDoc]) -> list[dict[str, Any]]:
    rows = []
    for doc in docs:
        row: dict[str, Any] = {
            "doc_id": str(doc.id),
            "doc_type": doc.doc_type,
            "scope": doc.scope,
        }
        if doc.source_id is not None:
            row["source_id"] = str(doc.source_id)
        if doc.source_seq is not None:
            row["source_seq"] = doc.source_seq
        rows.append(row)
    return rows


def mmr_select(
    candidates: Sequence[tuple[ChatDoc, float, list[float]]],
    k: int = MMR_K,
    lam: float = MMR_LAMBDA,
) -> list[ChatDoc]:
    """
    Maximal marginal relevance over (doc, score 0-100, embedding).

    Ties prefer newer docs, then the smaller id.
    """
    pool = sorted(
        candidates,
        key=lambda c: (-c[1], -created_key(c[0]).timestamp(), str(c[0].id)),
    )
    selected: list[tuple[ChatDoc, float, list[float]]] = []
    while pool and len(selected) < k:
        best_index = 0
        best_value = float("-inf")
        for index, (doc, score, emb) in enumerate(pool):
            redundancy = 0.0
            if emb:
                for _, _, chosen_emb in selected:
                    if chosen_emb and len(chosen_emb) == len(emb):
                        redundancy = max(redundancy, cosine_similarity(emb, chosen_emb))
            value = lam * (score / 100.0) - (1.0 - lam) * redundancy
            if value > best_value:
                best_value = value
                best_index = index
        selected.append(pool.pop(best_index))
    return [doc for doc, _, _ in selected]


class HybridRetriever:
    """Retrieves projection docs for a thread across thread, path and user scopes."""

    def __init__(
        self,
        session: Session,
        llm: Optional[LLMClient],
        vector: Optional[VectorStore] = None,
    ):
        self.session = session
        self.llm = llm
        self.vector = vector
        self.docs = DocRepository(session)
        self.messages = MessageRepository(session)
        self.graph = GraphRepository(session)

    def embed_query(self, query: str) -> tuple[list[float], Optional[str]]:
        """Embed one query. Returns (embedding, error message)."""
        if self.llm is None:
            return [], "no llm"
        try:
            embeddings = self.llm.embed([query])
        except ChatEngineError as e:
            logger.warning(f"Query embedding failed: {e}")
            return [], str(e)
        if not embeddings or not embeddings[0]:
            return [], "empty embedding"
        return list(embeddings[0]), None

    def retrieve(
        self,
        thread: ChatThread,
        query: str,
        plan: Optional[RetrievalPlan] = None,
        query_embedding: Optional[list[float]] = None,
    ) -> RetrievalResult:
        """
        Hybrid retrieval for one query.

        Args:
            thread: Thread the query belongs to (scopes are derived from it)
            query: Self-contained query text
            plan: Enabled scopes (default: all)
            query_embedding: Precomputed embedding, skipping the embed call

        Returns:
            RetrievalResult with selected docs, mode and trace
        """
        plan = plan or RetrievalPlan()
        out = RetrievalResult()
        query = (query or "").strip()
        if not query:
            return out

        embed_start = time.monotonic()
        if query_embedding:
            q_emb = list(query_embedding)
        else:
            q_emb, embed_err = self.embed_query(query)
            if embed_err:
                out.mode = "degraded_embed"
                out.trace["embed_err"] = embed_err
        out.query_embedding = q_emb
        out.trace["embed_ms"] = int((time.monotonic() - embed_start) * 1000)

        candidates: dict[uuid.UUID, _Candidate] = {}
        state = {"degraded_dense": False, "degraded_lex": False}
        out.trace["scopes"] = []

        if plan.scope_thread:
            self._add_scope(thread, DocScope.THREAD.value, thread.id, query, q_emb, candidates, state, out)
        if plan.scope_path and thread.path_id is not None:
            self._add_scope(thread, DocScope.PATH.value, thread.path_id, query, q_emb, candidates, state, out)
        if plan.scope_user and len(candidates) < USER_SCOPE_MIN_CANDIDATES:
            self._add_scope(thread, DocScope.USER.value, None, query, q_emb, candidates, state, out)

        ordered = sorted(
            candidates.values(),
            key=lambda c: (-created_key(c.doc).timestamp(), str(c.doc.id)),
        )[:MAX_CANDIDATES]

        allow_prompty = query_mentions_prompt(query)
        dropped_injection = 0
        kept: list[_Candidate] = []
        for candidate in ordered:
            text = doc_text(candidate.doc)
            if is_low_signal(text):
                continue
            if not allow_prompty and looks_like_prompt_injection(text):
                dropped_injection += 1
                continue
            kept.append(candidate)
        out.trace["dropped_injection"] = dropped_injection
        if state["degraded_dense"]:
            out.trace["degraded_dense"] = True
        if state["degraded_lex"]:
            out.trace["degraded_lexical"] = True

        if not kept:
            if dropped_injection:
                out.mode = "empty_poisoned"
            elif state["degraded_dense"] or state["degraded_lex"]:
                out.mode = "empty_degraded"
            else:
                out.mode = "empty"
            return out

        rerank_failed = self._rerank(query, kept, out.trace)

        best_score = 0.0
        best_thread_score = 0.0
        for candidate in kept:
            if candidate.doc.scope == DocScope.THREAD.value:
                candidate.score += 4
            elif candidate.doc.scope == DocScope.PATH.value:
                candidate.score += 2
            best_score = max(best_score, candidate.score)
            if candidate.doc.scope == DocScope.THREAD.value:
                best_thread_score = max(best_thread_score, candidate.score)
        out.trace["rerank_top_score"] = best_score

        min_keep = MIN_KEEP_SCORE_FALLBACK if rerank_failed else MIN_KEEP_SCORE
        gated = []
        for candidate in kept:
            if candidate.score < min_keep:
                continue
            if (
                best_thread_score >= STRONG_THREAD_SCORE
                and candidate.doc.scope != DocScope.THREAD.value
                and candidate.score < best_thread_score - 10
            ):
                continue
            gated.append(candidate)
        out.trace["kept_after_threshold"] = len(gated)
        if not gated:
            out.mode = "empty_weak"
            return out

        out.docs = mmr_select(
            [(c.doc, c.score, list(c.doc.embedding or [])) for c in gated]
        )
        out.trace["selected"] = selected_doc_trace(out.docs)

        if out.mode == "normal":
            if state["degraded_dense"] and state["degraded_lex"]:
                out.mode = "degraded_both"
            elif state["degraded_dense"]:
                out.mode = "degraded_dense"
            elif state["degraded_lex"]:
                out.mode = "degraded_lexical"
        return out

    def _add_scope(
        self,
        thread: ChatThread,
        scope: str,
        scope_id: Optional[uuid.UUID],
        query: str,
        q_emb: list[float],
        candidates: dict[uuid.UUID, _Candidate],
        state: dict[str, bool],
        out: RetrievalResult,
    ) -> None:
        user_id = thread.user_id
        scope_trace: dict[str, Any] = {"scope": scope}
        if scope_id is not None:
            scope_trace["scope_id"] = str(scope_id)

        def add(candidate: _Candidate) -> None:
            existing = candidates.get(candidate.doc.id)
            if existing is None:
                candidates[candidate.doc.id] = candidate
                return
            if candidate.dense_hit:
                existing.dense_hit = True
                existing.dense_score = max(existing.dense_score, candidate.dense_score)
            if candidate.lexical_hit:
                existing.lexical_hit = True
                existing.lexical_rank = max(existing.lexical_rank, candidate.lexical_rank)

        dense_failed = False
        if self.vector is not None and q_emb:
            filter: dict[str, Any] = {"user_id": str(user_id), "scope": scope}
            if scope_id is not None:
                filter["scope_id"] = str(scope_id)
            start = time.monotonic()
            try:
                matches = self.vector.query_matches(
                    chat_user_namespace(user_id), q_emb, MAX_CANDIDATES_PER_SCOPE, filter
                )
            except ChatEngineError as e:
                dense_failed = True
                state["degraded_dense"] = True
                scope_trace["dense_err"] = str(e)
                logger.warning(f"Dense retrieval failed for scope {scope}: {e}")
                matches = []
            scope_trace["dense_ms"] = int((time.monotonic() - start) * 1000)
            scope_trace["dense_count"] = len(matches)

            score_by_id: dict[uuid.UUID, float] = {}
            for match in matches:
                try:
                    score_by_id[uuid.UUID(match.id.strip())] = match.score
                except ValueError:
                    continue
            for doc in self.docs.get_by_ids(user_id, list(score_by_id)):
                # Re-check scope even though the vector filter should guarantee it
                if doc.scope != scope or doc.scope_id != scope_id:
                    continue
                add(_Candidate(doc=doc, dense_hit=True, dense_score=score_by_id[doc.id]))

        if (self.vector is None or dense_failed) and q_emb:
            scored = []
            for doc in self.docs.cosine_candidates(user_id, scope, scope_id, RETRIEVABLE_DOC_TYPES):
                emb = doc.embedding or []
                if not emb or len(emb) != len(q_emb):
                    continue
                scored.append((doc, cosine_similarity(q_emb, emb)))
            scored.sort(key=lambda pair: -pair[1])
            scored = scored[:MAX_CANDIDATES_PER_SCOPE]
            scope_trace["dense_sql_count"] = len(scored)
            for doc, score in scored:
                add(_Candidate(doc=doc, dense_hit=True, dense_score=score))

        start = time.monotonic()
        hits = self.docs.lexical_search(
            user_id, scope, scope_id, RETRIEVABLE_DOC_TYPES, query, MAX_CANDIDATES_PER_SCOPE
        )
        scope_trace["lex_ms"] = int((time.monotonic() - start) * 1000)
        scope_trace["lex_count"] = len(hits)
        for doc, rank in hits:
            add(_Candidate(doc=doc, lexical_hit=True, lexical_rank=rank))

        out.trace["scopes"].append(scope_trace)

    def _rerank(self, query: str, kept: list[_Candidate], trace: dict[str, Any]) -> bool:
        """
        Score candidates 0-100 with the model in batches.

        Candidates of a failed batch get a fallback score from their dense and
        lexical hits.

        Returns:
            True if any batch failed
        """
        start = time.monotonic()
        failed = False
        errors = []
        for offset in range(0, len(kept), RERANK_BATCH_SIZE):
            batch = kept[offset : offset + RERANK_BATCH_SIZE]
            scores = self._rerank_batch(query, batch, errors)
            if scores is None:
                failed = True
                for candidate in batch:
                    candidate.score = _fallback_score(candidate)
                continue
            for candidate in batch:
                candidate.score = scores.get(str(candidate.doc.id), 0.0)
        trace["rerank_ms"] = int((time.monotonic() - start) * 1000)
        if errors:
            trace["rerank_err"] = errors[0]
        return failed

    def _rerank_batch(
        self, query: str, batch: list[_Candidate], errors: list[str]
    ) -> Optional[dict[str, float]]:
        if self.llm is None:
            errors.append("no llm")
            return None
        items = []
        for candidate in batch:
            doc = candidate.doc
            header = f"- id={doc.id} type={doc.doc_type} scope={doc.scope}"
            if doc.source_seq is not None:
                header += f" source_seq={doc.source_seq}"
            items.append(header + "\n" + clamp_text(doc_text(doc), 700) + "\n")
        system, user = prompts.rerank_prompt(query, "\n".join(items))
        try:
            obj = self.llm.generate_json(
                system,
                user,
                prompts.SCHEMA_RERANK,
                prompts.RERANK_SCHEMA,
                timeout=RERANK_TIMEOUT_SECONDS,
            )
        except ChatEngineError as e:
            logger.warning(f"Rerank failed, using fallback scores: {e}")
            errors.append(str(e))
            return None
        scores: dict[str, float] = {}
        for row in obj.get("results") or []:
            if not isinstance(row, dict):
                continue
            doc_id = str(row.get("id") or "").strip()
            try:
                score = float(row.get("score") or 0.0)
            except (TypeError, ValueError):
                continue
            if doc_id:
                scores[doc_id] = max(0.0, min(100.0, score))
        return scores

    def search_messages(
        self,
        thread: ChatThread,
        query: str,
        exclude_seqs: Optional[set[int]] = None,
        limit: int = 10,
    ) -> list[ChatDoc]:
        """
        Full-text fallback over canonical message content of the thread.

        Returns transient (unsaved) docs of type `message_raw`, skipping
        messages in `exclude_seqs` and anything low-signal or injection-like.
        """
        exclude_seqs = exclude_seqs or set()
        allow_prompty = query_mentions_prompt(query)
        out: list[ChatDoc] = []
        for message, _rank in self.messages.search_text(thread.id, query, limit=30):
            if message.seq in exclude_seqs:
                continue
            text = (message.content or "").strip()
            if is_low_signal(text):
                continue
            if not allow_prompty and looks_like_prompt_injection(text):
                continue
            body = f"{message.role} (seq {message.seq}): {text}"
            doc_id = deterministic_uuid(f"chat_doc|message_raw|{message.id}")
            out.append(
                ChatDoc(
                    id=doc_id,
                    user_id=thread.user_id,
                    doc_type=MESSAGE_RAW,
                    scope=DocScope.THREAD.value,
                    scope_id=thread.id,
                    thread_id=thread.id,
                    source_id=message.id,
                    source_seq=message.seq,
                    chunk_index=0,
                    text=body,
                    contextual_text=body,
                    embedding=[],
                    vector_id=str(doc_id),
                    created_at=message.created_at,
                )
            )
            if len(out) >= limit:
                break
        return out

    def graph_context(self, retrieved: Sequence[ChatDoc], token_budget: int) -> str:
        """
        Render entities, relations and claims around the retrieved graph docs.
        """
        if not retrieved:
            return ""
        entity_ids: list[uuid.UUID] = []
        for doc in retrieved:
            if doc.doc_type == DocType.ENTITY.value and doc.source_id is not None:
                entity_ids.append(doc.source_id)
            if len(entity_ids) >= 10:
                break
        claim_lines = "".join(
            f"- {clamp_text(doc.text, 500)}\n"
            for doc in retrieved
            if doc.doc_type == DocType.CLAIM.value
        )
        if not entity_ids:
            return trim_to_tokens(claim_lines, token_budget)

        entities = self.graph.get_entities(entity_ids)
        name_by_id = {e.id: e.name.strip() for e in entities if (e.name or "").strip()}
        lines = ["Entities:"]
        for entity in entities:
            line = f"- {entity.name}"
            if (entity.type or "").strip():
                line += f" ({entity.type.strip()})"
            if (entity.description or "").strip():
                line += f": {clamp_text(entity.description, 220)}"
            lines.append(line)

        edges = self.graph.list_edges_touching(entity_ids, limit=40)
        if edges:
            lines.append("")
            lines.append("Relations:")
            for edge in edges:
                src = name_by_id.get(edge.src_entity_id, "Unknown entity")
                dst = name_by_id.get(edge.dst_entity_id, "Unknown entity")
                lines.append(f"- {src} -{edge.relation.strip()}-> {dst}")

        text = "\n".join(lines) + "\n"
        if claim_lines.strip():
            text += "\nClaims:\n" + claim_lines
        return trim_to_tokens(text, token_budget)


def _fallback_score(candidate: _Candidate) -> float:
    score = 0.0
    if candidate.dense_hit:
        score += 35
    if candidate.lexical_hit:
        score += 35
    score += min(30.0, abs(candidate.lexical_rank * 100))
    return score
