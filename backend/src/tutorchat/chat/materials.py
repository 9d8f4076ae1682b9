"""
Source material excerpts for path threads.

Finds chunks of the path's material set (dense, then SQL cosine, then
lexical), expands them through concept evidence and concept edges to pick up
multi-hop matches, and renders a few excerpts per file with page or time
locators for citation.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from sqlalchemy.orm import Session

from tutorchat.chat.evidence import MATERIAL_CHUNK, EvidenceSource
from tutorchat.chat.retrieval import (
    is_low_signal,
    looks_like_prompt_injection,
    query_mentions_prompt,
)
from tutorchat.chat.textutil import clamp_text
from tutorchat.db.repositories import MaterialRepository, PathRepository
from tutorchat.exceptions import ChatEngineError
from tutorchat.models.db import MaterialChunk, MaterialFile, Path
from tutorchat.vector import VectorStore, chunks_namespace
from tutorchat.vector.memory import cosine_similarity

logger = logging.getLogger(__name__)

DENSE_LIMIT = 28
LEXICAL_LIMIT = 18
MAX_SEEDS = 12
MAX_CONCEPTS = 45
MAX_EXPANDED = 70
EDGE_DECAY = 0.7
EVIDENCE_DECAY = 0.85
MAX_PER_FILE = 2

_FILE_WORDS = ("file", "source", "material", "upload", "document")
_ALL_WORDS = ("all", "each", "every")


@dataclass
class MaterialHit:
    file: MaterialFile
    chunk: MaterialChunk
    score: float


@dataclass
class MaterialContext:
    """Rendered excerpts plus the evidence sources behind them."""

    text: str = ""
    sources: list[EvidenceSource] = field(default_factory=list)
    trace: dict[str, Any] = field(default_factory=dict)


def format_hms(seconds: float) -> str:
    total = int(max(0.0, seconds) + 0.5)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def chunk_locator(chunk: MaterialChunk) -> str:
    """Locator such as "page 3" or "1:05-2:10"; empty when unknown."""
    if chunk.page is not None and chunk.page > 0:
        return f"page {chunk.page}"
    if chunk.start_sec is not None and chunk.start_sec >= 0:
        if chunk.end_sec is not None and chunk.end_sec >= 0:
            return f"{format_hms(chunk.start_sec)}-{format_hms(chunk.end_sec)}"
        return format_hms(chunk.start_sec)
    return ""


def file_type_label(file: MaterialFile) -> str:
    mime = (file.mime_type or "").lower()
    name = (file.original_name or "").lower()
    if mime == "application/pdf" or name.endswith(".pdf"):
        return "pdf"
    if "presentation" in mime or name.endswith((".ppt", ".pptx", ".key")):
        return "slides"
    if mime.startswith("video/"):
        return "video"
    if mime.startswith("audio/"):
        return "audio"
    if mime.startswith("image/"):
        return "image"
    if "word" in mime or name.endswith((".doc", ".docx")):
        return "document"
    if mime.startswith("text/") or name.endswith((".txt", ".md")):
        return "text"
    return ""


def file_display_name(file: MaterialFile) -> str:
    return (file.original_name or "").strip() or "Untitled file"


def select_hits_for_query(query: str, hits: Sequence[MaterialHit], token_budget: int) -> list[MaterialHit]:
    """
    Pick excerpts: the best chunk of each file when the query asks about
    all/each/every file, otherwise best-first with a per-file cap.
    """
    if not hits:
        return []
    query = (query or "").strip().lower()
    max_total = 8
    if token_budget >= 3000:
        max_total = 10
    elif token_budget <= 1400:
        max_total = 6

    mentions_files = any(word in query for word in _FILE_WORDS)
    mentions_all = any(word in query for word in _ALL_WORDS)
    if mentions_files and mentions_all:
        best_by_file: dict[uuid.UUID, MaterialHit] = {}
        for hit in hits:
            previous = best_by_file.get(hit.file.id)
            if previous is None or hit.score > previous.score:
                best_by_file[hit.file.id] = hit
        best = sorted(best_by_file.values(), key=lambda h: -h.score)
        return best[:max_total]

    per_file: dict[uuid.UUID, int] = {}
    out = []
    for hit in hits:
        if per_file.get(hit.file.id, 0) >= MAX_PER_FILE:
            continue
        out.append(hit)
        per_file[hit.file.id] = per_file.get(hit.file.id, 0) + 1
        if len(out) >= max_total:
            break
    return out


def material_source_id(hit: MaterialHit) -> str:
    return f"material:{hit.chunk.id}"


def render_hits(hits: Sequence[MaterialHit]) -> str:
    """Excerpts labelled with the same source ids the model cites."""
    parts = []
    for hit in hits:
        header = f"[source_id={material_source_id(hit)}] {file_display_name(hit.file)}"
        label = file_type_label(hit.file)
        if label:
            header += f" ({label})"
        locator = chunk_locator(hit.chunk)
        if locator:
            header += f" - {locator}"
        parts.append(f"- {header}\n  {clamp_text(hit.chunk.text, 900)}")
    return "\n\n".join(parts)


def evidence_for_hit(hit: MaterialHit) -> EvidenceSource:
    locator = chunk_locator(hit.chunk)
    return EvidenceSource(
        id=material_source_id(hit),
        type=MATERIAL_CHUNK,
        title=file_display_name(hit.file),
        text=(hit.chunk.text or "").strip(),
        meta={
            "file_name": file_display_name(hit.file),
            "locator": locator,
            "chunk_id": str(hit.chunk.id),
        },
    )


class MaterialRetriever:
    """Retrieves excerpts from the material set behind a path."""

    def __init__(self, session: Session, vector: Optional[VectorStore] = None):
        self.session = session
        self.vector = vector
        self.materials = MaterialRepository(session)
        self.paths = PathRepository(session)

    def retrieve(
        self,
        user_id: uuid.UUID,
        path: Optional[Path],
        query: str,
        query_embedding: Optional[list[float]],
        token_budget: int,
    ) -> MaterialContext:
        """
        Build the source-material lane for one query.

        Args:
            user_id: Requesting user (the material set must be theirs)
            path: Path whose material set is searched
            query: Retrieval query
            query_embedding: Query embedding shared with chat retrieval
            token_budget: Token budget of the lane

        Returns:
            MaterialContext (empty when nothing qualifies)
        """
        out = MaterialContext()
        query = (query or "").strip()
        if path is None or path.material_set_id is None or not query or token_budget <= 0:
            return out
        material_set = self.materials.get(path.material_set_id)
        if material_set is None or material_set.user_id != user_id:
            return out
        set_id = material_set.id
        q_emb = list(query_embedding or [])

        mode = ""
        hits: list[MaterialHit] = []
        if self.vector is not None and q_emb:
            hits = self._dense_hits(set_id, q_emb, out.trace)
            if hits:
                mode = "dense_vector"
        if not hits and q_emb:
            hits = self._dense_sql_hits(set_id, q_emb)
            if hits:
                mode = "dense_sql"
        if not hits:
            hits = self._lexical_hits(set_id, query)
            if hits:
                mode = "lexical_sql"
        out.trace["candidates"] = len(hits)

        allow_prompty = query_mentions_prompt(query)
        hits = _filter_hits(hits, allow_prompty)
        out.trace["kept"] = len(hits)
        if not hits:
            out.trace["mode"] = mode
            return out

        expanded = self._expand_via_concepts(set_id, hits)
        if expanded:
            mode += "+graph"
            hits = _filter_hits(expanded, allow_prompty)
            out.trace["kept_after_graph"] = len(hits)
        out.trace["mode"] = mode
        if not hits:
            return out

        hits.sort(key=lambda h: -h.score)
        selected = select_hits_for_query(query, hits, token_budget)
        out.trace["selected"] = len(selected)
        out.trace["selected_chunk_ids"] = [str(h.chunk.id) for h in selected]
        out.text = render_hits(selected)
        out.sources = [evidence_for_hit(h) for h in selected if (h.chunk.text or "").strip()]
        return out

    def _dense_hits(
        self, set_id: uuid.UUID, q_emb: list[float], trace: dict[str, Any]
    ) -> list[MaterialHit]:
        start = time.monotonic()
        try:
            matches = self.vector.query_matches(
                chunks_namespace(set_id), q_emb, DENSE_LIMIT, {"type": "chunk"}
            )
        except ChatEngineError as e:
            trace["dense_err"] = str(e)
            logger.warning(f"Material dense retrieval failed for set {set_id}: {e}")
            return []
        trace["dense_ms"] = int((time.monotonic() - start) * 1000)
        scores: dict[uuid.UUID, float] = {}
        for match in matches:
            try:
                scores[uuid.UUID(match.id.strip())] = match.score
            except ValueError:
                continue
        return self._load_hits(set_id, list(scores), scores)

    def _dense_sql_hits(self, set_id: uuid.UUID, q_emb: list[float]) -> list[MaterialHit]:
        scored = []
        for chunk in self.materials.cosine_candidates(set_id):
            emb = chunk.embedding or []
            if not emb or len(emb) != len(q_emb):
                continue
            scored.append((chunk.id, cosine_similarity(q_emb, emb)))
        scored.sort(key=lambda pair: -pair[1])
        scored = scored[:DENSE_LIMIT]
        scores = dict(scored)
        return self._load_hits(set_id, [chunk_id for chunk_id, _ in scored], scores)

    def _lexical_hits(self, set_id: uuid.UUID, query: str) -> list[MaterialHit]:
        rows = self.materials.lexical_search(set_id, query, LEXICAL_LIMIT)
        scores = {chunk.id: rank for chunk, rank in rows}
        return self._load_hits(set_id, [chunk.id for chunk, _ in rows], scores)

    def _load_hits(
        self,
        set_id: uuid.UUID,
        chunk_ids: list[uuid.UUID],
        scores: dict[uuid.UUID, float],
    ) -> list[MaterialHit]:
        """Load chunks (verified to belong to the set) and their files, keeping id order."""
        allowed = set(self.materials.filter_chunk_ids_in_set(set_id, chunk_ids))
        if not allowed:
            return []
        chunks = {c.id: c for c in self.materials.get_chunks(list(allowed))}
        files = {
            f.id: f
            for f in self.materials.get_files(list({c.material_file_id for c in chunks.values()}))
        }
        hits = []
        for chunk_id in chunk_ids:
            chunk = chunks.get(chunk_id)
            if chunk is None:
                continue
            file = files.get(chunk.material_file_id)
            if file is None:
                continue
            hits.append(MaterialHit(file=file, chunk=chunk, score=scores.get(chunk_id, 0.0)))
        return hits

    def _expand_via_concepts(
        self, set_id: uuid.UUID, hits: list[MaterialHit]
    ) -> list[MaterialHit]:
        """
        Spread seed scores through concept evidence and concept edges.

        Seed scores are normalized to [0, 1]; seeds are always kept.
        """
        seeds = hits[:MAX_SEEDS]
        max_score = max((abs(h.score) for h in seeds), default=0.0)
        seed_scores: dict[uuid.UUID, float] = {}
        for hit in seeds:
            score = abs(hit.score) / max_score if max_score > 0 else 1.0
            seed_scores[hit.chunk.id] = max(seed_scores.get(hit.chunk.id, 0.0), score)

        concept_scores: dict[uuid.UUID, float] = {}
        for row in self.materials.evidence_for_chunks(list(seed_scores)):
            score = seed_scores.get(row.material_chunk_id, 0.0) * (row.weight or 1.0)
            if score > concept_scores.get(row.concept_id, 0.0):
                concept_scores[row.concept_id] = score
        if not concept_scores:
            return []

        for edge in self.paths.list_concept_edges(list(concept_scores), limit=MAX_CONCEPTS * 4):
            for src, dst in (
                (edge.from_concept_id, edge.to_concept_id),
                (edge.to_concept_id, edge.from_concept_id),
            ):
                if src not in concept_scores:
                    continue
                score = concept_scores[src] * (edge.strength or 0.5) * EDGE_DECAY
                if score > concept_scores.get(dst, 0.0):
                    concept_scores[dst] = score
        top_concepts = sorted(concept_scores.items(), key=lambda kv: -kv[1])[:MAX_CONCEPTS]
        concept_scores = dict(top_concepts)

        chunk_scores = dict(seed_scores)
        for row in self.materials.evidence_for_concepts(set_id, list(concept_scores)):
            score = concept_scores.get(row.concept_id, 0.0) * (row.weight or 1.0) * EVIDENCE_DECAY
            if score > chunk_scores.get(row.material_chunk_id, 0.0):
                chunk_scores[row.material_chunk_id] = score

        ranked = sorted(
            ((cid, s) for cid, s in chunk_scores.items() if s > 0),
            key=lambda kv: -kv[1],
        )[:MAX_EXPANDED]
        if len(ranked) <= len(seed_scores):
            return []
        return self._load_hits(set_id, [cid for cid, _ in ranked], dict(ranked))


def _filter_hits(hits: Sequence[MaterialHit], allow_prompty: bool) -> list[MaterialHit]:
    kept = []
    for hit in hits:
        text = (hit.chunk.text or "").strip()
        if not text or is_low_signal(text):
            continue
        if not allow_prompty and looks_like_prompt_injection(text):
            continue
        kept.append(hit)
    return kept
