"""
Path projection indexer.

Renders canonical learning-path rows (path, nodes, node docs, concepts,
material files) into path-scoped ChatDocs so path threads can retrieve them
through normal hybrid retrieval. Document ids embed CHAT_PATH_DOC_VERSION,
and prior rows of the same family are deleted before each rewrite.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from tutorchat.chat.blocks import block_id, block_text, block_title, build_block_doc_body, doc_blocks
from tutorchat.chat.materials import file_display_name, file_type_label
from tutorchat.chat.retrieval import delete_vectors, upsert_vectors
from tutorchat.chat.textutil import chunk_by_chars
from tutorchat.db.repositories import DocRepository, MaterialRepository, PathRepository
from tutorchat.exceptions import ChatEngineError, NotFoundError
from tutorchat.llm.base import LLMClient
from tutorchat.models.db import (
    ChatDoc,
    Concept,
    DocScope,
    DocType,
    MaterialFile,
    MaterialSet,
    Path,
    PathNode,
)
from tutorchat.utils.hashing import deterministic_uuid
from tutorchat.utils.timeutil import utcnow
from tutorchat.vector import VectorStore, chat_user_namespace

logger = logging.getLogger(__name__)

CHAT_PATH_DOC_VERSION = 2

MAX_UNIT_DOC_CHUNKS = 8
UNIT_DOC_CHUNK_CHARS = 2200
MAX_INDEXED_CONCEPTS = 120
MAX_OVERVIEW_CONCEPTS = 30
MATERIAL_SUMMARY_CHARS = 1600

PATH_DOC_TYPES = (
    DocType.PATH_OVERVIEW.value,
    DocType.PATH_NODE.value,
    DocType.PATH_CONCEPTS.value,
    DocType.PATH_MATERIALS.value,
    DocType.PATH_UNIT_DOC.value,
)

OVERVIEW_PREFIX = "Learning path overview (retrieval context):\n"
NODE_PREFIX = "Path node (retrieval context):\n"
UNIT_DOC_PREFIX = "Unit doc (retrieval context):\n"
CONCEPTS_PREFIX = "Path concepts (retrieval context):\n"
MATERIALS_PREFIX = "Path source materials (retrieval context):\n"


@dataclass
class PathIndexResult:
    docs_upserted: int = 0
    vector_upserted: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"docs_upserted": self.docs_upserted, "vector_upserted": self.vector_upserted}


def _trim_chars(text: str, max_chars: int) -> str:
    text = (text or "").strip()
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "…"


def _unit_title(node: PathNode) -> str:
    return (node.title or "").strip() or "Untitled unit"


def sort_concepts(concepts: Sequence[Concept]) -> list[Concept]:
    """Most important first: higher sort_index, then shallower depth."""
    return sorted(concepts, key=lambda c: (-(c.sort_index or 0.0), c.depth or 0))


# =============================================================================
# Renderers
# =============================================================================


def render_path_overview(
    path: Optional[Path], nodes: Sequence[PathNode], concepts: Sequence[Concept]
) -> str:
    """Title, status, description, unit titles in order and top concepts."""
    if path is None:
        return ""
    lines = [
        f"Path: {(path.title or '').strip() or 'Learning path'}",
        f"Status: {(path.status or '').strip() or 'unknown'}",
    ]
    description = (path.description or "").strip()
    if description:
        lines.append(f"Description: {description}")
    if nodes:
        lines.append("")
        lines.append("Unit titles (in order):")
        for node in nodes:
            lines.append(f"- {node.index}. {_unit_title(node)}")
    names = [
        (c.name or "").strip()
        for c in sorted(concepts, key=lambda c: -(c.sort_index or 0.0))[:MAX_OVERVIEW_CONCEPTS]
    ]
    names = [n for n in names if n]
    if names:
        lines.append("")
        lines.append("Concepts (high-level):")
        lines.extend(f"- {name}" for name in names)
    return "\n".join(lines).strip()


def render_path_node(node: PathNode) -> str:
    lines = [f"Unit {node.index}: {_unit_title(node)}"]
    if node.gating:
        lines.append(f"Gating: {_trim_chars(str(node.gating), 800)}")
    doc = node.doc if isinstance(node.doc, dict) else {}
    summary = str(doc.get("summary") or "").strip()
    if summary:
        lines.append(f"Summary: {_trim_chars(summary, 800)}")
    titles = [block_title(b) for b in doc_blocks(doc)]
    titles = [t for t in titles if t]
    if titles:
        lines.append("")
        lines.append("Sections:")
        lines.extend(f"- {t}" for t in titles[:12])
    return "\n".join(lines).strip()


def render_node_doc_text(node: PathNode) -> str:
    """Plain text of a node doc: summary then every readable block."""
    doc = node.doc if isinstance(node.doc, dict) else {}
    parts = []
    summary = str(doc.get("summary") or "").strip()
    if summary:
        parts.append(summary)
    for block in doc_blocks(doc):
        _, body = block_text(block)
        if not body:
            continue
        title = block_title(block)
        parts.append(f"## {title}\n{body}" if title else body)
    return "\n\n".join(parts).strip()


def render_path_concepts(concepts: Sequence[Concept]) -> str:
    lines = [f"Concepts ({len(concepts)}):"]
    lines.extend(f"- {c.name.strip()}" for c in concepts if (c.name or "").strip())
    return "\n".join(lines).strip()


def render_path_materials(
    files: Sequence[MaterialFile], material_set: Optional[MaterialSet]
) -> str:
    if not files:
        return ""
    lines = [f"Source files ({len(files)}):"]
    for file in files:
        label = file_type_label(file)
        name = file_display_name(file)
        lines.append(f"- {name} ({label})" if label else f"- {name}")
    summary = (material_set.summary_md or "").strip() if material_set is not None else ""
    if summary:
        lines.append("")
        lines.append("Material set summary:")
        lines.append(_trim_chars(summary, MATERIAL_SUMMARY_CHARS))
    return "\n".join(lines).strip()


# =============================================================================
# Indexing
# =============================================================================


def path_doc(
    doc_id: uuid.UUID,
    user_id: uuid.UUID,
    path_id: uuid.UUID,
    doc_type: str,
    source_id: Optional[uuid.UUID],
    text: str,
    contextual_text: str,
    chunk_index: int = 0,
) -> ChatDoc:
    """A path-scoped projection row."""
    now = utcnow()
    return ChatDoc(
        id=doc_id,
        user_id=user_id,
        doc_type=doc_type,
        scope=DocScope.PATH.value,
        scope_id=path_id,
        thread_id=None,
        path_id=path_id,
        job_id=None,
        source_id=source_id,
        source_seq=None,
        chunk_index=chunk_index,
        text=text,
        contextual_text=contextual_text,
        embedding=[],
        vector_id=str(doc_id),
        created_at=now,
        updated_at=now,
    )


def _versioned_id(doc_type: str, path_id: uuid.UUID, suffix: str) -> uuid.UUID:
    return deterministic_uuid(f"chat_doc|v{CHAT_PATH_DOC_VERSION}|{doc_type}|path:{path_id}|{suffix}")


def _embed_and_store(
    session: Session,
    llm: Optional[LLMClient],
    vector: Optional[VectorStore],
    user_id: uuid.UUID,
    docs: list[ChatDoc],
) -> PathIndexResult:
    """Embed contextual texts, upsert rows, mirror into the vector store."""
    result = PathIndexResult()
    if not docs:
        return result

    embeddings: list[list[float]] = [[] for _ in docs]
    if llm is not None:
        try:
            got = llm.embed([d.contextual_text for d in docs])
            if len(got) == len(docs):
                embeddings = [list(e) for e in got]
            else:
                logger.warning(f"Path index embedding count mismatch: {len(got)} != {len(docs)}")
        except ChatEngineError as e:
            logger.warning(f"Path index embedding failed, storing without embeddings: {e}")
    for doc, emb in zip(docs, embeddings):
        doc.embedding = emb

    result.docs_upserted = DocRepository(session).upsert(docs)

    if vector is not None:
        try:
            upsert_vectors(vector, chat_user_namespace(user_id), docs, embeddings)
            result.vector_upserted = len(docs)
        except ChatEngineError as e:
            logger.warning(f"Path index vector upsert failed for user {user_id}: {e}")
    return result


def index_path_for_chat(
    session: Session,
    llm: Optional[LLMClient],
    vector: Optional[VectorStore],
    user_id: uuid.UUID,
    path_id: uuid.UUID,
) -> PathIndexResult:
    """
    Rebuild the path projection for one user.

    Writes an overview doc, one doc per node, up to MAX_UNIT_DOC_CHUNKS unit
    doc chunks per node, a concepts doc and a materials doc.

    Raises:
        NotFoundError: If the path does not exist or is not owned by the user
    """
    paths = PathRepository(session)
    path = paths.get_for_user(path_id, user_id)
    if path is None:
        raise NotFoundError(f"path {path_id} not found")

    nodes = paths.list_nodes(path_id)
    concepts = paths.list_concepts(path_id)

    material_set = None
    files: list[MaterialFile] = []
    if path.material_set_id is not None:
        materials = MaterialRepository(session)
        material_set = materials.get(path.material_set_id)
        files = materials.list_files(path.material_set_id)

    doc_repo = DocRepository(session)
    prior_vector_ids = doc_repo.delete_where(
        ChatDoc.user_id == user_id,
        ChatDoc.scope == DocScope.PATH.value,
        ChatDoc.scope_id == path_id,
        ChatDoc.doc_type.in_(PATH_DOC_TYPES),
    )
    delete_vectors(vector, chat_user_namespace(user_id), prior_vector_ids)

    docs: list[ChatDoc] = []
    overview = render_path_overview(path, nodes, concepts)
    docs.append(
        path_doc(
            _versioned_id(DocType.PATH_OVERVIEW.value, path_id, "overview"),
            user_id,
            path_id,
            DocType.PATH_OVERVIEW.value,
            path_id,
            overview,
            OVERVIEW_PREFIX + overview,
        )
    )

    for node in nodes:
        body = render_path_node(node)
        docs.append(
            path_doc(
                _versioned_id(DocType.PATH_NODE.value, path_id, f"node:{node.id}"),
                user_id,
                path_id,
                DocType.PATH_NODE.value,
                node.id,
                body,
                NODE_PREFIX + body,
            )
        )
        doc_text = render_node_doc_text(node)
        chunks = [c.strip() for c in chunk_by_chars(doc_text, UNIT_DOC_CHUNK_CHARS)]
        for chunk_index, chunk in enumerate(chunks[:MAX_UNIT_DOC_CHUNKS]):
            if not chunk:
                continue
            unit_body = f"Unit {node.index}: {_unit_title(node)}\n\n{chunk}"
            docs.append(
                path_doc(
                    _versioned_id(
                        DocType.PATH_UNIT_DOC.value, path_id, f"node:{node.id}|chunk:{chunk_index}"
                    ),
                    user_id,
                    path_id,
                    DocType.PATH_UNIT_DOC.value,
                    node.id,
                    unit_body,
                    UNIT_DOC_PREFIX + unit_body,
                    chunk_index=chunk_index,
                )
            )

    if concepts:
        capped = sort_concepts(concepts)[:MAX_INDEXED_CONCEPTS]
        body = render_path_concepts(capped)
        docs.append(
            path_doc(
                _versioned_id(DocType.PATH_CONCEPTS.value, path_id, "concepts"),
                user_id,
                path_id,
                DocType.PATH_CONCEPTS.value,
                path_id,
                body,
                CONCEPTS_PREFIX + body,
            )
        )

    if material_set is not None and files:
        body = render_path_materials(files, material_set)
        docs.append(
            path_doc(
                _versioned_id(DocType.PATH_MATERIALS.value, path_id, "materials"),
                user_id,
                path_id,
                DocType.PATH_MATERIALS.value,
                material_set.id,
                body,
                MATERIALS_PREFIX + body,
            )
        )

    result = _embed_and_store(session, llm, vector, user_id, docs)
    logger.info(
        f"Indexed path {path_id} for chat: {result.docs_upserted} docs, "
        f"{result.vector_upserted} vectors"
    )
    return result


def index_path_node_blocks(
    session: Session,
    llm: Optional[LLMClient],
    vector: Optional[VectorStore],
    user_id: uuid.UUID,
    path_id: uuid.UUID,
    node_id: uuid.UUID,
) -> PathIndexResult:
    """
    Rebuild the per-block docs of one node.

    Raises:
        NotFoundError: If the path is not the user's or the node is not on it
    """
    paths = PathRepository(session)
    if paths.get_for_user(path_id, user_id) is None:
        raise NotFoundError(f"path {path_id} not found")
    node = paths.get_node(node_id)
    if node is None or node.path_id != path_id:
        raise NotFoundError(f"path node {node_id} not found on path {path_id}")

    prior_vector_ids = DocRepository(session).delete_where(
        ChatDoc.user_id == user_id,
        ChatDoc.scope == DocScope.PATH.value,
        ChatDoc.scope_id == path_id,
        ChatDoc.doc_type == DocType.PATH_UNIT_BLOCK.value,
        ChatDoc.source_id == node_id,
    )
    delete_vectors(vector, chat_user_namespace(user_id), prior_vector_ids)

    docs: list[ChatDoc] = []
    for index, block in enumerate(doc_blocks(node.doc)):
        blk_id = block_id(block, index)
        text, contextual, _, _ = build_block_doc_body(node, blk_id, block)
        if not text:
            continue
        docs.append(
            path_doc(
                _versioned_id(
                    DocType.PATH_UNIT_BLOCK.value, path_id, f"node:{node_id}|block:{blk_id}"
                ),
                user_id,
                path_id,
                DocType.PATH_UNIT_BLOCK.value,
                node_id,
                text,
                contextual,
                chunk_index=index,
            )
        )

    result = _embed_and_store(session, llm, vector, user_id, docs)
    logger.info(f"Indexed {result.docs_upserted} blocks of node {node_id} on path {path_id}")
    return result
