"""
Thread maintainer.

Runs the four incremental phases behind chat_maintain. Each phase reads the
messages past its cursor, derives its artifacts and then advances the
cursor, which never moves backwards:

1. index      message chunks -> contextual text -> message_chunk docs
2. summarize  RAPTOR leaves and upper levels -> summary docs
3. graph      entities, relations and claims -> entity/claim docs
4. memory     durable memory items -> memory docs

Model failures inside a phase are logged and the cursor still moves past
the window. Afterwards the thread graph is mirrored to Neo4j when enabled.
"""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional, Sequence

from sqlalchemy.orm import Session

from tutorchat.chat.graph_mirror import Neo4jGraphMirror, mirror_thread_graph
from tutorchat.chat.prompts import (
    CONTEXTUALIZE_CHUNK_SCHEMA,
    GRAPH_EXTRACT_SCHEMA,
    MEMORY_EXTRACT_SCHEMA,
    SCHEMA_CONTEXTUALIZE_CHUNK,
    SCHEMA_GRAPH_EXTRACT,
    SCHEMA_MEMORY_EXTRACT,
    contextualize_chunk_prompt,
    graph_extract_prompt,
    memory_extract_prompt,
)
from tutorchat.chat.raptor import format_window, summarize_thread
from tutorchat.chat.retrieval import upsert_vectors
from tutorchat.chat.textutil import chunk_by_chars, format_recent
from tutorchat.config import settings
from tutorchat.db.repositories import (
    DocRepository,
    GraphRepository,
    MemoryRepository,
    MessageRepository,
    ThreadRepository,
    ThreadStateRepository,
)
from tutorchat.db.repositories.memory import memory_item_id
from tutorchat.exceptions import ChatEngineError, NotFoundError
from tutorchat.llm.base import LLMClient
from tutorchat.models.db import (
    ChatClaim,
    ChatDoc,
    ChatEdge,
    ChatMemoryItem,
    ChatMessage,
    ChatThread,
    DocScope,
    DocType,
    MemoryKind,
    MessageStatus,
)
from tutorchat.utils.hashing import deterministic_uuid
from tutorchat.utils.timeutil import utcnow
from tutorchat.vector import VectorStore, chat_user_namespace

logger = logging.getLogger(__name__)

CHAT_CHUNK_VERSION = 1
CHAT_GRAPH_VERSION = 1

INDEX_BATCH = 500
SUMMARY_BATCH = 1000
GRAPH_BATCH = 300
MEMORY_BATCH = 250
INDEX_RECENT_MESSAGES = 16
INDEX_RECENT_KEEP = 12
DEFAULT_EDGE_WEIGHT = 0.5

MEMORY_KINDS = frozenset(k.value for k in MemoryKind)

StageCallback = Callable[[str], None]


@dataclass
class MaintainResult:
    indexed_messages: int = 0
    chunk_docs: int = 0
    summary_leaves: int = 0
    summary_parents: int = 0
    entities: int = 0
    edges: int = 0
    claims: int = 0
    memory_items: int = 0
    mirrored: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def chunk_doc_id(message_id: uuid.UUID, chunk_index: int) -> uuid.UUID:
    return deterministic_uuid(
        f"chat_doc|v{CHAT_CHUNK_VERSION}|{DocType.MESSAGE_CHUNK.value}|{message_id}|{chunk_index}"
    )


def settled_prefix(messages: Sequence[ChatMessage]) -> list[ChatMessage]:
    """Messages up to (not including) the first reply still streaming."""
    out = []
    for message in messages:
        if message.status == MessageStatus.STREAMING.value:
            break
        out.append(message)
    return out


def _int_list(values: Any) -> list[int]:
    out = []
    for value in values or []:
        try:
            out.append(int(value))
        except (TypeError, ValueError):
            continue
    return out


def _unit(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return min(1.0, max(0.0, number))


class ThreadMaintainer:
    """Runs the maintenance phases for one thread."""

    def __init__(
        self,
        session: Session,
        llm: LLMClient,
        vector: Optional[VectorStore] = None,
        mirror: Optional[Neo4jGraphMirror] = None,
        on_stage: Optional[StageCallback] = None,
    ):
        self.session = session
        self.llm = llm
        self.vector = vector
        self.mirror = mirror
        self.on_stage = on_stage
        self.messages = MessageRepository(session)
        self.states = ThreadStateRepository(session)
        self.docs = DocRepository(session)
        self.graph = GraphRepository(session)
        self.memory = MemoryRepository(session)

    def _stage(self, name: str) -> None:
        if self.on_stage is not None:
            self.on_stage(name)

    def run(self, user_id: uuid.UUID, thread_id: uuid.UUID) -> MaintainResult:
        """
        Maintain a thread owned by the user.

        Each phase commits its artifacts together with its cursor advance.

        Raises:
            NotFoundError: If the thread is missing, archived or not the user's
        """
        thread = ThreadRepository(self.session).get_for_user(thread_id, user_id)
        if thread is None:
            raise NotFoundError(f"thread {thread_id} not found")

        state = self.states.ensure(thread.id)
        cursors = (
            state.last_indexed_seq or 0,
            state.last_summarized_seq or 0,
            state.last_graph_seq or 0,
            state.last_memory_seq or 0,
        )
        result = MaintainResult()

        self._stage("index")
        self.index(thread, cursors[0], result)
        self.session.commit()

        self._stage("summarize")
        self.summarize(thread, cursors[1], result)
        self.session.commit()

        self._stage("graph")
        self.extract_graph(thread, cursors[2], result)
        self.session.commit()

        self._stage("memory")
        self.extract_memory(thread, cursors[3], result)
        self.session.commit()

        result.mirrored = mirror_thread_graph(self.session, thread, self.mirror)
        logger.info(f"Maintained thread {thread.id}: {result.to_dict()}")
        return result

    # -------------------------------------------------------------------------
    # Shared helpers
    # -------------------------------------------------------------------------

    def _doc(
        self,
        thread: ChatThread,
        doc_id: uuid.UUID,
        doc_type: str,
        source_id: Optional[uuid.UUID],
        text: str,
        contextual_text: str,
        source_seq: Optional[int] = None,
        chunk_index: int = 0,
        scope: str = DocScope.THREAD.value,
        scope_id: Optional[uuid.UUID] = None,
        created_at=None,
    ) -> ChatDoc:
        now = utcnow()
        return ChatDoc(
            id=doc_id,
            user_id=thread.user_id,
            doc_type=doc_type,
            scope=scope,
            scope_id=thread.id if scope == DocScope.THREAD.value else scope_id,
            thread_id=thread.id,
            path_id=thread.path_id,
            job_id=thread.job_id,
            source_id=source_id,
            source_seq=source_seq,
            chunk_index=chunk_index,
            text=text,
            contextual_text=contextual_text,
            embedding=[],
            vector_id=str(doc_id),
            created_at=created_at or now,
            updated_at=now,
        )

    def _embed(self, texts: list[str]) -> list[list[float]]:
        """Embeddings per text; all empty when the provider fails."""
        if not texts:
            return []
        try:
            got = self.llm.embed(texts)
        except ChatEngineError as e:
            logger.warning(f"Embedding {len(texts)} docs failed: {e}")
            return [[] for _ in texts]
        if len(got) != len(texts):
            logger.warning(f"Embedding count mismatch: {len(got)} != {len(texts)}")
            return [[] for _ in texts]
        return [list(e) for e in got]

    def _store(
        self,
        thread: ChatThread,
        docs: list[ChatDoc],
        embeddings: Optional[list[list[float]]] = None,
    ) -> int:
        """Upsert docs and mirror them into the vector store (best-effort)."""
        if not docs:
            return 0
        if embeddings is None:
            embeddings = self._embed([d.contextual_text or d.text for d in docs])
        for doc, emb in zip(docs, embeddings):
            doc.embedding = emb
        count = self.docs.upsert(docs)
        try:
            upsert_vectors(self.vector, chat_user_namespace(thread.user_id), docs, embeddings)
        except ChatEngineError as e:
            logger.warning(f"Vector upsert failed for thread {thread.id}: {e}")
        return count

    # -------------------------------------------------------------------------
    # Phase 1: index
    # -------------------------------------------------------------------------

    def _contextualize(self, title: str, role: str, chunk: str, recent: str) -> tuple[str, list[float]]:
        """Runs on a pool thread; touches only the model client."""
        contextual = chunk
        system, user = contextualize_chunk_prompt(title, role, chunk, recent)
        try:
            obj = self.llm.generate_json(
                system, user, SCHEMA_CONTEXTUALIZE_CHUNK, CONTEXTUALIZE_CHUNK_SCHEMA
            )
            contextual = str(obj.get("contextual_text") or "").strip() or chunk
        except ChatEngineError as e:
            logger.warning(f"Chunk contextualization failed, using raw text: {e}")
        try:
            embedding = self.llm.embed([contextual])
        except ChatEngineError as e:
            logger.warning(f"Chunk embedding failed: {e}")
            return contextual, []
        return contextual, list(embedding[0]) if embedding else []

    def index(self, thread: ChatThread, cursor: int, result: MaintainResult) -> None:
        messages = settled_prefix(self.messages.list_after_seq(thread.id, cursor, INDEX_BATCH))
        if not messages:
            return
        recent = format_recent(
            self.messages.list_recent(thread.id, INDEX_RECENT_MESSAGES), INDEX_RECENT_KEEP
        )
        title = (thread.title or "").strip()

        work: list[tuple[ChatMessage, int, str]] = []
        for message in messages:
            if message.status == MessageStatus.ERROR.value:
                continue
            for idx, chunk in enumerate(chunk_by_chars(message.content, settings.chat_index_chunk_chars)):
                work.append((message, idx, chunk))

        docs: list[ChatDoc] = []
        embeddings: list[list[float]] = []
        if work:
            workers = max(1, min(settings.chat_index_concurrency, len(work)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="chat_index") as pool:
                futures = [
                    pool.submit(self._contextualize, title, m.role, chunk, recent)
                    for m, _, chunk in work
                ]
                outputs = [f.result() for f in futures]
            for (message, idx, chunk), (contextual, embedding) in zip(work, outputs):
                docs.append(
                    self._doc(
                        thread,
                        chunk_doc_id(message.id, idx),
                        DocType.MESSAGE_CHUNK.value,
                        message.id,
                        chunk,
                        contextual,
                        source_seq=message.seq,
                        chunk_index=idx,
                        created_at=message.created_at,
                    )
                )
                embeddings.append(embedding)

        result.chunk_docs += self._store(thread, docs, embeddings)
        result.indexed_messages += len(messages)
        self.states.advance(thread.id, last_indexed_seq=messages[-1].seq)

    # -------------------------------------------------------------------------
    # Phase 2: summarize
    # -------------------------------------------------------------------------

    def summarize(self, thread: ChatThread, cursor: int, result: MaintainResult) -> None:
        messages = settled_prefix(self.messages.list_after_seq(thread.id, cursor, SUMMARY_BATCH))
        if not messages:
            return
        raptor = summarize_thread(self.session, self.llm, thread, messages)
        result.summary_leaves += raptor.leaves
        result.summary_parents += raptor.parents
        self._store(thread, raptor.docs)
        self.states.advance(thread.id, last_summarized_seq=messages[-1].seq)

    # -------------------------------------------------------------------------
    # Phase 3: graph
    # -------------------------------------------------------------------------

    def extract_graph(self, thread: ChatThread, cursor: int, result: MaintainResult) -> None:
        messages = settled_prefix(self.messages.list_after_seq(thread.id, cursor, GRAPH_BATCH))
        if not messages:
            return
        last_seq = messages[-1].seq
        window = format_window(messages)
        if not window:
            self.states.advance(thread.id, last_graph_seq=last_seq)
            return

        system, user = graph_extract_prompt(thread.title or "", window)
        try:
            obj = self.llm.generate_json(system, user, SCHEMA_GRAPH_EXTRACT, GRAPH_EXTRACT_SCHEMA)
        except ChatEngineError as e:
            logger.warning(f"Graph extraction failed for thread {thread.id}, skipping window: {e}")
            self.states.advance(thread.id, last_graph_seq=last_seq)
            return

        scope = DocScope.THREAD.value
        docs: list[ChatDoc] = []
        name_to_id: dict[str, uuid.UUID] = {}

        for raw in obj.get("entities") or []:
            if not isinstance(raw, dict):
                continue
            name = str(raw.get("name") or "").strip()
            if not name:
                continue
            entity_type = str(raw.get("type") or "").strip() or "unknown"
            description = str(raw.get("description") or "").strip()
            entity = self.graph.upsert_entity_by_name(
                thread.user_id,
                scope,
                thread.id,
                name,
                entity_type=entity_type,
                description=description,
                aliases=[str(a) for a in raw.get("aliases") or []],
            )
            name_to_id[name.lower()] = entity.id
            result.entities += 1
            text = f"Entity: {name}\nType: {entity_type}\nDescription: {description}"
            docs.append(
                self._doc(
                    thread,
                    deterministic_uuid(f"chat_doc|{DocType.ENTITY.value}|{entity.id}"),
                    DocType.ENTITY.value,
                    entity.id,
                    text,
                    "Graph entity:\n" + text,
                    source_seq=last_seq,
                )
            )

        for raw in obj.get("relations") or []:
            if not isinstance(raw, dict):
                continue
            src = name_to_id.get(str(raw.get("src") or "").strip().lower())
            dst = name_to_id.get(str(raw.get("dst") or "").strip().lower())
            relation = str(raw.get("relation") or "").strip()
            if src is None or dst is None or not relation:
                continue
            weight = _unit(raw.get("weight"))
            edge_id = deterministic_uuid(
                f"chat_edge|v{CHAT_GRAPH_VERSION}|user:{thread.user_id}|scope:{scope}"
                f"|scope_id:{thread.id}|src:{src}|dst:{dst}|rel:{relation}"
            )
            inserted = self.graph.insert_edge_ignore(
                ChatEdge(
                    id=edge_id,
                    user_id=thread.user_id,
                    scope=scope,
                    scope_id=thread.id,
                    src_entity_id=src,
                    dst_entity_id=dst,
                    relation=relation,
                    weight=weight if weight > 0 else DEFAULT_EDGE_WEIGHT,
                    evidence_seqs=_int_list(raw.get("evidence_seqs")),
                )
            )
            if inserted:
                result.edges += 1

        for raw in obj.get("claims") or []:
            if not isinstance(raw, dict):
                continue
            content = str(raw.get("content") or "").strip()
            if not content:
                continue
            claim_id = deterministic_uuid(f"chat_claim|{thread.id}|{content}")
            if self.graph.insert_claim_ignore(
                ChatClaim(
                    id=claim_id,
                    user_id=thread.user_id,
                    scope=scope,
                    scope_id=thread.id,
                    thread_id=thread.id,
                    content=content,
                    confidence=0.0,
                    entity_names=[str(n) for n in raw.get("entity_names") or []],
                    evidence_seqs=_int_list(raw.get("evidence_seqs")),
                )
            ):
                result.claims += 1
            text = f"Claim: {content}"
            docs.append(
                self._doc(
                    thread,
                    deterministic_uuid(f"chat_doc|{DocType.CLAIM.value}|{claim_id}"),
                    DocType.CLAIM.value,
                    claim_id,
                    text,
                    "Graph claim:\n" + text,
                    source_seq=last_seq,
                )
            )

        self._store(thread, docs)
        self.states.advance(thread.id, last_graph_seq=last_seq)

    # -------------------------------------------------------------------------
    # Phase 4: memory
    # -------------------------------------------------------------------------

    def _memory_scope(
        self, thread: ChatThread, scope: str
    ) -> tuple[Optional[str], Optional[uuid.UUID]]:
        if scope == DocScope.PATH.value:
            if thread.path_id is None:
                return None, None
            return scope, thread.path_id
        if scope == DocScope.USER.value:
            return scope, None
        return DocScope.THREAD.value, thread.id

    def extract_memory(self, thread: ChatThread, cursor: int, result: MaintainResult) -> None:
        messages = settled_prefix(self.messages.list_after_seq(thread.id, cursor, MEMORY_BATCH))
        if not messages:
            return
        last_seq = messages[-1].seq
        window = format_window(messages)
        items_raw: list[Any] = []
        if window:
            system, user = memory_extract_prompt(thread.title or "", window)
            try:
                obj = self.llm.generate_json(
                    system, user, SCHEMA_MEMORY_EXTRACT, MEMORY_EXTRACT_SCHEMA
                )
                items_raw = obj.get("items") or []
            except ChatEngineError as e:
                logger.warning(f"Memory extraction failed for thread {thread.id}, skipping window: {e}")

        items: dict[uuid.UUID, ChatMemoryItem] = {}
        for raw in items_raw:
            if not isinstance(raw, dict):
                continue
            kind = str(raw.get("kind") or "").strip().lower()
            key = str(raw.get("key") or "").strip()
            value = str(raw.get("value") or "").strip()
            if kind not in MEMORY_KINDS or not key or not value:
                continue
            scope, scope_id = self._memory_scope(thread, str(raw.get("scope") or "").strip().lower())
            if scope is None:
                continue
            item_id = memory_item_id(thread.user_id, scope, scope_id, kind, key)
            items[item_id] = ChatMemoryItem(
                id=item_id,
                user_id=thread.user_id,
                scope=scope,
                scope_id=scope_id,
                thread_id=thread.id,
                path_id=thread.path_id,
                job_id=thread.job_id,
                kind=kind,
                key=key,
                value=value,
                confidence=_unit(raw.get("confidence")),
                evidence_seqs=_int_list(raw.get("evidence_seqs")),
            )

        if items:
            stored = self.memory.upsert_many(items.values())
            result.memory_items += len(stored)
            docs = []
            for item in stored:
                text = f"Memory ({item.kind}): {item.key} = {item.value}"
                docs.append(
                    self._doc(
                        thread,
                        deterministic_uuid(f"chat_doc|{DocType.MEMORY.value}|{item.id}"),
                        DocType.MEMORY.value,
                        item.id,
                        text,
                        "Durable memory item:\n" + text,
                        source_seq=last_seq,
                        scope=item.scope,
                        scope_id=item.scope_id,
                    )
                )
            self._store(thread, docs)
        self.states.advance(thread.id, last_memory_seq=last_seq)


def maintain_thread(
    session: Session,
    llm: LLMClient,
    vector: Optional[VectorStore],
    user_id: uuid.UUID,
    thread_id: uuid.UUID,
    on_stage: Optional[StageCallback] = None,
) -> MaintainResult:
    """Run every maintenance phase for a thread."""
    return ThreadMaintainer(session, llm, vector, on_stage=on_stage).run(user_id, thread_id)
