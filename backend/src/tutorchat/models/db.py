"""
SQLAlchemy database models for TutorChat.

These models hold the canonical chat log (threads, messages, turns), the
per-thread maintenance cursors, the derived retrieval projections (chat docs,
RAPTOR summary nodes, knowledge graph rows, durable memory), the job queue and
the read-only learning path content the engine grounds its answers in.
"""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from tutorchat.utils.timeutil import utcnow


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class ThreadStatus(str, enum.Enum):
    """Lifecycle of a chat thread."""

    ACTIVE = "active"
    ARCHIVED = "archived"


class MessageRole(str, enum.Enum):
    """Author of a chat message."""

    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, enum.Enum):
    """Delivery state of a chat message."""

    SENT = "sent"  # User messages
    STREAMING = "streaming"  # Assistant placeholder being filled
    DONE = "done"
    ERROR = "error"


class TurnStatus(str, enum.Enum):
    """State machine of one user message -> assistant reply."""

    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class DocScope(str, enum.Enum):
    """Visibility namespace of a projection row."""

    THREAD = "thread"
    PATH = "path"
    USER = "user"


class DocType(str, enum.Enum):
    """Kinds of retrieval projection rows."""

    MESSAGE_CHUNK = "message_chunk"
    SUMMARY = "summary"
    MEMORY = "memory"
    ENTITY = "entity"
    CLAIM = "claim"
    PATH_OVERVIEW = "path_overview"
    PATH_NODE = "path_node"
    PATH_CONCEPTS = "path_concepts"
    PATH_MATERIALS = "path_materials"
    PATH_UNIT_DOC = "path_unit_doc"
    PATH_UNIT_BLOCK = "path_unit_block"


class MemoryKind(str, enum.Enum):
    """Kinds of durable memory items."""

    FACT = "fact"
    PREFERENCE = "preference"
    DECISION = "decision"
    TODO = "todo"


class JobStatus(str, enum.Enum):
    """Status of a background job."""

    QUEUED = "queued"
    RUNNING = "running"
    WAITING_USER = "waiting_user"  # Suspended at a waitpoint
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


RUNNABLE_JOB_STATUSES = (
    JobStatus.QUEUED.value,
    JobStatus.RUNNING.value,
    JobStatus.WAITING_USER.value,
)


# =============================================================================
# Canonical chat log
# =============================================================================


class ChatThread(Base):
    """A conversation between one user and the assistant."""

    __tablename__ = "chat_thread"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="New chat")
    path_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("path.id", ondelete="SET NULL"), index=True
    )
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    next_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ThreadStatus.ACTIVE.value
    )
    meta: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    messages: Mapped[list["ChatMessage"]] = relationship(
        back_populates="thread",
        order_by="ChatMessage.seq",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<ChatThread(id={self.id}, title={self.title!r}, next_seq={self.next_seq})>"


class ChatMessage(Base):
    """One message in a thread. Seqs are gapless from 1."""

    __tablename__ = "chat_message"
    __table_args__ = (
        UniqueConstraint("thread_id", "seq", name="uq_chat_message_thread_seq"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    thread_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("chat_thread.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    thread: Mapped["ChatThread"] = relationship(back_populates="messages")

    def __repr__(self) -> str:
        return (
            f"<ChatMessage(id={self.id}, seq={self.seq}, role={self.role!r}, "
            f"status={self.status!r})>"
        )


class ChatTurn(Base):
    """Links a user message to its assistant reply. Idempotency key of a reply."""

    __tablename__ = "chat_turn"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    thread_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("chat_thread.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_message_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    assistant_message_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False
    )
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TurnStatus.QUEUED.value
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retrieval_trace: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ChatTurn(id={self.id}, status={self.status!r}, attempt={self.attempt})>"


class ChatThreadState(Base):
    """Per-thread maintenance cursors. Cursors never decrease."""

    __tablename__ = "chat_thread_state"

    thread_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("chat_thread.id", ondelete="CASCADE"),
        primary_key=True,
    )
    last_indexed_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_summarized_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_graph_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_memory_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    openai_conversation_id: Mapped[Optional[str]] = mapped_column(String(255))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ChatThreadState(thread_id={self.thread_id}, "
            f"indexed={self.last_indexed_seq}, summarized={self.last_summarized_seq}, "
            f"graph={self.last_graph_seq}, memory={self.last_memory_seq})>"
        )


# =============================================================================
# Derived projections (rebuildable from the canonical log)
# =============================================================================


class ChatDoc(Base):
    """Retrieval projection row. Ids are deterministic per source."""

    __tablename__ = "chat_doc"
    __table_args__ = (
        Index("ix_chat_doc_user_scope", "user_id", "scope", "scope_id"),
        Index("ix_chat_doc_thread_type", "thread_id", "doc_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    doc_type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    scope: Mapped[str] = mapped_column(String(20), nullable=False)
    scope_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    thread_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    path_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    source_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    source_seq: Mapped[Optional[int]] = mapped_column(Integer)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    contextual_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    embedding: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    vector_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ChatDoc(id={self.id}, doc_type={self.doc_type!r}, scope={self.scope!r})>"


class ChatSummaryNode(Base):
    """Node of the RAPTOR summary forest (level 0 = leaf window)."""

    __tablename__ = "chat_summary_node"
    __table_args__ = (Index("ix_chat_summary_thread_level", "thread_id", "level"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    thread_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("chat_thread.id", ondelete="CASCADE"),
        nullable=False,
    )
    parent_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_seq: Mapped[int] = mapped_column(Integer, nullable=False)
    end_seq: Mapped[int] = mapped_column(Integer, nullable=False)
    summary_md: Mapped[str] = mapped_column(Text, nullable=False, default="")
    child_node_ids: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ChatSummaryNode(id={self.id}, level={self.level}, "
            f"range={self.start_seq}..{self.end_seq})>"
        )


class ChatEntity(Base):
    """Canonical entity extracted from a thread."""

    __tablename__ = "chat_entity"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "scope", "scope_id", "name_norm", name="uq_chat_entity_name"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    scope: Mapped[str] = mapped_column(String(20), nullable=False)
    scope_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    name_norm: Mapped[str] = mapped_column(String(500), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    aliases: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


class ChatEdge(Base):
    """Directed typed relation between two entities."""

    __tablename__ = "chat_edge"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    scope: Mapped[str] = mapped_column(String(20), nullable=False)
    scope_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    src_entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    dst_entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    relation: Mapped[str] = mapped_column(String(200), nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    evidence_seqs: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class ChatClaim(Base):
    """Short verifiable statement grounded in thread messages."""

    __tablename__ = "chat_claim"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    scope: Mapped[str] = mapped_column(String(20), nullable=False)
    scope_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    thread_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    content: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    entity_names: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    evidence_seqs: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class ChatMemoryItem(Base):
    """Durable memory item, unique per (user, scope, scope_id, kind, key)."""

    __tablename__ = "chat_memory_item"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    scope: Mapped[str] = mapped_column(String(20), nullable=False)
    scope_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    thread_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    path_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    key: Mapped[str] = mapped_column(String(500), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    evidence_seqs: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


# =============================================================================
# Job queue
# =============================================================================


class JobRun(Base):
    """A background job, leased by the worker and retried with backoff."""

    __tablename__ = "job_run"
    __table_args__ = (
        Index("ix_job_run_status_run_at", "status", "run_at"),
        Index(
            "ix_job_run_entity",
            "owner_user_id",
            "entity_type",
            "entity_id",
            "job_type",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    owner_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    result: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.QUEUED.value
    )
    stage: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    error: Mapped[Optional[str]] = mapped_column(Text)
    run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<JobRun(id={self.id}, job_type={self.job_type!r}, "
            f"status={self.status!r}, attempt={self.attempt})>"
        )


# =============================================================================
# Learning path content (read by the engine)
# =============================================================================


class MaterialSet(Base):
    """A set of uploaded source files."""

    __tablename__ = "material_set"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    summary_md: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class MaterialFile(Base):
    """One source file of a material set."""

    __tablename__ = "material_file"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    material_set_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("material_set.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    original_name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    mime_type: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class MaterialChunk(Base):
    """Extracted text chunk of a material file, with an optional locator."""

    __tablename__ = "material_chunk"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    material_file_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("material_file.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    embedding: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    page: Mapped[Optional[int]] = mapped_column(Integer)
    start_sec: Mapped[Optional[float]] = mapped_column(Float)
    end_sec: Mapped[Optional[float]] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class Path(Base):
    """A learning path (course) built for a user."""

    __tablename__ = "path"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    material_set_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("material_set.id", ondelete="SET NULL")
    )
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(40), nullable=False, default="")
    meta: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


class PathNode(Base):
    """A unit of a learning path. `doc` holds {summary, blocks: [...]}."""

    __tablename__ = "path_node"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    path_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("path.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    parent_node_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    gating: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)
    doc: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


class Concept(Base):
    """A concept of a learning path (scope=path) or a canonical global concept."""

    __tablename__ = "concept"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    scope: Mapped[str] = mapped_column(String(20), nullable=False, default="path")
    scope_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    key: Mapped[str] = mapped_column(String(200), nullable=False)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sort_index: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    canonical_concept_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class ConceptEdge(Base):
    """Typed relation between concepts (prereq, related, analogy)."""

    __tablename__ = "concept_edge"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    from_concept_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    to_concept_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    edge_type: Mapped[str] = mapped_column(String(40), nullable=False, default="related")
    strength: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)


class ConceptEvidence(Base):
    """Links a concept to a material chunk that supports it."""

    __tablename__ = "concept_evidence"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    concept_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    material_chunk_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)


class UserSessionState(Base):
    """Server-side snapshot of what the user is looking at."""

    __tablename__ = "user_session_state"

    session_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    active_path_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    active_path_node_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    active_doc_block_id: Mapped[Optional[str]] = mapped_column(String(200))
    active_view: Mapped[Optional[str]] = mapped_column(String(100))
    active_route: Mapped[Optional[str]] = mapped_column(String(500))
    scroll_percent: Mapped[Optional[float]] = mapped_column(Float)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class UserConceptState(Base):
    """Per-user mastery estimate for a concept."""

    __tablename__ = "user_concept_state"
    __table_args__ = (
        UniqueConstraint("user_id", "concept_id", name="uq_user_concept_state"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    concept_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    mastery: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
