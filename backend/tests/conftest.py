"""
Pytest configuration and fixtures for TutorChat tests.

Tests run against SQLite in-memory. Every test gets a session bound to an
outer transaction; commits inside the code under test only release
savepoints, so each test starts from empty tables.
"""

import hashlib
import math
import os
import re
import threading
import uuid
from contextlib import nullcontext
from typing import Any, Callable, Generator, Optional

os.environ.setdefault("DATABASE_URL_OVERRIDE", "sqlite:///:memory:")
os.environ.setdefault("WORKER_ENABLED", "false")
os.environ.setdefault("GRAPH_MIRROR_ENABLED", "false")
os.environ.setdefault("LLM_LOGGING_ENABLED", "false")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from tutorchat.chat import prompts
from tutorchat.exceptions import OperationCancelledError
from tutorchat.llm.base import LLMClient
from tutorchat.models.db import (
    Base,
    ChatMessage,
    ChatThread,
    MaterialChunk,
    MaterialFile,
    MaterialSet,
    MessageRole,
    MessageStatus,
    Path,
    PathNode,
)
from tutorchat.sse.hub import ChatNotifier, SSEHub
from tutorchat.vector.memory import InMemoryVectorStore

EMBED_DIM = 16
DEFAULT_REPLY = "Here is what I found in your notes."
DEFAULT_FAST_REPLY = "Doing well, thanks! What are we studying today?"

_WORD_RE = re.compile(r"\w+")
_RERANK_ID_RE = re.compile(r"id=([0-9a-fA-F-]{36})")
_SELECT_ID_RE = re.compile(r"^- id: (\S+)", re.MULTILINE)


def bag_of_words_embedding(text: str, dim: int = EMBED_DIM) -> list[float]:
    """Deterministic unit vector from hashed lowercase words."""
    vec = [0.0] * dim
    for word in _WORD_RE.findall((text or "").lower()):
        bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dim
        vec[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vec))
    if norm == 0:
        vec[0] = 1.0
        return vec
    return [v / norm for v in vec]


class StubLLMClient(LLMClient):
    """
    Deterministic in-process model client.

    JSON calls are answered per schema name from `json_responses`: a dict is
    returned as a copy, a callable is called with (system, user) and an
    exception instance is raised. Unscripted schemas get a neutral default.

    Streams pop entries from `stream_script`: a string, a callable
    (instructions, user) -> str, or a (partial_text, exception) pair that
    emits the partial text and then raises. An empty script streams
    `reply`.
    """

    def __init__(self, reply: str = DEFAULT_REPLY, fast_reply: str = DEFAULT_FAST_REPLY):
        self.reply = reply
        self.fast_reply = fast_reply
        self.json_responses: dict[str, Any] = {}
        self.stream_script: list[Any] = []
        self.text_responses: list[str] = []
        self.calls: list[tuple[str, str]] = []
        self.models: list[str] = []
        self.conversations_created = 0
        self._lock = threading.Lock()

    @property
    def provider_name(self) -> str:
        return "stub"

    @property
    def model_name(self) -> str:
        return "stub-model"

    def _record(self, kind: str, detail: str = "") -> None:
        with self._lock:
            self.calls.append((kind, detail))

    def calls_of(self, kind: str) -> list[str]:
        with self._lock:
            return [detail for k, detail in self.calls if k == kind]

    def with_model(self, model: str) -> "StubLLMClient":
        with self._lock:
            self.models.append(model)
        return self

    def embed(self, texts: list[str]) -> list[list[float]]:
        self._record("embed", str(len(texts)))
        return [bag_of_words_embedding(t) for t in texts]

    def generate_json(
        self,
        system: str,
        user: str,
        schema_name: str,
        schema: dict[str, Any],
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        self._record("json", schema_name)
        scripted = self.json_responses.get(schema_name)
        if isinstance(scripted, Exception):
            raise scripted
        if callable(scripted):
            return scripted(system, user)
        if scripted is not None:
            return dict(scripted)
        return self._default_json(schema_name, user)

    def _default_json(self, schema_name: str, user: str) -> dict[str, Any]:
        if schema_name == prompts.SCHEMA_CHAT_ROUTE:
            return {"route": "product", "respond_fast": False, "tool_calls": []}
        if schema_name == prompts.SCHEMA_CONTEXT_ROUTE:
            return {"mode": "explain", "confidence": 0.0, "reason": "", "lanes": {}}
        if schema_name == prompts.SCHEMA_CONTEXTUALIZE_QUERY:
            return {"contextual_query": ""}
        if schema_name == prompts.SCHEMA_RERANK:
            return {"results": [{"id": i, "score": 90} for i in _RERANK_ID_RE.findall(user)]}
        if schema_name == prompts.SCHEMA_EVIDENCE_SELECT:
            return {
                "selected_ids": _SELECT_ID_RE.findall(user),
                "confidence": 0.9,
                "reason": "stub",
            }
        if schema_name == prompts.SCHEMA_CONTEXTUALIZE_CHUNK:
            return {"contextual_text": ""}
        if schema_name == prompts.SCHEMA_SUMMARIZE_NODE:
            digest = hashlib.md5(user.encode("utf-8")).hexdigest()[:12]
            return {"summary_md": f"- summary {digest}"}
        if schema_name == prompts.SCHEMA_GRAPH_EXTRACT:
            return {"entities": [], "relations": [], "claims": []}
        if schema_name == prompts.SCHEMA_MEMORY_EXTRACT:
            return {"items": []}
        return {}

    def generate_text(self, system: str, user: str) -> str:
        self._record("text")
        with self._lock:
            if self.text_responses:
                return self.text_responses.pop(0)
        return self.fast_reply

    def _next_stream(self, instructions: str, user: str) -> tuple[str, Optional[Exception]]:
        with self._lock:
            entry = self.stream_script.pop(0) if self.stream_script else self.reply
        if isinstance(entry, tuple):
            return entry[0], entry[1]
        if callable(entry):
            return entry(instructions, user), None
        return entry, None

    def _emit(
        self,
        instructions: str,
        user: str,
        on_delta: Optional[Callable[[str], None]],
        cancel: Optional[threading.Event] = None,
    ) -> str:
        text, error = self._next_stream(instructions, user)
        for start in range(0, len(text), 8):
            if cancel is not None and cancel.is_set():
                raise OperationCancelledError("stream cancelled")
            if on_delta is not None:
                on_delta(text[start:start + 8])
        if error is not None:
            raise error
        return text

    def stream_text(
        self,
        system: str,
        user: str,
        on_delta: Optional[Callable[[str], None]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        self._record("stream")
        return self._emit(system, user, on_delta, cancel)

    def create_conversation(self) -> str:
        with self._lock:
            self.conversations_created += 1
        self._record("conversation")
        return "conv_stub"

    def generate_text_in_conversation(
        self, conversation_id: str, instructions: str, user: str
    ) -> str:
        self._record("text_in_conversation", conversation_id)
        return self.reply

    def stream_text_in_conversation(
        self,
        conversation_id: str,
        instructions: str,
        user: str,
        on_delta: Optional[Callable[[str], None]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        self._record("stream_in_conversation", conversation_id)
        return self._emit(instructions, user, on_delta, cancel)


# ===== Database =====


@pytest.fixture(scope="session")
def test_engine():
    """Create a test database engine using SQLite in-memory."""
    from sqlalchemy import JSON
    from sqlalchemy.dialects import postgresql

    # Replace JSONB with JSON for SQLite
    @event.listens_for(Base.metadata, "before_create")
    def _set_json_type(target, connection, **kw):
        for table in target.tables.values():
            for column in table.columns:
                if isinstance(column.type, postgresql.JSONB):
                    column.type = JSON()

    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},  # TestClient runs handlers on other threads
        poolclass=StaticPool,
    )

    # pysqlite issues its own BEGIN lazily, which breaks SAVEPOINT; take over
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(test_engine) -> Generator[Session, None, None]:
    """Session whose commits become savepoints of a per-test transaction."""
    connection = test_engine.connect()
    transaction = connection.begin()
    session = sessionmaker(bind=connection, join_transaction_mode="create_savepoint")()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


# ===== Engine collaborators =====


@pytest.fixture
def stub_llm() -> StubLLMClient:
    return StubLLMClient()


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def hub() -> SSEHub:
    return SSEHub(buffer_size=512)


@pytest.fixture
def notifier(hub: SSEHub) -> ChatNotifier:
    return ChatNotifier(hub)


@pytest.fixture
def run_jobs(db_session, stub_llm, vector_store, notifier):
    """
    Drain due jobs through a worker sharing the test session.

    Only chat_respond is handled unless other handlers are passed.
    """
    from tutorchat.jobs.handlers import handle_chat_respond
    from tutorchat.jobs.queue import JOB_CHAT_RESPOND
    from tutorchat.jobs.worker import JobWorker

    def _run(handlers: Optional[dict] = None, max_jobs: int = 20) -> int:
        worker = JobWorker(
            handlers=handlers or {JOB_CHAT_RESPOND: handle_chat_respond},
            notifier=notifier,
            llm=stub_llm,
            vector=vector_store,
            session_factory=lambda: nullcontext(db_session),
        )
        return worker.drain(max_jobs=max_jobs)

    return _run


# ===== API =====


@pytest.fixture
def api_client(db_session):
    """FastAPI test client using the test session and skipping startup checks."""
    from unittest.mock import patch

    from fastapi.testclient import TestClient

    from tutorchat.api.app import app
    from tutorchat.db.connection import get_db

    def override_get_db():
        try:
            yield db_session
            db_session.commit()
        except Exception:
            db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db

    with patch("tutorchat.api.app.run_all_startup_checks"):
        client = TestClient(app)
        yield client

    app.dependency_overrides.clear()
    app.state.sse_hub = None


# ===== Sample data =====


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def other_user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def auth_headers(user_id) -> dict[str, str]:
    return {"X-User-Id": str(user_id)}


@pytest.fixture
def sample_thread(db_session, user_id) -> ChatThread:
    thread = ChatThread(user_id=user_id, title="Graphs study", next_seq=1, status="active", meta={})
    db_session.add(thread)
    db_session.commit()
    return thread


@pytest.fixture
def sample_material_set(db_session, user_id) -> MaterialSet:
    material_set = MaterialSet(user_id=user_id, title="Graph algorithms", summary_md="")
    db_session.add(material_set)
    db_session.commit()
    return material_set


@pytest.fixture
def sample_material_chunk(db_session, sample_material_set) -> MaterialChunk:
    file = MaterialFile(
        material_set_id=sample_material_set.id,
        original_name="graphs.pdf",
        mime_type="application/pdf",
    )
    db_session.add(file)
    db_session.flush()
    chunk = MaterialChunk(
        material_file_id=file.id,
        index=0,
        text=(
            "Dijkstra relaxation updates the tentative distance of each neighbor "
            "when a shorter route through the current vertex is found."
        ),
        embedding=[],
        page=3,
    )
    db_session.add(chunk)
    db_session.commit()
    return chunk


@pytest.fixture
def sample_path(db_session, user_id) -> Path:
    path = Path(
        user_id=user_id,
        title="Graph Algorithms",
        description="From traversal to shortest paths",
        status="ready",
        meta={},
    )
    db_session.add(path)
    db_session.flush()
    for index, title in enumerate(("Graph Basics", "Shortest Paths"), start=1):
        db_session.add(
            PathNode(
                path_id=path.id,
                index=index,
                title=title,
                gating={},
                meta={},
                doc={
                    "summary": f"Unit {index} covers {title.lower()}.",
                    "blocks": [
                        {
                            "id": f"b{index}",
                            "type": "paragraph",
                            "title": f"{title} intro",
                            "md": f"An introduction to {title.lower()} with worked examples.",
                        }
                    ],
                },
            )
        )
    db_session.commit()
    return path


@pytest.fixture
def path_thread(db_session, user_id, sample_path) -> ChatThread:
    thread = ChatThread(
        user_id=user_id,
        title="Path chat",
        path_id=sample_path.id,
        next_seq=1,
        status="active",
        meta={},
    )
    db_session.add(thread)
    db_session.commit()
    return thread


def add_messages(
    session: Session, thread: ChatThread, count: int, start_seq: Optional[int] = None
) -> list[ChatMessage]:
    """Append settled alternating user/assistant messages to a thread."""
    seq = start_seq or thread.next_seq
    messages = []
    for i in range(count):
        role = MessageRole.USER.value if (seq + i) % 2 == 1 else MessageRole.ASSISTANT.value
        status = MessageStatus.SENT.value if role == MessageRole.USER.value else MessageStatus.DONE.value
        message = ChatMessage(
            thread_id=thread.id,
            user_id=thread.user_id,
            seq=seq + i,
            role=role,
            content=f"Message {seq + i} about graph topic {(seq + i) % 7}",
            status=status,
            meta={},
        )
        session.add(message)
        messages.append(message)
    thread.next_seq = seq + count
    session.commit()
    return messages
