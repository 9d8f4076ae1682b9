"""
Tests for the thread maintainer and the graph mirror.
"""

import json

import httpx
import pytest

from conftest import add_messages
from tutorchat.chat.graph_mirror import Neo4jGraphMirror, mirror_thread_graph
from tutorchat.chat.maintainer import ThreadMaintainer, chunk_doc_id, settled_prefix
from tutorchat.chat.prompts import SCHEMA_GRAPH_EXTRACT, SCHEMA_MEMORY_EXTRACT
from tutorchat.db.repositories import ThreadStateRepository
from tutorchat.exceptions import ChatEngineError, NotFoundError
from tutorchat.models.db import (
    ChatDoc,
    ChatMemoryItem,
    ChatMessage,
    DocType,
    MessageRole,
    MessageStatus,
)
from tutorchat.vector import chat_user_namespace

GRAPH_RESPONSE = {
    "entities": [
        {"name": "Dijkstra", "type": "algorithm", "description": "Shortest paths"},
        {"name": "Heap", "type": "data_structure", "description": "Priority queue"},
    ],
    "relations": [
        {"src": "Dijkstra", "dst": "heap", "relation": "uses", "weight": 0.9, "evidence_seqs": [1, 2]},
        {"src": "Dijkstra", "dst": "Nobody", "relation": "knows"},
    ],
    "claims": [{"content": "Dijkstra needs non-negative weights", "evidence_seqs": [2]}],
}


@pytest.fixture
def maintainer(db_session, stub_llm, vector_store) -> ThreadMaintainer:
    return ThreadMaintainer(db_session, stub_llm, vector_store)


def _cursors(session, thread_id):
    state = ThreadStateRepository(session).get(thread_id)
    return (
        state.last_indexed_seq,
        state.last_summarized_seq,
        state.last_graph_seq,
        state.last_memory_seq,
    )


def _docs(session, thread_id, doc_type):
    return (
        session.query(ChatDoc)
        .filter(ChatDoc.thread_id == thread_id, ChatDoc.doc_type == doc_type)
        .all()
    )


class TestHelpers:
    """Tests for cursor helpers."""

    def test_settled_prefix_stops_at_streaming(self):
        messages = [
            ChatMessage(seq=1, status=MessageStatus.SENT.value),
            ChatMessage(seq=2, status=MessageStatus.DONE.value),
            ChatMessage(seq=3, status=MessageStatus.SENT.value),
            ChatMessage(seq=4, status=MessageStatus.STREAMING.value),
            ChatMessage(seq=5, status=MessageStatus.SENT.value),
        ]
        assert [m.seq for m in settled_prefix(messages)] == [1, 2, 3]

    def test_chunk_doc_id_is_stable(self):
        import uuid

        message_id = uuid.uuid4()
        assert chunk_doc_id(message_id, 0) == chunk_doc_id(message_id, 0)
        assert chunk_doc_id(message_id, 0) != chunk_doc_id(message_id, 1)


class TestMaintainRun:
    """Tests for a full maintenance pass."""

    def test_first_pass_indexes_everything(
        self, maintainer, db_session, vector_store, user_id, sample_thread
    ):
        messages = add_messages(db_session, sample_thread, 6)

        result = maintainer.run(user_id, sample_thread.id)

        assert result.indexed_messages == 6
        assert result.chunk_docs == 6
        assert result.summary_leaves >= 1
        assert result.mirrored is False
        assert _cursors(db_session, sample_thread.id) == (6, 6, 6, 6)

        chunk_ids = {d.id for d in _docs(db_session, sample_thread.id, DocType.MESSAGE_CHUNK.value)}
        assert chunk_ids == {chunk_doc_id(m.id, 0) for m in messages}
        assert vector_store.count(chat_user_namespace(user_id)) >= 6

    def test_rerun_is_idempotent(self, maintainer, db_session, user_id, sample_thread):
        add_messages(db_session, sample_thread, 4)
        maintainer.run(user_id, sample_thread.id)
        before = db_session.query(ChatDoc).count()

        again = maintainer.run(user_id, sample_thread.id)

        assert again.indexed_messages == 0
        assert again.chunk_docs == 0
        assert db_session.query(ChatDoc).count() == before

    def test_new_messages_extend_cursors(self, maintainer, db_session, user_id, sample_thread):
        add_messages(db_session, sample_thread, 4)
        maintainer.run(user_id, sample_thread.id)
        add_messages(db_session, sample_thread, 2)

        result = maintainer.run(user_id, sample_thread.id)

        assert result.indexed_messages == 2
        assert _cursors(db_session, sample_thread.id) == (6, 6, 6, 6)

    def test_streaming_reply_holds_cursors(self, maintainer, db_session, user_id, sample_thread):
        """Test cursors stop before a reply that is still streaming."""
        add_messages(db_session, sample_thread, 3)
        db_session.add(
            ChatMessage(
                thread_id=sample_thread.id,
                user_id=user_id,
                seq=4,
                role=MessageRole.ASSISTANT.value,
                content="partial",
                status=MessageStatus.STREAMING.value,
                meta={},
            )
        )
        sample_thread.next_seq = 5
        db_session.commit()

        maintainer.run(user_id, sample_thread.id)

        assert _cursors(db_session, sample_thread.id) == (3, 3, 3, 3)

    def test_stages_reported_in_order(self, db_session, stub_llm, user_id, sample_thread):
        stages = []
        add_messages(db_session, sample_thread, 2)

        ThreadMaintainer(db_session, stub_llm, on_stage=stages.append).run(user_id, sample_thread.id)

        assert stages == ["index", "summarize", "graph", "memory"]

    def test_foreign_thread_not_found(self, maintainer, other_user_id, sample_thread):
        with pytest.raises(NotFoundError):
            maintainer.run(other_user_id, sample_thread.id)


class TestGraphAndMemory:
    """Tests for graph and memory extraction."""

    def test_graph_extraction(self, maintainer, db_session, stub_llm, user_id, sample_thread):
        stub_llm.json_responses[SCHEMA_GRAPH_EXTRACT] = GRAPH_RESPONSE
        add_messages(db_session, sample_thread, 4)

        result = maintainer.run(user_id, sample_thread.id)

        assert result.entities == 2
        assert result.edges == 1
        assert result.claims == 1
        assert len(_docs(db_session, sample_thread.id, DocType.ENTITY.value)) == 2
        assert len(_docs(db_session, sample_thread.id, DocType.CLAIM.value)) == 1

    def test_repeated_relation_not_duplicated(
        self, maintainer, db_session, stub_llm, user_id, sample_thread
    ):
        stub_llm.json_responses[SCHEMA_GRAPH_EXTRACT] = GRAPH_RESPONSE
        add_messages(db_session, sample_thread, 2)
        maintainer.run(user_id, sample_thread.id)
        add_messages(db_session, sample_thread, 2)

        result = maintainer.run(user_id, sample_thread.id)

        assert result.edges == 0
        assert result.claims == 0

    def test_graph_failure_still_advances(
        self, maintainer, db_session, stub_llm, user_id, sample_thread
    ):
        stub_llm.json_responses[SCHEMA_GRAPH_EXTRACT] = ChatEngineError("model down")
        add_messages(db_session, sample_thread, 2)

        result = maintainer.run(user_id, sample_thread.id)

        assert result.entities == 0
        assert _cursors(db_session, sample_thread.id)[2] == 2

    def test_memory_items_respect_scope(
        self, maintainer, db_session, stub_llm, user_id, sample_thread
    ):
        stub_llm.json_responses[SCHEMA_MEMORY_EXTRACT] = {
            "items": [
                {"scope": "user", "kind": "preference", "key": "style", "value": "short answers"},
                {"scope": "thread", "kind": "todo", "key": "review", "value": "heaps"},
                {"scope": "path", "kind": "fact", "key": "unit", "value": "two"},
                {"scope": "user", "kind": "mood", "key": "x", "value": "y"},
            ]
        }
        add_messages(db_session, sample_thread, 2)

        result = maintainer.run(user_id, sample_thread.id)

        assert result.memory_items == 2
        items = db_session.query(ChatMemoryItem).order_by(ChatMemoryItem.key).all()
        assert [(i.scope, i.key) for i in items] == [("thread", "review"), ("user", "style")]
        assert items[1].scope_id is None
        memory_docs = _docs(db_session, sample_thread.id, DocType.MEMORY.value)
        assert len(memory_docs) == 2


class TestGraphMirror:
    """Tests for the Neo4j HTTP mirror."""

    @staticmethod
    def _mirror(handler) -> Neo4jGraphMirror:
        mirror = Neo4jGraphMirror("http://neo4j.test:7474", database="graphs")
        mirror._client = httpx.Client(
            base_url="http://neo4j.test:7474", transport=httpx.MockTransport(handler)
        )
        return mirror

    def test_sync_sends_merge_statements(
        self, maintainer, db_session, stub_llm, user_id, sample_thread
    ):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"results": [], "errors": []})

        stub_llm.json_responses[SCHEMA_GRAPH_EXTRACT] = GRAPH_RESPONSE
        add_messages(db_session, sample_thread, 2)
        maintainer.run(user_id, sample_thread.id)

        with self._mirror(handler) as mirror:
            assert mirror_thread_graph(db_session, sample_thread, mirror) is True

        (request,) = requests
        assert request.url.path == "/db/graphs/tx/commit"
        statements = json.loads(request.content)["statements"]
        assert len(statements) == 4
        assert statements[0]["parameters"]["thread_id"] == str(sample_thread.id)
        names = sorted(r["name"] for r in statements[1]["parameters"]["rows"])
        assert names == ["Dijkstra", "Heap"]

    def test_cypher_error_is_swallowed(self, db_session, sample_thread):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"errors": [{"code": "Neo.ClientError", "message": "bad"}]}
            )

        with self._mirror(handler) as mirror:
            assert mirror_thread_graph(db_session, sample_thread, mirror) is False

    def test_disabled_mirror_is_noop(self, db_session, sample_thread):
        assert mirror_thread_graph(db_session, sample_thread) is False

    def test_url_required(self):
        with pytest.raises(ValueError):
            Neo4jGraphMirror("")
