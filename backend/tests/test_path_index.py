"""
Tests for the path projection indexer.
"""

import uuid
from collections import Counter

import pytest

from tutorchat.chat.path_index import index_path_for_chat, index_path_node_blocks
from tutorchat.exceptions import ChatEngineError, NotFoundError
from tutorchat.models.db import ChatDoc, DocScope, DocType, PathNode
from tutorchat.vector import chat_user_namespace


def _doc_types(session, path_id):
    docs = (
        session.query(ChatDoc)
        .filter(ChatDoc.scope == DocScope.PATH.value, ChatDoc.scope_id == path_id)
        .all()
    )
    return Counter(d.doc_type for d in docs)


class TestIndexPath:
    """Tests for index_path_for_chat."""

    def test_writes_overview_nodes_and_unit_docs(
        self, db_session, stub_llm, vector_store, user_id, sample_path
    ):
        result = index_path_for_chat(db_session, stub_llm, vector_store, user_id, sample_path.id)

        types = _doc_types(db_session, sample_path.id)
        assert types[DocType.PATH_OVERVIEW.value] == 1
        assert types[DocType.PATH_NODE.value] == 2
        assert types[DocType.PATH_UNIT_DOC.value] == 2
        assert types[DocType.PATH_MATERIALS.value] == 0
        assert result.docs_upserted == sum(types.values())
        assert vector_store.count(chat_user_namespace(user_id)) == result.docs_upserted

    def test_overview_mentions_units(self, db_session, stub_llm, user_id, sample_path):
        index_path_for_chat(db_session, stub_llm, None, user_id, sample_path.id)

        overview = (
            db_session.query(ChatDoc)
            .filter(ChatDoc.doc_type == DocType.PATH_OVERVIEW.value)
            .one()
        )
        assert "Graph Algorithms" in overview.text
        assert "Shortest Paths" in overview.text
        assert overview.contextual_text.startswith("Learning path overview")

    def test_reindex_replaces_prior_rows(
        self, db_session, stub_llm, vector_store, user_id, sample_path
    ):
        first = index_path_for_chat(db_session, stub_llm, vector_store, user_id, sample_path.id)
        second = index_path_for_chat(db_session, stub_llm, vector_store, user_id, sample_path.id)

        assert first.docs_upserted == second.docs_upserted
        assert sum(_doc_types(db_session, sample_path.id).values()) == second.docs_upserted
        assert vector_store.count(chat_user_namespace(user_id)) == second.docs_upserted

    def test_materials_doc_when_path_has_files(
        self, db_session, stub_llm, user_id, sample_path, sample_material_set, sample_material_chunk
    ):
        sample_path.material_set_id = sample_material_set.id
        db_session.commit()

        index_path_for_chat(db_session, stub_llm, None, user_id, sample_path.id)

        materials = (
            db_session.query(ChatDoc)
            .filter(ChatDoc.doc_type == DocType.PATH_MATERIALS.value)
            .one()
        )
        assert "graphs.pdf" in materials.text
        assert materials.source_id == sample_material_set.id

    def test_embedding_failure_still_stores_docs(self, db_session, stub_llm, user_id, sample_path):
        def failing_embed(texts):
            raise ChatEngineError("embeddings offline")

        stub_llm.embed = failing_embed

        result = index_path_for_chat(db_session, stub_llm, None, user_id, sample_path.id)

        assert result.docs_upserted > 0
        assert all(d.embedding == [] for d in db_session.query(ChatDoc).all())

    def test_foreign_path(self, db_session, other_user_id, sample_path):
        with pytest.raises(NotFoundError):
            index_path_for_chat(db_session, None, None, other_user_id, sample_path.id)


class TestIndexNodeBlocks:
    """Tests for index_path_node_blocks."""

    def test_one_doc_per_block(self, db_session, stub_llm, user_id, sample_path):
        node = db_session.query(PathNode).filter(PathNode.index == 1).one()

        result = index_path_node_blocks(
            db_session, stub_llm, None, user_id, sample_path.id, node.id
        )

        assert result.docs_upserted == 1
        doc = db_session.query(ChatDoc).filter(ChatDoc.doc_type == DocType.PATH_UNIT_BLOCK.value).one()
        assert doc.source_id == node.id
        assert "Block ID: b1" in doc.text

    def test_node_must_be_on_path(self, db_session, user_id, sample_path):
        with pytest.raises(NotFoundError):
            index_path_node_blocks(db_session, None, None, user_id, sample_path.id, uuid.uuid4())
