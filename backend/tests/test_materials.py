"""
Tests for source-material excerpts of path threads.
"""

import uuid

import pytest

from conftest import bag_of_words_embedding
from tutorchat.chat.materials import (
    MAX_PER_FILE,
    MaterialHit,
    MaterialRetriever,
    render_hits,
    select_hits_for_query,
)
from tutorchat.exceptions import RetryableError
from tutorchat.models.db import MaterialChunk, MaterialFile
from tutorchat.vector import chunks_namespace
from tutorchat.vector.base import Vector
from tutorchat.vector.memory import InMemoryVectorStore

QUERY = "dijkstra relaxation distance"


class FailingVectorStore(InMemoryVectorStore):
    def query_matches(self, namespace, embedding, top_k, filter=None):
        raise RetryableError("pinecone", "query timed out", status_code=408)


def _hit(file, score, text="Heaps keep the smallest key at the root of the tree."):
    chunk = MaterialChunk(id=uuid.uuid4(), material_file_id=file.id, index=0, text=text)
    return MaterialHit(file=file, chunk=chunk, score=score)


def _file(name="notes.pdf"):
    return MaterialFile(id=uuid.uuid4(), original_name=name, mime_type="application/pdf")


@pytest.fixture
def material_path(db_session, sample_path, sample_material_set):
    sample_path.material_set_id = sample_material_set.id
    db_session.commit()
    return sample_path


@pytest.fixture
def material_chunks(db_session, sample_material_set):
    """Two files with relevant chunks plus one unrelated chunk, embedded."""
    texts = {
        "dijkstra.pdf": [
            "Dijkstra relaxation lowers the tentative distance of a neighbor.",
            "Each relaxation step compares the stored distance with a new route.",
            "Dijkstra requires non-negative edge weights for correct distance values.",
        ],
        "bellman.pdf": [
            "Bellman-Ford repeats relaxation of every edge to settle each distance.",
        ],
        "sorting.pdf": [
            "Merge sort splits the list in halves and merges the sorted runs back.",
        ],
    }
    chunks = []
    for name, bodies in texts.items():
        file = MaterialFile(
            material_set_id=sample_material_set.id,
            original_name=name,
            mime_type="application/pdf",
        )
        db_session.add(file)
        db_session.flush()
        for index, body in enumerate(bodies):
            chunk = MaterialChunk(
                material_file_id=file.id,
                index=index,
                text=body,
                embedding=bag_of_words_embedding(body),
                page=index + 1,
            )
            db_session.add(chunk)
            chunks.append(chunk)
    db_session.commit()
    return chunks


class TestSelectHits:
    """Tests for excerpt selection."""

    def test_per_file_cap(self):
        heavy, light = _file("heavy.pdf"), _file("light.pdf")
        hits = [_hit(heavy, 0.9), _hit(heavy, 0.8), _hit(heavy, 0.7), _hit(light, 0.6)]

        selected = select_hits_for_query("how do heaps work", hits, 2200)

        assert [h.file.id for h in selected] == [heavy.id] * MAX_PER_FILE + [light.id]

    @pytest.mark.parametrize("query", ["summarize each file", "what do all the sources say"])
    def test_each_file_keeps_best_chunk_per_file(self, query):
        a, b, c = _file("a.pdf"), _file("b.pdf"), _file("c.pdf")
        best_b = _hit(b, 0.95)
        hits = [_hit(a, 0.5), _hit(a, 0.7), best_b, _hit(b, 0.2), _hit(c, 0.1)]

        selected = select_hits_for_query(query, hits, 2200)

        assert [h.file.id for h in selected] == [b.id, a.id, c.id]
        assert selected[0] is best_b
        assert selected[1].score == 0.7

    @pytest.mark.parametrize("budget,expected", [(1000, 6), (2200, 8), (3000, 10)])
    def test_total_follows_budget(self, budget, expected):
        hits = [_hit(_file(f"f{i}.pdf"), 1.0 - i / 100) for i in range(12)]
        assert len(select_hits_for_query("heaps", hits, budget)) == expected


class TestRenderHits:
    """Tests for excerpt labels."""

    def test_labels_use_citable_source_id(self):
        hit = _hit(_file("graphs.pdf"), 0.9)
        hit.chunk.page = 4

        text = render_hits([hit])

        assert text.startswith(f"- [source_id=material:{hit.chunk.id}] graphs.pdf (pdf) - page 4")
        assert "chunk_id=" not in text


class TestMaterialRetriever:
    """Tests for the dense, SQL cosine and lexical fallback chain."""

    def test_dense_vector_hits(
        self, db_session, user_id, material_path, sample_material_set, material_chunks
    ):
        vector = InMemoryVectorStore()
        vector.upsert(
            chunks_namespace(sample_material_set.id),
            [
                Vector(id=str(c.id), values=c.embedding, metadata={"type": "chunk"})
                for c in material_chunks
            ],
        )

        ctx = MaterialRetriever(db_session, vector).retrieve(
            user_id, material_path, QUERY, bag_of_words_embedding(QUERY), 2200
        )

        assert ctx.trace["mode"] == "dense_vector"
        assert "dense_ms" in ctx.trace
        assert ctx.sources
        assert all(s.id.startswith("material:") for s in ctx.sources)
        assert "chunk_id=" not in ctx.text

    def test_dense_failure_falls_back_to_sql_cosine(
        self, db_session, user_id, material_path, material_chunks
    ):
        ctx = MaterialRetriever(db_session, FailingVectorStore()).retrieve(
            user_id, material_path, QUERY, bag_of_words_embedding(QUERY), 2200
        )

        assert "query timed out" in ctx.trace["dense_err"]
        assert ctx.trace["mode"] == "dense_sql"
        assert ctx.sources

    def test_without_embedding_falls_back_to_lexical(
        self, db_session, user_id, material_path, material_chunks
    ):
        ctx = MaterialRetriever(db_session, None).retrieve(user_id, material_path, QUERY, None, 2200)

        assert ctx.trace["mode"] == "lexical_sql"
        names = [s.meta["file_name"] for s in ctx.sources]
        assert "sorting.pdf" not in names
        assert names.count("dijkstra.pdf") <= MAX_PER_FILE

    def test_per_file_cap_applies_to_retrieval(
        self, db_session, user_id, material_path, material_chunks
    ):
        ctx = MaterialRetriever(db_session, None).retrieve(
            user_id, material_path, QUERY, bag_of_words_embedding(QUERY), 2200
        )

        names = [s.meta["file_name"] for s in ctx.sources]
        assert names.count("dijkstra.pdf") == MAX_PER_FILE

    def test_each_file_query_covers_every_file(
        self, db_session, user_id, material_path, material_chunks
    ):
        query = "what does each file say about distance"

        ctx = MaterialRetriever(db_session, None).retrieve(
            user_id, material_path, query, bag_of_words_embedding(query), 2200
        )

        names = [s.meta["file_name"] for s in ctx.sources]
        assert len(names) == len(set(names))
        assert {"dijkstra.pdf", "bellman.pdf"} <= set(names)

    def test_other_users_set_is_ignored(
        self, db_session, other_user_id, material_path, material_chunks
    ):
        ctx = MaterialRetriever(db_session, None).retrieve(
            other_user_id, material_path, QUERY, None, 2200
        )

        assert ctx.text == ""
        assert ctx.sources == []
