"""In-process vector store (development and tests)."""

import math
import threading
from typing import Any, Optional

from tutorchat.vector.base import Vector, VectorMatch, VectorStore


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either is empty or zero."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def matches_filter(metadata: dict[str, Any], filter: Optional[dict[str, Any]]) -> bool:
    """
    Evaluate a Pinecone-style metadata filter.

    Supports plain equality, {"$eq": v}, {"$in": [...]} and a top-level "$and".
    """
    if not filter:
        return True
    for key, cond in filter.items():
        if key == "$and":
            if not all(matches_filter(metadata, sub) for sub in cond):
                return False
            continue
        value = metadata.get(key)
        if isinstance(cond, dict):
            if "$eq" in cond and value != cond["$eq"]:
                return False
            if "$in" in cond and value not in cond["$in"]:
                return False
            if "$ne" in cond and value == cond["$ne"]:
                return False
        elif value != cond:
            return False
    return True


class InMemoryVectorStore(VectorStore):
    """Thread-safe brute-force cosine index keyed by namespace."""

    def __init__(self):
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, Vector]] = {}

    def upsert(self, namespace: str, vectors: list[Vector]) -> None:
        with self._lock:
            bucket = self._data.setdefault(namespace, {})
            for vector in vectors:
                if not vector.id or not vector.values:
                    continue
                bucket[vector.id] = Vector(
                    id=vector.id,
                    values=list(vector.values),
                    metadata=dict(vector.metadata),
                )

    def query_matches(
        self,
        namespace: str,
        embedding: list[float],
        top_k: int,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[VectorMatch]:
        with self._lock:
            candidates = list(self._data.get(namespace, {}).values())
        scored = [
            VectorMatch(id=v.id, score=cosine_similarity(embedding, v.values))
            for v in candidates
            if matches_filter(v.metadata, filter)
        ]
        scored.sort(key=lambda m: (-m.score, m.id))
        return scored[: max(0, top_k)]

    def delete_ids(self, namespace: str, ids: list[str]) -> None:
        with self._lock:
            bucket = self._data.get(namespace)
            if not bucket:
                return
            for vector_id in ids:
                bucket.pop(vector_id, None)

    def count(self, namespace: str) -> int:
        """Number of vectors stored in a namespace."""
        with self._lock:
            return len(self._data.get(namespace, {}))
