"""Vector store contract."""

import hashlib
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class Vector:
    """A vector to upsert."""

    id: str
    values: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorMatch:
    """A query match; higher score is more similar."""

    id: str
    score: float


class VectorStore(ABC):
    """Namespaced similarity index. The relational store stays authoritative."""

    @abstractmethod
    def upsert(self, namespace: str, vectors: list[Vector]) -> None:
        """Insert or replace vectors by id."""
        ...

    @abstractmethod
    def query_matches(
        self,
        namespace: str,
        embedding: list[float],
        top_k: int,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[VectorMatch]:
        """Return up to top_k matches, best first."""
        ...

    @abstractmethod
    def delete_ids(self, namespace: str, ids: list[str]) -> None:
        """Delete vectors by id. Unknown ids are ignored."""
        ...

    def query_ids(
        self,
        namespace: str,
        embedding: list[float],
        top_k: int,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[str]:
        """Ids of the best matches."""
        return [m.id for m in self.query_matches(namespace, embedding, top_k, filter) if m.id]


def chat_user_namespace(user_id: uuid.UUID) -> str:
    """Per-user namespace for chat projections (hash-prefixed for even sharding)."""
    prefix = hashlib.sha256(str(user_id).encode("utf-8")).hexdigest()[:8]
    return f"chat:{prefix}:{user_id}"


def chunks_namespace(material_set_id: uuid.UUID) -> str:
    """Namespace holding the material chunk vectors of a material set."""
    return f"chunks:material_set:{material_set_id}"
