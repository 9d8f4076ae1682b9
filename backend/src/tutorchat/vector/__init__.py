"""Vector index adapters.

Usage:
    from tutorchat.vector import create_vector_store

    store = create_vector_store()
    store.query_matches(chat_user_namespace(user_id), embedding, 40, {"scope": "thread"})
"""

from tutorchat.config import settings
from tutorchat.vector.base import (
    Vector,
    VectorMatch,
    VectorStore,
    chat_user_namespace,
    chunks_namespace,
)
from tutorchat.vector.memory import InMemoryVectorStore


def create_vector_store(backend: str | None = None) -> VectorStore:
    """Factory for the configured vector store.

    Args:
        backend: "memory" or "pinecone" (default: settings.vector_backend)

    Raises:
        ValueError: If the backend is unknown
    """
    backend = backend or settings.vector_backend
    if backend == "memory":
        return InMemoryVectorStore()
    if backend == "pinecone":
        from tutorchat.vector.pinecone import PineconeVectorStore

        return PineconeVectorStore(
            api_key=settings.pinecone_api_key,
            index_host=settings.pinecone_index_host,
        )
    raise ValueError(f"Unknown vector backend: {backend}. Supported: memory, pinecone")


__all__ = [
    "InMemoryVectorStore",
    "Vector",
    "VectorMatch",
    "VectorStore",
    "chat_user_namespace",
    "chunks_namespace",
    "create_vector_store",
]
