"""
Pinecone vector store over the data-plane REST API.

Talks to the index host directly with httpx:
POST /vectors/upsert, POST /query and POST /vectors/delete.
"""

import logging
from typing import Any, Optional

import httpx

from tutorchat.config import settings
from tutorchat.exceptions import RetryableError
from tutorchat.llm.retry import retry_call, status_error
from tutorchat.vector.base import Vector, VectorMatch, VectorStore

logger = logging.getLogger(__name__)

API_VERSION = "2024-07"
UPSERT_BATCH_SIZE = 100
NAMESPACE_PREFIX = "tc"


class PineconeVectorStore(VectorStore):
    """Vector store backed by a Pinecone serverless index."""

    def __init__(
        self,
        api_key: str,
        index_host: str,
        query_timeout: Optional[float] = None,
        namespace_prefix: str = NAMESPACE_PREFIX,
    ):
        """Initialize the Pinecone store.

        Args:
            api_key: Pinecone API key
            index_host: Index host (e.g. my-index-abc123.svc.pinecone.io)
            query_timeout: Query timeout in seconds
            namespace_prefix: Prefix applied to every namespace
        """
        if not api_key:
            raise ValueError("Pinecone API key is required")
        if not index_host:
            raise ValueError("Pinecone index host is required")

        host = index_host.strip()
        if not host.startswith("http"):
            host = f"https://{host}"

        self.query_timeout = query_timeout or settings.vector_query_timeout_seconds
        self.namespace_prefix = namespace_prefix
        self._client = httpx.Client(
            base_url=host,
            headers={
                "Api-Key": api_key,
                "Content-Type": "application/json",
                "X-Pinecone-API-Version": API_VERSION,
            },
            timeout=30.0,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "PineconeVectorStore":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _qualify(self, namespace: str) -> str:
        namespace = (namespace or "").strip()
        if not namespace:
            return self.namespace_prefix
        return f"{self.namespace_prefix}:{namespace}"

    def _post(self, path: str, body: dict[str, Any], timeout: Optional[float] = None) -> dict:
        def call() -> dict:
            try:
                response = self._client.post(path, json=body, timeout=timeout or 30.0)
            except httpx.TimeoutException as e:
                raise RetryableError("pinecone", f"{path} timed out", status_code=408) from e
            except httpx.RequestError as e:
                raise RetryableError("pinecone", f"{path} network error: {e}") from e
            if response.status_code >= 400:
                raise status_error(
                    "pinecone", response.status_code, f"{path}: {response.text[:500]}"
                )
            return response.json() if response.content else {}

        return retry_call(call, operation=f"pinecone {path}", max_retries=2)

    def upsert(self, namespace: str, vectors: list[Vector]) -> None:
        clean = [
            {
                "id": v.id,
                "values": [float(x) for x in v.values],
                "metadata": {k: val for k, val in v.metadata.items() if val is not None},
            }
            for v in vectors
            if v.id and v.values
        ]
        ns = self._qualify(namespace)
        for start in range(0, len(clean), UPSERT_BATCH_SIZE):
            self._post(
                "/vectors/upsert",
                {"namespace": ns, "vectors": clean[start : start + UPSERT_BATCH_SIZE]},
            )

    def query_matches(
        self,
        namespace: str,
        embedding: list[float],
        top_k: int,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[VectorMatch]:
        body: dict[str, Any] = {
            "namespace": self._qualify(namespace),
            "vector": [float(x) for x in embedding],
            "topK": top_k,
            "includeValues": False,
            "includeMetadata": False,
        }
        if filter:
            body["filter"] = filter
        data = self._post("/query", body, timeout=self.query_timeout)
        return [
            VectorMatch(id=m["id"], score=float(m.get("score") or 0.0))
            for m in data.get("matches", [])
            if (m.get("id") or "").strip()
        ]

    def delete_ids(self, namespace: str, ids: list[str]) -> None:
        unique = sorted({i for i in ids if i})
        if not unique:
            return
        ns = self._qualify(namespace)
        for start in range(0, len(unique), 1000):
            self._post("/vectors/delete", {"namespace": ns, "ids": unique[start : start + 1000]})
