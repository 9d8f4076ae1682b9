"""
Neo4j mirror of the derived chat graph.

The relational tables stay authoritative; the mirror only serves
cross-thread graph queries. It talks to the transactional HTTP endpoint
(POST /db/{database}/tx/commit) with httpx, and every failure is logged and
swallowed by mirror_thread_graph.
"""

import logging
from typing import Any, Optional, Sequence

import httpx
from sqlalchemy.orm import Session

from tutorchat.config import settings
from tutorchat.db.repositories import GraphRepository
from tutorchat.exceptions import ChatEngineError, NonRetryableError, RetryableError
from tutorchat.llm.retry import retry_call, status_error
from tutorchat.models.db import ChatClaim, ChatEdge, ChatEntity, ChatThread, DocScope

logger = logging.getLogger(__name__)

MAX_CLAIMS = 200

MERGE_THREAD = """
MERGE (t:ChatThread {id: $thread_id})
SET t.user_id = $user_id, t.title = $title, t.path_id = $path_id
"""

MERGE_ENTITIES = """
UNWIND $rows AS row
MERGE (e:ChatEntity {id: row.id})
SET e.user_id = row.user_id, e.name = row.name, e.type = row.type,
    e.description = row.description, e.aliases = row.aliases
WITH e, row
MATCH (t:ChatThread {id: row.thread_id})
MERGE (t)-[:MENTIONS]->(e)
"""

MERGE_RELATIONS = """
UNWIND $rows AS row
MATCH (s:ChatEntity {id: row.src}), (d:ChatEntity {id: row.dst})
MERGE (s)-[r:RELATES {id: row.id}]->(d)
SET r.relation = row.relation, r.weight = row.weight, r.evidence_seqs = row.evidence_seqs
"""

MERGE_CLAIMS = """
UNWIND $rows AS row
MERGE (c:ChatClaim {id: row.id})
SET c.content = row.content, c.confidence = row.confidence, c.evidence_seqs = row.evidence_seqs
WITH c, row
MATCH (t:ChatThread {id: row.thread_id})
MERGE (t)-[:ASSERTS]->(c)
"""


class Neo4jGraphMirror:
    """Writes thread graphs to Neo4j over its HTTP API."""

    def __init__(
        self,
        base_url: str,
        database: str = "neo4j",
        user: str = "",
        password: str = "",
        timeout: float = 10.0,
    ):
        if not base_url:
            raise ValueError("Neo4j HTTP URL is required")
        self.database = database or "neo4j"
        auth = httpx.BasicAuth(user, password) if user else None
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            auth=auth,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            timeout=timeout,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "Neo4jGraphMirror":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def commit(self, statements: list[dict[str, Any]]) -> dict:
        """
        Run statements in one auto-committed transaction.

        Raises:
            RetryableError: On network errors, timeouts, 408/429/5xx
            NonRetryableError: On other HTTP errors or Cypher errors
        """
        path = f"/db/{self.database}/tx/commit"

        def call() -> dict:
            try:
                response = self._client.post(path, json={"statements": statements})
            except httpx.TimeoutException as e:
                raise RetryableError("neo4j", f"{path} timed out", status_code=408) from e
            except httpx.RequestError as e:
                raise RetryableError("neo4j", f"{path} network error: {e}") from e
            if response.status_code >= 400:
                raise status_error("neo4j", response.status_code, f"{path}: {response.text[:500]}")
            data = response.json() if response.content else {}
            errors = data.get("errors") or []
            if errors:
                first = errors[0]
                raise NonRetryableError(
                    "neo4j", f"{first.get('code', 'error')}: {first.get('message', '')}"
                )
            return data

        return retry_call(call, operation="neo4j tx/commit", max_retries=2)

    def sync_thread(
        self,
        thread: ChatThread,
        entities: Sequence[ChatEntity],
        edges: Sequence[ChatEdge],
        claims: Sequence[ChatClaim],
    ) -> int:
        """
        Merge a thread's entities, relations and claims.

        Returns:
            Number of statements sent
        """
        thread_id = str(thread.id)
        statements: list[dict[str, Any]] = [
            {
                "statement": MERGE_THREAD,
                "parameters": {
                    "thread_id": thread_id,
                    "user_id": str(thread.user_id),
                    "title": thread.title or "",
                    "path_id": str(thread.path_id) if thread.path_id else None,
                },
            }
        ]
        if entities:
            statements.append(
                {
                    "statement": MERGE_ENTITIES,
                    "parameters": {
                        "rows": [
                            {
                                "id": str(e.id),
                                "thread_id": thread_id,
                                "user_id": str(e.user_id),
                                "name": e.name,
                                "type": e.type or "",
                                "description": e.description or "",
                                "aliases": list(e.aliases or []),
                            }
                            for e in entities
                        ]
                    },
                }
            )
        if edges:
            statements.append(
                {
                    "statement": MERGE_RELATIONS,
                    "parameters": {
                        "rows": [
                            {
                                "id": str(edge.id),
                                "src": str(edge.src_entity_id),
                                "dst": str(edge.dst_entity_id),
                                "relation": edge.relation,
                                "weight": float(edge.weight or 0.0),
                                "evidence_seqs": [int(s) for s in edge.evidence_seqs or []],
                            }
                            for edge in edges
                        ]
                    },
                }
            )
        if claims:
            statements.append(
                {
                    "statement": MERGE_CLAIMS,
                    "parameters": {
                        "rows": [
                            {
                                "id": str(c.id),
                                "thread_id": thread_id,
                                "content": c.content,
                                "confidence": float(c.confidence or 0.0),
                                "evidence_seqs": [int(s) for s in c.evidence_seqs or []],
                            }
                            for c in claims
                        ]
                    },
                }
            )
        self.commit(statements)
        return len(statements)


def create_graph_mirror() -> Optional[Neo4jGraphMirror]:
    """Mirror configured from settings, or None when disabled."""
    if not settings.graph_mirror_enabled:
        return None
    return Neo4jGraphMirror(
        settings.neo4j_http_url,
        database=settings.neo4j_database,
        user=settings.neo4j_user,
        password=settings.neo4j_password,
    )


def _thread_claims(session: Session, thread: ChatThread) -> list[ChatClaim]:
    return GraphRepository(session).list_claims(
        thread.user_id, DocScope.THREAD.value, thread.id, limit=MAX_CLAIMS
    )


def mirror_thread_graph(
    session: Session,
    thread: ChatThread,
    mirror: Optional[Neo4jGraphMirror] = None,
) -> bool:
    """
    Best-effort sync of one thread's graph.

    Returns:
        True when the graph was written, False when disabled or failed
    """
    owned = False
    if mirror is None:
        try:
            mirror = create_graph_mirror()
        except ValueError as e:
            logger.warning(f"Graph mirror misconfigured: {e}")
            return False
        owned = mirror is not None
    if mirror is None:
        return False

    graph = GraphRepository(session)
    scope = DocScope.THREAD.value
    try:
        sent = mirror.sync_thread(
            thread,
            graph.list_entities_for_scope(thread.user_id, scope, thread.id),
            graph.list_edges_for_scope(thread.user_id, scope, thread.id),
            _thread_claims(session, thread),
        )
        logger.debug(f"Mirrored thread {thread.id} graph to Neo4j ({sent} statements)")
        return True
    except (ChatEngineError, ValueError) as e:
        logger.warning(f"Graph mirror failed for thread {thread.id}: {e}")
        return False
    finally:
        if owned:
            mirror.close()

