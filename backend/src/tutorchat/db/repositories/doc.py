"""
Chat doc (retrieval projection) repository.
"""

import uuid
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from tutorchat.db.repositories.base import BaseRepository, query_terms, rank_by_terms
from tutorchat.models.db import ChatDoc


class DocRepository(BaseRepository[ChatDoc]):
    """Repository for ChatDoc model."""

    def __init__(self, session: Session):
        super().__init__(ChatDoc, session)

    def upsert(self, docs: Iterable[ChatDoc]) -> int:
        """
        Insert or replace docs by primary key.

        Ids are deterministic, so re-running a projection rewrites the same rows.

        Returns:
            Number of docs written
        """
        count = 0
        for doc in docs:
            self.session.merge(doc)
            count += 1
        self.session.flush()
        return count

    def create_ignore(self, docs: Iterable[ChatDoc]) -> int:
        """
        Insert docs whose id does not exist yet; existing rows are left as-is.

        Returns:
            Number of docs inserted
        """
        docs = list(docs)
        if not docs:
            return 0
        existing = {
            row[0]
            for row in self.session.query(ChatDoc.id)
            .filter(ChatDoc.id.in_([d.id for d in docs]))
            .all()
        }
        inserted = 0
        for doc in docs:
            if doc.id in existing:
                continue
            existing.add(doc.id)
            self.session.add(doc)
            inserted += 1
        self.session.flush()
        return inserted

    def get_by_ids(self, user_id: uuid.UUID, ids: Sequence[uuid.UUID]) -> List[ChatDoc]:
        """Fetch docs by id, re-authorized by owner."""
        if not ids:
            return []
        return (
            self.session.query(ChatDoc)
            .filter(ChatDoc.user_id == user_id, ChatDoc.id.in_(list(ids)))
            .all()
        )

    def list_by_scope(
        self,
        user_id: uuid.UUID,
        scope: str,
        scope_id: Optional[uuid.UUID],
        doc_types: Optional[Sequence[str]] = None,
    ) -> List[ChatDoc]:
        """List docs of one scope, newest first."""
        query = self._scope_query(user_id, scope, scope_id)
        if doc_types:
            query = query.filter(ChatDoc.doc_type.in_(list(doc_types)))
        return query.order_by(ChatDoc.created_at.desc(), ChatDoc.id).all()

    def cosine_candidates(
        self,
        user_id: uuid.UUID,
        scope: str,
        scope_id: Optional[uuid.UUID],
        doc_types: Sequence[str],
        limit: int = 1200,
    ) -> List[ChatDoc]:
        """Newest docs of a scope that may carry embeddings (SQL cosine fallback)."""
        return (
            self._scope_query(user_id, scope, scope_id)
            .filter(ChatDoc.doc_type.in_(list(doc_types)))
            .order_by(ChatDoc.created_at.desc(), ChatDoc.id)
            .limit(limit)
            .all()
        )

    def lexical_search(
        self,
        user_id: uuid.UUID,
        scope: str,
        scope_id: Optional[uuid.UUID],
        doc_types: Sequence[str],
        query: str,
        limit: int = 40,
    ) -> List[Tuple[ChatDoc, float]]:
        """
        Full-text search over doc text within a scope.

        Returns:
            (doc, rank) pairs, best first
        """
        if not (query or "").strip():
            return []

        base = self._scope_query(user_id, scope, scope_id).filter(
            ChatDoc.doc_type.in_(list(doc_types))
        )

        if self.dialect_name == "postgresql":
            ts_query = func.plainto_tsquery("english", query)
            vector = func.to_tsvector(
                "english", func.coalesce(ChatDoc.contextual_text, "") + " " + ChatDoc.text
            )
            rank = func.ts_rank(vector, ts_query)
            rows = (
                base.add_columns(rank)
                .filter(vector.op("@@")(ts_query))
                .order_by(rank.desc(), ChatDoc.created_at.desc())
                .limit(limit)
                .all()
            )
            return [(doc, float(score or 0.0)) for doc, score in rows]

        terms = query_terms(query)
        if not terms:
            return []
        candidates = (
            base.filter(
                or_(
                    *[ChatDoc.text.ilike(f"%{t}%") for t in terms],
                    *[ChatDoc.contextual_text.ilike(f"%{t}%") for t in terms],
                )
            )
            .order_by(ChatDoc.created_at.desc())
            .limit(400)
            .all()
        )
        scored = [
            (doc, rank_by_terms(f"{doc.contextual_text} {doc.text}", terms))
            for doc in candidates
        ]
        scored.sort(key=lambda pair: -pair[1])
        return scored[:limit]

    def vector_ids_where(self, *criteria) -> List[str]:
        """Vector ids of docs matching arbitrary filter criteria."""
        return [
            row[0]
            for row in self.session.query(ChatDoc.vector_id).filter(*criteria).all()
            if row[0]
        ]

    def delete_where(self, *criteria) -> List[str]:
        """
        Delete docs matching criteria.

        Returns:
            Vector ids of the deleted docs (for vector store cleanup)
        """
        vector_ids = self.vector_ids_where(*criteria)
        (
            self.session.query(ChatDoc)
            .filter(*criteria)
            .delete(synchronize_session="fetch")
        )
        self.session.flush()
        return vector_ids

    def _scope_query(
        self, user_id: uuid.UUID, scope: str, scope_id: Optional[uuid.UUID]
    ):
        query = self.session.query(ChatDoc).filter(
            ChatDoc.user_id == user_id, ChatDoc.scope == scope
        )
        if scope_id is None:
            return query.filter(ChatDoc.scope_id.is_(None))
        return query.filter(ChatDoc.scope_id == scope_id)
