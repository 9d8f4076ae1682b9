"""
Durable memory item repository.
"""

import uuid
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from tutorchat.db.repositories.base import BaseRepository
from tutorchat.models.db import ChatMemoryItem
from tutorchat.utils.hashing import deterministic_uuid
from tutorchat.utils.timeutil import utcnow


def memory_item_id(
    user_id: uuid.UUID,
    scope: str,
    scope_id: Optional[uuid.UUID],
    kind: str,
    key: str,
) -> uuid.UUID:
    """Deterministic id of a memory item from its unique key."""
    return deterministic_uuid(
        f"chat_memory|{user_id}|{scope}|{scope_id or ''}|{kind}|{key.strip().lower()}"
    )


class MemoryRepository(BaseRepository[ChatMemoryItem]):
    """Repository for ChatMemoryItem model."""

    def __init__(self, session: Session):
        super().__init__(ChatMemoryItem, session)

    def upsert_many(self, items: Iterable[ChatMemoryItem]) -> List[ChatMemoryItem]:
        """
        Insert or replace memory items by (user, scope, scope_id, kind, key).

        Upsert replaces value, confidence and evidence; a previously deleted
        item with the same key is revived.

        Returns:
            Stored items (in input order)
        """
        stored: List[ChatMemoryItem] = []
        for item in items:
            existing = self.get(item.id)
            if existing is None:
                self.session.add(item)
                stored.append(item)
                continue
            existing.value = item.value
            existing.confidence = item.confidence
            existing.evidence_seqs = list(item.evidence_seqs or [])
            existing.thread_id = item.thread_id or existing.thread_id
            existing.path_id = item.path_id or existing.path_id
            existing.job_id = item.job_id or existing.job_id
            existing.deleted_at = None
            existing.updated_at = utcnow()
            stored.append(existing)
        self.session.flush()
        return stored

    def list_for_user(
        self, user_id: uuid.UUID, scope: Optional[str] = None
    ) -> List[ChatMemoryItem]:
        """Live memory items of a user, optionally filtered by scope."""
        query = self.session.query(ChatMemoryItem).filter(
            ChatMemoryItem.user_id == user_id, ChatMemoryItem.deleted_at.is_(None)
        )
        if scope:
            query = query.filter(ChatMemoryItem.scope == scope)
        return query.order_by(ChatMemoryItem.updated_at.desc()).all()

    def delete_for_thread_scope(self, user_id: uuid.UUID, thread_id: uuid.UUID) -> int:
        """Hard-delete thread-scoped items derived from a thread."""
        deleted = (
            self.session.query(ChatMemoryItem)
            .filter(
                ChatMemoryItem.user_id == user_id,
                ChatMemoryItem.scope == "thread",
                ChatMemoryItem.scope_id == thread_id,
            )
            .delete(synchronize_session="fetch")
        )
        self.session.flush()
        return deleted

    def delete_referencing_thread(self, user_id: uuid.UUID, thread_id: uuid.UUID) -> int:
        """Hard-delete every item that records the thread as its origin."""
        deleted = (
            self.session.query(ChatMemoryItem)
            .filter(
                ChatMemoryItem.user_id == user_id,
                ChatMemoryItem.thread_id == thread_id,
            )
            .delete(synchronize_session="fetch")
        )
        self.session.flush()
        return deleted
