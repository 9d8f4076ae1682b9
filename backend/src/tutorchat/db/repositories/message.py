"""
Chat message repository.
"""

import uuid
from typing import List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from tutorchat.db.repositories.base import BaseRepository, query_terms, rank_by_terms
from tutorchat.db.repositories.thread import ThreadRepository
from tutorchat.exceptions import NotFoundError
from tutorchat.models.db import ChatMessage
from tutorchat.utils.timeutil import utcnow


class MessageRepository(BaseRepository[ChatMessage]):
    """Repository for ChatMessage model."""

    def __init__(self, session: Session):
        super().__init__(ChatMessage, session)

    def create_next(
        self,
        thread_id: uuid.UUID,
        user_id: uuid.UUID,
        role: str,
        content: str,
        status: str,
        meta: Optional[dict] = None,
    ) -> ChatMessage:
        """
        Append a message at the thread's next seq.

        Locks the thread row, allocates seq = next_seq and increments the
        counter in the same transaction, so seqs stay gapless.

        Args:
            thread_id: Thread UUID
            user_id: Owner UUID
            role: user or assistant
            content: Message text
            status: Initial message status
            meta: Optional metadata

        Returns:
            Created ChatMessage

        Raises:
            NotFoundError: If the thread does not exist
        """
        thread = ThreadRepository(self.session).lock_by_id(thread_id)
        if thread is None:
            raise NotFoundError(f"Thread {thread_id} not found")

        seq = thread.next_seq
        thread.next_seq = seq + 1
        now = utcnow()
        thread.last_message_at = now
        thread.updated_at = now

        message = ChatMessage(
            thread_id=thread_id,
            user_id=user_id,
            seq=seq,
            role=role,
            content=content,
            status=status,
            meta=dict(meta or {}),
        )
        self.session.add(message)
        self.session.flush()
        return message

    def get_for_user(
        self, message_id: uuid.UUID, user_id: uuid.UUID
    ) -> Optional[ChatMessage]:
        """Get a live message owned by the user."""
        return (
            self.session.query(ChatMessage)
            .filter(
                ChatMessage.id == message_id,
                ChatMessage.user_id == user_id,
                ChatMessage.deleted_at.is_(None),
            )
            .first()
        )

    def list_for_thread(
        self, thread_id: uuid.UUID, limit: Optional[int] = None
    ) -> List[ChatMessage]:
        """List a thread's live messages in seq order."""
        query = (
            self.session.query(ChatMessage)
            .filter(ChatMessage.thread_id == thread_id, ChatMessage.deleted_at.is_(None))
            .order_by(ChatMessage.seq)
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def list_recent(self, thread_id: uuid.UUID, limit: int) -> List[ChatMessage]:
        """
        Get the last `limit` live messages of a thread.

        Returns:
            Messages in ascending seq order
        """
        rows = (
            self.session.query(ChatMessage)
            .filter(ChatMessage.thread_id == thread_id, ChatMessage.deleted_at.is_(None))
            .order_by(ChatMessage.seq.desc())
            .limit(limit)
            .all()
        )
        rows.reverse()
        return rows

    def list_after_seq(
        self, thread_id: uuid.UUID, after_seq: int, limit: Optional[int] = None
    ) -> List[ChatMessage]:
        """Get live messages with seq > after_seq in ascending order."""
        query = (
            self.session.query(ChatMessage)
            .filter(
                ChatMessage.thread_id == thread_id,
                ChatMessage.seq > after_seq,
                ChatMessage.deleted_at.is_(None),
            )
            .order_by(ChatMessage.seq)
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def max_seq(self, thread_id: uuid.UUID) -> int:
        """Highest live seq in the thread (0 if empty)."""
        value = (
            self.session.query(func.max(ChatMessage.seq))
            .filter(ChatMessage.thread_id == thread_id, ChatMessage.deleted_at.is_(None))
            .scalar()
        )
        return int(value or 0)

    def get_last_with_kind(
        self, thread_id: uuid.UUID, kind: str, scan: int = 200
    ) -> Optional[ChatMessage]:
        """
        Find the most recent message whose metadata kind matches.

        Scans the last `scan` messages; metadata is JSON so the match is done
        in Python for portability.
        """
        rows = (
            self.session.query(ChatMessage)
            .filter(ChatMessage.thread_id == thread_id, ChatMessage.deleted_at.is_(None))
            .order_by(ChatMessage.seq.desc())
            .limit(scan)
            .all()
        )
        for row in rows:
            if (row.meta or {}).get("kind") == kind:
                return row
        return None

    def search_text(
        self, thread_id: uuid.UUID, query: str, limit: int = 8
    ) -> List[Tuple[ChatMessage, float]]:
        """
        Full-text search over message content within a thread.

        Uses PostgreSQL full-text search when available, and a term-overlap
        LIKE scan otherwise.

        Returns:
            (message, rank) pairs, best first
        """
        if not (query or "").strip():
            return []

        if self.dialect_name == "postgresql":
            ts_query = func.plainto_tsquery("english", query)
            vector = func.to_tsvector("english", ChatMessage.content)
            rank = func.ts_rank(vector, ts_query)
            rows = (
                self.session.query(ChatMessage, rank)
                .filter(
                    ChatMessage.thread_id == thread_id,
                    ChatMessage.deleted_at.is_(None),
                    vector.op("@@")(ts_query),
                )
                .order_by(rank.desc(), ChatMessage.seq.desc())
                .limit(limit)
                .all()
            )
            return [(msg, float(score or 0.0)) for msg, score in rows]

        terms = query_terms(query)
        if not terms:
            return []
        candidates = (
            self.session.query(ChatMessage)
            .filter(
                ChatMessage.thread_id == thread_id,
                ChatMessage.deleted_at.is_(None),
                or_(*[ChatMessage.content.ilike(f"%{t}%") for t in terms]),
            )
            .order_by(ChatMessage.seq.desc())
            .limit(200)
            .all()
        )
        scored = [(msg, rank_by_terms(msg.content, terms)) for msg in candidates]
        scored.sort(key=lambda pair: (-pair[1], -pair[0].seq))
        return scored[:limit]
