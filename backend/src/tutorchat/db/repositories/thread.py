"""
Chat thread repository.
"""

import uuid
from typing import List, Optional

from sqlalchemy.orm import Session

from tutorchat.db.repositories.base import BaseRepository
from tutorchat.models.db import ChatThread, ThreadStatus
from tutorchat.utils.timeutil import utcnow


class ThreadRepository(BaseRepository[ChatThread]):
    """Repository for ChatThread model."""

    def __init__(self, session: Session):
        super().__init__(ChatThread, session)

    def get_for_user(
        self, thread_id: uuid.UUID, user_id: uuid.UUID
    ) -> Optional[ChatThread]:
        """
        Get a live thread owned by the user.

        Args:
            thread_id: Thread UUID
            user_id: Owner UUID

        Returns:
            ChatThread or None if missing, deleted or owned by someone else
        """
        return (
            self.session.query(ChatThread)
            .filter(
                ChatThread.id == thread_id,
                ChatThread.user_id == user_id,
                ChatThread.deleted_at.is_(None),
            )
            .first()
        )

    def lock_by_id(self, thread_id: uuid.UUID) -> Optional[ChatThread]:
        """
        Load a thread with a row-level lock (SELECT ... FOR UPDATE).

        Serializes seq allocation across concurrent writers on PostgreSQL.
        SQLite ignores the lock clause and serializes writers itself.
        """
        return (
            self.session.query(ChatThread)
            .filter(ChatThread.id == thread_id)
            .populate_existing()
            .with_for_update()
            .first()
        )

    def list_for_user(
        self, user_id: uuid.UUID, limit: int = 50, offset: int = 0
    ) -> List[ChatThread]:
        """List a user's live threads, most recently active first."""
        return (
            self.session.query(ChatThread)
            .filter(ChatThread.user_id == user_id, ChatThread.deleted_at.is_(None))
            .order_by(ChatThread.updated_at.desc(), ChatThread.id)
            .offset(offset)
            .limit(limit)
            .all()
        )

    def create_thread(
        self,
        user_id: uuid.UUID,
        title: str = "New chat",
        path_id: Optional[uuid.UUID] = None,
        job_id: Optional[uuid.UUID] = None,
    ) -> ChatThread:
        """Create a new active thread with next_seq = 1."""
        return self.create(
            user_id=user_id,
            title=(title or "New chat").strip()[:500] or "New chat",
            path_id=path_id,
            job_id=job_id,
            next_seq=1,
            status=ThreadStatus.ACTIVE.value,
            meta={},
        )

    def archive(self, thread: ChatThread) -> ChatThread:
        """Soft-delete a thread."""
        now = utcnow()
        return self.update(
            thread, status=ThreadStatus.ARCHIVED.value, deleted_at=now
        )
