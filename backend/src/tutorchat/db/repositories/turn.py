"""
Chat turn repository.
"""

import uuid
from typing import List, Optional

from sqlalchemy.orm import Session

from tutorchat.db.repositories.base import BaseRepository
from tutorchat.models.db import ChatTurn, TurnStatus


class TurnRepository(BaseRepository[ChatTurn]):
    """Repository for ChatTurn model."""

    def __init__(self, session: Session):
        super().__init__(ChatTurn, session)

    def get_for_user(self, turn_id: uuid.UUID, user_id: uuid.UUID) -> Optional[ChatTurn]:
        """Get a turn owned by the user."""
        return (
            self.session.query(ChatTurn)
            .filter(ChatTurn.id == turn_id, ChatTurn.user_id == user_id)
            .first()
        )

    def list_for_thread(self, thread_id: uuid.UUID) -> List[ChatTurn]:
        """List a thread's turns, oldest first."""
        return (
            self.session.query(ChatTurn)
            .filter(ChatTurn.thread_id == thread_id)
            .order_by(ChatTurn.created_at, ChatTurn.id)
            .all()
        )

    def has_open_turn(self, thread_id: uuid.UUID) -> bool:
        """True if a turn of the thread is queued or running."""
        return (
            self.session.query(ChatTurn.id)
            .filter(
                ChatTurn.thread_id == thread_id,
                ChatTurn.status.in_(
                    [TurnStatus.QUEUED.value, TurnStatus.RUNNING.value]
                ),
            )
            .first()
            is not None
        )
