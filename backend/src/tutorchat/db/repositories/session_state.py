"""
User session state repository.
"""

import uuid
from typing import Optional

from sqlalchemy.orm import Session

from tutorchat.db.repositories.base import BaseRepository
from tutorchat.models.db import UserSessionState


class SessionStateRepository(BaseRepository[UserSessionState]):
    """Repository for UserSessionState model."""

    def __init__(self, session: Session):
        super().__init__(UserSessionState, session)

    def get_for_user(
        self, session_id: uuid.UUID, user_id: uuid.UUID
    ) -> Optional[UserSessionState]:
        """Get a session snapshot owned by the user."""
        return (
            self.session.query(UserSessionState)
            .filter(
                UserSessionState.session_id == session_id,
                UserSessionState.user_id == user_id,
            )
            .first()
        )

    def latest_for_user(self, user_id: uuid.UUID) -> Optional[UserSessionState]:
        """The user's most recently seen session snapshot."""
        return (
            self.session.query(UserSessionState)
            .filter(UserSessionState.user_id == user_id)
            .order_by(UserSessionState.last_seen_at.desc())
            .first()
        )
