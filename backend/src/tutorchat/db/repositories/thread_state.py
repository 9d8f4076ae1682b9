"""
Thread state repository.

Owns the four maintenance cursors. Every cursor update is applied as
max(existing, proposed) inside the UPDATE statement, so concurrent
maintainers on the same thread can never move a cursor backwards.
"""

import uuid
from typing import Optional

from sqlalchemy import case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tutorchat.db.repositories.base import BaseRepository
from tutorchat.models.db import ChatThreadState
from tutorchat.utils.timeutil import utcnow

CURSOR_FIELDS = (
    "last_indexed_seq",
    "last_summarized_seq",
    "last_graph_seq",
    "last_memory_seq",
)


class ThreadStateRepository(BaseRepository[ChatThreadState]):
    """Repository for ChatThreadState model."""

    def __init__(self, session: Session):
        super().__init__(ChatThreadState, session)

    def ensure(self, thread_id: uuid.UUID) -> ChatThreadState:
        """
        Get the thread's state row, creating it if missing.

        Exactly one row exists per thread; a concurrent creator losing the race
        falls back to reading the winner's row.
        """
        state = self.get(thread_id)
        if state is not None:
            return state

        try:
            with self.session.begin_nested():
                state = ChatThreadState(thread_id=thread_id)
                self.session.add(state)
        except IntegrityError:
            state = self.get(thread_id)
            if state is None:
                raise
        return state

    def advance(
        self,
        thread_id: uuid.UUID,
        last_indexed_seq: Optional[int] = None,
        last_summarized_seq: Optional[int] = None,
        last_graph_seq: Optional[int] = None,
        last_memory_seq: Optional[int] = None,
    ) -> ChatThreadState:
        """
        Move cursors forward. Proposed values below the stored value are ignored.

        Args:
            thread_id: Thread UUID
            last_indexed_seq: Proposed index cursor
            last_summarized_seq: Proposed summary cursor
            last_graph_seq: Proposed graph cursor
            last_memory_seq: Proposed memory cursor

        Returns:
            Refreshed ChatThreadState
        """
        self.ensure(thread_id)
        proposed = {
            "last_indexed_seq": last_indexed_seq,
            "last_summarized_seq": last_summarized_seq,
            "last_graph_seq": last_graph_seq,
            "last_memory_seq": last_memory_seq,
        }
        values = {}
        for field, value in proposed.items():
            if value is None:
                continue
            column = getattr(ChatThreadState, field)
            values[column] = case((column < int(value), int(value)), else_=column)
        if values:
            values[ChatThreadState.updated_at] = utcnow()
            (
                self.session.query(ChatThreadState)
                .filter(ChatThreadState.thread_id == thread_id)
                .update(values, synchronize_session=False)
            )
            self.session.flush()

        state = self.get(thread_id)
        self.session.refresh(state)
        return state

    def set_conversation_id(
        self, thread_id: uuid.UUID, conversation_id: str
    ) -> ChatThreadState:
        """Persist the provider conversation handle for the thread."""
        state = self.ensure(thread_id)
        state.openai_conversation_id = conversation_id
        state.updated_at = utcnow()
        self.session.flush()
        return state

    def reset(self, thread_id: uuid.UUID) -> None:
        """Delete the thread's state row (cursors restart from zero)."""
        (
            self.session.query(ChatThreadState)
            .filter(ChatThreadState.thread_id == thread_id)
            .delete(synchronize_session="fetch")
        )
        self.session.flush()
