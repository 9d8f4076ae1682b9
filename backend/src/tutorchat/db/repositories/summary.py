"""
RAPTOR summary node repository.
"""

import uuid
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from tutorchat.db.repositories.base import BaseRepository
from tutorchat.models.db import ChatSummaryNode


class SummaryRepository(BaseRepository[ChatSummaryNode]):
    """Repository for ChatSummaryNode model."""

    def __init__(self, session: Session):
        super().__init__(ChatSummaryNode, session)

    def create_ignore(self, node: ChatSummaryNode) -> ChatSummaryNode:
        """
        Insert a node unless a node with the same deterministic id exists.

        Returns:
            The stored node (existing or newly inserted)
        """
        existing = self.get(node.id)
        if existing is not None:
            return existing
        self.session.add(node)
        self.session.flush()
        return node

    def set_parent(
        self, child_ids: Sequence[uuid.UUID], parent_id: uuid.UUID
    ) -> int:
        """Point children at their parent. Returns rows updated."""
        if not child_ids:
            return 0
        updated = (
            self.session.query(ChatSummaryNode)
            .filter(ChatSummaryNode.id.in_(list(child_ids)))
            .update({ChatSummaryNode.parent_id: parent_id}, synchronize_session="fetch")
        )
        self.session.flush()
        return updated

    def list_orphans_by_level(
        self, thread_id: uuid.UUID, level: int
    ) -> List[ChatSummaryNode]:
        """Nodes of a level that have no parent yet, in seq order."""
        return (
            self.session.query(ChatSummaryNode)
            .filter(
                ChatSummaryNode.thread_id == thread_id,
                ChatSummaryNode.level == level,
                ChatSummaryNode.parent_id.is_(None),
            )
            .order_by(ChatSummaryNode.start_seq, ChatSummaryNode.id)
            .all()
        )

    def list_for_thread(self, thread_id: uuid.UUID) -> List[ChatSummaryNode]:
        """All nodes of a thread ordered by level then start seq."""
        return (
            self.session.query(ChatSummaryNode)
            .filter(ChatSummaryNode.thread_id == thread_id)
            .order_by(ChatSummaryNode.level, ChatSummaryNode.start_seq)
            .all()
        )

    def get_root(self, thread_id: uuid.UUID) -> Optional[ChatSummaryNode]:
        """
        The top of the forest: the highest-level parentless node covering the
        latest messages.
        """
        return (
            self.session.query(ChatSummaryNode)
            .filter(
                ChatSummaryNode.thread_id == thread_id,
                ChatSummaryNode.parent_id.is_(None),
            )
            .order_by(
                ChatSummaryNode.level.desc(),
                ChatSummaryNode.end_seq.desc(),
            )
            .first()
        )

    def delete_for_thread(self, thread_id: uuid.UUID) -> int:
        """Delete the whole forest of a thread."""
        deleted = (
            self.session.query(ChatSummaryNode)
            .filter(ChatSummaryNode.thread_id == thread_id)
            .delete(synchronize_session="fetch")
        )
        self.session.flush()
        return deleted
