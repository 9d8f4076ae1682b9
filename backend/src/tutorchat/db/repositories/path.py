"""
Learning path repository (paths, nodes, concepts).

The engine reads path content; authoring it is done elsewhere.
"""

import uuid
from typing import List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from tutorchat.db.repositories.base import BaseRepository
from tutorchat.models.db import Concept, ConceptEdge, Path, PathNode, UserConceptState


class PathRepository(BaseRepository[Path]):
    """Repository for Path and its nodes and concepts."""

    def __init__(self, session: Session):
        super().__init__(Path, session)

    def get_for_user(self, path_id: uuid.UUID, user_id: uuid.UUID) -> Optional[Path]:
        """Get a path owned by the user."""
        return (
            self.session.query(Path)
            .filter(Path.id == path_id, Path.user_id == user_id)
            .first()
        )

    def list_nodes(self, path_id: uuid.UUID) -> List[PathNode]:
        """Nodes of a path in index order."""
        return (
            self.session.query(PathNode)
            .filter(PathNode.path_id == path_id)
            .order_by(PathNode.index, PathNode.id)
            .all()
        )

    def get_node(self, node_id: uuid.UUID) -> Optional[PathNode]:
        """Get a node by id."""
        return self.session.get(PathNode, node_id)

    def get_nodes(self, node_ids: Sequence[uuid.UUID]) -> List[PathNode]:
        """Get nodes by id."""
        if not node_ids:
            return []
        return self.session.query(PathNode).filter(PathNode.id.in_(list(node_ids))).all()

    def list_concepts(self, path_id: uuid.UUID) -> List[Concept]:
        """Concepts scoped to a path, most important first."""
        return (
            self.session.query(Concept)
            .filter(Concept.scope == "path", Concept.scope_id == path_id)
            .order_by(Concept.sort_index.desc(), Concept.depth, Concept.key)
            .all()
        )

    def list_concept_edges(
        self, concept_ids: Sequence[uuid.UUID], limit: Optional[int] = None
    ) -> List[ConceptEdge]:
        """Edges touching any of the concepts."""
        if not concept_ids:
            return []
        ids = list(concept_ids)
        query = self.session.query(ConceptEdge).filter(
            or_(ConceptEdge.from_concept_id.in_(ids), ConceptEdge.to_concept_id.in_(ids))
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def list_user_concept_states(
        self, user_id: uuid.UUID, concept_ids: Sequence[uuid.UUID]
    ) -> List[UserConceptState]:
        """Mastery rows of a user for the given concepts."""
        if not concept_ids:
            return []
        return (
            self.session.query(UserConceptState)
            .filter(
                UserConceptState.user_id == user_id,
                UserConceptState.concept_id.in_(list(concept_ids)),
            )
            .all()
        )
