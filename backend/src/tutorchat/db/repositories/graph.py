"""
Chat knowledge graph repository (entities, edges, claims).

Rows are flat tables keyed by deterministic ids; traversals are bounded
lookups by id lists.
"""

import uuid
from typing import List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from tutorchat.db.repositories.base import BaseRepository
from tutorchat.models.db import ChatClaim, ChatEdge, ChatEntity
from tutorchat.utils.hashing import deterministic_uuid
from tutorchat.utils.timeutil import utcnow


def entity_id_for(
    user_id: uuid.UUID, scope: str, scope_id: Optional[uuid.UUID], name: str
) -> uuid.UUID:
    """Deterministic entity id from (user, scope, scope_id, lower(name))."""
    return deterministic_uuid(
        f"chat_entity|{user_id}|{scope}|{scope_id or ''}|{name.strip().lower()}"
    )


class GraphRepository(BaseRepository[ChatEntity]):
    """Repository for the derived chat graph."""

    def __init__(self, session: Session):
        super().__init__(ChatEntity, session)

    def upsert_entity_by_name(
        self,
        user_id: uuid.UUID,
        scope: str,
        scope_id: Optional[uuid.UUID],
        name: str,
        entity_type: str = "",
        description: str = "",
        aliases: Optional[Sequence[str]] = None,
    ) -> ChatEntity:
        """
        Create or refresh an entity canonicalized by lower(name).

        Existing entities keep their id; type and description are filled in
        when previously empty, and aliases are merged.
        """
        name = name.strip()
        name_norm = name.lower()
        entity = (
            self.session.query(ChatEntity)
            .filter(
                ChatEntity.user_id == user_id,
                ChatEntity.scope == scope,
                (
                    ChatEntity.scope_id.is_(None)
                    if scope_id is None
                    else ChatEntity.scope_id == scope_id
                ),
                ChatEntity.name_norm == name_norm,
            )
            .first()
        )
        clean_aliases = sorted(
            {a.strip() for a in (aliases or []) if a and a.strip() and a.strip() != name}
        )

        if entity is None:
            entity = ChatEntity(
                id=entity_id_for(user_id, scope, scope_id, name),
                user_id=user_id,
                scope=scope,
                scope_id=scope_id,
                name=name,
                name_norm=name_norm,
                type=entity_type or "",
                description=description or "",
                aliases=clean_aliases,
            )
            self.session.add(entity)
            self.session.flush()
            return entity

        if entity_type and not entity.type:
            entity.type = entity_type
        if description and len(description) > len(entity.description or ""):
            entity.description = description
        merged = sorted(set(entity.aliases or []) | set(clean_aliases))
        if merged != list(entity.aliases or []):
            entity.aliases = merged
        entity.updated_at = utcnow()
        self.session.flush()
        return entity

    def insert_edge_ignore(self, edge: ChatEdge) -> bool:
        """Insert an edge unless its deterministic id exists. Returns True if inserted."""
        if self.session.get(ChatEdge, edge.id) is not None:
            return False
        self.session.add(edge)
        self.session.flush()
        return True

    def insert_claim_ignore(self, claim: ChatClaim) -> bool:
        """Insert a claim unless its deterministic id exists. Returns True if inserted."""
        if self.session.get(ChatClaim, claim.id) is not None:
            return False
        self.session.add(claim)
        self.session.flush()
        return True

    def get_entities(self, ids: Sequence[uuid.UUID]) -> List[ChatEntity]:
        """Fetch entities by id."""
        if not ids:
            return []
        return self.session.query(ChatEntity).filter(ChatEntity.id.in_(list(ids))).all()

    def list_edges_touching(
        self, entity_ids: Sequence[uuid.UUID], limit: int = 40
    ) -> List[ChatEdge]:
        """Newest edges whose source or destination is among the entities."""
        if not entity_ids:
            return []
        ids = list(entity_ids)
        return (
            self.session.query(ChatEdge)
            .filter(or_(ChatEdge.src_entity_id.in_(ids), ChatEdge.dst_entity_id.in_(ids)))
            .order_by(ChatEdge.created_at.desc(), ChatEdge.id)
            .limit(limit)
            .all()
        )

    def list_claims(
        self,
        user_id: uuid.UUID,
        scope: str,
        scope_id: Optional[uuid.UUID],
        limit: int = 12,
    ) -> List[ChatClaim]:
        """Newest claims of a scope."""
        query = self.session.query(ChatClaim).filter(
            ChatClaim.user_id == user_id, ChatClaim.scope == scope
        )
        if scope_id is None:
            query = query.filter(ChatClaim.scope_id.is_(None))
        else:
            query = query.filter(ChatClaim.scope_id == scope_id)
        return query.order_by(ChatClaim.created_at.desc(), ChatClaim.id).limit(limit).all()

    def list_entities_for_scope(
        self, user_id: uuid.UUID, scope: str, scope_id: Optional[uuid.UUID]
    ) -> List[ChatEntity]:
        """All entities of a scope, by name."""
        query = self.session.query(ChatEntity).filter(
            ChatEntity.user_id == user_id, ChatEntity.scope == scope
        )
        if scope_id is None:
            query = query.filter(ChatEntity.scope_id.is_(None))
        else:
            query = query.filter(ChatEntity.scope_id == scope_id)
        return query.order_by(ChatEntity.name_norm).all()

    def list_edges_for_scope(
        self, user_id: uuid.UUID, scope: str, scope_id: Optional[uuid.UUID]
    ) -> List[ChatEdge]:
        """All edges of a scope."""
        query = self.session.query(ChatEdge).filter(
            ChatEdge.user_id == user_id, ChatEdge.scope == scope
        )
        if scope_id is None:
            query = query.filter(ChatEdge.scope_id.is_(None))
        else:
            query = query.filter(ChatEdge.scope_id == scope_id)
        return query.order_by(ChatEdge.created_at).all()

    def delete_for_scope(
        self, user_id: uuid.UUID, scope: str, scope_id: uuid.UUID
    ) -> None:
        """Delete entities, edges and claims of a scope."""
        for model in (ChatEntity, ChatEdge, ChatClaim):
            (
                self.session.query(model)
                .filter(
                    model.user_id == user_id,
                    model.scope == scope,
                    model.scope_id == scope_id,
                )
                .delete(synchronize_session="fetch")
            )
        self.session.flush()
