"""
Source material repository (material sets, files, chunks, concept evidence).
"""

import uuid
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from tutorchat.db.repositories.base import BaseRepository, query_terms, rank_by_terms
from tutorchat.models.db import (
    ConceptEvidence,
    MaterialChunk,
    MaterialFile,
    MaterialSet,
)


class MaterialRepository(BaseRepository[MaterialSet]):
    """Repository for material sets and their files and chunks."""

    def __init__(self, session: Session):
        super().__init__(MaterialSet, session)

    def list_files(self, material_set_id: uuid.UUID) -> List[MaterialFile]:
        """Files of a set ordered by creation time."""
        return (
            self.session.query(MaterialFile)
            .filter(MaterialFile.material_set_id == material_set_id)
            .order_by(MaterialFile.created_at, MaterialFile.id)
            .all()
        )

    def get_chunks(self, chunk_ids: Sequence[uuid.UUID]) -> List[MaterialChunk]:
        """Fetch chunks by id."""
        if not chunk_ids:
            return []
        return (
            self.session.query(MaterialChunk)
            .filter(MaterialChunk.id.in_(list(chunk_ids)))
            .all()
        )

    def filter_chunk_ids_in_set(
        self, material_set_id: uuid.UUID, chunk_ids: Sequence[uuid.UUID]
    ) -> List[uuid.UUID]:
        """Keep only chunk ids that belong to the set."""
        if not chunk_ids:
            return []
        rows = (
            self.session.query(MaterialChunk.id)
            .join(MaterialFile, MaterialChunk.material_file_id == MaterialFile.id)
            .filter(
                MaterialFile.material_set_id == material_set_id,
                MaterialChunk.id.in_(list(chunk_ids)),
            )
            .all()
        )
        return [row[0] for row in rows]

    def cosine_candidates(
        self, material_set_id: uuid.UUID, limit: int = 1200
    ) -> List[MaterialChunk]:
        """Chunks of a set for in-process cosine scoring."""
        return (
            self.session.query(MaterialChunk)
            .join(MaterialFile, MaterialChunk.material_file_id == MaterialFile.id)
            .filter(MaterialFile.material_set_id == material_set_id)
            .order_by(MaterialChunk.material_file_id, MaterialChunk.index)
            .limit(limit)
            .all()
        )

    def lexical_search(
        self, material_set_id: uuid.UUID, query: str, limit: int = 18
    ) -> List[Tuple[MaterialChunk, float]]:
        """
        Full-text search over chunk text within a set.

        Returns:
            (chunk, rank) pairs, best first
        """
        if not (query or "").strip():
            return []

        base = (
            self.session.query(MaterialChunk)
            .join(MaterialFile, MaterialChunk.material_file_id == MaterialFile.id)
            .filter(MaterialFile.material_set_id == material_set_id)
        )

        if self.dialect_name == "postgresql":
            ts_query = func.plainto_tsquery("english", query)
            vector = func.to_tsvector("english", MaterialChunk.text)
            rank = func.ts_rank(vector, ts_query)
            rows = (
                base.add_columns(rank)
                .filter(vector.op("@@")(ts_query))
                .order_by(rank.desc())
                .limit(limit)
                .all()
            )
            return [(chunk, float(score or 0.0)) for chunk, score in rows]

        terms = query_terms(query)
        if not terms:
            return []
        candidates = (
            base.filter(or_(*[MaterialChunk.text.ilike(f"%{t}%") for t in terms]))
            .limit(400)
            .all()
        )
        scored = [(chunk, rank_by_terms(chunk.text, terms)) for chunk in candidates]
        scored.sort(key=lambda pair: -pair[1])
        return scored[:limit]

    def get_files(self, file_ids: Sequence[uuid.UUID]) -> List[MaterialFile]:
        """Fetch files by id."""
        if not file_ids:
            return []
        return (
            self.session.query(MaterialFile)
            .filter(MaterialFile.id.in_(list(file_ids)))
            .all()
        )

    def evidence_for_chunks(
        self, chunk_ids: Sequence[uuid.UUID]
    ) -> List[ConceptEvidence]:
        """Concept evidence rows attached to the chunks."""
        if not chunk_ids:
            return []
        return (
            self.session.query(ConceptEvidence)
            .filter(ConceptEvidence.material_chunk_id.in_(list(chunk_ids)))
            .all()
        )

    def evidence_for_concepts(
        self,
        material_set_id: uuid.UUID,
        concept_ids: Sequence[uuid.UUID],
        allow_file_ids: Optional[Sequence[uuid.UUID]] = None,
    ) -> List[ConceptEvidence]:
        """Concept evidence rows of the concepts restricted to chunks of the set."""
        if not concept_ids:
            return []
        query = (
            self.session.query(ConceptEvidence)
            .join(MaterialChunk, ConceptEvidence.material_chunk_id == MaterialChunk.id)
            .join(MaterialFile, MaterialChunk.material_file_id == MaterialFile.id)
            .filter(
                MaterialFile.material_set_id == material_set_id,
                ConceptEvidence.concept_id.in_(list(concept_ids)),
            )
        )
        if allow_file_ids:
            query = query.filter(MaterialFile.id.in_(list(allow_file_ids)))
        return query.all()
