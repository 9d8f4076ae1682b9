"""
Base repository with generic CRUD operations.
"""

import re
import uuid
from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy.orm import Session

from tutorchat.models.db import Base

T = TypeVar("T", bound=Base)

_TERM_RE = re.compile(r"[a-z0-9]+")


class BaseRepository(Generic[T]):
    """Generic repository for a single model class."""

    def __init__(self, model: Type[T], session: Session):
        self.model = model
        self.session = session

    @property
    def dialect_name(self) -> str:
        """Name of the bound database dialect (postgresql, sqlite, ...)."""
        bind = self.session.get_bind()
        if bind is None:
            raise RuntimeError("Session has no bind")
        return bind.dialect.name

    def get(self, id: Any) -> Optional[T]:
        """
        Get a record by primary key.

        Args:
            id: Primary key value

        Returns:
            Model instance or None
        """
        return self.session.get(self.model, id)

    def get_all(self, limit: Optional[int] = None, offset: int = 0) -> List[T]:
        """Get all records with optional pagination."""
        query = self.session.query(self.model).offset(offset)
        if limit:
            query = query.limit(limit)
        return query.all()

    def create(self, **kwargs: Any) -> T:
        """
        Create and flush a new record.

        Args:
            **kwargs: Column values

        Returns:
            Created model instance
        """
        instance = self.model(**kwargs)
        self.session.add(instance)
        self.session.flush()
        return instance

    def update(self, instance: T, **kwargs: Any) -> T:
        """Set attributes on an instance and flush."""
        for key, value in kwargs.items():
            setattr(instance, key, value)
        self.session.flush()
        return instance

    def delete(self, instance: T) -> None:
        """Delete an instance and flush."""
        self.session.delete(instance)
        self.session.flush()

    def count(self) -> int:
        """Count all records."""
        return self.session.query(self.model).count()


def query_terms(query: str, max_terms: int = 8) -> List[str]:
    """
    Split a free-text query into lowercase search terms for LIKE fallbacks.

    Args:
        query: Free-text query
        max_terms: Maximum number of distinct terms

    Returns:
        Distinct terms of at least 3 characters, in query order
    """
    seen: set[str] = set()
    terms: List[str] = []
    for term in _TERM_RE.findall((query or "").lower()):
        if len(term) < 3 or term in seen:
            continue
        seen.add(term)
        terms.append(term)
        if len(terms) >= max_terms:
            break
    return terms


def rank_by_terms(text: str, terms: List[str]) -> float:
    """Fraction of terms present in text (0..1)."""
    if not terms:
        return 0.0
    lower = (text or "").lower()
    return sum(1 for t in terms if t in lower) / len(terms)


def as_uuid(value: Any) -> Optional[uuid.UUID]:
    """Parse a UUID from a UUID, string or None. Returns None when invalid."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except (ValueError, AttributeError):
        return None
