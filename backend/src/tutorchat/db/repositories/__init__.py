"""
Repository layer for database operations.

Provides narrow store contracts over the database models.
"""

from tutorchat.db.repositories.base import BaseRepository
from tutorchat.db.repositories.doc import DocRepository
from tutorchat.db.repositories.graph import GraphRepository
from tutorchat.db.repositories.material import MaterialRepository
from tutorchat.db.repositories.memory import MemoryRepository
from tutorchat.db.repositories.message import MessageRepository
from tutorchat.db.repositories.path import PathRepository
from tutorchat.db.repositories.session_state import SessionStateRepository
from tutorchat.db.repositories.summary import SummaryRepository
from tutorchat.db.repositories.thread import ThreadRepository
from tutorchat.db.repositories.thread_state import ThreadStateRepository
from tutorchat.db.repositories.turn import TurnRepository

__all__ = [
    "BaseRepository",
    "DocRepository",
    "GraphRepository",
    "MaterialRepository",
    "MemoryRepository",
    "MessageRepository",
    "PathRepository",
    "SessionStateRepository",
    "SummaryRepository",
    "ThreadRepository",
    "ThreadStateRepository",
    "TurnRepository",
]
