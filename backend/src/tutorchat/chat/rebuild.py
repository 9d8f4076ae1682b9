"""
Thread rebuild and purge.

Both drop every derived artifact of a thread so maintenance can regrow it
from the canonical messages. Purge additionally removes turn traces and any
memory item that names the thread as its origin; it runs after a thread is
archived.
"""

import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tutorchat.chat.retrieval import delete_vectors
from tutorchat.db.repositories import (
    DocRepository,
    GraphRepository,
    MemoryRepository,
    SummaryRepository,
    ThreadStateRepository,
)
from tutorchat.exceptions import InputInvalidError, NotFoundError
from tutorchat.jobs.queue import JOB_CHAT_MAINTAIN, JobQueue
from tutorchat.models.db import ChatDoc, ChatThread, ChatTurn, DocScope
from tutorchat.vector import VectorStore, chat_user_namespace

logger = logging.getLogger(__name__)


@dataclass
class RebuildResult:
    docs_deleted: int = 0
    summaries_deleted: int = 0
    memory_deleted: int = 0
    turns_deleted: int = 0
    maintain_job_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _load_thread(
    session: Session, user_id: uuid.UUID, thread_id: uuid.UUID, include_archived: bool
) -> ChatThread:
    if user_id is None or thread_id is None:
        raise InputInvalidError("user_id and thread_id are required")
    thread = session.get(ChatThread, thread_id)
    # Someone else's thread reads as missing
    if thread is None or thread.user_id != user_id:
        raise NotFoundError(f"thread {thread_id} not found")
    if thread.deleted_at is not None and not include_archived:
        raise NotFoundError(f"thread {thread_id} not found")
    return thread


def _drop_projections(
    session: Session,
    vector: Optional[VectorStore],
    user_id: uuid.UUID,
    thread_id: uuid.UUID,
    result: RebuildResult,
) -> None:
    vector_ids = DocRepository(session).delete_where(
        ChatDoc.user_id == user_id, ChatDoc.thread_id == thread_id
    )
    result.docs_deleted = len(vector_ids)
    result.summaries_deleted = SummaryRepository(session).delete_for_thread(thread_id)
    GraphRepository(session).delete_for_scope(user_id, DocScope.THREAD.value, thread_id)
    ThreadStateRepository(session).reset(thread_id)
    # SQL first; vector ids are a cache
    delete_vectors(vector, chat_user_namespace(user_id), vector_ids)


def rebuild_thread(
    session: Session,
    vector: Optional[VectorStore],
    user_id: uuid.UUID,
    thread_id: uuid.UUID,
    enqueue_maintain: bool = True,
) -> RebuildResult:
    """
    Delete a thread's derived artifacts and reset its cursors.

    Thread-scoped memory is cleared so it can be re-extracted; path and user
    memory survive. A chat_maintain job is enqueued to regrow everything.

    Raises:
        NotFoundError: If the thread is missing, archived or not the user's
    """
    _load_thread(session, user_id, thread_id, include_archived=False)
    result = RebuildResult()
    result.memory_deleted = MemoryRepository(session).delete_for_thread_scope(user_id, thread_id)
    _drop_projections(session, vector, user_id, thread_id, result)

    if enqueue_maintain:
        try:
            with session.begin_nested():
                job, _ = JobQueue(session).enqueue_unique(
                    user_id,
                    JOB_CHAT_MAINTAIN,
                    "chat_thread",
                    thread_id,
                    {"thread_id": str(thread_id)},
                )
            result.maintain_job_id = str(job.id)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to enqueue maintenance after rebuilding thread {thread_id}: {e}")

    logger.info(f"Rebuilt thread {thread_id} projections: {result.to_dict()}")
    return result


def purge_thread(
    session: Session,
    vector: Optional[VectorStore],
    user_id: uuid.UUID,
    thread_id: uuid.UUID,
) -> RebuildResult:
    """
    Remove every derived artifact and turn trace of an archived thread.

    Raises:
        NotFoundError: If the thread does not exist or is not the user's
    """
    _load_thread(session, user_id, thread_id, include_archived=True)
    result = RebuildResult()
    result.memory_deleted = MemoryRepository(session).delete_referencing_thread(user_id, thread_id)
    result.turns_deleted = (
        session.query(ChatTurn)
        .filter(ChatTurn.user_id == user_id, ChatTurn.thread_id == thread_id)
        .delete(synchronize_session="fetch")
    )
    _drop_projections(session, vector, user_id, thread_id, result)
    logger.info(f"Purged thread {thread_id} artifacts: {result.to_dict()}")
    return result
