"""
Chat service.

Entry points used by the HTTP layer and the CLI: thread lifecycle, posting
a message (which creates the turn and enqueues chat_respond) and enqueueing
maintenance, rebuild, purge and path index jobs.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session

from tutorchat.chat.responder import message_payload
from tutorchat.config import settings
from tutorchat.db.repositories import MessageRepository, PathRepository, ThreadRepository, TurnRepository
from tutorchat.exceptions import InputInvalidError, NotFoundError, ThreadBusyError
from tutorchat.jobs.queue import (
    JOB_CHAT_MAINTAIN,
    JOB_CHAT_PATH_INDEX,
    JOB_CHAT_PATH_NODE_INDEX,
    JOB_CHAT_PURGE,
    JOB_CHAT_REBUILD,
    JOB_CHAT_RESPOND,
    JobQueue,
)
from tutorchat.models.db import (
    ChatMessage,
    ChatThread,
    ChatTurn,
    JobRun,
    MessageRole,
    MessageStatus,
    TurnStatus,
)
from tutorchat.sse.hub import ChatNotifier

logger = logging.getLogger(__name__)

THREAD_ENTITY = "chat_thread"
TURN_ENTITY = "chat_turn"
PATH_ENTITY = "path"
PATH_NODE_ENTITY = "path_node"


@dataclass
class PostedMessage:
    """Rows created by posting a user message."""

    turn: ChatTurn
    user_message: ChatMessage
    assistant_message: ChatMessage
    job: JobRun

    def to_dict(self) -> dict[str, Any]:
        return {
            "turn_id": str(self.turn.id),
            "user_message": message_payload(self.user_message),
            "assistant_message": message_payload(self.assistant_message),
            "job_id": str(self.job.id),
        }


class ChatService:
    """Thread and message operations for one request."""

    def __init__(self, session: Session, notifier: Optional[ChatNotifier] = None):
        self.session = session
        self.notifier = notifier
        self.threads = ThreadRepository(session)
        self.messages = MessageRepository(session)
        self.turns = TurnRepository(session)
        self.jobs = JobQueue(session)

    def require_thread(self, user_id: uuid.UUID, thread_id: uuid.UUID) -> ChatThread:
        """
        Load a live thread of the user.

        Raises:
            NotFoundError: When missing, archived or owned by someone else
        """
        thread = self.threads.get_for_user(thread_id, user_id)
        if thread is None:
            raise NotFoundError(f"thread {thread_id} not found")
        return thread

    # -------------------------------------------------------------------------
    # Threads
    # -------------------------------------------------------------------------

    def create_thread(
        self,
        user_id: uuid.UUID,
        title: str = "",
        path_id: Optional[uuid.UUID] = None,
    ) -> ChatThread:
        job_id = None
        if path_id is not None:
            path = PathRepository(self.session).get_for_user(path_id, user_id)
            if path is None:
                raise NotFoundError(f"path {path_id} not found")
            job_id = path.job_id
        thread = self.threads.create_thread(user_id, title or "New chat", path_id, job_id)
        self.session.commit()
        logger.info(f"Created thread {thread.id} for user {user_id}")
        return thread

    def list_threads(self, user_id: uuid.UUID, limit: int = 50, offset: int = 0) -> list[ChatThread]:
        return self.threads.list_for_user(user_id, limit=limit, offset=offset)

    def get_thread(
        self, user_id: uuid.UUID, thread_id: uuid.UUID, limit: Optional[int] = None
    ) -> tuple[ChatThread, list[ChatMessage]]:
        thread = self.require_thread(user_id, thread_id)
        return thread, self.messages.list_for_thread(thread.id, limit=limit)

    def archive_thread(self, user_id: uuid.UUID, thread_id: uuid.UUID) -> JobRun:
        """Soft-delete a thread and enqueue the purge of its artifacts."""
        thread = self.require_thread(user_id, thread_id)
        self.threads.archive(thread)
        job = self.jobs.enqueue(
            user_id, JOB_CHAT_PURGE, THREAD_ENTITY, thread.id, {"thread_id": str(thread.id)}
        )
        self.session.commit()
        logger.info(f"Archived thread {thread.id}, purge job {job.id}")
        return job

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def post_message(
        self,
        user_id: uuid.UUID,
        thread_id: uuid.UUID,
        content: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> PostedMessage:
        """
        Append a user message and queue the assistant reply.

        Creates the user message at seq N, an empty streaming assistant
        placeholder at N+1, the turn linking them and a chat_respond job.

        Raises:
            InputInvalidError: If the content is empty or too long
            NotFoundError: If the thread is not the user's
            ThreadBusyError: If a reply is already queued or running
        """
        text = (content or "").strip()
        if not text:
            raise InputInvalidError("message content is empty")
        if len(text) > settings.chat_max_message_chars:
            raise InputInvalidError(
                f"message exceeds {settings.chat_max_message_chars} characters"
            )

        thread = self.require_thread(user_id, thread_id)
        # Serializes concurrent posts on the thread
        self.threads.lock_by_id(thread.id)
        if self.turns.has_open_turn(thread.id):
            raise ThreadBusyError(thread.id)

        user_message = self.messages.create_next(
            thread.id, user_id, MessageRole.USER.value, text, MessageStatus.SENT.value, metadata
        )
        assistant_message = self.messages.create_next(
            thread.id, user_id, MessageRole.ASSISTANT.value, "", MessageStatus.STREAMING.value
        )
        turn = self.turns.create(
            user_id=user_id,
            thread_id=thread.id,
            user_message_id=user_message.id,
            assistant_message_id=assistant_message.id,
            status=TurnStatus.QUEUED.value,
            attempt=0,
            retrieval_trace={},
        )
        job = self.jobs.enqueue(user_id, JOB_CHAT_RESPOND, TURN_ENTITY, turn.id)
        job.payload = {
            "turn_id": str(turn.id),
            "thread_id": str(thread.id),
            "user_id": str(user_id),
            "user_message_id": str(user_message.id),
            "assistant_message_id": str(assistant_message.id),
            "job_id": str(job.id),
            "attempt": 0,
        }
        turn.job_id = job.id
        self.session.commit()

        if self.notifier is not None:
            for message in (user_message, assistant_message):
                self.notifier.message_created(
                    user_id, thread.id, message_payload(message), {"turn_id": str(turn.id)}
                )
        logger.info(
            f"Queued turn {turn.id} on thread {thread.id} "
            f"(seq {user_message.seq}/{assistant_message.seq}, job {job.id})"
        )
        return PostedMessage(turn, user_message, assistant_message, job)

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    def enqueue_maintain(self, user_id: uuid.UUID, thread_id: uuid.UUID) -> tuple[JobRun, bool]:
        thread = self.require_thread(user_id, thread_id)
        job, created = self.jobs.enqueue_unique(
            user_id, JOB_CHAT_MAINTAIN, THREAD_ENTITY, thread.id, {"thread_id": str(thread.id)}
        )
        self.session.commit()
        return job, created

    def enqueue_rebuild(self, user_id: uuid.UUID, thread_id: uuid.UUID) -> tuple[JobRun, bool]:
        thread = self.require_thread(user_id, thread_id)
        job, created = self.jobs.enqueue_unique(
            user_id, JOB_CHAT_REBUILD, THREAD_ENTITY, thread.id, {"thread_id": str(thread.id)}
        )
        self.session.commit()
        return job, created

    def enqueue_path_index(self, user_id: uuid.UUID, path_id: uuid.UUID) -> tuple[JobRun, bool]:
        if PathRepository(self.session).get_for_user(path_id, user_id) is None:
            raise NotFoundError(f"path {path_id} not found")
        job, created = self.jobs.enqueue_unique(
            user_id, JOB_CHAT_PATH_INDEX, PATH_ENTITY, path_id, {"path_id": str(path_id)}
        )
        self.session.commit()
        return job, created

    def enqueue_path_node_index(
        self, user_id: uuid.UUID, path_id: uuid.UUID, node_id: uuid.UUID
    ) -> tuple[JobRun, bool]:
        paths = PathRepository(self.session)
        if paths.get_for_user(path_id, user_id) is None:
            raise NotFoundError(f"path {path_id} not found")
        node = paths.get_node(node_id)
        if node is None or node.path_id != path_id:
            raise NotFoundError(f"path node {node_id} not found")
        job, created = self.jobs.enqueue_unique(
            user_id,
            JOB_CHAT_PATH_NODE_INDEX,
            PATH_NODE_ENTITY,
            node_id,
            {"path_id": str(path_id), "path_node_id": str(node_id)},
        )
        self.session.commit()
        return job, created

    def get_job(self, user_id: uuid.UUID, job_id: uuid.UUID) -> JobRun:
        job = self.jobs.get_for_user(job_id, user_id)
        if job is None:
            raise NotFoundError(f"job {job_id} not found")
        return job
