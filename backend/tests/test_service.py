"""
Tests for ChatService thread and message operations.
"""

import uuid

import pytest

from tutorchat.chat.service import ChatService
from tutorchat.config import settings
from tutorchat.exceptions import InputInvalidError, NotFoundError, ThreadBusyError
from tutorchat.jobs.queue import (
    JOB_CHAT_MAINTAIN,
    JOB_CHAT_PATH_INDEX,
    JOB_CHAT_PATH_NODE_INDEX,
    JOB_CHAT_PURGE,
    JOB_CHAT_RESPOND,
)
from tutorchat.models.db import (
    ChatMessage,
    JobStatus,
    MessageRole,
    MessageStatus,
    PathNode,
    ThreadStatus,
    TurnStatus,
)
from tutorchat.sse.hub import EVENT_MESSAGE_CREATED


@pytest.fixture
def service(db_session, notifier) -> ChatService:
    return ChatService(db_session, notifier)


class TestThreads:
    """Tests for thread lifecycle."""

    def test_create_thread_defaults(self, service, user_id):
        thread = service.create_thread(user_id)

        assert thread.title == "New chat"
        assert thread.next_seq == 1
        assert thread.status == ThreadStatus.ACTIVE.value
        assert thread.path_id is None

    def test_create_thread_on_path_copies_build_job(self, service, db_session, user_id, sample_path):
        build_job = uuid.uuid4()
        sample_path.job_id = build_job
        db_session.commit()

        thread = service.create_thread(user_id, "Path chat", path_id=sample_path.id)

        assert thread.path_id == sample_path.id
        assert thread.job_id == build_job

    def test_create_thread_rejects_foreign_path(self, service, other_user_id, sample_path):
        with pytest.raises(NotFoundError):
            service.create_thread(other_user_id, path_id=sample_path.id)

    def test_list_threads_is_per_user(self, service, user_id, other_user_id):
        service.create_thread(user_id, "mine")
        service.create_thread(other_user_id, "theirs")

        titles = [t.title for t in service.list_threads(user_id)]
        assert titles == ["mine"]

    def test_get_thread_of_other_user_is_not_found(self, service, other_user_id, sample_thread):
        with pytest.raises(NotFoundError):
            service.get_thread(other_user_id, sample_thread.id)

    def test_archive_thread_enqueues_purge(self, service, user_id, sample_thread):
        job = service.archive_thread(user_id, sample_thread.id)

        assert job.job_type == JOB_CHAT_PURGE
        assert job.entity_id == sample_thread.id
        assert sample_thread.status == ThreadStatus.ARCHIVED.value
        assert sample_thread.deleted_at is not None
        with pytest.raises(NotFoundError):
            service.require_thread(user_id, sample_thread.id)


class TestPostMessage:
    """Tests for posting a user message."""

    def test_post_creates_pair_turn_and_job(self, service, user_id, sample_thread):
        posted = service.post_message(user_id, sample_thread.id, "  what is a graph?  ")

        assert posted.user_message.seq == 1
        assert posted.user_message.content == "what is a graph?"
        assert posted.user_message.role == MessageRole.USER.value
        assert posted.user_message.status == MessageStatus.SENT.value
        assert posted.assistant_message.seq == 2
        assert posted.assistant_message.content == ""
        assert posted.assistant_message.status == MessageStatus.STREAMING.value

        assert posted.turn.status == TurnStatus.QUEUED.value
        assert posted.turn.attempt == 0
        assert posted.turn.job_id == posted.job.id

        assert posted.job.job_type == JOB_CHAT_RESPOND
        assert posted.job.payload == {
            "turn_id": str(posted.turn.id),
            "thread_id": str(sample_thread.id),
            "user_id": str(user_id),
            "user_message_id": str(posted.user_message.id),
            "assistant_message_id": str(posted.assistant_message.id),
            "job_id": str(posted.job.id),
            "attempt": 0,
        }
        assert sample_thread.next_seq == 3

    def test_seqs_are_gapless_across_turns(self, service, db_session, user_id, sample_thread):
        first = service.post_message(user_id, sample_thread.id, "one")
        first.turn.status = TurnStatus.DONE.value
        db_session.commit()
        second = service.post_message(user_id, sample_thread.id, "two")

        seqs = [
            m.seq
            for m in db_session.query(ChatMessage)
            .filter(ChatMessage.thread_id == sample_thread.id)
            .order_by(ChatMessage.seq)
        ]
        assert seqs == [1, 2, 3, 4]
        assert second.user_message.seq == 3

    def test_open_turn_makes_thread_busy(self, service, user_id, sample_thread):
        service.post_message(user_id, sample_thread.id, "first")
        with pytest.raises(ThreadBusyError):
            service.post_message(user_id, sample_thread.id, "second")

    @pytest.mark.parametrize("content", ["", "   ", None])
    def test_empty_content_rejected(self, service, user_id, sample_thread, content):
        with pytest.raises(InputInvalidError):
            service.post_message(user_id, sample_thread.id, content)

    def test_too_long_content_rejected(self, service, user_id, sample_thread, monkeypatch):
        monkeypatch.setattr(settings, "chat_max_message_chars", 10)
        with pytest.raises(InputInvalidError):
            service.post_message(user_id, sample_thread.id, "x" * 11)

    def test_post_to_foreign_thread_not_found(self, service, other_user_id, sample_thread):
        with pytest.raises(NotFoundError):
            service.post_message(other_user_id, sample_thread.id, "hello")

    def test_post_emits_created_events(self, service, hub, user_id, sample_thread):
        subscription = hub.subscribe(user_id)

        posted = service.post_message(user_id, sample_thread.id, "hello")

        events = subscription.pending()
        assert [e.event for e in events] == [EVENT_MESSAGE_CREATED, EVENT_MESSAGE_CREATED]
        assert [e.data["message"]["seq"] for e in events] == [1, 2]
        assert all(e.data["turn_id"] == str(posted.turn.id) for e in events)


class TestEnqueueJobs:
    """Tests for maintenance and index job entry points."""

    def test_enqueue_maintain_is_unique(self, service, user_id, sample_thread):
        job, created = service.enqueue_maintain(user_id, sample_thread.id)
        again, created_again = service.enqueue_maintain(user_id, sample_thread.id)

        assert job.job_type == JOB_CHAT_MAINTAIN
        assert created and not created_again
        assert again.id == job.id

    def test_enqueue_path_index(self, service, user_id, sample_path):
        job, created = service.enqueue_path_index(user_id, sample_path.id)

        assert created
        assert job.job_type == JOB_CHAT_PATH_INDEX
        assert job.payload == {"path_id": str(sample_path.id)}
        assert job.status == JobStatus.QUEUED.value

    def test_enqueue_path_index_foreign_path(self, service, other_user_id, sample_path):
        with pytest.raises(NotFoundError):
            service.enqueue_path_index(other_user_id, sample_path.id)

    def test_enqueue_node_index_checks_node_belongs_to_path(
        self, service, db_session, user_id, sample_path
    ):
        node = db_session.query(PathNode).filter(PathNode.path_id == sample_path.id).first()
        job, _ = service.enqueue_path_node_index(user_id, sample_path.id, node.id)
        assert job.job_type == JOB_CHAT_PATH_NODE_INDEX
        assert job.payload["path_node_id"] == str(node.id)

        with pytest.raises(NotFoundError):
            service.enqueue_path_node_index(user_id, sample_path.id, uuid.uuid4())

    def test_get_job_is_owner_scoped(self, service, user_id, other_user_id, sample_thread):
        job, _ = service.enqueue_maintain(user_id, sample_thread.id)
        assert service.get_job(user_id, job.id).id == job.id
        with pytest.raises(NotFoundError):
            service.get_job(other_user_id, job.id)
