"""
Tests for the database job queue.
"""

import uuid
from datetime import timedelta

import pytest

from tutorchat.config import settings
from tutorchat.jobs.queue import (
    JOB_CHAT_MAINTAIN,
    JOB_CHAT_RESPOND,
    JobQueue,
    job_backoff_seconds,
)
from tutorchat.models.db import JobRun, JobStatus
from tutorchat.utils.timeutil import utcnow


@pytest.fixture
def queue(db_session) -> JobQueue:
    return JobQueue(db_session)


class TestEnqueue:
    """Tests for enqueue and enqueue_unique."""

    def test_enqueue_defaults(self, queue, user_id):
        """Test a new job is queued, unattempted and due now."""
        job = queue.enqueue(user_id, JOB_CHAT_MAINTAIN, "chat_thread", uuid.uuid4(), {"a": 1})

        assert job.status == JobStatus.QUEUED.value
        assert job.attempt == 0
        assert job.max_attempts == settings.job_max_attempts
        assert job.payload == {"a": 1}
        assert job.run_at <= utcnow()

    def test_enqueue_unique_returns_runnable_job(self, queue, user_id):
        thread_id = uuid.uuid4()
        first, created = queue.enqueue_unique(user_id, JOB_CHAT_MAINTAIN, "chat_thread", thread_id)
        again, created_again = queue.enqueue_unique(
            user_id, JOB_CHAT_MAINTAIN, "chat_thread", thread_id
        )

        assert created is True
        assert created_again is False
        assert again.id == first.id

    def test_enqueue_unique_after_completion_creates_new(self, queue, user_id):
        """Test finished jobs do not block a new one for the same entity."""
        thread_id = uuid.uuid4()
        first, _ = queue.enqueue_unique(user_id, JOB_CHAT_MAINTAIN, "chat_thread", thread_id)
        queue.complete(first.id, {"ok": True})

        second, created = queue.enqueue_unique(user_id, JOB_CHAT_MAINTAIN, "chat_thread", thread_id)
        assert created is True
        assert second.id != first.id

    def test_enqueue_unique_is_per_user(self, queue, user_id, other_user_id):
        thread_id = uuid.uuid4()
        queue.enqueue_unique(user_id, JOB_CHAT_MAINTAIN, "chat_thread", thread_id)
        _, created = queue.enqueue_unique(other_user_id, JOB_CHAT_MAINTAIN, "chat_thread", thread_id)
        assert created is True


class TestClaimAndFail:
    """Tests for leasing, completion and retry backoff."""

    def test_claim_next_leases_job(self, queue, user_id):
        job = queue.enqueue(user_id, JOB_CHAT_RESPOND)

        claimed = queue.claim_next([JOB_CHAT_RESPOND], lease_seconds=60)

        assert claimed.id == job.id
        assert claimed.status == JobStatus.RUNNING.value
        assert claimed.attempt == 1
        assert claimed.locked_until > utcnow()

    def test_claim_next_ignores_other_types(self, queue, user_id):
        queue.enqueue(user_id, JOB_CHAT_MAINTAIN)
        assert queue.claim_next([JOB_CHAT_RESPOND]) is None

    def test_claim_next_skips_future_jobs(self, queue, user_id):
        job = queue.enqueue(user_id, JOB_CHAT_RESPOND)
        job.run_at = utcnow() + timedelta(minutes=5)
        queue.session.flush()

        assert queue.claim_next([JOB_CHAT_RESPOND]) is None

    def test_retryable_failure_requeues_with_backoff(self, queue, user_id):
        """Test a retryable failure is re-queued after the backoff delay."""
        job = queue.enqueue(user_id, JOB_CHAT_RESPOND)
        queue.claim_next([JOB_CHAT_RESPOND])

        before = utcnow()
        queue.fail(job.id, "RetryableError: timeout", retryable=True)

        assert job.status == JobStatus.QUEUED.value
        assert job.error == "RetryableError: timeout"
        assert job.locked_until is None
        assert job.run_at >= before + timedelta(seconds=job_backoff_seconds(1)) - timedelta(seconds=1)

    def test_permanent_failure_marks_failed(self, queue, user_id):
        job = queue.enqueue(user_id, JOB_CHAT_RESPOND)
        queue.claim_next([JOB_CHAT_RESPOND])

        queue.fail(job.id, "NotFoundError: gone", retryable=False)

        assert job.status == JobStatus.FAILED.value
        assert job.completed_at is not None

    def test_failure_at_max_attempts_marks_failed(self, queue, user_id):
        job = queue.enqueue(user_id, JOB_CHAT_RESPOND, max_attempts=1)
        queue.claim_next([JOB_CHAT_RESPOND])

        queue.fail(job.id, "boom", retryable=True)

        assert job.status == JobStatus.FAILED.value

    def test_heartbeat_records_stage(self, queue, user_id):
        job = queue.enqueue(user_id, JOB_CHAT_MAINTAIN)
        queue.claim_next([JOB_CHAT_MAINTAIN], lease_seconds=1)

        queue.heartbeat(job.id, stage="summarize", lease_seconds=600)

        assert job.stage == "summarize"
        assert job.locked_until > utcnow() + timedelta(seconds=500)

    def test_cancel_only_runnable(self, queue, user_id):
        job = queue.enqueue(user_id, JOB_CHAT_MAINTAIN)
        queue.complete(job.id)
        queue.cancel(job.id)
        assert job.status == JobStatus.SUCCEEDED.value


class TestBackoff:
    """Tests for the exponential backoff schedule."""

    def test_backoff_doubles_then_caps(self, monkeypatch):
        monkeypatch.setattr(settings, "job_backoff_base_seconds", 2.0)
        monkeypatch.setattr(settings, "job_backoff_cap_seconds", 10)

        assert job_backoff_seconds(1) == 2.0
        assert job_backoff_seconds(2) == 4.0
        assert job_backoff_seconds(3) == 8.0
        assert job_backoff_seconds(4) == 10
        assert job_backoff_seconds(20) == 10


class TestMaintenance:
    """Tests for stale lease recovery, purging and statistics."""

    def test_cleanup_stale_jobs_requeues_expired_lease(self, queue, user_id):
        job = queue.enqueue(user_id, JOB_CHAT_MAINTAIN)
        queue.claim_next([JOB_CHAT_MAINTAIN])
        job.locked_until = utcnow() - timedelta(seconds=1)
        queue.session.flush()

        assert queue.cleanup_stale_jobs() == 1
        assert job.status == JobStatus.QUEUED.value
        assert job.locked_until is None

    def test_cleanup_stale_jobs_fails_exhausted_job(self, queue, user_id):
        job = queue.enqueue(user_id, JOB_CHAT_MAINTAIN, max_attempts=1)
        queue.claim_next([JOB_CHAT_MAINTAIN])
        job.locked_until = utcnow() - timedelta(seconds=1)
        queue.session.flush()

        queue.cleanup_stale_jobs()

        assert job.status == JobStatus.FAILED.value
        assert job.error == "lease expired"

    def test_cleanup_leaves_live_leases(self, queue, user_id):
        queue.enqueue(user_id, JOB_CHAT_MAINTAIN)
        queue.claim_next([JOB_CHAT_MAINTAIN], lease_seconds=300)
        assert queue.cleanup_stale_jobs() == 0

    def test_purge_completed_removes_old_finished_jobs(self, queue, user_id, db_session):
        old = queue.enqueue(user_id, JOB_CHAT_MAINTAIN)
        queue.complete(old.id)
        old.completed_at = utcnow() - timedelta(days=30)
        recent = queue.enqueue(user_id, JOB_CHAT_MAINTAIN)
        queue.complete(recent.id)
        pending = queue.enqueue(user_id, JOB_CHAT_RESPOND)
        db_session.flush()

        assert queue.purge_completed(days=7) == 1

        remaining = {j.id for j in db_session.query(JobRun).all()}
        assert remaining == {recent.id, pending.id}

    def test_stats_counts_by_status(self, queue, user_id):
        queue.enqueue(user_id, JOB_CHAT_MAINTAIN)
        running = queue.enqueue(user_id, JOB_CHAT_RESPOND)
        done = queue.enqueue(user_id, JOB_CHAT_MAINTAIN, entity_id=uuid.uuid4())
        queue.claim_next([JOB_CHAT_RESPOND])
        queue.complete(done.id)

        stats = queue.get_stats()

        assert stats.queued == 1
        assert stats.running == 1
        assert stats.succeeded == 1
        assert stats.total == 3
        assert stats.active == 2
        assert stats.to_dict()["active"] == 2
        assert running.status == JobStatus.RUNNING.value
