"""
Background job queue service.

Provides a database-backed job queue with leases, at-least-once delivery
and exponential backoff retries. Handlers are expected to be idempotent.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional, Sequence

from sqlalchemy import func, text
from sqlalchemy.orm import Session

from tutorchat.config import settings
from tutorchat.models.db import RUNNABLE_JOB_STATUSES, JobRun, JobStatus
from tutorchat.utils.hashing import advisory_lock_key
from tutorchat.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

# Job types handled by the chat engine
JOB_CHAT_RESPOND = "chat_respond"
JOB_CHAT_MAINTAIN = "chat_maintain"
JOB_CHAT_REBUILD = "chat_rebuild"
JOB_CHAT_PURGE = "chat_purge"
JOB_CHAT_PATH_INDEX = "chat_path_index"
JOB_CHAT_PATH_NODE_INDEX = "chat_path_node_index"

# Job types enqueued by chat tools for other pipelines
JOB_LEARNING_BUILD = "learning_build"
JOB_LEARNING_BUILD_PROGRESSIVE = "learning_build_progressive"
JOB_NODE_DOC_EDIT = "node_doc_edit"


@dataclass
class QueueStats:
    """Statistics about the job queue."""

    queued: int = 0
    running: int = 0
    waiting_user: int = 0
    succeeded: int = 0
    failed: int = 0
    canceled: int = 0
    total: int = 0

    @property
    def active(self) -> int:
        """Jobs that are queued, running or suspended at a waitpoint."""
        return self.queued + self.running + self.waiting_user

    def to_dict(self) -> dict[str, int]:
        return {
            "queued": self.queued,
            "running": self.running,
            "waiting_user": self.waiting_user,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "canceled": self.canceled,
            "total": self.total,
            "active": self.active,
        }


def job_backoff_seconds(attempt: int) -> float:
    """Exponential backoff before the next attempt, capped."""
    delay = settings.job_backoff_base_seconds * (2 ** max(0, attempt - 1))
    return min(settings.job_backoff_cap_seconds, delay)


class JobQueue:
    """
    Database job queue.

    Uses SELECT FOR UPDATE SKIP LOCKED for atomic job claiming on
    PostgreSQL, ensuring safe concurrent access from multiple workers.
    """

    def __init__(self, session: Session):
        self.session = session

    def enqueue(
        self,
        owner_user_id: uuid.UUID,
        job_type: str,
        entity_type: str = "",
        entity_id: Optional[uuid.UUID] = None,
        payload: Optional[dict[str, Any]] = None,
        max_attempts: Optional[int] = None,
    ) -> JobRun:
        """
        Add a job to the queue.

        Args:
            owner_user_id: User the job runs for
            job_type: Handler key (chat_respond, chat_maintain, ...)
            entity_type: Type of the entity the job works on (thread, path, ...)
            entity_id: Entity id
            payload: JSON payload passed to the handler
            max_attempts: Attempts before the job is marked failed

        Returns:
            Created JobRun
        """
        job = JobRun(
            id=uuid.uuid4(),
            owner_user_id=owner_user_id,
            job_type=job_type,
            entity_type=entity_type or "",
            entity_id=entity_id,
            payload=dict(payload or {}),
            result={},
            status=JobStatus.QUEUED.value,
            attempt=0,
            max_attempts=max_attempts or settings.job_max_attempts,
            run_at=utcnow(),
        )
        self.session.add(job)
        self.session.flush()
        logger.debug(f"Enqueued {job_type} job {job.id} for {entity_type} {entity_id}")
        return job

    def enqueue_unique(
        self,
        owner_user_id: uuid.UUID,
        job_type: str,
        entity_type: str,
        entity_id: uuid.UUID,
        payload: Optional[dict[str, Any]] = None,
    ) -> tuple[JobRun, bool]:
        """
        Enqueue unless a runnable job of the same type exists for the entity.

        On PostgreSQL the check-then-insert runs under a transaction-scoped
        advisory lock keyed by (user, entity, type), so concurrent callers
        produce at most one runnable job.

        Returns:
            (job, created) where job is the new or the existing runnable job
        """
        self._lock_entity(owner_user_id, entity_type, entity_id, job_type)
        existing = self.get_runnable_for_entity(
            owner_user_id, entity_type, entity_id, job_type
        )
        if existing is not None:
            logger.debug(
                f"Runnable {job_type} job already exists for {entity_type} "
                f"{entity_id}: {existing.id}"
            )
            return existing, False
        return (
            self.enqueue(owner_user_id, job_type, entity_type, entity_id, payload),
            True,
        )

    def _lock_entity(
        self,
        owner_user_id: uuid.UUID,
        entity_type: str,
        entity_id: uuid.UUID,
        job_type: str,
    ) -> None:
        bind = self.session.get_bind()
        if bind is None or bind.dialect.name != "postgresql":
            return
        key = advisory_lock_key(f"job|{owner_user_id}|{entity_type}|{entity_id}|{job_type}")
        self.session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})

    def get_runnable_for_entity(
        self,
        owner_user_id: uuid.UUID,
        entity_type: str,
        entity_id: Optional[uuid.UUID],
        job_type: str,
    ) -> Optional[JobRun]:
        """The oldest queued, running or waiting job of a type for an entity."""
        query = self.session.query(JobRun).filter(
            JobRun.owner_user_id == owner_user_id,
            JobRun.entity_type == entity_type,
            JobRun.job_type == job_type,
            JobRun.status.in_(RUNNABLE_JOB_STATUSES),
        )
        if entity_id is None:
            query = query.filter(JobRun.entity_id.is_(None))
        else:
            query = query.filter(JobRun.entity_id == entity_id)
        return query.order_by(JobRun.created_at).first()

    def has_runnable_for_entity(
        self,
        owner_user_id: uuid.UUID,
        entity_type: str,
        entity_id: Optional[uuid.UUID],
        job_type: str,
    ) -> bool:
        """True if a runnable job of the type exists for the entity."""
        return (
            self.get_runnable_for_entity(owner_user_id, entity_type, entity_id, job_type)
            is not None
        )

    def get(self, job_id: uuid.UUID) -> Optional[JobRun]:
        return self.session.get(JobRun, job_id)

    def get_for_user(self, job_id: uuid.UUID, user_id: uuid.UUID) -> Optional[JobRun]:
        """Get a job owned by the user."""
        return (
            self.session.query(JobRun)
            .filter(JobRun.id == job_id, JobRun.owner_user_id == user_id)
            .first()
        )

    def claim_next(
        self,
        job_types: Sequence[str],
        lease_seconds: Optional[int] = None,
    ) -> Optional[JobRun]:
        """
        Atomically claim the next due job of the given types.

        Uses SELECT FOR UPDATE SKIP LOCKED to safely claim jobs
        without blocking other workers.

        Returns:
            JobRun if one is available, None otherwise
        """
        if not job_types:
            return None
        now = utcnow()
        job = (
            self.session.query(JobRun)
            .filter(
                JobRun.status == JobStatus.QUEUED.value,
                JobRun.job_type.in_(list(job_types)),
                JobRun.run_at <= now,
            )
            .order_by(JobRun.run_at, JobRun.created_at)
            .with_for_update(skip_locked=True)
            .first()
        )

        if not job:
            return None

        lease = lease_seconds or settings.worker_lease_seconds
        job.status = JobStatus.RUNNING.value
        job.attempt += 1
        job.started_at = now
        job.locked_until = now + timedelta(seconds=lease)
        job.completed_at = None
        self.session.flush()

        logger.debug(
            f"Claimed {job.job_type} job {job.id} "
            f"(attempt {job.attempt}/{job.max_attempts})"
        )
        return job

    def heartbeat(
        self, job_id: uuid.UUID, stage: Optional[str] = None, lease_seconds: Optional[int] = None
    ) -> None:
        """Extend a running job's lease and optionally record its stage."""
        job = self.get(job_id)
        if job is None or job.status != JobStatus.RUNNING.value:
            return
        job.locked_until = utcnow() + timedelta(
            seconds=lease_seconds or settings.worker_lease_seconds
        )
        if stage:
            job.stage = stage
        self.session.flush()

    def complete(self, job_id: uuid.UUID, result: Optional[dict[str, Any]] = None) -> None:
        """Mark a job as succeeded."""
        job = self.get(job_id)
        if not job:
            logger.warning(f"Job {job_id} not found when trying to complete")
            return
        job.status = JobStatus.SUCCEEDED.value
        job.result = dict(result or {})
        job.error = None
        job.locked_until = None
        job.completed_at = utcnow()
        self.session.flush()
        logger.info(f"{job.job_type} job {job_id} completed successfully")

    def fail(self, job_id: uuid.UUID, error: str, retryable: bool = True) -> None:
        """
        Record a failed attempt.

        The job is re-queued with exponential backoff until max_attempts is
        reached (or immediately failed when not retryable).
        """
        job = self.get(job_id)
        if not job:
            logger.warning(f"Job {job_id} not found when trying to fail")
            return

        job.error = error
        job.locked_until = None
        if not retryable or job.attempt >= job.max_attempts:
            job.status = JobStatus.FAILED.value
            job.completed_at = utcnow()
            logger.warning(
                f"{job.job_type} job {job_id} failed after {job.attempt} attempts: {error}"
            )
        else:
            delay = job_backoff_seconds(job.attempt)
            job.status = JobStatus.QUEUED.value
            job.run_at = utcnow() + timedelta(seconds=delay)
            job.started_at = None
            logger.info(
                f"{job.job_type} job {job_id} failed, will retry in {delay:.0f}s "
                f"(attempt {job.attempt}/{job.max_attempts}): {error}"
            )
        self.session.flush()

    def cancel(self, job_id: uuid.UUID) -> None:
        """Cancel a job that has not finished."""
        job = self.get(job_id)
        if job is None or job.status not in RUNNABLE_JOB_STATUSES:
            return
        job.status = JobStatus.CANCELED.value
        job.locked_until = None
        job.completed_at = utcnow()
        self.session.flush()

    def get_stats(self) -> QueueStats:
        """
        Get queue statistics.

        Returns:
            QueueStats with counts by status
        """
        results = (
            self.session.query(JobRun.status, func.count(JobRun.id))
            .group_by(JobRun.status)
            .all()
        )

        stats = QueueStats()
        for status, count in results:
            if status == JobStatus.QUEUED.value:
                stats.queued = count
            elif status == JobStatus.RUNNING.value:
                stats.running = count
            elif status == JobStatus.WAITING_USER.value:
                stats.waiting_user = count
            elif status == JobStatus.SUCCEEDED.value:
                stats.succeeded = count
            elif status == JobStatus.FAILED.value:
                stats.failed = count
            elif status == JobStatus.CANCELED.value:
                stats.canceled = count
            stats.total += count

        return stats

    def cleanup_stale_jobs(self) -> int:
        """
        Re-queue running jobs whose lease expired.

        This handles cases where a worker crashed mid-job.

        Returns:
            Number of jobs reset
        """
        now = utcnow()
        stale = (
            self.session.query(JobRun)
            .filter(
                JobRun.status == JobStatus.RUNNING.value,
                JobRun.locked_until.is_not(None),
                JobRun.locked_until < now,
            )
            .all()
        )
        for job in stale:
            if job.attempt >= job.max_attempts:
                job.status = JobStatus.FAILED.value
                job.error = job.error or "lease expired"
                job.completed_at = now
            else:
                job.status = JobStatus.QUEUED.value
                job.run_at = now
            job.locked_until = None
        self.session.flush()

        if stale:
            logger.warning(f"Reset {len(stale)} stale jobs")
        return len(stale)

    def purge_completed(self, days: int = 7) -> int:
        """
        Delete finished jobs older than specified days.

        Args:
            days: Age threshold for deletion

        Returns:
            Number of jobs deleted
        """
        threshold = utcnow() - timedelta(days=days)
        result = (
            self.session.query(JobRun)
            .filter(
                JobRun.status.in_(
                    [
                        JobStatus.SUCCEEDED.value,
                        JobStatus.FAILED.value,
                        JobStatus.CANCELED.value,
                    ]
                ),
                JobRun.completed_at < threshold,
            )
            .delete(synchronize_session=False)
        )

        if result > 0:
            logger.info(f"Purged {result} finished jobs older than {days} days")

        return result
