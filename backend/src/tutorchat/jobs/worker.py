"""
Background worker for chat jobs.

Polls the job queue, leases one job at a time and dispatches it to the
handler registered for its type. Failed attempts are re-queued with backoff
by the queue; handlers are idempotent so at-least-once delivery is safe.
"""

import logging
import threading
import time
import uuid
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from tutorchat.config import settings
from tutorchat.db.connection import background_session
from tutorchat.exceptions import (
    AuthMismatchError,
    DependencyUnavailableError,
    InputInvalidError,
    ModelRefusalError,
    NonRetryableError,
    NotFoundError,
)
from tutorchat.jobs.queue import JobQueue
from tutorchat.llm.base import LLMClient
from tutorchat.models.db import JobRun
from tutorchat.sse.hub import ChatNotifier, SSEHub
from tutorchat.vector.base import VectorStore

logger = logging.getLogger(__name__)

# Errors that will not go away by running the job again
PERMANENT_ERRORS = (
    AuthMismatchError,
    InputInvalidError,
    ModelRefusalError,
    NonRetryableError,
    NotFoundError,
)


@dataclass
class JobContext:
    """Everything a handler needs to run one job."""

    session: Session
    job: JobRun
    queue: JobQueue
    llm: Optional[LLMClient]
    vector: Optional[VectorStore]
    notifier: ChatNotifier
    cancel: Optional[threading.Event] = None

    @property
    def payload(self) -> dict[str, Any]:
        return self.job.payload or {}

    @property
    def user_id(self) -> uuid.UUID:
        return self.job.owner_user_id

    def require_llm(self) -> LLMClient:
        if self.llm is None:
            raise DependencyUnavailableError("llm", "no LLM provider configured")
        return self.llm

    def stage(self, name: str) -> None:
        """Record the job's current stage and extend its lease."""
        self.queue.heartbeat(self.job.id, stage=name)
        self.session.commit()


JobHandler = Callable[[JobContext], Optional[dict[str, Any]]]
SessionFactory = Callable[[], AbstractContextManager[Session]]


class JobWorker:
    """
    Background worker that processes chat jobs from the queue.

    Features:
    - One job at a time per worker thread
    - Graceful shutdown support
    - Lease-based recovery of jobs abandoned by crashed workers
    - Handler registry keyed by job type
    """

    def __init__(
        self,
        handlers: Optional[dict[str, JobHandler]] = None,
        notifier: Optional[ChatNotifier] = None,
        llm: Optional[LLMClient] = None,
        vector: Optional[VectorStore] = None,
        session_factory: SessionFactory = background_session,
        poll_interval: Optional[float] = None,
        purge_completed_days: int = 7,
    ):
        """
        Initialize the job worker.

        Args:
            handlers: Job type -> handler (default: all chat handlers)
            notifier: SSE notifier used by responder jobs
            llm: LLM client (created from settings on first use if omitted)
            vector: Vector store (created from settings if omitted)
            session_factory: Context manager yielding a database session
            poll_interval: Seconds between queue polls when idle
            purge_completed_days: Delete finished jobs older than this
        """
        if handlers is None:
            from tutorchat.jobs.handlers import default_handlers

            handlers = default_handlers()
        if vector is None:
            from tutorchat.vector import create_vector_store

            vector = create_vector_store()

        self.handlers = dict(handlers)
        self.notifier = notifier or ChatNotifier(SSEHub())
        self.vector = vector
        self.session_factory = session_factory
        self.poll_interval = poll_interval or settings.worker_poll_interval
        self.purge_completed_days = purge_completed_days
        self._llm = llm
        self._llm_failed = False
        self._running = False
        self._stop_event = threading.Event()
        self._jobs_processed = 0
        self._jobs_succeeded = 0
        self._jobs_failed = 0
        self._last_job_time: Optional[float] = None

    def _get_llm(self) -> Optional[LLMClient]:
        """Get or create the LLM client (lazy initialization)."""
        if self._llm is None and not self._llm_failed:
            from tutorchat.llm import create_llm_client

            try:
                self._llm = create_llm_client()
            except (ValueError, DependencyUnavailableError) as e:
                logger.warning(f"LLM provider not configured - model jobs will fail: {e}")
                self._llm_failed = True
        return self._llm

    @property
    def job_types(self) -> list[str]:
        return sorted(self.handlers)

    def run(self) -> None:
        """
        Main worker loop.

        Polls the job queue and processes jobs until stopped.
        """
        logger.info(f"Job worker starting (types: {', '.join(self.job_types)})")
        self._running = True

        self._cleanup()

        while not self._stop_event.is_set():
            try:
                job_processed = self.run_once()

                if not job_processed:
                    self._stop_event.wait(self.poll_interval)
            except OperationalError as e:
                logger.warning(f"Job worker DB unavailable: {e}")
                self._stop_event.wait(5.0)
            except Exception as e:
                logger.error(f"Error in job worker loop: {e}", exc_info=True)
                self._stop_event.wait(1.0)

        logger.info(
            f"Job worker stopped. "
            f"Processed: {self._jobs_processed}, "
            f"Succeeded: {self._jobs_succeeded}, "
            f"Failed: {self._jobs_failed}"
        )
        self._running = False

    def stop(self) -> None:
        """Signal the worker to stop gracefully."""
        logger.info("Job worker stop requested")
        self._stop_event.set()

    @property
    def is_running(self) -> bool:
        """Check if the worker is currently running."""
        return self._running

    def drain(self, max_jobs: int = 100) -> int:
        """
        Process due jobs until the queue is empty or max_jobs ran.

        Returns:
            Number of jobs processed
        """
        processed = 0
        while processed < max_jobs and self.run_once():
            processed += 1
        return processed

    def run_once(self) -> bool:
        """
        Process the next job from the queue.

        Returns:
            True if a job was processed, False if queue is empty
        """
        with self.session_factory() as session:
            queue = JobQueue(session)
            job = queue.claim_next(self.job_types)

            if not job:
                return False

            job_id = job.id
            job_type = job.job_type
            self._jobs_processed += 1
            logger.info(
                f"Processing {job_type} job {job_id} "
                f"(attempt {job.attempt}/{job.max_attempts})"
            )

            # Persist the claim before running so failed attempts are counted
            session.commit()

            context = JobContext(
                session=session,
                job=job,
                queue=queue,
                llm=self._get_llm(),
                vector=self.vector,
                notifier=self.notifier,
                cancel=self._stop_event,
            )

            try:
                result = self.handlers[job_type](context)
                queue.complete(job_id, result)
                session.commit()

                self._jobs_succeeded += 1
                self._last_job_time = time.time()
            except Exception as e:
                session.rollback()
                queue.fail(
                    job_id,
                    f"{type(e).__name__}: {e}",
                    retryable=not isinstance(e, PERMANENT_ERRORS),
                )
                session.commit()

                self._jobs_failed += 1

                logger.warning(f"Failed {job_type} job {job_id}: {e}")

        return True

    def _cleanup(self) -> None:
        """Perform periodic cleanup tasks."""
        try:
            with self.session_factory() as session:
                queue = JobQueue(session)
                queue.cleanup_stale_jobs()

                purged_count = queue.purge_completed(self.purge_completed_days)
                if purged_count:
                    logger.info(f"Purged {purged_count} old finished jobs")

                session.commit()
        except OperationalError as e:
            logger.warning(f"Job worker cleanup skipped (DB unavailable): {e}")
        except Exception as e:
            logger.error(f"Error during job worker cleanup: {e}")

    def stats(self) -> dict[str, object]:
        return {
            "running": self.is_running,
            "jobs_processed": self._jobs_processed,
            "jobs_succeeded": self._jobs_succeeded,
            "jobs_failed": self._jobs_failed,
            "last_job_time": self._last_job_time,
        }


# Worker instance for app lifecycle management
_worker: Optional[JobWorker] = None
_worker_thread: Optional[threading.Thread] = None


def start_worker(worker: JobWorker) -> None:
    """Start a job worker in a background thread."""
    global _worker, _worker_thread

    if _worker is not None and _worker.is_running:
        logger.warning("Job worker is already running")
        return

    _worker = worker
    _worker_thread = threading.Thread(
        target=_worker.run,
        daemon=True,
        name="job-worker",
    )
    _worker_thread.start()
    logger.info("Started job worker background thread")


def stop_worker(timeout: float = 10.0) -> None:
    """Stop the job worker gracefully."""
    global _worker, _worker_thread

    if _worker is None:
        return

    _worker.stop()

    if _worker_thread is not None and _worker_thread.is_alive():
        _worker_thread.join(timeout=timeout)
        if _worker_thread.is_alive():
            logger.warning(f"Job worker thread did not stop within {timeout}s timeout")

    _worker = None
    _worker_thread = None
    logger.info("Stopped job worker")


def get_worker_stats() -> dict[str, object]:
    """Get statistics from the running job worker."""
    if _worker is None:
        return {"running": False}
    return _worker.stats()
