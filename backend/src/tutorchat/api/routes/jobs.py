"""
Job API routes.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tutorchat.api.auth import AuthContext, get_auth_context
from tutorchat.api.schemas import JobResponse, QueueStatsResponse
from tutorchat.chat.service import ChatService
from tutorchat.db.connection import get_db
from tutorchat.jobs.queue import JobQueue
from tutorchat.jobs.worker import get_worker_stats

router = APIRouter()


@router.get("/stats", response_model=QueueStatsResponse)
def queue_stats(
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> QueueStatsResponse:
    """Queue counts by status plus the in-process worker's counters."""
    stats = JobQueue(session).get_stats().to_dict()
    return QueueStatsResponse(**stats, worker=get_worker_stats())


@router.get("/{job_id}", response_model=JobResponse)
def get_job(
    job_id: UUID,
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> JobResponse:
    return JobResponse.model_validate(ChatService(session).get_job(auth.user_id, job_id))
