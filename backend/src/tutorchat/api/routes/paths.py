"""
Path index API routes.

Enqueue the rebuild of a path's chat projection, or of one node's blocks.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from tutorchat.api.auth import AuthContext, get_auth_context
from tutorchat.api.schemas import EnqueueResponse
from tutorchat.chat.service import ChatService
from tutorchat.db.connection import get_db

router = APIRouter()


@router.post(
    "/{path_id}/index", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED
)
def index_path(
    path_id: UUID,
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> EnqueueResponse:
    job, created = ChatService(session).enqueue_path_index(auth.user_id, path_id)
    return EnqueueResponse(
        job_id=job.id, job_type=job.job_type, status=job.status, created=created
    )


@router.post(
    "/{path_id}/nodes/{node_id}/index",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def index_path_node(
    path_id: UUID,
    node_id: UUID,
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> EnqueueResponse:
    job, created = ChatService(session).enqueue_path_node_index(auth.user_id, path_id, node_id)
    return EnqueueResponse(
        job_id=job.id, job_type=job.job_type, status=job.status, created=created
    )
