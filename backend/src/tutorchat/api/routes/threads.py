"""
Thread API routes.

Thread lifecycle, message posting and the per-thread SSE stream.
"""

from typing import Iterator
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from tutorchat.api.auth import AuthContext, get_auth_context, get_hub, get_notifier
from tutorchat.api.schemas import (
    EnqueueResponse,
    MessageCreate,
    MessageResponse,
    PostMessageResponse,
    ThreadCreate,
    ThreadDetail,
    ThreadListResponse,
    ThreadResponse,
)
from tutorchat.chat.responder import message_payload
from tutorchat.chat.service import ChatService
from tutorchat.db.connection import get_db
from tutorchat.sse.hub import ChatNotifier, SSEHub, iter_events

router = APIRouter()


@router.post("", response_model=ThreadResponse, status_code=status.HTTP_201_CREATED)
def create_thread(
    body: ThreadCreate,
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> ThreadResponse:
    """Create a thread, optionally bound to one of the user's paths."""
    thread = ChatService(session).create_thread(auth.user_id, body.title, body.path_id)
    return ThreadResponse.model_validate(thread)


@router.get("", response_model=ThreadListResponse)
def list_threads(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> ThreadListResponse:
    threads = ChatService(session).list_threads(auth.user_id, limit=limit, offset=offset)
    return ThreadListResponse(items=[ThreadResponse.model_validate(t) for t in threads])


@router.get("/{thread_id}", response_model=ThreadDetail)
def get_thread(
    thread_id: UUID,
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> ThreadDetail:
    thread, messages = ChatService(session).get_thread(auth.user_id, thread_id)
    return ThreadDetail(
        **ThreadResponse.model_validate(thread).model_dump(),
        messages=[MessageResponse(**message_payload(m)) for m in messages],
    )


@router.delete("/{thread_id}", response_model=EnqueueResponse)
def delete_thread(
    thread_id: UUID,
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> EnqueueResponse:
    """Archive the thread and enqueue the purge of its derived artifacts."""
    job = ChatService(session).archive_thread(auth.user_id, thread_id)
    return EnqueueResponse(job_id=job.id, job_type=job.job_type, status=job.status)


@router.post(
    "/{thread_id}/messages",
    response_model=PostMessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def post_message(
    thread_id: UUID,
    body: MessageCreate,
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
    notifier: ChatNotifier = Depends(get_notifier),
) -> PostMessageResponse:
    """
    Post a user message.

    The reply is produced by a chat_respond job; follow it on the stream.
    Returns 409 while another reply on the thread is queued or running.
    """
    posted = ChatService(session, notifier).post_message(
        auth.user_id, thread_id, body.content, body.metadata
    )
    return PostMessageResponse.model_validate(posted.to_dict())


@router.post("/{thread_id}/rebuild", response_model=EnqueueResponse)
def rebuild_thread(
    thread_id: UUID,
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> EnqueueResponse:
    job, created = ChatService(session).enqueue_rebuild(auth.user_id, thread_id)
    return EnqueueResponse(
        job_id=job.id, job_type=job.job_type, status=job.status, created=created
    )


@router.get("/{thread_id}/stream")
def stream_thread(
    thread_id: UUID,
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
    hub: SSEHub = Depends(get_hub),
) -> StreamingResponse:
    """Server-sent events for the thread (message_created/delta/done/error)."""
    ChatService(session).require_thread(auth.user_id, thread_id)
    subscription = hub.subscribe(auth.user_id)

    def events() -> Iterator[str]:
        try:
            yield from iter_events(subscription, thread_id=str(thread_id))
        finally:
            hub.unsubscribe(subscription)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
