"""
Job handlers for the chat engine.

Each handler reads its job payload, runs one engine operation and returns
the JSON result stored on the job. Handlers are idempotent: writes use
deterministic ids and monotonic cursors, so re-running a job after a crash
or a retry converges to the same state.
"""

import logging
import uuid
from typing import Any, Optional

from tutorchat.chat.maintainer import maintain_thread
from tutorchat.chat.path_index import index_path_for_chat, index_path_node_blocks
from tutorchat.chat.rebuild import purge_thread, rebuild_thread
from tutorchat.chat.responder import ChatResponder, RespondRequest
from tutorchat.db.repositories.base import as_uuid
from tutorchat.exceptions import InputInvalidError
from tutorchat.jobs.queue import (
    JOB_CHAT_MAINTAIN,
    JOB_CHAT_PATH_INDEX,
    JOB_CHAT_PATH_NODE_INDEX,
    JOB_CHAT_PURGE,
    JOB_CHAT_REBUILD,
    JOB_CHAT_RESPOND,
)
from tutorchat.jobs.worker import JobContext, JobHandler

logger = logging.getLogger(__name__)


def _payload_uuid(ctx: JobContext, key: str, fallback: Optional[uuid.UUID] = None) -> uuid.UUID:
    value = as_uuid(ctx.payload.get(key)) or fallback
    if value is None:
        raise InputInvalidError(f"{ctx.job.job_type} job {ctx.job.id}: missing {key}")
    return value


def respond_attempt(ctx: JobContext) -> int:
    """
    Turn attempt for this run.

    The queue counts runs from 1, the turn counts retries from 0. The larger
    of the payload and the job counter wins so the attempt never goes back.
    """
    try:
        from_payload = int(ctx.payload.get("attempt") or 0)
    except (TypeError, ValueError):
        from_payload = 0
    return max(from_payload, (ctx.job.attempt or 1) - 1)


def handle_chat_respond(ctx: JobContext) -> dict[str, Any]:
    user_id = ctx.user_id
    payload_user = as_uuid(ctx.payload.get("user_id"))
    if payload_user is not None and payload_user != user_id:
        raise InputInvalidError(f"chat_respond job {ctx.job.id}: user mismatch")

    request = RespondRequest(
        turn_id=_payload_uuid(ctx, "turn_id", ctx.job.entity_id),
        thread_id=_payload_uuid(ctx, "thread_id"),
        user_id=user_id,
        user_message_id=_payload_uuid(ctx, "user_message_id"),
        assistant_message_id=_payload_uuid(ctx, "assistant_message_id"),
        job_id=ctx.job.id,
        attempt=respond_attempt(ctx),
    )
    ctx.stage("respond")
    responder = ChatResponder(
        ctx.session, ctx.require_llm(), ctx.vector, ctx.notifier, cancel=ctx.cancel
    )
    return responder.respond(request).to_dict()


def handle_chat_maintain(ctx: JobContext) -> dict[str, Any]:
    thread_id = _payload_uuid(ctx, "thread_id", ctx.job.entity_id)
    result = maintain_thread(
        ctx.session, ctx.require_llm(), ctx.vector, ctx.user_id, thread_id, on_stage=ctx.stage
    )
    return result.to_dict()


def handle_chat_rebuild(ctx: JobContext) -> dict[str, Any]:
    thread_id = _payload_uuid(ctx, "thread_id", ctx.job.entity_id)
    ctx.stage("rebuild")
    return rebuild_thread(ctx.session, ctx.vector, ctx.user_id, thread_id).to_dict()


def handle_chat_purge(ctx: JobContext) -> dict[str, Any]:
    thread_id = _payload_uuid(ctx, "thread_id", ctx.job.entity_id)
    ctx.stage("purge")
    return purge_thread(ctx.session, ctx.vector, ctx.user_id, thread_id).to_dict()


def handle_chat_path_index(ctx: JobContext) -> dict[str, Any]:
    path_id = _payload_uuid(ctx, "path_id", ctx.job.entity_id)
    ctx.stage("path_index")
    return index_path_for_chat(ctx.session, ctx.llm, ctx.vector, ctx.user_id, path_id).to_dict()


def handle_chat_path_node_index(ctx: JobContext) -> dict[str, Any]:
    path_id = _payload_uuid(ctx, "path_id")
    node_id = _payload_uuid(ctx, "path_node_id", ctx.job.entity_id)
    ctx.stage("path_node_index")
    return index_path_node_blocks(
        ctx.session, ctx.llm, ctx.vector, ctx.user_id, path_id, node_id
    ).to_dict()


def default_handlers() -> dict[str, JobHandler]:
    """Every chat job type mapped to its handler."""
    return {
        JOB_CHAT_RESPOND: handle_chat_respond,
        JOB_CHAT_MAINTAIN: handle_chat_maintain,
        JOB_CHAT_REBUILD: handle_chat_rebuild,
        JOB_CHAT_PURGE: handle_chat_purge,
        JOB_CHAT_PATH_INDEX: handle_chat_path_index,
        JOB_CHAT_PATH_NODE_INDEX: handle_chat_path_node_index,
    }
