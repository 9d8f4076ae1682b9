"""Edit-mode handling: turn an edit request into a node doc edit job."""

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tutorchat.chat.blocks import find_block
from tutorchat.chat.session_context import EditTarget
from tutorchat.db.repositories import PathRepository
from tutorchat.db.repositories.base import as_uuid
from tutorchat.jobs.queue import JOB_NODE_DOC_EDIT, JobQueue
from tutorchat.models.db import ChatThread

logger = logging.getLogger(__name__)

_NON_WORD_RE = re.compile(r"[^\w\s]", re.UNICODE)

WAITPOINT_COMMANDS = frozenset(
    {
        "confirm", "approve", "apply", "accept", "yes", "yep", "ok", "okay",
        "deny", "decline", "reject", "no", "cancel", "discard", "keep", "stop",
        "refine", "change", "revise", "edit", "rewrite",
        "no thanks", "not now", "dont change", "dont edit", "keep it", "leave it",
    }
)


@dataclass
class EditReply:
    text: str
    meta: dict[str, Any] = field(default_factory=dict)
    job_id: Optional[uuid.UUID] = None


def is_waitpoint_command(text: str) -> bool:
    """Short confirm/deny/refine replies meant for a pending waitpoint."""
    normalized = _NON_WORD_RE.sub("", (text or "").lower().replace("_", ""))
    words = normalized.split()
    if not words or len(words) > 3:
        return False
    return " ".join(words) in WAITPOINT_COMMANDS


def handle_edit_request(
    session: Session,
    user_id: uuid.UUID,
    thread: ChatThread,
    target: Optional[EditTarget],
    user_text: str,
) -> EditReply:
    """
    Enqueue a rewrite of the targeted block, or explain why not.

    The reply is always deterministic; the edit job itself drafts the
    revision and suspends for the user's confirmation.
    """
    if is_waitpoint_command(user_text):
        return EditReply(
            "I don’t have a pending edit to confirm or deny right now.",
            {"kind": "node_doc_edit_noop"},
        )
    if target is None or not target.block_id.strip() or not target.path_node_id.strip():
        return EditReply(
            "I can edit the current block, but I don’t have a fresh on-screen block to "
            "target. Scroll the block you want and try again.",
            {"kind": "node_doc_edit_missing_target"},
        )
    node_id = as_uuid(target.path_node_id)
    if node_id is None:
        return EditReply(
            "I couldn’t identify the current block to edit. Please try again.",
            {"kind": "node_doc_edit_missing_target"},
        )

    block_id = target.block_id.strip()
    block_index = target.block_index
    if block_index < 0:
        node = PathRepository(session).get_node(node_id)
        if node is not None:
            block_index, _ = find_block(node.doc, block_id)
    payload = {
        "thread_id": str(thread.id),
        "path_node_id": str(node_id),
        "block_id": block_id,
        "block_index": block_index,
        "action": "rewrite",
        "citation_policy": "reuse_only",
        "instruction": (user_text or "").strip(),
    }
    try:
        with session.begin_nested():
            job = JobQueue(session).enqueue(
                user_id, JOB_NODE_DOC_EDIT, "path_node", node_id, payload
            )
    except SQLAlchemyError as e:
        logger.error(f"Failed to enqueue node doc edit for node {node_id}: {e}")
        return EditReply(
            "I couldn’t start the edit draft. Please try again.",
            {"kind": "node_doc_edit_enqueue_failed", "error": str(e)},
        )

    logger.info(f"Enqueued node doc edit {job.id} for node {node_id} block {block_id}")
    return EditReply(
        "Drafting a revision for the current block. I’ll show a diff for confirmation.",
        {
            "kind": "node_doc_edit_pending",
            "job_id": str(job.id),
            "path_node_id": str(node_id),
            "block_id": block_id,
        },
        job_id=job.id,
    )
