"""
Chat tool executor.

Runs the pipeline calls chosen by the chat router. Arguments are resolved
from the call and the thread, duplicates are refused while a runnable job
exists for the same entity, and every outcome is a deterministic reply.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tutorchat.chat.routing import CHAT_TOOLS, ChatToolCall, ChatToolSpec
from tutorchat.config import settings
from tutorchat.db.repositories import PathRepository
from tutorchat.db.repositories.base import as_uuid
from tutorchat.jobs.queue import JobQueue
from tutorchat.models.db import ChatThread

logger = logging.getLogger(__name__)

TEXT_NO_TOOL = "I didn’t detect a specific pipeline to run. What should I trigger?"
TEXT_UNSUPPORTED = "I can’t run that pipeline yet. Please try a supported action."
TEXT_ENQUEUE_FAILED = "I tried to start that pipeline, but it failed to enqueue."
TEXT_MISSING_ARGS = "I can do that, but I need: {args}."
TEXT_ALREADY_RUNNING = "A {job_type} job is already running. I’ll post updates here."
TEXT_STARTED = "Started {job_type}. I’ll post updates here."

BUILD_GROUP = "build"

# Entity types whose id argument has a different name
_ENTITY_ARG = {"chat_thread": "thread_id"}


@dataclass
class ToolResult:
    text: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    enqueued_ids: list[uuid.UUID] = field(default_factory=list)


@dataclass
class _SingleResult:
    executed: bool
    text: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    skip_reason: str = ""
    missing: list[str] = field(default_factory=list)
    job_id: Optional[uuid.UUID] = None


def max_tool_calls() -> int:
    return max(1, min(4, settings.chat_tool_max_calls))


class ChatToolExecutor:
    """Executes router tool calls for one thread."""

    def __init__(self, session: Session):
        self.session = session
        self.jobs = JobQueue(session)
        self.paths = PathRepository(session)

    def execute(self, thread: ChatThread, calls: Sequence[ChatToolCall]) -> ToolResult:
        out = ToolResult()
        if not calls:
            out.text = TEXT_NO_TOOL
            return out

        limit = max_tool_calls()
        ordered = sorted(calls, key=lambda c: -c.confidence)
        executed: list[dict[str, Any]] = []
        skipped: list[dict[str, str]] = []
        used_groups: set[str] = set()
        build_started = False
        missing_args: list[str] = []
        missing_tool = ""
        enqueue_failed = False

        for call in ordered:
            if len(executed) >= limit:
                skipped.append({"tool_name": call.tool_name, "reason": "max_calls"})
                continue
            spec = CHAT_TOOLS.get(call.tool_name.strip().lower())
            if spec is None:
                skipped.append({"tool_name": call.tool_name, "reason": "unsupported"})
                continue
            if spec.group and spec.group in used_groups:
                skipped.append({"tool_name": call.tool_name, "reason": "group_conflict"})
                continue
            if build_started and spec.defer_if_build:
                skipped.append({"tool_name": call.tool_name, "reason": "deferred_by_build"})
                continue

            result = self._execute_one(thread, call, spec)
            if result.missing and not missing_args:
                missing_args = result.missing
                missing_tool = spec.name
            if not result.executed:
                enqueue_failed = enqueue_failed or result.skip_reason == "enqueue_failed"
                skipped.append(
                    {"tool_name": call.tool_name, "reason": result.skip_reason or "skipped"}
                )
                continue
            if spec.group:
                used_groups.add(spec.group)
            if spec.group == BUILD_GROUP:
                build_started = True
            executed.append(
                {"tool_name": spec.name, "message": result.text, "metadata": result.metadata}
            )
            if result.job_id is not None:
                out.enqueued_ids.append(result.job_id)

        if not executed:
            if missing_args:
                out.text = TEXT_MISSING_ARGS.format(args=", ".join(missing_args))
                out.metadata.update(
                    {
                        "tool_error": "missing_args",
                        "missing_args": missing_args,
                        "tool_name": missing_tool,
                    }
                )
                return out
            if enqueue_failed:
                out.text = TEXT_ENQUEUE_FAILED
                out.metadata["tool_error"] = "enqueue_failed"
            else:
                out.text = TEXT_UNSUPPORTED
                out.metadata["tool_error"] = "unsupported_tool"
            if skipped:
                out.metadata["skipped"] = skipped
            return out

        if len(executed) == 1:
            out.text = executed[0]["message"]
            out.metadata.update(executed[0]["metadata"])
        else:
            out.text = "\n".join(
                ex["message"] or f"Started {ex['tool_name']}." for ex in executed
            )
        out.metadata["executed"] = executed
        if skipped:
            out.metadata["skipped"] = skipped
        return out

    def _resolve_arguments(
        self, thread: ChatThread, call: ChatToolCall
    ) -> dict[str, uuid.UUID]:
        resolved: dict[str, uuid.UUID] = {}
        for key, value in call.arguments.items():
            parsed = as_uuid(value)
            if parsed is not None:
                resolved[key.strip().lower()] = parsed

        resolved["thread_id"] = thread.id
        if thread.path_id is not None:
            resolved.setdefault("path_id", thread.path_id)

        if "material_set_id" not in resolved and "path_id" in resolved:
            path = self.paths.get_for_user(resolved["path_id"], thread.user_id)
            if path is not None and path.material_set_id is not None:
                resolved["material_set_id"] = path.material_set_id

        if "material_set_id" not in resolved and thread.job_id is not None:
            job = self.jobs.get_for_user(thread.job_id, thread.user_id)
            if job is not None:
                payload = job.payload or {}
                set_id = as_uuid(payload.get("material_set_id"))
                if set_id is not None:
                    resolved["material_set_id"] = set_id
                path_id = as_uuid(payload.get("path_id"))
                if path_id is not None:
                    resolved.setdefault("path_id", path_id)
        return resolved

    def _execute_one(
        self, thread: ChatThread, call: ChatToolCall, spec: ChatToolSpec
    ) -> _SingleResult:
        resolved = self._resolve_arguments(thread, call)
        missing = [arg for arg in spec.required_args if arg not in resolved]
        if missing:
            return _SingleResult(executed=False, skip_reason="missing_args", missing=missing)

        if spec.group == BUILD_GROUP:
            payload = {"material_set_id": str(resolved["material_set_id"])}
            for key in ("path_id", "thread_id"):
                if key in resolved:
                    payload[key] = str(resolved[key])
        else:
            payload = {arg: str(resolved[arg]) for arg in spec.required_args}

        entity_id = resolved.get(_ENTITY_ARG.get(spec.entity_type, f"{spec.entity_type}_id"))
        if entity_id is not None and self.jobs.has_runnable_for_entity(
            thread.user_id, spec.entity_type, entity_id, spec.job_type
        ):
            return _SingleResult(
                executed=True,
                text=TEXT_ALREADY_RUNNING.format(job_type=spec.job_type),
                metadata={"tool_name": spec.name, "already_running": True},
            )

        try:
            with self.session.begin_nested():
                job = self.jobs.enqueue(
                    thread.user_id, spec.job_type, spec.entity_type, entity_id, payload
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to enqueue {spec.job_type} for thread {thread.id}: {e}")
            return _SingleResult(
                executed=False,
                text=TEXT_ENQUEUE_FAILED,
                metadata={"tool_name": spec.name, "tool_error": str(e)},
                skip_reason="enqueue_failed",
            )

        if spec.group == BUILD_GROUP:
            thread.job_id = job.id
            path_id = resolved.get("path_id")
            if path_id is not None:
                path = self.paths.get_for_user(path_id, thread.user_id)
                if path is not None:
                    path.job_id = job.id
            self.session.flush()

        logger.info(f"Chat tool {spec.name} enqueued job {job.id} for thread {thread.id}")
        return _SingleResult(
            executed=True,
            text=TEXT_STARTED.format(job_type=spec.job_type),
            metadata={"tool_name": spec.name, "job_id": str(job.id)},
            job_id=job.id,
        )
