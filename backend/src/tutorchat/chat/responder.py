"""
Responder: answers one chat turn.

A turn moves queued -> running -> (done | error). The assistant placeholder
is filled by one of three routes: small talk (fast model, no retrieval),
tool calls (deterministic reply, no streaming) or a product answer (context
plan, evidence selection, throttled streaming, citation and quote checks).

Progress is committed while streaming so other sessions see partial
content. A stream failure marks the message and turn `error`, commits, and
re-raises so the job runner can retry; a retry resets the placeholder.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tutorchat.chat import prompts
from tutorchat.chat.edit import handle_edit_request
from tutorchat.chat.evidence import (
    EvidenceCitation,
    EvidenceSource,
    apply_citation_replacements,
    build_citations,
    extract_quoted_strings,
    filter_quote_sources,
    parse_citation_markers,
    render_evidence_sources,
    repair_quoted_answer,
    select_evidence_sources,
    strip_citation_markers,
    verify_quotes_in_evidence,
)
from tutorchat.chat.planner import build_context_plan
from tutorchat.chat.routing import (
    MODE_EDIT,
    ROUTE_PRODUCT,
    ROUTE_SMALLTALK,
    ROUTE_TOOL,
    ChatRouteDecision,
    route_chat_message,
    thread_has_active_waitpoint,
)
from tutorchat.chat.session_context import wants_material_quotes, wants_verbatim_quote
from tutorchat.chat.textutil import format_recent
from tutorchat.chat.tools import ChatToolExecutor
from tutorchat.config import settings
from tutorchat.db.repositories import (
    MessageRepository,
    ThreadRepository,
    ThreadStateRepository,
    TurnRepository,
)
from tutorchat.exceptions import ChatEngineError, InputInvalidError, NotFoundError
from tutorchat.jobs.queue import JOB_CHAT_MAINTAIN, JobQueue
from tutorchat.llm.base import LLMClient
from tutorchat.models.db import (
    ChatMessage,
    ChatThread,
    ChatTurn,
    MessageStatus,
    TurnStatus,
)
from tutorchat.sse.hub import ChatNotifier
from tutorchat.utils.timeutil import utcnow
from tutorchat.vector import VectorStore

logger = logging.getLogger(__name__)

ROUTER_HISTORY_MESSAGES = 12
ROUTER_RECENT_MESSAGES = 6

MATERIAL_QUOTE_MISSING_TEXT = "\n".join(
    [
        "I don’t have any slide text indexed for this path, so I can’t provide citations "
        "or verbatim quotes from the file.",
        "If you want slide‑level quotes, re‑ingest the file (or upload a PDF) so the slide "
        "text can be extracted and indexed.",
        "I can still list the source file(s) or summarize based on the path materials "
        "summary if that’s helpful.",
    ]
)

NO_VERBATIM_EVIDENCE = "No verbatim evidence available."


def message_payload(message: ChatMessage) -> dict[str, Any]:
    """JSON view of a message for SSE events and API responses."""
    return {
        "id": str(message.id),
        "thread_id": str(message.thread_id),
        "user_id": str(message.user_id),
        "seq": message.seq,
        "role": message.role,
        "content": message.content or "",
        "status": message.status,
        "metadata": dict(message.meta or {}),
        "created_at": message.created_at.isoformat() if message.created_at else None,
        "updated_at": message.updated_at.isoformat() if message.updated_at else None,
    }


@dataclass
class RespondRequest:
    """Identifiers of one chat_respond job."""

    turn_id: uuid.UUID
    thread_id: uuid.UUID
    user_id: uuid.UUID
    user_message_id: uuid.UUID
    assistant_message_id: uuid.UUID
    job_id: Optional[uuid.UUID] = None
    attempt: int = 0


@dataclass
class RespondResult:
    route: str
    assistant_text: str
    turn_id: uuid.UUID
    attempt: int = 0
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "route": self.route,
            "turn_id": str(self.turn_id),
            "attempt": self.attempt,
            "assistant_chars": len(self.assistant_text),
        }


class _StreamWriter:
    """Coalesces model deltas into throttled DB writes and SSE emits."""

    def __init__(
        self,
        session: Session,
        notifier: Optional[ChatNotifier],
        message: ChatMessage,
        request: RespondRequest,
    ):
        self.session = session
        self.notifier = notifier
        self.message = message
        self.request = request
        self.parts: list[str] = []
        self.content_len = 0
        self.pending: list[str] = []
        self.pending_bytes = 0
        self.delta_seq = 0
        now = time.monotonic()
        self.last_flush_at = now
        self.last_flush_len = 0
        self.last_notify_at = now

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def on_delta(self, delta: str) -> None:
        if not delta:
            return
        self.parts.append(delta)
        self.content_len += len(delta)
        self.pending.append(delta)
        self.pending_bytes += len(delta.encode("utf-8"))

        since_notify_ms = (time.monotonic() - self.last_notify_at) * 1000
        if (
            since_notify_ms >= settings.chat_stream_notify_flush_ms
            or self.pending_bytes >= settings.chat_stream_notify_flush_bytes
        ):
            self.flush_notify()
        self.flush_db()

    def flush_notify(self) -> None:
        if not self.pending:
            return
        chunk = "".join(self.pending)
        self.pending = []
        self.pending_bytes = 0
        if self.notifier is None:
            return
        self.delta_seq += 1
        self.notifier.message_delta(
            self.request.user_id,
            self.request.thread_id,
            self.message.id,
            chunk,
            self.delta_seq,
            self.content_len,
            turn_id=self.request.turn_id,
            attempt=self.request.attempt,
        )
        self.last_notify_at = time.monotonic()

    def flush_db(self, force: bool = False) -> None:
        since_ms = (time.monotonic() - self.last_flush_at) * 1000
        grown = self.content_len - self.last_flush_len
        if not force and (
            since_ms < settings.chat_stream_db_flush_ms
            and grown < settings.chat_stream_db_flush_chars
        ):
            return
        self.last_flush_at = time.monotonic()
        self.last_flush_len = self.content_len
        self.message.content = self.text
        self.message.status = MessageStatus.STREAMING.value
        self.message.updated_at = utcnow()
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.warning(f"Failed to persist partial reply {self.message.id}: {e}")


class ChatResponder:
    """Runs the turn state machine for chat_respond jobs."""

    def __init__(
        self,
        session: Session,
        llm: Optional[LLMClient],
        vector: Optional[VectorStore] = None,
        notifier: Optional[ChatNotifier] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.session = session
        self.llm = llm
        self.vector = vector
        self.notifier = notifier
        self.cancel = cancel
        self.messages = MessageRepository(session)
        self.turns = TurnRepository(session)
        self.states = ThreadStateRepository(session)
        self.jobs = JobQueue(session)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def respond(self, request: RespondRequest) -> RespondResult:
        """
        Produce the assistant reply for a turn.

        Raises:
            InputInvalidError: Missing ids or empty user message
            NotFoundError: Thread, turn or messages not found for the user
            ChatEngineError: Model failures while streaming (after the turn
                has been marked `error`)
        """
        if not all(
            (
                request.turn_id,
                request.thread_id,
                request.user_id,
                request.user_message_id,
                request.assistant_message_id,
            )
        ):
            raise InputInvalidError("chat respond: missing ids")
        if self.llm is None:
            raise InputInvalidError("chat respond: no model client")

        thread = ThreadRepository(self.session).get_for_user(
            request.thread_id, request.user_id
        )
        if thread is None:
            raise NotFoundError(f"Thread {request.thread_id} not found")
        turn = self.turns.get_for_user(request.turn_id, request.user_id)
        if turn is None:
            raise NotFoundError(f"Turn {request.turn_id} not found")
        assistant = self._load_message(request.assistant_message_id, request)

        self._start_turn(turn, assistant, request)

        user_message = self._load_message(request.user_message_id, request)
        user_text = (user_message.content or "").strip()
        if not user_text:
            raise InputInvalidError("chat respond: empty user message")

        state = self.states.ensure(thread.id)

        history = [
            m
            for m in self.messages.list_recent(thread.id, ROUTER_HISTORY_MESSAGES)
            if m.seq < user_message.seq
        ]
        recent = format_recent(history, ROUTER_RECENT_MESSAGES)

        decision = ChatRouteDecision(route=ROUTE_PRODUCT)
        if not thread_has_active_waitpoint(self.session, thread):
            try:
                decision = route_chat_message(self.llm, thread, user_text, recent)
            except ChatEngineError as e:
                logger.info(f"Chat routing failed for thread {thread.id}, answering: {e}")

        if decision.route == ROUTE_SMALLTALK:
            result = self._respond_smalltalk(request, turn, assistant, recent, user_text)
        elif decision.route == ROUTE_TOOL:
            result = self._respond_tool(request, turn, assistant, thread, decision)
        else:
            conversation_id = self._ensure_conversation(thread.id, state.openai_conversation_id)
            result = self._respond_product(
                request, turn, assistant, thread, state, user_message, user_text,
                conversation_id,
            )

        self._enqueue_maintain(request.user_id, thread.id)
        logger.info(
            f"Turn {turn.id} finished via {result.route} "
            f"(attempt {request.attempt}, {len(result.assistant_text)} chars)"
        )
        return result

    # ------------------------------------------------------------------
    # Turn lifecycle
    # ------------------------------------------------------------------

    def _load_message(self, message_id: uuid.UUID, request: RespondRequest) -> ChatMessage:
        message = self.messages.get_for_user(message_id, request.user_id)
        if message is None or message.thread_id != request.thread_id:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    def _start_turn(
        self, turn: ChatTurn, assistant: ChatMessage, request: RespondRequest
    ) -> None:
        turn.status = TurnStatus.RUNNING.value
        turn.attempt = max(turn.attempt or 0, request.attempt)
        turn.job_id = request.job_id or turn.job_id
        turn.started_at = utcnow()
        turn.completed_at = None

        if request.attempt > 0:
            assistant.content = ""
            assistant.status = MessageStatus.STREAMING.value
            assistant.meta = {}
            assistant.updated_at = utcnow()
        self.session.commit()

        if request.attempt > 0 and self.notifier is not None:
            self.notifier.message_created(
                request.user_id,
                request.thread_id,
                message_payload(assistant),
                {
                    "turn_id": str(request.turn_id),
                    "attempt": request.attempt,
                    "job_id": str(request.job_id) if request.job_id else None,
                },
            )

    def _ensure_conversation(
        self, thread_id: uuid.UUID, existing: Optional[str]
    ) -> str:
        """Reuse or lazily create the provider conversation handle."""
        conversation_id = (existing or "").strip()
        if conversation_id:
            return conversation_id
        try:
            conversation_id = (self.llm.create_conversation() or "").strip()
        except ChatEngineError as e:
            logger.info(f"Conversation handle unavailable for thread {thread_id}: {e}")
            return ""
        if conversation_id:
            self.states.set_conversation_id(thread_id, conversation_id)
        return conversation_id

    def _set_trace(self, turn: ChatTurn, trace: dict[str, Any]) -> None:
        if trace:
            turn.retrieval_trace = dict(trace)
            self.session.flush()

    def _finalize(
        self,
        request: RespondRequest,
        turn: ChatTurn,
        assistant: ChatMessage,
        text: str,
        meta: dict[str, Any],
    ) -> None:
        """Write the final reply, emit message_done and close the turn."""
        assistant.content = (text or "").strip()
        assistant.status = MessageStatus.DONE.value
        assistant.meta = dict(meta)
        assistant.updated_at = utcnow()
        turn.status = TurnStatus.DONE.value
        turn.completed_at = utcnow()
        self.session.commit()
        if self.notifier is not None:
            self.notifier.message_done(
                request.user_id,
                request.thread_id,
                message_payload(assistant),
                {"turn_id": str(request.turn_id), "attempt": request.attempt},
            )

    def _fail(
        self,
        request: RespondRequest,
        turn: ChatTurn,
        assistant: ChatMessage,
        error: Exception,
    ) -> None:
        self.session.rollback()
        assistant.status = MessageStatus.ERROR.value
        assistant.updated_at = utcnow()
        turn.status = TurnStatus.ERROR.value
        turn.completed_at = utcnow()
        self.session.commit()
        if self.notifier is not None:
            self.notifier.message_error(
                request.user_id,
                request.thread_id,
                assistant.id,
                str(error),
                {"turn_id": str(request.turn_id), "attempt": request.attempt},
            )

    def _enqueue_maintain(self, user_id: uuid.UUID, thread_id: uuid.UUID) -> None:
        try:
            with self.session.begin_nested():
                self.jobs.enqueue_unique(
                    user_id,
                    JOB_CHAT_MAINTAIN,
                    "chat_thread",
                    thread_id,
                    {"thread_id": str(thread_id)},
                )
            self.session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to enqueue maintenance for thread {thread_id}: {e}")

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def _respond_smalltalk(
        self,
        request: RespondRequest,
        turn: ChatTurn,
        assistant: ChatMessage,
        recent: str,
        user_text: str,
    ) -> RespondResult:
        model = settings.fast_model
        trace = {"route": ROUTE_SMALLTALK, "model": model, "context_messages": ROUTER_RECENT_MESSAGES}
        self._set_trace(turn, trace)
        system, user = prompts.fast_chat_prompt(recent, user_text)
        try:
            text = self.llm.with_model(model).generate_text(system, user)
        except ChatEngineError as e:
            self._fail(request, turn, assistant, e)
            raise
        self._finalize(request, turn, assistant, text, {})
        return RespondResult(ROUTE_SMALLTALK, assistant.content, turn.id, request.attempt)

    def _respond_tool(
        self,
        request: RespondRequest,
        turn: ChatTurn,
        assistant: ChatMessage,
        thread: ChatThread,
        decision: ChatRouteDecision,
    ) -> RespondResult:
        tool_result = ChatToolExecutor(self.session).execute(thread, decision.tool_calls)
        meta: dict[str, Any] = {
            "kind": "tool_call",
            "tool_calls": [call.to_dict() for call in decision.tool_calls],
        }
        meta.update(tool_result.metadata)
        self._set_trace(turn, {"route": ROUTE_TOOL, "tool_meta": tool_result.metadata})
        self._finalize(request, turn, assistant, tool_result.text, meta)
        return RespondResult(ROUTE_TOOL, assistant.content, turn.id, request.attempt, meta)

    def _respond_product(
        self,
        request: RespondRequest,
        turn: ChatTurn,
        assistant: ChatMessage,
        thread: ChatThread,
        state: Any,
        user_message: ChatMessage,
        user_text: str,
        conversation_id: str,
    ) -> RespondResult:
        plan = build_context_plan(
            self.session,
            self.llm,
            self.vector,
            request.user_id,
            thread,
            state,
            user_text,
            user_message,
        )
        trace = dict(plan.trace)
        trace["route"] = ROUTE_PRODUCT

        if plan.mode == MODE_EDIT:
            reply = handle_edit_request(
                self.session, request.user_id, thread, plan.edit_target, user_text
            )
            trace["edit"] = dict(reply.meta)
            self._set_trace(turn, trace)
            self._finalize(request, turn, assistant, reply.text, reply.meta)
            return RespondResult(
                ROUTE_PRODUCT, assistant.content, turn.id, request.attempt, reply.meta
            )

        instructions = plan.instructions
        selected: list[EvidenceSource] = []
        evidence_text = ""
        if plan.evidence_sources:
            selected, select_trace = select_evidence_sources(
                self.llm, user_text, plan.evidence_sources
            )
            if select_trace:
                trace["evidence_select"] = select_trace
            if not selected:
                selected = list(plan.evidence_sources)
                trace["evidence_select_fallback"] = True
            if wants_verbatim_quote(user_text) and wants_material_quotes(user_text):
                seen = {s.id for s in selected if s.id.strip()}
                forced = [
                    s
                    for s in filter_quote_sources(plan.evidence_sources, "materials")
                    if s.id.strip() and s.id not in seen
                ]
                if forced:
                    selected = selected + forced
                    trace["evidence_select_materials_forced"] = True
            evidence_text = render_evidence_sources(selected, plan.evidence_token_budget)
            if evidence_text.strip():
                instructions = instructions.strip() + prompts.EVIDENCE_APPENDIX.format(
                    evidence=evidence_text
                )
                trace["evidence_sources"] = len(selected)

        if wants_material_quotes(user_text) and not filter_quote_sources(selected, "materials"):
            meta = {"material_quote_missing": True}
            self._set_trace(turn, trace)
            self._finalize(request, turn, assistant, MATERIAL_QUOTE_MISSING_TEXT, meta)
            return RespondResult(
                ROUTE_PRODUCT, assistant.content, turn.id, request.attempt, meta
            )

        self._set_trace(turn, trace)
        self.session.commit()

        text = self._stream(request, turn, assistant, instructions, plan.user_payload, conversation_id)
        text, citations, quote_verified = self._post_process(
            text, user_text, selected, evidence_text, plan.evidence_token_budget
        )

        meta: dict[str, Any] = {}
        if citations:
            meta["citations"] = [c.to_dict() for c in citations]
        if selected:
            meta["evidence_ids"] = [s.id for s in selected if s.id.strip()]
        meta["quote_verified"] = quote_verified
        self._finalize(request, turn, assistant, text, meta)
        return RespondResult(ROUTE_PRODUCT, assistant.content, turn.id, request.attempt, meta)

    # ------------------------------------------------------------------
    # Streaming and post-processing
    # ------------------------------------------------------------------

    def _stream(
        self,
        request: RespondRequest,
        turn: ChatTurn,
        assistant: ChatMessage,
        instructions: str,
        user_payload: str,
        conversation_id: str,
    ) -> str:
        writer = _StreamWriter(self.session, self.notifier, assistant, request)
        try:
            if conversation_id:
                text = self.llm.stream_text_in_conversation(
                    conversation_id, instructions, user_payload, writer.on_delta, self.cancel
                )
            else:
                text = self.llm.stream_text(
                    instructions, user_payload, writer.on_delta, self.cancel
                )
        except ChatEngineError as e:
            writer.flush_notify()
            logger.warning(f"Streaming failed for turn {turn.id} (attempt {request.attempt}): {e}")
            self._fail(request, turn, assistant, e)
            raise
        writer.flush_notify()
        return (text or "").strip() or writer.text.strip()

    def _post_process(
        self,
        text: str,
        user_text: str,
        selected: list[EvidenceSource],
        evidence_text: str,
        evidence_budget: int,
    ) -> tuple[str, list[EvidenceCitation], bool]:
        """Resolve citation markers and verify quotes, repairing once."""
        if not selected or not evidence_text.strip():
            return self._repair_unsupported_quotes(text)

        text, citations = _apply_citations(text, selected)

        quote_intent = wants_verbatim_quote(user_text)
        quote_sources = selected
        quote_evidence_text = evidence_text
        if quote_intent:
            preference = "materials" if wants_material_quotes(user_text) else "any"
            quote_sources = filter_quote_sources(selected, preference)
            quote_evidence_text = (
                render_evidence_sources(quote_sources, evidence_budget)
                or NO_VERBATIM_EVIDENCE
            )

        quotes = extract_quoted_strings(text)
        quote_verified = True
        if quote_intent and not quote_sources and quotes:
            quote_verified = False
        else:
            quote_verified, failed = verify_quotes_in_evidence(quotes, quote_sources)
            if failed:
                logger.info(f"{len(failed)} quote(s) not found in evidence; repairing")
        if quote_verified:
            return text, citations, True

        try:
            repaired = repair_quoted_answer(self.llm, text, quote_evidence_text)
        except ChatEngineError as e:
            logger.warning(f"Quote repair failed: {e}")
            return text, citations, False
        if not repaired.strip():
            return text, citations, False
        text, citations = _apply_citations(repaired, selected)
        ok, _ = verify_quotes_in_evidence(extract_quoted_strings(text), quote_sources)
        return text, citations, ok

    def _repair_unsupported_quotes(
        self, text: str
    ) -> tuple[str, list[EvidenceCitation], bool]:
        """With no evidence selected, any quote is unverifiable."""
        text = strip_citation_markers(text)
        quotes = extract_quoted_strings(text)
        if not quotes:
            return text, [], True
        logger.info(f"{len(quotes)} quote(s) with no evidence to check against; repairing")
        try:
            repaired = repair_quoted_answer(self.llm, text, NO_VERBATIM_EVIDENCE)
        except ChatEngineError as e:
            logger.warning(f"Quote repair failed: {e}")
            return text, [], False
        text = strip_citation_markers(repaired.strip() or text)
        return text, [], not extract_quoted_strings(text)


def _apply_citations(
    text: str, sources: list[EvidenceSource]
) -> tuple[str, list[EvidenceCitation]]:
    ids = parse_citation_markers(text)
    if not ids:
        return text, []
    citations = build_citations(ids, sources)
    if citations:
        return apply_citation_replacements(text, citations, sources), citations
    return strip_citation_markers(text), []
