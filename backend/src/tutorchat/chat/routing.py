"""
Turn routing and context-lane selection.

Two decisions are made per user message:

- The chat route (smalltalk, tool or product) picks the responder lane.
- For product turns, the context route picks which evidence lanes the
  planner assembles (viewport, unit, path, concept, user, retrieve,
  materials, graph) and how many tokens each may spend.

Both start from cheap heuristics and are refined by schema-constrained
model calls when those succeed.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from sqlalchemy.orm import Session

from tutorchat.chat import prompts
from tutorchat.chat.session_context import (
    SessionSnapshot,
    summarize_session_for_routing,
    wants_material_quotes,
)
from tutorchat.chat.textutil import contains_any
from tutorchat.config import settings
from tutorchat.exceptions import ChatEngineError
from tutorchat.jobs.queue import JobQueue
from tutorchat.llm.base import LLMClient
from tutorchat.models.db import ChatThread, JobStatus

logger = logging.getLogger(__name__)

ROUTE_SMALLTALK = "smalltalk"
ROUTE_TOOL = "tool"
ROUTE_PRODUCT = "product"

MODE_EXPLAIN = "explain"
MODE_EDIT = "edit"

CONTEXT_ROUTE_MIN_CONFIDENCE = 0.6


# =============================================================================
# Token budget
# =============================================================================


@dataclass
class Budget:
    """Per-lane token budget for one prompt."""

    max_context_tokens: int = 24000
    hot_tokens: int = 4000
    summary_tokens: int = 3500
    unit_tokens: int = 2600
    path_tokens: int = 2600
    concept_tokens: int = 1800
    user_tokens: int = 1200
    retrieval_tokens: int = 11000
    materials_tokens: int = 2200
    graph_tokens: int = 2500

    @property
    def total(self) -> int:
        return (
            self.hot_tokens
            + self.summary_tokens
            + self.unit_tokens
            + self.path_tokens
            + self.concept_tokens
            + self.user_tokens
            + self.retrieval_tokens
            + self.materials_tokens
            + self.graph_tokens
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "max": self.max_context_tokens,
            "hot": self.hot_tokens,
            "summary": self.summary_tokens,
            "unit": self.unit_tokens,
            "path": self.path_tokens,
            "concept": self.concept_tokens,
            "user": self.user_tokens,
            "retrieval": self.retrieval_tokens,
            "materials": self.materials_tokens,
            "graph": self.graph_tokens,
        }


# Order in which lanes give up tokens when the total exceeds the ceiling
_REDUCE_ORDER = (
    "retrieval_tokens",
    "materials_tokens",
    "hot_tokens",
    "summary_tokens",
    "unit_tokens",
    "path_tokens",
    "concept_tokens",
    "user_tokens",
    "graph_tokens",
)


def adjust_budget(
    budget: Budget,
    include_unit: bool,
    include_path: bool,
    include_concept: bool,
    include_user: bool,
    include_retrieval: bool,
    include_materials: bool,
    include_graph: bool,
) -> Budget:
    """
    Zero disabled lanes and redistribute their tokens.

    Freed tokens go 60% to retrieval (when enabled), then 30% of the rest
    to the hot window, and the remainder to the thread summary. A final
    pass enforces the overall ceiling.
    """
    b = replace(budget)
    unused = 0
    for enabled, name in (
        (include_unit, "unit_tokens"),
        (include_path, "path_tokens"),
        (include_concept, "concept_tokens"),
        (include_user, "user_tokens"),
        (include_retrieval, "retrieval_tokens"),
        (include_materials, "materials_tokens"),
        (include_graph, "graph_tokens"),
    ):
        if not enabled:
            unused += getattr(b, name)
            setattr(b, name, 0)

    if unused > 0:
        if include_retrieval:
            share = int(unused * 0.6)
            b.retrieval_tokens += share
            unused -= share
        if unused > 0:
            share = int(unused * 0.3)
            b.hot_tokens += share
            unused -= share
        if unused > 0:
            b.summary_tokens += unused

    excess = b.total - b.max_context_tokens
    if b.max_context_tokens > 0 and excess > 0:
        for name in _REDUCE_ORDER:
            current = getattr(b, name)
            if current <= 0:
                continue
            taken = min(current, excess)
            setattr(b, name, current - taken)
            excess -= taken
            if excess <= 0:
                break
    return b


# =============================================================================
# Context route
# =============================================================================


@dataclass
class ContextLane:
    name: str
    enabled: bool = False
    confidence: float = 0.0
    reason: str = ""


@dataclass
class ContextRoute:
    """Mode plus the enabled evidence lanes."""

    mode: str = MODE_EXPLAIN
    lanes: dict[str, ContextLane] = field(
        default_factory=lambda: {name: ContextLane(name) for name in prompts.LANES}
    )

    def enabled(self, name: str) -> bool:
        lane = self.lanes.get(name)
        return lane is not None and lane.enabled

    def enable(self, name: str, confidence: float, reason: str) -> None:
        self.lanes[name] = ContextLane(name, True, confidence, reason)

    def any_enabled(self) -> bool:
        return any(lane.enabled for lane in self.lanes.values())

    def lanes_trace(self) -> dict[str, Any]:
        return {
            name: {"enabled": lane.enabled, "confidence": lane.confidence, "reason": lane.reason}
            for name, lane in self.lanes.items()
        }


@dataclass
class ContextPlanHints:
    """Details only the model router provides."""

    unit_current: str = ""
    include_visible: bool = False
    include_lesson_index: bool = False
    scope_thread: bool = False
    scope_path: bool = False
    scope_user: bool = False
    materials_query: str = ""

    @property
    def any_scope(self) -> bool:
        return self.scope_thread or self.scope_path or self.scope_user


def classify_context_route(user_text: str) -> ContextRoute:
    """
    Deterministic keyword routing over the lowercased message.

    Falls back to retrieval alone when no lane matches.
    """
    text = (user_text or "").strip().lower()
    route = ContextRoute()
    if not text:
        return route

    if contains_any(
        text,
        (
            "rewrite",
            "edit",
            "revise",
            "change the wording",
            "make this clearer",
            "simplify this",
            "tighten this",
            "improve this",
        ),
    ):
        route.mode = MODE_EDIT

    if contains_any(
        text,
        (
            "on my screen",
            "on my page",
            "visible",
            "current block",
            "active block",
            "what am i looking at",
            "roadmap",
            "word for word",
            "verbatim",
            "exact wording",
            "exact words",
            "accurate",
            "is this accurate",
            "did you quote",
        ),
    ):
        route.enable("viewport", 0.95, "viewport query")
        route.enable("unit", 0.7, "needs unit context")

    if contains_any(
        text, ("lesson", "unit", "module", "outline", "roadmap", "where am i", "what's next")
    ):
        route.enable("unit", 0.75, "unit navigation")

    if contains_any(
        text,
        (
            "search",
            "find",
            "look up",
            "lookup",
            "source",
            "sources",
            "cite",
            "citation",
            "references",
            "pdf",
            "slides",
            "slide deck",
            "document",
            "file",
            "materials",
            "ppt",
            "pptx",
        ),
    ):
        route.enable("retrieve", 0.8, "explicit search")
        route.enable("materials", 0.7, "source materials")

    if wants_material_quotes(text):
        route.enable("retrieve", 0.95, "verbatim source request")
        route.enable("materials", 0.9, "verbatim source request")

    if contains_any(text, ("path", "curriculum", "course", "overall", "structure")):
        route.enable("path", 0.8, "path structure")

    if contains_any(
        text,
        (
            "concept",
            "prereq",
            "prerequisite",
            "depends",
            "relationship",
            "connect",
            "why this matters",
            "mental model",
            "intuition",
        ),
    ):
        route.enable("concept", 0.7, "concept reasoning")
        route.enable("graph", 0.6, "concept graph")

    if contains_any(
        text,
        ("my understanding", "what do i know", "tailor", "personalize", "for me", "based on me"),
    ):
        route.enable("user", 0.7, "personalization")

    if contains_any(
        text,
        (
            "find",
            "search",
            "where in",
            "source",
            "cite",
            "evidence",
            "from the materials",
            "in the file",
            "in the slides",
            "in the document",
        ),
    ):
        route.enable("retrieve", 0.7, "explicit retrieval")
        route.enable("materials", 0.6, "source materials")

    if not route.any_enabled():
        route.enable("retrieve", 0.4, "default retrieval")
    return route


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "y")
    if isinstance(value, (int, float)):
        return value != 0
    return False


def route_context_llm(
    llm: Optional[LLMClient],
    thread: ChatThread,
    user_text: str,
    recent: str,
    snapshot: Optional[SessionSnapshot],
) -> tuple[ContextRoute, ContextPlanHints, dict[str, Any], bool]:
    """
    Ask the route model for lanes, unit detail and retrieval scopes.

    Returns:
        (route, hints, trace, ok). ok is False when the call fails or the
        model's confidence is below CONTEXT_ROUTE_MIN_CONFIDENCE; the
        caller then keeps the heuristic route.
    """
    route = ContextRoute()
    hints = ContextPlanHints()
    trace: dict[str, Any] = {}
    if llm is None or thread is None:
        return route, hints, trace, False

    model = settings.route_model
    trace["model"] = model
    system, user = prompts.context_route_prompt(
        str(thread.path_id) if thread.path_id else "",
        summarize_session_for_routing(snapshot),
        recent,
        (user_text or "").strip(),
    )

    start = time.monotonic()
    try:
        obj = llm.with_model(model).generate_json(
            system,
            user,
            prompts.SCHEMA_CONTEXT_ROUTE,
            prompts.CONTEXT_ROUTE_SCHEMA,
            timeout=settings.chat_context_route_timeout_seconds,
        )
    except ChatEngineError as e:
        trace["error"] = str(e)
        trace["ms"] = int((time.monotonic() - start) * 1000)
        logger.info(f"Context route model call failed, keeping heuristic route: {e}")
        return route, hints, trace, False
    trace["ms"] = int((time.monotonic() - start) * 1000)

    try:
        confidence = float(obj.get("confidence") or 0.0)
    except (TypeError, ValueError):
        confidence = 0.0
    reason = str(obj.get("reason") or "").strip()
    trace["confidence"] = confidence
    trace["reason"] = reason

    if str(obj.get("mode") or "").strip().lower() == MODE_EDIT:
        route.mode = MODE_EDIT

    lanes = obj.get("lanes") or {}
    if isinstance(lanes, dict):
        for name in prompts.LANES:
            if name in lanes:
                route.lanes[name] = ContextLane(name, _as_bool(lanes[name]), confidence, reason)

    unit = obj.get("unit") or {}
    if isinstance(unit, dict):
        hints.unit_current = str(unit.get("current_block") or "").strip().lower()
        hints.include_visible = _as_bool(unit.get("include_visible"))
        hints.include_lesson_index = _as_bool(unit.get("include_lesson_index"))

    retrieval = obj.get("retrieval") or {}
    if isinstance(retrieval, dict):
        hints.scope_thread = _as_bool(retrieval.get("scope_thread"))
        hints.scope_path = _as_bool(retrieval.get("scope_path"))
        hints.scope_user = _as_bool(retrieval.get("scope_user"))
        hints.materials_query = str(retrieval.get("materials_query") or "").strip()

    if confidence < CONTEXT_ROUTE_MIN_CONFIDENCE:
        trace["low_confidence"] = True
        return route, hints, trace, False
    return route, hints, trace, True


# =============================================================================
# Chat route (smalltalk / tool / product)
# =============================================================================


@dataclass
class ChatToolSpec:
    """A pipeline the chat may trigger."""

    name: str
    description: str
    job_type: str
    entity_type: str
    required_args: tuple[str, ...]
    optional_args: tuple[str, ...] = ()
    group: str = ""
    defer_if_build: bool = False

    def to_prompt_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "required_args": list(self.required_args),
            "optional_args": list(self.optional_args),
        }


CHAT_TOOLS: dict[str, ChatToolSpec] = {
    spec.name: spec
    for spec in (
        ChatToolSpec(
            name="learning_build",
            description="Start or rebuild a learning path from a material set.",
            job_type="learning_build",
            entity_type="material_set",
            required_args=("material_set_id",),
            optional_args=("path_id", "thread_id"),
            group="build",
        ),
        ChatToolSpec(
            name="learning_build_progressive",
            description="Start or rebuild a learning path progressively from a material set.",
            job_type="learning_build_progressive",
            entity_type="material_set",
            required_args=("material_set_id",),
            optional_args=("path_id", "thread_id"),
            group="build",
        ),
        ChatToolSpec(
            name="chat_rebuild",
            description="Rebuild chat projections for this thread.",
            job_type="chat_rebuild",
            entity_type="chat_thread",
            required_args=("thread_id",),
            group="chat",
            defer_if_build=True,
        ),
        ChatToolSpec(
            name="chat_path_index",
            description="Reindex path artifacts for chat retrieval.",
            job_type="chat_path_index",
            entity_type="path",
            required_args=("path_id",),
            group="chat",
            defer_if_build=True,
        ),
    )
}


@dataclass
class ChatToolCall:
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "arguments": dict(self.arguments),
            "confidence": self.confidence,
        }


@dataclass
class ChatRouteDecision:
    route: str = ROUTE_PRODUCT
    respond_fast: bool = False
    tool_calls: list[ChatToolCall] = field(default_factory=list)


def route_chat_message(
    llm: Optional[LLMClient], thread: ChatThread, user_text: str, recent: str
) -> ChatRouteDecision:
    """
    Classify a message as smalltalk, tool or product.

    Defaults to product when there is nothing to classify.

    Raises:
        ChatEngineError: If the routing call fails
    """
    decision = ChatRouteDecision()
    user_text = (user_text or "").strip()
    if llm is None or thread is None or not user_text:
        return decision

    system, user = prompts.chat_route_prompt(
        str(thread.path_id) if thread.path_id else "",
        recent,
        user_text,
        [spec.to_prompt_dict() for spec in CHAT_TOOLS.values()],
    )
    obj = llm.with_model(settings.route_model).generate_json(
        system,
        user,
        prompts.SCHEMA_CHAT_ROUTE,
        prompts.chat_route_schema(list(CHAT_TOOLS)),
    )

    route = str(obj.get("route") or "").strip().lower()
    decision.route = route if route in prompts.ROUTES else ROUTE_PRODUCT
    decision.respond_fast = bool(obj.get("respond_fast"))
    for raw in obj.get("tool_calls") or []:
        if not isinstance(raw, dict):
            continue
        arguments = raw.get("arguments") if isinstance(raw.get("arguments"), dict) else {}
        try:
            confidence = float(raw.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        decision.tool_calls.append(
            ChatToolCall(
                tool_name=str(raw.get("tool_name") or "").strip(),
                arguments={k: v for k, v in arguments.items() if v not in (None, "")},
                confidence=confidence,
            )
        )
    return decision


def thread_has_active_waitpoint(session: Session, thread: ChatThread) -> bool:
    """True when the thread's linked job is paused waiting on the user."""
    if thread is None or thread.job_id is None:
        return False
    job = JobQueue(session).get_for_user(thread.job_id, thread.user_id)
    return job is not None and job.status == JobStatus.WAITING_USER.value
