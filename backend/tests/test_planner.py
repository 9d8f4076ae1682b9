"""
Tests for context routing, lane budgets and planner assembly.
"""

import uuid
from unittest.mock import MagicMock

import pytest

from conftest import add_messages, bag_of_words_embedding
from tutorchat.chat.planner import HOT_WINDOW_MESSAGES, build_context_plan
from tutorchat.chat.prompts import SCHEMA_CONTEXT_ROUTE
from tutorchat.chat.routing import (
    CONTEXT_ROUTE_MIN_CONFIDENCE,
    MODE_EDIT,
    MODE_EXPLAIN,
    Budget,
    adjust_budget,
    classify_context_route,
    route_context_llm,
)
from tutorchat.config import settings
from tutorchat.exceptions import RetryableError
from tutorchat.models.db import ChatDoc, DocScope, DocType

ALL_LANES = dict(
    include_unit=True,
    include_path=True,
    include_concept=True,
    include_user=True,
    include_retrieval=True,
    include_materials=True,
    include_graph=True,
)


def _enabled(route):
    return {name for name, lane in route.lanes.items() if lane.enabled}


def _route_response(confidence, **extra):
    obj = {
        "mode": "explain",
        "confidence": confidence,
        "reason": "scripted",
        "lanes": {"retrieve": True},
        "retrieval": {"scope_thread": True, "scope_path": False, "scope_user": False},
    }
    obj.update(extra)
    return obj


def _message_chunk(session, thread, seq, text):
    doc_id = uuid.uuid4()
    doc = ChatDoc(
        id=doc_id,
        user_id=thread.user_id,
        doc_type=DocType.MESSAGE_CHUNK.value,
        scope=DocScope.THREAD.value,
        scope_id=thread.id,
        thread_id=thread.id,
        source_seq=seq,
        chunk_index=0,
        text=text,
        contextual_text="",
        embedding=bag_of_words_embedding(text),
        vector_id=str(doc_id),
    )
    session.add(doc)
    session.commit()
    return doc


class TestAdjustBudget:
    """Tests for lane budget redistribution."""

    def test_all_lanes_trimmed_to_ceiling_from_retrieval(self):
        budget = adjust_budget(Budget(), **ALL_LANES)

        assert budget.total == 24000
        assert budget.retrieval_tokens == 11000 - (Budget().total - 24000)
        assert budget.hot_tokens == 4000

    def test_unused_lanes_feed_retrieval_then_hot_then_summary(self):
        lanes = {k: False for k in ALL_LANES}
        lanes["include_retrieval"] = True

        budget = adjust_budget(Budget(), **lanes)

        # 12900 freed: 7740 to retrieval, 1548 to hot, 3612 to summary,
        # then 7400 over the ceiling comes back out of retrieval
        assert budget.unit_tokens == budget.path_tokens == budget.graph_tokens == 0
        assert budget.hot_tokens == 5548
        assert budget.summary_tokens == 7112
        assert budget.retrieval_tokens == 11340
        assert budget.total == 24000

    def test_without_retrieval_freed_tokens_skip_it(self):
        budget = adjust_budget(Budget(), **{k: False for k in ALL_LANES})

        assert budget.retrieval_tokens == 0
        assert budget.summary_tokens == 20230
        assert budget.hot_tokens == 3770
        assert budget.total == 24000

    def test_zero_ceiling_is_not_enforced(self):
        budget = adjust_budget(Budget(max_context_tokens=0), **ALL_LANES)
        assert budget.total == Budget().total

    def test_input_is_not_mutated(self):
        original = Budget()
        adjust_budget(original, **{k: False for k in ALL_LANES})
        assert original == Budget()


class TestClassifyContextRoute:
    """Tests for the keyword router."""

    @pytest.mark.parametrize(
        "text,lanes",
        [
            ("what is on my screen", {"viewport", "unit"}),
            ("find it in the slides", {"retrieve", "materials"}),
            ("how does this concept connect to the course", {"concept", "graph", "path"}),
            ("tailor this for me", {"user"}),
            ("where am i in this lesson", {"unit"}),
        ],
    )
    def test_lanes(self, text, lanes):
        assert _enabled(classify_context_route(text)) == lanes

    def test_default_is_low_confidence_retrieval(self):
        route = classify_context_route("what is a binary heap")

        assert _enabled(route) == {"retrieve"}
        assert route.lanes["retrieve"].confidence == 0.4
        assert route.mode == MODE_EXPLAIN

    def test_edit_mode(self):
        route = classify_context_route("Rewrite this paragraph to be shorter")
        assert route.mode == MODE_EDIT

    def test_empty_text_enables_nothing(self):
        assert not classify_context_route("   ").any_enabled()


class TestRouteContextLLM:
    """Tests for the model router and its fallbacks."""

    def test_confident_answer_is_used(self, stub_llm, sample_thread):
        stub_llm.json_responses[SCHEMA_CONTEXT_ROUTE] = _route_response(CONTEXT_ROUTE_MIN_CONFIDENCE)

        route, hints, trace, ok = route_context_llm(stub_llm, sample_thread, "heaps?", "", None)

        assert ok is True
        assert _enabled(route) == {"retrieve"}
        assert hints.scope_thread and not hints.scope_user
        assert trace["confidence"] == CONTEXT_ROUTE_MIN_CONFIDENCE

    def test_low_confidence_is_rejected(self, stub_llm, sample_thread):
        stub_llm.json_responses[SCHEMA_CONTEXT_ROUTE] = _route_response(0.59)

        _, _, trace, ok = route_context_llm(stub_llm, sample_thread, "heaps?", "", None)

        assert ok is False
        assert trace["low_confidence"] is True

    def test_timeout_is_rejected(self, stub_llm, sample_thread):
        stub_llm.json_responses[SCHEMA_CONTEXT_ROUTE] = RetryableError(
            "openai", "request timed out", status_code=408
        )

        _, _, trace, ok = route_context_llm(stub_llm, sample_thread, "heaps?", "", None)

        assert ok is False
        assert "timed out" in trace["error"]

    def test_call_uses_route_model_and_timeout(self, sample_thread):
        llm = MagicMock()
        llm.with_model.return_value.generate_json.return_value = _route_response(0.9)

        route_context_llm(llm, sample_thread, "heaps?", "", None)

        llm.with_model.assert_called_once_with(settings.route_model)
        kwargs = llm.with_model.return_value.generate_json.call_args.kwargs
        assert kwargs["timeout"] == settings.chat_context_route_timeout_seconds

    def test_no_llm(self, sample_thread):
        assert route_context_llm(None, sample_thread, "heaps?", "", None)[3] is False


class TestPlannerRouting:
    """Tests for how the planner combines heuristic and model routes."""

    def test_router_timeout_keeps_heuristic_route(
        self, db_session, stub_llm, user_id, sample_thread
    ):
        stub_llm.json_responses[SCHEMA_CONTEXT_ROUTE] = RetryableError(
            "openai", "request timed out", status_code=408
        )

        plan = build_context_plan(
            db_session, stub_llm, None, user_id, sample_thread, None, "what is a binary heap"
        )

        assert plan.trace["context_route"]["source"] == "heuristic"
        assert "timed out" in plan.trace["context_route_llm"]["error"]
        assert plan.trace["context_route"]["lanes"]["retrieve"]["enabled"] is True
        assert plan.retrieval_mode != "skipped"

    def test_confident_router_can_skip_retrieval(
        self, db_session, stub_llm, user_id, sample_thread
    ):
        stub_llm.json_responses[SCHEMA_CONTEXT_ROUTE] = _route_response(
            0.9,
            lanes={"retrieve": False},
            retrieval={"scope_thread": False, "scope_path": False, "scope_user": False},
        )

        plan = build_context_plan(
            db_session, stub_llm, None, user_id, sample_thread, None, "what is a binary heap"
        )

        assert plan.trace["context_route"]["source"] == "llm"
        assert plan.retrieval_mode == "skipped"


class TestHotWindowDedup:
    """Retrieved message chunks already in the hot window are dropped."""

    def test_hot_message_chunks_are_dropped(self, db_session, stub_llm, user_id, sample_thread):
        add_messages(db_session, sample_thread, HOT_WINDOW_MESSAGES + 7)
        cold = _message_chunk(
            db_session, sample_thread, 3, "Dijkstra relaxation was first covered early on."
        )
        _message_chunk(
            db_session, sample_thread, 20, "Dijkstra relaxation came up again just now."
        )

        plan = build_context_plan(
            db_session, stub_llm, None, user_id, sample_thread, None, "dijkstra relaxation"
        )

        assert plan.trace["dropped_overlap_hot"] == 1
        assert [d.id for d in plan.used_docs] == [cold.id]

    def test_sql_fallback_skips_hot_messages(self, db_session, stub_llm, user_id, sample_thread):
        add_messages(db_session, sample_thread, HOT_WINDOW_MESSAGES + 7)
        _message_chunk(
            db_session, sample_thread, 20, "Graph topic notes repeated in the latest message."
        )

        plan = build_context_plan(
            db_session, stub_llm, None, user_id, sample_thread, None, "graph topic"
        )

        assert plan.trace["dropped_overlap_hot"] == 1
        assert plan.trace["sql_message_fallback"]["used_count"] == 7
        assert plan.retrieval_mode.endswith("+sql_messages")
        assert sorted(d.source_seq for d in plan.used_docs) == list(range(1, 8))
