"""
End-to-end turn scenarios.

Each test posts through ChatService, drains the job queue with a worker that
shares the test session and inspects the stored rows and published events.
"""

from datetime import timedelta

from tutorchat.chat import prompts
from tutorchat.chat.path_index import index_path_for_chat
from tutorchat.chat.raptor import summarize_thread
from tutorchat.chat.service import ChatService
from tutorchat.chat.tools import TEXT_ALREADY_RUNNING, TEXT_STARTED
from tutorchat.config import settings
from tutorchat.exceptions import RetryableError
from tutorchat.jobs.queue import JOB_CHAT_MAINTAIN, JOB_CHAT_REBUILD
from tutorchat.models.db import (
    ChatDoc,
    ChatMessage,
    ChatSummaryNode,
    ChatTurn,
    DocType,
    JobRun,
    JobStatus,
    MessageStatus,
    TurnStatus,
)
from tutorchat.sse.hub import EVENT_MESSAGE_CREATED, EVENT_MESSAGE_DONE, EVENT_MESSAGE_ERROR
from tutorchat.utils.timeutil import utcnow

from conftest import add_messages


def _post(db_session, notifier, user_id, thread, text):
    return ChatService(db_session, notifier).post_message(user_id, thread.id, text)


def _reload(db_session, model, row_id):
    db_session.expire_all()
    return db_session.get(model, row_id)


class TestSmalltalkTurn:
    """A greeting is answered by the fast model without retrieval."""

    def test_smalltalk_skips_retrieval_and_streaming(
        self, db_session, stub_llm, notifier, run_jobs, user_id, sample_thread
    ):
        stub_llm.json_responses[prompts.SCHEMA_CHAT_ROUTE] = {
            "route": "smalltalk",
            "respond_fast": True,
            "tool_calls": [],
        }

        posted = _post(db_session, notifier, user_id, sample_thread, "hey, how are you?")
        assert run_jobs() == 1

        assistant = _reload(db_session, ChatMessage, posted.assistant_message.id)
        assert assistant.status == MessageStatus.DONE.value
        assert assistant.content == stub_llm.fast_reply

        assert stub_llm.calls_of("text")
        assert not stub_llm.calls_of("stream")
        assert not stub_llm.calls_of("stream_in_conversation")
        assert not stub_llm.calls_of("embed")
        assert stub_llm.conversations_created == 0
        assert settings.fast_model in stub_llm.models

        turn = _reload(db_session, ChatTurn, posted.turn.id)
        assert turn.status == TurnStatus.DONE.value
        assert turn.retrieval_trace["route"] == "smalltalk"
        assert "retrieval" not in turn.retrieval_trace

    def test_smalltalk_enqueues_maintenance(
        self, db_session, stub_llm, notifier, run_jobs, user_id, sample_thread
    ):
        stub_llm.json_responses[prompts.SCHEMA_CHAT_ROUTE] = {"route": "smalltalk"}

        _post(db_session, notifier, user_id, sample_thread, "thanks!")
        run_jobs()

        maintain = (
            db_session.query(JobRun)
            .filter(JobRun.job_type == JOB_CHAT_MAINTAIN, JobRun.entity_id == sample_thread.id)
            .all()
        )
        assert len(maintain) == 1
        assert maintain[0].status == JobStatus.QUEUED.value


class TestPathThreadAnswer:
    """Answers on a path thread cite the pinned path overview."""

    def test_unit_titles_answer_cites_overview(
        self, db_session, stub_llm, vector_store, notifier, run_jobs, user_id, sample_path,
        path_thread,
    ):
        index_path_for_chat(db_session, None, vector_store, user_id, sample_path.id)
        db_session.commit()
        overview = (
            db_session.query(ChatDoc)
            .filter(
                ChatDoc.path_id == sample_path.id,
                ChatDoc.doc_type == DocType.PATH_OVERVIEW.value,
            )
            .one()
        )
        source_id = f"doc:{overview.id}"
        stub_llm.stream_script.append(f'The first unit is "Graph Basics" [[source:{source_id}]].')

        posted = _post(db_session, notifier, user_id, path_thread, "what were the unit titles?")
        assert run_jobs() == 1

        assistant = _reload(db_session, ChatMessage, posted.assistant_message.id)
        assert assistant.status == MessageStatus.DONE.value
        assert "[[source:" not in assistant.content
        assert "(Source: path_overview)" in assistant.content
        assert assistant.meta["quote_verified"] is True
        assert source_id in assistant.meta["evidence_ids"]
        assert [c["source_id"] for c in assistant.meta["citations"]] == [source_id]

    def test_product_turn_creates_conversation_handle_once(
        self, db_session, stub_llm, notifier, run_jobs, user_id, sample_thread
    ):
        _post(db_session, notifier, user_id, sample_thread, "explain breadth first search")
        run_jobs()
        _post(db_session, notifier, user_id, sample_thread, "and depth first search?")
        run_jobs()

        assert stub_llm.conversations_created == 1
        assert stub_llm.calls_of("stream_in_conversation") == ["conv_stub", "conv_stub"]


class TestPromptAssembly:
    """The new message is sent as the user payload, never inside the instructions."""

    def test_new_message_only_in_user_payload(
        self, db_session, stub_llm, notifier, run_jobs, user_id, sample_thread
    ):
        add_messages(db_session, sample_thread, 2)
        captured = []

        def capture(instructions, user):
            captured.append((instructions, user))
            return "Heaps are trees with an ordering property."

        stub_llm.stream_script.append(capture)
        text = "zebra quokka question about heaps"

        _post(db_session, notifier, user_id, sample_thread, text)
        assert run_jobs() == 1

        ((instructions, user),) = captured
        assert user == text
        assert "zebra quokka" not in instructions
        assert "Message 1 about graph topic 1" in instructions

    def test_router_history_excludes_new_message(
        self, db_session, stub_llm, notifier, run_jobs, user_id, sample_thread
    ):
        add_messages(db_session, sample_thread, 2)
        prompts_seen = []

        def route(system, user):
            prompts_seen.append(user)
            return {"route": "product", "respond_fast": False, "tool_calls": []}

        stub_llm.json_responses[prompts.SCHEMA_CHAT_ROUTE] = route

        _post(db_session, notifier, user_id, sample_thread, "zebra quokka question about heaps")
        run_jobs()

        (router_user,) = prompts_seen
        assert router_user.count("zebra quokka") == 1
        assert "Message 2 about graph topic 2" in router_user


class TestUnsupportedQuotes:
    """Quotes in an answer with no selected evidence are never marked verified."""

    QUOTED = 'Your notes say "the moon is made of green cheese" clearly.'

    def test_unrepaired_quote_is_not_verified(
        self, db_session, stub_llm, notifier, run_jobs, user_id, sample_thread
    ):
        stub_llm.stream_script.append(self.QUOTED)
        stub_llm.text_responses.append(self.QUOTED)

        posted = _post(db_session, notifier, user_id, sample_thread, "tell me about the moon")
        run_jobs()

        assistant = _reload(db_session, ChatMessage, posted.assistant_message.id)
        assert assistant.status == MessageStatus.DONE.value
        assert assistant.meta["quote_verified"] is False

    def test_repair_drops_invented_quote(
        self, db_session, stub_llm, notifier, run_jobs, user_id, sample_thread
    ):
        repaired = "I could not find anything about the moon in your notes."
        stub_llm.stream_script.append(self.QUOTED)
        stub_llm.text_responses.append(repaired)

        posted = _post(db_session, notifier, user_id, sample_thread, "tell me about the moon")
        run_jobs()

        assistant = _reload(db_session, ChatMessage, posted.assistant_message.id)
        assert assistant.content == repaired
        assert assistant.meta["quote_verified"] is True

    def test_answer_without_quotes_is_verified(
        self, db_session, stub_llm, notifier, run_jobs, user_id, sample_thread
    ):
        posted = _post(db_session, notifier, user_id, sample_thread, "tell me about the moon")
        run_jobs()

        assistant = _reload(db_session, ChatMessage, posted.assistant_message.id)
        assert assistant.meta["quote_verified"] is True
        assert not stub_llm.calls_of("text")


class TestMaterialQuote:
    """Verbatim requests about uploaded files quote material chunks with locators."""

    def test_quote_from_slides_is_verified_with_page_locator(
        self, db_session, stub_llm, notifier, run_jobs, user_id, sample_path,
        sample_material_set, sample_material_chunk, path_thread,
    ):
        sample_path.material_set_id = sample_material_set.id
        db_session.commit()

        source_id = f"material:{sample_material_chunk.id}"
        stub_llm.stream_script.append(
            'The slides say "Dijkstra relaxation updates the tentative distance" '
            f"[[source:{source_id}]]."
        )

        posted = _post(
            db_session, notifier, user_id, path_thread,
            "Quote the slides file verbatim on Dijkstra relaxation.",
        )
        assert run_jobs() == 1

        assistant = _reload(db_session, ChatMessage, posted.assistant_message.id)
        assert assistant.status == MessageStatus.DONE.value
        assert assistant.meta["quote_verified"] is True
        assert "(Source: graphs.pdf, page 3)" in assistant.content

        citation = assistant.meta["citations"][0]
        assert citation["source_id"] == source_id
        assert citation["source_type"] == "material_chunk"
        assert citation["locator"] == "page 3"

    def test_missing_material_text_gets_fixed_reply(
        self, db_session, stub_llm, notifier, run_jobs, user_id, path_thread
    ):
        from tutorchat.chat.responder import MATERIAL_QUOTE_MISSING_TEXT

        posted = _post(
            db_session, notifier, user_id, path_thread,
            "Quote the pdf word for word about heaps.",
        )
        run_jobs()

        assistant = _reload(db_session, ChatMessage, posted.assistant_message.id)
        assert assistant.content == MATERIAL_QUOTE_MISSING_TEXT
        assert assistant.meta == {"material_quote_missing": True}
        assert not stub_llm.calls_of("stream_in_conversation")


class TestStreamRetry:
    """A dropped stream marks the turn as failed and the retry resets the placeholder."""

    def test_retry_resets_placeholder_and_completes(
        self, db_session, stub_llm, hub, notifier, run_jobs, user_id, sample_thread
    ):
        full = "Dijkstra keeps a priority queue of tentative distances."
        stub_llm.stream_script.extend(
            [("partial ", RetryableError("llm", "stream dropped")), full]
        )
        subscription = hub.subscribe(user_id)

        posted = _post(db_session, notifier, user_id, sample_thread, "how does dijkstra work")
        run_jobs()

        job = _reload(db_session, JobRun, posted.job.id)
        assert job.status == JobStatus.QUEUED.value
        assert job.attempt == 1
        assert "stream dropped" in job.error
        assistant = db_session.get(ChatMessage, posted.assistant_message.id)
        assert assistant.status == MessageStatus.ERROR.value
        turn = db_session.get(ChatTurn, posted.turn.id)
        assert turn.status == TurnStatus.ERROR.value
        assert any(m.event == EVENT_MESSAGE_ERROR for m in subscription.pending())

        job.run_at = utcnow() - timedelta(seconds=5)
        db_session.commit()
        before = len(subscription.pending())
        assert run_jobs() == 1

        events = subscription.pending()[before:]
        restarted = [
            m for m in events
            if m.event == EVENT_MESSAGE_CREATED
            and m.data["message"]["id"] == str(posted.assistant_message.id)
        ]
        assert restarted
        assert restarted[0].data["attempt"] == 1
        assert restarted[0].data["message"]["content"] == ""
        assert restarted[0].data["message"]["status"] == MessageStatus.STREAMING.value

        assert events[-1].event == EVENT_MESSAGE_DONE
        assert events[-1].data["message"]["content"] == full
        assert events[-1].data["attempt"] == 1

        turn = _reload(db_session, ChatTurn, posted.turn.id)
        assert turn.status == TurnStatus.DONE.value
        assert turn.attempt == 1
        assert db_session.get(JobRun, posted.job.id).status == JobStatus.SUCCEEDED.value
        assert db_session.get(ChatMessage, posted.assistant_message.id).content == full

    def test_deltas_carry_attempt_and_grow(
        self, db_session, stub_llm, hub, notifier, run_jobs, user_id, sample_thread
    ):
        stub_llm.stream_script.append("A heap keeps the smallest key at the root.")
        subscription = hub.subscribe(user_id)

        _post(db_session, notifier, user_id, sample_thread, "what is a heap")
        run_jobs()

        deltas = [m.data for m in subscription.pending() if m.event == "message_delta"]
        assert deltas
        assert [d["delta_seq"] for d in deltas] == sorted(d["delta_seq"] for d in deltas)
        assert all(d["attempt"] == 0 for d in deltas)
        assert deltas[-1]["content_len"] == len("A heap keeps the smallest key at the root.")


class TestToolTurn:
    """Tool routes enqueue one job per entity and answer deterministically."""

    def test_rebuild_tool_is_deduplicated(
        self, db_session, stub_llm, notifier, run_jobs, user_id, sample_thread
    ):
        stub_llm.json_responses[prompts.SCHEMA_CHAT_ROUTE] = {
            "route": "tool",
            "respond_fast": False,
            "tool_calls": [{"tool_name": "chat_rebuild", "arguments": {}, "confidence": 0.9}],
        }

        first = _post(db_session, notifier, user_id, sample_thread, "please rebuild this chat")
        run_jobs()
        second = _post(db_session, notifier, user_id, sample_thread, "rebuild it again")
        run_jobs()

        first_reply = _reload(db_session, ChatMessage, first.assistant_message.id)
        second_reply = db_session.get(ChatMessage, second.assistant_message.id)
        assert first_reply.content == TEXT_STARTED.format(job_type=JOB_CHAT_REBUILD)
        assert second_reply.content == TEXT_ALREADY_RUNNING.format(job_type=JOB_CHAT_REBUILD)
        assert first_reply.meta["kind"] == "tool_call"
        assert second_reply.meta["already_running"] is True

        rebuilds = db_session.query(JobRun).filter(JobRun.job_type == JOB_CHAT_REBUILD).all()
        assert len(rebuilds) == 1
        assert first_reply.meta["job_id"] == str(rebuilds[0].id)
        assert not stub_llm.calls_of("stream_in_conversation")


class TestRaptorForest:
    """The summary forest is deterministic and parents cover their children."""

    def test_forest_is_stable_and_contiguous(
        self, db_session, stub_llm, monkeypatch, sample_thread
    ):
        monkeypatch.setattr(settings, "chat_raptor_window", 5)
        messages = add_messages(db_session, sample_thread, 60)

        first = summarize_thread(db_session, stub_llm, sample_thread, messages)
        db_session.commit()
        snapshot = _forest(db_session, sample_thread.id)

        second = summarize_thread(db_session, stub_llm, sample_thread, messages)
        db_session.commit()

        assert first.leaves == 12
        assert first.summarized > 0
        assert second.summarized == 0
        assert second.parents == 0
        assert _forest(db_session, sample_thread.id) == snapshot

        nodes = db_session.query(ChatSummaryNode).filter(
            ChatSummaryNode.thread_id == sample_thread.id
        ).all()
        by_id = {n.id: n for n in nodes}
        roots = [n for n in nodes if n.parent_id is None]
        assert len(roots) == 1
        assert (roots[0].start_seq, roots[0].end_seq) == (1, 60)

        for node in nodes:
            if node.level == 0:
                continue
            children = sorted(
                (n for n in nodes if n.parent_id == node.id), key=lambda n: n.start_seq
            )
            assert children
            assert {str(c.id) for c in children} == set(node.child_node_ids)
            assert node.start_seq == min(c.start_seq for c in children)
            assert node.end_seq == max(c.end_seq for c in children)
            for left, right in zip(children, children[1:]):
                assert left.end_seq + 1 == right.start_seq
            assert all(by_id[c.id].level == node.level - 1 for c in children)


def _forest(db_session, thread_id):
    db_session.expire_all()
    return {
        (n.id, n.level, n.start_seq, n.end_seq, n.summary_md, n.parent_id)
        for n in db_session.query(ChatSummaryNode).filter(ChatSummaryNode.thread_id == thread_id)
    }
