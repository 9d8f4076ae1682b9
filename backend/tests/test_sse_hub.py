"""
Tests for the in-process SSE hub.
"""

import json
import threading
import uuid

from tutorchat.sse.hub import (
    EVENT_MESSAGE_CREATED,
    EVENT_MESSAGE_DELTA,
    EVENT_MESSAGE_DONE,
    KEEPALIVE_COMMENT,
    ChatNotifier,
    SSEHub,
    SSEMessage,
    iter_events,
)


class TestSSEMessage:
    """Tests for wire encoding."""

    def test_encode(self):
        message = SSEMessage(channel="u1", event=EVENT_MESSAGE_DONE, data={"thread_id": "t1"})

        frame = message.encode()

        assert frame.startswith("event: message_done\ndata: ")
        assert frame.endswith("\n\n")
        payload = json.loads(frame.split("data: ", 1)[1])
        assert payload == {"channel": "u1", "event": "message_done", "data": {"thread_id": "t1"}}

    def test_encode_stringifies_uuids(self):
        thread_id = uuid.uuid4()
        frame = SSEMessage("u", EVENT_MESSAGE_CREATED, {"thread_id": thread_id}).encode()
        assert str(thread_id) in frame


class TestFanOut:
    """Tests for per-user routing."""

    def test_publish_reaches_only_that_user(self):
        hub = SSEHub(buffer_size=8)
        alice = hub.subscribe("alice")
        bob = hub.subscribe("bob")

        delivered = hub.publish("alice", EVENT_MESSAGE_CREATED, {"thread_id": "t"})

        assert delivered == 1
        assert len(alice.pending()) == 1
        assert bob.pending() == []

    def test_unsubscribe_closes_and_removes(self):
        hub = SSEHub(buffer_size=8)
        subscription = hub.subscribe("alice")
        assert hub.subscriber_count == 1

        hub.unsubscribe(subscription)

        assert hub.subscriber_count == 0
        assert subscription.closed
        assert hub.publish("alice", EVENT_MESSAGE_CREATED, {}) == 0


class TestOverflow:
    """Tests for the slow-subscriber policy."""

    def test_full_buffer_drops_oldest_delta(self):
        hub = SSEHub(buffer_size=3)
        subscription = hub.subscribe("u")
        hub.publish("u", EVENT_MESSAGE_CREATED, {"n": 0})
        hub.publish("u", EVENT_MESSAGE_DELTA, {"n": 1})
        hub.publish("u", EVENT_MESSAGE_DELTA, {"n": 2})

        hub.publish("u", EVENT_MESSAGE_DELTA, {"n": 3})

        assert [m.data["n"] for m in subscription.pending()] == [0, 2, 3]
        assert subscription.dropped == 1

    def test_sticky_events_are_never_dropped(self):
        """Test terminal events get through a buffer full of sticky events."""
        hub = SSEHub(buffer_size=2)
        subscription = hub.subscribe("u")
        hub.publish("u", EVENT_MESSAGE_CREATED, {"n": 0})
        hub.publish("u", EVENT_MESSAGE_CREATED, {"n": 1})

        hub.publish("u", EVENT_MESSAGE_DELTA, {"n": 2})
        hub.publish("u", EVENT_MESSAGE_DONE, {"n": 3})

        events = [(m.event, m.data["n"]) for m in subscription.pending()]
        assert events == [
            (EVENT_MESSAGE_CREATED, 0),
            (EVENT_MESSAGE_CREATED, 1),
            (EVENT_MESSAGE_DONE, 3),
        ]
        assert subscription.dropped == 1

    def test_get_times_out_empty(self):
        subscription = SSEHub(buffer_size=2).subscribe("u")
        assert subscription.get(timeout=0.01) is None


class TestIterEvents:
    """Tests for rendering a subscription as a stream."""

    def test_filters_by_thread(self):
        hub = SSEHub(buffer_size=8)
        subscription = hub.subscribe("u")
        notifier = ChatNotifier(hub)
        notifier.message_created("u", "other", {"seq": 1})
        notifier.message_delta("u", "mine", "m1", "hel", delta_seq=1, content_len=3)
        notifier.message_done("u", "mine", {"seq": 2})

        stream = iter_events(subscription, thread_id="mine", keepalive_seconds=5)
        frames = [next(stream), next(stream)]

        assert frames[0].startswith("event: message_delta")
        assert frames[1].startswith("event: message_done")
        hub.unsubscribe(subscription)

    def test_keepalive_when_idle(self):
        subscription = SSEHub(buffer_size=2).subscribe("u")
        stream = iter_events(subscription, keepalive_seconds=0.05)
        assert next(stream) == KEEPALIVE_COMMENT

    def test_stop_event_ends_stream(self):
        subscription = SSEHub(buffer_size=2).subscribe("u")
        stop = threading.Event()
        stop.set()
        assert list(iter_events(subscription, stop=stop)) == []


class TestChatNotifier:
    """Tests for typed chat events."""

    def test_delta_payload(self):
        hub = SSEHub(buffer_size=4)
        subscription = hub.subscribe("u")

        ChatNotifier(hub).message_delta(
            "u", "t", "m", "abc", delta_seq=4, content_len=12, turn_id="turn", attempt=1
        )

        (message,) = subscription.pending()
        assert message.event == EVENT_MESSAGE_DELTA
        assert message.data == {
            "thread_id": "t",
            "message_id": "m",
            "delta": "abc",
            "delta_seq": 4,
            "content_len": 12,
            "turn_id": "turn",
            "attempt": 1,
        }

    def test_error_carries_meta(self):
        hub = SSEHub(buffer_size=4)
        subscription = hub.subscribe("u")

        ChatNotifier(hub).message_error("u", "t", "m", "boom", {"turn_id": "x"})

        data = subscription.pending()[0].data
        assert data["error"] == "boom"
        assert data["turn_id"] == "x"
