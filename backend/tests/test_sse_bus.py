"""
Tests for the Redis SSE bus.

An in-memory stand-in for the Redis client carries published payloads from
the bus to the pub/sub reader, so no Redis server is needed.
"""

import json
from contextlib import nullcontext
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tutorchat.chat.service import ChatService
from tutorchat.jobs.handlers import handle_chat_respond
from tutorchat.jobs.queue import JOB_CHAT_RESPOND
from tutorchat.jobs.worker import JobWorker
from tutorchat.sse.bus import BusSubscriber, RedisEventBus, decode_bus_message
from tutorchat.sse.hub import (
    EVENT_MESSAGE_CREATED,
    EVENT_MESSAGE_DELTA,
    EVENT_MESSAGE_DONE,
    ChatNotifier,
    SSEHub,
)

CHANNEL = "test:sse"


class FakePubSub:
    def __init__(self, redis):
        self.redis = redis
        self.channels = []
        self.closed = False
        self.on_empty = None

    def subscribe(self, channel):
        self.channels.append(channel)

    def get_message(self, timeout=None):
        for channel in self.channels:
            pending = self.redis.published.setdefault(channel, [])
            if pending:
                return {"type": "message", "channel": channel, "data": pending.pop(0)}
        if self.on_empty is not None:
            self.on_empty()
        return None

    def close(self):
        self.closed = True


class FakeRedis:
    def __init__(self):
        self.published = {}
        self.last_pubsub = None

    def publish(self, channel, payload):
        self.published.setdefault(channel, []).append(payload)
        return 1

    def pubsub(self, ignore_subscribe_messages=False):
        self.last_pubsub = FakePubSub(self)
        return self.last_pubsub

    def ping(self):
        return True

    def close(self):
        pass


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def bus(fake_redis):
    return RedisEventBus("redis://localhost:6379/0", channel=CHANNEL, client=fake_redis)


def drain(bus, hub):
    """Run a subscriber until the fake channel is empty."""
    subscriber = BusSubscriber(bus, hub, poll_timeout=0.01, retry_delay=0)
    original_pubsub = bus.pubsub

    def pubsub():
        ps = original_pubsub()
        ps.on_empty = subscriber.stop
        return ps

    bus.pubsub = pubsub
    subscriber.run()
    return subscriber


class TestRedisEventBus:
    """Tests for publishing onto the channel."""

    def test_requires_url(self, fake_redis):
        with pytest.raises(ValueError):
            RedisEventBus("  ", client=fake_redis)

    def test_publish_writes_json_to_channel(self, bus, fake_redis):
        delivered = bus.publish("u1", EVENT_MESSAGE_DONE, {"thread_id": "t1"})

        assert delivered == 1
        (raw,) = fake_redis.published[CHANNEL]
        assert json.loads(raw) == {
            "user_id": "u1",
            "event": EVENT_MESSAGE_DONE,
            "data": {"thread_id": "t1"},
        }

    def test_publish_failure_is_logged_not_raised(self):
        client = MagicMock()
        client.publish.side_effect = RedisConnectionError("down")
        bus = RedisEventBus("redis://x", channel=CHANNEL, client=client)

        assert bus.publish("u1", EVENT_MESSAGE_DELTA, {"delta": "a"}) == 0


class TestDecode:
    """Tests for bus payload parsing."""

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "[1, 2]",
            json.dumps({"user_id": "u", "event": "", "data": {}}),
            json.dumps({"user_id": "", "event": "message_done", "data": {}}),
            json.dumps({"user_id": "u", "event": "message_done", "data": "x"}),
            None,
        ],
    )
    def test_malformed_is_none(self, raw):
        assert decode_bus_message(raw) is None

    def test_accepts_bytes(self):
        raw = json.dumps({"user_id": "u", "event": "message_done", "data": {"a": 1}}).encode()
        assert decode_bus_message(raw) == ("u", "message_done", {"a": 1})


class TestBusSubscriber:
    """Tests for replaying bus events into the local hub."""

    def test_events_reach_hub_subscribers(self, bus):
        hub = SSEHub(buffer_size=16)
        alice = hub.subscribe("alice")
        bob = hub.subscribe("bob")
        bus.publish("alice", EVENT_MESSAGE_CREATED, {"thread_id": "t"})
        bus.publish("alice", EVENT_MESSAGE_DONE, {"thread_id": "t"})

        subscriber = drain(bus, hub)

        assert subscriber.forwarded == 2
        assert [m.event for m in alice.pending()] == [EVENT_MESSAGE_CREATED, EVENT_MESSAGE_DONE]
        assert bob.pending() == []

    def test_subscribes_to_bus_channel_and_closes(self, bus, fake_redis):
        drain(bus, SSEHub(buffer_size=4))

        assert fake_redis.last_pubsub.channels == [CHANNEL]
        assert fake_redis.last_pubsub.closed is True

    def test_ignores_non_message_and_malformed(self, bus):
        hub = SSEHub(buffer_size=4)
        subscription = hub.subscribe("u")
        subscriber = BusSubscriber(bus, hub)

        assert subscriber.forward(None) == 0
        assert subscriber.forward({"type": "subscribe", "data": 1}) == 0
        assert subscriber.forward({"type": "message", "data": "{broken"}) == 0
        assert subscription.pending() == []

    def test_read_error_retries(self, bus):
        hub = SSEHub(buffer_size=4)
        subscription = hub.subscribe("u")
        subscriber = BusSubscriber(bus, hub, poll_timeout=0.01, retry_delay=0)
        payload = json.dumps({"user_id": "u", "event": EVENT_MESSAGE_DONE, "data": {}})
        reads = [RedisConnectionError("reset"), {"type": "message", "data": payload}]

        pubsub = MagicMock()

        def get_message(timeout=None):
            if not reads:
                subscriber.stop()
                return None
            item = reads.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

        pubsub.get_message.side_effect = get_message
        bus.pubsub = lambda: pubsub

        subscriber.run()

        assert [m.event for m in subscription.pending()] == [EVENT_MESSAGE_DONE]
        pubsub.close.assert_called_once()


class TestStandaloneWorker:
    """A worker publishing through the bus reaches another process's hub."""

    def test_notifier_publishes_through_bus(self, bus, fake_redis):
        ChatNotifier(bus).message_done("u1", "t1", {"id": "m1"}, {"turn_id": "x"})

        (raw,) = fake_redis.published[CHANNEL]
        payload = json.loads(raw)
        assert payload["event"] == EVENT_MESSAGE_DONE
        assert payload["data"]["message"] == {"id": "m1"}
        assert payload["data"]["turn_id"] == "x"

    def test_reply_streamed_by_worker_reaches_api_hub(
        self, db_session, stub_llm, vector_store, bus, user_id, sample_thread
    ):
        api_hub = SSEHub(buffer_size=512)
        subscription = api_hub.subscribe(user_id)
        posted = ChatService(db_session, ChatNotifier(api_hub)).post_message(
            user_id, sample_thread.id, "explain binary heaps"
        )
        worker = JobWorker(
            handlers={JOB_CHAT_RESPOND: handle_chat_respond},
            notifier=ChatNotifier(bus),
            llm=stub_llm,
            vector=vector_store,
            session_factory=lambda: nullcontext(db_session),
        )

        assert worker.run_once() is True
        drain(bus, api_hub)

        events = [m.event for m in subscription.pending()]
        assert EVENT_MESSAGE_DELTA in events
        assert events[-1] == EVENT_MESSAGE_DONE
        done = subscription.pending()[-1]
        assert done.data["message"]["id"] == str(posted.assistant_message.id)
