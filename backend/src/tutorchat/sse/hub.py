"""
In-process server-sent event hub.

Each subscription owns a bounded FIFO buffer. When the buffer is full the
oldest pending `message_delta` is dropped; `message_created`, `message_done`
and `message_error` are sticky and always delivered. Publishing never blocks
on a slow subscriber.
"""

import json
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Protocol

from tutorchat.config import settings

logger = logging.getLogger(__name__)

EVENT_MESSAGE_CREATED = "message_created"
EVENT_MESSAGE_DELTA = "message_delta"
EVENT_MESSAGE_DONE = "message_done"
EVENT_MESSAGE_ERROR = "message_error"

DROPPABLE_EVENTS = frozenset({EVENT_MESSAGE_DELTA})

KEEPALIVE_COMMENT = ": ping\n\n"


@dataclass
class SSEMessage:
    """One event published on a channel."""

    channel: str
    event: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"channel": self.channel, "event": self.event, "data": self.data}

    def encode(self) -> str:
        """Wire format: `event:` line plus a JSON `data:` line."""
        payload = json.dumps(self.to_dict(), default=str, separators=(",", ":"))
        return f"event: {self.event}\ndata: {payload}\n\n"


class Subscription:
    """A subscriber's bounded outbound buffer."""

    def __init__(self, user_id: str, channels: set[str], max_buffer: int):
        self.id = uuid.uuid4().hex
        self.user_id = user_id
        self.channels = channels
        self.max_buffer = max(1, max_buffer)
        self.dropped = 0
        self.closed = False
        self._buffer: deque[SSEMessage] = deque()
        self._cond = threading.Condition()

    def push(self, message: SSEMessage) -> bool:
        """
        Enqueue a message, applying the overflow policy.

        Returns:
            False if the message (or nothing droppable) had to be discarded
        """
        with self._cond:
            if self.closed:
                return False
            if len(self._buffer) >= self.max_buffer:
                if not self._drop_oldest_delta():
                    if message.event in DROPPABLE_EVENTS:
                        self.dropped += 1
                        return False
            self._buffer.append(message)
            self._cond.notify()
            return True

    def _drop_oldest_delta(self) -> bool:
        for index, pending in enumerate(self._buffer):
            if pending.event in DROPPABLE_EVENTS:
                del self._buffer[index]
                self.dropped += 1
                if self.dropped == 1 or self.dropped % 100 == 0:
                    logger.warning(
                        f"SSE subscriber {self.id} (user {self.user_id}) is slow; "
                        f"dropped {self.dropped} deltas so far"
                    )
                return True
        return False

    def get(self, timeout: Optional[float] = None) -> Optional[SSEMessage]:
        """Pop the next message, waiting up to timeout. None on timeout or close."""
        with self._cond:
            if not self._buffer and not self.closed:
                self._cond.wait(timeout)
            if self._buffer:
                return self._buffer.popleft()
            return None

    def pending(self) -> list[SSEMessage]:
        """Snapshot of buffered messages (oldest first)."""
        with self._cond:
            return list(self._buffer)

    def close(self) -> None:
        with self._cond:
            self.closed = True
            self._cond.notify_all()


class SSEHub:
    """Per-user publish/subscribe fan-out, lock-protected, single process."""

    def __init__(self, buffer_size: Optional[int] = None):
        self.buffer_size = buffer_size or settings.sse_buffer_size
        self._lock = threading.Lock()
        self._subscriptions: dict[str, Subscription] = {}

    def subscribe(
        self, user_id: Any, channels: Optional[set[str]] = None
    ) -> Subscription:
        """Register a subscriber. Defaults to the user's own channel."""
        user_key = str(user_id)
        subscription = Subscription(
            user_key, set(channels or {user_key}), self.buffer_size
        )
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        logger.debug(f"SSE subscribe {subscription.id} user={user_key}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        with self._lock:
            self._subscriptions.pop(subscription.id, None)
        logger.debug(f"SSE unsubscribe {subscription.id}")

    def broadcast(self, channel: str, message: SSEMessage) -> int:
        """
        Deliver a message to subscribers of one channel.

        Returns:
            Number of subscribers that accepted the message
        """
        with self._lock:
            targets = [s for s in self._subscriptions.values() if channel in s.channels]
        delivered = 0
        for subscription in targets:
            if subscription.push(message):
                delivered += 1
        return delivered

    def publish(self, user_id: Any, event: str, data: dict[str, Any]) -> int:
        """Publish an event on the user's channel."""
        channel = str(user_id)
        return self.broadcast(channel, SSEMessage(channel=channel, event=event, data=data))

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)


def iter_events(
    subscription: Subscription,
    thread_id: Optional[str] = None,
    keepalive_seconds: Optional[float] = None,
    stop: Optional[threading.Event] = None,
) -> Iterator[str]:
    """
    Render a subscription as SSE text frames.

    Emits a keepalive comment after `keepalive_seconds` without traffic. When
    thread_id is given only events of that thread are forwarded.
    """
    keepalive = keepalive_seconds or settings.sse_keepalive_seconds
    last_sent = time.monotonic()
    while not subscription.closed and not (stop is not None and stop.is_set()):
        wait = max(0.05, keepalive - (time.monotonic() - last_sent))
        message = subscription.get(timeout=min(wait, 1.0))
        if message is None:
            if time.monotonic() - last_sent >= keepalive:
                last_sent = time.monotonic()
                yield KEEPALIVE_COMMENT
            continue
        if thread_id and str(message.data.get("thread_id", "")) != thread_id:
            continue
        last_sent = time.monotonic()
        yield message.encode()


class EventPublisher(Protocol):
    """Anything that delivers `(user_id, event, data)`: SSEHub or RedisEventBus."""

    def publish(self, user_id: Any, event: str, data: dict[str, Any]) -> int: ...


class ChatNotifier:
    """Typed chat events on top of a hub or the Redis bus."""

    def __init__(self, hub: EventPublisher):
        self.hub = hub

    def message_created(
        self,
        user_id: Any,
        thread_id: Any,
        message: dict[str, Any],
        meta: Optional[dict[str, Any]] = None,
    ) -> None:
        self.hub.publish(
            user_id,
            EVENT_MESSAGE_CREATED,
            {"thread_id": str(thread_id), "message": message, **(meta or {})},
        )

    def message_delta(
        self,
        user_id: Any,
        thread_id: Any,
        message_id: Any,
        delta: str,
        delta_seq: int,
        content_len: int,
        turn_id: Any = None,
        attempt: int = 0,
    ) -> None:
        self.hub.publish(
            user_id,
            EVENT_MESSAGE_DELTA,
            {
                "thread_id": str(thread_id),
                "message_id": str(message_id),
                "delta": delta,
                "delta_seq": delta_seq,
                "content_len": content_len,
                "turn_id": str(turn_id) if turn_id else None,
                "attempt": attempt,
            },
        )

    def message_done(
        self,
        user_id: Any,
        thread_id: Any,
        message: dict[str, Any],
        meta: Optional[dict[str, Any]] = None,
    ) -> None:
        self.hub.publish(
            user_id,
            EVENT_MESSAGE_DONE,
            {"thread_id": str(thread_id), "message": message, **(meta or {})},
        )

    def message_error(
        self,
        user_id: Any,
        thread_id: Any,
        message_id: Any,
        error: str,
        meta: Optional[dict[str, Any]] = None,
    ) -> None:
        self.hub.publish(
            user_id,
            EVENT_MESSAGE_ERROR,
            {
                "thread_id": str(thread_id),
                "message_id": str(message_id),
                "error": error,
                **(meta or {}),
            },
        )
