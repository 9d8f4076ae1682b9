"""
Redis pub/sub bus for chat events.

When REDIS_URL is set, every publisher (API requests, the in-process worker
and standalone `tutorchat worker` processes) writes chat events to one Redis
channel, and every API process runs a BusSubscriber that replays them into
its local SSEHub. Without Redis the hub is used directly, which only reaches
subscribers in the same process.
"""

import json
import logging
import threading
from typing import Any, Optional

import redis
from redis.exceptions import RedisError

from tutorchat.config import settings
from tutorchat.sse.hub import SSEHub

logger = logging.getLogger(__name__)


def encode_bus_message(user_id: Any, event: str, data: dict[str, Any]) -> str:
    return json.dumps(
        {"user_id": str(user_id), "event": event, "data": data},
        default=str,
        separators=(",", ":"),
    )


def decode_bus_message(raw: Any) -> Optional[tuple[str, str, dict[str, Any]]]:
    """Parse a bus payload into (user_id, event, data), or None if malformed."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    user_id = str(payload.get("user_id") or "").strip()
    event = str(payload.get("event") or "").strip()
    data = payload.get("data")
    if not user_id or not event or not isinstance(data, dict):
        return None
    return user_id, event, data


class RedisEventBus:
    """
    Publishes chat events to a Redis channel.

    Exposes the same `publish(user_id, event, data)` call as SSEHub, so a
    ChatNotifier can sit on either.
    """

    def __init__(
        self,
        url: str,
        channel: Optional[str] = None,
        client: Optional[redis.Redis] = None,
    ):
        if not (url or "").strip():
            raise ValueError("Redis URL is required for the SSE bus")
        self.channel = channel or settings.sse_bus_channel
        self._client = client or redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout_seconds,
        )

    def publish(self, user_id: Any, event: str, data: dict[str, Any]) -> int:
        """
        Publish one event.

        Returns:
            Number of bus subscribers that received it (0 on failure)
        """
        try:
            return int(self._client.publish(self.channel, encode_bus_message(user_id, event, data)))
        except RedisError as e:
            logger.warning(f"SSE bus publish of {event} for user {user_id} failed: {e}")
            return 0

    def ping(self) -> bool:
        return bool(self._client.ping())

    def pubsub(self) -> Any:
        return self._client.pubsub(ignore_subscribe_messages=True)

    def close(self) -> None:
        self._client.close()


class BusSubscriber:
    """Replays bus events into a local hub from a daemon thread."""

    def __init__(
        self,
        bus: RedisEventBus,
        hub: SSEHub,
        poll_timeout: float = 1.0,
        retry_delay: float = 1.0,
    ):
        self.bus = bus
        self.hub = hub
        self.poll_timeout = poll_timeout
        self.retry_delay = retry_delay
        self.forwarded = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self.run, name="sse-bus", daemon=True)
        self._thread.start()
        logger.info(f"SSE bus subscriber started on channel {self.bus.channel}")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def forward(self, message: Optional[dict[str, Any]]) -> int:
        """Publish one pub/sub message into the hub."""
        if not message or message.get("type") != "message":
            return 0
        decoded = decode_bus_message(message.get("data"))
        if decoded is None:
            logger.warning("Dropping malformed SSE bus message")
            return 0
        user_id, event, data = decoded
        self.forwarded += 1
        return self.hub.publish(user_id, event, data)

    def run(self) -> None:
        pubsub = self.bus.pubsub()
        pubsub.subscribe(self.bus.channel)
        try:
            while not self._stop_event.is_set():
                try:
                    message = pubsub.get_message(timeout=self.poll_timeout)
                except RedisError as e:
                    logger.warning(f"SSE bus read failed: {e}")
                    self._stop_event.wait(self.retry_delay)
                    continue
                self.forward(message)
        finally:
            pubsub.close()
            logger.info(f"SSE bus subscriber stopped ({self.forwarded} events forwarded)")
