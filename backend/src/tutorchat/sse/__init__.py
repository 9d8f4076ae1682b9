"""Server-sent event fan-out."""

from tutorchat.sse.hub import (
    EVENT_MESSAGE_CREATED,
    EVENT_MESSAGE_DELTA,
    EVENT_MESSAGE_DONE,
    EVENT_MESSAGE_ERROR,
    ChatNotifier,
    EventPublisher,
    SSEHub,
    SSEMessage,
    Subscription,
    iter_events,
)

__all__ = [
    "EVENT_MESSAGE_CREATED",
    "EVENT_MESSAGE_DELTA",
    "EVENT_MESSAGE_DONE",
    "EVENT_MESSAGE_ERROR",
    "ChatNotifier",
    "EventPublisher",
    "SSEHub",
    "SSEMessage",
    "Subscription",
    "iter_events",
]
