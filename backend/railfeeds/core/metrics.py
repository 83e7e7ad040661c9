from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge, Histogram

if TYPE_CHECKING:
    from railfeeds.services.rail_dto import FeedHealth

CACHE_EVENTS = Counter(
    "railfeeds_cache_events_total",
    "Cache operations recorded by railfeeds.",
    labelnames=("cache", "event"),
)
FEED_MESSAGES = Counter(
    "railfeeds_feed_messages_total",
    "Inbound feed messages by outcome.",
    labelnames=("feed", "result"),
)
TRANSPORT_REQUESTS = Counter(
    "railfeeds_transport_requests_total",
    "Outbound transport client requests.",
    labelnames=("endpoint", "result"),
)
TRANSPORT_REQUEST_LATENCY = Histogram(
    "railfeeds_transport_request_seconds",
    "Latency of outbound transport client requests.",
    labelnames=("endpoint",),
)
BOARD_STRATEGIES = Counter(
    "railfeeds_board_strategy_total",
    "Departure board fallback chain results per strategy.",
    labelnames=("strategy", "result"),
)
STOMP_CONNECTS = Counter(
    "railfeeds_stomp_connects_total",
    "STOMP connection attempts per session.",
    labelnames=("session", "result"),
)
REALTIME_EVENTS = Counter(
    "railfeeds_realtime_events_total",
    "Realtime fan-out operations per backing store.",
    labelnames=("backend", "event"),
)
FEED_ACTIVE = Gauge(
    "railfeeds_feed_active",
    "1 when the feed delivered messages in the last sampling window.",
    labelnames=("feed",),
)
FEED_MESSAGE_RATE = Gauge(
    "railfeeds_feed_message_rate",
    "Messages received in the last closed sampling window.",
    labelnames=("feed",),
)


def record_cache_event(cache: str, event: str) -> None:
    """Increment a cache event counter."""
    CACHE_EVENTS.labels(cache=cache, event=event).inc()


def record_feed_message(feed: str, result: str) -> None:
    """Increment the inbound message counter for a feed."""
    FEED_MESSAGES.labels(feed=feed, result=result).inc()


def observe_transport_request(
    endpoint: str, result: str, duration_seconds: float
) -> None:
    """Record transport request result and latency."""
    TRANSPORT_REQUESTS.labels(endpoint=endpoint, result=result).inc()
    TRANSPORT_REQUEST_LATENCY.labels(endpoint=endpoint).observe(duration_seconds)


def record_board_strategy(strategy: str, result: str) -> None:
    """Record the outcome of one fallback strategy."""
    BOARD_STRATEGIES.labels(strategy=strategy, result=result).inc()


def record_stomp_connect(session: str, result: str) -> None:
    """Record a STOMP connect attempt."""
    STOMP_CONNECTS.labels(session=session, result=result).inc()


def record_realtime_event(backend: str, event: str) -> None:
    """Record a fan-out publish or subscriber failure."""
    REALTIME_EVENTS.labels(backend=backend, event=event).inc()


def record_feed_health(feeds: Iterable["FeedHealth"]) -> None:
    """Publish per-feed liveness gauges from a FeedStats snapshot."""
    for feed in feeds:
        FEED_ACTIVE.labels(feed=feed.name).set(1 if feed.active else 0)
        FEED_MESSAGE_RATE.labels(feed=feed.name).set(feed.message_rate)
