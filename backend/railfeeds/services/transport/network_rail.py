"""Network Rail open data feeds over a single STOMP session."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from railfeeds.core.config import Settings
from railfeeds.services.feed_mapping import (
    decode_rtppm_message,
    decode_td_message,
    decode_trust_message,
    decode_tsr_message,
    decode_vstp_message,
    split_messages,
)
from railfeeds.services.feed_stats import FeedStats
from railfeeds.services.rail_errors import (
    FeedConnectionError,
    FeedDecodeError,
    FeedTimeoutError,
    NotConfiguredError,
)
from railfeeds.services.transport.stomp_session import (
    ConnectionFactory,
    ReconnectPolicy,
    StompSession,
    Subscription,
    stomp_connection_factory,
)

logger = logging.getLogger(__name__)

FEED_MOVEMENTS = "movements"
FEED_VSTP = "vstp"
FEED_TD = "td"
FEED_TSR = "tsr"
FEED_RTPPM = "rtppm"

TOPIC_MOVEMENTS = "/topic/TRAIN_MVT_ALL_TOC"
TOPIC_VSTP = "/topic/VSTP_ALL"
TOPIC_TSR = "/topic/TSR_ALL_ROUTE"
TOPIC_RTPPM = "/topic/RTPPM_ALL"

DECODERS: dict[str, Callable[[Any], Any]] = {
    FEED_MOVEMENTS: decode_trust_message,
    FEED_VSTP: decode_vstp_message,
    FEED_TD: decode_td_message,
    FEED_TSR: decode_tsr_message,
    FEED_RTPPM: decode_rtppm_message,
}

RecordCallback = Callable[[Any], None]


def td_topics(areas: list[str]) -> list[str]:
    if not areas or "ALL" in areas:
        return ["/topic/TD_ALL_SIG_AREA"]
    return [f"/topic/TD_{area}_SIG_AREA" for area in areas]


def build_subscriptions(settings: Settings) -> dict[str, str]:
    """Map each enabled topic to the feed name that decodes it."""
    topics: dict[str, str] = {}
    if settings.feed_movements_enabled:
        topics[TOPIC_MOVEMENTS] = FEED_MOVEMENTS
    if settings.feed_vstp_enabled:
        topics[TOPIC_VSTP] = FEED_VSTP
    if settings.feed_td_enabled:
        for topic in td_topics(settings.td_areas):
            topics[topic] = FEED_TD
    if settings.feed_tsr_enabled:
        topics[TOPIC_TSR] = FEED_TSR
    if settings.feed_rtppm_enabled:
        topics[TOPIC_RTPPM] = FEED_RTPPM
    return topics


class NetworkRailFeeds:
    """Subscribes to the enabled Network Rail topics and emits decoded records.

    One malformed message is logged and counted; it never ends the subscription.
    """

    def __init__(
        self,
        settings: Settings,
        stats: FeedStats,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self._settings = settings
        self._stats = stats
        self._topics = build_subscriptions(settings)
        self._listeners: dict[str, list[RecordCallback]] = {feed: [] for feed in DECODERS}
        self._session = StompSession(
            "network-rail",
            username=settings.network_rail_username,
            password=settings.network_rail_password,
            subscriptions=[
                Subscription(destination=topic, id=f"{feed}-{index}")
                for index, (topic, feed) in enumerate(self._topics.items())
            ],
            on_message=self.handle_message,
            connection_factory=connection_factory
            or stomp_connection_factory(
                settings.network_rail_stomp_host,
                settings.network_rail_stomp_port,
                vhost=settings.network_rail_stomp_vhost,
            ),
            policy=ReconnectPolicy(
                base_ms=settings.stomp_reconnect_base_ms,
                max_ms=settings.stomp_reconnect_max_ms,
                max_attempts=settings.stomp_reconnect_max_attempts,
            ),
            connect_timeout=settings.stomp_connect_timeout_seconds,
            vhost=settings.network_rail_stomp_vhost,
        )

    @property
    def session(self) -> StompSession:
        return self._session

    @property
    def feeds(self) -> list[str]:
        return sorted(set(self._topics.values()))

    def is_enabled(self) -> bool:
        return self._settings.network_rail_configured and bool(self._topics)

    def add_listener(self, feed: str, callback: RecordCallback) -> None:
        if feed not in self._listeners:
            raise ValueError(f"Unknown feed '{feed}'")
        self._listeners[feed].append(callback)

    async def start(self) -> None:
        if not self.is_enabled():
            logger.info("Network Rail feeds not configured; skipping STOMP session")
            return
        await self._session.start()

    async def stop(self) -> None:
        await self._session.stop()

    async def test_connection(self) -> bool:
        if not self.is_enabled():
            return False
        if self._session.connected:
            return True
        try:
            await self._session.connect()
        except (NotConfiguredError, FeedConnectionError, FeedTimeoutError) as exc:
            logger.info("Network Rail connection test failed: %s", exc)
            return False
        return True

    def feed_for(self, destination: str) -> str | None:
        feed = self._topics.get(destination)
        if feed is None and destination.startswith("/topic/TD_"):
            return FEED_TD
        return feed

    def handle_message(self, destination: str, body: bytes) -> None:
        """Decode one STOMP frame body and emit each contained record."""
        feed = self.feed_for(destination)
        if feed is None:
            logger.debug("Ignoring message on unexpected destination %s", destination)
            return

        try:
            items = split_messages(body)
        except FeedDecodeError as exc:
            logger.warning("Dropping undecodable %s frame: %s", feed, exc)
            self._stats.record(feed, "decode_error")
            return

        decoder = DECODERS[feed]
        for item in items:
            try:
                record = decoder(item)
            except FeedDecodeError as exc:
                logger.warning("Dropping malformed %s message: %s", feed, exc)
                self._stats.record(feed, "decode_error")
                continue
            except Exception:
                logger.exception("Unexpected failure decoding %s message", feed)
                self._stats.record(feed, "decode_error")
                continue

            if record is None:
                self._stats.record(feed, "ignored")
                continue

            self._stats.record(feed, "processed")
            self._emit(feed, record)

    def _emit(self, feed: str, record: Any) -> None:
        for callback in self._listeners[feed]:
            try:
                callback(record)
            except Exception:
                logger.exception("Listener failed while handling %s record", feed)


__all__ = [
    "FEED_MOVEMENTS",
    "FEED_VSTP",
    "FEED_TD",
    "FEED_TSR",
    "FEED_RTPPM",
    "NetworkRailFeeds",
    "build_subscriptions",
    "td_topics",
]
