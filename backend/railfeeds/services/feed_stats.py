"""Per-feed message counters rolled into rates by a periodic sampler."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

from railfeeds.core.metrics import record_feed_message
from railfeeds.services.rail_dto import FeedHealth, utc_now


@dataclass
class _FeedCounter:
    total: int = 0
    window: int = 0
    rate: int = 0
    decode_errors: int = 0
    last_message: datetime | None = None


class FeedStats:
    """Tracks liveness per feed.

    ``record`` counts messages in the current window; ``sample`` closes the
    window, turning its count into ``message_rate``. A feed is active when the
    last closed window saw at least one message.
    """

    def __init__(
        self,
        feeds: Iterable[str] = (),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._clock = clock
        self._counters: dict[str, _FeedCounter] = {name: _FeedCounter() for name in feeds}

    def _counter(self, feed: str) -> _FeedCounter:
        counter = self._counters.get(feed)
        if counter is None:
            counter = self._counters[feed] = _FeedCounter()
        return counter

    def record(self, feed: str, result: str = "processed") -> None:
        counter = self._counter(feed)
        counter.total += 1
        counter.window += 1
        counter.last_message = self._clock()
        if result == "decode_error":
            counter.decode_errors += 1
        record_feed_message(feed, result)

    def sample(self) -> dict[str, int]:
        """Close the current window on every feed and return the new rates."""
        rates = {}
        for name, counter in self._counters.items():
            counter.rate = counter.window
            counter.window = 0
            rates[name] = counter.rate
        return rates

    def health(self, feed: str) -> FeedHealth:
        counter = self._counter(feed)
        return FeedHealth(
            name=feed,
            active=counter.rate > 0,
            message_rate=counter.rate,
            total_messages=counter.total,
            last_message=counter.last_message,
        )

    def snapshot(self) -> tuple[FeedHealth, ...]:
        return tuple(self.health(name) for name in sorted(self._counters))

    def decode_errors(self, feed: str) -> int:
        return self._counter(feed).decode_errors
