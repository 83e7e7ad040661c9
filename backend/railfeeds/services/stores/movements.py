"""Bounded per-train TRUST movement history."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from railfeeds.services.rail_dto import MovementEvent, utc_now

logger = logging.getLogger(__name__)

MAX_EVENTS_PER_TRAIN = 1000
HISTORY_WINDOW = timedelta(hours=24)


class MovementStore:
    """Keeps movement events per train in arrival order.

    Duplicate event keys replace the earlier entry in place. After every ingest
    the train's history holds at most ``max_events`` entries, none older than
    ``window``.
    """

    def __init__(
        self,
        max_events: int = MAX_EVENTS_PER_TRAIN,
        window: timedelta = HISTORY_WINDOW,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._max_events = max_events
        self._window = window
        self._clock = clock
        self._history: dict[str, tuple[MovementEvent, ...]] = {}

    def ingest(self, event: MovementEvent) -> tuple[MovementEvent, ...]:
        """Upsert ``event`` and return the train's pruned history."""
        events = list(self._history.get(event.train_id, ()))
        key = event.key
        for index, existing in enumerate(events):
            if existing.key == key:
                events[index] = event
                break
        else:
            events.append(event)

        cutoff = self._clock() - self._window
        events = [e for e in events if e.actual_time >= cutoff]
        if len(events) > self._max_events:
            events = events[-self._max_events :]

        history = tuple(events)
        if history:
            self._history[event.train_id] = history
        else:
            self._history.pop(event.train_id, None)
        return history

    def history(self, train_id: str) -> tuple[MovementEvent, ...]:
        cutoff = self._clock() - self._window
        return tuple(
            e for e in self._history.get(train_id, ()) if e.actual_time >= cutoff
        )

    def latest(self, train_id: str) -> MovementEvent | None:
        history = self.history(train_id)
        return history[-1] if history else None

    def train_ids(self) -> list[str]:
        return list(self._history)

    def prune(self) -> int:
        """Drop expired events across all trains. Returns trains removed."""
        cutoff = self._clock() - self._window
        removed = 0
        for train_id, events in list(self._history.items()):
            kept = tuple(e for e in events if e.actual_time >= cutoff)
            if kept:
                self._history[train_id] = kept
            else:
                del self._history[train_id]
                removed += 1
        if removed:
            logger.debug("Pruned movement history for %d trains", removed)
        return removed

    def __len__(self) -> int:
        return len(self._history)
