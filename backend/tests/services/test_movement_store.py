"""Tests for bounded per-train movement history."""

from datetime import timedelta

from railfeeds.services.rail_dto import EventType, MovementEvent
from railfeeds.services.stores.movements import (
    HISTORY_WINDOW,
    MAX_EVENTS_PER_TRAIN,
    MovementStore,
)


def _event(clock, stanox="72410", minutes_ago=0, event_type=EventType.DEPARTURE, train_id="721N12MX12"):
    when = clock.now - timedelta(minutes=minutes_ago)
    return MovementEvent(
        train_id=train_id,
        event_type=event_type,
        stanox=stanox,
        actual_time=when,
        planned_time=when,
    )


class TestMovementStore:
    def test_history_keeps_arrival_order(self, clock):
        store = MovementStore(clock=clock)

        store.ingest(_event(clock, "72410", minutes_ago=10))
        history = store.ingest(_event(clock, "72420", minutes_ago=5))

        assert [e.stanox for e in history] == ["72410", "72420"]
        assert store.latest("721N12MX12").stanox == "72420"

    def test_duplicate_key_replaces_in_place(self, clock):
        store = MovementStore(clock=clock)
        first = _event(clock, "72410", minutes_ago=10)
        store.ingest(first)
        store.ingest(_event(clock, "72420", minutes_ago=5))

        corrected = MovementEvent(
            train_id=first.train_id,
            event_type=first.event_type,
            stanox=first.stanox,
            actual_time=first.actual_time + timedelta(minutes=1),
            planned_time=first.planned_time,
            variation_minutes=1,
        )
        history = store.ingest(corrected)

        assert len(history) == 2
        assert history[0].variation_minutes == 1

    def test_history_capped_at_max_events(self, clock):
        store = MovementStore(clock=clock)

        for index in range(MAX_EVENTS_PER_TRAIN + 50):
            history = store.ingest(
                _event(clock, stanox=str(10000 + index), minutes_ago=0)
            )

        assert len(history) == MAX_EVENTS_PER_TRAIN
        assert history[-1].stanox == str(10000 + MAX_EVENTS_PER_TRAIN + 49)
        assert history[0].stanox == "10050"

    def test_events_older_than_window_are_dropped(self, clock):
        store = MovementStore(clock=clock)
        store.ingest(_event(clock, "72410", minutes_ago=0))

        clock.advance(hours=25)
        history = store.ingest(_event(clock, "72420", minutes_ago=0))

        assert [e.stanox for e in history] == ["72420"]
        assert all(e.actual_time >= clock.now - HISTORY_WINDOW for e in history)

    def test_history_read_filters_expired(self, clock):
        store = MovementStore(clock=clock)
        store.ingest(_event(clock))

        clock.advance(hours=24, seconds=1)

        assert store.history("721N12MX12") == ()
        assert store.latest("721N12MX12") is None

    def test_prune_removes_trains_with_only_expired_events(self, clock):
        store = MovementStore(clock=clock)
        store.ingest(_event(clock, train_id="A"))
        clock.advance(hours=12)
        store.ingest(_event(clock, train_id="B"))
        clock.advance(hours=13)

        assert store.prune() == 1
        assert store.train_ids() == ["B"]
