"""Tests for per-train aggregation across feeds."""

from __future__ import annotations

from datetime import timedelta

import pytest

from railfeeds.models.feeds import RtppmSnapshot, TsrRecord
from railfeeds.services.aggregator import RailAggregator, network_health
from railfeeds.services.feed_stats import FeedStats
from railfeeds.services.rail_dto import (
    BerthEdge,
    BerthStep,
    Confidence,
    EventType,
    MovementEvent,
    NetworkHealth,
    ScheduleAccuracy,
    ScheduleChange,
    ScheduleStop,
    TrainActivation,
    TrainSchedule,
)
from railfeeds.services.transport.network_rail import NetworkRailFeeds

TRAIN_ID = "721N12MX12"


def _movement(clock, stanox, minutes_ago=0, toc_id="20", train_id=TRAIN_ID):
    when = clock.now - timedelta(minutes=minutes_ago)
    return MovementEvent(
        train_id=train_id,
        event_type=EventType.DEPARTURE,
        stanox=stanox,
        actual_time=when,
        planned_time=when,
        toc_id=toc_id,
    )


def _tsr(clock, **overrides):
    data = {
        "tsr_id": "TSR1",
        "route": "ECML",
        "from_stanox": "72420",
        "to_stanox": "72600",
        "speed_restriction": 20,
        "valid_from": (clock.now - timedelta(hours=1)).isoformat(),
        "valid_to": (clock.now + timedelta(hours=1)).isoformat(),
    }
    data.update(overrides)
    return TsrRecord.model_validate(data)


def _schedule_change(uid="C12345", transaction="Create"):
    return ScheduleChange(
        transaction=transaction,
        schedule=TrainSchedule(
            uid=uid,
            headcode="1N12",
            operator="GR",
            start_date=None,
            end_date=None,
            stops=(ScheduleStop(tiploc="KNGX"), ScheduleStop(tiploc="PBRO")),
        ),
    )


@pytest.fixture
def aggregator(locations, clock):
    return RailAggregator(locations, clock=clock)


class TestNetworkHealth:
    @pytest.mark.parametrize(
        "percentage, expected",
        [
            (None, NetworkHealth.POOR),
            (69.9, NetworkHealth.POOR),
            (70.0, NetworkHealth.DEGRADED),
            (85.0, NetworkHealth.GOOD),
            (95.0, NetworkHealth.EXCELLENT),
        ],
    )
    def test_bands(self, percentage, expected):
        assert network_health(percentage) is expected


class TestMovements:
    def test_latest_movement_sets_position(self, aggregator):
        aggregator.on_movement(_movement(aggregator._clock, "72410", minutes_ago=6))
        aggregator.on_movement(_movement(aggregator._clock, "72420", minutes_ago=1))

        active = aggregator.active_trains()

        assert len(active) == 1
        record = active[0]
        assert record.current_position.stanox == "72420"
        assert record.current_position.crs == "FPK"
        assert record.current_position.confidence is Confidence.HIGH
        assert record.headcode == "1N12"
        assert [m.stanox for m in record.movements] == ["72410", "72420"]
        assert record.data_quality.movements_fresh is True
        assert record.data_quality.schedule_accuracy is ScheduleAccuracy.UNKNOWN

    def test_stale_movement_is_not_fresh(self, aggregator, clock):
        record = aggregator.on_movement(_movement(clock, "72410", minutes_ago=45))

        assert record.data_quality.movements_fresh is False

    def test_active_trains_newest_first_and_windowed(self, aggregator, clock):
        aggregator.on_movement(_movement(clock, "72410", train_id="A"))
        clock.advance(minutes=20)
        aggregator.on_movement(_movement(clock, "72420", train_id="B"))

        assert [r.train_id for r in aggregator.active_trains()] == ["B", "A"]
        clock.advance(minutes=15)
        assert [r.train_id for r in aggregator.active_trains()] == ["B"]

    def test_trains_at_station_by_crs_and_stanox(self, aggregator, clock):
        aggregator.on_movement(_movement(clock, "72411", train_id="A"))
        aggregator.on_movement(_movement(clock, "72420", train_id="B"))
        aggregator.on_movement(_movement(clock, "72410", minutes_ago=11, train_id="C"))

        assert [r.train_id for r in aggregator.trains_at_station("kgx")] == ["A"]
        assert [r.train_id for r in aggregator.trains_at_station("72420")] == ["B"]
        assert aggregator.trains_at_station("ZZZ") == []


class TestSchedules:
    def test_activation_links_schedule(self, aggregator, clock):
        aggregator.on_schedule_change(_schedule_change())
        aggregator.on_trust(TrainActivation(train_id=TRAIN_ID, train_uid="C12345", toc_id="20"))

        record = aggregator.on_movement(_movement(clock, "72410"))

        assert record.uid == "C12345"
        assert record.schedule.destination.crs == "PBO"
        assert record.data_quality.schedule_accuracy is ScheduleAccuracy.CONFIRMED

    def test_schedule_change_refreshes_running_train(self, aggregator, clock):
        aggregator.on_trust(TrainActivation(train_id=TRAIN_ID, train_uid="C12345"))
        aggregator.on_movement(_movement(clock, "72410"))

        aggregator.on_schedule_change(_schedule_change())
        assert aggregator.train_by_id(TRAIN_ID).schedule is not None

        aggregator.on_schedule_change(_schedule_change(transaction="Delete"))
        record = aggregator.train_by_id(TRAIN_ID)
        assert record.schedule is None
        assert record.data_quality.schedule_accuracy is ScheduleAccuracy.UNKNOWN

    def test_activation_after_movement_updates_record(self, aggregator, clock):
        aggregator.on_schedule_change(_schedule_change())
        aggregator.on_movement(_movement(clock, "72410", toc_id=None))

        aggregator.on_activation(TrainActivation(train_id=TRAIN_ID, train_uid="C12345", toc_id="20"))

        record = aggregator.train_by_id(TRAIN_ID)
        assert record.uid == "C12345"
        assert record.toc_id == "20"
        assert record.data_quality.schedule_accuracy is ScheduleAccuracy.CONFIRMED


class TestBerthSteps:
    @pytest.fixture(autouse=True)
    def _graph(self, aggregator):
        aggregator.berths.load(
            [BerthEdge(area="SK", from_berth="0001", to_berth="0002", to_stanox="72420")]
        )

    def _step(self, clock, to_berth="0002", minutes_ago=0, description="1N12"):
        return BerthStep(
            area="SK",
            msg_type="CA",
            description=description,
            from_berth="0001",
            to_berth=to_berth,
            time=clock.now - timedelta(minutes=minutes_ago),
        )

    def test_newer_step_moves_train_with_medium_confidence(self, aggregator, clock):
        aggregator.on_movement(_movement(clock, "72410", minutes_ago=5))

        record = aggregator.on_berth_step(self._step(clock))

        assert record.current_position.stanox == "72420"
        assert record.current_position.berth == "SK:0002"
        assert record.current_position.confidence is Confidence.MEDIUM
        assert record.data_quality.position_confidence is Confidence.MEDIUM

    def test_fresher_trust_position_kept(self, aggregator, clock):
        aggregator.on_movement(_movement(clock, "72410"))

        record = aggregator.on_berth_step(self._step(clock, minutes_ago=1))

        assert record.current_position.stanox == "72410"
        assert record.current_position.berth == "SK:0002"
        assert record.current_position.confidence is Confidence.HIGH

    def test_unplaced_berth_only_updates_berth(self, aggregator, clock):
        aggregator.on_movement(_movement(clock, "72410", minutes_ago=5))

        record = aggregator.on_berth_step(self._step(clock, to_berth="0999"))

        assert record.current_position.stanox == "72410"
        assert record.current_position.berth == "SK:0999"

    def test_unknown_description_ignored(self, aggregator, clock):
        aggregator.on_movement(_movement(clock, "72410"))

        assert aggregator.on_berth_step(self._step(clock, description="2A99")) is None

    def test_cancel_messages_ignored(self, aggregator, clock):
        aggregator.on_movement(_movement(clock, "72410"))
        step = BerthStep(area="SK", msg_type="CB", description="1N12", from_berth="0002", to_berth=None)

        assert aggregator.on_berth_step(step) is None


class TestRestrictionsAndPerformance:
    def test_restriction_attaches_to_trains_in_section(self, aggregator, clock):
        aggregator.on_movement(_movement(clock, "72420", train_id="A"))
        aggregator.on_movement(_movement(clock, "72410", train_id="B"))

        aggregator.on_restriction(_tsr(clock))

        affected = aggregator.train_by_id("A")
        assert [r.restriction_id for r in affected.affecting_restrictions] == ["TSR1"]
        assert affected.estimated_restriction_delay > 0
        assert aggregator.train_by_id("B").affecting_restrictions == ()

        aggregator.on_restriction(_tsr(clock, cancelled=True))
        cleared = aggregator.train_by_id("A")
        assert cleared.affecting_restrictions == ()
        assert cleared.estimated_restriction_delay == 0

    def test_movement_into_restricted_section(self, aggregator, clock):
        aggregator.on_restriction(_tsr(clock))

        record = aggregator.on_movement(_movement(clock, "72600"))

        assert record.affecting_restrictions[0].restriction_id == "TSR1"

    def test_operator_performance_attached(self, aggregator, clock):
        aggregator.on_punctuality(
            RtppmSnapshot.model_validate(
                {
                    "time_period": "2024-03-12",
                    "national": {"pp_percentage": 92.0},
                    "operator_page": [
                        {"operator_code": "20", "operator_name": "LNER", "performance": {"pp_percentage": 88.0}}
                    ],
                }
            )
        )

        record = aggregator.on_movement(_movement(clock, "72410"))

        assert record.performance.on_time_percentage == 88.0
        assert record.performance.rank == 1


class TestNetworkStatus:
    def test_status_without_national_data_is_poor(self, aggregator):
        status = aggregator.network_status()

        assert status.overall is NetworkHealth.POOR
        assert status.national_on_time is None

    def test_status_summarises_stores(self, aggregator, clock):
        aggregator.on_punctuality(
            RtppmSnapshot.model_validate({"time_period": "P", "national": {"pp_percentage": 92.0}})
        )
        aggregator.on_restriction(_tsr(clock))
        aggregator.on_movement(_movement(clock, "72410"))

        status = aggregator.network_status()

        assert status.overall is NetworkHealth.GOOD
        assert status.active_restrictions == 1
        assert status.major_disruptions == 1
        assert status.tracked_trains == 1


class TestHousekeeping:
    def test_prune_drops_records_past_retention(self, aggregator, clock):
        aggregator.on_trust(TrainActivation(train_id=TRAIN_ID, train_uid="C12345"))
        aggregator.on_movement(_movement(clock, "72410"))

        clock.advance(hours=25)

        assert aggregator.prune() == 1
        assert len(aggregator) == 0
        assert aggregator._activations == {}
        assert aggregator._headcodes == {}

    @pytest.mark.asyncio
    async def test_restart_exhausted_sessions(
        self, settings, locations, clock, failing_connection_factory, eventually
    ):
        factory = failing_connection_factory(failures=3)
        feeds = NetworkRailFeeds(settings, FeedStats(clock=clock), factory)
        aggregator = RailAggregator(locations, network_rail=feeds, clock=clock)

        assert await aggregator.restart_exhausted() == []
        await aggregator.start()
        await eventually(lambda: feeds.session.exhausted)

        assert await aggregator.restart_exhausted() == ["network-rail"]
        await eventually(lambda: feeds.session.connected)

        await aggregator.stop()
        await aggregator.stop()
        assert aggregator.running is False

    def test_feed_records_routed_from_network_rail(self, settings, locations, clock, connection_factory):
        feeds = NetworkRailFeeds(settings, FeedStats(clock=clock), connection_factory)
        aggregator = RailAggregator(locations, network_rail=feeds, clock=clock)

        feeds.handle_message(
            "/topic/TRAIN_MVT_ALL_TOC",
            (
                b'{"header": {"msg_type": "0003"}, "body": {"train_id": "721N12MX12",'
                b' "event_type": "ARRIVAL", "loc_stanox": "72410",'
                b' "actual_timestamp": "1710234000000"}}'
            ),
        )

        assert aggregator.train_by_id(TRAIN_ID).current_position.crs == "KGX"
