"""Per-train aggregation across the movement, schedule, describer and TSR feeds.

The aggregator is the only writer of ``TrainRecord`` values. Every handler runs
on the event loop thread and finishes by assigning a freshly built record, so
readers never see a half-updated train.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from railfeeds.models.feeds import RtppmSnapshot, TsrRecord
from railfeeds.services.feed_mapping import headcode_from_train_id
from railfeeds.services.feed_stats import FeedStats
from railfeeds.services.rail_dto import (
    BerthStep,
    Confidence,
    DataQuality,
    MovementEvent,
    NetworkHealth,
    NetworkStatus,
    Position,
    ScheduleAccuracy,
    ScheduleChange,
    ScheduleSummary,
    TrainActivation,
    TrainPerformance,
    TrainRecord,
    utc_now,
)
from railfeeds.services.reference import LocationIndex
from railfeeds.services.stores.berth_graph import BerthGraph
from railfeeds.services.stores.movements import HISTORY_WINDOW, MovementStore
from railfeeds.services.stores.punctuality import PunctualityStore
from railfeeds.services.stores.restrictions import (
    RestrictionStore,
    estimated_delay_minutes,
)
from railfeeds.services.stores.schedules import ScheduleStore
from railfeeds.services.transport.network_rail import (
    FEED_MOVEMENTS,
    FEED_RTPPM,
    FEED_TD,
    FEED_TSR,
    FEED_VSTP,
    NetworkRailFeeds,
)
from railfeeds.services.transport.push_port import PushPortClient
from railfeeds.services.transport.stomp_session import StompSession

logger = logging.getLogger(__name__)

ACTIVE_WINDOW = timedelta(minutes=30)
STATION_WINDOW = timedelta(minutes=10)
RECORD_RETENTION = HISTORY_WINDOW

# TD message classes that place a description into a berth.
_POSITIONING_MESSAGES = frozenset({"CA", "CC"})


def network_health(national_on_time: float | None) -> NetworkHealth:
    """Band national punctuality; no data at all counts as POOR."""
    if national_on_time is None or national_on_time < 70:
        return NetworkHealth.POOR
    if national_on_time < 85:
        return NetworkHealth.DEGRADED
    if national_on_time < 95:
        return NetworkHealth.GOOD
    return NetworkHealth.EXCELLENT


class RailAggregator:
    """Merges feed output into one composite record per train id."""

    def __init__(
        self,
        locations: LocationIndex,
        *,
        stats: FeedStats | None = None,
        network_rail: NetworkRailFeeds | None = None,
        push_port: PushPortClient | None = None,
        movements: MovementStore | None = None,
        restrictions: RestrictionStore | None = None,
        punctuality: PunctualityStore | None = None,
        berths: BerthGraph | None = None,
        schedules: ScheduleStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._locations = locations
        self._clock = clock
        self._stats = stats or FeedStats(clock=clock)
        self._network_rail = network_rail
        self._push_port = push_port
        self.movements = movements or MovementStore(clock=clock)
        self.restrictions = restrictions or RestrictionStore(locations, clock=clock)
        self.punctuality = punctuality or PunctualityStore(clock=clock)
        self.berths = berths or BerthGraph(clock=clock)
        self.schedules = schedules or ScheduleStore(locations)

        self._trains: dict[str, TrainRecord] = {}
        self._headcodes: dict[str, str] = {}
        self._activations: dict[str, tuple[TrainActivation, datetime]] = {}
        self._running = False

        if network_rail is not None:
            network_rail.add_listener(FEED_MOVEMENTS, self.on_trust)
            network_rail.add_listener(FEED_VSTP, self.on_schedule_change)
            network_rail.add_listener(FEED_TD, self.on_berth_step)
            network_rail.add_listener(FEED_TSR, self.on_restriction)
            network_rail.add_listener(FEED_RTPPM, self.on_punctuality)

    @property
    def stats(self) -> FeedStats:
        return self._stats

    @property
    def running(self) -> bool:
        return self._running

    def sessions(self) -> list[StompSession]:
        sessions = []
        if self._network_rail is not None:
            sessions.append(self._network_rail.session)
        if self._push_port is not None:
            sessions.append(self._push_port.session)
        return sessions

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start every configured transport; unconfigured ones stay disabled."""
        if self._running:
            return
        self._running = True
        if self._network_rail is not None:
            await self._network_rail.start()
        if self._push_port is not None:
            await self._push_port.start()
        logger.info("Rail aggregator started")

    async def stop(self) -> None:
        """Stop every transport. Safe to call repeatedly."""
        self._running = False
        stops = []
        if self._network_rail is not None:
            stops.append(self._network_rail.stop())
        if self._push_port is not None:
            stops.append(self._push_port.stop())
        results = await asyncio.gather(*stops, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Transport failed to stop cleanly: %s", result)

    async def restart_exhausted(self) -> list[str]:
        """Restart sessions that gave up reconnecting. Returns their names."""
        if not self._running:
            return []
        restarted = []
        for session in self.sessions():
            if session.exhausted:
                logger.warning("Restarting exhausted STOMP session %s", session.name)
                await session.restart()
                restarted.append(session.name)
        return restarted

    # ------------------------------------------------------------------
    # Feed handlers
    # ------------------------------------------------------------------

    def on_trust(self, record: MovementEvent | TrainActivation) -> None:
        if isinstance(record, TrainActivation):
            self.on_activation(record)
        else:
            self.on_movement(record)

    def on_movement(self, event: MovementEvent) -> TrainRecord:
        history = self.movements.ingest(event)
        now = self._clock()
        existing = self._trains.get(event.train_id)

        location = self._locations.by_stanox(event.stanox)
        position = Position(
            stanox=event.stanox,
            timestamp=event.actual_time,
            confidence=Confidence.HIGH,
            crs=location.crs if location else None,
            name=location.name if location else None,
            berth=existing.current_position.berth
            if existing and existing.current_position
            else None,
            platform=event.platform,
        )

        activation = self._activations.get(event.train_id)
        uid = activation[0].train_uid if activation else (existing.uid if existing else None)
        toc_id = event.toc_id or (existing.toc_id if existing else None)
        schedule = self.schedules.summary(uid) if uid else None
        restrictions = tuple(self.restrictions.active_for_location(event.stanox))
        headcode = headcode_from_train_id(event.train_id)

        record = TrainRecord(
            train_id=event.train_id,
            headcode=headcode,
            uid=uid,
            toc_id=toc_id,
            current_position=position,
            movements=history,
            performance=self._performance(toc_id),
            affecting_restrictions=restrictions,
            estimated_restriction_delay=estimated_delay_minutes(restrictions),
            schedule=schedule,
            data_quality=DataQuality(
                movements_fresh=now - event.actual_time <= ACTIVE_WINDOW,
                position_confidence=Confidence.HIGH,
                schedule_accuracy=self._accuracy(schedule),
                last_update=now,
            ),
        )
        self._trains[event.train_id] = record
        if headcode:
            self._headcodes[headcode] = event.train_id
        return record

    def on_activation(self, activation: TrainActivation) -> None:
        self._activations[activation.train_id] = (activation, self._clock())
        record = self._trains.get(activation.train_id)
        if record is None:
            return
        schedule = self.schedules.summary(activation.train_uid)
        self._trains[activation.train_id] = dataclasses.replace(
            record,
            uid=activation.train_uid,
            toc_id=record.toc_id or activation.toc_id,
            schedule=schedule,
            data_quality=dataclasses.replace(
                record.data_quality, schedule_accuracy=self._accuracy(schedule)
            ),
        )

    def on_schedule_change(self, change: ScheduleChange) -> None:
        self.schedules.apply(change)
        uid = change.schedule.uid
        schedule = self.schedules.summary(uid)
        for train_id, record in list(self._trains.items()):
            if record.uid != uid:
                continue
            self._trains[train_id] = dataclasses.replace(
                record,
                schedule=schedule,
                data_quality=dataclasses.replace(
                    record.data_quality, schedule_accuracy=self._accuracy(schedule)
                ),
            )

    def on_berth_step(self, step: BerthStep) -> TrainRecord | None:
        if step.msg_type not in _POSITIONING_MESSAGES or not step.to_berth:
            return None
        train_id = self._headcodes.get(step.description)
        record = self._trains.get(train_id) if train_id else None
        if record is None:
            return None

        node = self.berths.resolve(step.area, step.to_berth)
        berth_id = BerthGraph.key(step.area, step.to_berth)
        current = record.current_position
        stepped_at = step.time or self._clock()

        placed = node is not None and bool(node.stanox)
        trust_is_fresher = (
            current is not None
            and current.confidence is Confidence.HIGH
            and current.timestamp >= stepped_at
        )

        if current is not None and (trust_is_fresher or not placed):
            # Keep the reported location; only the berth moves.
            position = dataclasses.replace(current, berth=berth_id)
        elif placed:
            location = self._locations.by_stanox(node.stanox)
            position = Position(
                stanox=node.stanox,
                timestamp=stepped_at,
                confidence=Confidence.MEDIUM,
                crs=location.crs if location else None,
                name=location.name if location else None,
                berth=berth_id,
                platform=node.platform,
            )
        else:
            return None

        updated = dataclasses.replace(
            record,
            current_position=position,
            data_quality=dataclasses.replace(
                record.data_quality,
                position_confidence=position.confidence,
                last_update=self._clock(),
            ),
        )
        self._trains[record.train_id] = updated
        return updated

    def on_restriction(self, record: TsrRecord) -> None:
        restriction = self.restrictions.upsert(record)
        for train_id, train in list(self._trains.items()):
            position = train.current_position
            if position is None:
                continue
            was_affected = any(
                r.restriction_id == record.tsr_id for r in train.affecting_restrictions
            )
            now_affected = restriction is not None and restriction.covers(position.stanox)
            if not (was_affected or now_affected):
                continue
            restrictions = tuple(self.restrictions.active_for_location(position.stanox))
            self._trains[train_id] = dataclasses.replace(
                train,
                affecting_restrictions=restrictions,
                estimated_restriction_delay=estimated_delay_minutes(restrictions),
            )

    def on_punctuality(self, snapshot: RtppmSnapshot) -> None:
        self.punctuality.ingest(snapshot)

    def _performance(self, toc_id: str | None) -> TrainPerformance | None:
        if not toc_id:
            return None
        operator = self.punctuality.operator(toc_id)
        if operator is None:
            return None
        return TrainPerformance(
            operator_code=operator.operator_code,
            on_time_percentage=operator.performance.on_time_percentage,
            rank=operator.rank,
            trend=operator.trend,
        )

    @staticmethod
    def _accuracy(schedule: ScheduleSummary | None) -> ScheduleAccuracy:
        return ScheduleAccuracy.CONFIRMED if schedule else ScheduleAccuracy.UNKNOWN

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def train_by_id(self, train_id: str) -> TrainRecord | None:
        return self._trains.get(train_id)

    def active_trains(self) -> list[TrainRecord]:
        cutoff = self._clock() - ACTIVE_WINDOW
        active = [
            record
            for record in self._trains.values()
            if record.data_quality.last_update >= cutoff
        ]
        active.sort(key=lambda record: record.data_quality.last_update, reverse=True)
        return active

    def trains_at_station(self, code: str) -> list[TrainRecord]:
        """Trains reported at a STANOX (or any STANOX of a CRS) in the last 10 minutes."""
        code = code.strip().upper()
        stanoxes = set(self._locations.stanox_for_crs(code)) or {code}
        cutoff = self._clock() - STATION_WINDOW
        matches = [
            record
            for record in self._trains.values()
            if record.current_position is not None
            and record.current_position.stanox in stanoxes
            and record.current_position.timestamp >= cutoff
        ]
        matches.sort(key=lambda record: record.current_position.timestamp, reverse=True)
        return matches

    def network_status(self) -> NetworkStatus:
        national = self.punctuality.national()
        national_on_time = national.on_time_percentage if national else None
        return NetworkStatus(
            overall=network_health(national_on_time),
            feeds=self._stats.snapshot(),
            national_on_time=national_on_time,
            active_restrictions=len(self.restrictions.active()),
            major_disruptions=self.restrictions.major_disruptions(),
            total_schedules=len(self.schedules),
            berth_count=len(self.berths),
            tracked_trains=len(self.active_trains()),
            generated_at=self._clock(),
        )

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def prune(self) -> int:
        """Drop train records, activations and movements past retention."""
        cutoff = self._clock() - RECORD_RETENTION
        stale = [
            train_id
            for train_id, record in self._trains.items()
            if record.data_quality.last_update < cutoff
        ]
        for train_id in stale:
            record = self._trains.pop(train_id)
            if record.headcode and self._headcodes.get(record.headcode) == train_id:
                del self._headcodes[record.headcode]
        for train_id, (_, seen_at) in list(self._activations.items()):
            if seen_at < cutoff:
                del self._activations[train_id]
        self.movements.prune()
        if self._push_port is not None:
            self._push_port.prune()
        return len(stale)

    def __len__(self) -> int:
        return len(self._trains)


__all__ = [
    "ACTIVE_WINDOW",
    "STATION_WINDOW",
    "RailAggregator",
    "network_health",
]
