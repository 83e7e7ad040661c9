"""Schedules keyed by train UID (VSTP changes and timetable extracts)."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from railfeeds.services.rail_dto import (
    ScheduleChange,
    ScheduleStop,
    ScheduleSummary,
    TrainSchedule,
)
from railfeeds.services.reference import LocationIndex

logger = logging.getLogger(__name__)


class ScheduleStore:
    def __init__(self, locations: LocationIndex | None = None) -> None:
        self._locations = locations
        self._schedules: dict[str, TrainSchedule] = {}

    def _enrich(self, schedule: TrainSchedule) -> TrainSchedule:
        if self._locations is None or not self._locations.loaded:
            return schedule
        stops = []
        for stop in schedule.stops:
            location = self._locations.by_tiploc(stop.tiploc)
            if location is None:
                stops.append(stop)
                continue
            stops.append(
                ScheduleStop(
                    tiploc=stop.tiploc,
                    arrival=stop.arrival,
                    departure=stop.departure,
                    platform=stop.platform,
                    crs=stop.crs or location.crs,
                    name=stop.name or location.name,
                )
            )
        return TrainSchedule(
            uid=schedule.uid,
            headcode=schedule.headcode,
            operator=schedule.operator,
            start_date=schedule.start_date,
            end_date=schedule.end_date,
            stops=tuple(stops),
            source=schedule.source,
        )

    def upsert(self, schedule: TrainSchedule) -> TrainSchedule:
        enriched = self._enrich(schedule)
        self._schedules[enriched.uid] = enriched
        return enriched

    def delete(self, uid: str) -> bool:
        return self._schedules.pop(uid, None) is not None

    def apply(self, change: ScheduleChange) -> TrainSchedule | None:
        """Apply a VSTP transaction. Returns the stored schedule, or None on delete."""
        if change.transaction == "Delete":
            if self.delete(change.schedule.uid):
                logger.debug("Deleted schedule %s", change.schedule.uid)
            return None
        return self.upsert(change.schedule)

    def load(self, schedules: Iterable[TrainSchedule]) -> int:
        """Replace all stored schedules with a fresh extract."""
        table = {}
        for schedule in schedules:
            enriched = self._enrich(schedule)
            table[enriched.uid] = enriched
        self._schedules = table
        logger.info("Loaded %d schedules", len(table))
        return len(table)

    def get(self, uid: str) -> TrainSchedule | None:
        return self._schedules.get(uid)

    def summary(self, uid: str) -> ScheduleSummary | None:
        schedule = self.get(uid)
        if schedule is None:
            return None
        stops = schedule.stops
        return ScheduleSummary(
            origin=stops[0] if stops else None,
            destination=stops[-1] if stops else None,
            stops=stops,
        )

    def _matches(self, stop: ScheduleStop, code: str) -> bool:
        return code in (stop.tiploc, stop.crs)

    def search(
        self,
        origin: str | None = None,
        destination: str | None = None,
        operator: str | None = None,
    ) -> list[TrainSchedule]:
        """Find schedules calling at ``origin`` before ``destination``.

        Codes may be TIPLOC or CRS.
        """
        origin = origin.upper() if origin else None
        destination = destination.upper() if destination else None
        operator = operator.upper() if operator else None

        results = []
        for schedule in self._schedules.values():
            if operator and (schedule.operator or "").upper() != operator:
                continue
            stops = schedule.stops
            origin_index = 0
            if origin:
                origin_index = next(
                    (i for i, s in enumerate(stops) if self._matches(s, origin)), -1
                )
                if origin_index < 0:
                    continue
            if destination and not any(
                self._matches(s, destination) for s in stops[origin_index + 1 :]
            ):
                continue
            results.append(schedule)
        return results

    def __len__(self) -> int:
        return len(self._schedules)
