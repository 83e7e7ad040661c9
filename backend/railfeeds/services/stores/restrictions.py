"""Active temporary speed restriction (TSR) table."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from railfeeds.models.feeds import TsrRecord
from railfeeds.services.feed_mapping import parse_timestamp
from railfeeds.services.rail_dto import (
    Direction,
    Restriction,
    RestrictionSummary,
    RestrictionType,
    RouteImpact,
    SectionEnd,
    ServiceImpact,
    Severity,
    utc_now,
)
from railfeeds.services.reference import LocationIndex

logger = logging.getLogger(__name__)

# Assumed unrestricted line speed; the delay figures derived from it are a
# heuristic and only their shape (bounded, monotonic in speed reduction) matters.
NORMAL_LINE_SPEED_MPH = 70
DELAY_MINUTES_PER_RESTRICTION = 5
MOST_IMPACTED_ROUTES = 5

TYPE_POINTS = {
    RestrictionType.EMERGENCY: 30,
    RestrictionType.TEMPORARY: 15,
    RestrictionType.PERMANENT: 10,
}


def restriction_severity(restriction_type: RestrictionType, speed_limit: int) -> Severity:
    if restriction_type is RestrictionType.EMERGENCY:
        return Severity.CRITICAL
    if speed_limit <= 20:
        return Severity.CRITICAL
    if speed_limit <= 40:
        return Severity.HIGH
    if speed_limit <= 60:
        return Severity.MEDIUM
    return Severity.LOW


def speed_reduction_fraction(speed_limit: int) -> float:
    reduction = max(0, NORMAL_LINE_SPEED_MPH - speed_limit)
    return min(reduction / NORMAL_LINE_SPEED_MPH, 1.0)


def impact_score(
    restriction_type: RestrictionType,
    speed_limit: int,
    valid_from: datetime,
    valid_to: datetime | None,
    direction: Direction,
) -> int:
    """Weighted 0-100 score: speed 40, type 30, duration 20, direction 10."""
    score = min(speed_reduction_fraction(speed_limit) * 40, 40)
    score += TYPE_POINTS[restriction_type]

    if valid_to is None:
        score += 20
    else:
        duration = valid_to - valid_from
        if duration > timedelta(days=30):
            score += 20
        elif duration > timedelta(days=7):
            score += 15
        elif duration > timedelta(days=1):
            score += 10
        else:
            score += 5

    score += 10 if direction is Direction.BOTH else 5
    return min(round(score), 100)


def estimated_delay_minutes(restrictions: Iterable[Restriction]) -> int:
    """Sum the per-restriction delay heuristic and round to whole minutes."""
    total = sum(
        speed_reduction_fraction(r.speed_limit) * DELAY_MINUTES_PER_RESTRICTION
        for r in restrictions
    )
    return round(total)


class RestrictionStore:
    """Keyed TSR table with lazy, read-time expiry.

    Entries whose validity window has not started yet are stored but only show
    up in reads once ``valid_from`` has passed.
    """

    def __init__(
        self,
        locations: LocationIndex | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._locations = locations
        self._clock = clock
        self._restrictions: dict[str, Restriction] = {}

    def _section_end(self, stanox: str, mileage: str | None) -> SectionEnd:
        location = self._locations.by_stanox(stanox) if self._locations else None
        return SectionEnd(
            stanox=stanox,
            mileage=mileage,
            crs=location.crs if location else None,
            name=location.name if location else None,
        )

    def build(self, record: TsrRecord) -> Restriction:
        """Derive severity and impact for a decoded record."""
        valid_from = parse_timestamp(record.valid_from)
        valid_to = parse_timestamp(record.valid_to)
        restriction_type = RestrictionType(record.tsr_type)
        direction = Direction(record.direction)
        return Restriction(
            restriction_id=record.tsr_id,
            route=record.route,
            reference=record.tsr_reference,
            section_from=self._section_end(record.from_stanox, record.from_mileage),
            section_to=self._section_end(record.to_stanox, record.to_mileage),
            direction=direction,
            speed_limit=record.speed_restriction,
            reason_code=record.reason_code,
            reason_text=record.reason_text,
            valid_from=valid_from,
            valid_to=valid_to,
            restriction_type=restriction_type,
            severity=restriction_severity(restriction_type, record.speed_restriction),
            impact_score=impact_score(
                restriction_type,
                record.speed_restriction,
                valid_from,
                valid_to,
                direction,
            ),
            comments=record.comments,
            received_at=self._clock(),
        )

    def upsert(self, record: TsrRecord) -> Restriction | None:
        """Store or remove one restriction. Returns the stored entry, if any."""
        restriction = self.build(record)
        now = self._clock()

        if record.cancelled or restriction.is_expired(now):
            if self._restrictions.pop(restriction.restriction_id, None) is not None:
                logger.info(
                    "TSR %s lifted on %s",
                    restriction.reference or restriction.restriction_id,
                    restriction.route,
                )
            return None

        self._restrictions[restriction.restriction_id] = restriction
        if restriction.severity in (Severity.CRITICAL, Severity.HIGH):
            logger.info(
                "%s TSR: %dmph limit on %s (%s)",
                restriction.severity.value,
                restriction.speed_limit,
                restriction.route,
                restriction.reason_text or restriction.reason_code or "no reason given",
            )
        return restriction

    def active(self) -> list[Restriction]:
        """Currently active restrictions, highest impact first."""
        now = self._clock()
        expired = [
            key for key, r in self._restrictions.items() if r.is_expired(now)
        ]
        for key in expired:
            del self._restrictions[key]

        active = [r for r in self._restrictions.values() if r.is_active(now)]
        active.sort(key=lambda r: r.impact_score, reverse=True)
        return active

    def active_for_location(self, stanox: str) -> list[Restriction]:
        return [r for r in self.active() if r.covers(stanox)]

    def active_for_route(self, route: str) -> list[Restriction]:
        needle = route.lower()
        return [r for r in self.active() if needle in r.route.lower()]

    def get(self, restriction_id: str) -> Restriction | None:
        restriction = self._restrictions.get(restriction_id)
        if restriction is None or not restriction.is_active(self._clock()):
            return None
        return restriction

    def summary(self) -> RestrictionSummary:
        active = self.active()
        by_type = {t.value: 0 for t in RestrictionType}
        by_severity = {s.value: 0 for s in Severity}
        route_counts: Counter[str] = Counter()
        route_reduction: Counter[str] = Counter()

        for restriction in active:
            by_type[restriction.restriction_type.value] += 1
            by_severity[restriction.severity.value] += 1
            route_counts[restriction.route] += 1
            route_reduction[restriction.route] += (
                NORMAL_LINE_SPEED_MPH - restriction.speed_limit
            )

        most_impacted = tuple(
            RouteImpact(
                route=route,
                restriction_count=count,
                average_speed_reduction=round(route_reduction[route] / count),
            )
            for route, count in route_counts.most_common(MOST_IMPACTED_ROUTES)
        )
        return RestrictionSummary(
            total_active=len(active),
            by_type=by_type,
            by_severity=by_severity,
            most_impacted=most_impacted,
            generated_at=self._clock(),
        )

    def service_impact(self, route: str) -> ServiceImpact:
        """Estimate whether a service on ``route`` is slowed by active TSRs."""
        relevant = self.active_for_route(route)
        return ServiceImpact(
            affected=bool(relevant),
            restrictions=tuple(relevant),
            estimated_delay_minutes=estimated_delay_minutes(relevant),
        )

    def major_disruptions(self) -> int:
        return sum(
            1 for r in self.active() if r.severity in (Severity.CRITICAL, Severity.HIGH)
        )

    def __len__(self) -> int:
        return len(self.active())
