"""Data transfer objects shared by the feed engine.

Every record handed between transports, stores and the aggregator is a frozen
dataclass; stores replace records instead of mutating them so a reader never
observes a half-applied update.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EventType(str, Enum):
    ARRIVAL = "ARRIVAL"
    DEPARTURE = "DEPARTURE"


class Confidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ScheduleAccuracy(str, Enum):
    CONFIRMED = "CONFIRMED"
    ESTIMATED = "ESTIMATED"
    UNKNOWN = "UNKNOWN"


class Direction(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    BOTH = "BOTH"


class RestrictionType(str, Enum):
    EMERGENCY = "EMERGENCY"
    TEMPORARY = "TEMPORARY"
    PERMANENT = "PERMANENT"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Grade(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"


class Trend(str, Enum):
    IMPROVING = "IMPROVING"
    STABLE = "STABLE"
    DECLINING = "DECLINING"


class ChangeTrend(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    STABLE = "STABLE"


class NetworkHealth(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    DEGRADED = "DEGRADED"
    POOR = "POOR"


class InsightType(str, Enum):
    ALERT = "ALERT"
    TREND = "TREND"
    COMPARISON = "COMPARISON"
    ACHIEVEMENT = "ACHIEVEMENT"


class InsightSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


# =============================================================================
# Reference data
# =============================================================================


@dataclass(frozen=True)
class Location:
    """A row of the location code table (STANOX / CRS / TIPLOC)."""

    name: str
    stanox: str | None = None
    crs: str | None = None
    tiploc: str | None = None


# =============================================================================
# Train movements, describer steps and schedules
# =============================================================================


@dataclass(frozen=True)
class MovementEvent:
    """A single TRUST arrival or departure report."""

    train_id: str
    event_type: EventType
    stanox: str
    actual_time: datetime
    planned_time: datetime | None = None
    variation_minutes: int = 0
    platform: str | None = None
    toc_id: str | None = None

    @property
    def key(self) -> tuple[str, str, datetime]:
        """Identity used for idempotent upserts into a train's history."""
        return (self.event_type.value, self.stanox, self.planned_time or self.actual_time)


@dataclass(frozen=True)
class TrainActivation:
    """TRUST activation linking a running train id to its schedule UID."""

    train_id: str
    train_uid: str
    toc_id: str | None = None


@dataclass(frozen=True)
class BerthStep:
    """A train describer berth message (step, cancel or interpose)."""

    area: str
    msg_type: str
    description: str
    to_berth: str | None
    from_berth: str | None = None
    time: datetime | None = None


@dataclass(frozen=True)
class ScheduleStop:
    tiploc: str
    arrival: str | None = None
    departure: str | None = None
    platform: str | None = None
    crs: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class TrainSchedule:
    """A (VSTP or long-term) schedule for one train UID."""

    uid: str
    headcode: str | None
    operator: str | None
    start_date: str | None
    end_date: str | None
    stops: tuple[ScheduleStop, ...] = ()
    source: str = "VSTP"


@dataclass(frozen=True)
class ScheduleChange:
    """A schedule create/update/delete as received from a feed."""

    transaction: str
    schedule: TrainSchedule


@dataclass(frozen=True)
class ScheduleSummary:
    origin: ScheduleStop | None
    destination: ScheduleStop | None
    stops: tuple[ScheduleStop, ...]


# =============================================================================
# Speed restrictions
# =============================================================================


@dataclass(frozen=True)
class SectionEnd:
    stanox: str
    mileage: str | None = None
    crs: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class Restriction:
    """An ingested temporary speed restriction with derived severity and impact."""

    restriction_id: str
    route: str
    reference: str | None
    section_from: SectionEnd
    section_to: SectionEnd
    direction: Direction
    speed_limit: int
    reason_code: str | None
    reason_text: str | None
    valid_from: datetime
    valid_to: datetime | None
    restriction_type: RestrictionType
    severity: Severity
    impact_score: int
    comments: str | None = None
    received_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        if self.valid_from > now:
            return False
        return self.valid_to is None or now < self.valid_to

    def is_expired(self, now: datetime) -> bool:
        return self.valid_to is not None and self.valid_to <= now

    def covers(self, stanox: str) -> bool:
        return stanox in (self.section_from.stanox, self.section_to.stanox)


@dataclass(frozen=True)
class RouteImpact:
    route: str
    restriction_count: int
    average_speed_reduction: int


@dataclass(frozen=True)
class RestrictionSummary:
    total_active: int
    by_type: dict[str, int]
    by_severity: dict[str, int]
    most_impacted: tuple[RouteImpact, ...]
    generated_at: datetime


@dataclass(frozen=True)
class ServiceImpact:
    affected: bool
    restrictions: tuple[Restriction, ...]
    estimated_delay_minutes: int


# =============================================================================
# Punctuality (RTPPM)
# =============================================================================


@dataclass(frozen=True)
class PerformanceSummary:
    on_time_percentage: float
    total_services: int
    on_time: int
    late: int
    very_late: int
    cancelled: int
    grade: Grade


@dataclass(frozen=True)
class OperatorPerformance:
    operator_code: str
    operator_name: str
    performance: PerformanceSummary
    rank: int
    vs_yesterday: float
    vs_last_week: float
    trend: ChangeTrend


@dataclass(frozen=True)
class SegmentPerformance:
    origin: str
    destination: str
    performance: PerformanceSummary


@dataclass(frozen=True)
class RoutePerformance:
    route_code: str
    route_name: str
    operator_code: str | None
    performance: PerformanceSummary
    major_stations: tuple[SegmentPerformance, ...] = ()


@dataclass(frozen=True)
class StationPerformance:
    station_code: str
    station_name: str
    arrivals: PerformanceSummary
    departures: PerformanceSummary
    overall_grade: Grade


@dataclass(frozen=True)
class PerformanceInsight:
    type: InsightType
    severity: InsightSeverity
    title: str
    description: str
    affected_operators: tuple[str, ...] = ()
    recommendation: str | None = None


@dataclass(frozen=True)
class PunctualityReport:
    """Everything derived from one RTPPM snapshot."""

    timestamp: datetime
    period: str
    sector_code: str
    sector_description: str
    national: PerformanceSummary
    national_moving_average: float
    national_trend: Trend
    operators: tuple[OperatorPerformance, ...]
    routes: tuple[RoutePerformance, ...]
    stations: tuple[StationPerformance, ...]
    insights: tuple[PerformanceInsight, ...]


@dataclass(frozen=True)
class TrendSeries:
    periods: tuple[str, ...]
    national: tuple[float, ...]
    operators: dict[str, tuple[float, ...]]


# =============================================================================
# Berth graph (SMART)
# =============================================================================


def berth_key(area: str | None, berth: str) -> str:
    """Return the graph node id for a berth; berth ids are only unique per TD area."""
    berth = berth.strip().upper()
    area = (area or "").strip().upper()
    return f"{area}:{berth}" if area else berth


@dataclass(frozen=True)
class BerthEdge:
    """One SMART row: a step from one berth to the next."""

    area: str
    from_berth: str
    to_berth: str
    from_stanox: str | None = None
    to_stanox: str | None = None
    from_line: str | None = None
    to_line: str | None = None
    platform: str | None = None
    event: str | None = None
    step_type: str | None = None
    description: str | None = None

    @property
    def from_key(self) -> str:
        return berth_key(self.area, self.from_berth)

    @property
    def to_key(self) -> str:
        return berth_key(self.area, self.to_berth)


@dataclass(frozen=True)
class BerthNode:
    berth: str
    area: str
    stanox: str | None
    line: str | None
    platform: str | None
    description: str
    next_berths: tuple[str, ...] = ()
    previous_berths: tuple[str, ...] = ()


# =============================================================================
# Aggregated train record
# =============================================================================


@dataclass(frozen=True)
class Position:
    stanox: str
    timestamp: datetime
    confidence: Confidence
    crs: str | None = None
    name: str | None = None
    berth: str | None = None
    platform: str | None = None


@dataclass(frozen=True)
class DataQuality:
    movements_fresh: bool
    position_confidence: Confidence
    schedule_accuracy: ScheduleAccuracy
    last_update: datetime


@dataclass(frozen=True)
class TrainPerformance:
    operator_code: str
    on_time_percentage: float
    rank: int
    trend: ChangeTrend


@dataclass(frozen=True)
class TrainRecord:
    """One composite record per live train identifier."""

    train_id: str
    data_quality: DataQuality
    headcode: str | None = None
    uid: str | None = None
    toc_id: str | None = None
    current_position: Position | None = None
    movements: tuple[MovementEvent, ...] = ()
    performance: TrainPerformance | None = None
    affecting_restrictions: tuple[Restriction, ...] = ()
    estimated_restriction_delay: int = 0
    schedule: ScheduleSummary | None = None


@dataclass(frozen=True)
class FeedHealth:
    name: str
    active: bool
    message_rate: int
    total_messages: int
    last_message: datetime | None = None


@dataclass(frozen=True)
class NetworkStatus:
    overall: NetworkHealth
    feeds: tuple[FeedHealth, ...]
    national_on_time: float | None
    active_restrictions: int
    major_disruptions: int
    total_schedules: int
    berth_count: int
    tracked_trains: int
    generated_at: datetime


# =============================================================================
# Departure boards and service details
# =============================================================================


@dataclass(frozen=True)
class BoardMessage:
    severity: str
    text: str
    category: str = "STATION_MESSAGE"


@dataclass(frozen=True)
class Departure:
    service_id: str
    scheduled: str
    expected: str
    destination: str
    destination_crs: str | None = None
    operator: str | None = None
    operator_code: str | None = None
    platform: str | None = None
    origin: str | None = None
    cancelled: bool = False
    cancel_reason: str | None = None
    delay_reason: str | None = None


@dataclass(frozen=True)
class StationBoard:
    """Cache-only departure board snapshot; never persisted."""

    crs: str
    location_name: str
    generated_at: datetime
    departures: tuple[Departure, ...]
    source: str
    messages: tuple[BoardMessage, ...] = ()


@dataclass(frozen=True)
class CallingPoint:
    name: str
    crs: str | None = None
    scheduled: str | None = None
    estimated: str | None = None
    actual: str | None = None
    cancelled: bool = False


@dataclass(frozen=True)
class ServiceDetail:
    service_id: str
    source: str
    operator: str | None = None
    operator_code: str | None = None
    platform: str | None = None
    origin: tuple[str, ...] = ()
    destination: tuple[str, ...] = ()
    previous_calling_points: tuple[CallingPoint, ...] = ()
    subsequent_calling_points: tuple[CallingPoint, ...] = ()
    delay_reason: str | None = None
    cancel_reason: str | None = None


# =============================================================================
# Darwin push port
# =============================================================================


@dataclass(frozen=True)
class PushPortLocation:
    tiploc: str
    pta: str | None = None
    ptd: str | None = None
    wta: str | None = None
    wtd: str | None = None
    eta: str | None = None
    etd: str | None = None
    ata: str | None = None
    atd: str | None = None
    platform: str | None = None
    cancelled: bool = False

    @property
    def public_departure(self) -> str | None:
        return self.ptd or self.wtd


@dataclass(frozen=True)
class PushPortService:
    rid: str
    uid: str | None
    ssd: str | None
    locations: tuple[PushPortLocation, ...] = ()
    operator: str | None = None
    late_reason: str | None = None
    received_at: datetime | None = field(default=None, compare=False)


__all__ = [
    "utc_now",
    "EventType",
    "Confidence",
    "ScheduleAccuracy",
    "Direction",
    "RestrictionType",
    "Severity",
    "Grade",
    "Trend",
    "ChangeTrend",
    "NetworkHealth",
    "InsightType",
    "InsightSeverity",
    "Location",
    "MovementEvent",
    "TrainActivation",
    "BerthStep",
    "ScheduleStop",
    "TrainSchedule",
    "ScheduleChange",
    "ScheduleSummary",
    "SectionEnd",
    "Restriction",
    "RouteImpact",
    "RestrictionSummary",
    "ServiceImpact",
    "PerformanceSummary",
    "OperatorPerformance",
    "SegmentPerformance",
    "RoutePerformance",
    "StationPerformance",
    "PerformanceInsight",
    "PunctualityReport",
    "TrendSeries",
    "berth_key",
    "BerthEdge",
    "BerthNode",
    "Position",
    "DataQuality",
    "TrainPerformance",
    "TrainRecord",
    "FeedHealth",
    "NetworkStatus",
    "BoardMessage",
    "Departure",
    "StationBoard",
    "CallingPoint",
    "ServiceDetail",
    "PushPortLocation",
    "PushPortService",
]
