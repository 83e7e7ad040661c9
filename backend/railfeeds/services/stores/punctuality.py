"""RTPPM punctuality store: grades, trends, rankings and insights."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta

from railfeeds.models.feeds import RtppmMetrics, RtppmOperator, RtppmSnapshot
from railfeeds.services.feed_mapping import parse_timestamp
from railfeeds.services.rail_dto import (
    ChangeTrend,
    Grade,
    InsightSeverity,
    InsightType,
    OperatorPerformance,
    PerformanceInsight,
    PerformanceSummary,
    PunctualityReport,
    RoutePerformance,
    SegmentPerformance,
    StationPerformance,
    Trend,
    TrendSeries,
    utc_now,
)
from railfeeds.services.rail_errors import FeedDecodeError

logger = logging.getLogger(__name__)

MAX_PERIODS = 30
TREND_DEAD_BAND = 1.0
NATIONAL_ALERT_THRESHOLD = 80.0
OPERATOR_WARNING_THRESHOLD = 70.0
OPERATOR_ACHIEVEMENT_DELTA = 5.0


def grade_for(percentage: float) -> Grade:
    if percentage >= 95:
        return Grade.EXCELLENT
    if percentage >= 90:
        return Grade.GOOD
    if percentage >= 80:
        return Grade.FAIR
    return Grade.POOR


def trend_for(current: float, moving_average: float) -> Trend:
    diff = current - moving_average
    if abs(diff) <= TREND_DEAD_BAND:
        return Trend.STABLE
    return Trend.IMPROVING if diff > 0 else Trend.DECLINING


def change_trend(delta: float) -> ChangeTrend:
    if delta > TREND_DEAD_BAND:
        return ChangeTrend.UP
    if delta < -TREND_DEAD_BAND:
        return ChangeTrend.DOWN
    return ChangeTrend.STABLE


def summarize(metrics: RtppmMetrics) -> PerformanceSummary:
    return PerformanceSummary(
        on_time_percentage=metrics.pp_percentage,
        total_services=metrics.total_services,
        on_time=metrics.on_time,
        late=metrics.late,
        very_late=metrics.very_late,
        cancelled=metrics.cancelled,
        grade=grade_for(metrics.pp_percentage),
    )


def generate_insights(
    national: PerformanceSummary, operators: tuple[OperatorPerformance, ...]
) -> tuple[PerformanceInsight, ...]:
    """Rule-based insights, derived afresh from one report."""
    insights: list[PerformanceInsight] = []

    if national.on_time_percentage < NATIONAL_ALERT_THRESHOLD:
        insights.append(
            PerformanceInsight(
                type=InsightType.ALERT,
                severity=InsightSeverity.CRITICAL,
                title="Poor National Performance",
                description=(
                    f"National on-time performance is {national.on_time_percentage:.1f}%, "
                    f"below the {NATIONAL_ALERT_THRESHOLD:.0f}% target."
                ),
                recommendation=(
                    "Monitor individual operator and route performance for root causes."
                ),
            )
        )

    for operator in operators:
        percentage = operator.performance.on_time_percentage
        if percentage < OPERATOR_WARNING_THRESHOLD:
            insights.append(
                PerformanceInsight(
                    type=InsightType.ALERT,
                    severity=InsightSeverity.WARNING,
                    title=f"Poor Performance: {operator.operator_name}",
                    description=(
                        f"{operator.operator_name} ({operator.operator_code}) "
                        f"performance is {percentage:.1f}%"
                    ),
                    affected_operators=(operator.operator_code,),
                    recommendation=(
                        "Review operator-specific disruptions and capacity issues."
                    ),
                )
            )
        if (
            operator.trend is ChangeTrend.UP
            and operator.vs_yesterday > OPERATOR_ACHIEVEMENT_DELTA
        ):
            insights.append(
                PerformanceInsight(
                    type=InsightType.ACHIEVEMENT,
                    severity=InsightSeverity.INFO,
                    title=f"Improved Performance: {operator.operator_name}",
                    description=(
                        f"{operator.operator_name} performance improved by "
                        f"{operator.vs_yesterday:.1f} points vs yesterday"
                    ),
                    affected_operators=(operator.operator_code,),
                )
            )

    return tuple(insights)


def _period_date(period: str) -> date | None:
    try:
        return date.fromisoformat(period[:10])
    except ValueError:
        return None


class PunctualityStore:
    """Holds the latest RTPPM report plus a bounded per-period history."""

    def __init__(
        self,
        max_periods: int = MAX_PERIODS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._max_periods = max_periods
        self._clock = clock
        self._current: PunctualityReport | None = None
        self._history: dict[tuple[str, str], PunctualityReport] = {}

    @property
    def current(self) -> PunctualityReport | None:
        return self._current

    def _prior_percentage(
        self, period: str, sector: str, operator_code: str, days: int
    ) -> float | None:
        period_date = _period_date(period)
        if period_date is None:
            return None
        prior_key = ((period_date - timedelta(days=days)).isoformat(), sector)
        prior = self._history.get(prior_key)
        if prior is None:
            return None
        for operator in prior.operators:
            if operator.operator_code == operator_code:
                return operator.performance.on_time_percentage
        return None

    def _operator(
        self, raw: RtppmOperator, rank: int, period: str, sector: str
    ) -> OperatorPerformance:
        current = raw.performance.pp_percentage
        previous = raw.previous_periods

        yesterday = previous.yesterday.pp_percentage if previous and previous.yesterday else None
        if yesterday is None:
            yesterday = self._prior_percentage(period, sector, raw.operator_code, 1)
        last_week = previous.last_week.pp_percentage if previous and previous.last_week else None
        if last_week is None:
            last_week = self._prior_percentage(period, sector, raw.operator_code, 7)

        vs_yesterday = current - yesterday if yesterday is not None else 0.0
        vs_last_week = current - last_week if last_week is not None else 0.0
        return OperatorPerformance(
            operator_code=raw.operator_code,
            operator_name=raw.operator_name or raw.operator_code,
            performance=summarize(raw.performance),
            rank=rank,
            vs_yesterday=round(vs_yesterday, 2),
            vs_last_week=round(vs_last_week, 2),
            trend=change_trend(vs_yesterday),
        )

    def build_report(self, snapshot: RtppmSnapshot) -> PunctualityReport:
        period = snapshot.time_period
        sector = snapshot.sector_code
        try:
            timestamp = parse_timestamp(snapshot.timestamp) or self._clock()
        except FeedDecodeError:
            timestamp = self._clock()

        national = summarize(snapshot.national)
        moving_average = snapshot.national.ma_pp_percentage
        operators = tuple(
            self._operator(raw, rank, period, sector)
            for rank, raw in enumerate(snapshot.operator_page, start=1)
        )
        routes = tuple(
            RoutePerformance(
                route_code=route.route_code,
                route_name=route.route_name or route.route_code,
                operator_code=route.operator_code,
                performance=summarize(route.performance),
                major_stations=tuple(
                    SegmentPerformance(
                        origin=segment.origin,
                        destination=segment.destination,
                        performance=summarize(segment.performance),
                    )
                    for segment in route.major_stations
                ),
            )
            for route in snapshot.route_page
        )
        stations = tuple(
            StationPerformance(
                station_code=station.station_code.upper(),
                station_name=station.station_name or station.station_code,
                arrivals=summarize(station.arrivals),
                departures=summarize(station.departures),
                overall_grade=grade_for(
                    (station.arrivals.pp_percentage + station.departures.pp_percentage) / 2
                ),
            )
            for station in snapshot.station_page
        )

        return PunctualityReport(
            timestamp=timestamp,
            period=period,
            sector_code=sector,
            sector_description=snapshot.sector_desc,
            national=national,
            national_moving_average=moving_average,
            national_trend=trend_for(national.on_time_percentage, moving_average),
            operators=operators,
            routes=routes,
            stations=stations,
            insights=generate_insights(national, operators),
        )

    def ingest(self, snapshot: RtppmSnapshot) -> PunctualityReport:
        """Derive a report from ``snapshot`` and make it current."""
        report = self.build_report(snapshot)

        history = dict(self._history)
        history[(report.period, report.sector_code)] = report
        periods = sorted({period for period, _ in history})
        if len(periods) > self._max_periods:
            keep = set(periods[-self._max_periods :])
            history = {key: value for key, value in history.items() if key[0] in keep}

        self._history = history
        self._current = report

        for insight in report.insights:
            if insight.severity is InsightSeverity.CRITICAL:
                logger.warning("RTPPM alert: %s - %s", insight.title, insight.description)
        logger.info(
            "National performance %.1f%% (%s)",
            report.national.on_time_percentage,
            report.national.grade.value,
        )
        return report

    def national(self) -> PerformanceSummary | None:
        return self._current.national if self._current else None

    def operator(self, operator_code: str) -> OperatorPerformance | None:
        if not self._current:
            return None
        code = operator_code.upper()
        return next(
            (op for op in self._current.operators if op.operator_code.upper() == code),
            None,
        )

    def route(self, route_code: str) -> RoutePerformance | None:
        if not self._current:
            return None
        return next(
            (r for r in self._current.routes if r.route_code == route_code), None
        )

    def station(self, station_code: str) -> StationPerformance | None:
        if not self._current:
            return None
        code = station_code.upper()
        return next((s for s in self._current.stations if s.station_code == code), None)

    def top_performers(self, limit: int = 10) -> list[OperatorPerformance]:
        if not self._current:
            return []
        ranked = sorted(
            self._current.operators,
            key=lambda op: op.performance.on_time_percentage,
            reverse=True,
        )
        return ranked[:limit]

    def worst_performers(self, limit: int = 10) -> list[OperatorPerformance]:
        if not self._current:
            return []
        ranked = sorted(
            self._current.operators, key=lambda op: op.performance.on_time_percentage
        )
        return ranked[:limit]

    def insights(self) -> tuple[PerformanceInsight, ...]:
        return self._current.insights if self._current else ()

    def trend(self, periods: int = 7, sector: str | None = None) -> TrendSeries:
        """National and per-operator percentages for the last ``periods`` periods."""
        if sector is None:
            sector = self._current.sector_code if self._current else None
        reports = sorted(
            (r for (_, s), r in self._history.items() if sector is None or s == sector),
            key=lambda r: r.period,
        )
        if periods > 0:
            reports = reports[-periods:]
        else:
            reports = []

        operators: dict[str, list[float]] = {}
        for report in reports:
            for op in report.operators:
                operators.setdefault(op.operator_code, []).append(
                    op.performance.on_time_percentage
                )
        return TrendSeries(
            periods=tuple(r.period for r in reports),
            national=tuple(r.national.on_time_percentage for r in reports),
            operators={code: tuple(values) for code, values in operators.items()},
        )

    def period_count(self) -> int:
        return len({period for period, _ in self._history})
