"""Darwin push port client: a persistent STOMP subscription feeding a board cache."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from railfeeds.core.config import Settings
from railfeeds.models.rail import BoardQuery, ServiceUpdate
from railfeeds.services.feed_mapping import decode_push_port
from railfeeds.services.feed_stats import FeedStats
from railfeeds.services.rail_dto import (
    CallingPoint,
    Departure,
    PushPortLocation,
    PushPortService,
    ServiceDetail,
    StationBoard,
    utc_now,
)
from railfeeds.services.rail_errors import (
    FeedConnectionError,
    FeedDecodeError,
    FeedTimeoutError,
    NotConfiguredError,
    ServiceNotFoundError,
    StationNotFoundError,
)
from railfeeds.services.reference import LocationIndex
from railfeeds.services.transport.base import BoardTransport
from railfeeds.services.transport.stomp_session import (
    ConnectionFactory,
    ReconnectPolicy,
    StompSession,
    Subscription,
    stomp_connection_factory,
)

logger = logging.getLogger(__name__)

FEED_PUSH_PORT = "push_port"
SOURCE = "darwin-push-port"
SERVICE_RETENTION = timedelta(hours=6)

UpdatePublisher = Callable[[ServiceUpdate], Awaitable[None]]


def _merge_location(old: PushPortLocation, new: PushPortLocation) -> PushPortLocation:
    changes = {
        field.name: getattr(new, field.name)
        for field in dataclasses.fields(new)
        if getattr(new, field.name) not in (None, "")
    }
    changes["cancelled"] = new.cancelled or old.cancelled
    return dataclasses.replace(old, **changes)


def merge_service(existing: PushPortService | None, update: PushPortService) -> PushPortService:
    """Merge an incremental TS update into the service state we already hold."""
    if existing is None:
        return update
    locations = list(existing.locations)
    positions = {loc.tiploc: index for index, loc in enumerate(locations)}
    for location in update.locations:
        index = positions.get(location.tiploc)
        if index is None:
            positions[location.tiploc] = len(locations)
            locations.append(location)
        else:
            locations[index] = _merge_location(locations[index], location)
    return PushPortService(
        rid=existing.rid,
        uid=update.uid or existing.uid,
        ssd=update.ssd or existing.ssd,
        locations=tuple(locations),
        operator=update.operator or existing.operator,
        late_reason=update.late_reason or existing.late_reason,
        received_at=update.received_at or existing.received_at,
    )


def _expected(location: PushPortLocation) -> str:
    if location.cancelled:
        return "Cancelled"
    actual_or_estimate = location.atd or location.etd
    if actual_or_estimate and actual_or_estimate != location.public_departure:
        return actual_or_estimate
    return "On time"


class PushPortClient(BoardTransport):
    """Second facade strategy; answers boards from services seen on the push port.

    The STOMP session starts lazily on the first board query (or explicitly via
    ``start``), so a board can only be served once messages have arrived.
    """

    name = "push_port"

    def __init__(
        self,
        settings: Settings,
        locations: LocationIndex,
        stats: FeedStats | None = None,
        publisher: UpdatePublisher | None = None,
        connection_factory: ConnectionFactory | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._locations = locations
        self._stats = stats
        self._publisher = publisher
        self._clock = clock
        self._services: dict[str, PushPortService] = {}
        self._pending: set[asyncio.Task] = set()
        self._session = StompSession(
            "darwin-push-port",
            username=settings.darwin_username,
            password=settings.darwin_password,
            subscriptions=[Subscription(destination=settings.darwin_topic, id="darwin")],
            on_message=self.handle_message,
            connection_factory=connection_factory
            or stomp_connection_factory(
                settings.darwin_stomp_host,
                settings.darwin_stomp_port,
                use_ssl=settings.darwin_stomp_ssl,
            ),
            policy=ReconnectPolicy(
                base_ms=settings.stomp_reconnect_base_ms,
                max_ms=settings.stomp_reconnect_max_ms,
                max_attempts=settings.stomp_reconnect_max_attempts,
            ),
            connect_timeout=settings.stomp_connect_timeout_seconds,
        )

    @property
    def session(self) -> StompSession:
        return self._session

    def set_publisher(self, publisher: UpdatePublisher | None) -> None:
        self._publisher = publisher

    def is_enabled(self) -> bool:
        return self._settings.push_port_configured

    async def start(self) -> None:
        if not self.is_enabled():
            logger.info("Darwin push port not configured; skipping STOMP session")
            return
        await self._session.start()

    async def stop(self) -> None:
        await self._session.stop()
        pending, self._pending = self._pending, set()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        await self.stop()

    async def test_connection(self) -> bool:
        if not self.is_enabled():
            return False
        if self._session.connected:
            return True
        try:
            await self._session.connect()
        except (NotConfiguredError, FeedConnectionError, FeedTimeoutError) as exc:
            logger.info("Push port connection test failed: %s", exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def handle_message(self, destination: str, body: bytes) -> None:
        try:
            updates = decode_push_port(body, received_at=self._clock())
        except FeedDecodeError as exc:
            logger.warning("Dropping malformed push port message: %s", exc)
            if self._stats:
                self._stats.record(FEED_PUSH_PORT, "decode_error")
            return

        if not updates:
            if self._stats:
                self._stats.record(FEED_PUSH_PORT, "ignored")
            return

        for update in updates:
            self.ingest(update)
        if self._stats:
            self._stats.record(FEED_PUSH_PORT, "processed")

    def ingest(self, update: PushPortService) -> PushPortService:
        merged = merge_service(self._services.get(update.rid), update)
        self._services[update.rid] = merged
        service_update = self._service_update(merged, update)
        if service_update is not None and self._publisher is not None:
            task = asyncio.get_running_loop().create_task(self._publish(service_update))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return merged

    async def _publish(self, update: ServiceUpdate) -> None:
        try:
            await self._publisher(update)
        except Exception:
            logger.exception("Failed to publish push port update for %s", update.service_id)

    def _service_update(
        self, service: PushPortService, update: PushPortService
    ) -> ServiceUpdate | None:
        """Describe the first location in ``update`` that carries live data."""
        for location in update.locations:
            if not (
                location.platform
                or location.etd
                or location.atd
                or location.cancelled
            ):
                continue
            known = next(
                (loc for loc in service.locations if loc.tiploc == location.tiploc),
                location,
            )
            fields = {
                "service_id": service.rid,
                "rid": service.rid,
                "tiploc": known.tiploc,
                "crs": self._locations.crs_for_tiploc(known.tiploc),
                "source": SOURCE,
                "last_updated": service.received_at or self._clock(),
            }
            if service.uid:
                fields["uid"] = service.uid
            if known.public_departure:
                fields["scheduled"] = known.public_departure
            if known.etd:
                fields["estimated"] = known.etd
            if known.atd:
                fields["actual"] = known.atd
            if known.platform:
                fields["platform"] = known.platform
            if location.cancelled:
                fields["cancelled"] = True
            if service.late_reason:
                fields["delay_reason"] = service.late_reason
            return ServiceUpdate(**fields)
        return None

    def prune(self) -> int:
        cutoff = self._clock() - SERVICE_RETENTION
        stale = [
            rid
            for rid, service in self._services.items()
            if service.received_at is not None and service.received_at < cutoff
        ]
        for rid in stale:
            del self._services[rid]
        return len(stale)

    def __len__(self) -> int:
        return len(self._services)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _name(self, tiploc: str) -> str:
        location = self._locations.by_tiploc(tiploc)
        return location.name if location else tiploc

    def _calls_at(
        self, service: PushPortService, index: int, tiplocs: tuple[str, ...], after: bool
    ) -> bool:
        locations = service.locations[index + 1 :] if after else service.locations[:index]
        return any(loc.tiploc in tiplocs for loc in locations)

    async def fetch_board(self, query: BoardQuery) -> StationBoard:
        if not self.is_enabled():
            raise NotConfiguredError("Darwin push port credentials are not configured")
        await self._session.start()

        tiplocs = self._locations.tiplocs_for_crs(query.crs)
        if not tiplocs:
            raise StationNotFoundError(f"No timing points known for {query.crs}")
        filter_tiplocs = (
            self._locations.tiplocs_for_crs(query.filter_crs) if query.filter_crs else ()
        )

        rows: list[tuple[str, Departure]] = []
        for service in self._services.values():
            for index, location in enumerate(service.locations):
                if location.tiploc not in tiplocs or not location.public_departure:
                    continue
                if filter_tiplocs and not self._calls_at(
                    service, index, filter_tiplocs, after=query.filter_type != "from"
                ):
                    break
                destination = service.locations[-1]
                rows.append(
                    (
                        location.public_departure,
                        Departure(
                            service_id=service.rid,
                            scheduled=location.public_departure,
                            expected=_expected(location),
                            destination=self._name(destination.tiploc),
                            destination_crs=self._locations.crs_for_tiploc(
                                destination.tiploc
                            ),
                            operator=service.operator,
                            platform=location.platform,
                            origin=self._name(service.locations[0].tiploc),
                            cancelled=location.cancelled,
                            delay_reason=service.late_reason,
                        ),
                    )
                )
                break

        if not rows:
            raise StationNotFoundError(f"No push port services seen for {query.crs}")

        rows.sort(key=lambda row: row[0])
        station = self._locations.by_crs(query.crs)
        return StationBoard(
            crs=query.crs,
            location_name=station.name if station else query.crs,
            generated_at=self._clock(),
            departures=tuple(dep for _, dep in rows[: query.num_rows]),
            source=SOURCE,
        )

    async def fetch_service_detail(self, service_id: str) -> ServiceDetail:
        if not self.is_enabled():
            raise NotConfiguredError("Darwin push port credentials are not configured")
        service = self._services.get(service_id)
        if service is None:
            raise ServiceNotFoundError(f"Service {service_id} not seen on the push port")

        def calling_point(location: PushPortLocation) -> CallingPoint:
            return CallingPoint(
                name=self._name(location.tiploc),
                crs=self._locations.crs_for_tiploc(location.tiploc),
                scheduled=location.public_departure or location.pta or location.wta,
                estimated=location.etd or location.eta,
                actual=location.atd or location.ata,
                cancelled=location.cancelled,
            )

        points = tuple(calling_point(loc) for loc in service.locations)
        first, last = (service.locations[0], service.locations[-1]) if points else (None, None)
        return ServiceDetail(
            service_id=service.rid,
            source=SOURCE,
            operator=service.operator,
            origin=(self._name(first.tiploc),) if first else (),
            destination=(self._name(last.tiploc),) if last else (),
            previous_calling_points=(),
            subsequent_calling_points=points,
            delay_reason=service.late_reason,
        )


__all__ = ["PushPortClient", "merge_service", "FEED_PUSH_PORT"]
