"""HTTP client for the Darwin pub/sub bridge.

The bridge is a relay that keeps its own push subscription and exposes the most
recent events per station over HTTP. Every request is a bounded-timeout call;
no session is held between requests.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from urllib.parse import quote

import httpx

from railfeeds.core.config import Settings
from railfeeds.core.telemetry import add_traceparent_header
from railfeeds.models.rail import BoardQuery
from railfeeds.services.feed_mapping import map_bridge_departure
from railfeeds.services.rail_dto import ServiceDetail, StationBoard, utc_now
from railfeeds.services.rail_errors import (
    FeedConnectionError,
    FeedDecodeError,
    FeedTimeoutError,
    NotConfiguredError,
    ServiceNotFoundError,
    StationNotFoundError,
)
from railfeeds.services.reference import LocationIndex
from railfeeds.services.transport.base import (
    BoardTransport,
    raise_for_status,
    timed_request,
)

logger = logging.getLogger(__name__)

SOURCE = "darwin-bridge"


class BridgeClient(BoardTransport):
    """First facade strategy: recent station events from the pub/sub bridge."""

    name = "bridge"

    def __init__(
        self,
        settings: Settings,
        locations: LocationIndex | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._locations = locations
        self._client = client
        self._owns_client = client is None
        self._clock = clock

    @property
    def base_url(self) -> str:
        return (self._settings.darwin_broker_url or "").rstrip("/")

    def is_enabled(self) -> bool:
        return self._settings.bridge_configured

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._settings.darwin_broker_timeout_seconds,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch_board(self, query: BoardQuery) -> StationBoard:
        if not self.is_enabled():
            raise NotConfiguredError("DARWIN_BROKER_URL is not configured")

        url = f"{self.base_url}/station/{quote(query.crs)}/recent"
        response = await timed_request(
            "bridge_board",
            lambda: self._http().get(
                url,
                headers=add_traceparent_header({}),
                timeout=self._settings.darwin_broker_timeout_seconds,
            ),
        )
        raise_for_status("bridge", response)

        try:
            payload = response.json()
        except ValueError as exc:
            raise FeedDecodeError(f"Bridge returned invalid JSON: {exc}") from exc

        items = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(items, list) or not items:
            raise StationNotFoundError(f"Bridge has no recent events for {query.crs}")

        departures = []
        for item in items:
            if not isinstance(item, dict):
                continue
            departures.append(map_bridge_departure(item, query.crs, len(departures)))
            if len(departures) >= query.num_rows:
                break

        station = self._locations.by_crs(query.crs) if self._locations else None
        return StationBoard(
            crs=query.crs,
            location_name=station.name if station else query.crs,
            generated_at=self._clock(),
            departures=tuple(departures),
            source=SOURCE,
        )

    async def fetch_service_detail(self, service_id: str) -> ServiceDetail:
        if not self.is_enabled():
            raise NotConfiguredError("DARWIN_BROKER_URL is not configured")
        raise ServiceNotFoundError("The pub/sub bridge does not serve service details")

    async def test_connection(self) -> bool:
        if not self.is_enabled():
            return False
        try:
            response = await timed_request(
                "bridge_health",
                lambda: self._http().get(f"{self.base_url}/health"),
            )
        except (FeedConnectionError, FeedTimeoutError) as exc:
            logger.info("Bridge health check failed: %s", exc)
            return False
        return response.status_code < 400


__all__ = ["BridgeClient"]
