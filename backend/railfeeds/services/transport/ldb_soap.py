"""OpenLDBWS (Live Departure Boards) SOAP client.

Last strategy in the board fallback chain. Each call is a single POST with the
access token in the SOAP header; responses are parsed namespace-agnostically
because the service mixes several ``lt*`` schema namespaces in one document.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from collections.abc import Callable
from datetime import datetime
from xml.sax.saxutils import escape

import httpx

from railfeeds.core.config import Settings
from railfeeds.core.telemetry import add_traceparent_header
from railfeeds.models.rail import BoardQuery
from railfeeds.services.feed_mapping import parse_timestamp
from railfeeds.services.rail_dto import (
    BoardMessage,
    CallingPoint,
    Departure,
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
from railfeeds.services.transport.base import (
    BoardTransport,
    raise_for_status,
    timed_request,
)

logger = logging.getLogger(__name__)

SOURCE = "darwin-ldb"
LDB_NAMESPACE = "http://thalesgroup.com/RTTI/2017-10-01/ldb/"
TOKEN_NAMESPACE = "http://thalesgroup.com/RTTI/2013-11-28/Token/types"
SOAP_NAMESPACE = "http://schemas.xmlsoap.org/soap/envelope/"

ENVELOPE_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<soap:Envelope xmlns:soap="{soap}" xmlns:typ="{token}" xmlns:ldb="{ldb}">
  <soap:Header>
    <typ:AccessToken><typ:TokenValue>{token_value}</typ:TokenValue></typ:AccessToken>
  </soap:Header>
  <soap:Body>
    <ldb:{operation}Request>{fields}</ldb:{operation}Request>
  </soap:Body>
</soap:Envelope>"""


def build_envelope(token: str, operation: str, fields: dict[str, object]) -> str:
    """Render a request envelope; ``None`` fields are omitted."""
    body = "".join(
        f"<ldb:{name}>{escape(str(value))}</ldb:{name}>"
        for name, value in fields.items()
        if value is not None
    )
    return ENVELOPE_TEMPLATE.format(
        soap=SOAP_NAMESPACE,
        token=TOKEN_NAMESPACE,
        ldb=LDB_NAMESPACE,
        token_value=escape(token),
        operation=operation,
        fields=body,
    )


def board_request_fields(query: BoardQuery) -> dict[str, object]:
    return {
        "numRows": query.num_rows,
        "crs": query.crs,
        "filterCrs": query.filter_crs,
        "filterType": query.filter_type if query.filter_crs else None,
        "timeOffset": query.time_offset,
        "timeWindow": query.time_window,
    }


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child(element: ET.Element | None, name: str) -> ET.Element | None:
    if element is None:
        return None
    for child in element:
        if _local(child.tag) == name:
            return child
    return None


def _children(element: ET.Element | None, name: str) -> list[ET.Element]:
    if element is None:
        return []
    return [child for child in element if _local(child.tag) == name]


def _find(element: ET.Element, name: str) -> ET.Element | None:
    for node in element.iter():
        if _local(node.tag) == name:
            return node
    return None


def _text(element: ET.Element | None, name: str) -> str | None:
    node = _child(element, name)
    if node is None or node.text is None:
        return None
    return node.text.strip() or None


def _flag(element: ET.Element | None, name: str) -> bool:
    return (_text(element, name) or "").lower() == "true"


def _location_names(element: ET.Element | None) -> list[tuple[str, str | None]]:
    return [
        (_text(loc, "locationName") or "", _text(loc, "crs"))
        for loc in _children(element, "location")
    ]


def parse_soap_document(payload: bytes | str) -> ET.Element:
    """Return the SOAP body, raising on faults and malformed XML."""
    try:
        root = ET.fromstring(payload)
    except ET.ParseError as exc:
        raise FeedDecodeError(f"Invalid SOAP response: {exc}") from exc

    body = _find(root, "Body")
    if body is None:
        raise FeedDecodeError("SOAP response has no Body element")

    fault = _child(body, "Fault")
    if fault is not None:
        message = _text(fault, "faultstring") or "Unknown SOAP fault"
        raise FeedConnectionError(f"LDB SOAP fault: {message}")
    return body


def _departure(service: ET.Element) -> Departure:
    origins = _location_names(_child(service, "origin"))
    destinations = _location_names(_child(service, "destination"))
    destination, destination_crs = (
        destinations[-1] if destinations else ("Unknown destination", None)
    )
    cancelled = _flag(service, "isCancelled")
    return Departure(
        service_id=_text(service, "serviceID") or "",
        scheduled=_text(service, "std") or "",
        expected=_text(service, "etd") or ("Cancelled" if cancelled else "On time"),
        destination=destination,
        destination_crs=destination_crs,
        operator=_text(service, "operator"),
        operator_code=_text(service, "operatorCode"),
        platform=_text(service, "platform"),
        origin=origins[0][0] if origins else None,
        cancelled=cancelled,
        cancel_reason=_text(service, "cancelReason"),
        delay_reason=_text(service, "delayReason"),
    )


def _generated_at(value: str | None, fallback: datetime) -> datetime:
    try:
        return parse_timestamp(value) or fallback
    except FeedDecodeError:
        return fallback


def parse_station_board(
    payload: bytes | str, crs: str, fallback_time: datetime
) -> StationBoard:
    body = parse_soap_document(payload)
    result = _find(body, "GetStationBoardResult")
    if result is None:
        raise StationNotFoundError(f"LDB returned no board for {crs}")

    departures = tuple(
        _departure(service)
        for service in _children(_child(result, "trainServices"), "service")
    )
    messages = tuple(
        BoardMessage(severity="INFO", text=" ".join("".join(message.itertext()).split()))
        for message in _children(_child(result, "nrccMessages"), "message")
    )
    return StationBoard(
        crs=_text(result, "crs") or crs,
        location_name=_text(result, "locationName") or crs,
        generated_at=_generated_at(_text(result, "generatedAt"), fallback_time),
        departures=departures,
        source=SOURCE,
        messages=messages,
    )


def _calling_points(element: ET.Element | None) -> tuple[CallingPoint, ...]:
    points: list[CallingPoint] = []
    for point_list in _children(element, "callingPointList"):
        for point in _children(point_list, "callingPoint"):
            points.append(
                CallingPoint(
                    name=_text(point, "locationName") or "",
                    crs=_text(point, "crs"),
                    scheduled=_text(point, "st"),
                    estimated=_text(point, "et"),
                    actual=_text(point, "at"),
                    cancelled=_flag(point, "isCancelled"),
                )
            )
    return tuple(points)


def parse_service_details(payload: bytes | str, service_id: str) -> ServiceDetail:
    body = parse_soap_document(payload)
    result = _find(body, "GetServiceDetailsResult")
    if result is None:
        raise ServiceNotFoundError(f"LDB returned no details for service {service_id}")

    previous = _calling_points(_child(result, "previousCallingPoints"))
    subsequent = _calling_points(_child(result, "subsequentCallingPoints"))
    here = _text(result, "locationName")
    origin = previous[0].name if previous else here
    destination = subsequent[-1].name if subsequent else here
    return ServiceDetail(
        service_id=service_id,
        source=SOURCE,
        operator=_text(result, "operator"),
        operator_code=_text(result, "operatorCode"),
        platform=_text(result, "platform"),
        origin=(origin,) if origin else (),
        destination=(destination,) if destination else (),
        previous_calling_points=previous,
        subsequent_calling_points=subsequent,
        delay_reason=_text(result, "delayReason"),
        cancel_reason=_text(result, "cancelReason"),
    )


class LdbSoapClient(BoardTransport):
    """Request/response client for the legacy departure board web service."""

    name = "ldb"

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._client = client
        self._owns_client = client is None
        self._clock = clock

    def is_enabled(self) -> bool:
        return self._settings.ldb_configured

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.ldb_timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _call(self, operation: str, fields: dict[str, object]) -> bytes:
        if not self.is_enabled():
            raise NotConfiguredError("LDB_API_TOKEN is not configured")

        envelope = build_envelope(self._settings.ldb_api_token or "", operation, fields)
        headers = add_traceparent_header(
            {
                "Content-Type": "text/xml; charset=utf-8",
                "Accept": "text/xml",
                "SOAPAction": f'"{LDB_NAMESPACE}{operation}"',
            }
        )
        response = await timed_request(
            f"ldb_{operation}",
            lambda: self._http().post(
                self._settings.ldb_api_url,
                content=envelope.encode("utf-8"),
                headers=headers,
                timeout=self._settings.ldb_timeout_seconds,
            ),
        )
        # Faults arrive as HTTP 500 with a readable body.
        if response.status_code >= 400 and b"Fault" in response.content:
            parse_soap_document(response.content)
        raise_for_status("ldb", response)
        return response.content

    async def fetch_board(self, query: BoardQuery) -> StationBoard:
        payload = await self._call("GetDepartureBoard", board_request_fields(query))
        board = parse_station_board(payload, query.crs, self._clock())
        logger.debug("LDB board for %s: %d services", query.crs, len(board.departures))
        return board

    async def fetch_service_detail(self, service_id: str) -> ServiceDetail:
        payload = await self._call("GetServiceDetails", {"serviceID": service_id})
        return parse_service_details(payload, service_id)

    async def test_connection(self) -> bool:
        if not self.is_enabled():
            return False
        try:
            await self.fetch_board(BoardQuery(crs="KGX", num_rows=1))
        except (FeedConnectionError, FeedTimeoutError, FeedDecodeError, StationNotFoundError) as exc:
            logger.info("LDB connection test failed: %s", exc)
            return False
        return True


__all__ = [
    "LdbSoapClient",
    "build_envelope",
    "board_request_fields",
    "parse_station_board",
    "parse_service_details",
    "parse_soap_document",
]
