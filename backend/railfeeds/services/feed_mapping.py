"""Pure decoders from raw feed payloads to engine records.

Every decoder either returns typed records or raises ``FeedDecodeError``; the
owning transport decides whether to skip the message.
"""

from __future__ import annotations

import base64
import binascii
import gzip
import json
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from railfeeds.models.feeds import (
    CorpusRow,
    RtppmSnapshot,
    SmartRow,
    TdMessage,
    TrustActivationBody,
    TrustMessage,
    TrustMovementBody,
    TsrRecord,
    VstpSchedule,
)
from railfeeds.services.rail_dto import (
    BerthEdge,
    BerthStep,
    Departure,
    EventType,
    Location,
    MovementEvent,
    PushPortLocation,
    PushPortService,
    ScheduleChange,
    ScheduleStop,
    TrainActivation,
    TrainSchedule,
)
from railfeeds.services.rail_errors import FeedDecodeError

TRUST_ACTIVATION = "0001"
TRUST_MOVEMENT = "0003"
GZIP_MAGIC = b"\x1f\x8b"


class DataMapper:
    """Small helpers for loosely-shaped feed dictionaries."""

    @staticmethod
    def safe_get(data: dict[str, Any] | None, *keys: str, default: Any = None) -> Any:
        """Return the first present, non-empty value among ``keys``."""
        if not data:
            return default
        for key in keys:
            value = data.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            return value
        return default

    @staticmethod
    def safe_get_nested(data: dict[str, Any] | None, *path: str) -> Any:
        current: Any = data
        for key in path:
            if not isinstance(current, dict) or key not in current:
                return None
            current = current[key]
        return current


# =============================================================================
# Payload and time helpers
# =============================================================================


def maybe_gunzip(payload: bytes) -> bytes:
    """Decompress ``payload`` when it starts with the gzip magic bytes."""
    if payload[:2] == GZIP_MAGIC:
        try:
            return gzip.decompress(payload)
        except (OSError, EOFError) as exc:
            raise FeedDecodeError(f"Corrupt gzip payload: {exc}") from exc
    return payload


def load_json(payload: bytes | str) -> Any:
    if isinstance(payload, bytes):
        payload = maybe_gunzip(payload)
    try:
        return json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise FeedDecodeError(f"Invalid JSON payload: {exc}") from exc


def split_messages(payload: bytes | str) -> list[Any]:
    """Decode a STOMP body into its list of messages (feeds batch into arrays)."""
    data = load_json(payload)
    if isinstance(data, list):
        return data
    return [data]


def parse_epoch_ms(value: Any) -> datetime | None:
    """Parse an epoch-millisecond string; empty values become ``None``."""
    if value is None or value == "":
        return None
    try:
        millis = int(str(value).strip())
    except ValueError as exc:
        raise FeedDecodeError(f"Invalid epoch timestamp: {value!r}") from exc
    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise FeedDecodeError(f"Epoch timestamp out of range: {value!r}") from exc


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 or epoch-millisecond timestamps into aware UTC datetimes."""
    if value is None or value == "":
        return None
    text = str(value).strip()
    if text.isdigit():
        return parse_epoch_ms(text)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as exc:
        raise FeedDecodeError(f"Invalid timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_hhmm(value: Any) -> str | None:
    """Normalize ``HHMMSS``, ``HHMM``, ``HHMMH`` and ``HH:MM[:SS]`` to ``HH:MM``."""
    if value is None:
        return None
    text = str(value).strip().rstrip("H")
    if not text:
        return None
    if ":" in text:
        parts = text.split(":")
        if len(parts) >= 2 and parts[0].isdigit() and parts[1].isdigit():
            return f"{int(parts[0]):02d}:{parts[1][:2]}"
        return None
    if text.isdigit() and len(text) >= 4:
        return f"{text[:2]}:{text[2:4]}"
    return None


def headcode_from_train_id(train_id: str) -> str | None:
    """TRUST train ids embed the four-character headcode at positions 2..6."""
    if len(train_id) < 6:
        return None
    return train_id[2:6]


def _validate(model: type, data: Any, feed: str) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise FeedDecodeError(
            f"Invalid {feed} message: {exc.error_count()} validation error(s)"
        ) from exc


# =============================================================================
# TRUST
# =============================================================================


def decode_trust_message(item: Any) -> MovementEvent | TrainActivation | None:
    """Decode one TRUST message; returns ``None`` for message types we ignore."""
    message: TrustMessage = _validate(TrustMessage, item, "TRUST")
    msg_type = message.header.msg_type.strip()

    if msg_type == TRUST_ACTIVATION:
        activation: TrustActivationBody = _validate(
            TrustActivationBody, message.body, "TRUST activation"
        )
        return TrainActivation(
            train_id=activation.train_id,
            train_uid=activation.train_uid.strip(),
            toc_id=activation.toc_id,
        )

    if msg_type != TRUST_MOVEMENT:
        return None

    body: TrustMovementBody = _validate(TrustMovementBody, message.body, "TRUST movement")
    actual = parse_epoch_ms(body.actual_timestamp)
    if actual is None:
        raise FeedDecodeError("TRUST movement without actual_timestamp")

    variation = abs(body.timetable_variation)
    if (body.variation_status or "").strip().upper() == "EARLY":
        variation = -variation

    return MovementEvent(
        train_id=body.train_id,
        event_type=EventType(body.event_type),
        stanox=body.loc_stanox.strip(),
        actual_time=actual,
        planned_time=parse_epoch_ms(body.planned_timestamp),
        variation_minutes=variation,
        platform=body.platform,
        toc_id=body.toc_id,
    )


# =============================================================================
# VSTP
# =============================================================================


def _vstp_location(raw: dict[str, Any]) -> dict[str, Any]:
    tiploc = DataMapper.safe_get(raw, "tiploc_code", "tiploc_id") or (
        DataMapper.safe_get_nested(raw, "location", "tiploc", "tiploc_id")
    )
    arrival = DataMapper.safe_get(
        raw, "public_arrival", "public_arrival_time", "arrival", "scheduled_arrival_time"
    )
    departure = DataMapper.safe_get(
        raw,
        "public_departure",
        "public_departure_time",
        "departure",
        "scheduled_departure_time",
    )
    return {
        "tiploc": tiploc.strip() if isinstance(tiploc, str) else tiploc,
        "arrival": format_hhmm(arrival),
        "departure": format_hhmm(departure),
        "platform": raw.get("platform"),
    }


def _unwrap_vstp(item: Any) -> dict[str, Any]:
    if not isinstance(item, dict):
        raise FeedDecodeError("VSTP message is not an object")
    if "VSTPCIFMsgV1" in item:
        schedule = DataMapper.safe_get_nested(item, "VSTPCIFMsgV1", "schedule")
    elif isinstance(item.get("body"), dict):
        schedule = item["body"]
    else:
        schedule = item
    if not isinstance(schedule, dict):
        raise FeedDecodeError("VSTP message has no schedule")
    return schedule


def decode_vstp_message(item: Any) -> ScheduleChange:
    """Decode nested (``VSTPCIFMsgV1``) and flattened VSTP schedule shapes."""
    schedule = _unwrap_vstp(item)

    segments = schedule.get("schedule_segment") or {}
    if isinstance(segments, list):
        segment = segments[0] if segments else {}
    else:
        segment = segments
    if not isinstance(segment, dict):
        raise FeedDecodeError("VSTP schedule_segment is not an object")

    raw_locations = segment.get("schedule_location") or []
    if not isinstance(raw_locations, list):
        raise FeedDecodeError("VSTP schedule_location is not a list")
    uid = DataMapper.safe_get(schedule, "CIF_train_uid", "train_uid")

    parsed: VstpSchedule = _validate(
        VstpSchedule,
        {
            "train_uid": uid.strip() if isinstance(uid, str) else uid,
            "transaction_type": schedule.get("transaction_type"),
            "headcode": DataMapper.safe_get(segment, "signalling_id", "CIF_headcode"),
            "operator": DataMapper.safe_get(segment, "atoc_code"),
            "start_date": schedule.get("schedule_start_date"),
            "end_date": schedule.get("schedule_end_date"),
            "locations": [
                _vstp_location(raw) for raw in raw_locations if isinstance(raw, dict)
            ],
        },
        "VSTP",
    )

    return ScheduleChange(
        transaction=parsed.transaction_type,
        schedule=TrainSchedule(
            uid=parsed.train_uid,
            headcode=parsed.headcode,
            operator=parsed.operator,
            start_date=parsed.start_date,
            end_date=parsed.end_date,
            stops=tuple(
                ScheduleStop(
                    tiploc=loc.tiploc.upper(),
                    arrival=loc.arrival,
                    departure=loc.departure,
                    platform=loc.platform,
                )
                for loc in parsed.locations
            ),
            source="VSTP",
        ),
    )


# =============================================================================
# Train describer
# =============================================================================


def decode_td_message(item: Any) -> BerthStep | None:
    """Decode one TD message; heartbeats and signalling (S-class) return ``None``."""
    if not isinstance(item, dict) or len(item) != 1:
        raise FeedDecodeError("TD message must be a single-key wrapper object")
    (wrapper, data), = item.items()
    if not wrapper.endswith("_MSG") or not isinstance(data, dict):
        raise FeedDecodeError(f"Unexpected TD wrapper {wrapper!r}")

    msg_type = wrapper[: -len("_MSG")].upper()
    if msg_type not in ("CA", "CB", "CC"):
        return None

    message: TdMessage = _validate(TdMessage, {**data, "msg_type": msg_type}, "TD")
    if msg_type in ("CA", "CC") and not message.to_berth:
        raise FeedDecodeError(f"TD {msg_type} message without destination berth")
    if msg_type == "CB" and not message.from_berth:
        raise FeedDecodeError("TD CB message without source berth")

    return BerthStep(
        area=message.area_id.upper(),
        msg_type=msg_type,
        description=(message.descr or "").upper(),
        from_berth=message.from_berth,
        to_berth=message.to_berth,
        time=parse_epoch_ms(message.time),
    )


# =============================================================================
# TSR
# =============================================================================


def decode_tsr_message(item: Any) -> TsrRecord:
    """Decode a TSR record, honouring cancellation signalled in the header."""
    if not isinstance(item, dict):
        raise FeedDecodeError("TSR message is not an object")

    header = item.get("header") if isinstance(item.get("header"), dict) else {}
    body = item.get("body") if isinstance(item.get("body"), dict) else item

    msg_type = str(header.get("msg_type", "")).upper()
    record: TsrRecord = _validate(TsrRecord, body, "TSR")
    if "CANCEL" in msg_type or "WITHDRAW" in msg_type:
        record = record.model_copy(update={"cancelled": True})

    # Fail early on unparseable windows so the store never sees them.
    if parse_timestamp(record.valid_from) is None:
        raise FeedDecodeError(f"TSR {record.tsr_id} has no valid_from")
    parse_timestamp(record.valid_to)
    return record


# =============================================================================
# RTPPM
# =============================================================================


def decode_rtppm_message(item: Any) -> RtppmSnapshot:
    if not isinstance(item, dict):
        raise FeedDecodeError("RTPPM message is not an object")
    data = item.get("body", item)
    if isinstance(data, dict) and "RTPPMDataMsgV1" in data:
        data = data["RTPPMDataMsgV1"]
    return _validate(RtppmSnapshot, data, "RTPPM")


# =============================================================================
# Reference data
# =============================================================================


def decode_corpus(payload: bytes | str) -> list[Location]:
    """Decode a CORPUS extract; rows without any location code are skipped."""
    data = load_json(payload)
    rows = data.get("TIPLOCDATA") if isinstance(data, dict) else data
    if not isinstance(rows, list):
        raise FeedDecodeError("CORPUS payload has no TIPLOCDATA list")

    locations: list[Location] = []
    for raw in rows:
        try:
            row = CorpusRow.model_validate(raw)
        except ValidationError:
            continue
        if not row.has_code:
            continue
        locations.append(
            Location(
                name=row.name or row.short_name or row.tiploc or row.stanox or row.crs,
                stanox=row.stanox,
                crs=row.crs,
                tiploc=row.tiploc,
            )
        )
    return locations


def decode_smart(payload: bytes | str) -> list[BerthEdge]:
    """Decode a SMART extract into berth edges; incomplete rows are skipped."""
    data = load_json(payload)
    if isinstance(data, dict):
        rows = DataMapper.safe_get(data, "BERTHDATA", "SMARTDATA")
    else:
        rows = data
    if not isinstance(rows, list):
        raise FeedDecodeError("SMART payload has no BERTHDATA list")

    edges: list[BerthEdge] = []
    for raw in rows:
        try:
            row = SmartRow.model_validate(raw)
        except ValidationError:
            continue
        if not (row.from_berth and row.to_berth):
            continue
        edges.append(
            BerthEdge(
                area=row.area.strip().upper(),
                from_berth=row.from_berth.upper(),
                to_berth=row.to_berth.upper(),
                from_stanox=row.stanox,
                to_stanox=row.stanox,
                from_line=row.from_line,
                to_line=row.to_line,
                platform=row.platform,
                event=row.event,
                step_type=row.step_type,
                description=row.description,
            )
        )
    return edges


# =============================================================================
# Darwin push port
# =============================================================================


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(element: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in element if _local(child.tag) == name]


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in ("true", "1", "yes")


def decode_push_port_body(body: bytes | str) -> bytes:
    """Unwrap gzip, JSON ``{"bytes": <base64>}`` envelopes or plain XML."""
    raw = body.encode("utf-8") if isinstance(body, str) else body
    raw = maybe_gunzip(raw)
    stripped = raw.lstrip()
    if stripped.startswith(b"{"):
        envelope = load_json(stripped)
        encoded = envelope.get("bytes") if isinstance(envelope, dict) else None
        if not isinstance(encoded, str):
            raise FeedDecodeError("Push port JSON envelope without 'bytes'")
        try:
            raw = base64.b64decode(encoded, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise FeedDecodeError(f"Invalid base64 push port payload: {exc}") from exc
        raw = maybe_gunzip(raw)
    return raw


def _push_port_location(element: ET.Element) -> PushPortLocation:
    attrs = element.attrib
    arrivals = _children(element, "arr")
    departures = _children(element, "dep")
    arr = arrivals[0].attrib if arrivals else {}
    dep = departures[0].attrib if departures else {}
    platforms = _children(element, "plat")
    platform = (platforms[0].text or "").strip() if platforms else None

    cancelled = (
        _truthy(attrs.get("can"))
        or _truthy(attrs.get("cancelled"))
        or _truthy(arr.get("can"))
        or _truthy(dep.get("can"))
        or _truthy(dep.get("cancelled"))
    )
    return PushPortLocation(
        tiploc=attrs.get("tpl", "").strip().upper(),
        pta=format_hhmm(attrs.get("pta")),
        ptd=format_hhmm(attrs.get("ptd")),
        wta=format_hhmm(attrs.get("wta")),
        wtd=format_hhmm(attrs.get("wtd")),
        eta=format_hhmm(arr.get("et")),
        etd=format_hhmm(dep.get("et")),
        ata=format_hhmm(arr.get("at")),
        atd=format_hhmm(dep.get("at")),
        platform=platform or None,
        cancelled=cancelled,
    )


def decode_push_port(body: bytes | str, received_at: datetime | None = None) -> list[PushPortService]:
    """Decode a push port message into per-service status updates."""
    xml = decode_push_port_body(body)
    try:
        root = ET.fromstring(xml)
    except ET.ParseError as exc:
        raise FeedDecodeError(f"Invalid push port XML: {exc}") from exc

    services: list[PushPortService] = []
    for update in root.iter():
        if _local(update.tag) != "TS":
            continue
        rid = update.attrib.get("rid")
        if not rid:
            continue
        late_reasons = _children(update, "LateReason")
        late_reason = (late_reasons[0].text or "").strip() if late_reasons else ""
        services.append(
            PushPortService(
                rid=rid,
                uid=update.attrib.get("uid"),
                ssd=update.attrib.get("ssd"),
                locations=tuple(
                    _push_port_location(loc)
                    for loc in _children(update, "Location")
                    if loc.attrib.get("tpl")
                ),
                late_reason=late_reason or None,
                received_at=received_at,
            )
        )
    return services


# =============================================================================
# Pub/sub bridge
# =============================================================================


def map_bridge_departure(data: dict[str, Any], crs: str, position: int) -> Departure:
    """Map one bridge event (optionally wrapped in ``body``) to a departure."""
    if isinstance(data.get("body"), dict):
        data = data["body"]

    service_id = DataMapper.safe_get(data, "serviceId", "rid", "train_id")
    scheduled = DataMapper.safe_get(data, "std", "dep_time", "planned_dep", "ptd", "time")
    expected = DataMapper.safe_get(
        data, "etd", "expected_dep", "atd", "actual_dep", default="On time"
    )
    platform = DataMapper.safe_get(data, "plat", "platform")

    return Departure(
        service_id=str(service_id) if service_id else f"bridge-{crs}-{position}",
        scheduled=format_hhmm(scheduled) or str(scheduled or ""),
        expected=format_hhmm(expected) or str(expected),
        destination=str(
            DataMapper.safe_get(
                data,
                "destination_name",
                "dest_name",
                "dest",
                "destination",
                default="Unknown destination",
            )
        ),
        destination_crs=DataMapper.safe_get(data, "destination_crs", "dest_crs", "destCRS"),
        operator=str(DataMapper.safe_get(data, "toc_name", "operator", default="Unknown")),
        operator_code=DataMapper.safe_get(data, "toc", "operatorCode"),
        platform=str(platform) if platform is not None else None,
        cancelled=bool(data.get("cancelled") or data.get("isCancelled")),
        delay_reason=DataMapper.safe_get(data, "delay_reason", "delayReason"),
        cancel_reason=DataMapper.safe_get(data, "cancel_reason", "cancelReason"),
    )


__all__ = [
    "DataMapper",
    "maybe_gunzip",
    "load_json",
    "split_messages",
    "parse_epoch_ms",
    "parse_timestamp",
    "format_hhmm",
    "headcode_from_train_id",
    "decode_trust_message",
    "decode_vstp_message",
    "decode_td_message",
    "decode_tsr_message",
    "decode_rtppm_message",
    "decode_corpus",
    "decode_smart",
    "decode_push_port_body",
    "decode_push_port",
    "map_bridge_departure",
]
