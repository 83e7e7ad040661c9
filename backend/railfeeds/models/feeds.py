"""Pydantic schemas for inbound feed payloads.

Every schema ignores unknown fields; missing fields take the defaults declared
here. Decoding into engine records happens in ``railfeeds.services.feed_mapping``.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class FeedModel(BaseModel):
    model_config = ConfigDict(
        extra="ignore", populate_by_name=True, coerce_numbers_to_str=True
    )


# =============================================================================
# TRUST train movements (TRAIN_MVT_ALL_TOC)
# =============================================================================


class TrustHeader(FeedModel):
    msg_type: str
    source_system_id: str | None = None
    msg_queue_timestamp: str | None = None


class TrustMessage(FeedModel):
    header: TrustHeader
    body: dict[str, Any] = Field(default_factory=dict)


class TrustMovementBody(FeedModel):
    train_id: str = Field(..., min_length=1)
    event_type: Literal["ARRIVAL", "DEPARTURE"]
    loc_stanox: str = Field(..., min_length=1)
    actual_timestamp: str
    planned_timestamp: str | None = None
    timetable_variation: int = 0
    variation_status: str | None = None
    platform: str | None = None
    toc_id: str | None = None

    @field_validator("event_type", mode="before")
    @classmethod
    def upper_event_type(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("planned_timestamp", "platform", "toc_id", mode="before")
    @classmethod
    def empty_as_none(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("timetable_variation", mode="before")
    @classmethod
    def parse_variation(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return 0
        return value


class TrustActivationBody(FeedModel):
    train_id: str = Field(..., min_length=1)
    train_uid: str = Field(..., min_length=1)
    toc_id: str | None = None


# =============================================================================
# VSTP schedules
# =============================================================================


class VstpLocation(FeedModel):
    tiploc: str = Field(..., min_length=1)
    arrival: str | None = None
    departure: str | None = None
    platform: str | None = None

    @field_validator("arrival", "departure", "platform", mode="before")
    @classmethod
    def empty_as_none(cls, value: Any) -> Any:
        return _blank_to_none(value)


class VstpSchedule(FeedModel):
    train_uid: str = Field(..., min_length=1)
    transaction_type: Literal["Create", "Update", "Delete"] = "Create"
    headcode: str | None = None
    operator: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    locations: list[VstpLocation] = Field(default_factory=list)

    @field_validator("transaction_type", mode="before")
    @classmethod
    def normalise_transaction(cls, value: Any) -> Any:
        if value is None or value == "":
            return "Create"
        if isinstance(value, str):
            return value.strip().capitalize()
        return value

    @field_validator("headcode", "operator", "start_date", "end_date", mode="before")
    @classmethod
    def empty_as_none(cls, value: Any) -> Any:
        return _blank_to_none(value)


# =============================================================================
# Train describer (TD)
# =============================================================================

BERTH_MESSAGE_TYPES = frozenset({"CA", "CB", "CC"})


class TdMessage(FeedModel):
    msg_type: str
    area_id: str = Field(..., min_length=1)
    descr: str | None = None
    from_berth: str | None = Field(default=None, alias="from")
    to_berth: str | None = Field(default=None, alias="to")
    time: str | None = None

    @field_validator("from_berth", "to_berth", "descr", mode="before")
    @classmethod
    def empty_as_none(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @property
    def is_berth_message(self) -> bool:
        return self.msg_type in BERTH_MESSAGE_TYPES


# =============================================================================
# Temporary speed restrictions (TSR)
# =============================================================================


class TsrRecord(FeedModel):
    tsr_id: str = Field(..., min_length=1)
    route: str = ""
    tsr_reference: str | None = None
    from_stanox: str
    to_stanox: str
    from_mileage: str | None = None
    to_mileage: str | None = None
    direction: Literal["UP", "DOWN", "BOTH"] = "BOTH"
    speed_restriction: int = Field(..., ge=0)
    reason_code: str | None = None
    reason_text: str | None = None
    valid_from: str = Field(..., min_length=1)
    valid_to: str | None = None
    tsr_type: Literal["EMERGENCY", "TEMPORARY", "PERMANENT"] = "TEMPORARY"
    comments: str | None = None
    cancelled: bool = False

    @field_validator("direction", "tsr_type", mode="before")
    @classmethod
    def upper_enum(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("valid_from", "valid_to", "tsr_reference", "comments", mode="before")
    @classmethod
    def empty_as_none(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @model_validator(mode="before")
    @classmethod
    def drop_null_enums(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = {
                key: value
                for key, value in data.items()
                if not (key in ("direction", "tsr_type") and value in (None, ""))
            }
        return data


# =============================================================================
# Real-time PPM (RTPPM)
# =============================================================================


class RtppmMetrics(FeedModel):
    pp_percentage: float = Field(default=0.0, ge=0.0, le=100.0)
    total_services: int = Field(default=0, ge=0)
    on_time: int = Field(default=0, ge=0)
    late: int = Field(default=0, ge=0)
    very_late: int = Field(default=0, ge=0)
    cancelled: int = Field(default=0, ge=0)
    ma_pp_percentage: float | None = None

    @model_validator(mode="after")
    def default_moving_average(self) -> "RtppmMetrics":
        if self.ma_pp_percentage is None:
            self.ma_pp_percentage = self.pp_percentage
        return self


class RtppmPreviousPeriods(FeedModel):
    yesterday: RtppmMetrics | None = None
    last_week: RtppmMetrics | None = None


class RtppmOperator(FeedModel):
    operator_code: str = Field(..., min_length=1)
    operator_name: str = ""
    performance: RtppmMetrics = Field(default_factory=RtppmMetrics)
    previous_periods: RtppmPreviousPeriods | None = None


class RtppmSegment(FeedModel):
    origin: str
    destination: str
    performance: RtppmMetrics = Field(default_factory=RtppmMetrics)


class RtppmRoute(FeedModel):
    route_code: str = Field(..., min_length=1)
    route_name: str = ""
    operator_code: str | None = None
    performance: RtppmMetrics = Field(default_factory=RtppmMetrics)
    major_stations: list[RtppmSegment] = Field(default_factory=list)


class RtppmStation(FeedModel):
    station_code: str = Field(..., min_length=1)
    station_name: str = ""
    arrivals: RtppmMetrics = Field(default_factory=RtppmMetrics)
    departures: RtppmMetrics = Field(default_factory=RtppmMetrics)


class RtppmSnapshot(FeedModel):
    timestamp: str | None = None
    time_period: str = Field(..., min_length=1)
    sector_code: str = "NATIONAL"
    sector_desc: str = ""
    national: RtppmMetrics
    operator_page: list[RtppmOperator] = Field(default_factory=list)
    route_page: list[RtppmRoute] = Field(default_factory=list)
    station_page: list[RtppmStation] = Field(default_factory=list)

    @field_validator("operator_page", "route_page", "station_page", mode="before")
    @classmethod
    def none_as_empty(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        return value


# =============================================================================
# Reference data (CORPUS / SMART)
# =============================================================================


class CorpusRow(FeedModel):
    stanox: str | None = Field(default=None, alias="STANOX")
    tiploc: str | None = Field(default=None, alias="TIPLOC")
    crs: str | None = Field(default=None, alias="3ALPHA")
    name: str | None = Field(default=None, alias="NLCDESC")
    short_name: str | None = Field(default=None, alias="NLCDESC16")

    @field_validator("stanox", "tiploc", "crs", "name", "short_name", mode="before")
    @classmethod
    def blank_as_none(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @property
    def has_code(self) -> bool:
        return bool(self.stanox or self.tiploc or self.crs)


class SmartRow(FeedModel):
    area: str = Field(..., alias="TD", min_length=1)
    from_berth: str | None = Field(default=None, alias="FROMBERTH")
    to_berth: str | None = Field(default=None, alias="TOBERTH")
    stanox: str | None = Field(default=None, alias="STANOX")
    from_line: str | None = Field(default=None, alias="FROMLINE")
    to_line: str | None = Field(default=None, alias="TOLINE")
    platform: str | None = Field(default=None, alias="PLATFORM")
    event: str | None = Field(default=None, alias="EVENT")
    step_type: str | None = Field(default=None, alias="STEPTYPE")
    description: str | None = Field(default=None, alias="STANME")

    @field_validator(
        "from_berth",
        "to_berth",
        "stanox",
        "from_line",
        "to_line",
        "platform",
        "event",
        "step_type",
        "description",
        mode="before",
    )
    @classmethod
    def blank_as_none(cls, value: Any) -> Any:
        return _blank_to_none(value)


__all__ = [
    "FeedModel",
    "TrustHeader",
    "TrustMessage",
    "TrustMovementBody",
    "TrustActivationBody",
    "VstpLocation",
    "VstpSchedule",
    "BERTH_MESSAGE_TYPES",
    "TdMessage",
    "TsrRecord",
    "RtppmMetrics",
    "RtppmPreviousPeriods",
    "RtppmOperator",
    "RtppmSegment",
    "RtppmRoute",
    "RtppmStation",
    "RtppmSnapshot",
    "CorpusRow",
    "SmartRow",
]
