"""Query and response models exchanged with the HTTP layer and realtime consumers."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from railfeeds.services.rail_dto import FeedHealth, NetworkStatus


class BoardQuery(BaseModel):
    """Validated departure board query."""

    crs: str = Field(..., description="Three-letter station code.")
    num_rows: int = Field(default=10, ge=1, le=50)
    filter_crs: str | None = Field(
        default=None, description="Only services calling at (or from) this station."
    )
    filter_type: Literal["to", "from"] | None = None
    time_offset: int = Field(default=0, ge=-120, le=120)
    time_window: int = Field(default=120, ge=0, le=120)

    model_config = {"frozen": True}

    @field_validator("crs", "filter_crs", mode="before")
    @classmethod
    def validate_crs(cls, value: object) -> object:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("Station code must be a string")
        code = value.strip()
        if not code:
            return None
        if len(code) != 3 or not code.isalpha() or not code.isascii():
            raise ValueError("Station code must be exactly three letters")
        return code.upper()

    @field_validator("filter_type", mode="before")
    @classmethod
    def lower_filter_type(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower() or None
        return value

    @model_validator(mode="after")
    def filter_requires_station(self) -> "BoardQuery":
        if self.filter_type is not None and self.filter_crs is None:
            raise ValueError("filter_type requires filter_crs")
        return self


class ServiceUpdate(BaseModel):
    """A partial field change for one service, broadcast to realtime consumers.

    Only the fields explicitly set on an update are merged into the stored state.
    """

    service_id: str = Field(..., min_length=1)
    rid: str | None = None
    uid: str | None = None
    crs: str | None = None
    tiploc: str | None = None
    platform: str | None = None
    scheduled: str | None = None
    estimated: str | None = None
    actual: str | None = None
    cancelled: bool | None = None
    delay_reason: str | None = None
    source: str | None = None
    last_updated: datetime | None = None

    def merged_with(self, update: "ServiceUpdate") -> "ServiceUpdate":
        changes = update.model_dump(exclude_unset=True)
        return self.model_validate({**self.model_dump(exclude_unset=True), **changes})


class FeedHealthResponse(BaseModel):
    name: str
    active: bool
    message_rate: int = Field(..., ge=0, description="Messages in the last sampling window.")
    total_messages: int = Field(..., ge=0)
    last_message: datetime | None = None

    @classmethod
    def from_dto(cls, dto: FeedHealth) -> "FeedHealthResponse":
        return cls(**dto.__dict__)


class NetworkStatusResponse(BaseModel):
    overall: Literal["EXCELLENT", "GOOD", "DEGRADED", "POOR"]
    national_on_time: float | None = Field(
        None, description="National on-time percentage from the latest RTPPM report."
    )
    active_restrictions: int = Field(..., ge=0)
    major_disruptions: int = Field(..., ge=0)
    total_schedules: int = Field(..., ge=0)
    berth_count: int = Field(..., ge=0)
    tracked_trains: int = Field(..., ge=0)
    feeds: list[FeedHealthResponse] = Field(default_factory=list)
    generated_at: datetime

    @classmethod
    def from_dto(cls, dto: NetworkStatus) -> "NetworkStatusResponse":
        return cls(
            overall=dto.overall.value,
            national_on_time=dto.national_on_time,
            active_restrictions=dto.active_restrictions,
            major_disruptions=dto.major_disruptions,
            total_schedules=dto.total_schedules,
            berth_count=dto.berth_count,
            tracked_trains=dto.tracked_trains,
            feeds=[FeedHealthResponse.from_dto(feed) for feed in dto.feeds],
            generated_at=dto.generated_at,
        )


class RealtimeEvent(BaseModel):
    type: Literal["bootstrap", "service_update"]
    data: list[ServiceUpdate] | ServiceUpdate


__all__ = [
    "BoardQuery",
    "ServiceUpdate",
    "FeedHealthResponse",
    "NetworkStatusResponse",
    "RealtimeEvent",
]
