"""Error taxonomy and outcome type shared by transports, stores and the facade."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class RailFeedError(Exception):
    """Base class for every feed engine failure."""


class NotConfiguredError(RailFeedError):
    """Raised when a feed has no credentials or endpoint configured."""


class FeedConnectionError(RailFeedError):
    """Raised on transient connection failures; callers may retry."""


class FeedTimeoutError(RailFeedError):
    """Raised when a request or connect attempt exceeds its time bound."""


class FeedDecodeError(RailFeedError):
    """Raised when a single inbound message cannot be decoded."""


class NotFoundError(RailFeedError):
    """Raised when a valid query has no data behind it."""


class StationNotFoundError(NotFoundError):
    """Raised when a station board has no data for the requested code."""


class ServiceNotFoundError(NotFoundError):
    """Raised when a service identifier is unknown to a transport."""


@dataclass(frozen=True)
class StrategyFailure:
    """Why a single fallback strategy did not produce a result."""

    strategy: str
    reason: str
    attempted: bool


class AllStrategiesFailedError(RailFeedError):
    """Raised by the facade once every strategy in the chain has failed."""

    def __init__(self, operation: str, failures: tuple[StrategyFailure, ...]) -> None:
        self.operation = operation
        self.failures = failures
        summary = "; ".join(
            f"{failure.strategy}: {failure.reason}" for failure in failures
        )
        super().__init__(f"All strategies failed for {operation} ({summary})")

    @property
    def attempted(self) -> tuple[str, ...]:
        return tuple(f.strategy for f in self.failures if f.attempted)

    @property
    def not_configured(self) -> tuple[str, ...]:
        return tuple(f.strategy for f in self.failures if not f.attempted)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class NotConfigured:
    reason: str = "no transport configured"


@dataclass(frozen=True)
class Failed:
    reason: str
    failures: tuple[StrategyFailure, ...] = field(default_factory=tuple)


Outcome = Union[Ok[T], NotConfigured, Failed]


__all__ = [
    "RailFeedError",
    "NotConfiguredError",
    "FeedConnectionError",
    "FeedTimeoutError",
    "FeedDecodeError",
    "NotFoundError",
    "StationNotFoundError",
    "ServiceNotFoundError",
    "StrategyFailure",
    "AllStrategiesFailedError",
    "Ok",
    "NotConfigured",
    "Failed",
    "Outcome",
]
