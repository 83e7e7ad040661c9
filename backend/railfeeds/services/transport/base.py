"""Contract shared by departure board transports."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx

from railfeeds.core.metrics import observe_transport_request
from railfeeds.models.rail import BoardQuery
from railfeeds.services.rail_dto import ServiceDetail, StationBoard
from railfeeds.services.rail_errors import FeedConnectionError, FeedTimeoutError

T = TypeVar("T")


class BoardTransport(ABC):
    """A transport able to answer departure board and service detail queries."""

    name: str = "transport"

    @abstractmethod
    def is_enabled(self) -> bool:
        """True when credentials and endpoint are configured."""

    @abstractmethod
    async def fetch_board(self, query: BoardQuery) -> StationBoard:
        ...

    @abstractmethod
    async def fetch_service_detail(self, service_id: str) -> ServiceDetail:
        ...

    @abstractmethod
    async def test_connection(self) -> bool:
        ...

    async def close(self) -> None:
        return None


async def timed_request(endpoint: str, call: Callable[[], Awaitable[T]]) -> T:
    """Run an outbound HTTP call, translating httpx errors and recording metrics."""
    start = time.perf_counter()
    try:
        result = await call()
    except httpx.TimeoutException as exc:
        observe_transport_request(endpoint, "timeout", time.perf_counter() - start)
        raise FeedTimeoutError(f"{endpoint} request timed out") from exc
    except httpx.HTTPError as exc:
        observe_transport_request(endpoint, "error", time.perf_counter() - start)
        raise FeedConnectionError(f"{endpoint} request failed: {exc}") from exc
    except Exception:
        observe_transport_request(endpoint, "error", time.perf_counter() - start)
        raise
    observe_transport_request(endpoint, "success", time.perf_counter() - start)
    return result


def raise_for_status(endpoint: str, response: httpx.Response) -> None:
    if response.status_code >= 400:
        raise FeedConnectionError(
            f"{endpoint} returned HTTP {response.status_code}"
        )


__all__ = ["BoardTransport", "timed_request", "raise_for_status"]
