"""Departure board facade.

Tries each transport in priority order (pub/sub bridge, push port, legacy SOAP
service) and returns the first success. Successful results are cached for a
short TTL under a key built from the normalized query.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from railfeeds.core.metrics import record_board_strategy
from railfeeds.models.rail import BoardQuery
from railfeeds.services.board_cache import BoardCache, board_cache_key, service_cache_key
from railfeeds.services.rail_dto import ServiceDetail, StationBoard
from railfeeds.services.rail_errors import (
    AllStrategiesFailedError,
    Failed,
    NotConfigured,
    NotConfiguredError,
    Ok,
    Outcome,
    StrategyFailure,
)
from railfeeds.services.transport.base import BoardTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_STRATEGY_TIMEOUT_SECONDS = 15.0


class BoardService:
    """Single entry point for board and service-detail queries."""

    def __init__(
        self,
        strategies: Sequence[BoardTransport],
        cache: BoardCache,
        strategy_timeout: float = DEFAULT_STRATEGY_TIMEOUT_SECONDS,
    ) -> None:
        self._strategies = tuple(strategies)
        self._cache = cache
        self._strategy_timeout = strategy_timeout

    @property
    def strategies(self) -> tuple[str, ...]:
        return tuple(strategy.name for strategy in self._strategies)

    def enabled_strategies(self) -> tuple[str, ...]:
        return tuple(s.name for s in self._strategies if s.is_enabled())

    async def _run_chain(
        self,
        operation: str,
        call: Callable[[BoardTransport], Awaitable[T]],
    ) -> T:
        failures: list[StrategyFailure] = []
        for strategy in self._strategies:
            if not strategy.is_enabled():
                record_board_strategy(strategy.name, "not_configured")
                failures.append(
                    StrategyFailure(strategy.name, "not configured", attempted=False)
                )
                continue

            try:
                result = await asyncio.wait_for(call(strategy), timeout=self._strategy_timeout)
            except NotConfiguredError as exc:
                record_board_strategy(strategy.name, "not_configured")
                failures.append(StrategyFailure(strategy.name, str(exc), attempted=False))
                continue
            except asyncio.TimeoutError:
                record_board_strategy(strategy.name, "failed")
                reason = f"timed out after {self._strategy_timeout:g}s"
                logger.warning("%s strategy %s %s", operation, strategy.name, reason)
                failures.append(StrategyFailure(strategy.name, reason, attempted=True))
                continue
            except Exception as exc:
                record_board_strategy(strategy.name, "failed")
                logger.warning("%s strategy %s failed: %s", operation, strategy.name, exc)
                failures.append(
                    StrategyFailure(strategy.name, str(exc) or type(exc).__name__, attempted=True)
                )
                continue

            record_board_strategy(strategy.name, "success")
            return result

        raise AllStrategiesFailedError(operation, tuple(failures))

    async def get_departures(self, query: BoardQuery) -> StationBoard:
        """Return a board, serving from cache while the TTL holds.

        Raises:
            AllStrategiesFailedError: every strategy was unconfigured or failed.
        """
        key = board_cache_key(query.crs, query.num_rows, query.filter_crs, query.filter_type)
        cached = await self._cache.get(key)
        if cached is not None:
            return cached

        board = await self._run_chain(
            f"board {query.crs}", lambda strategy: strategy.fetch_board(query)
        )
        await self._cache.set(key, board)
        return board

    async def get_service_detail(self, service_id: str) -> ServiceDetail:
        key = service_cache_key(service_id)
        cached = await self._cache.get(key)
        if cached is not None:
            return cached

        detail = await self._run_chain(
            f"service {service_id}",
            lambda strategy: strategy.fetch_service_detail(service_id),
        )
        await self._cache.set(key, detail)
        return detail

    async def board_outcome(self, query: BoardQuery) -> Outcome[StationBoard]:
        """Like ``get_departures`` but reports "not configured" as a value."""
        return await self._outcome(self.get_departures(query))

    async def service_outcome(self, service_id: str) -> Outcome[ServiceDetail]:
        return await self._outcome(self.get_service_detail(service_id))

    async def _outcome(self, pending: Awaitable[T]) -> Outcome[T]:
        try:
            return Ok(await pending)
        except AllStrategiesFailedError as exc:
            if not exc.attempted:
                return NotConfigured(
                    "no board transport configured ({})".format(", ".join(exc.not_configured))
                )
            return Failed(str(exc), exc.failures)

    async def test_connections(self) -> dict[str, bool]:
        results = {}
        for strategy in self._strategies:
            results[strategy.name] = await strategy.test_connection()
        return results

    async def close(self) -> None:
        for strategy in self._strategies:
            try:
                await strategy.close()
            except Exception:
                logger.exception("Failed to close %s transport", strategy.name)


__all__ = ["BoardService", "DEFAULT_STRATEGY_TIMEOUT_SECONDS"]
