"""Short-TTL cache owned by the departure board facade."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

from railfeeds.core.metrics import record_cache_event

CACHE_NAME = "board"


def board_cache_key(
    crs: str,
    num_rows: int,
    filter_crs: str | None = None,
    filter_type: str | None = None,
) -> str:
    """Key composed of the normalized board query shape."""
    return (
        f"departures:{crs.upper()}:{num_rows}:"
        f"{(filter_crs or '').upper()}:{(filter_type or '').lower()}"
    )


def service_cache_key(service_id: str) -> str:
    return f"service:{service_id}"


class BoardCache:
    """In-memory TTL cache; expiry is checked on read, there is no sweeper task.

    Values are stored as-is (frozen board snapshots), so a read always returns a
    complete value that was written by a single ``set`` call.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._store: dict[str, tuple[Any, float]] = {}
        self._lock = asyncio.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    async def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return
        expires_at = self._clock() + ttl
        async with self._lock:
            self._store[key] = (value, expires_at)
        record_cache_event(CACHE_NAME, "store")

    async def get(self, key: str) -> Any | None:
        """Return the cached value, or None when missing or expired."""
        async with self._lock:
            entry = self._store.get(key)
            if entry is None:
                record_cache_event(CACHE_NAME, "miss")
                return None

            value, expires_at = entry
            if expires_at <= self._clock():
                del self._store[key]
                record_cache_event(CACHE_NAME, "expired")
                return None

        record_cache_event(CACHE_NAME, "hit")
        return value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._store.clear()

    async def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns the number removed."""
        now = self._clock()
        async with self._lock:
            expired = [key for key, (_, exp) in self._store.items() if exp <= now]
            for key in expired:
                del self._store[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._store)


__all__ = ["BoardCache", "board_cache_key", "service_cache_key"]
