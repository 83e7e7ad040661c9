"""Realtime fan-out of per-service field changes.

Two interchangeable stores share one contract:

* ``InMemoryRealtimeStore`` keeps merged service state and subscribers in
  process, for single-instance deployments.
* ``ValkeyRealtimeStore`` keeps state in Valkey and broadcasts through a
  pub/sub channel plus a bounded recent-items list, so every instance sees
  every update.

Subscriber failures are logged and never affect other subscribers or later
publishes.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from functools import lru_cache

import valkey.asyncio as valkey
from pydantic import ValidationError

from railfeeds.core.config import Settings, get_settings
from railfeeds.core.metrics import record_realtime_event
from railfeeds.models.rail import ServiceUpdate

logger = logging.getLogger(__name__)

SERVICE_KEY_PREFIX = "realtime:service:"
UPDATE_CHANNEL = "realtime:service_update"
RECENT_KEY = "realtime:recent"
SERVICE_TTL_SECONDS = 6 * 3600
MAX_TRACKED_SERVICES = 10_000

Subscriber = Callable[[ServiceUpdate], Awaitable[None] | None]
Unsubscribe = Callable[[], None]


class RealtimeStore(ABC):
    """Keyed partial-update store with broadcast to subscribers."""

    backend: str = "base"

    def __init__(self, recent_limit: int = 200) -> None:
        self._recent_limit = recent_limit
        self._subscribers: set[Subscriber] = set()

    @property
    def recent_limit(self) -> int:
        return self._recent_limit

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: Subscriber) -> Unsubscribe:
        self._subscribers.add(callback)

        def unsubscribe() -> None:
            self._subscribers.discard(callback)

        return unsubscribe

    async def _deliver(self, update: ServiceUpdate) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(update)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                record_realtime_event(self.backend, "subscriber_error")
                logger.exception(
                    "Realtime subscriber failed for service %s", update.service_id
                )
            else:
                record_realtime_event(self.backend, "delivered")

    @abstractmethod
    async def upsert(self, update: ServiceUpdate) -> ServiceUpdate:
        """Merge ``update`` into the stored state and broadcast it."""

    @abstractmethod
    async def get(self, service_id: str) -> ServiceUpdate | None:
        ...

    @abstractmethod
    async def snapshot(self, limit: int | None = None) -> list[ServiceUpdate]:
        """Most recently updated services, newest first."""

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        self._subscribers.clear()


class InMemoryRealtimeStore(RealtimeStore):
    backend = "memory"

    def __init__(
        self, recent_limit: int = 200, max_services: int = MAX_TRACKED_SERVICES
    ) -> None:
        super().__init__(recent_limit)
        self._max_services = max(max_services, recent_limit)
        self._services: OrderedDict[str, ServiceUpdate] = OrderedDict()

    async def upsert(self, update: ServiceUpdate) -> ServiceUpdate:
        existing = self._services.get(update.service_id)
        merged = existing.merged_with(update) if existing else update
        self._services[update.service_id] = merged
        self._services.move_to_end(update.service_id)
        while len(self._services) > self._max_services:
            self._services.popitem(last=False)
        record_realtime_event(self.backend, "upsert")
        await self._deliver(merged)
        return merged

    async def get(self, service_id: str) -> ServiceUpdate | None:
        return self._services.get(service_id)

    async def snapshot(self, limit: int | None = None) -> list[ServiceUpdate]:
        limit = self._recent_limit if limit is None else limit
        if limit <= 0:
            return []
        newest_first = reversed(self._services.values())
        return [update for _, update in zip(range(limit), newest_first)]

    def __len__(self) -> int:
        return len(self._services)


class ValkeyRealtimeStore(RealtimeStore):
    """Shared store for multi-instance deployments.

    Local subscribers are fed only from the pub/sub channel, including updates
    this instance published itself, so every instance delivers each update
    exactly once.
    """

    backend = "valkey"

    def __init__(
        self,
        client: valkey.Valkey,
        recent_limit: int = 200,
        poll_timeout: float = 1.0,
    ) -> None:
        super().__init__(recent_limit)
        self._client = client
        self._poll_timeout = poll_timeout
        self._pubsub = None
        self._listener: asyncio.Task | None = None

    @staticmethod
    def _decode(payload: str | bytes | None) -> ServiceUpdate | None:
        if payload is None:
            return None
        try:
            return ServiceUpdate.model_validate_json(payload)
        except ValidationError:
            logger.warning("Discarding malformed realtime payload")
            return None

    async def upsert(self, update: ServiceUpdate) -> ServiceUpdate:
        key = f"{SERVICE_KEY_PREFIX}{update.service_id}"
        existing = self._decode(await self._client.get(key))
        merged = existing.merged_with(update) if existing else update
        payload = merged.model_dump_json(exclude_unset=True)

        await self._client.set(key, payload, ex=SERVICE_TTL_SECONDS)
        await self._client.lpush(RECENT_KEY, payload)
        await self._client.ltrim(RECENT_KEY, 0, self._recent_limit - 1)
        await self._client.publish(UPDATE_CHANNEL, payload)
        record_realtime_event(self.backend, "upsert")
        return merged

    async def get(self, service_id: str) -> ServiceUpdate | None:
        return self._decode(await self._client.get(f"{SERVICE_KEY_PREFIX}{service_id}"))

    async def snapshot(self, limit: int | None = None) -> list[ServiceUpdate]:
        limit = self._recent_limit if limit is None else limit
        if limit <= 0:
            return []
        payloads = await self._client.lrange(RECENT_KEY, 0, self._recent_limit - 1)
        seen: set[str] = set()
        updates: list[ServiceUpdate] = []
        for payload in payloads:
            update = self._decode(payload)
            if update is None or update.service_id in seen:
                continue
            seen.add(update.service_id)
            updates.append(update)
            if len(updates) >= limit:
                break
        return updates

    async def start(self) -> None:
        if self._listener is not None:
            return
        self._pubsub = self._client.pubsub()
        await self._pubsub.subscribe(UPDATE_CHANNEL)
        self._listener = asyncio.create_task(self._listen(), name="realtime-listener")
        logger.info("Realtime listener subscribed to %s", UPDATE_CHANNEL)

    async def _listen(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self._poll_timeout
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                record_realtime_event(self.backend, "listener_error")
                logger.exception("Realtime listener failed to read from Valkey")
                await asyncio.sleep(self._poll_timeout)
                continue

            if not message or message.get("type") != "message":
                # get_message returns immediately on some clients; yield to the loop.
                await asyncio.sleep(0)
                continue
            update = self._decode(message.get("data"))
            if update is not None:
                await self._deliver(update)

    async def close(self) -> None:
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await listener
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is not None:
            try:
                await pubsub.unsubscribe(UPDATE_CHANNEL)
                await pubsub.aclose()
            except Exception:
                logger.warning("Failed to close realtime pub/sub connection", exc_info=True)
        await super().close()


@lru_cache
def get_realtime_valkey_client() -> valkey.Valkey:
    """Return a shared Valkey client for the realtime store."""
    settings = get_settings()
    return valkey.from_url(
        settings.effective_realtime_valkey_url,
        encoding="utf-8",
        decode_responses=True,
    )


def build_realtime_store(
    settings: Settings, client: valkey.Valkey | None = None
) -> RealtimeStore:
    if settings.realtime_backend == "valkey":
        return ValkeyRealtimeStore(
            client or get_realtime_valkey_client(),
            recent_limit=settings.realtime_recent_limit,
        )
    return InMemoryRealtimeStore(recent_limit=settings.realtime_recent_limit)


__all__ = [
    "RealtimeStore",
    "InMemoryRealtimeStore",
    "ValkeyRealtimeStore",
    "build_realtime_store",
    "get_realtime_valkey_client",
    "RECENT_KEY",
    "UPDATE_CHANNEL",
    "SERVICE_KEY_PREFIX",
]
