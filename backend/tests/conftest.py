from __future__ import annotations

import asyncio
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable

import pytest

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from railfeeds.core.config import Settings  # noqa: E402
from railfeeds.services.rail_dto import Location  # noqa: E402
from railfeeds.services.reference import LocationIndex  # noqa: E402


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")


class FakePubSub:
    """Subset of the valkey pub/sub API backed by an asyncio queue."""

    def __init__(self, owner: "FakeValkey") -> None:
        self._owner = owner
        self.channels: set[str] = set()
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.closed = False

    async def subscribe(self, *channels: str) -> None:
        for channel in channels:
            self.channels.add(channel)
            self._owner._pubsubs.add(self)
            await self.queue.put({"type": "subscribe", "channel": channel, "data": 1})

    async def unsubscribe(self, *channels: str) -> None:
        for channel in channels or tuple(self.channels):
            self.channels.discard(channel)

    async def get_message(
        self, ignore_subscribe_messages: bool = False, timeout: float = 0.0
    ) -> dict[str, Any] | None:
        if self._owner.should_fail:
            raise RuntimeError("valkey unavailable")
        deadline = time.monotonic() + timeout
        while True:
            remaining = max(deadline - time.monotonic(), 0)
            try:
                message = await asyncio.wait_for(self.queue.get(), timeout=remaining or 0.01)
            except asyncio.TimeoutError:
                return None
            if ignore_subscribe_messages and message["type"] != "message":
                continue
            return message

    async def aclose(self) -> None:
        self.closed = True
        self._owner._pubsubs.discard(self)


class FakeValkey:
    """In-memory Valkey replacement used for tests."""

    def __init__(self) -> None:
        self._store: dict[str, tuple[str, float | None]] = {}
        self._lists: dict[str, list[str]] = {}
        self._pubsubs: set[FakePubSub] = set()
        self.published: list[tuple[str, str]] = []
        self.should_fail = False

    def _check(self) -> None:
        if self.should_fail:
            raise RuntimeError("valkey unavailable")

    def _prune(self) -> None:
        now = time.monotonic()
        expired = [
            key
            for key, (_, expires_at) in self._store.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            self._store.pop(key, None)

    async def get(self, key: str) -> str | None:
        self._prune()
        self._check()
        record = self._store.get(key)
        if record is None:
            return None
        value, _ = record
        return value

    async def set(
        self,
        key: str,
        value: str,
        ex: int | None = None,
        nx: bool | None = None,
    ) -> bool:
        self._prune()
        self._check()
        if nx and key in self._store:
            return False
        expires_at = time.monotonic() + ex if ex else None
        self._store[key] = (value, expires_at)
        return True

    async def delete(self, *keys: str) -> None:
        self._check()
        for key in keys:
            self._store.pop(key, None)
            self._lists.pop(key, None)

    async def lpush(self, key: str, *values: str) -> int:
        self._check()
        items = self._lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        self._check()
        items = self._lists.get(key, [])
        self._lists[key] = items[start : end + 1 if end != -1 else None]
        return True

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        self._check()
        items = self._lists.get(key, [])
        return items[start : end + 1 if end != -1 else None]

    async def publish(self, channel: str, message: str) -> int:
        self._check()
        self.published.append((channel, message))
        receivers = [p for p in self._pubsubs if channel in p.channels]
        for pubsub in receivers:
            await pubsub.queue.put({"type": "message", "channel": channel, "data": message})
        return len(receivers)

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self)


class FakeClock:
    """Controllable wall clock returning aware UTC datetimes."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 12, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeStompConnection:
    """Stands in for ``stomp.Connection11``; records calls and replays frames."""

    def __init__(self, fail_connect: Exception | None = None) -> None:
        self.fail_connect = fail_connect
        self.listeners: dict[str, Any] = {}
        self.connect_calls: list[dict[str, Any]] = []
        self.subscriptions: list[dict[str, Any]] = []
        self.disconnected = False

    def set_listener(self, name: str, listener: Any) -> None:
        self.listeners[name] = listener

    def remove_listener(self, name: str) -> None:
        del self.listeners[name]

    def connect(self, **kwargs: Any) -> None:
        self.connect_calls.append(kwargs)
        if self.fail_connect is not None:
            raise self.fail_connect

    def subscribe(self, destination: str, id: str, ack: str = "auto") -> None:
        self.subscriptions.append({"destination": destination, "id": id, "ack": ack})

    def disconnect(self) -> None:
        self.disconnected = True

    def deliver(self, destination: str, body: bytes | str) -> None:
        frame = SimpleNamespace(headers={"destination": destination}, body=body)
        for listener in list(self.listeners.values()):
            listener.on_message(frame)

    def drop(self) -> None:
        for listener in list(self.listeners.values()):
            listener.on_disconnected()


class FakeConnectionFactory:
    """Hands out FakeStompConnections, failing the first ``failures`` attempts."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.connections: list[FakeStompConnection] = []

    def __call__(self) -> FakeStompConnection:
        fail = ConnectionRefusedError("broker unavailable") if self.failures > 0 else None
        self.failures -= 1
        connection = FakeStompConnection(fail_connect=fail)
        self.connections.append(connection)
        return connection

    @property
    def last(self) -> FakeStompConnection:
        return self.connections[-1]


async def settle(condition: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until ``condition`` holds (thread hops included)."""
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)


SAMPLE_LOCATIONS = [
    Location(name="LONDON KINGS CROSS", stanox="72410", crs="KGX", tiploc="KNGX"),
    Location(name="KINGS CROSS SIGNAL K123", stanox="72411", crs="KGX", tiploc="KNGXSIG"),
    Location(name="FINSBURY PARK", stanox="72420", crs="FPK", tiploc="FNPK"),
    Location(name="STEVENAGE", stanox="72600", crs="SVG", tiploc="STEVNGE"),
    Location(name="PETERBOROUGH", stanox="49000", crs="PBO", tiploc="PBRO"),
    Location(name="HOLLOWAY JN", stanox="72415", tiploc="HOLWYJN"),
]


@pytest.fixture()
def fake_valkey() -> FakeValkey:
    return FakeValkey()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def connection_factory() -> FakeConnectionFactory:
    return FakeConnectionFactory()


@pytest.fixture()
def failing_connection_factory():
    """Build a connection factory whose first ``failures`` connects are refused."""
    return FakeConnectionFactory


@pytest.fixture()
def eventually():
    return settle


@pytest.fixture()
def locations() -> LocationIndex:
    return LocationIndex(SAMPLE_LOCATIONS)


@pytest.fixture()
def settings() -> Settings:
    """Settings with every feed configured and fast reconnects."""
    return Settings(
        _env_file=None,
        network_rail_username="user@example.com",
        network_rail_password="secret",
        darwin_enabled=True,
        darwin_username="darwin-user",
        darwin_password="darwin-pass",
        darwin_broker_url="http://bridge.test/",
        ldb_api_token="token-123",
        stomp_reconnect_base_ms=1,
        stomp_reconnect_max_ms=4,
        stomp_reconnect_max_attempts=3,
        stomp_connect_timeout_seconds=1.0,
    )


@pytest.fixture()
def bare_settings() -> Settings:
    """Settings with no credentials at all."""
    return Settings(
        _env_file=None,
        network_rail_username=None,
        network_rail_password=None,
        darwin_enabled=False,
        darwin_username=None,
        darwin_password=None,
        darwin_broker_url=None,
        ldb_api_token=None,
    )
