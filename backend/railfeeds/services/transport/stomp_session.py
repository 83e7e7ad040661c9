"""Persistent STOMP session with bounded exponential-backoff reconnection.

stomp.py runs its own receiver thread. Every listener callback is marshalled
onto the owning event loop with ``call_soon_threadsafe`` so message handlers and
state changes only ever run on the loop thread.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import stomp

from railfeeds.core.metrics import record_stomp_connect
from railfeeds.core.telemetry import get_tracer
from railfeeds.services.rail_dto import utc_now
from railfeeds.services.rail_errors import (
    FeedConnectionError,
    FeedTimeoutError,
    NotConfiguredError,
)

logger = logging.getLogger(__name__)

HEARTBEAT_MS = 10_000

MessageHandler = Callable[[str, bytes], None]
ConnectionFactory = Callable[[], Any]


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKOFF = "backoff"
    EXHAUSTED = "exhausted"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Subscription:
    destination: str
    id: str


@dataclass(frozen=True)
class ReconnectPolicy:
    base_ms: int = 1000
    max_ms: int = 30000
    max_attempts: int = 10

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before reconnect ``attempt`` (1-based)."""
        return min(self.base_ms * 2 ** max(attempt - 1, 0), self.max_ms) / 1000


def stomp_connection_factory(
    host: str, port: int, vhost: str | None = None, use_ssl: bool = False
) -> ConnectionFactory:
    """Return a factory building a fresh ``stomp.Connection11`` per attempt."""

    def build() -> stomp.Connection11:
        connection = stomp.Connection11(
            host_and_ports=[(host, port)],
            keepalive=True,
            heartbeats=(HEARTBEAT_MS, HEARTBEAT_MS),
            reconnect_attempts_max=1,
            vhost=vhost,
            auto_decode=False,
        )
        if use_ssl:
            connection.set_ssl(for_hosts=[(host, port)])
        return connection

    return build


class _SessionListener(stomp.ConnectionListener):
    """Forwards receiver-thread callbacks onto the session's event loop."""

    def __init__(self, session: "StompSession", loop: asyncio.AbstractEventLoop) -> None:
        self._session = session
        self._loop = loop

    def _post(self, callback: Callable[..., None], *args: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Loop already closed during shutdown.
            logger.debug("Dropping STOMP callback for %s", self._session.name)

    def on_connected(self, frame) -> None:
        headers = getattr(frame, "headers", {}) or {}
        logger.info(
            "STOMP %s connected (version=%s server=%s)",
            self._session.name,
            headers.get("version", "?"),
            headers.get("server", "?"),
        )

    def on_disconnected(self) -> None:
        self._post(self._session._handle_disconnect)

    def on_error(self, frame) -> None:
        body = getattr(frame, "body", b"")
        if isinstance(body, bytes):
            body = body.decode("utf-8", errors="replace")
        logger.warning("STOMP %s error frame: %s", self._session.name, body[:500])

    def on_message(self, frame) -> None:
        headers = getattr(frame, "headers", {}) or {}
        body = frame.body
        if isinstance(body, str):
            body = body.encode("utf-8")
        self._post(self._session._dispatch, headers.get("destination", ""), body)


class StompSession:
    """One persistent connection to a STOMP broker.

    At most one connect attempt is in flight at a time. After
    ``policy.max_attempts`` consecutive failures the session becomes
    ``EXHAUSTED`` and stays down until ``restart()`` is called.
    """

    def __init__(
        self,
        name: str,
        *,
        username: str | None,
        password: str | None,
        subscriptions: Sequence[Subscription],
        on_message: MessageHandler,
        connection_factory: ConnectionFactory,
        policy: ReconnectPolicy | None = None,
        connect_timeout: float = 30.0,
        vhost: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.name = name
        self._username = username
        self._password = password
        self._subscriptions = tuple(subscriptions)
        self._on_message = on_message
        self._factory = connection_factory
        self._policy = policy or ReconnectPolicy()
        self._connect_timeout = connect_timeout
        self._vhost = vhost
        self._clock = clock

        self._state = SessionState.IDLE
        self._attempts = 0
        self._connection: Any | None = None
        self._connect_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._message_count = 0
        self._last_message_at: datetime | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    @property
    def exhausted(self) -> bool:
        return self._state is SessionState.EXHAUSTED

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def message_count(self) -> int:
        return self._message_count

    @property
    def last_message_at(self) -> datetime | None:
        return self._last_message_at

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Begin connecting in the background. Safe to call repeatedly."""
        if self._state in (SessionState.CONNECTED, SessionState.CONNECTING):
            return
        if self._task is not None and not self._task.done():
            return
        if self._state is SessionState.STOPPED:
            self._state = SessionState.IDLE
        self._task = asyncio.create_task(
            self._connect_with_backoff(), name=f"stomp-{self.name}"
        )

    async def stop(self) -> None:
        """Cancel pending reconnects and close the connection. Idempotent."""
        self._state = SessionState.STOPPED
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_connection()
        logger.info("STOMP session %s stopped", self.name)

    async def restart(self) -> None:
        """Stop, reset the attempt counter and start again."""
        await self.stop()
        self._attempts = 0
        self._state = SessionState.IDLE
        await self.start()

    # ------------------------------------------------------------------
    # Connecting
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Perform a single connect attempt, raising on failure."""
        if not (self._username and self._password):
            raise NotConfiguredError(f"STOMP session {self.name} has no credentials")

        async with self._connect_lock:
            if self._state is SessionState.CONNECTED:
                return
            if self._state is SessionState.STOPPED:
                raise FeedConnectionError(f"STOMP session {self.name} is stopped")

            self._state = SessionState.CONNECTING
            loop = asyncio.get_running_loop()
            connection = self._factory()
            connection.set_listener(self.name, _SessionListener(self, loop))

            try:
                await asyncio.wait_for(
                    asyncio.to_thread(
                        connection.connect,
                        login=self._username,
                        passcode=self._password,
                        wait=True,
                        headers={"host": self._vhost} if self._vhost else {},
                    ),
                    timeout=self._connect_timeout,
                )
                for subscription in self._subscriptions:
                    connection.subscribe(
                        destination=subscription.destination,
                        id=subscription.id,
                        ack="auto",
                    )
            except asyncio.TimeoutError as exc:
                record_stomp_connect(self.name, "timeout")
                await self._discard(connection)
                raise FeedTimeoutError(
                    f"STOMP session {self.name} connect timed out after "
                    f"{self._connect_timeout:.0f}s"
                ) from exc
            except asyncio.CancelledError:
                await self._discard(connection)
                raise
            except Exception as exc:
                record_stomp_connect(self.name, "error")
                await self._discard(connection)
                raise FeedConnectionError(
                    f"STOMP session {self.name} connect failed: {exc}"
                ) from exc

            self._connection = connection
            self._state = SessionState.CONNECTED
            self._attempts = 0
            record_stomp_connect(self.name, "success")
            logger.info(
                "STOMP session %s subscribed to %d destination(s)",
                self.name,
                len(self._subscriptions),
            )

    async def _connect_with_backoff(self) -> None:
        while self._state is not SessionState.STOPPED:
            try:
                with get_tracer().start_as_current_span(
                    "stomp.connect",
                    attributes={"stomp.session": self.name, "stomp.attempt": self._attempts + 1},
                ):
                    await self.connect()
                return
            except NotConfiguredError as exc:
                logger.info("%s", exc)
                self._state = SessionState.IDLE
                return
            except (FeedConnectionError, FeedTimeoutError) as exc:
                if self._state is SessionState.STOPPED:
                    return
                self._attempts += 1
                if self._attempts >= self._policy.max_attempts:
                    self._state = SessionState.EXHAUSTED
                    logger.error(
                        "STOMP session %s giving up after %d attempts: %s",
                        self.name,
                        self._attempts,
                        exc,
                    )
                    return
                delay = self._policy.delay_for(self._attempts)
                self._state = SessionState.BACKOFF
                logger.warning(
                    "STOMP session %s attempt %d failed (%s); retrying in %.1fs",
                    self.name,
                    self._attempts,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)

    def _handle_disconnect(self) -> None:
        if self._state in (SessionState.STOPPED, SessionState.CONNECTING):
            return
        logger.warning("STOMP session %s disconnected; scheduling reconnect", self.name)
        self._connection = None
        self._state = SessionState.BACKOFF
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(
                self._connect_with_backoff(), name=f"stomp-{self.name}"
            )

    def _dispatch(self, destination: str, body: bytes) -> None:
        self._message_count += 1
        self._last_message_at = self._clock()
        try:
            self._on_message(destination, body)
        except Exception:
            logger.exception("Unhandled error in %s message handler", self.name)

    async def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            await self._discard(connection)

    async def _discard(self, connection: Any) -> None:
        with contextlib.suppress(KeyError):
            connection.remove_listener(self.name)
        try:
            await asyncio.to_thread(connection.disconnect)
        except Exception as exc:
            logger.debug("STOMP session %s disconnect failed: %s", self.name, exc)


__all__ = [
    "SessionState",
    "Subscription",
    "ReconnectPolicy",
    "StompSession",
    "stomp_connection_factory",
]
