"""Websocket stream of realtime service updates."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from railfeeds.models.rail import RealtimeEvent, ServiceUpdate
from railfeeds.services.engine import RailEngine, get_engine

logger = logging.getLogger(__name__)

router = APIRouter()

# Per-connection backlog; a client that falls this far behind loses the oldest updates.
QUEUE_SIZE = 500


async def _forward(websocket: WebSocket, queue: asyncio.Queue[ServiceUpdate]) -> None:
    while True:
        update = await queue.get()
        event = RealtimeEvent(type="service_update", data=update)
        await websocket.send_json(event.model_dump(mode="json"))


@router.websocket("/ws")
async def realtime_updates(
    websocket: WebSocket, engine: RailEngine = Depends(get_engine)
) -> None:
    """Send one bootstrap event (newest first), then every service update."""
    await websocket.accept()
    queue: asyncio.Queue[ServiceUpdate] = asyncio.Queue(maxsize=QUEUE_SIZE)

    def enqueue(update: ServiceUpdate) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(update)

    # Subscribe before reading the snapshot so nothing falls between the two.
    unsubscribe = engine.realtime.subscribe(enqueue)
    sender: asyncio.Task | None = None
    try:
        snapshot = await engine.realtime.snapshot()
        bootstrap = RealtimeEvent(type="bootstrap", data=snapshot)
        await websocket.send_json(bootstrap.model_dump(mode="json"))

        sender = asyncio.create_task(_forward(websocket, queue))
        while True:
            # Client messages are ignored; receiving only detects disconnects.
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Realtime client disconnected")
    finally:
        unsubscribe()
        if sender is not None:
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await sender
