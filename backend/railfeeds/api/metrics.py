from __future__ import annotations

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from railfeeds.core.metrics import record_feed_health

router = APIRouter()


@router.get("/metrics", include_in_schema=False)
async def metrics(request: Request) -> Response:
    """Expose Prometheus metrics, refreshing feed liveness gauges first."""
    engine = getattr(request.app.state, "engine", None)
    if engine is not None:
        record_feed_health(engine.stats.snapshot())
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
