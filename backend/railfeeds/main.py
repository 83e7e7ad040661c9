from contextlib import asynccontextmanager
import logging

from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from railfeeds.api.metrics import router as metrics_router
from railfeeds.api.v1.routes import router as api_router
from railfeeds.core.config import get_settings
from railfeeds.core.telemetry import (
    configure_opentelemetry,
    instrument_fastapi,
    instrument_httpx,
)
from railfeeds.jobs.feed_scheduler import FeedScheduler
from railfeeds.services.engine import init_engine, shutdown_engine

logger = logging.getLogger(__name__)
REQUEST_ID_HEADER = "X-Request-Id"


def _configure_stomp_logging(debug: bool) -> None:
    """
    Silence the STOMP library's frame-level logging unless explicitly enabled.

    stomp.py logs every heartbeat and frame at INFO/DEBUG; with several
    subscriptions that drowns the application logs. STOMP_DEBUG_LOGGING=true
    restores them.
    """
    level = logging.DEBUG if debug else logging.WARNING
    for name in ("stomp", "stomp.py"):
        stomp_logger = logging.getLogger(name)
        stomp_logger.setLevel(level)
        stomp_logger.propagate = debug


def _install_request_id_middleware(app: FastAPI) -> None:
    """Ensure each response includes a stable X-Request-Id header."""

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER, str(uuid4()))
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan events."""
    settings = get_settings()

    # Configure OpenTelemetry at startup
    configure_opentelemetry(
        service_name=settings.otel_service_name,
        service_version=settings.otel_service_version,
        otlp_endpoint=settings.otel_exporter_otlp_endpoint,
        otlp_headers=settings.otel_exporter_otlp_headers,
        enabled=settings.otel_enabled,
    )

    # Instrument httpx for outbound request tracing
    instrument_httpx(enabled=settings.otel_enabled)

    engine = await init_engine(settings)
    scheduler = FeedScheduler(settings, engine)
    await scheduler.start()
    app.state.engine = engine
    app.state.scheduler = scheduler

    try:
        yield
    finally:
        await scheduler.stop()
        await shutdown_engine()


def create_app() -> FastAPI:
    """Application factory for FastAPI."""
    settings = get_settings()
    app = FastAPI(
        title="Railfeeds API",
        description="UK rail feed ingestion and aggregation engine.",
        version="0.1.0",
        lifespan=lifespan,
    )

    _configure_stomp_logging(settings.stomp_debug_logging)

    # Instrument FastAPI for tracing if enabled
    instrument_fastapi(app, enabled=settings.otel_enabled)
    _install_request_id_middleware(app)

    allow_origins = settings.cors_allow_origins
    allow_origin_regex = settings.cors_allow_origin_regex
    if allow_origins or allow_origin_regex:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_origin_regex=allow_origin_regex,
            allow_credentials=bool(allow_origins),
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(metrics_router)
    app.include_router(api_router, prefix="/api/v1")

    return app


app = create_app()
