"""Tests for FastAPI app lifecycle helpers."""

from __future__ import annotations

import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from railfeeds import main


def test_configure_stomp_logging_sets_expected_levels():
    logger_names = ["stomp", "stomp.py"]
    original = []
    for name in logger_names:
        logger = logging.getLogger(name)
        original.append((logger, logger.level, logger.propagate))

    try:
        main._configure_stomp_logging(debug=False)
        for logger, _, _ in original:
            assert logger.level == logging.WARNING
            assert logger.propagate is False

        main._configure_stomp_logging(debug=True)
        for logger, _, _ in original:
            assert logger.level == logging.DEBUG
            assert logger.propagate is True
    finally:
        for logger, level, propagate in original:
            logger.setLevel(level)
            logger.propagate = propagate


def test_request_id_middleware_respects_existing_header(monkeypatch):
    app = FastAPI()
    main._install_request_id_middleware(app)

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    client = TestClient(app)
    response = client.get("/ping", headers={main.REQUEST_ID_HEADER: "external-id"})
    assert response.headers[main.REQUEST_ID_HEADER] == "external-id"

    monkeypatch.setattr(main, "uuid4", lambda: "generated-id")
    response = client.get("/ping")
    assert response.headers[main.REQUEST_ID_HEADER] == "generated-id"


@pytest.mark.asyncio
async def test_lifespan_starts_and_stops_engine_and_scheduler(monkeypatch):
    fake_settings = SimpleNamespace(
        otel_service_name="svc",
        otel_service_version="1.0.0",
        otel_exporter_otlp_endpoint="http://otel",
        otel_exporter_otlp_headers=None,
        otel_enabled=True,
    )
    configure_calls = {}

    def fake_configure(**kwargs):
        configure_calls.update(kwargs)

    httpx_calls = {}

    def fake_instrument_httpx(*, enabled: bool):
        httpx_calls["enabled"] = enabled

    fake_engine = object()
    fake_scheduler = AsyncMock()
    init_engine = AsyncMock(return_value=fake_engine)
    shutdown_engine = AsyncMock()
    scheduler_cls = MagicMock(return_value=fake_scheduler)

    monkeypatch.setattr(main, "get_settings", lambda: fake_settings)
    monkeypatch.setattr(main, "configure_opentelemetry", fake_configure)
    monkeypatch.setattr(main, "instrument_httpx", fake_instrument_httpx)
    monkeypatch.setattr(main, "init_engine", init_engine)
    monkeypatch.setattr(main, "shutdown_engine", shutdown_engine)
    monkeypatch.setattr(main, "FeedScheduler", scheduler_cls)

    app = FastAPI()
    async with main.lifespan(app):
        assert configure_calls["service_name"] == "svc"
        assert configure_calls["enabled"] is True
        assert httpx_calls["enabled"] is True
        assert app.state.engine is fake_engine
        assert app.state.scheduler is fake_scheduler
        fake_scheduler.start.assert_awaited_once()

    init_engine.assert_awaited_once_with(fake_settings)
    scheduler_cls.assert_called_once_with(fake_settings, fake_engine)
    fake_scheduler.stop.assert_awaited_once()
    shutdown_engine.assert_awaited_once()


def test_create_app_passes_otel_flag_to_fastapi(monkeypatch):
    fake_settings = SimpleNamespace(
        cors_allow_origins=["http://localhost"],
        cors_allow_origin_regex=None,
        otel_enabled=False,
        stomp_debug_logging=False,
    )
    fastapi_call = {}

    def fake_instrument_fastapi(app: FastAPI, *, enabled: bool):
        fastapi_call["enabled"] = enabled

    monkeypatch.setattr(main, "get_settings", lambda: fake_settings)
    monkeypatch.setattr(main, "instrument_fastapi", fake_instrument_fastapi)
    monkeypatch.setattr(main, "_configure_stomp_logging", lambda _: None)

    created_app = main.create_app()

    assert isinstance(created_app, FastAPI)
    assert fastapi_call["enabled"] is False
    paths = {route.path for route in created_app.routes}
    assert {"/metrics", "/api/v1/health", "/api/v1/network/status", "/api/v1/realtime/ws"} <= paths
