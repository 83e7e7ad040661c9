from __future__ import annotations

from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from railfeeds.main import create_app
from railfeeds.services.engine import RailEngine, get_engine


@asynccontextmanager
async def _no_lifespan(app: FastAPI):
    yield


@pytest.fixture
def engine(bare_settings) -> RailEngine:
    """Engine with every transport unconfigured and the in-memory realtime store."""
    return RailEngine.build(bare_settings)


@pytest.fixture
def api_app(engine: RailEngine) -> FastAPI:
    app = create_app()
    # Skip engine and scheduler startup; tests inject their own engine.
    app.router.lifespan_context = _no_lifespan
    app.dependency_overrides[get_engine] = lambda: engine
    app.state.engine = engine
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def api_client(api_app: FastAPI) -> TestClient:
    with TestClient(api_app) as client:
        yield client
