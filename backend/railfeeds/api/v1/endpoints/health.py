from fastapi import APIRouter, Depends

from railfeeds.models.rail import NetworkStatusResponse
from railfeeds.services.engine import RailEngine, get_engine

router = APIRouter()


@router.get("/health")
async def healthcheck() -> dict[str, str]:
    """Lightweight readiness probe."""
    return {"status": "ok"}


@router.get("/network/status", response_model=NetworkStatusResponse)
async def network_status(engine: RailEngine = Depends(get_engine)) -> NetworkStatusResponse:
    """Network health rollup across every feed the engine consumes."""
    return NetworkStatusResponse.from_dto(engine.aggregator.network_status())
