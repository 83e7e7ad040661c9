from fastapi import APIRouter

from railfeeds.api.v1.endpoints.health import router as health_router
from railfeeds.api.v1.endpoints.realtime import router as realtime_router

router = APIRouter()
router.include_router(health_router, tags=["meta"])
router.include_router(realtime_router, prefix="/realtime", tags=["realtime"])
