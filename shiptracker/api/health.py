"""Health endpoints: liveness and readiness."""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from shiptracker.api.router import get_relay
from shiptracker.services.relay import RelayService

router = APIRouter(tags=["health"])
logger = logging.getLogger("ais.health")


@router.get("/health/live")
async def liveness():
    """Liveness: process is running. No dependencies checked."""
    return {"status": "ok"}


@router.get("/health/ready")
async def readiness(relay: RelayService = Depends(get_relay)):
    """Readiness: transit store is reachable. Live relaying works without it."""
    if not await relay.tracker.ping():
        logger.warning("Store readiness check failed")
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "errors": ["database"], "upstream": relay.upstream.state.value},
        )
    return {"status": "ok", "upstream": relay.upstream.state.value}
