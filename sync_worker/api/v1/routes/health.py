"""
Health Check Routes
System status and scheduler diagnostics
"""
import logging
import time

from fastapi import APIRouter, Request

from sync_worker.models.schemas import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

VERSION = "1.0.0"
_started_at = time.monotonic()


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint with uptime and scheduler status."""
    schedulers = {}
    for name in ("sync_scheduler", "brief_scheduler"):
        scheduler = getattr(request.app.state, name, None)
        if scheduler is not None:
            schedulers[name] = scheduler.status()

    return HealthResponse(
        status="healthy",
        version=VERSION,
        uptime_seconds=round(time.monotonic() - _started_at, 1),
        schedulers=schedulers
    )


@router.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "M365 Sync Worker",
        "version": VERSION,
        "description": "Incremental Microsoft Graph mail/calendar sync with daily briefs",
        "endpoints": {
            "health": "/health",
            "sync": "/sync/{connection_id}",
            "runs": "/sync/{connection_id}/runs",
            "brief": "/brief/send/{user_id}"
        }
    }
