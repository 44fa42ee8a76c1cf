"""
Sync Routes
On-demand sync trigger and run-ledger reads

POST /sync/{connection_id} only accepts the run; its outcome is recorded in
ingestion_runs and read back through the GET endpoints.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from supabase import Client

from sync_worker.core.dependencies import get_supabase
from sync_worker.models.schemas import (
    IngestionRunListResponse, IngestionRunResponse, SyncTriggerResponse
)
from sync_worker.services.sync.database import ConnectionNotFoundError, require_connection
from sync_worker.services.sync.ledger import get_run, list_runs

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/{connection_id}", status_code=202, response_model=SyncTriggerResponse)
async def trigger_sync(
    connection_id: str,
    request: Request,
    supabase: Client = Depends(get_supabase)
):
    """
    Start a sync for one connection in the background.

    Returns 202 immediately; 404 if the connection does not exist;
    500 if the sync could not be started.
    """
    logger.info(f"⚡ Manual sync requested for connection {connection_id}")

    try:
        connection = await require_connection(supabase, connection_id)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail=f"Connection {connection_id} not found")
    except Exception as e:
        logger.error(f"❌ Failed to load connection {connection_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to start sync: {e}")

    scheduler = getattr(request.app.state, "sync_scheduler", None)
    if scheduler is None:
        logger.error("❌ Sync scheduler not initialized")
        raise HTTPException(status_code=500, detail="Sync scheduler not initialized")

    try:
        scheduler.trigger_connection(connection)
    except Exception as e:
        logger.error(f"❌ Failed to start sync for {connection_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to start sync: {e}")

    return SyncTriggerResponse(ok=True, message="Sync started", connection_id=connection_id)


@router.get("/runs/{run_id}", response_model=IngestionRunResponse)
async def get_ingestion_run(run_id: str, supabase: Client = Depends(get_supabase)):
    """Read one run ledger row."""
    run = await get_run(supabase, run_id)
    if not run:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return IngestionRunResponse.model_validate(run)


@router.get("/{connection_id}/runs", response_model=IngestionRunListResponse)
async def list_ingestion_runs(
    connection_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    supabase: Client = Depends(get_supabase)
):
    """Most recent runs for a connection."""
    runs = await list_runs(supabase, connection_id, limit)
    return IngestionRunListResponse(
        connection_id=connection_id,
        runs=[IngestionRunResponse.model_validate(run) for run in runs]
    )
