"""
Brief Routes
Manual daily-brief trigger
"""
import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException
from supabase import Client

from sync_worker.core.dependencies import get_http_client, get_supabase
from sync_worker.models.schemas import BriefSendResponse
from sync_worker.services.brief.service import send_brief

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/brief", tags=["brief"])


@router.post("/send/{user_id}", response_model=BriefSendResponse)
async def send_brief_now(
    user_id: str,
    supabase: Client = Depends(get_supabase),
    http_client: httpx.AsyncClient = Depends(get_http_client)
):
    """Send the daily brief for a user right away (ignores delivery_time)."""
    logger.info(f"📧 Manual brief trigger for user {user_id}")

    result = await send_brief(supabase, http_client, user_id)
    if not result.ok:
        raise HTTPException(status_code=400, detail=result.error or "Brief not sent")

    return BriefSendResponse(ok=True)
