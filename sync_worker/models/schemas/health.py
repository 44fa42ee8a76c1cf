"""
Health Check Schemas
Models for system health endpoints
"""
from typing import Any, Dict, Optional
from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float
    schedulers: Dict[str, Any] = {}


class BriefSendResponse(BaseModel):
    """Response for the manual brief trigger."""
    ok: bool
    error: Optional[str] = None
