"""
Sync Schemas
Models for the on-demand sync trigger and run-ledger reads
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel


class SyncTriggerResponse(BaseModel):
    """
    Response for POST /sync/{connection_id}.
    Only says the run was accepted; the outcome lives in the run ledger.
    """
    ok: bool
    message: str
    connection_id: str


class IngestionRunResponse(BaseModel):
    id: str
    connection_id: str
    status: str  # "running", "success", "failed"
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    items_processed: int = 0
    items_created: int = 0
    items_updated: int = 0
    items_duplicate: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    items_flagged: int = 0  # stored with needs_review
    error_message: Optional[str] = None


class IngestionRunListResponse(BaseModel):
    connection_id: str
    runs: List[IngestionRunResponse] = []
