"""
Run Ledger
One ingestion_runs row per orchestrated sync attempt.

begin_run() inserts a 'running' row; exactly one of complete_run() /
fail_run() finalizes it.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import Client

from sync_worker.models.schemas import RunStats, RunStatus

logger = logging.getLogger(__name__)

RUNS_TABLE = "ingestion_runs"
MAX_ERROR_LENGTH = 2000


class RunLedgerError(Exception):
    """The ledger could not record the start of a run."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def begin_run(supabase: Client, connection_id: str) -> str:
    """
    Insert a 'running' row and return its id.

    Raises:
        RunLedgerError: insert failed or returned no id. Without a run id no
            outcome can be recorded, so the caller must not proceed.
    """
    try:
        result = supabase.table(RUNS_TABLE).insert({
            "connection_id": connection_id,
            "status": RunStatus.RUNNING.value,
            "started_at": _now_iso()
        }).execute()
    except Exception as e:
        raise RunLedgerError(f"Failed to create ingestion run for {connection_id}: {e}") from e

    if not result.data or not result.data[0].get("id"):
        raise RunLedgerError(f"Ingestion run insert for {connection_id} returned no id")

    run_id = result.data[0]["id"]
    logger.info(f"📝 Ingestion run {run_id} started for connection {connection_id}")
    return run_id


async def complete_run(supabase: Client, run_id: str, stats: RunStats):
    """Mark the run successful with its aggregate counts."""
    supabase.table(RUNS_TABLE).update({
        "status": RunStatus.SUCCESS.value,
        "finished_at": _now_iso(),
        **stats.to_ledger_fields()
    }).eq("id", run_id).execute()
    logger.info(
        f"✅ Ingestion run {run_id} complete: {stats.processed} processed, "
        f"{stats.created} created, {stats.duplicates} duplicates, {stats.failed} failed"
    )


async def fail_run(supabase: Client, run_id: str, message: str, stats: Optional[RunStats] = None):
    """Mark the run failed with the captured error (and whatever counts were reached)."""
    fields: Dict[str, Any] = {
        "status": RunStatus.FAILED.value,
        "finished_at": _now_iso(),
        "error_message": (message or "Unknown error")[:MAX_ERROR_LENGTH]
    }
    if stats is not None:
        fields.update(stats.to_ledger_fields())

    supabase.table(RUNS_TABLE).update(fields).eq("id", run_id).execute()
    logger.error(f"❌ Ingestion run {run_id} failed: {message}")


async def get_run(supabase: Client, run_id: str) -> Optional[Dict[str, Any]]:
    result = supabase.table(RUNS_TABLE).select("*").eq("id", run_id).limit(1).execute()
    return result.data[0] if result.data else None


async def list_runs(supabase: Client, connection_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    """Most recent runs first."""
    result = supabase.table(RUNS_TABLE)\
        .select("*")\
        .eq("connection_id", connection_id)\
        .order("started_at", desc=True)\
        .limit(limit)\
        .execute()
    return result.data or []
