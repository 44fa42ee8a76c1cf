"""
Database helper functions for the sync worker
Handles connections and per-resource delta cursors (sync_state)
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import Client

from sync_worker.models.schemas import Connection, ResourceType

logger = logging.getLogger(__name__)

CONNECTIONS_TABLE = "integration_connections"
SYNC_STATE_TABLE = "sync_state"


class ConnectionNotFoundError(Exception):
    """No integration_connections row for the given id."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# CONNECTION MANAGEMENT
# ============================================================================

async def get_connection(supabase: Client, connection_id: str) -> Optional[Connection]:
    """Load one connection, or None if it does not exist."""
    result = supabase.table(CONNECTIONS_TABLE)\
        .select("*")\
        .eq("id", connection_id)\
        .limit(1)\
        .execute()

    if not result.data:
        return None
    return Connection.model_validate(result.data[0])


async def require_connection(supabase: Client, connection_id: str) -> Connection:
    """Like get_connection, but raises ConnectionNotFoundError when missing."""
    connection = await get_connection(supabase, connection_id)
    if connection is None:
        raise ConnectionNotFoundError(f"Connection {connection_id} not found")
    return connection


async def get_active_connections(supabase: Client, provider_key: str) -> List[Connection]:
    """All connections for the provider whose status is 'connected'."""
    result = supabase.table(CONNECTIONS_TABLE)\
        .select("*")\
        .eq("provider_key", provider_key)\
        .eq("status", "connected")\
        .execute()

    connections = []
    for row in result.data or []:
        try:
            connections.append(Connection.model_validate(row))
        except Exception as e:
            logger.warning(f"⚠️  Skipping malformed connection row {row.get('id')}: {e}")
    return connections


async def update_connection(supabase: Client, connection_id: str, fields: Dict[str, Any]):
    """Patch a connection row."""
    supabase.table(CONNECTIONS_TABLE).update(fields).eq("id", connection_id).execute()


async def mark_connection_synced(supabase: Client, connection_id: str):
    """Stamp last_synced_at after a successful run and clear any stale error."""
    await update_connection(supabase, connection_id, {
        "last_synced_at": _now_iso(),
        "last_error": None
    })


# ============================================================================
# CURSOR MANAGEMENT (sync_state)
# ============================================================================

async def get_cursor(supabase: Client, connection_id: str, resource_type: ResourceType) -> Optional[str]:
    """
    Get the stored delta link for (connection, resource type).

    Never raises: a failed lookup is treated as "no cursor", which costs a
    windowed resync instead of blocking the run.
    """
    try:
        result = supabase.table(SYNC_STATE_TABLE)\
            .select("delta_link")\
            .eq("connection_id", connection_id)\
            .eq("resource_type", resource_type.value)\
            .limit(1)\
            .execute()

        if result.data:
            return result.data[0].get("delta_link")
        return None
    except Exception as e:
        logger.warning(f"⚠️  Cursor lookup failed for {connection_id}/{resource_type.value}, forcing full fetch: {e}")
        return None


async def save_cursor(supabase: Client, connection_id: str, resource_type: ResourceType, delta_link: str):
    """Save or overwrite the delta link for (connection, resource type)."""
    supabase.table(SYNC_STATE_TABLE).upsert(
        {
            "connection_id": connection_id,
            "resource_type": resource_type.value,
            "delta_link": delta_link,
            "held_runs": 0,
            "last_synced_at": _now_iso()
        },
        on_conflict="connection_id,resource_type"
    ).execute()
    logger.info(f"💾 Saved {resource_type.value} cursor for connection {connection_id}")


async def clear_cursor(supabase: Client, connection_id: str, resource_type: ResourceType):
    """Delete the cursor so the next run falls back to a windowed fetch."""
    supabase.table(SYNC_STATE_TABLE)\
        .delete()\
        .eq("connection_id", connection_id)\
        .eq("resource_type", resource_type.value)\
        .execute()
    logger.info(f"🧹 Cleared {resource_type.value} cursor for connection {connection_id}")


async def get_cursor_holds(supabase: Client, connection_id: str, resource_type: ResourceType) -> int:
    """Consecutive runs that kept this cursor back because writes failed (0 if unknown)."""
    try:
        result = supabase.table(SYNC_STATE_TABLE)\
            .select("held_runs")\
            .eq("connection_id", connection_id)\
            .eq("resource_type", resource_type.value)\
            .limit(1)\
            .execute()
    except Exception as e:
        logger.warning(f"⚠️  Hold counter lookup failed for {connection_id}/{resource_type.value}: {e}")
        return 0

    if not result.data:
        return 0
    return result.data[0].get("held_runs") or 0


async def record_cursor_hold(supabase: Client, connection_id: str, resource_type: ResourceType, held_runs: int):
    """Store the hold counter without touching delta_link (creates the row on a first sync)."""
    supabase.table(SYNC_STATE_TABLE).upsert(
        {
            "connection_id": connection_id,
            "resource_type": resource_type.value,
            "held_runs": held_runs
        },
        on_conflict="connection_id,resource_type"
    ).execute()
