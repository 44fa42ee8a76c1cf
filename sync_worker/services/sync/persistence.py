"""
Event persistence helpers
Deduplicating writer for canonical events

The unique constraint on events(event_type, external_id) is the source of
truth: inserts are ON CONFLICT DO NOTHING, and an empty insert result means
another writer got there first. The select before the insert only saves a
round-trip for the common "already stored" case.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from supabase import Client

from sync_worker.core.config import settings
from sync_worker.models.schemas import CanonicalEvent, WriteResult, WriteStatus

logger = logging.getLogger(__name__)

EVENTS_TABLE = "events"
DUPLICATE_LOG_TABLE = "duplicate_prevention_log"
FAILED_RECORDS_TABLE = "failed_records"
EVENT_CONFLICT_TARGET = "event_type,external_id"

InsertHook = Callable[[str, CanonicalEvent], Awaitable[None]]


class EventWriteError(Exception):
    """Insert neither created a row nor found the conflicting one."""


def strip_null_bytes(value: Any) -> Any:
    """Postgres text/jsonb reject \\u0000; mail bodies occasionally contain it."""
    if isinstance(value, str):
        return value.replace("\x00", "")
    if isinstance(value, dict):
        return {k: strip_null_bytes(v) for k, v in value.items()}
    if isinstance(value, list):
        return [strip_null_bytes(v) for v in value]
    return value


async def find_existing_event_id(supabase: Client, event_type: str, external_id: str) -> Optional[str]:
    result = supabase.table(EVENTS_TABLE)\
        .select("id")\
        .eq("event_type", event_type)\
        .eq("external_id", external_id)\
        .limit(1)\
        .execute()
    return result.data[0]["id"] if result.data else None


async def log_prevented_duplicate(
    supabase: Client,
    event: CanonicalEvent,
    existing_event_id: Optional[str],
    source_component: str
):
    """Append to duplicate_prevention_log. Audit only: failures are logged, never raised."""
    if not settings.log_prevented_duplicates:
        return

    try:
        supabase.table(DUPLICATE_LOG_TABLE).insert({
            "external_id": event.external_id,
            "event_type": event.event_type.value,
            "subject": strip_null_bytes(event.subject)[:500],
            "existing_event_id": existing_event_id,
            "source_component": source_component,
            "detected_at": datetime.now(timezone.utc).isoformat()
        }).execute()
    except Exception as e:
        logger.warning(f"⚠️  Failed to log prevented duplicate {event.external_id}: {e}")


async def record_failed_record(
    supabase: Client,
    connection_id: str,
    resource_type: str,
    raw: Any,
    error: str,
    external_id: Optional[str] = None
) -> bool:
    """
    Park a record that could not be stored in failed_records, raw payload included.

    Returns:
        True if the row was written. The caller only moves its cursor past
        the record when this succeeds.
    """
    try:
        supabase.table(FAILED_RECORDS_TABLE).insert(strip_null_bytes({
            "connection_id": connection_id,
            "resource_type": resource_type,
            "external_id": external_id,
            "provider_id": raw.get("id") if isinstance(raw, dict) else None,
            "error": error[:2000],
            "raw": raw if isinstance(raw, dict) else {"value": repr(raw)},
            "failed_at": datetime.now(timezone.utc).isoformat()
        })).execute()
        return True
    except Exception as e:
        logger.error(f"❌ Could not dead-letter {resource_type} record {external_id}: {e}")
        return False


async def _run_insert_hook(on_insert: Optional[InsertHook], event_id: str, event: CanonicalEvent):
    if on_insert is None:
        return
    try:
        await on_insert(event_id, event)
    except Exception as e:
        logger.error(f"   ⚠️  Post-insert hook failed for event {event_id} (event is stored): {e}")


async def write_if_new(
    supabase: Client,
    event: CanonicalEvent,
    on_insert: Optional[InsertHook] = None,
    source_component: str = "connection_sync"
) -> WriteResult:
    """
    Store the event unless (event_type, external_id) already exists.

    Args:
        supabase: Supabase client
        event: Canonical event to store
        on_insert: Awaited after a successful insert with (event_id, event).
            Its failures are logged and never change the result.
        source_component: Recorded in the duplicate-prevention log

    Returns:
        WriteResult with status inserted/duplicate and the stored event id

    Raises:
        EventWriteError / Supabase errors: the write itself failed
    """
    row = strip_null_bytes(event.to_row())
    event_type = event.event_type.value

    # Unidentifiable records cannot be deduplicated: store and flag them
    if not event.external_id:
        row["needs_review"] = True
        result = supabase.table(EVENTS_TABLE).insert(row).execute()
        if not result.data:
            raise EventWriteError(f"Insert of unidentified {event_type} returned no row")
        event_id = result.data[0]["id"]
        logger.warning(f"   🚩 Stored {event_type} without identifier for review: {event_id} ({event.subject[:60]})")
        await _run_insert_hook(on_insert, event_id, event)
        return WriteResult(status=WriteStatus.INSERTED, event_id=event_id, flagged=True)

    # Fast path
    existing_id = await find_existing_event_id(supabase, event_type, event.external_id)
    if existing_id:
        logger.debug(f"   ⏭️  Duplicate {event_type} {event.external_id} (existing {existing_id})")
        await log_prevented_duplicate(supabase, event, existing_id, source_component)
        return WriteResult(status=WriteStatus.DUPLICATE, event_id=existing_id)

    result = supabase.table(EVENTS_TABLE).upsert(
        row,
        on_conflict=EVENT_CONFLICT_TARGET,
        ignore_duplicates=True
    ).execute()

    if result.data:
        event_id = result.data[0]["id"]
        logger.debug(f"   ✅ Stored {event_type} {event_id}: {event.subject[:60]}")
        await _run_insert_hook(on_insert, event_id, event)
        return WriteResult(
            status=WriteStatus.INSERTED,
            event_id=event_id,
            flagged=event.needs_review
        )

    # Conflict: a concurrent writer inserted between the check and the insert
    existing_id = await find_existing_event_id(supabase, event_type, event.external_id)
    if not existing_id:
        raise EventWriteError(f"Insert of {event_type} {event.external_id} was ignored but no existing row was found")

    logger.info(f"   ⏭️  Concurrent duplicate {event_type} {event.external_id} resolved to {existing_id}")
    await log_prevented_duplicate(supabase, event, existing_id, source_component)
    return WriteResult(status=WriteStatus.DUPLICATE, event_id=existing_id)
