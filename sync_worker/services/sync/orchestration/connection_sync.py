"""
Connection sync orchestration
Incremental Microsoft Graph sync for one connection

Stages (strictly ordered): BEGIN → FETCH/PROCESS per resource → FINALIZE.
Every run that begins is finalized exactly once (complete or fail), and the
per-connection guard is always released.
"""
import asyncio
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from supabase import Client

from sync_worker.core.config import settings
from sync_worker.models.schemas import (
    CanonicalEvent, Connection, ResourceType, RunStats, WriteStatus
)
from sync_worker.services.jobs.dispatch import build_insert_hook
from sync_worker.services.sync.canonical import CanonicalizationError, is_tombstone, to_canonical_event
from sync_worker.services.sync.database import (
    clear_cursor, get_cursor, get_cursor_holds, mark_connection_synced, record_cursor_hold, save_cursor
)
from sync_worker.services.sync.ledger import begin_run, complete_run, fail_run
from sync_worker.services.sync.locks import InProcessSyncGuard, SyncGuard, connection_scope, ensure_lease
from sync_worker.services.sync.oauth import ensure_valid_token
from sync_worker.services.sync.persistence import InsertHook, record_failed_record, write_if_new
from sync_worker.services.sync.providers.microsoft_graph import (
    MAIL_FOLDERS, InvalidCursorError, fetch_page
)

logger = logging.getLogger(__name__)

TokenProvider = Callable[[str], Awaitable[str]]
HookFactory = Callable[[Connection, str], Optional[InsertHook]]
LeaseCheck = Callable[[], Awaitable[None]]

# Used when no guard is injected (tests, scripts). The app shares one via dependencies.
_default_guard = InProcessSyncGuard()


def resource_types_for(sync_sent_items: Optional[bool] = None) -> List[ResourceType]:
    """Resource pipelines in processing order."""
    if sync_sent_items is None:
        sync_sent_items = settings.sync_sent_items

    resources = [ResourceType.MESSAGES]
    if sync_sent_items:
        resources.append(ResourceType.SENT_MESSAGES)
    resources.append(ResourceType.CALENDAR)
    return resources


# ============================================================================
# RESOURCE PIPELINE
# ============================================================================

async def _settle_write_failures(
    supabase: Client,
    connection: Connection,
    resource_type: ResourceType,
    failures: List[Tuple[Any, Optional[str], str]]
) -> bool:
    """
    Decide whether the cursor may move past a batch with failed writes.

    The batch is replayed (cursor held) up to settings.max_cursor_holds
    consecutive runs. After that the failing records are parked in
    failed_records with their raw payload and the cursor advances, so one
    record that never stores cannot stall the resource.

    Returns:
        True if the cursor may advance
    """
    holds = await get_cursor_holds(supabase, connection.id, resource_type)
    if holds < settings.max_cursor_holds:
        await record_cursor_hold(supabase, connection.id, resource_type, holds + 1)
        logger.warning(
            f"⚠️  {len(failures)} write(s) failed for {resource_type.value} of {connection.id}; "
            f"cursor held back ({holds + 1}/{settings.max_cursor_holds}), batch is replayed next run"
        )
        return False

    parked = [
        await record_failed_record(supabase, connection.id, resource_type.value, raw, error, external_id)
        for raw, external_id, error in failures
    ]
    if not all(parked):
        logger.error(f"❌ Could not dead-letter every failed {resource_type.value} record of {connection.id}; cursor held")
        return False

    logger.warning(
        f"📮 {len(failures)} {resource_type.value} record(s) of {connection.id} still failing after "
        f"{holds} replays; moved to failed_records and advancing the cursor"
    )
    return True


async def sync_resource(
    http_client: httpx.AsyncClient,
    supabase: Client,
    connection: Connection,
    access_token: str,
    resource_type: ResourceType,
    on_insert: Optional[InsertHook] = None,
    stats: Optional[RunStats] = None,
    lease_check: Optional[LeaseCheck] = None
) -> RunStats:
    """
    Fetch one resource type and write its records one at a time, in fetch order.

    Args:
        http_client: Async HTTP client instance
        supabase: Supabase client instance
        connection: Connection being synced
        access_token: Valid Graph access token
        resource_type: messages / sent_messages / calendar
        on_insert: Side pipeline hook for newly stored events
        stats: Accumulator, updated in place so partial progress survives a later failure
        lease_check: Awaited before the cursor moves; raises if the run lost its lease

    Returns:
        The stats accumulator

    Raises:
        InvalidCursorError: after clearing the stored cursor
        GraphAPIError / httpx.HTTPError: fetch failures (abort the run)
        LeaseLostError: from lease_check, before any cursor change
    """
    stats = stats if stats is not None else RunStats()
    shared_mailbox = bool(connection.config.get("shared_mailbox"))
    user_id = connection.user_id or settings.default_user_id
    folder = MAIL_FOLDERS.get(resource_type)

    cursor = await get_cursor(supabase, connection.id, resource_type)

    try:
        fetched = await fetch_page(
            http_client,
            access_token,
            connection.account,
            resource_type,
            cursor=cursor,
            shared_mailbox=shared_mailbox
        )
    except InvalidCursorError:
        logger.warning(f"🔄 {resource_type.value} cursor for {connection.id} rejected; clearing for full resync")
        await clear_cursor(supabase, connection.id, resource_type)
        raise

    write_failures: List[Tuple[Any, Optional[str], str]] = []

    for raw in fetched.records:
        if is_tombstone(raw):
            stats.skipped += 1
            continue

        stats.processed += 1

        try:
            event: CanonicalEvent = to_canonical_event(
                raw,
                resource_type.event_type,
                connection_id=connection.id,
                user_id=user_id,
                folder=folder
            )
        except CanonicalizationError as e:
            stats.failed += 1
            logger.error(f"   ❌ Could not canonicalize {resource_type.value} record {raw.get('id') if isinstance(raw, dict) else raw!r}: {e}")
            continue
        except Exception as e:
            stats.failed += 1
            logger.error(f"   ❌ Unexpected error canonicalizing {resource_type.value} record: {e}", exc_info=True)
            continue

        try:
            result = await write_if_new(supabase, event, on_insert=on_insert)
        except Exception as e:
            stats.failed += 1
            write_failures.append((raw, event.external_id, f"{type(e).__name__}: {e}"))
            logger.error(f"   ❌ Failed to store {event.event_type.value} {event.external_id}: {e}")
            continue

        if result.status == WriteStatus.INSERTED:
            stats.created += 1
            if result.flagged:
                stats.flagged += 1
        else:
            stats.duplicates += 1

    if lease_check is not None:
        await lease_check()

    # Cursor advance. Replaying a batch is safe because writes are idempotent.
    advance = True
    if write_failures:
        advance = await _settle_write_failures(supabase, connection, resource_type, write_failures)

    if advance:
        # A parked nextLink (page cap hit) takes precedence over the deltaLink
        new_cursor = fetched.continuation_link or fetched.next_cursor
        if new_cursor:
            await save_cursor(supabase, connection.id, resource_type, new_cursor)
        elif cursor:
            logger.warning(f"⚠️  No delta link returned for {resource_type.value} of {connection.id}; clearing cursor")
            await clear_cursor(supabase, connection.id, resource_type)

    logger.info(
        f"✅ {resource_type.value} for {connection.id}: {len(fetched.records)} fetched, "
        f"{stats.created} created, {stats.duplicates} duplicates, {stats.failed} failed so far"
    )
    return stats


# ============================================================================
# CONNECTION SYNC
# ============================================================================

async def _sync_resources(
    http_client: httpx.AsyncClient,
    supabase: Client,
    connection: Connection,
    access_token: str,
    on_insert: Optional[InsertHook],
    stats: RunStats,
    guard: SyncGuard,
    scope: str
) -> RunStats:
    resources = resource_types_for()
    lease_check = partial(ensure_lease, guard, scope)

    async def run_resource(resource_type: ResourceType, resource_stats: RunStats) -> RunStats:
        await lease_check()
        return await sync_resource(
            http_client, supabase, connection, access_token, resource_type,
            on_insert, resource_stats, lease_check=lease_check
        )

    if not settings.concurrent_resource_sync:
        for resource_type in resources:
            await run_resource(resource_type, stats)
        return stats

    # Independent cursors and endpoints: run side by side, let every pipeline finish
    per_resource = [RunStats() for _ in resources]
    results = await asyncio.gather(
        *(
            run_resource(resource_type, resource_stats)
            for resource_type, resource_stats in zip(resources, per_resource)
        ),
        return_exceptions=True
    )

    for resource_stats in per_resource:
        merged = stats.merge(resource_stats)
        for name in RunStats.model_fields:
            setattr(stats, name, getattr(merged, name))

    errors = [result for result in results if isinstance(result, BaseException)]
    if errors:
        raise errors[0]
    return stats


async def _finalize_run(supabase: Client, run_id: str, stats: RunStats, error: Optional[str]):
    try:
        if error:
            await fail_run(supabase, run_id, error, stats)
        else:
            await complete_run(supabase, run_id, stats)
    except Exception as e:
        logger.error(f"❌ Could not finalize run {run_id}: {e}", exc_info=True)


async def sync_connection(
    http_client: httpx.AsyncClient,
    supabase: Client,
    connection: Connection,
    guard: Optional[SyncGuard] = None,
    token_provider: Optional[TokenProvider] = None,
    hook_factory: Optional[HookFactory] = None
) -> Dict[str, Any]:
    """
    Run one incremental sync for a connection.

    Args:
        http_client: Async HTTP client instance
        supabase: Supabase client instance
        connection: Connection to sync
        guard: Per-connection mutual exclusion (defaults to a module-level in-process guard)
        token_provider: connection_id -> access token (defaults to ensure_valid_token)
        hook_factory: (connection, access_token) -> on_insert hook (defaults to build_insert_hook)

    Returns:
        {"status": success|failed|skipped, "connection_id", "run_id", "stats", "error"|"reason"}

    Raises:
        RunLedgerError: the run row could not be created (nothing else can be recorded)
    """
    account = connection.account
    if not account:
        logger.warning(f"⚠️  Connection {connection.id} has no account email configured; skipping")
        return {"status": "skipped", "reason": "no_account", "connection_id": connection.id}

    guard = guard or _default_guard
    token_provider = token_provider or partial(ensure_valid_token, http_client, supabase)
    if hook_factory is None:
        hook_factory = partial(build_insert_hook, http_client, supabase)

    scope = connection_scope(connection.id)
    if not await guard.acquire(scope):
        logger.info(f"⏭️  Sync already running for connection {connection.id}; skipping")
        return {"status": "skipped", "reason": "already_running", "connection_id": connection.id}

    try:
        logger.info(f"🚀 Starting sync for connection {connection.id} ({account})")
        run_id = await begin_run(supabase, connection.id)

        stats = RunStats()
        error: Optional[str] = "Sync interrupted before completion"
        try:
            access_token = await token_provider(connection.id)
            on_insert = hook_factory(connection, access_token)
            await _sync_resources(http_client, supabase, connection, access_token, on_insert, stats, guard, scope)

            error = f"{stats.failed} record(s) failed to process" if stats.failed else None
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(f"❌ Sync failed for connection {connection.id}: {error}", exc_info=True)
        finally:
            await _finalize_run(supabase, run_id, stats, error)

        if error is None:
            try:
                await mark_connection_synced(supabase, connection.id)
            except Exception as e:
                logger.warning(f"⚠️  Could not stamp last_synced_at for {connection.id}: {e}")
            logger.info(
                f"✅ Sync complete for {connection.id}: {stats.created} created, "
                f"{stats.duplicates} duplicates, {stats.skipped} skipped"
            )

        return {
            "status": "failed" if error else "success",
            "connection_id": connection.id,
            "run_id": run_id,
            "stats": stats.model_dump(),
            "error": error,
        }
    finally:
        try:
            await guard.release(scope)
        except Exception as e:
            logger.error(f"❌ Failed to release sync guard for {connection.id}: {e}")
