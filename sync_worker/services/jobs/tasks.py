"""
Dramatiq Background Tasks
Side pipelines enqueued after an event is inserted

Each actor builds fresh clients (workers run in separate processes),
runs the async service with asyncio.run and re-raises so Dramatiq retries.
The three per-event actors are idempotent: tags/links are upserts and
attachments are skipped when already recorded. backfill_enrichment_task is
queued by hand through run_enrichment_backfill.py.
"""
import asyncio
import logging
from typing import Optional

import dramatiq
from supabase import Client, create_client

from sync_worker.services.jobs.broker import broker  # noqa: F401  (registers the broker before actors)

logger = logging.getLogger(__name__)

SIDE_PIPELINE_QUEUE = "side_pipelines"


def get_supabase_client() -> Client:
    """Get Supabase client for background tasks."""
    from sync_worker.core.config import settings
    return create_client(settings.supabase_url, settings.supabase_service_key)


@dramatiq.actor(queue_name=SIDE_PIPELINE_QUEUE, max_retries=3)
def apply_rules_task(event_id: str, user_id: str):
    """Apply the user's tagging rules to a new event."""
    from sync_worker.services.preprocessing.rules import apply_rules_to_event

    try:
        supabase = get_supabase_client()
        matched = asyncio.run(apply_rules_to_event(supabase, event_id, user_id))
        logger.info(f"✅ Rules applied to event {event_id}: {len(matched)} matched")
    except Exception as e:
        logger.error(f"❌ Rule task failed for event {event_id}: {e}", exc_info=True)
        raise  # Let Dramatiq handle retries


@dramatiq.actor(queue_name=SIDE_PIPELINE_QUEUE, max_retries=3)
def enrich_event_task(event_id: str):
    """Heuristic categorization/tagging of a new event."""
    from sync_worker.services.preprocessing.enrichment import enrich_event

    try:
        supabase = get_supabase_client()
        asyncio.run(enrich_event(supabase, event_id))
    except Exception as e:
        logger.error(f"❌ Enrichment task failed for event {event_id}: {e}", exc_info=True)
        raise


async def _run_attachment_pipeline(
    supabase: Client,
    connection_id: str,
    event_id: str,
    message_id: str,
    account: Optional[str],
    shared_mailbox: bool
):
    from sync_worker.core.dependencies import create_http_client
    from sync_worker.services.sync.attachments import process_message_attachments
    from sync_worker.services.sync.oauth import ensure_valid_token

    http_client = create_http_client()
    try:
        access_token = await ensure_valid_token(http_client, supabase, connection_id)
        return await process_message_attachments(
            http_client, supabase, access_token, message_id, event_id, account, shared_mailbox
        )
    finally:
        # Cleanup HTTP client in the same event loop
        await http_client.aclose()


@dramatiq.actor(queue_name=SIDE_PIPELINE_QUEUE, max_retries=3)
def process_attachments_task(
    connection_id: str,
    event_id: str,
    message_id: str,
    account: Optional[str] = None,
    shared_mailbox: bool = False
):
    """Download, store and extract the attachments of a new email event."""
    logger.info(f"📎 Starting attachment job for event {event_id}")
    try:
        supabase = get_supabase_client()
        stats = asyncio.run(_run_attachment_pipeline(
            supabase, connection_id, event_id, message_id, account, shared_mailbox
        ))
        logger.info(f"✅ Attachment job for event {event_id} complete: {stats}")
    except Exception as e:
        logger.error(f"❌ Attachment job failed for event {event_id}: {e}", exc_info=True)
        raise


@dramatiq.actor(queue_name=SIDE_PIPELINE_QUEUE, max_retries=1, time_limit=30 * 60 * 1000)
def backfill_enrichment_task(limit: int = 100):
    """Enrich older events that were stored before enrichment ran (or while it was disabled)."""
    from sync_worker.services.preprocessing.enrichment import backfill_enrichment

    supabase = get_supabase_client()
    enriched = asyncio.run(backfill_enrichment(supabase, limit))
    logger.info(f"✅ Enrichment backfill finished: {enriched} events")
