"""
Post-insert side pipeline dispatch

Builds the on_insert hook handed to the writer. Modes (SIDE_PIPELINE_MODE):
- queue:    enqueue Dramatiq actors (production)
- inline:   await the services in the sync process (local dev, no Redis)
- disabled: no hook

Hooks run after the row is committed, so nothing here can undo a write.
"""
import logging
from typing import Optional

import httpx
from supabase import Client

from sync_worker.core.config import settings
from sync_worker.models.schemas import CanonicalEvent, Connection
from sync_worker.services.sync.persistence import InsertHook

logger = logging.getLogger(__name__)


def build_insert_hook(
    http_client: httpx.AsyncClient,
    supabase: Client,
    connection: Connection,
    access_token: str,
    mode: Optional[str] = None
) -> Optional[InsertHook]:
    """
    Side pipelines for one connection's sync run.

    Args:
        http_client: Client for attachment downloads (inline mode)
        supabase: Supabase client (inline mode)
        connection: Connection being synced
        access_token: Graph token of this run (inline mode)
        mode: Overrides settings.side_pipeline_mode

    Returns:
        Async hook (event_id, event) or None when disabled
    """
    mode = mode or settings.side_pipeline_mode
    shared_mailbox = bool(connection.config.get("shared_mailbox"))

    if mode == "disabled":
        return None

    if mode == "queue":
        from sync_worker.services.jobs.tasks import (
            apply_rules_task, enrich_event_task, process_attachments_task
        )

        def send(event_id: str, actor, *args):
            # One pipeline failing to enqueue must not drop the others
            try:
                actor.send(*args)
            except Exception as e:
                logger.error(f"❌ Could not enqueue {actor.actor_name} for event {event_id}: {e}")

        async def enqueue(event_id: str, event: CanonicalEvent):
            send(event_id, enrich_event_task, event_id)
            if event.user_id:
                send(event_id, apply_rules_task, event_id, event.user_id)
            if event.has_attachments and event.provider_id:
                send(
                    event_id, process_attachments_task,
                    connection.id, event_id, event.provider_id, connection.account, shared_mailbox
                )

        return enqueue

    if mode == "inline":
        from sync_worker.services.preprocessing.enrichment import enrich_event
        from sync_worker.services.preprocessing.rules import apply_rules_to_event
        from sync_worker.services.sync.attachments import process_message_attachments

        async def run_inline(event_id: str, event: CanonicalEvent):
            try:
                await enrich_event(supabase, event_id)
            except Exception as e:
                logger.error(f"❌ Inline enrichment failed for {event_id}: {e}")

            if event.user_id:
                try:
                    await apply_rules_to_event(supabase, event_id, event.user_id)
                except Exception as e:
                    logger.error(f"❌ Inline rules failed for {event_id}: {e}")

            if event.has_attachments and event.provider_id:
                try:
                    await process_message_attachments(
                        http_client, supabase, access_token, event.provider_id,
                        event_id, connection.account, shared_mailbox
                    )
                except Exception as e:
                    logger.error(f"❌ Inline attachment processing failed for {event_id}: {e}")

        return run_inline

    raise ValueError(f"Unknown side pipeline mode: {mode}")
