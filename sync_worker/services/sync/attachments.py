"""
Attachment pipeline
Lists a message's file attachments, stores them in Supabase Storage,
extracts text and records an attachments row. One bad attachment never
stops the others.
"""
import logging
import re
from typing import Any, Dict, Optional

import httpx
from supabase import Client

from sync_worker.core.config import settings
from sync_worker.services.preprocessing.file_parser import extract_text_from_bytes
from sync_worker.services.sync.providers.microsoft_graph import download_attachment, list_attachments

logger = logging.getLogger(__name__)

ATTACHMENTS_TABLE = "attachments"
FILE_ATTACHMENT_TYPE = "#microsoft.graph.fileAttachment"


def sanitize_filename(filename: str) -> str:
    return re.sub(r"[^a-zA-Z0-9.-]", "_", filename or "attachment")


def storage_path_for(event_id: str, filename: str) -> str:
    return f"{event_id}/{sanitize_filename(filename)}"


async def attachment_exists(supabase: Client, event_id: str, filename: str) -> bool:
    result = supabase.table(ATTACHMENTS_TABLE)\
        .select("id")\
        .eq("event_id", event_id)\
        .eq("filename", filename)\
        .limit(1)\
        .execute()
    return bool(result.data)


async def upload_attachment(supabase: Client, event_id: str, filename: str, content: bytes, mime_type: str) -> str:
    path = storage_path_for(event_id, filename)
    supabase.storage.from_(settings.attachments_bucket).upload(
        path,
        content,
        file_options={"content-type": mime_type or "application/octet-stream", "upsert": "true"}
    )
    return path


def _skip_reason(attachment: Dict[str, Any]) -> Optional[str]:
    if attachment.get("isInline"):
        return "inline"
    odata_type = attachment.get("@odata.type")
    if odata_type and odata_type != FILE_ATTACHMENT_TYPE:
        return f"not a file ({odata_type})"
    if (attachment.get("size") or 0) > settings.attachment_max_bytes:
        return f"too large ({attachment.get('size')} bytes)"
    return None


async def process_message_attachments(
    http_client: httpx.AsyncClient,
    supabase: Client,
    access_token: str,
    message_id: str,
    event_id: str,
    account: Optional[str] = None,
    shared_mailbox: bool = False
) -> Dict[str, int]:
    """
    Store every new non-inline file attachment of a message.

    Returns:
        {"stored": n, "skipped": n, "failed": n}

    Raises:
        GraphAPIError / httpx.HTTPError: listing the attachments failed
    """
    stats = {"stored": 0, "skipped": 0, "failed": 0}

    attachments = await list_attachments(http_client, access_token, message_id, account, shared_mailbox)
    if not attachments:
        return stats

    logger.info(f"   📎 Processing {len(attachments)} attachment(s) for event {event_id}")

    for attachment in attachments:
        filename = attachment.get("name") or "attachment"
        try:
            reason = _skip_reason(attachment)
            if reason:
                logger.debug(f"      ⏭️  Skipping {filename}: {reason}")
                stats["skipped"] += 1
                continue

            if await attachment_exists(supabase, event_id, filename):
                logger.debug(f"      ⏭️  Skipping existing attachment: {filename}")
                stats["skipped"] += 1
                continue

            mime_type = attachment.get("contentType") or "application/octet-stream"
            content = await download_attachment(
                http_client, access_token, message_id, attachment["id"], account, shared_mailbox
            )
            path = await upload_attachment(supabase, event_id, filename, content, mime_type)
            text = extract_text_from_bytes(content, mime_type, filename)

            supabase.table(ATTACHMENTS_TABLE).insert({
                "event_id": event_id,
                "filename": filename,
                "mime_type": mime_type,
                "byte_size": attachment.get("size") or len(content),
                "storage_url": path,
                "text_extract": text.replace("\x00", "") if text else None
            }).execute()

            stats["stored"] += 1
            logger.info(f"      ✅ Stored attachment {filename} ({len(content)} bytes)")

        except Exception as e:
            stats["failed"] += 1
            logger.error(f"      ❌ Failed to process attachment {filename}: {e}")

    return stats
