"""
Tag helpers shared by the rule and enrichment services
tags(id, name UNIQUE) + event_tags(event_id, tag_id) junction
"""
import logging
from typing import Optional

from supabase import Client

logger = logging.getLogger(__name__)


def get_or_create_tag(supabase: Client, name: str) -> Optional[str]:
    """Tag id for name, creating it if missing. Handles the create race by re-reading."""
    existing = supabase.table("tags").select("id").eq("name", name).limit(1).execute()
    if existing.data:
        return existing.data[0]["id"]

    try:
        created = supabase.table("tags").insert({"name": name}).execute()
        if created.data:
            return created.data[0]["id"]
    except Exception as e:
        logger.debug(f"Tag insert for {name!r} failed, re-reading: {e}")

    existing = supabase.table("tags").select("id").eq("name", name).limit(1).execute()
    if existing.data:
        return existing.data[0]["id"]

    logger.error(f"Failed to create tag {name!r}")
    return None


def link_tag(supabase: Client, event_id: str, name: str) -> bool:
    """Attach a tag to an event; an existing link is not an error."""
    tag_id = get_or_create_tag(supabase, name)
    if not tag_id:
        return False

    supabase.table("event_tags").upsert(
        {"event_id": event_id, "tag_id": tag_id},
        on_conflict="event_id,tag_id",
        ignore_duplicates=True
    ).execute()
    return True
