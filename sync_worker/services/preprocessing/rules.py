"""
Rule Service
Applies user-defined tagging rules to newly ingested events

A rule matches one field (subject, body_text, from, to, any) with one
operator against a list of values, case-insensitively. On a match it adds
tags, merges projects and may set importance. Identity columns
(event_type, external_id, source) are never touched.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from supabase import Client

from sync_worker.services.preprocessing.tags import link_tag

logger = logging.getLogger(__name__)


def _field_value(field: str, event: Dict[str, Any]) -> str:
    metadata = event.get("metadata") or {}

    def as_text(value: Any) -> str:
        if isinstance(value, list):
            return " ".join(str(v) for v in value if v)
        return str(value or "")

    if field == "subject":
        return as_text(event.get("subject"))
    if field == "body_text":
        return as_text(event.get("body_text"))
    if field == "from":
        return as_text(metadata.get("from") or metadata.get("organizer"))
    if field == "to":
        return as_text(metadata.get("to"))
    if field == "any":
        return " ".join([
            as_text(event.get("subject")),
            as_text(event.get("body_text")),
            as_text(metadata.get("from") or metadata.get("organizer")),
            as_text(metadata.get("to")),
        ])
    return ""


def evaluate_rule(rule: Dict[str, Any], event: Dict[str, Any]) -> bool:
    """True if the rule's condition holds for the event."""
    field = rule.get("match_field")
    if field not in ("subject", "body_text", "from", "to", "any"):
        return False

    value = _field_value(field, event).lower()
    match_values = [str(v).lower() for v in (rule.get("match_values") or []) if str(v).strip()]
    if not match_values:
        return False

    operator = rule.get("match_operator")
    if operator == "contains_any":
        return any(v in value for v in match_values)
    if operator == "contains":
        return all(v in value for v in match_values)
    if operator == "equals":
        return any(value == v for v in match_values)
    if operator == "starts_with":
        return any(value.startswith(v) for v in match_values)
    if operator == "ends_with":
        return any(value.endswith(v) for v in match_values)
    if operator == "from_domain":
        return any(v.lstrip("@") in value for v in match_values)
    return False


def _execute_rule_action(supabase: Client, rule: Dict[str, Any], event: Dict[str, Any]):
    event_id = event["id"]

    for tag_name in rule.get("add_tags") or []:
        if link_tag(supabase, event_id, tag_name):
            logger.info(f"  → Added tag {tag_name!r}")

    updates: Dict[str, Any] = {}

    new_projects = rule.get("add_projects") or []
    if new_projects:
        existing = event.get("projects") or []
        merged = list(dict.fromkeys([*existing, *new_projects]))
        if merged != existing:
            updates["projects"] = merged
            event["projects"] = merged

    importance = rule.get("set_importance")
    if importance and importance != event.get("importance"):
        updates["importance"] = importance
        event["importance"] = importance

    if updates:
        supabase.table("events").update(updates).eq("id", event_id).execute()

    supabase.table("rules").update({
        "match_count": (rule.get("match_count") or 0) + 1,
        "last_matched_at": datetime.now(timezone.utc).isoformat()
    }).eq("id", rule["id"]).execute()


async def apply_rules_to_event(supabase: Client, event_id: str, user_id: str) -> List[str]:
    """
    Apply all enabled rules of a user to one event, highest priority first.

    Returns:
        Ids of the rules that matched

    Raises:
        Supabase errors while loading the event or rules. Per-rule action
        failures are logged and do not stop later rules.
    """
    event_result = supabase.table("events")\
        .select("id, event_type, subject, body_text, metadata, projects, importance")\
        .eq("id", event_id)\
        .limit(1)\
        .execute()
    if not event_result.data:
        logger.warning(f"⚠️  Rules: event {event_id} not found")
        return []
    event = event_result.data[0]

    rules_result = supabase.table("rules")\
        .select("*")\
        .eq("user_id", user_id)\
        .eq("is_enabled", True)\
        .order("priority", desc=True)\
        .execute()
    rules = rules_result.data or []
    if not rules:
        logger.debug("No active rules to apply")
        return []

    matched = []
    for rule in rules:
        if not evaluate_rule(rule, event):
            continue

        logger.info(f"✓ Rule {rule.get('name')!r} matched event {event_id}")
        matched.append(rule["id"])
        try:
            _execute_rule_action(supabase, rule, event)
        except Exception as e:
            logger.error(f"Failed to execute action for rule {rule['id']}: {e}")

    return matched
