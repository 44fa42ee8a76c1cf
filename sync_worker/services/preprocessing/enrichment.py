"""
Enrichment Service - Auto-Tagging & Categorization
Pattern-based classification of events for search and the daily brief

Tags produced: category:*, topic:*, action:*, sender:*
Results are merged into events.metadata.enrichment and linked through event_tags.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from supabase import Client

from sync_worker.core.config import settings
from sync_worker.models.schemas import EnrichmentEntities, EnrichmentResult
from sync_worker.services.preprocessing.tags import link_tag

logger = logging.getLogger(__name__)

MAX_ENTITIES = 10

# ============================================================================
# PATTERNS
# ============================================================================

# Checked in order; first category scoring >= 2 wins (from/subject = 2, body = 1)
CONTENT_TYPE_PATTERNS: Dict[str, Dict[str, List[str]]] = {
    "newsletter": {
        "from": ["newsletter", "digest", "weekly", "daily", "noreply", "no-reply", "marketing", "news@", "updates@"],
        "subject": ["newsletter", "digest", "weekly update", "daily briefing", "this week in"],
        "body": ["unsubscribe", "view in browser", "email preferences", "opt out"],
    },
    "receipt": {
        "subject": ["receipt", "order confirmation", "payment confirmation", "invoice #", "your order", "purchase confirmation"],
        "body": ["total:", "amount charged", "order number", "transaction id", "billing"],
    },
    "shipping": {
        "subject": ["shipped", "delivery", "tracking", "out for delivery", "delivered", "package"],
        "body": ["tracking number", "estimated delivery", "carrier:", "shipment"],
    },
    "alert": {
        "from": ["alert", "notification", "system", "security", "admin"],
        "subject": ["alert:", "warning:", "action required", "security notice", "important:"],
        "body": ["suspicious activity", "password reset", "verify your"],
    },
    "meeting-invite": {
        "subject": ["invitation:", "invite:", "meeting request", "calendar invite"],
        "body": ["join meeting", "dial-in", "conference", "zoom.us", "teams.microsoft", "meet.google"],
    },
    "meeting-notes": {
        "subject": ["meeting notes", "meeting summary", "recap:", "follow-up:", "action items from"],
        "body": ["action items", "next steps", "attendees:", "discussed:"],
    },
}

TOPIC_PATTERNS: Dict[str, List[str]] = {
    "finance": ["invoice", "payment", "budget", "expense", "revenue", "cost", "price", "quote",
                "proposal", "billing", "payroll", "tax", "accounting", "financial", "$", "dollars"],
    "travel": ["flight", "hotel", "reservation", "itinerary", "booking", "airport", "travel",
               "airline", "boarding pass", "check-in", "rental car", "trip"],
    "legal": ["contract", "agreement", "terms", "nda", "legal", "compliance", "policy",
              "signature required", "docusign", "liability", "confidential"],
    "health": ["appointment", "doctor", "medical", "health", "prescription", "pharmacy",
               "insurance claim", "wellness", "healthcare"],
    "scheduling": ["reschedule", "availability", "calendar", "schedule", "meeting time",
                   "when are you", "free to meet", "book a time", "slot"],
    "support": ["ticket #", "case #", "support request", "help desk", "customer service",
                "issue resolved", "we received your", "thank you for contacting"],
}

ACTION_PATTERNS: Dict[str, List[str]] = {
    "reply-needed": ["please reply", "let me know", "get back to me", "your thoughts?", "what do you think",
                     "can you confirm", "please respond", "awaiting your", "need your input", "rsvp",
                     "please advise", "your feedback", "?"],
    "review-needed": ["please review", "for your review", "take a look", "need approval", "sign off",
                      "approve this", "review attached", "feedback needed", "comments welcome"],
    "deadline": ["deadline", "due by", "due date", "by eod", "by end of day", "asap", "urgent",
                 "time sensitive", "expires", "last chance", "final notice", "immediately"],
}

ACTION_ITEM_INDICATORS = ["action required", "action needed", "please", "could you", "can you",
                          "need you to", "would you", "your turn", "assigned to you"]

AUTOMATED_SENDER_PATTERNS = ["noreply", "no-reply", "donotreply", "mailer-daemon",
                             "notifications@", "alerts@", "system@", "auto@"]

PEOPLE_PATTERNS = [
    re.compile(r"(?:hi|hello|dear|hey)\s+([A-Z][a-z]+)", re.IGNORECASE),
    re.compile(r"(?:thanks|regards|best),?\s*\n?\s*([A-Z][a-z]+)", re.IGNORECASE),
    re.compile(r"(?:from|to|cc):\s*([A-Z][a-z]+\s+[A-Z][a-z]+)", re.IGNORECASE),
]
COMPANY_PATTERNS = [
    re.compile(r"([A-Z][a-zA-Z]+(?:\s+[A-Z][a-zA-Z]+)*)\s+(?:Inc|LLC|Corp|Ltd|Company|Co\.|Group|Holdings)\b"),
    re.compile(r"(?:at|from|with)\s+([A-Z][a-zA-Z]+(?:\s+[A-Z][a-zA-Z]+)*)"),
]
AMOUNT_PATTERN = re.compile(r"\$[\d,]+(?:\.\d{2})?|\d+(?:,\d{3})*(?:\.\d{2})?\s*(?:dollars|USD)", re.IGNORECASE)
DATE_PATTERNS = [
    re.compile(r"\b(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\s+\d{1,2}(?:,?\s+\d{4})?\b", re.IGNORECASE),
    re.compile(r"\b\d{1,2}/\d{1,2}/\d{2,4}\b"),
    re.compile(r"\b(?:Monday|Tuesday|Wednesday|Thursday|Friday|Saturday|Sunday)\b", re.IGNORECASE),
    re.compile(r"\b(?:today|tomorrow|next week|this week|end of day|eod|asap)\b", re.IGNORECASE),
]


# ============================================================================
# ANALYSIS (pure)
# ============================================================================

def _matches(text: str, keywords: List[str]) -> bool:
    return any(keyword.lower() in text for keyword in keywords)


def _dedupe(values: List[str]) -> List[str]:
    return list(dict.fromkeys(values))[:MAX_ENTITIES]


def detect_category(sender: str, subject: str, body: str, event_type: str) -> str:
    if event_type == "meeting":
        return "meeting"

    for category, patterns in CONTENT_TYPE_PATTERNS.items():
        score = 0
        if _matches(sender, patterns.get("from", [])):
            score += 2
        if _matches(subject, patterns.get("subject", [])):
            score += 2
        if _matches(body, patterns.get("body", [])):
            score += 1
        if score >= 2:
            return category

    if _matches(f"{subject} {body}", ACTION_ITEM_INDICATORS):
        return "action-item"
    return "fyi"


def analyze_sender(sender: str, vip_domains: Optional[List[str]] = None) -> Tuple[str, bool]:
    """(sender_type, is_vip). Automated senders are never VIP."""
    if _matches(sender, AUTOMATED_SENDER_PATTERNS):
        return "automated", False

    vip_domains = settings.vip_domain_list if vip_domains is None else vip_domains
    is_vip = any(domain in sender for domain in vip_domains)
    return "external", is_vip


def extract_entities(subject: str, body: str) -> EnrichmentEntities:
    text = f"{subject} {body}"

    people = [m.group(1).strip() for p in PEOPLE_PATTERNS for m in p.finditer(text) if len(m.group(1)) > 2]
    companies = [m.group(1).strip() for p in COMPANY_PATTERNS for m in p.finditer(text) if len(m.group(1)) > 2]
    amounts = [m.group(0) for m in AMOUNT_PATTERN.finditer(text)]
    dates = [m.group(0) for p in DATE_PATTERNS for m in p.finditer(text)]

    return EnrichmentEntities(
        people=_dedupe(people),
        companies=_dedupe(companies),
        amounts=_dedupe(amounts),
        dates=_dedupe(dates),
    )


def analyze_event(event: Dict[str, Any], vip_domains: Optional[List[str]] = None) -> EnrichmentResult:
    """Classify one stored event row (id, event_type, subject, body_text, metadata)."""
    metadata = event.get("metadata") or {}
    subject_raw = event.get("subject") or ""
    body_raw = event.get("body_text") or ""
    subject = subject_raw.lower()
    body = body_raw.lower()
    sender = str(metadata.get("from") or metadata.get("organizer") or "").lower()
    combined = f"{subject} {body}"

    tags: List[str] = []

    category = detect_category(sender, subject, body, event.get("event_type") or "")
    tags.append(f"category:{category}")

    topics = [topic for topic, keywords in TOPIC_PATTERNS.items() if _matches(combined, keywords)]
    tags.extend(f"topic:{topic}" for topic in topics)

    actions = [action for action, keywords in ACTION_PATTERNS.items() if _matches(combined, keywords)]
    tags.extend(f"action:{action}" for action in actions)
    if not actions and category != "meeting-invite":
        tags.append("action:none")

    sender_type, is_vip = analyze_sender(sender, vip_domains)
    tags.append(f"sender:{sender_type}")
    if is_vip:
        tags.append("sender:vip")

    return EnrichmentResult(
        tags=tags,
        entities=extract_entities(subject_raw, body_raw),
        category=category,
        topics=topics,
        actions=actions,
        sender_type=sender_type,
        is_vip=is_vip,
    )


# ============================================================================
# PERSISTENCE
# ============================================================================

async def enrich_event(supabase: Client, event_id: str) -> Optional[EnrichmentResult]:
    """
    Enrich one stored event: merge metadata.enrichment and link tags.

    Returns:
        The enrichment result, or None if the event does not exist
    """
    result = supabase.table("events")\
        .select("id, event_type, subject, body_text, metadata")\
        .eq("id", event_id)\
        .limit(1)\
        .execute()
    if not result.data:
        logger.warning(f"[ENRICHMENT] Event {event_id} not found")
        return None

    event = result.data[0]
    enrichment = analyze_event(event)

    metadata = dict(event.get("metadata") or {})
    metadata["enrichment"] = {
        "category": enrichment.category,
        "topics": enrichment.topics,
        "actions": enrichment.actions,
        "sender_type": enrichment.sender_type,
        "is_vip": enrichment.is_vip,
        "entities": enrichment.entities.model_dump(),
        "enriched_at": datetime.now(timezone.utc).isoformat(),
    }
    supabase.table("events").update({"metadata": metadata}).eq("id", event_id).execute()

    for tag_name in enrichment.tags:
        try:
            link_tag(supabase, event_id, tag_name)
        except Exception as e:
            logger.warning(f"[ENRICHMENT] Failed to link tag {tag_name!r} to {event_id}: {e}")

    logger.info(
        f"[ENRICHMENT] Enriched event {event_id}: category={enrichment.category} "
        f"topics={enrichment.topics} actions={enrichment.actions} vip={enrichment.is_vip}"
    )
    return enrichment


async def backfill_enrichment(supabase: Client, limit: int = 100) -> int:
    """Enrich events that have no metadata.enrichment yet. Returns how many were enriched."""
    result = supabase.table("events")\
        .select("id")\
        .is_("metadata->enrichment", "null")\
        .limit(limit)\
        .execute()
    events = result.data or []
    logger.info(f"[ENRICHMENT] Backfilling {len(events)} events")

    enriched = 0
    for row in events:
        try:
            if await enrich_event(supabase, row["id"]):
                enriched += 1
        except Exception as e:
            logger.error(f"[ENRICHMENT] Backfill failed for {row['id']}: {e}")

    logger.info(f"[ENRICHMENT] Backfill complete: {enriched} events enriched")
    return enriched
