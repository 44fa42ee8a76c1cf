"""
Canonical Event Mapping for Universal Deduplication

Maps raw Microsoft Graph messages and calendar events into CanonicalEvent.
Pure functions, no I/O.

Identifier policy (the dedup key is (event_type, external_id)):
- Messages: internetMessageId, which survives folder moves and is shared by
  the Inbox and Sent Items copies of the same mail.
- Meetings: iCalUId, stable across occurrences and organizer/attendee copies.
- Missing stable id: fall back to the Graph item id and flag for review.
- No id at all: external_id=None, the writer routes it to the
  always-insert path and flags it.
"""
import html
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sync_worker.models.schemas import CanonicalEvent, EventType, IdentifierSource

logger = logging.getLogger(__name__)

SOURCE_LABEL = "microsoft_graph"
NO_SUBJECT = "(No Subject)"

_STYLE_RE = re.compile(r"<style[^>]*>.*?</style>", re.DOTALL | re.IGNORECASE)
_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script>", re.DOTALL | re.IGNORECASE)
_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_BLOCK_RE = re.compile(r"<\s*(br|/p|/div|/li|/tr|/h[1-6])\b[^>]*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_INLINE_WS_RE = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class CanonicalizationError(ValueError):
    """Raw record cannot be mapped (wrong shape, tombstone, unknown type)."""


# ============================================================================
# HELPERS
# ============================================================================

def html_to_text(content: str) -> str:
    """
    Strip HTML into readable plain text.

    <script>/<style> bodies are dropped, block-level tags become newlines,
    entities are unescaped and whitespace is collapsed.
    """
    if not content:
        return ""

    text = _STYLE_RE.sub("", content)
    text = _SCRIPT_RE.sub("", text)
    text = _COMMENT_RE.sub("", text)
    text = _BLOCK_RE.sub("\n", text)
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text).replace("\xa0", " ")
    text = _INLINE_WS_RE.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return text.strip()


def extract_body(raw: Dict[str, Any]) -> str:
    """Plain-text body: text verbatim, html stripped, unknown types passed through."""
    body = raw.get("body") or {}
    content = body.get("content") if isinstance(body, dict) else None
    content_type = (body.get("contentType") or "").lower() if isinstance(body, dict) else ""

    if content:
        if content_type == "html":
            text = html_to_text(content)
        else:
            # "text" and anything unrecognized pass through as-is
            text = content
        if text.strip():
            return text

    return raw.get("bodyPreview") or ""


def parse_graph_datetime(value: Optional[str], tz_name: Optional[str] = None) -> Optional[datetime]:
    """
    Parse a Graph timestamp into an aware UTC datetime.

    Handles 'Z' suffixes, 7-digit fractions ('2024-05-01T10:00:00.0000000')
    and naive dateTimeTimeZone values paired with a timeZone name.
    """
    if not value:
        return None

    try:
        cleaned = _FRACTION_RE.sub(r"\1", value.strip()).replace("Z", "+00:00")
        parsed = datetime.fromisoformat(cleaned)
    except ValueError:
        logger.warning(f"Unparseable Graph timestamp: {value!r}")
        return None

    if parsed.tzinfo is None:
        tz = timezone.utc
        if tz_name and tz_name.upper() not in ("UTC", "Z"):
            try:
                tz = ZoneInfo(tz_name)
            except (ZoneInfoNotFoundError, ValueError):
                # Windows zone names ("Pacific Standard Time"); calendar
                # requests ask Graph for UTC so this is rare
                logger.debug(f"Unknown time zone {tz_name!r}, assuming UTC")
        parsed = parsed.replace(tzinfo=tz)

    return parsed.astimezone(timezone.utc)


def _address(recipient: Optional[Dict[str, Any]]) -> Tuple[Optional[str], Optional[str]]:
    email = (recipient or {}).get("emailAddress") or {}
    return email.get("address"), email.get("name")


def _addresses(recipients: Optional[List[Dict[str, Any]]]) -> List[str]:
    result = []
    for recipient in recipients or []:
        address, _ = _address(recipient)
        if address:
            result.append(address)
    return result


def _select_identifier(stable_id: Optional[str], provider_id: Optional[str]) -> Tuple[Optional[str], IdentifierSource]:
    if stable_id and str(stable_id).strip():
        return str(stable_id).strip(), IdentifierSource.STABLE
    if provider_id and str(provider_id).strip():
        return str(provider_id).strip(), IdentifierSource.PROVIDER_ID
    return None, IdentifierSource.NONE


# ============================================================================
# MESSAGES
# ============================================================================

def _message_event(raw: Dict[str, Any], folder: Optional[str]) -> Dict[str, Any]:
    external_id, identifier_source = _select_identifier(raw.get("internetMessageId"), raw.get("id"))

    sender_address, sender_name = _address(raw.get("from") or raw.get("sender"))

    timestamp = (
        parse_graph_datetime(raw.get("receivedDateTime"))
        or parse_graph_datetime(raw.get("sentDateTime"))
        or parse_graph_datetime(raw.get("createdDateTime"))
    )

    metadata = {
        "from": sender_address,
        "from_name": sender_name,
        "to": _addresses(raw.get("toRecipients")),
        "cc": _addresses(raw.get("ccRecipients")),
        "conversation_id": raw.get("conversationId"),
        "folder": folder,
        "has_attachments": bool(raw.get("hasAttachments")),
        "importance": raw.get("importance"),
        "is_read": raw.get("isRead"),
        "web_link": raw.get("webLink"),
        "provider_id": raw.get("id"),
        "identifier_source": identifier_source.value,
    }

    return {
        "external_id": external_id,
        "identifier_source": identifier_source,
        "created_at_ts": timestamp,
        "subject": raw.get("subject"),
        "metadata": metadata,
    }


# ============================================================================
# MEETINGS
# ============================================================================

def _meeting_event(raw: Dict[str, Any]) -> Dict[str, Any]:
    external_id, identifier_source = _select_identifier(raw.get("iCalUId"), raw.get("id"))

    organizer_address, organizer_name = _address(raw.get("organizer"))
    start = raw.get("start") or {}
    end = raw.get("end") or {}
    start_dt = parse_graph_datetime(start.get("dateTime"), start.get("timeZone"))
    end_dt = parse_graph_datetime(end.get("dateTime"), end.get("timeZone"))

    attendees = []
    for attendee in raw.get("attendees") or []:
        address, name = _address(attendee)
        attendees.append({
            "address": address,
            "name": name,
            "type": attendee.get("type"),
            "response": (attendee.get("status") or {}).get("response"),
        })

    location = raw.get("location") or {}
    online_meeting = raw.get("onlineMeeting") or {}

    metadata = {
        "organizer": organizer_address,
        "organizer_name": organizer_name,
        "attendees": attendees,
        "location": location.get("displayName") if isinstance(location, dict) else location,
        "start_time": start_dt.isoformat() if start_dt else None,
        "end_time": end_dt.isoformat() if end_dt else None,
        "time_zone": start.get("timeZone"),
        "is_all_day": bool(raw.get("isAllDay")),
        "is_cancelled": bool(raw.get("isCancelled")),
        "online_meeting_url": online_meeting.get("joinUrl") or raw.get("onlineMeetingUrl"),
        "importance": raw.get("importance"),
        "web_link": raw.get("webLink"),
        "provider_id": raw.get("id"),
        "identifier_source": identifier_source.value,
    }

    return {
        "external_id": external_id,
        "identifier_source": identifier_source,
        "created_at_ts": start_dt or parse_graph_datetime(raw.get("createdDateTime")),
        "subject": raw.get("subject"),
        "metadata": metadata,
    }


# ============================================================================
# PUBLIC API
# ============================================================================

def is_tombstone(raw: Dict[str, Any]) -> bool:
    """Delta responses mark deleted items with '@removed'."""
    return isinstance(raw, dict) and "@removed" in raw


def to_canonical_event(
    raw: Dict[str, Any],
    event_type: EventType,
    connection_id: Optional[str] = None,
    user_id: Optional[str] = None,
    folder: Optional[str] = None,
    now: Optional[datetime] = None
) -> CanonicalEvent:
    """
    Map one raw Graph record into a CanonicalEvent.

    Args:
        raw: Message or event payload from a delta page
        event_type: EventType.EMAIL or EventType.MEETING
        connection_id: Owning connection (stored on the row)
        user_id: Owning user (stored on the row)
        folder: Mail folder the message came from ("inbox", "sentitems")
        now: Clock override, only used when the record has no timestamp

    Raises:
        CanonicalizationError: raw is not a mappable record
    """
    if not isinstance(raw, dict):
        raise CanonicalizationError(f"Expected a JSON object, got {type(raw).__name__}")
    if is_tombstone(raw):
        raise CanonicalizationError(f"Record {raw.get('id')} is a deletion marker")

    if event_type == EventType.EMAIL:
        fields = _message_event(raw, folder)
    elif event_type == EventType.MEETING:
        fields = _meeting_event(raw)
    else:
        raise CanonicalizationError(f"Unsupported event type: {event_type}")

    identifier_source = fields["identifier_source"]
    subject = (raw.get("subject") or "").strip() or NO_SUBJECT

    return CanonicalEvent(
        event_type=event_type,
        source=SOURCE_LABEL,
        external_id=fields["external_id"],
        identifier_source=identifier_source,
        needs_review=identifier_source != IdentifierSource.STABLE,
        created_at_ts=fields["created_at_ts"] or now or datetime.now(timezone.utc),
        subject=subject,
        body_text=extract_body(raw),
        metadata=fields["metadata"],
        raw=raw,
        connection_id=connection_id,
        user_id=user_id,
    )
