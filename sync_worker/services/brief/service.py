"""
Daily Brief Service
AI-summarized digest of the last 24 hours, delivered by email

Flow per user:
1. Load daily_brief_settings (missing → no_settings, disabled → disabled)
2. Gather recent events + open action items
3. Summarize with OpenAI (falls back to a static notice)
4. Render HTML and send via the Resend HTTP API
5. Record a brief_deliveries row
"""
import html
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
from openai import AsyncOpenAI
from supabase import Client

from sync_worker.core.circuit_breakers import with_openai_retry
from sync_worker.core.config import settings

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
SETTINGS_TABLE = "daily_brief_settings"
DELIVERIES_TABLE = "brief_deliveries"

SUMMARY_FALLBACK = "<p><em>AI summary unavailable. See detailed items below.</em></p>"

DETAIL_INSTRUCTIONS = {
    "short": "Keep it very concise - 3-4 bullet points maximum.",
    "medium": "Provide balanced detail - not too brief, not too long.",
    "long": "Provide comprehensive analysis with specific details.",
}
MAX_TOKENS = {"short": 500, "medium": 1000, "long": 1500}

SYSTEM_PROMPT = """You are an executive assistant creating daily briefs for a busy professional.
Analyze their recent activity and write a summary that highlights:
1. Top Priorities (most important/urgent items)
2. Key Themes (what they focused on)
3. Action Items (things needing attention)
4. Notable Highlights (important conversations or updates)

{detail}

Format your response as clean HTML using <h3>, <ul>, <li>, <p> tags only.
Use a professional but friendly tone. Be specific and actionable."""


class BriefDeliveryError(Exception):
    """Email provider rejected or could not receive the brief."""


@dataclass
class BriefResult:
    ok: bool
    error: Optional[str] = None


@dataclass
class BriefContent:
    emails: List[Dict[str, Any]]
    meetings: List[Dict[str, Any]]
    tasks: List[Dict[str, Any]]

    @property
    def total(self) -> int:
        return len(self.emails) + len(self.meetings) + len(self.tasks)


def _truncate(text: Optional[str], length: int) -> str:
    if not text:
        return ""
    return text[:length] + "..." if len(text) > length else text


def _escape(value: Any) -> str:
    return html.escape(str(value)) if value else ""


# ============================================================================
# DATA
# ============================================================================

async def fetch_brief_settings(supabase: Client, user_id: str) -> Optional[Dict[str, Any]]:
    result = supabase.table(SETTINGS_TABLE)\
        .select("*")\
        .eq("user_id", user_id)\
        .limit(1)\
        .execute()
    return result.data[0] if result.data else None


async def gather_brief_content(supabase: Client, brief_settings: Dict[str, Any], now: Optional[datetime] = None) -> BriefContent:
    """Events and open action items from the last 24 hours."""
    now = now or datetime.now(timezone.utc)
    since = (now - timedelta(hours=24)).isoformat()
    content = BriefContent(emails=[], meetings=[], tasks=[])

    event_types = []
    if brief_settings.get("include_email", True):
        event_types.append("email")
    if brief_settings.get("include_calendar", True):
        event_types.append("meeting")

    if event_types:
        try:
            events = supabase.table("events")\
                .select("id, event_type, subject, body_text, created_at_ts, metadata, importance, projects")\
                .in_("event_type", event_types)\
                .gte("created_at_ts", since)\
                .order("created_at_ts", desc=True)\
                .limit(brief_settings.get("max_items") or 20)\
                .execute()
            for event in events.data or []:
                if event.get("event_type") == "email":
                    content.emails.append(event)
                else:
                    content.meetings.append(event)
        except Exception as e:
            logger.error(f"❌ Failed to load events for brief: {e}")

    if brief_settings.get("include_tasks"):
        try:
            tasks = supabase.table("action_items")\
                .select("*")\
                .eq("status", "open")\
                .gte("created_at", since)\
                .limit(10)\
                .execute()
            content.tasks = tasks.data or []
        except Exception as e:
            logger.error(f"❌ Failed to load action items for brief: {e}")

    return content


# ============================================================================
# SUMMARY
# ============================================================================

def build_summary_payload(content: BriefContent, now: datetime) -> Dict[str, Any]:
    return {
        "date": now.date().isoformat(),
        "total_items": content.total,
        "emails": [
            {
                "subject": e.get("subject"),
                "from": (e.get("metadata") or {}).get("from"),
                "importance": e.get("importance"),
                "projects": e.get("projects"),
                "snippet": _truncate(e.get("body_text"), 200),
            }
            for e in content.emails
        ],
        "meetings": [
            {"title": m.get("subject"), "time": m.get("created_at_ts")}
            for m in content.meetings
        ],
        "tasks": [
            {"text": t.get("text"), "owner": t.get("owner"), "due": t.get("due_date")}
            for t in content.tasks
        ],
    }


@with_openai_retry
async def _complete_summary(openai_client: AsyncOpenAI, messages: List[Dict[str, str]], max_tokens: int) -> str:
    response = await openai_client.chat.completions.create(
        model=settings.brief_model,
        messages=messages,
        temperature=0.7,
        max_tokens=max_tokens
    )
    return response.choices[0].message.content or ""


async def generate_summary(
    content: BriefContent,
    brief_settings: Dict[str, Any],
    now: datetime,
    openai_client: Optional[AsyncOpenAI] = None
) -> str:
    """HTML executive summary; any failure yields the static fallback notice."""
    if openai_client is None:
        if not settings.openai_api_key:
            logger.info("ℹ️  OpenAI not configured; using fallback brief summary")
            return SUMMARY_FALLBACK
        openai_client = AsyncOpenAI(api_key=settings.openai_api_key)

    length = brief_settings.get("summary_length") or "medium"
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT.format(detail=DETAIL_INSTRUCTIONS.get(length, DETAIL_INSTRUCTIONS["medium"]))},
        {"role": "user", "content": f"Create an executive summary from this data:\n\n{json.dumps(build_summary_payload(content, now), indent=2, default=str)}"},
    ]

    try:
        summary = await _complete_summary(openai_client, messages, MAX_TOKENS.get(length, 1000))
        return summary or SUMMARY_FALLBACK
    except Exception as e:
        logger.error(f"❌ Brief summary generation failed: {e}")
        return SUMMARY_FALLBACK


# ============================================================================
# RENDERING + DELIVERY
# ============================================================================

def render_brief_html(content: BriefContent, summary_html: str, now: datetime) -> str:
    """Brief email body. Stored content is escaped; the summary is model-produced HTML."""
    parts = [
        "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;\">",
        "<h1>☀️ Your Daily Brief</h1>",
        f"<p><strong>{now.strftime('%A, %B %d, %Y')}</strong></p>",
        f"<div class=\"ai-summary\"><h3>🤖 AI Executive Summary</h3>{summary_html}</div>",
        f"<div class=\"summary\"><strong>📊 Activity Overview:</strong> {content.total} items from the last 24 hours",
    ]
    if content.emails:
        parts.append(f"<br>📧 {len(content.emails)} emails")
    if content.meetings:
        parts.append(f"<br>📅 {len(content.meetings)} calendar events")
    if content.tasks:
        parts.append(f"<br>✓ {len(content.tasks)} open tasks")
    parts.append("</div>")

    if content.emails:
        parts.append("<h2>📧 Recent Emails</h2>")
        for email in content.emails:
            metadata = email.get("metadata") or {}
            importance = email.get("importance") or 0
            badge = f" <span class=\"importance\">Priority {importance}</span>" if importance else ""
            projects = "".join(f"<span class=\"projects\">{_escape(p)}</span>" for p in email.get("projects") or [])
            parts.append(
                "<div class=\"event email-event\">"
                f"<div class=\"subject\">{_escape(email.get('subject') or 'No Subject')}</div>"
                f"<div class=\"meta\">From: {_escape(metadata.get('from') or 'Unknown')} | {_escape(email.get('created_at_ts'))}"
                f"{badge}{projects}</div>"
                f"<div class=\"snippet\">{_escape(_truncate(email.get('body_text'), 150))}</div>"
                "</div>"
            )

    if content.meetings:
        parts.append("<h2>📅 Calendar Events</h2>")
        for meeting in content.meetings:
            parts.append(
                "<div class=\"event calendar-event\">"
                f"<div class=\"subject\">{_escape(meeting.get('subject') or 'No Title')}</div>"
                f"<div class=\"meta\">{_escape(meeting.get('created_at_ts'))}</div>"
                "</div>"
            )

    if content.tasks:
        parts.append("<h2>✓ Open Action Items</h2>")
        for task in content.tasks:
            parts.append(
                "<div class=\"event task-event\">"
                f"<div class=\"subject\">{_escape(task.get('text'))}</div>"
                f"<div class=\"meta\">Owner: {_escape(task.get('owner') or 'Unassigned')} | Due: {_escape(task.get('due_date') or 'No date')}</div>"
                "</div>"
            )

    parts.append("<div class=\"footer\"><p>You received this because you enabled Daily Brief.</p>")
    if settings.brief_manage_url:
        parts.append(f"<p><a href=\"{_escape(settings.brief_manage_url)}\">Manage preferences</a></p>")
    parts.append("</div></body></html>")
    return "".join(parts)


async def send_email(http_client: httpx.AsyncClient, to_email: str, subject: str, html_content: str) -> Dict[str, Any]:
    """
    Send via the Resend HTTP API.

    Raises:
        BriefDeliveryError: not configured, transport error or non-2xx response
    """
    if not settings.resend_api_key:
        raise BriefDeliveryError("RESEND_API_KEY not configured")

    try:
        response = await http_client.post(
            RESEND_API_URL,
            headers={"Authorization": f"Bearer {settings.resend_api_key}"},
            json={
                "from": settings.brief_from_email,
                "to": [to_email],
                "subject": subject,
                "html": html_content,
            }
        )
    except httpx.HTTPError as e:
        raise BriefDeliveryError(f"Resend request failed: {e}") from e

    if response.status_code >= 300:
        raise BriefDeliveryError(f"Resend returned {response.status_code}: {response.text[:300]}")

    return response.json()


async def record_delivery(supabase: Client, user_id: str, status: str, error: Optional[str] = None):
    try:
        supabase.table(DELIVERIES_TABLE).insert({
            "user_id": user_id,
            "status": status,
            "error": error,
            "delivered_at": datetime.now(timezone.utc).isoformat()
        }).execute()
    except Exception as e:
        logger.warning(f"⚠️  Failed to record brief delivery for {user_id}: {e}")


# ============================================================================
# PUBLIC API
# ============================================================================

async def send_brief(
    supabase: Client,
    http_client: httpx.AsyncClient,
    user_id: str,
    now: Optional[datetime] = None,
    openai_client: Optional[AsyncOpenAI] = None
) -> BriefResult:
    """
    Build and send the daily brief for one user.

    Returns:
        BriefResult(ok=True) when sent; otherwise ok=False with
        no_settings / disabled / no_recipient / the delivery error
    """
    now = now or datetime.now(timezone.utc)
    logger.info(f"📧 Generating daily brief for user {user_id}")

    try:
        brief_settings = await fetch_brief_settings(supabase, user_id)
        if not brief_settings:
            return BriefResult(ok=False, error="no_settings")
        if not brief_settings.get("is_enabled"):
            return BriefResult(ok=False, error="disabled")

        to_email = brief_settings.get("email_address")
        if not to_email:
            return BriefResult(ok=False, error="no_recipient")

        content = await gather_brief_content(supabase, brief_settings, now)
        summary = await generate_summary(content, brief_settings, now, openai_client)
        body = render_brief_html(content, summary, now)

        await send_email(http_client, to_email, f"Daily Brief - {now.date().isoformat()}", body)
    except Exception as e:
        logger.error(f"❌ Brief for user {user_id} failed: {e}", exc_info=True)
        await record_delivery(supabase, user_id, "failed", str(e)[:500])
        return BriefResult(ok=False, error=str(e))

    await record_delivery(supabase, user_id, "sent")
    logger.info(f"✅ Brief sent to {to_email}")
    return BriefResult(ok=True)


def _delivery_hour(delivery_time: Optional[str]) -> Optional[int]:
    """'HH:MM' or 'HH:MM:SS' → hour; None when unparseable."""
    try:
        return int(str(delivery_time).split(":")[0])
    except (TypeError, ValueError):
        return None


async def _delivered_today(supabase: Client, user_id: str, now: datetime) -> bool:
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0).isoformat()
    result = supabase.table(DELIVERIES_TABLE)\
        .select("id")\
        .eq("user_id", user_id)\
        .eq("status", "sent")\
        .gte("delivered_at", start_of_day)\
        .limit(1)\
        .execute()
    return bool(result.data)


async def check_and_send_briefs(
    supabase: Client,
    http_client: httpx.AsyncClient,
    now: Optional[datetime] = None
) -> Dict[str, int]:
    """Send every enabled brief whose delivery_time falls in the current UTC hour."""
    now = now or datetime.now(timezone.utc)
    logger.info(f"⏰ Checking for briefs due in hour {now.hour:02d}:00 UTC")

    result = supabase.table(SETTINGS_TABLE).select("*").eq("is_enabled", True).execute()
    due = [row for row in result.data or [] if _delivery_hour(row.get("delivery_time")) == now.hour]

    summary = {"due": len(due), "sent": 0, "failed": 0, "skipped": 0}
    for row in due:
        user_id = row["user_id"]
        if await _delivered_today(supabase, user_id, now):
            summary["skipped"] += 1
            continue

        brief = await send_brief(supabase, http_client, user_id, now)
        summary["sent" if brief.ok else "failed"] += 1

    if due:
        logger.info(f"📬 Brief check done: {summary}")
    return summary
