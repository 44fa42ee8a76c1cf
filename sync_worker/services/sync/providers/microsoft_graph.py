"""
Microsoft Graph API helpers
Delta fetching for mail folders and calendar, plus attachment download

No retry/backoff here on purpose: a failed fetch fails the run and the next
scheduled tick retries from the last saved cursor.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from sync_worker.core.config import settings
from sync_worker.models.schemas import ResourceType

logger = logging.getLogger(__name__)

MAIL_FOLDERS = {
    ResourceType.MESSAGES: "inbox",
    ResourceType.SENT_MESSAGES: "sentitems",
}

# Error codes/messages Graph uses when a delta or skip token can no longer be used
INVALID_CURSOR_CODES = {"syncstatenotfound", "syncstateinvalid", "resyncrequired", "invaliddeltatoken"}
INVALID_CURSOR_PATTERN = re.compile(r"sync\s*state|resync|(delta|skip)\s*token", re.IGNORECASE)


class GraphAPIError(Exception):
    """Non-success response from Microsoft Graph."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class InvalidCursorError(GraphAPIError):
    """The stored delta/skip token is expired or unknown; the cursor must be cleared."""


@dataclass
class FetchResult:
    """
    One fetch worth of records.

    next_cursor: deltaLink from the final page (None if Graph issued none)
    continuation_link: nextLink left unfollowed because the page cap was hit
    """
    records: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None
    continuation_link: Optional[str] = None
    pages: int = 0


# ============================================================================
# REQUEST HELPERS
# ============================================================================

def mailbox_root(account: Optional[str] = None, shared_mailbox: bool = False) -> str:
    """'/me' for the token owner, '/users/{account}' for shared mailboxes."""
    if shared_mailbox and account:
        return f"{settings.graph_base_url}/users/{quote(account)}"
    return f"{settings.graph_base_url}/me"


def _graph_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_initial_request(
    resource_type: ResourceType,
    account: Optional[str] = None,
    shared_mailbox: bool = False,
    now: Optional[datetime] = None
) -> Tuple[str, Dict[str, str]]:
    """
    Windowed delta query used when no cursor is stored.

    Messages: received within MESSAGE_LOOKBACK_DAYS.
    Calendar: CALENDAR_LOOKBACK_DAYS back to CALENDAR_LOOKAHEAD_DAYS ahead.
    """
    now = now or datetime.now(timezone.utc)
    root = mailbox_root(account, shared_mailbox)

    if resource_type in MAIL_FOLDERS:
        since = now - timedelta(days=settings.message_lookback_days)
        url = f"{root}/mailFolders/{MAIL_FOLDERS[resource_type]}/messages/delta"
        return url, {"$filter": f"receivedDateTime ge {_graph_time(since)}"}

    if resource_type == ResourceType.CALENDAR:
        start = now - timedelta(days=settings.calendar_lookback_days)
        end = now + timedelta(days=settings.calendar_lookahead_days)
        url = f"{root}/calendarView/delta"
        return url, {"startDateTime": _graph_time(start), "endDateTime": _graph_time(end)}

    raise ValueError(f"Unsupported resource type: {resource_type}")


def _headers(access_token: str, resource_type: ResourceType) -> Dict[str, str]:
    prefer = [f"odata.maxpagesize={settings.graph_page_size}"]
    if resource_type == ResourceType.CALENDAR:
        prefer.append('outlook.timezone="UTC"')
    return {
        "Authorization": f"Bearer {access_token}",
        "Prefer": ", ".join(prefer)
    }


def is_invalid_cursor_response(response: httpx.Response) -> bool:
    """410 Gone, or an error code/message naming the sync state or delta token."""
    if response.status_code == 410:
        return True
    if response.status_code not in (400, 404):
        return False

    try:
        error = (response.json() or {}).get("error") or {}
    except ValueError:
        return bool(INVALID_CURSOR_PATTERN.search(response.text or ""))

    code = str(error.get("code") or "").lower()
    message = str(error.get("message") or "")
    return code in INVALID_CURSOR_CODES or bool(INVALID_CURSOR_PATTERN.search(message))


async def _get_json(
    http_client: httpx.AsyncClient,
    url: str,
    headers: Dict[str, str],
    params: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    response = await http_client.get(url, headers=headers, params=params)

    if response.status_code >= 400:
        body = response.text[:500] if response.text else ""
        if is_invalid_cursor_response(response):
            logger.warning(f"⚠️  Graph rejected the resume token ({response.status_code}): {body}")
            raise InvalidCursorError(
                f"Delta token no longer valid ({response.status_code})",
                status_code=response.status_code,
                body=body
            )

        logger.error(f"❌ Microsoft Graph error: {response.status_code}")
        logger.error(f"   URL: {response.request.url}")
        logger.error(f"   Response: {body}")
        raise GraphAPIError(
            f"Microsoft Graph returned {response.status_code}",
            status_code=response.status_code,
            body=body
        )

    return response.json()


# ============================================================================
# DELTA FETCH
# ============================================================================

async def fetch_page(
    http_client: httpx.AsyncClient,
    access_token: str,
    account: Optional[str],
    resource_type: ResourceType,
    cursor: Optional[str] = None,
    shared_mailbox: bool = False,
    now: Optional[datetime] = None
) -> FetchResult:
    """
    Fetch one batch of records for a resource type.

    With a cursor, GET it verbatim (it may be a deltaLink or a parked
    nextLink). Without one, issue the windowed initial query. Follows
    @odata.nextLink up to GRAPH_MAX_PAGES pages.

    Args:
        http_client: Async HTTP client instance
        access_token: Microsoft Graph access token
        account: Mailbox address (only used for shared mailboxes and logs)
        resource_type: messages / sent_messages / calendar
        cursor: Stored delta link, or None for an initial fetch
        shared_mailbox: Address the mailbox via /users/{account}
        now: Clock override for the initial window

    Returns:
        FetchResult with the accumulated records and the next cursor

    Raises:
        InvalidCursorError: Graph no longer accepts the token
        GraphAPIError: any other non-success response
        httpx.HTTPError: transport failures
    """
    headers = _headers(access_token, resource_type)

    if cursor:
        url, params = cursor, None
        logger.info(f"🔁 Resuming {resource_type.value} delta for {account}")
    else:
        url, params = build_initial_request(resource_type, account, shared_mailbox, now)
        logger.info(f"🆕 Initial {resource_type.value} fetch for {account}")

    result = FetchResult()

    while url:
        data = await _get_json(http_client, url, headers, params)
        params = None  # nextLink/deltaLink already carry the query
        result.pages += 1
        result.records.extend(data.get("value", []))

        next_link = data.get("@odata.nextLink")
        if not next_link:
            result.next_cursor = data.get("@odata.deltaLink")
            break

        if result.pages >= settings.graph_max_pages:
            logger.warning(
                f"⚠️  Page cap ({settings.graph_max_pages}) hit for {resource_type.value} of {account}; "
                f"parking nextLink for the next run"
            )
            result.continuation_link = next_link
            break

        url = next_link

    logger.info(
        f"📬 Fetched {len(result.records)} {resource_type.value} records for {account} "
        f"in {result.pages} page(s)"
    )
    return result


# ============================================================================
# ATTACHMENTS
# ============================================================================

async def list_attachments(
    http_client: httpx.AsyncClient,
    access_token: str,
    message_id: str,
    account: Optional[str] = None,
    shared_mailbox: bool = False
) -> List[Dict[str, Any]]:
    """Attachment metadata for a message (content bytes excluded)."""
    url = f"{mailbox_root(account, shared_mailbox)}/messages/{quote(message_id, safe='')}/attachments"
    data = await _get_json(
        http_client,
        url,
        {"Authorization": f"Bearer {access_token}"},
        {"$select": "id,name,contentType,size,isInline"}
    )
    return data.get("value", [])


async def download_attachment(
    http_client: httpx.AsyncClient,
    access_token: str,
    message_id: str,
    attachment_id: str,
    account: Optional[str] = None,
    shared_mailbox: bool = False
) -> bytes:
    """Raw attachment bytes via the $value endpoint."""
    url = (
        f"{mailbox_root(account, shared_mailbox)}/messages/{quote(message_id, safe='')}"
        f"/attachments/{quote(attachment_id, safe='')}/$value"
    )
    response = await http_client.get(url, headers={"Authorization": f"Bearer {access_token}"})
    if response.status_code >= 400:
        raise GraphAPIError(
            f"Attachment download returned {response.status_code}",
            status_code=response.status_code,
            body=response.text[:500] if response.text else ""
        )
    return response.content
