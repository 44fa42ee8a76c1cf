from datetime import datetime, timezone

import httpx
import pytest

from sync_worker.core.config import settings
from sync_worker.models.schemas import ResourceType
from sync_worker.services.sync.providers.microsoft_graph import (
    GraphAPIError,
    InvalidCursorError,
    build_initial_request,
    download_attachment,
    fetch_page,
    list_attachments,
    mailbox_root,
)
from tests.factories import GRAPH, delta_page, make_message

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


def test_initial_message_request_is_windowed():
    url, params = build_initial_request(ResourceType.MESSAGES, now=NOW)

    assert url == f"{GRAPH}/me/mailFolders/inbox/messages/delta"
    assert params == {"$filter": "receivedDateTime ge 2024-04-10T12:00:00Z"}


def test_initial_sent_items_request_uses_sentitems_folder():
    url, _ = build_initial_request(ResourceType.SENT_MESSAGES, now=NOW)

    assert url.endswith("/mailFolders/sentitems/messages/delta")


def test_initial_calendar_request_spans_lookback_and_lookahead():
    url, params = build_initial_request(ResourceType.CALENDAR, now=NOW)

    assert url == f"{GRAPH}/me/calendarView/delta"
    assert params == {"startDateTime": "2024-04-10T12:00:00Z", "endDateTime": "2024-08-08T12:00:00Z"}


def test_shared_mailbox_uses_users_root():
    assert mailbox_root("team@contoso.com", shared_mailbox=True) == f"{GRAPH}/users/team%40contoso.com"
    assert mailbox_root("me@contoso.com") == f"{GRAPH}/me"
    assert mailbox_root(None, shared_mailbox=True) == f"{GRAPH}/me"


@pytest.mark.asyncio
async def test_initial_fetch_sends_window_and_returns_delta_link(graph, http_client):
    graph.add("mailFolders/inbox", delta_page([make_message("g1", "<1@x>")], delta_link="https://delta/1"))

    result = await fetch_page(http_client, "tok", "me@contoso.com", ResourceType.MESSAGES, now=NOW)

    assert [r["id"] for r in result.records] == ["g1"]
    assert result.next_cursor == "https://delta/1"
    assert result.continuation_link is None
    request = graph.requests[0]
    assert request.url.params["$filter"] == "receivedDateTime ge 2024-04-10T12:00:00Z"
    assert request.headers["Authorization"] == "Bearer tok"
    assert "odata.maxpagesize" in request.headers["Prefer"]


@pytest.mark.asyncio
async def test_calendar_fetch_asks_for_utc(graph, http_client):
    graph.add("calendarView/delta", delta_page([], delta_link="https://delta/cal"))

    await fetch_page(http_client, "tok", "me@contoso.com", ResourceType.CALENDAR, now=NOW)

    assert 'outlook.timezone="UTC"' in graph.requests[0].headers["Prefer"]


@pytest.mark.asyncio
async def test_stored_cursor_is_requested_verbatim(graph, http_client):
    cursor = f"{GRAPH}/me/mailFolders/inbox/messages/delta?$deltatoken=abc"
    graph.add("deltatoken=abc", delta_page([], delta_link="https://delta/2"))

    result = await fetch_page(http_client, "tok", "me@contoso.com", ResourceType.MESSAGES, cursor=cursor)

    request = graph.requests[0]
    assert request.url.path == "/v1.0/me/mailFolders/inbox/messages/delta"
    assert dict(request.url.params) == {"$deltatoken": "abc"}
    assert result.next_cursor == "https://delta/2"


@pytest.mark.asyncio
async def test_next_links_are_followed_until_delta_link(graph, http_client):
    graph.add("page=2", delta_page([make_message("g2")], delta_link="https://delta/done"))
    graph.add("mailFolders/inbox", delta_page([make_message("g1")], next_link=f"{GRAPH}/next?page=2"))

    result = await fetch_page(http_client, "tok", "me@contoso.com", ResourceType.MESSAGES, now=NOW)

    assert [r["id"] for r in result.records] == ["g1", "g2"]
    assert result.pages == 2
    assert result.next_cursor == "https://delta/done"
    assert "$filter" not in graph.requests[1].url.params


@pytest.mark.asyncio
async def test_page_cap_parks_next_link(graph, http_client, monkeypatch):
    monkeypatch.setattr(settings, "graph_max_pages", 2)
    graph.add("page=3", delta_page([make_message("g3")], delta_link="https://delta/never"))
    graph.add("page=2", delta_page([make_message("g2")], next_link=f"{GRAPH}/next?page=3"))
    graph.add("mailFolders/inbox", delta_page([make_message("g1")], next_link=f"{GRAPH}/next?page=2"))

    result = await fetch_page(http_client, "tok", "me@contoso.com", ResourceType.MESSAGES, now=NOW)

    assert [r["id"] for r in result.records] == ["g1", "g2"]
    assert result.continuation_link == f"{GRAPH}/next?page=3"
    assert result.next_cursor is None
    assert graph.requests_to("page=3") == []


@pytest.mark.asyncio
async def test_gone_response_is_invalid_cursor(graph, http_client):
    graph.add("deltatoken", httpx.Response(410, json={"error": {"code": "SyncStateNotFound"}}))

    with pytest.raises(InvalidCursorError) as exc:
        await fetch_page(http_client, "tok", "me", ResourceType.MESSAGES, cursor=f"{GRAPH}/x?$deltatoken=old")

    assert exc.value.status_code == 410


@pytest.mark.asyncio
async def test_sync_state_error_code_is_invalid_cursor(graph, http_client):
    graph.add("deltatoken", httpx.Response(400, json={"error": {"code": "syncStateNotFound", "message": "gone"}}))

    with pytest.raises(InvalidCursorError):
        await fetch_page(http_client, "tok", "me", ResourceType.CALENDAR, cursor=f"{GRAPH}/x?$deltatoken=old")


@pytest.mark.asyncio
async def test_other_errors_raise_graph_api_error(graph, http_client):
    graph.add("mailFolders/inbox", httpx.Response(500, text="boom"))

    with pytest.raises(GraphAPIError) as exc:
        await fetch_page(http_client, "tok", "me", ResourceType.MESSAGES, now=NOW)

    assert not isinstance(exc.value, InvalidCursorError)
    assert exc.value.status_code == 500


@pytest.mark.asyncio
async def test_transport_errors_propagate(graph, http_client):
    graph.add("mailFolders/inbox", httpx.ConnectError)

    with pytest.raises(httpx.ConnectError):
        await fetch_page(http_client, "tok", "me", ResourceType.MESSAGES, now=NOW)


@pytest.mark.asyncio
async def test_shared_mailbox_fetch_targets_users_path(graph, http_client):
    graph.add("users/team%40contoso.com/mailFolders/inbox", delta_page([], delta_link="https://delta/s"))

    await fetch_page(http_client, "tok", "team@contoso.com", ResourceType.MESSAGES, shared_mailbox=True, now=NOW)

    assert "/users/team%40contoso.com/" in str(graph.requests[0].url)


@pytest.mark.asyncio
async def test_list_and_download_attachments(graph, http_client):
    graph.add("/$value", httpx.Response(200, content=b"%PDF-1.4"))
    graph.add("/attachments", {"value": [{"id": "a1", "name": "doc.pdf", "contentType": "application/pdf", "size": 8}]})

    listed = await list_attachments(http_client, "tok", "msg-1")
    content = await download_attachment(http_client, "tok", "msg-1", "a1")

    assert listed[0]["name"] == "doc.pdf"
    assert content == b"%PDF-1.4"


@pytest.mark.asyncio
async def test_failed_attachment_download_raises(graph, http_client):
    graph.add("/$value", httpx.Response(404, text="missing"))

    with pytest.raises(GraphAPIError):
        await download_attachment(http_client, "tok", "msg-1", "a1")
