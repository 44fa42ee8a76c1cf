import pytest

from sync_worker.models.schemas import ResourceType
from sync_worker.services.sync.database import (
    clear_cursor,
    get_active_connections,
    get_connection,
    get_cursor,
    get_cursor_holds,
    mark_connection_synced,
    record_cursor_hold,
    require_connection,
    save_cursor,
    ConnectionNotFoundError,
)


@pytest.mark.asyncio
async def test_save_then_get_cursor(fake_supabase):
    await save_cursor(fake_supabase, "conn-1", ResourceType.MESSAGES, "https://graph/delta?token=1")

    assert await get_cursor(fake_supabase, "conn-1", ResourceType.MESSAGES) == "https://graph/delta?token=1"
    assert await get_cursor(fake_supabase, "conn-1", ResourceType.CALENDAR) is None


@pytest.mark.asyncio
async def test_save_cursor_overwrites_single_row_per_resource(fake_supabase):
    await save_cursor(fake_supabase, "conn-1", ResourceType.MESSAGES, "token-1")
    await save_cursor(fake_supabase, "conn-1", ResourceType.MESSAGES, "token-2")

    rows = fake_supabase.rows("sync_state")
    assert len(rows) == 1
    assert rows[0]["delta_link"] == "token-2"
    assert rows[0]["last_synced_at"]


@pytest.mark.asyncio
async def test_clear_cursor_only_touches_one_resource(fake_supabase):
    await save_cursor(fake_supabase, "conn-1", ResourceType.MESSAGES, "m")
    await save_cursor(fake_supabase, "conn-1", ResourceType.CALENDAR, "c")

    await clear_cursor(fake_supabase, "conn-1", ResourceType.MESSAGES)

    assert await get_cursor(fake_supabase, "conn-1", ResourceType.MESSAGES) is None
    assert await get_cursor(fake_supabase, "conn-1", ResourceType.CALENDAR) == "c"


@pytest.mark.asyncio
async def test_get_cursor_failure_is_treated_as_no_cursor(fake_supabase):
    fake_supabase.fail("sync_state", "select")

    assert await get_cursor(fake_supabase, "conn-1", ResourceType.MESSAGES) is None


@pytest.mark.asyncio
async def test_save_cursor_failure_propagates(fake_supabase):
    fake_supabase.fail("sync_state", "upsert")

    with pytest.raises(Exception):
        await save_cursor(fake_supabase, "conn-1", ResourceType.MESSAGES, "m")


@pytest.mark.asyncio
async def test_hold_counter_keeps_existing_cursor(fake_supabase):
    await save_cursor(fake_supabase, "conn-1", ResourceType.MESSAGES, "token-1")

    await record_cursor_hold(fake_supabase, "conn-1", ResourceType.MESSAGES, 2)

    assert await get_cursor_holds(fake_supabase, "conn-1", ResourceType.MESSAGES) == 2
    assert await get_cursor(fake_supabase, "conn-1", ResourceType.MESSAGES) == "token-1"


@pytest.mark.asyncio
async def test_hold_on_first_sync_leaves_no_cursor(fake_supabase):
    await record_cursor_hold(fake_supabase, "conn-1", ResourceType.CALENDAR, 1)

    assert await get_cursor(fake_supabase, "conn-1", ResourceType.CALENDAR) is None
    assert await get_cursor_holds(fake_supabase, "conn-1", ResourceType.CALENDAR) == 1
    assert await get_cursor_holds(fake_supabase, "conn-1", ResourceType.MESSAGES) == 0


@pytest.mark.asyncio
async def test_saving_a_cursor_resets_the_hold_counter(fake_supabase):
    await record_cursor_hold(fake_supabase, "conn-1", ResourceType.MESSAGES, 3)

    await save_cursor(fake_supabase, "conn-1", ResourceType.MESSAGES, "token-2")

    assert await get_cursor_holds(fake_supabase, "conn-1", ResourceType.MESSAGES) == 0


@pytest.mark.asyncio
async def test_connection_lookup(fake_supabase, connection):
    loaded = await get_connection(fake_supabase, "conn-1")

    assert loaded.account == "me@contoso.com"
    assert await get_connection(fake_supabase, "missing") is None
    with pytest.raises(ConnectionNotFoundError):
        await require_connection(fake_supabase, "missing")


@pytest.mark.asyncio
async def test_config_email_wins_over_account_email(fake_supabase):
    fake_supabase.seed("integration_connections", {
        "id": "conn-2", "account_email": "old@contoso.com", "config": {"email": "shared@contoso.com"}
    })

    loaded = await get_connection(fake_supabase, "conn-2")

    assert loaded.account == "shared@contoso.com"


@pytest.mark.asyncio
async def test_active_connections_filters_status_and_provider(fake_supabase, connection):
    fake_supabase.seed("integration_connections", {"id": "conn-err", "provider_key": "microsoft", "status": "error"})
    fake_supabase.seed("integration_connections", {"id": "conn-g", "provider_key": "google", "status": "connected"})

    active = await get_active_connections(fake_supabase, "microsoft")

    assert [c.id for c in active] == ["conn-1"]


@pytest.mark.asyncio
async def test_mark_connection_synced_stamps_and_clears_error(fake_supabase, connection):
    fake_supabase.rows("integration_connections")[0]["last_error"] = "old failure"

    await mark_connection_synced(fake_supabase, "conn-1")

    row = fake_supabase.rows("integration_connections")[0]
    assert row["last_synced_at"]
    assert row["last_error"] is None
