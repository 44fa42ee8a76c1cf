import pytest

from sync_worker.models.schemas import RunStats
from sync_worker.services.sync.ledger import (
    RunLedgerError,
    begin_run,
    complete_run,
    fail_run,
    get_run,
    list_runs,
)


@pytest.mark.asyncio
async def test_begin_run_inserts_running_row(fake_supabase):
    run_id = await begin_run(fake_supabase, "conn-1")

    run = await get_run(fake_supabase, run_id)
    assert run["status"] == "running"
    assert run["connection_id"] == "conn-1"
    assert run["started_at"]


@pytest.mark.asyncio
async def test_begin_run_failure_raises(fake_supabase):
    fake_supabase.fail("ingestion_runs", "insert")

    with pytest.raises(RunLedgerError):
        await begin_run(fake_supabase, "conn-1")


@pytest.mark.asyncio
async def test_complete_run_records_counts(fake_supabase):
    run_id = await begin_run(fake_supabase, "conn-1")

    await complete_run(fake_supabase, run_id, RunStats(processed=4, created=3, duplicates=1))

    run = await get_run(fake_supabase, run_id)
    assert run["status"] == "success"
    assert run["finished_at"]
    assert run["items_processed"] == 4
    assert run["items_created"] == 3
    assert run["items_duplicate"] == 1


@pytest.mark.asyncio
async def test_fail_run_records_truncated_message(fake_supabase):
    run_id = await begin_run(fake_supabase, "conn-1")

    await fail_run(fake_supabase, run_id, "x" * 5000, RunStats(created=2))

    run = await get_run(fake_supabase, run_id)
    assert run["status"] == "failed"
    assert len(run["error_message"]) == 2000
    assert run["items_created"] == 2


@pytest.mark.asyncio
async def test_list_runs_newest_first(fake_supabase):
    fake_supabase.seed("ingestion_runs", {"id": "r1", "connection_id": "conn-1", "status": "success", "started_at": "2024-05-01T00:00:00+00:00"})
    fake_supabase.seed("ingestion_runs", {"id": "r2", "connection_id": "conn-1", "status": "failed", "started_at": "2024-05-02T00:00:00+00:00"})
    fake_supabase.seed("ingestion_runs", {"id": "r3", "connection_id": "conn-2", "status": "success", "started_at": "2024-05-03T00:00:00+00:00"})

    runs = await list_runs(fake_supabase, "conn-1")

    assert [r["id"] for r in runs] == ["r2", "r1"]


def test_run_stats_merge_and_ledger_fields():
    merged = RunStats(processed=1, created=1, flagged=1).merge(RunStats(processed=2, duplicates=2, failed=1))

    assert merged.to_ledger_fields() == {
        "items_processed": 3,
        "items_created": 1,
        "items_updated": 0,
        "items_duplicate": 2,
        "items_skipped": 0,
        "items_failed": 1,
        "items_flagged": 1,
    }


@pytest.mark.asyncio
async def test_complete_run_records_flagged_items(fake_supabase):
    run_id = await begin_run(fake_supabase, "conn-1")

    await complete_run(fake_supabase, run_id, RunStats(processed=2, created=2, flagged=1))

    run = await get_run(fake_supabase, run_id)
    assert run["items_flagged"] == 1
