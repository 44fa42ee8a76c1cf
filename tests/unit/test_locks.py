import pytest
import redis

from sync_worker.services.sync.locks import (
    InProcessSyncGuard, LeaseLostError, RedisSyncLease, connection_scope, ensure_lease
)


@pytest.mark.asyncio
async def test_in_process_guard_excludes_second_holder():
    guard = InProcessSyncGuard()
    scope = connection_scope("conn-1")

    assert await guard.acquire(scope) is True
    assert await guard.acquire(scope) is False
    assert await guard.acquire(connection_scope("conn-2")) is True

    await guard.release(scope)

    assert await guard.acquire(scope) is True


@pytest.mark.asyncio
async def test_in_process_heartbeat_reports_ownership():
    guard = InProcessSyncGuard()

    assert await guard.heartbeat("sync:a") is False
    await guard.acquire("sync:a")
    assert await guard.heartbeat("sync:a") is True


@pytest.mark.asyncio
async def test_redis_lease_is_exclusive_across_workers(fake_redis):
    worker_a = RedisSyncLease(fake_redis, ttl_seconds=60, owner="a")
    worker_b = RedisSyncLease(fake_redis, ttl_seconds=60, owner="b")

    assert await worker_a.acquire("sync:conn-1") is True
    assert await worker_b.acquire("sync:conn-1") is False
    assert fake_redis.ttls["sync_lease:sync:conn-1"] == 60000

    await worker_a.release("sync:conn-1")

    assert await worker_b.acquire("sync:conn-1") is True


@pytest.mark.asyncio
async def test_redis_release_does_not_delete_someone_elses_lease(fake_redis):
    worker_a = RedisSyncLease(fake_redis, ttl_seconds=60, owner="a")
    worker_b = RedisSyncLease(fake_redis, ttl_seconds=60, owner="b")

    await worker_a.acquire("sync:conn-1")
    fake_redis.expire_now("sync_lease:sync:conn-1")
    await worker_b.acquire("sync:conn-1")

    await worker_a.release("sync:conn-1")

    assert fake_redis.get("sync_lease:sync:conn-1").startswith("b:")


@pytest.mark.asyncio
async def test_redis_heartbeat_extends_only_own_lease(fake_redis):
    lease = RedisSyncLease(fake_redis, ttl_seconds=30, owner="a")

    assert await lease.heartbeat("sync:conn-1") is False
    await lease.acquire("sync:conn-1")
    fake_redis.ttls["sync_lease:sync:conn-1"] = 5

    assert await lease.heartbeat("sync:conn-1") is True
    assert fake_redis.ttls["sync_lease:sync:conn-1"] == 30000

    fake_redis.expire_now("sync_lease:sync:conn-1")
    assert await lease.heartbeat("sync:conn-1") is False


@pytest.mark.asyncio
async def test_redis_acquire_error_propagates(fake_redis, monkeypatch):
    def down(*args, **kwargs):
        raise redis.ConnectionError("redis down")

    monkeypatch.setattr(fake_redis, "set", down)
    lease = RedisSyncLease(fake_redis)

    with pytest.raises(redis.RedisError):
        await lease.acquire("sync:conn-1")


@pytest.mark.asyncio
async def test_ensure_lease_raises_once_another_worker_owns_it(fake_redis):
    mine = RedisSyncLease(fake_redis, ttl_seconds=30, owner="a")
    theirs = RedisSyncLease(fake_redis, ttl_seconds=30, owner="b")
    scope = connection_scope("conn-1")
    await mine.acquire(scope)

    await ensure_lease(mine, scope)

    fake_redis.expire_now(f"sync_lease:{scope}")
    assert await theirs.acquire(scope) is True

    with pytest.raises(LeaseLostError):
        await ensure_lease(mine, scope)
