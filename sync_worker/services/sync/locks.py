"""
Per-connection mutual exclusion

InProcessSyncGuard: a set of held scopes. Only valid with a single replica.
RedisSyncLease: SET NX PX lease with an owner token, extended by heartbeat
and released with compare-and-delete, so it holds across worker processes
and expires if the holder dies.
"""
import asyncio
import logging
import uuid
from typing import Dict, Optional, Protocol, Set

import redis

logger = logging.getLogger(__name__)

LEASE_KEY_PREFIX = "sync_lease:"

# Delete/extend only when we still own the lease
RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

HEARTBEAT_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""


def connection_scope(connection_id: str) -> str:
    return f"sync:{connection_id}"


class SyncGuard(Protocol):
    async def acquire(self, scope: str) -> bool: ...

    async def release(self, scope: str) -> None: ...

    async def heartbeat(self, scope: str) -> bool: ...


class InProcessSyncGuard:
    """Scopes held by this process. acquire/release never await, so they are atomic on one loop."""

    def __init__(self):
        self._held: Set[str] = set()

    async def acquire(self, scope: str) -> bool:
        if scope in self._held:
            return False
        self._held.add(scope)
        return True

    async def release(self, scope: str) -> None:
        self._held.discard(scope)

    async def heartbeat(self, scope: str) -> bool:
        return scope in self._held

    def is_held(self, scope: str) -> bool:
        return scope in self._held


class RedisSyncLease:
    """
    Lease stored at sync_lease:{scope} with a per-acquire owner token.

    The TTL must exceed the longest gap between heartbeats; the orchestrator
    heartbeats before each resource pipeline and before each cursor advance.
    """

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 900, owner: Optional[str] = None):
        self.redis = redis_client
        self.ttl_ms = int(ttl_seconds * 1000)
        self.owner = owner or uuid.uuid4().hex
        self._tokens: Dict[str, str] = {}

    def _key(self, scope: str) -> str:
        return f"{LEASE_KEY_PREFIX}{scope}"

    async def acquire(self, scope: str) -> bool:
        token = f"{self.owner}:{uuid.uuid4().hex}"
        try:
            acquired = await asyncio.to_thread(
                self.redis.set, self._key(scope), token, nx=True, px=self.ttl_ms
            )
        except redis.RedisError as e:
            logger.error(f"❌ Failed to acquire lease {scope}: {e}")
            raise

        if not acquired:
            return False
        self._tokens[scope] = token
        return True

    async def release(self, scope: str) -> None:
        token = self._tokens.pop(scope, None)
        if token is None:
            return
        try:
            released = await asyncio.to_thread(self.redis.eval, RELEASE_SCRIPT, 1, self._key(scope), token)
            if not released:
                logger.warning(f"⚠️  Lease {scope} had already expired or changed owner before release")
        except redis.RedisError as e:
            # The TTL will reclaim it
            logger.error(f"❌ Failed to release lease {scope}: {e}")

    async def heartbeat(self, scope: str) -> bool:
        token = self._tokens.get(scope)
        if token is None:
            return False
        try:
            extended = await asyncio.to_thread(
                self.redis.eval, HEARTBEAT_SCRIPT, 1, self._key(scope), token, self.ttl_ms
            )
        except redis.RedisError as e:
            logger.warning(f"⚠️  Lease heartbeat failed for {scope}: {e}")
            return False

        if not extended:
            logger.warning(f"⚠️  Lease {scope} was lost (expired or taken over)")
        return bool(extended)


class LeaseLostError(Exception):
    """The guard no longer confirms this run holds its scope (expired or taken over)."""


async def ensure_lease(guard: SyncGuard, scope: str):
    """Extend the lease, or raise LeaseLostError so the caller stops before writing more."""
    if not await guard.heartbeat(scope):
        raise LeaseLostError(f"Lost sync lease {scope}; another worker may own this connection")
