"""
Dependency Injection
Provides reusable dependencies for FastAPI routes and the in-process schedulers

DEPENDENCIES:
- Supabase client (database + storage)
- Redis client (job queue + sync lease)
- HTTP client (Microsoft Graph, token endpoint)
- Sync guard (per-connection mutual exclusion)
"""
import logging
from typing import Optional

import httpx
import redis
from supabase import create_client, Client

from sync_worker.core.config import settings
from sync_worker.services.sync.locks import InProcessSyncGuard, RedisSyncLease, SyncGuard

logger = logging.getLogger(__name__)

# ============================================================================
# GLOBAL CLIENTS (initialized once, reused across requests)
# ============================================================================

_supabase_client: Optional[Client] = None
_redis_client: Optional[redis.Redis] = None
_http_client: Optional[httpx.AsyncClient] = None
_sync_guard: Optional[SyncGuard] = None


def create_http_client() -> httpx.AsyncClient:
    """Fresh HTTP client with the configured timeout."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.http_timeout_seconds),
        limits=httpx.Limits(max_keepalive_connections=5, max_connections=10)
    )


def build_sync_guard(redis_client: Optional[redis.Redis]) -> SyncGuard:
    """Pick the mutual-exclusion backend from configuration."""
    if settings.sync_lock_backend == "redis" and redis_client is not None:
        logger.info(f"🔒 Using Redis sync lease (ttl={settings.sync_lease_ttl_seconds}s)")
        return RedisSyncLease(redis_client, ttl_seconds=settings.sync_lease_ttl_seconds)

    logger.info("🔒 Using in-process sync guard (single replica only)")
    return InProcessSyncGuard()


# ============================================================================
# INITIALIZATION (called on app startup)
# ============================================================================

async def initialize_clients():
    """
    Initialize all global clients on app startup.

    Called from main.py lifespan event.
    """
    global _supabase_client, _redis_client, _http_client, _sync_guard

    logger.info("Initializing global clients...")

    # Supabase
    try:
        _supabase_client = create_client(
            settings.supabase_url,
            settings.supabase_service_key  # Backend uses service role
        )
        logger.info("✅ Supabase client initialized")
    except Exception as e:
        logger.error(f"❌ Failed to initialize Supabase: {e}")
        raise

    # Redis (optional for local dev)
    if settings.redis_url:
        try:
            _redis_client = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=5
            )
            _redis_client.ping()
            logger.info("✅ Redis client initialized")
        except Exception as e:
            logger.warning(f"⚠️  Redis not available: {e}")
            logger.warning("⚠️  Background jobs and the Redis lease will not work (OK for local dev)")
            _redis_client = None
    else:
        logger.info("ℹ️  Redis not configured (REDIS_URL not set)")

    _http_client = create_http_client()
    logger.info("✅ HTTP client initialized")

    _sync_guard = build_sync_guard(_redis_client)

    logger.info("✅ All clients initialized successfully")


async def shutdown_clients():
    """
    Shutdown all global clients on app shutdown.

    Called from main.py lifespan event.
    """
    global _supabase_client, _redis_client, _http_client, _sync_guard

    logger.info("Shutting down global clients...")

    if _http_client:
        try:
            await _http_client.aclose()
            logger.info("✅ HTTP client closed")
        except Exception as e:
            logger.error(f"Error closing HTTP client: {e}")

    if _redis_client:
        try:
            _redis_client.close()
            logger.info("✅ Redis client closed")
        except Exception as e:
            logger.error(f"Error closing Redis: {e}")

    # Supabase doesn't need explicit cleanup
    _supabase_client = None
    _redis_client = None
    _http_client = None
    _sync_guard = None

    logger.info("✅ All clients shutdown complete")


# ============================================================================
# DEPENDENCY FUNCTIONS (injected into routes)
# ============================================================================

def get_supabase() -> Client:
    """
    Get Supabase client for dependency injection.

    Usage:
        @router.get("/example")
        async def example(supabase: Client = Depends(get_supabase)):
            result = supabase.table("events").select("*").execute()
            return result.data
    """
    if _supabase_client is None:
        logger.error("Supabase client not initialized")
        raise RuntimeError("Supabase client not initialized. Call initialize_clients() first.")

    return _supabase_client


def get_http_client() -> httpx.AsyncClient:
    """Shared HTTP client for provider calls made from the web process."""
    if _http_client is None:
        logger.error("HTTP client not initialized")
        raise RuntimeError("HTTP client not initialized. Call initialize_clients() first.")

    return _http_client


def get_sync_guard() -> SyncGuard:
    """Process-wide per-connection guard shared by the scheduler and the HTTP trigger."""
    if _sync_guard is None:
        logger.error("Sync guard not initialized")
        raise RuntimeError("Sync guard not initialized. Call initialize_clients() first.")

    return _sync_guard
