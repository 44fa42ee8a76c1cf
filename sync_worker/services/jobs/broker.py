"""
Dramatiq Broker Configuration
Redis-backed queue for the post-insert side pipelines

ENVIRONMENT=test swaps in the in-memory StubBroker so actors can be declared
and messages inspected without a Redis server.
"""
import logging

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, Callbacks, Pipelines, Retries, ShutdownNotifications

from sync_worker.core.config import settings

logger = logging.getLogger(__name__)

# Side pipeline jobs older than this are dropped rather than run against stale state
MAX_JOB_AGE_MS = 24 * 60 * 60 * 1000


def _middleware():
    # TimeLimit left out: its signal-based timer is unreliable on Python 3.13
    return [
        AgeLimit(max_age=MAX_JOB_AGE_MS),
        Retries(max_retries=3, min_backoff=5_000, max_backoff=300_000),
        Callbacks(),
        Pipelines(),
        ShutdownNotifications(),
    ]


def build_broker() -> dramatiq.Broker:
    if settings.environment == "test":
        logger.info("🧪 Stub broker initialized (ENVIRONMENT=test)")
        return StubBroker()

    if not settings.redis_url:
        logger.warning("⚠️  REDIS_URL not set - side pipeline jobs will not be delivered")
        return RedisBroker(middleware=_middleware())

    logger.info(f"✅ Redis broker initialized: {settings.redis_url[:20]}...")
    return RedisBroker(url=settings.redis_url, middleware=_middleware())


broker = build_broker()
dramatiq.set_broker(broker)
