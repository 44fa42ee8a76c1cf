"""
Side Pipeline Worker
Dramatiq entry point for rules, enrichment and attachment jobs

Usage:
    dramatiq worker --processes 2 --threads 4 --queues side_pipelines

Reads the same environment as the web process (REDIS_URL, SUPABASE_URL, ...).
"""
import logging

from sync_worker.core.config import settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

if settings.sentry_dsn:
    try:
        import sentry_sdk
        from sentry_sdk.integrations.logging import LoggingIntegration

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            traces_sample_rate=0.1,
            integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)]
        )
        logger.info("✅ Sentry initialized in worker")
    except Exception as e:
        logger.warning(f"⚠️  Failed to initialize Sentry in worker: {e}")

# Declaring the actors registers them on the broker
try:
    from sync_worker.services.jobs.broker import broker
    from sync_worker.services.jobs import tasks  # noqa: F401

    actors = sorted(broker.get_declared_actors())
    logger.info(f"✅ Side pipeline worker ready ({tasks.SIDE_PIPELINE_QUEUE}): {', '.join(actors)}")
except Exception as e:
    logger.error(f"❌ Failed to initialize worker: {e}", exc_info=True)
    raise
