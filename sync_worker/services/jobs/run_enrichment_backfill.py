"""
CLI Entry Point for the Enrichment Backfill
Queues backfill_enrichment_task for events stored without metadata.enrichment
(e.g. synced while SIDE_PIPELINE_MODE=disabled)

Usage:
    python -m sync_worker.services.jobs.run_enrichment_backfill [limit]
"""
import sys
import logging

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 500


def main(argv=None):
    """Send one backfill job to the side-pipeline queue; a worker picks it up."""
    from sync_worker.services.jobs.tasks import backfill_enrichment_task

    argv = sys.argv[1:] if argv is None else argv

    try:
        limit = int(argv[0]) if argv else DEFAULT_LIMIT
    except ValueError:
        logger.error(f"❌ Limit must be an integer, got {argv[0]!r}")
        sys.exit(2)

    logger.info(f"🧠 Queueing enrichment backfill (limit={limit})")

    try:
        backfill_enrichment_task.send(limit)
        logger.info("✅ Enrichment backfill queued")
        sys.exit(0)

    except Exception as e:
        logger.error(f"❌ Could not queue enrichment backfill: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
