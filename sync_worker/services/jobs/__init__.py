"""
Background Job Queue
Dramatiq actors for the post-insert side pipelines
"""
from sync_worker.services.jobs.broker import broker
from sync_worker.services.jobs.tasks import apply_rules_task, enrich_event_task, process_attachments_task

__all__ = ["broker", "apply_rules_task", "enrich_event_task", "process_attachments_task"]
