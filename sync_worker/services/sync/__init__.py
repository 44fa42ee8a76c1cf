"""
Data Sync System
Incremental Microsoft Graph mail/calendar sync
"""
from sync_worker.services.sync.database import get_connection, get_active_connections, get_cursor, save_cursor, clear_cursor
from sync_worker.services.sync.ledger import begin_run, complete_run, fail_run
from sync_worker.services.sync.persistence import write_if_new
from sync_worker.services.sync.orchestration.connection_sync import sync_connection
from sync_worker.services.sync.scheduler import SyncScheduler, BriefScheduler

__all__ = [
    "get_connection",
    "get_active_connections",
    "get_cursor",
    "save_cursor",
    "clear_cursor",
    "begin_run",
    "complete_run",
    "fail_run",
    "write_if_new",
    "sync_connection",
    "SyncScheduler",
    "BriefScheduler",
]
