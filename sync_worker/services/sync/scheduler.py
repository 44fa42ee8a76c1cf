"""
In-process schedulers
Timer-driven fleet sync and hourly daily-brief check

Single replica only: the "cycle running" flag lives in this process. A tick
that fires while the previous cycle is still in flight is refused (logged,
not queued). Per-connection exclusion across the scheduler and the HTTP
trigger is handled by the sync guard, not by this flag.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

import httpx
from supabase import Client

from sync_worker.core.config import settings
from sync_worker.models.schemas import Connection
from sync_worker.services.sync.database import get_active_connections
from sync_worker.services.sync.locks import SyncGuard
from sync_worker.services.sync.orchestration.connection_sync import sync_connection

logger = logging.getLogger(__name__)


class PeriodicScheduler(ABC):
    """
    Runs run_once() every interval_seconds until stopped.

    Each tick is spawned as its own task so a slow cycle does not delay the
    timer; the overlapping tick then hits the is_running flag and returns.
    """

    name = "scheduler"

    def __init__(self, interval_seconds: float):
        self.interval_seconds = interval_seconds
        self.is_running = False
        self.last_started_at: Optional[datetime] = None
        self.last_finished_at: Optional[datetime] = None
        self.last_result: Optional[Dict[str, Any]] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    @abstractmethod
    async def cycle(self) -> Dict[str, Any]:
        """One unit of scheduled work; the returned summary becomes last_result."""

    async def run_once(self) -> Dict[str, Any]:
        """One cycle, refused while the previous one is still running."""
        if self.is_running:
            logger.warning(f"⏭️  [{self.name}] Previous cycle still running; skipping this tick")
            return {"skipped": True, "reason": "already_running"}

        self.is_running = True
        self.last_started_at = datetime.now(timezone.utc)
        try:
            self.last_result = await self.cycle()
            return self.last_result
        except Exception as e:
            logger.error(f"❌ [{self.name}] Cycle failed: {e}", exc_info=True)
            self.last_result = {"error": str(e)}
            return self.last_result
        finally:
            self.is_running = False
            self.last_finished_at = datetime.now(timezone.utc)

    def spawn(self, coro) -> asyncio.Task:
        """Start a background task and keep a reference until it finishes."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run_forever(self):
        logger.info(f"⏰ [{self.name}] Started (every {self.interval_seconds:.0f}s)")
        while True:
            self.spawn(self.run_once())
            await asyncio.sleep(self.interval_seconds)

    def start(self):
        if self._loop_task and not self._loop_task.done():
            return
        self._loop_task = asyncio.create_task(self.run_forever())

    async def stop(self):
        tasks = [t for t in [self._loop_task, *self._tasks] if t]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._tasks.clear()
        logger.info(f"🛑 [{self.name}] Stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "active": bool(self._loop_task and not self._loop_task.done()),
            "is_running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_finished_at": self.last_finished_at.isoformat() if self.last_finished_at else None,
            "pending_tasks": len(self._tasks),
        }


class SyncScheduler(PeriodicScheduler):
    """Full-fleet sync every SYNC_INTERVAL_MINUTES plus on-demand single-connection runs."""

    name = "sync"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        supabase: Client,
        guard: SyncGuard,
        interval_seconds: Optional[float] = None,
        provider_key: Optional[str] = None
    ):
        super().__init__(interval_seconds or settings.sync_interval_minutes * 60)
        self.http_client = http_client
        self.supabase = supabase
        self.guard = guard
        self.provider_key = provider_key or settings.provider_key

    async def sync_one(self, connection: Connection) -> Dict[str, Any]:
        return await sync_connection(self.http_client, self.supabase, connection, guard=self.guard)

    async def cycle(self) -> Dict[str, Any]:
        connections = await get_active_connections(self.supabase, self.provider_key)
        logger.info(f"🔄 Sync cycle: {len(connections)} active {self.provider_key} connection(s)")

        summary = {"connections": len(connections), "success": 0, "failed": 0, "skipped": 0}
        for connection in connections:
            try:
                result = await self.sync_one(connection)
                status = result.get("status", "failed")
            except Exception as e:
                logger.error(f"❌ Sync of connection {connection.id} raised: {e}", exc_info=True)
                status = "failed"
            summary[status] = summary.get(status, 0) + 1

        logger.info(f"✅ Sync cycle done: {summary}")
        return summary

    def trigger_connection(self, connection: Connection) -> asyncio.Task:
        """On-demand sync in the background; outcome lands in the run ledger."""
        logger.info(f"⚡ On-demand sync queued for connection {connection.id}")
        return self.spawn(self.sync_one(connection))


class BriefScheduler(PeriodicScheduler):
    """Hourly check for daily briefs due in the current UTC hour."""

    name = "brief"

    def __init__(self, http_client: httpx.AsyncClient, supabase: Client, interval_seconds: float = 3600):
        super().__init__(interval_seconds)
        self.http_client = http_client
        self.supabase = supabase

    async def cycle(self) -> Dict[str, Any]:
        from sync_worker.services.brief.service import check_and_send_briefs
        return await check_and_send_briefs(self.supabase, self.http_client)
