"""
Sync Scheduler: Debounced background resync per platform.

Each platform gets one lazily started worker task. ``trigger()`` only sets a
pending flag and wakes the worker; every trigger that lands during the
debounce window is absorbed into the same job, so there is at most one
outstanding job per platform. A job refreshes the platform's root list and
every currently expanded subtree, then lets the store retire the overrides
the fresh data supersedes. Failures are logged as SyncError and never reach
the mutation that triggered the job.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from liveops.entities import CampaignFilter
from liveops.errors import SyncError
from liveops.services.adapters.registry import AdapterRegistry
from liveops.services.entity_store import EntityStore
from liveops.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class PlatformSyncState:
    pending: bool = False
    running: bool = False
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    runs: int = 0
    triggers: int = 0


class SyncScheduler:
    def __init__(
        self,
        store: EntityStore,
        registry: AdapterRegistry,
        debounce_seconds: float = 3.0,
        min_interval_seconds: float = 10.0,
        platform_concurrency: int = 4,
    ):
        self.store = store
        self.registry = registry
        self.debounce_seconds = debounce_seconds
        self.min_interval_seconds = min_interval_seconds
        self.platform_concurrency = platform_concurrency

        self._states: dict[str, PlatformSyncState] = {}
        self._events: dict[str, asyncio.Event] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._job_locks: dict[str, asyncio.Lock] = {}
        self._semaphores: dict[str, asyncio.Semaphore] = {}

    def _state(self, platform: str) -> PlatformSyncState:
        return self._states.setdefault(platform, PlatformSyncState())

    def trigger(self, platform: str) -> None:
        """Request a resync. Returns immediately; bursts collapse into one job."""
        platform = platform.lower()
        self.registry.get(platform)
        state = self._state(platform)
        state.pending = True
        state.triggers += 1
        self._events.setdefault(platform, asyncio.Event()).set()

        worker = self._workers.get(platform)
        if worker is None or worker.done():
            self._workers[platform] = asyncio.ensure_future(self._worker(platform))

    async def _worker(self, platform: str) -> None:
        loop = asyncio.get_running_loop()
        event = self._events[platform]
        state = self._state(platform)
        last_run: Optional[float] = None
        while True:
            await event.wait()
            await asyncio.sleep(self.debounce_seconds)
            if last_run is not None:
                wait = self.min_interval_seconds - (loop.time() - last_run)
                if wait > 0:
                    await asyncio.sleep(wait)
            # Cleared before the job snapshots the store, so a trigger from here on schedules another job.
            event.clear()
            state.pending = False
            last_run = loop.time()
            await self.sync_now(platform)

    async def sync_now(self, platform: str) -> bool:
        """Run one resync job right away. True on success; failures are logged, not raised."""
        platform = platform.lower()
        state = self._state(platform)
        lock = self._job_locks.setdefault(platform, asyncio.Lock())
        async with lock:
            state.running = True
            state.runs += 1
            state.last_started_at = utcnow()
            try:
                await self._resync(platform)
                state.last_error = None
                return True
            except Exception as e:
                error = e if isinstance(e, SyncError) else SyncError(f"Resync failed: {e}", platform=platform, action="resync")
                logger.error(f"{error}", exc_info=True)
                state.last_error = error.message
                return False
            finally:
                state.running = False
                state.last_finished_at = utcnow()

    async def _resync(self, platform: str) -> None:
        snapshot = self.store.begin_resync(platform)
        adapter = self.registry.get(platform)

        if snapshot.has_roots:
            campaigns = await adapter.list_campaigns(CampaignFilter(date_range=snapshot.date_range))
            self.store.apply_resync_roots(snapshot, campaigns)

        semaphore = self._semaphores.setdefault(platform, asyncio.Semaphore(self.platform_concurrency))

        async def refresh(key, date_range):
            async with semaphore:
                records = await self.store.fetch_children(key, date_range)
            self.store.apply_resync(snapshot, key, records)

        results = await asyncio.gather(
            *(refresh(key, date_range) for key, date_range in snapshot.expanded),
            return_exceptions=True,
        )
        failures = [(key, r) for (key, _), r in zip(snapshot.expanded, results) if isinstance(r, Exception)]
        if failures:
            detail = "; ".join(f"{key}: {err}" for key, err in failures[:5])
            raise SyncError(
                f"{len(failures)} of {len(snapshot.expanded)} subtree refreshes failed ({detail})",
                platform=platform, action="resync",
            )
        logger.info(f"Resynced {platform}: {len(snapshot.expanded)} expanded subtrees")

    def status(self) -> dict[str, dict]:
        platforms = set(self.registry.platforms()) | set(self._states)
        return {p: asdict(self._state(p)) for p in sorted(platforms)}

    async def stop(self) -> None:
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
