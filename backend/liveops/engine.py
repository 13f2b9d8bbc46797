"""
LiveEngine: One object owning the adapter registry, the entity store and
the services that act on it. Built once in the app lifespan and handed to
routers through ``get_engine``.
"""

import logging
from typing import Optional

import httpx
from fastapi import Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from liveops.config import Settings
from liveops.services.activity_log import ActivityLogService
from liveops.services.adapters.registry import AdapterRegistry, build_default_registry
from liveops.services.bulk_runner import BulkOperationRunner
from liveops.services.entity_store import EntityStore
from liveops.services.mutation_coordinator import MutationCoordinator
from liveops.services.sync_scheduler import SyncScheduler

logger = logging.getLogger(__name__)


class LiveEngine:
    def __init__(
        self,
        registry: AdapterRegistry,
        session_factory: async_sessionmaker,
        min_budget_cents: int = 500,
        debounce_seconds: float = 3.0,
        min_interval_seconds: float = 10.0,
        platform_concurrency: int = 4,
    ):
        self.registry = registry
        self.session_factory = session_factory
        self.store = EntityStore(registry)
        self.scheduler = SyncScheduler(
            self.store, registry,
            debounce_seconds=debounce_seconds,
            min_interval_seconds=min_interval_seconds,
            platform_concurrency=platform_concurrency,
        )
        self.activity_log = ActivityLogService(session_factory)
        self.coordinator = MutationCoordinator(
            registry, self.store,
            activity_log=self.activity_log,
            scheduler=self.scheduler,
            min_budget_cents=min_budget_cents,
        )
        self.bulk = BulkOperationRunner(self.coordinator, self.store)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker,
        http: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "LiveEngine":
        return cls(
            build_default_registry(settings, http),
            session_factory,
            min_budget_cents=settings.min_budget_cents,
            debounce_seconds=settings.sync_debounce_seconds,
            min_interval_seconds=settings.sync_min_interval_seconds,
            platform_concurrency=settings.sync_platform_concurrency,
        )

    async def aclose(self) -> None:
        # Mutations first: they must finish even when the app is going down.
        await self.coordinator.drain()
        await self.scheduler.stop()
        await self.store.close()
        await self.registry.aclose()
        logger.info("Live engine stopped")


def get_engine(request: Request) -> LiveEngine:
    return request.app.state.engine
