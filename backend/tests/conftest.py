"""
Shared fixtures: an in-memory fake ad platform, a throwaway SQLite database,
and a fully wired LiveEngine mounted on the FastAPI app.
"""

import asyncio
from typing import Optional

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from liveops.entities import (
    CampaignFilter, DateRange, EntityStatus, EntityType, LiveAd, LiveAdset, LiveCampaign,
)
from liveops.services.adapters.base import PlatformAdapter
from liveops.services.adapters.registry import AdapterRegistry


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeAdapter(PlatformAdapter):
    """
    Platform double holding its own "truth" in dicts. Mutations change that
    truth, so a later list call behaves like a real resync.

    - ``fail[method]`` / ``fail_ids[entity_id]``: exception to raise instead
    - ``release``: when set, mutations wait on this event (``entered`` is set first)
    - ``list_gate``: when set, list_adsets / list_ads wait on it
    """

    def __init__(self, platform: str = "meta"):
        self.platform = platform
        self.campaigns: dict[str, LiveCampaign] = {}
        self.adsets: dict[str, LiveAdset] = {}
        self.ads: dict[str, LiveAd] = {}
        self.calls: list[tuple] = []
        self.fail: dict[str, Exception] = {}
        self.fail_ids: dict[str, Exception] = {}
        self.release: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self.list_gate: Optional[asyncio.Event] = None
        self.swallow_cancel = False
        self._next_id = 1000

    # ── Seeding ───────────────────────────────────────────────────────

    def add_campaign(self, campaign_id: str, **fields) -> LiveCampaign:
        fields.setdefault("status", EntityStatus.ACTIVE)
        fields.setdefault("campaign_name", f"Campaign {campaign_id}")
        self.campaigns[campaign_id] = LiveCampaign(campaign_id=campaign_id, platform=self.platform, **fields)
        return self.campaigns[campaign_id]

    def add_adset(self, adset_id: str, campaign_id: str, **fields) -> LiveAdset:
        fields.setdefault("status", EntityStatus.ACTIVE)
        fields.setdefault("adset_name", f"Ad set {adset_id}")
        self.adsets[adset_id] = LiveAdset(adset_id=adset_id, campaign_id=campaign_id, platform=self.platform, **fields)
        return self.adsets[adset_id]

    def add_ad(self, ad_id: str, adset_id: str, **fields) -> LiveAd:
        fields.setdefault("status", EntityStatus.ACTIVE)
        fields.setdefault("ad_name", f"Ad {ad_id}")
        self.ads[ad_id] = LiveAd(ad_id=ad_id, adset_id=adset_id, platform=self.platform, **fields)
        return self.ads[ad_id]

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    def _table(self, entity_type: EntityType) -> dict:
        return {EntityType.CAMPAIGN: self.campaigns, EntityType.ADSET: self.adsets, EntityType.AD: self.ads}[entity_type]

    async def _enter(self, method: str, entity_id: Optional[str] = None) -> None:
        self.calls.append((method, entity_id))
        if self.release is not None:
            self.entered.set()
            await self.release.wait()
        if method in self.fail:
            raise self.fail[method]
        if entity_id in self.fail_ids:
            raise self.fail_ids[entity_id]

    async def _gate(self) -> None:
        if self.list_gate is None:
            return
        try:
            await self.list_gate.wait()
        except asyncio.CancelledError:
            if not self.swallow_cancel:
                raise

    # ── Reads ─────────────────────────────────────────────────────────

    async def list_campaigns(self, filter: Optional[CampaignFilter] = None) -> list[LiveCampaign]:
        self.calls.append(("list_campaigns", None))
        if "list_campaigns" in self.fail:
            raise self.fail["list_campaigns"]
        return list(self.campaigns.values())

    async def list_adsets(self, campaign_id: str, date_range: Optional[DateRange] = None) -> list[LiveAdset]:
        self.calls.append(("list_adsets", campaign_id))
        await self._gate()
        if "list_adsets" in self.fail:
            raise self.fail["list_adsets"]
        return [a for a in self.adsets.values() if a.campaign_id == campaign_id]

    async def list_ads(self, adset_id: str, date_range: Optional[DateRange] = None) -> list[LiveAd]:
        self.calls.append(("list_ads", adset_id))
        await self._gate()
        return [a for a in self.ads.values() if a.adset_id == adset_id]

    async def get_budget(self, entity_type: EntityType, entity_id: str) -> Optional[int]:
        record = self._table(entity_type).get(entity_id)
        return getattr(record, "daily_budget_cents", None)

    # ── Mutations ─────────────────────────────────────────────────────

    async def set_entity_status(self, entity_type: EntityType, entity_id: str, enable: bool) -> None:
        await self._enter("set_entity_status", entity_id)
        table = self._table(entity_type)
        if entity_id in table:
            status = EntityStatus.ACTIVE if enable else EntityStatus.PAUSED
            table[entity_id] = table[entity_id].model_copy(update={"status": status})

    async def _write_budget(self, entity_type: EntityType, entity_id: str, new_budget_cents: int) -> None:
        await self._enter("set_budget", entity_id)
        table = self._table(entity_type)
        if entity_id in table:
            table[entity_id] = table[entity_id].model_copy(update={"daily_budget_cents": new_budget_cents})

    async def set_bid_cap(self, entity_id: str, new_bid_cap_cents: int) -> None:
        await self._enter("set_bid_cap", entity_id)
        if entity_id in self.adsets:
            self.adsets[entity_id] = self.adsets[entity_id].model_copy(update={"bid_cap_cents": new_bid_cap_cents})

    async def duplicate(self, entity_type: EntityType, entity_id: str, target_parent_id: Optional[str] = None) -> str:
        await self._enter("duplicate", entity_id)
        self._next_id += 1
        new_id = f"{entity_type.value}_{self._next_id}"
        if entity_type == EntityType.AD:
            src = self.ads[entity_id]
            self.add_ad(new_id, target_parent_id or src.adset_id, ad_name=self.copy_name(src.ad_name), status=EntityStatus.PAUSED)
        elif entity_type == EntityType.ADSET:
            src = self.adsets[entity_id]
            self.add_adset(new_id, target_parent_id or src.campaign_id, adset_name=self.copy_name(src.adset_name),
                           status=EntityStatus.PAUSED, daily_budget_cents=src.daily_budget_cents)
        else:
            src = self.campaigns[entity_id]
            self.add_campaign(new_id, campaign_name=self.copy_name(src.campaign_name), status=EntityStatus.PAUSED)
        return new_id

    async def aclose(self) -> None:
        self.calls.append(("aclose", None))


@pytest.fixture
def meta():
    adapter = FakeAdapter("meta")
    adapter.add_campaign("c1", daily_budget_cents=10000, spend=12.5, conversion_value=50.0)
    adapter.add_adset("as_1", "c1", daily_budget_cents=2000, bid_cap_cents=150)
    adapter.add_adset("as_7", "c1", daily_budget_cents=3000)
    adapter.add_ad("ad_42", "as_1", ad_name="Hook A")
    adapter.add_ad("ad_43", "as_7", ad_name="Hook B")
    return adapter


@pytest.fixture
def tiktok():
    adapter = FakeAdapter("tiktok")
    adapter.add_campaign("t1", daily_budget_cents=5000)
    adapter.add_adset("tg_1", "t1", daily_budget_cents=2500)
    return adapter


@pytest.fixture
def registry(meta, tiktok):
    reg = AdapterRegistry()
    reg.register(meta)
    reg.register(tiktok)
    return reg


@pytest.fixture
async def session_factory(tmp_path):
    from liveops.database import Base
    import liveops.models  # noqa: F401

    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'liveops.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    await db_engine.dispose()


@pytest.fixture
async def live_engine(registry, session_factory):
    from liveops.engine import LiveEngine

    engine = LiveEngine(registry, session_factory, debounce_seconds=0.01, min_interval_seconds=0)
    yield engine
    await engine.aclose()


@pytest.fixture
async def client(live_engine, session_factory):
    """API client against the real app, with auth off and the test database behind get_db."""
    from liveops.auth import require_auth
    from liveops.database import get_db
    from liveops.main import app

    async def _test_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.state.engine = live_engine
    app.dependency_overrides[get_db] = _test_db
    app.dependency_overrides[require_auth] = lambda: "test"
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    app.state.engine = None
