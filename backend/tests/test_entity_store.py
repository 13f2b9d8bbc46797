"""
Tests for the in-memory campaign tree: loading, expansion, collapse and
override reconciliation.
"""

import asyncio
from datetime import date

import pytest

from liveops.entities import DateRange, EntityKey, EntityStatus
from liveops.errors import ConflictError, UpstreamError
from liveops.services.entity_store import EntityStore, ExpansionStatus, OverrideField


@pytest.fixture
def store(registry):
    return EntityStore(registry)


@pytest.mark.anyio
async def test_load_campaigns_reads_every_platform(store):
    loaded = await store.load_campaigns()
    assert {c.campaign_id for c in loaded.campaigns} == {"c1", "t1"}
    assert loaded.errors == {}
    assert store.find_campaign("t1").platform == "tiktok"


@pytest.mark.anyio
async def test_load_campaigns_isolates_failing_platform(store, tiktok):
    tiktok.fail["list_campaigns"] = UpstreamError("TikTok is down")
    loaded = await store.load_campaigns(["meta", "tiktok"])
    assert [c.campaign_id for c in loaded.campaigns] == ["c1"]
    assert loaded.errors["tiktok"].platform == "tiktok"
    assert loaded.errors["tiktok"].action == "list_campaigns"


@pytest.mark.anyio
async def test_expand_loads_adsets_and_ads(store):
    await store.load_campaigns(["meta"])
    campaign = EntityKey.campaign("meta", "c1")

    adsets = await store.expand(campaign)
    assert [a.adset_id for a in adsets] == ["as_1", "as_7"]
    assert store.expansion_status(campaign) == ExpansionStatus.LOADED

    ads = await store.expand_adset(EntityKey.adset("meta", "as_1"))
    assert [a.ad_id for a in ads] == ["ad_42"]
    assert [a.ad_id for a in store.ads(EntityKey.adset("meta", "as_1"))] == ["ad_42"]


@pytest.mark.anyio
async def test_concurrent_expands_share_one_fetch(store, meta):
    await store.load_campaigns(["meta"])
    campaign = EntityKey.campaign("meta", "c1")
    first, second = await asyncio.gather(store.expand(campaign), store.expand(campaign))
    assert first == second
    assert meta.count("list_adsets") == 1


@pytest.mark.anyio
async def test_expand_again_with_new_date_range_refetches(store, meta):
    await store.load_campaigns(["meta"])
    campaign = EntityKey.campaign("meta", "c1")
    await store.expand(campaign)
    await store.expand(campaign)
    assert meta.count("list_adsets") == 1

    await store.expand(campaign, DateRange(date(2026, 10, 1), date(2026, 10, 7)))
    assert meta.count("list_adsets") == 2


@pytest.mark.anyio
async def test_ads_of_unexpanded_adset_are_not_stored(store, meta):
    await store.load_campaigns(["meta"])
    adset = EntityKey.adset("meta", "as_1")

    ads = await store.expand_adset(adset)
    assert [a.ad_id for a in ads] == ["ad_42"]
    assert store.ads(adset) is None
    assert store.get(EntityKey.ad("meta", "ad_42")) is None


@pytest.mark.anyio
async def test_expand_error_is_reported_and_retried(store, meta):
    await store.load_campaigns(["meta"])
    campaign = EntityKey.campaign("meta", "c1")
    meta.fail["list_adsets"] = UpstreamError("boom", platform="meta")

    with pytest.raises(UpstreamError):
        await store.expand(campaign)
    assert store.expansion_status(campaign) == ExpansionStatus.ERROR

    del meta.fail["list_adsets"]
    adsets = await store.expand(campaign)
    assert len(adsets) == 2


@pytest.mark.anyio
async def test_collapse_discards_in_flight_expansion(store, meta):
    await store.load_campaigns(["meta"])
    campaign = EntityKey.campaign("meta", "c1")
    meta.list_gate = asyncio.Event()
    # The fetch finishes even after being cancelled, like a response already on the wire.
    meta.swallow_cancel = True

    assert store.begin_expand(campaign) == ExpansionStatus.PENDING
    await asyncio.sleep(0)
    store.collapse(campaign)
    meta.list_gate.set()
    await asyncio.sleep(0.01)

    assert store.expansion_status(campaign) is None
    assert store.adsets(campaign) is None
    assert store.get(EntityKey.adset("meta", "as_1")) is None


@pytest.mark.anyio
async def test_waiter_of_collapsed_expansion_gets_conflict(store, meta):
    await store.load_campaigns(["meta"])
    campaign = EntityKey.campaign("meta", "c1")
    meta.list_gate = asyncio.Event()

    waiter = asyncio.ensure_future(store.expand(campaign))
    await asyncio.sleep(0)
    store.collapse(campaign)

    with pytest.raises(ConflictError):
        await waiter
    assert store.adsets(campaign) is None


@pytest.mark.anyio
async def test_collapse_leaves_siblings_alone(store):
    await store.load_campaigns(["meta"])
    campaign = EntityKey.campaign("meta", "c1")
    await store.expand(campaign)
    await store.expand_adset(EntityKey.adset("meta", "as_1"))
    await store.expand_adset(EntityKey.adset("meta", "as_7"))

    store.collapse(EntityKey.adset("meta", "as_1"))
    assert store.ads(EntityKey.adset("meta", "as_1")) is None
    assert [a.ad_id for a in store.ads(EntityKey.adset("meta", "as_7"))] == ["ad_43"]
    assert store.get(EntityKey.adset("meta", "as_1")) is not None


@pytest.mark.anyio
async def test_override_is_merged_on_read(store):
    await store.load_campaigns(["meta"])
    await store.expand(EntityKey.campaign("meta", "c1"))
    adset = EntityKey.adset("meta", "as_1")

    store.apply_override(adset, OverrideField.BUDGET, 3500)
    store.apply_override(adset, OverrideField.STATUS, False)
    record = store.get(adset)
    assert record.daily_budget_cents == 3500
    assert record.status == EntityStatus.PAUSED


@pytest.mark.anyio
async def test_resync_keeps_override_newer_than_its_snapshot(store, meta):
    await store.load_campaigns(["meta"])
    campaign = EntityKey.campaign("meta", "c1")
    await store.expand(campaign)
    adset = EntityKey.adset("meta", "as_1")

    snapshot = store.begin_resync("meta")
    store.apply_override(adset, OverrideField.BUDGET, 9000)
    assert store.apply_resync(snapshot, campaign, list(meta.adsets.values()))

    assert store.get(adset).daily_budget_cents == 9000
    assert store.override(adset, OverrideField.BUDGET) == 9000


@pytest.mark.anyio
async def test_resync_after_collapse_is_dropped(store, meta):
    await store.load_campaigns(["meta"])
    campaign = EntityKey.campaign("meta", "c1")
    await store.expand(campaign)

    snapshot = store.begin_resync("meta")
    store.collapse(campaign)
    assert store.apply_resync(snapshot, campaign, list(meta.adsets.values())) is False
    assert store.adsets(campaign) is None


@pytest.mark.anyio
async def test_full_reload_clears_overrides_and_expansions(store):
    await store.load_campaigns(["meta"])
    campaign = EntityKey.campaign("meta", "c1")
    await store.expand(campaign)
    store.apply_override(campaign, OverrideField.STATUS, False)

    await store.load_campaigns(["meta"])
    assert store.override(campaign, OverrideField.STATUS) is None
    assert store.expansion_status(campaign) is None
    assert store.get(campaign).status == EntityStatus.ACTIVE


@pytest.mark.anyio
async def test_fresh_expansion_retires_older_override(store, meta):
    await store.load_campaigns(["meta"])
    adset = EntityKey.adset("meta", "as_1")
    # Confirmed while the campaign was collapsed, so no resync covered it.
    store.apply_override(adset, OverrideField.BUDGET, 4000)
    meta.adsets["as_1"] = meta.adsets["as_1"].model_copy(update={"daily_budget_cents": 9900})

    await store.expand(EntityKey.campaign("meta", "c1"))

    assert store.get(adset).daily_budget_cents == 9900
    assert store.override(adset, OverrideField.BUDGET) is None


@pytest.mark.anyio
async def test_expansion_keeps_override_made_during_fetch(store, meta):
    await store.load_campaigns(["meta"])
    adset = EntityKey.adset("meta", "as_1")
    meta.list_gate = asyncio.Event()

    waiter = asyncio.ensure_future(store.expand(EntityKey.campaign("meta", "c1")))
    await asyncio.sleep(0.01)
    store.apply_override(adset, OverrideField.BUDGET, 4000)
    meta.list_gate.set()
    await waiter

    assert store.get(adset).daily_budget_cents == 4000
