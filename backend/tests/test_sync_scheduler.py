"""
Tests for debounced background resync.
"""

import asyncio

import pytest

from liveops.entities import EntityKey
from liveops.errors import UnknownPlatformError, UpstreamError
from liveops.services.entity_store import EntityStore
from liveops.services.sync_scheduler import SyncScheduler


@pytest.fixture
def store(registry):
    return EntityStore(registry)


@pytest.fixture
async def scheduler(registry, store):
    sched = SyncScheduler(store, registry, debounce_seconds=0.05, min_interval_seconds=0)
    yield sched
    await sched.stop()


@pytest.mark.anyio
async def test_burst_of_triggers_runs_one_job(scheduler, store, meta):
    await store.load_campaigns(["meta"])
    before = meta.count("list_campaigns")

    for _ in range(5):
        scheduler.trigger("meta")
    assert scheduler.status()["meta"]["pending"] is True
    await asyncio.sleep(0.2)

    state = scheduler.status()["meta"]
    assert state["runs"] == 1
    assert state["triggers"] == 5
    assert state["pending"] is False
    assert meta.count("list_campaigns") == before + 1


@pytest.mark.anyio
async def test_trigger_after_job_schedules_another(scheduler, store):
    await store.load_campaigns(["meta"])
    scheduler.trigger("meta")
    await asyncio.sleep(0.15)
    scheduler.trigger("meta")
    await asyncio.sleep(0.15)
    assert scheduler.status()["meta"]["runs"] == 2


@pytest.mark.anyio
async def test_failing_platform_does_not_affect_others(scheduler, store, tiktok):
    await store.load_campaigns(["meta", "tiktok"])
    tiktok.fail["list_campaigns"] = UpstreamError("TikTok is down", platform="tiktok")

    assert await scheduler.sync_now("tiktok") is False
    assert await scheduler.sync_now("meta") is True

    status = scheduler.status()
    assert "TikTok is down" in status["tiktok"]["last_error"]
    assert status["meta"]["last_error"] is None


@pytest.mark.anyio
async def test_subtree_failure_is_a_sync_error_not_a_raise(scheduler, store, meta):
    await store.load_campaigns(["meta"])
    await store.expand(EntityKey.campaign("meta", "c1"))
    meta.fail["list_adsets"] = UpstreamError("rate limited", rate_limited=True)

    assert await scheduler.sync_now("meta") is False
    assert "subtree refreshes failed" in scheduler.status()["meta"]["last_error"]


@pytest.mark.anyio
async def test_resync_refreshes_expanded_subtrees(scheduler, store, meta):
    await store.load_campaigns(["meta"])
    campaign = EntityKey.campaign("meta", "c1")
    await store.expand(campaign)
    meta.add_adset("as_9", "c1", daily_budget_cents=900)

    await scheduler.sync_now("meta")
    assert [a.adset_id for a in store.adsets(campaign)] == ["as_1", "as_7", "as_9"]


@pytest.mark.anyio
async def test_unknown_platform_trigger_is_rejected(scheduler):
    with pytest.raises(UnknownPlatformError):
        scheduler.trigger("myspace")
