"""
Tests for the activity log: persistence, derived deltas and summaries, and
the coordinator writing an entry per committed change.
"""

import pytest

from liveops.entities import EntityKey, EntityType
from liveops.errors import UpstreamError
from liveops.models import ActivityAction
from liveops.services.activity_log import (
    ActivityLogService, budget_change_pct, budget_delta, list_entries, summarize,
)
from liveops.services.entity_store import EntityStore
from liveops.services.mutation_coordinator import MutationCoordinator, MutationState


def test_budget_delta_and_pct():
    assert budget_delta(20.0, 25.0) == 5.0
    assert budget_change_pct(20.0, 25.0) == 25.0
    assert budget_change_pct(20.0, 5.0) == -75.0


def test_pct_is_none_without_a_baseline():
    assert budget_change_pct(0, 10.0) is None
    assert budget_change_pct(None, 10.0) is None
    assert budget_delta(None, 10.0) is None


@pytest.mark.anyio
async def test_entries_are_newest_first_in_dollars(session_factory):
    log = ActivityLogService(session_factory)
    await log.record("meta", EntityType.ADSET, "as_1", ActivityAction.BUDGET_CHANGE, 2000, 2500)
    await log.record("meta", EntityType.ADSET, "as_1", ActivityAction.PAUSE)
    await log.record("meta", EntityType.ADSET, "as_2", ActivityAction.RESUME)

    entries = await log.entries("as_1")
    assert [e.action for e in entries] == [ActivityAction.PAUSE, ActivityAction.BUDGET_CHANGE]
    change = entries[1]
    assert change.old_budget == 20.0
    assert change.new_budget == 25.0
    assert change.budget_delta == 5.0
    assert change.budget_change_pct == 25.0
    assert entries[0].budget_delta is None


@pytest.mark.anyio
async def test_entries_filter_by_platform_and_limit(session_factory):
    log = ActivityLogService(session_factory)
    for _ in range(3):
        await log.record("meta", EntityType.CAMPAIGN, "123", ActivityAction.PAUSE)
    await log.record("google", EntityType.CAMPAIGN, "123", ActivityAction.RESUME)

    async with session_factory() as db:
        assert len(await list_entries(db, "123")) == 4
        assert len(await list_entries(db, "123", platform="google")) == 1
        assert len(await list_entries(db, "123", limit=2)) == 2


@pytest.mark.anyio
async def test_summarize(session_factory):
    log = ActivityLogService(session_factory)
    await log.record("meta", EntityType.ADSET, "as_1", ActivityAction.BUDGET_CHANGE, 2000, 2500)
    await log.record("meta", EntityType.ADSET, "as_1", ActivityAction.BUDGET_CHANGE, 2500, 1500)
    await log.record("meta", EntityType.ADSET, "as_1", ActivityAction.PAUSE)

    summary = summarize(await log.entries("as_1"))
    assert summary["total"] == 3
    assert summary["counts"] == {"pause": 1, "resume": 0, "budget_change": 2}
    assert summary["net_budget_delta"] == -5.0
    assert summary["last_change_at"] is not None


def test_summarize_empty():
    summary = summarize([])
    assert summary["total"] == 0
    assert summary["net_budget_delta"] == 0
    assert summary["last_change_at"] is None


@pytest.mark.anyio
async def test_coordinator_logs_committed_changes_only(registry, meta, session_factory):
    store = EntityStore(registry)
    log = ActivityLogService(session_factory)
    coordinator = MutationCoordinator(registry, store, activity_log=log)
    await store.load_campaigns(["meta"])
    await store.expand(EntityKey.campaign("meta", "c1"))

    await coordinator.set_budget("meta", "as_1", 2600)
    await coordinator.set_status("meta", EntityType.ADSET, "as_1", False)
    await coordinator.set_bid_cap("meta", "as_1", 300)
    meta.fail["set_budget"] = UpstreamError("nope")
    with pytest.raises(UpstreamError):
        await coordinator.set_budget("meta", "as_1", 9900)

    entries = await log.entries("as_1", platform="meta")
    assert [e.action for e in entries] == [ActivityAction.PAUSE, ActivityAction.BUDGET_CHANGE]
    assert entries[1].old_budget == 20.0
    assert entries[1].new_budget == 26.0
    assert entries[1].entity_type == "adset"


@pytest.mark.anyio
async def test_log_failure_does_not_undo_mutation(registry, meta):
    class BrokenLog:
        async def record(self, *args, **kwargs):
            raise RuntimeError("database is gone")

    store = EntityStore(registry)
    coordinator = MutationCoordinator(registry, store, activity_log=BrokenLog())
    result = await coordinator.set_status("meta", EntityType.CAMPAIGN, "c1", False)
    assert result.state == MutationState.COMMITTED
