"""
Live Campaigns Router: Read the campaign -> ad set -> ad tree straight from
the ad platforms and apply status / budget / bid / duplicate changes to it.
Nothing here is cached in the database; only the activity log and the
account map are persisted.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from liveops.database import get_db
from liveops.engine import LiveEngine, get_engine
from liveops.entities import EntityKey, EntityType
from liveops.errors import ValidationError
from liveops.services import account_map
from liveops.services.activity_log import DEFAULT_LIMIT, list_entries, summarize
from liveops.utils import parse_date_range, parse_entity_id, parse_entity_type

logger = logging.getLogger(__name__)
router = APIRouter()


class StatusRequest(BaseModel):
    enable: bool


class BudgetRequest(BaseModel):
    new_budget_cents: int
    previous_budget_cents: Optional[int] = None
    entity_type: Optional[str] = Field(None, description="campaign or adset; inferred from the loaded tree when absent")


class BidCapRequest(BaseModel):
    new_bid_cap_cents: int


class DuplicateRequest(BaseModel):
    platform: str
    target_parent_id: Optional[str] = None


class BulkStatusRequest(BaseModel):
    campaign_ids: list[str] = Field(..., min_length=1)
    enable: bool
    platform: Optional[str] = None


def _parse_account(account: Optional[str]) -> Optional[int]:
    if not account or account.lower() == "all":
        return None
    try:
        return int(account)
    except ValueError:
        raise ValidationError(f"Invalid account filter: {account!r}")


# ══════════════════════════════════════════════════════════════════════
#  TREE READS
# ══════════════════════════════════════════════════════════════════════

@router.get("")
async def list_live_campaigns(
    platform: Optional[str] = Query(None, description="meta, tiktok, newsbreak, google; all configured when absent"),
    start: Optional[str] = Query(None, description="YYYY-MM-DD"),
    end: Optional[str] = Query(None, description="YYYY-MM-DD"),
    account: Optional[str] = Query(None, description="Internal account id, or 'all'"),
    engine: LiveEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db),
):
    """Full reload of the campaign list for one platform or all of them."""
    date_range = parse_date_range(start, end)
    account_id = _parse_account(account)
    platforms = [platform] if platform else engine.registry.platforms()

    loaded = await engine.store.load_campaigns(platforms, date_range)
    if loaded.errors and len(loaded.errors) == len(platforms):
        # Nothing came back at all; surface the first platform's error as-is.
        raise next(iter(loaded.errors.values()))

    campaigns = account_map.apply_mappings(loaded.campaigns, await account_map.mapping_dict(db))
    if account_id is not None:
        campaigns = [c for c in campaigns if c.account_id == account_id]
    return campaigns


@router.get("/{platform}/{campaign_id}/adsets")
async def list_live_adsets(
    platform: str,
    campaign_id: str,
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
    engine: LiveEngine = Depends(get_engine),
):
    adapter = engine.registry.get(platform)
    key = EntityKey.campaign(adapter.platform, parse_entity_id(campaign_id, "campaign_id", platform))
    return await engine.store.expand(key, parse_date_range(start, end))


@router.get("/{platform}/{adset_id}/ads")
async def list_live_ads(
    platform: str,
    adset_id: str,
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
    engine: LiveEngine = Depends(get_engine),
):
    adapter = engine.registry.get(platform)
    key = EntityKey.adset(adapter.platform, parse_entity_id(adset_id, "adset_id", platform))
    return await engine.store.expand_adset(key, parse_date_range(start, end))


# ══════════════════════════════════════════════════════════════════════
#  MUTATIONS
# ══════════════════════════════════════════════════════════════════════

@router.post("/bulk/status")
async def bulk_set_status(payload: BulkStatusRequest, engine: LiveEngine = Depends(get_engine)):
    """Pause or resume many campaigns. Failed items are reported; the rest still run."""
    result = await engine.bulk.set_status(payload.campaign_ids, payload.enable, payload.platform)
    return result.to_dict()


@router.patch("/{platform}/{entity_type}/{entity_id}/status")
async def set_entity_status(
    platform: str,
    entity_type: str,
    entity_id: str,
    payload: StatusRequest,
    engine: LiveEngine = Depends(get_engine),
):
    result = await engine.coordinator.set_status(platform, parse_entity_type(entity_type), entity_id, payload.enable)
    return result.to_dict()


@router.patch("/{platform}/{entity_id}/budget")
async def set_budget(
    platform: str,
    entity_id: str,
    payload: BudgetRequest,
    engine: LiveEngine = Depends(get_engine),
):
    entity_type = parse_entity_type(payload.entity_type) if payload.entity_type else None
    if entity_type == EntityType.AD:
        raise ValidationError("Ads have no budget", platform=platform, entity_id=entity_id, action="budget_change")
    result = await engine.coordinator.set_budget(
        platform, entity_id, payload.new_budget_cents, payload.previous_budget_cents, entity_type=entity_type,
    )
    return result.to_dict()


@router.patch("/{platform}/{entity_id}/bid-cap")
async def set_bid_cap(
    platform: str,
    entity_id: str,
    payload: BidCapRequest,
    engine: LiveEngine = Depends(get_engine),
):
    result = await engine.coordinator.set_bid_cap(platform, entity_id, payload.new_bid_cap_cents)
    return result.to_dict()


@router.post("/{entity_type}/{entity_id}/duplicate")
async def duplicate_entity(
    entity_type: str,
    entity_id: str,
    payload: DuplicateRequest,
    engine: LiveEngine = Depends(get_engine),
):
    """Copy a campaign, ad set or ad. The copy is created paused and shows up after the next resync."""
    result = await engine.coordinator.duplicate(
        payload.platform, parse_entity_type(entity_type), entity_id, payload.target_parent_id,
    )
    return result.to_dict()


@router.get("/{platform}/{entity_type}/{entity_id}/mutation")
async def get_mutation_state(
    platform: str,
    entity_type: str,
    entity_id: str,
    engine: LiveEngine = Depends(get_engine),
):
    key = EntityKey(platform.lower(), parse_entity_type(entity_type), parse_entity_id(entity_id, platform=platform))
    return {
        "platform": key.platform,
        "entity_type": key.entity_type.value,
        "entity_id": key.entity_id,
        "state": engine.coordinator.state(key).value,
    }


# ══════════════════════════════════════════════════════════════════════
#  ACTIVITY LOG
# ══════════════════════════════════════════════════════════════════════

@router.get("/{entity_id}/activity-log")
async def get_activity_log(
    entity_id: str,
    platform: Optional[str] = Query(None),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    entity_id = parse_entity_id(entity_id)
    return await list_entries(db, entity_id, platform.lower() if platform else None, limit)


@router.get("/{entity_id}/activity-log/summary")
async def get_activity_log_summary(
    entity_id: str,
    platform: Optional[str] = Query(None),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    entity_id = parse_entity_id(entity_id)
    entries = await list_entries(db, entity_id, platform.lower() if platform else None, limit)
    return {"entity_id": entity_id, **summarize(entries)}
