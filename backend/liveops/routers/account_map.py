"""
Account Map Router: Assign live platform campaigns to internal accounts,
one at a time, in bulk, or by keyword auto-discovery.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from liveops.database import get_db
from liveops.engine import LiveEngine, get_engine
from liveops.services import account_map
from liveops.services.account_map import AccountMapping

logger = logging.getLogger(__name__)
router = APIRouter()


class AssignRequest(BaseModel):
    campaign_id: str
    account_id: int


class BulkAssignRequest(BaseModel):
    campaign_ids: list[str] = Field(..., min_length=1)
    account_id: int


@router.get("")
async def list_mappings(
    account_id: Optional[int] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await account_map.list_mappings(db, account_id)


@router.post("")
async def assign_campaign(payload: AssignRequest, db: AsyncSession = Depends(get_db)):
    row = await account_map.assign(db, payload.campaign_id, payload.account_id)
    return AccountMapping.model_validate(row)


@router.post("/bulk")
async def bulk_assign(
    payload: BulkAssignRequest,
    engine: LiveEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db),
):
    """Reassign many campaigns. Each campaign is its own item in the result."""
    # Unknown account fails the whole request up front rather than every item.
    await account_map.get_account(db, payload.account_id)
    result = await engine.bulk.reassign(payload.campaign_ids, payload.account_id, engine.session_factory)
    return result.to_dict()


@router.post("/auto/{platform}")
async def auto_assign(
    platform: str,
    engine: LiveEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db),
):
    """Keyword-match the platform's unmapped campaigns onto its accounts."""
    engine.registry.get(platform)
    campaigns = engine.store.campaigns(platform.lower())
    if not campaigns:
        loaded = await engine.store.load_campaigns([platform], engine.store.date_range)
        if loaded.errors:
            raise next(iter(loaded.errors.values()))
        campaigns = loaded.campaigns
    assigned = await account_map.auto_assign(db, platform, campaigns)
    return {"platform": platform.lower(), "assigned": len(assigned), "mappings": assigned}
