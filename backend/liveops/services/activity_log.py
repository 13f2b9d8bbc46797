"""
Activity Log: Append-only audit trail of pause / resume / budget changes.

Budgets are stored in dollars (NUMERIC(12,2)); the engine hands in cents.
Deltas and percentage changes are derived on read.
"""

import logging
from collections import Counter
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, computed_field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from liveops.entities import EntityType
from liveops.models import ActivityAction, CampaignActivityLog

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50


def budget_delta(old: Optional[float], new: Optional[float]) -> Optional[float]:
    if old is None or new is None:
        return None
    return round(new - old, 2)


def budget_change_pct(old: Optional[float], new: Optional[float]) -> Optional[float]:
    if not old or new is None:
        return None
    return round((new - old) / old * 100, 1)


def _dollars(cents: Optional[int]) -> Optional[Decimal]:
    return (Decimal(cents) / 100).quantize(Decimal("0.01")) if cents is not None else None


class ActivityLogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    platform: str
    entity_type: str
    entity_id: str
    action: ActivityAction
    old_budget: Optional[float] = None
    new_budget: Optional[float] = None
    created_at: datetime

    @computed_field
    @property
    def budget_delta(self) -> Optional[float]:
        return budget_delta(self.old_budget, self.new_budget)

    @computed_field
    @property
    def budget_change_pct(self) -> Optional[float]:
        return budget_change_pct(self.old_budget, self.new_budget)


async def append_entry(
    db: AsyncSession,
    platform: str,
    entity_type: EntityType,
    entity_id: str,
    action: ActivityAction,
    old_budget_cents: Optional[int] = None,
    new_budget_cents: Optional[int] = None,
) -> CampaignActivityLog:
    row = CampaignActivityLog(
        platform=platform,
        entity_type=entity_type.value,
        entity_id=entity_id,
        action=action.value,
        old_budget=_dollars(old_budget_cents),
        new_budget=_dollars(new_budget_cents),
    )
    db.add(row)
    await db.flush()
    return row


async def list_entries(
    db: AsyncSession,
    entity_id: str,
    platform: Optional[str] = None,
    limit: int = DEFAULT_LIMIT,
) -> list[ActivityLogEntry]:
    """Newest first."""
    query = select(CampaignActivityLog).where(CampaignActivityLog.entity_id == entity_id)
    if platform:
        query = query.where(CampaignActivityLog.platform == platform)
    query = query.order_by(CampaignActivityLog.created_at.desc(), CampaignActivityLog.id.desc()).limit(limit)
    result = await db.execute(query)
    return [ActivityLogEntry.model_validate(row) for row in result.scalars().all()]


def summarize(entries: Iterable[ActivityLogEntry]) -> dict:
    """Counts per action plus the net budget movement across the entries."""
    entries = list(entries)
    counts = Counter(e.action.value for e in entries)
    net = sum(e.budget_delta or 0.0 for e in entries if e.action == ActivityAction.BUDGET_CHANGE)
    return {
        "total": len(entries),
        "counts": {a.value: counts.get(a.value, 0) for a in ActivityAction},
        "net_budget_delta": round(net, 2),
        "last_change_at": entries[0].created_at if entries else None,
    }


class ActivityLogService:
    """Session-owning front end used by the mutation coordinator."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def record(
        self,
        platform: str,
        entity_type: EntityType,
        entity_id: str,
        action: ActivityAction,
        old_budget_cents: Optional[int] = None,
        new_budget_cents: Optional[int] = None,
    ) -> None:
        async with self.session_factory() as db:
            await append_entry(db, platform, entity_type, entity_id, action, old_budget_cents, new_budget_cents)
            await db.commit()
        logger.info(f"Activity: {action.value} {platform}:{entity_id}")

    async def entries(self, entity_id: str, platform: Optional[str] = None, limit: int = DEFAULT_LIMIT) -> list[ActivityLogEntry]:
        async with self.session_factory() as db:
            return await list_entries(db, entity_id, platform, limit)
