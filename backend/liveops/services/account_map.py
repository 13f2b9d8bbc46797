"""
Account Map: Operator assignment of platform campaigns to internal accounts.

Independent of the platforms' own account hierarchy. Also hosts the
keyword-based auto-discovery used for platforms whose reports do not say
which advertiser a campaign belongs to.
"""

import logging
import re
from datetime import datetime
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from liveops.entities import LiveCampaign
from liveops.errors import ValidationError
from liveops.models import Account, AccountStatus, CampaignAccountMap
from liveops.utils import parse_entity_id, utcnow

logger = logging.getLogger(__name__)

GENERIC_WORDS = {"news", "break", "newsbreak", "account", "acct", "acc"}


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    platform: str
    platform_account_id: Optional[str] = None
    status: str


class AccountMapping(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    campaign_id: str
    account_id: int
    updated_at: Optional[datetime] = None


# ── Accounts ──────────────────────────────────────────────────────────

async def create_account(
    db: AsyncSession,
    name: str,
    platform: str,
    platform_account_id: Optional[str] = None,
) -> Account:
    account = Account(
        name=name,
        platform=platform.lower(),
        platform_account_id=platform_account_id,
        status=AccountStatus.ACTIVE.value,
    )
    db.add(account)
    await db.flush()
    logger.info(f"Created account '{name}' ({platform})")
    return account


async def list_accounts(db: AsyncSession, platform: Optional[str] = None) -> list[Account]:
    query = select(Account).order_by(Account.id)
    if platform:
        query = query.where(Account.platform == platform.lower())
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_account(db: AsyncSession, account_id: int) -> Account:
    account = await db.get(Account, account_id)
    if account is None:
        raise ValidationError(f"Account {account_id} does not exist", action="assign_account")
    return account


# ── Assignments ───────────────────────────────────────────────────────

async def assign(db: AsyncSession, campaign_id: str, account_id: int) -> CampaignAccountMap:
    """Upsert one campaign -> account assignment."""
    campaign_id = parse_entity_id(campaign_id, "campaign_id")
    await get_account(db, account_id)
    row = await db.get(CampaignAccountMap, campaign_id)
    if row is None:
        row = CampaignAccountMap(campaign_id=campaign_id, account_id=account_id)
        db.add(row)
    else:
        row.account_id = account_id
        row.updated_at = utcnow()
    await db.flush()
    return row


async def list_mappings(db: AsyncSession, account_id: Optional[int] = None) -> list[AccountMapping]:
    query = select(CampaignAccountMap).order_by(CampaignAccountMap.campaign_id)
    if account_id is not None:
        query = query.where(CampaignAccountMap.account_id == account_id)
    result = await db.execute(query)
    return [AccountMapping.model_validate(row) for row in result.scalars().all()]


async def mapping_dict(db: AsyncSession) -> dict[str, int]:
    result = await db.execute(select(CampaignAccountMap.campaign_id, CampaignAccountMap.account_id))
    return {campaign_id: account_id for campaign_id, account_id in result.all()}


def apply_mappings(campaigns: Iterable[LiveCampaign], mappings: dict[str, int]) -> list[LiveCampaign]:
    return [
        c.model_copy(update={"account_id": mappings[c.campaign_id]}) if c.campaign_id in mappings else c
        for c in campaigns
    ]


# ── Auto-discovery ────────────────────────────────────────────────────

def extract_keywords(name: Optional[str]) -> list[str]:
    """Meaningful words of an account name, e.g. "NewsBreak Slot Trick" -> ["slot", "trick"]."""
    words = re.split(r"[\s\-_]+", (name or "").lower())
    return [w for w in words if len(w) > 2 and w not in GENERIC_WORDS]


def best_account(campaign_name: Optional[str], keyword_map: list[tuple[int, list[str]]], default: int) -> int:
    """Account whose keywords overlap the campaign name the most; ties keep the earlier account."""
    name = (campaign_name or "").lower()
    best, best_score = default, 0
    for account_id, keywords in keyword_map:
        score = sum(1 for kw in keywords if kw in name)
        if score > best_score:
            best, best_score = account_id, score
    return best


async def auto_assign(db: AsyncSession, platform: str, campaigns: Iterable[LiveCampaign]) -> dict[str, int]:
    """
    Map unmapped campaigns of a platform onto its accounts by keyword overlap.
    Needs at least two active accounts to choose between. Existing mappings are never changed.
    Returns the new assignments.
    """
    platform = platform.lower()
    result = await db.execute(
        select(Account)
        .where(
            Account.platform == platform,
            Account.status == AccountStatus.ACTIVE.value,
            Account.platform_account_id.is_not(None),
            Account.platform_account_id != "default",
        )
        .order_by(Account.id)
    )
    accounts = list(result.scalars().all())
    if len(accounts) < 2:
        return {}

    keyword_map = []
    for account in accounts:
        keywords = extract_keywords(account.name)
        if keywords:
            keyword_map.append((account.id, keywords))
    if not keyword_map:
        return {}

    existing = await mapping_dict(db)
    default = accounts[0].id
    assigned: dict[str, int] = {}
    for campaign in campaigns:
        if campaign.platform != platform or campaign.campaign_id in existing or campaign.campaign_id in assigned:
            continue
        account_id = best_account(campaign.campaign_name, keyword_map, default)
        db.add(CampaignAccountMap(campaign_id=campaign.campaign_id, account_id=account_id))
        assigned[campaign.campaign_id] = account_id
    await db.flush()

    if assigned:
        logger.info(f"Auto-mapped {len(assigned)} {platform} campaigns to accounts")
    return assigned
