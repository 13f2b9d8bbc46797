"""
Live Ops: Database Models
Only what the live campaign engine persists: internal accounts, the
campaign -> account assignment, and the activity log. Platform campaign
trees are never stored; they are fetched live.
"""

import enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String, Integer, DateTime, Numeric, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from liveops.database import Base


def _utcnow() -> datetime:
    """Naive UTC now, matching DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class AccountStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ActivityAction(str, enum.Enum):
    PAUSE = "pause"
    RESUME = "resume"
    BUDGET_CHANGE = "budget_change"


# ══════════════════════════════════════════════════════════════════════
#  ACCOUNTS: operator-defined billing / reporting groups
# ══════════════════════════════════════════════════════════════════════

class Account(Base):
    """Internal account that platform campaigns can be regrouped under."""
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    platform: Mapped[str] = mapped_column(String(50), nullable=False)
    platform_account_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=AccountStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    campaign_maps: Mapped[list["CampaignAccountMap"]] = relationship(
        "CampaignAccountMap", back_populates="account", cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("platform", "platform_account_id", name="uq_account_per_platform"),
        Index("ix_accounts_platform", "platform"),
    )


# ══════════════════════════════════════════════════════════════════════
#  CAMPAIGN → ACCOUNT MAP
# ══════════════════════════════════════════════════════════════════════

class CampaignAccountMap(Base):
    """Operator assignment of a platform campaign to an internal account."""
    __tablename__ = "campaign_account_map"

    campaign_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    account: Mapped["Account"] = relationship("Account", back_populates="campaign_maps")

    __table_args__ = (
        Index("ix_campaign_account_map_account_id", "account_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  ACTIVITY LOG: append-only status / budget history
# ══════════════════════════════════════════════════════════════════════

class CampaignActivityLog(Base):
    """One row per committed pause / resume / budget change. Budgets in dollars."""
    __tablename__ = "campaign_activity_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    platform: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False, default="adset")
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    old_budget: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    new_budget: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_activity_log_entity_created", "entity_id", "created_at"),
        Index("ix_activity_log_platform", "platform"),
    )
