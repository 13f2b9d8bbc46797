"""
Common entity model for live campaigns across ad platforms.

Records are ephemeral query results: rebuilt on every fetch, identified only
by their EntityKey. Derived metrics are computed on read and never stored.
"""

import enum
from dataclasses import dataclass
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, computed_field


class EntityType(str, enum.Enum):
    CAMPAIGN = "campaign"
    ADSET = "adset"
    AD = "ad"


class EntityStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    UNKNOWN = "UNKNOWN"


_ACTIVE_STATUSES = {"ACTIVE", "ENABLE", "ENABLED", "CAMPAIGN_STATUS_ENABLE", "ADGROUP_STATUS_DELIVERY_OK", "DELIVERING"}
_PAUSED_STATUSES = {"PAUSED", "DISABLE", "DISABLED", "CAMPAIGN_STATUS_DISABLE", "ADGROUP_STATUS_DISABLE", "CAMPAIGN_PAUSED", "ADSET_PAUSED"}


def normalize_status(raw: Optional[str]) -> EntityStatus:
    """Map a platform-native status string onto ACTIVE / PAUSED / UNKNOWN."""
    value = (raw or "").strip().upper()
    if value in _ACTIVE_STATUSES:
        return EntityStatus.ACTIVE
    if value in _PAUSED_STATUSES:
        return EntityStatus.PAUSED
    return EntityStatus.UNKNOWN


@dataclass(frozen=True)
class EntityKey:
    platform: str
    entity_type: EntityType
    entity_id: str

    @property
    def token(self) -> str:
        """String form used for map keys and logs: ``platform:entity_id``."""
        return f"{self.platform}:{self.entity_id}"

    def __str__(self) -> str:
        return f"{self.platform}:{self.entity_type.value}:{self.entity_id}"

    @classmethod
    def campaign(cls, platform: str, campaign_id: str) -> "EntityKey":
        return cls(platform, EntityType.CAMPAIGN, str(campaign_id))

    @classmethod
    def adset(cls, platform: str, adset_id: str) -> "EntityKey":
        return cls(platform, EntityType.ADSET, str(adset_id))

    @classmethod
    def ad(cls, platform: str, ad_id: str) -> "EntityKey":
        return cls(platform, EntityType.AD, str(ad_id))


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(f"Date range end {self.end} is before start {self.start}")


@dataclass(frozen=True)
class CampaignFilter:
    """Adapter-level campaign list filter. Absent date range = platform default window (today)."""
    date_range: Optional[DateRange] = None


def _ratio(num: float, den: float) -> float:
    return num / den if den else 0.0


class _Metrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    spend: float = 0.0
    clicks: int = 0
    impressions: int = 0
    conversions: float = 0.0
    conversion_value: float = 0.0

    @computed_field
    @property
    def roas(self) -> float:
        return _ratio(self.conversion_value, self.spend)

    @computed_field
    @property
    def cpa(self) -> float:
        return _ratio(self.spend, self.conversions)

    @computed_field
    @property
    def ctr(self) -> float:
        return _ratio(self.clicks, self.impressions)

    @computed_field
    @property
    def cpc(self) -> float:
        return _ratio(self.spend, self.clicks)

    @computed_field
    @property
    def cpm(self) -> float:
        return _ratio(self.spend, self.impressions) * 1000

    @computed_field
    @property
    def net_profit(self) -> float:
        return self.conversion_value - self.spend


class LiveCampaign(_Metrics):
    campaign_id: str
    platform: str
    campaign_name: str = ""
    account_name: Optional[str] = None
    account_id: Optional[int] = None
    status: EntityStatus = EntityStatus.UNKNOWN
    daily_budget_cents: Optional[int] = None
    adset_count: int = 0
    ad_count: int = 0

    @property
    def key(self) -> EntityKey:
        return EntityKey.campaign(self.platform, self.campaign_id)


class LiveAdset(_Metrics):
    adset_id: str
    campaign_id: str
    platform: str
    adset_name: str = ""
    status: EntityStatus = EntityStatus.UNKNOWN
    daily_budget_cents: Optional[int] = None
    bid_cap_cents: Optional[int] = None
    bid_type: Optional[str] = None
    ad_count: int = 0

    @property
    def key(self) -> EntityKey:
        return EntityKey.adset(self.platform, self.adset_id)


class LiveAd(_Metrics):
    ad_id: str
    adset_id: str
    platform: str
    ad_name: str = ""
    status: EntityStatus = EntityStatus.UNKNOWN

    @property
    def key(self) -> EntityKey:
        return EntityKey.ad(self.platform, self.ad_id)
