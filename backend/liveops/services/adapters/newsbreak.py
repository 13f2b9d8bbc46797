"""
NewsBreak adapter over the NewsBreak Business API (v1).

The read side is a single integrated report with one row per ad, carrying
campaign and ad set ids and names alongside metrics. Campaign and ad set
views are built by grouping those rows. Report money fields are cents;
write endpoints take dollars for budgets.
"""

import logging
from collections import OrderedDict
from datetime import date
from typing import Iterable, Optional

import httpx

from liveops.config import Settings
from liveops.entities import (
    CampaignFilter, DateRange, EntityType, LiveAd, LiveAdset, LiveCampaign, normalize_status,
)
from liveops.errors import UpstreamError
from liveops.services.adapters.base import (
    PlatformAdapter, PlatformTransport, RecreatingDuplicator, dollars, to_float, to_int,
)

logger = logging.getLogger(__name__)

NB_BASE_URL = "https://business.newsbreak.com/business-api/v1"

OBJECT = {EntityType.CAMPAIGN: "campaign", EntityType.ADSET: "adgroup", EntityType.AD: "ad"}

COPY_FIELDS = {
    EntityType.CAMPAIGN: ["campaign_name", "objective", "budget_mode", "budget"],
    EntityType.ADSET: [
        "campaign_id", "adgroup_name", "budget", "budget_mode", "schedule_type", "schedule_start_time",
        "schedule_end_time", "targeting", "placement_type", "optimization_goal", "conversion_event", "bid_amount",
    ],
    EntityType.AD: [
        "adgroup_id", "ad_name", "ad_text", "headline", "landing_page_url", "call_to_action",
        "image_url", "video_url", "thumbnail_url", "brand_name",
    ],
}


def unwrap_envelope(response: httpx.Response):
    try:
        body = response.json()
    except ValueError:
        raise UpstreamError(f"Failed to parse NewsBreak response: {response.text[:200]}", platform="newsbreak")
    code = body.get("code")
    if code != 0:
        raise UpstreamError(
            body.get("errMsg") or f"NewsBreak API error (code {code})",
            rate_limited=code == 429,
            platform="newsbreak",
        )
    return body.get("data") or {}


def _money(row: dict, decimal_field: str, int_field: str) -> float:
    """Report money is cents, sometimes only in the integer field."""
    return (to_float(row.get(decimal_field)) or to_float(row.get(int_field))) / 100


def _sum_metrics(rows: Iterable[dict]) -> dict:
    totals = {"spend": 0.0, "clicks": 0, "impressions": 0, "conversions": 0.0, "conversion_value": 0.0}
    for row in rows:
        totals["spend"] += _money(row, "costDecimal", "cost")
        totals["clicks"] += to_int(row.get("click"))
        totals["impressions"] += to_int(row.get("impression"))
        totals["conversions"] += to_float(row.get("conversion"))
        totals["conversion_value"] += _money(row, "conversionValueDecimal", "conversionValue")
    totals["spend"] = round(totals["spend"], 2)
    totals["conversion_value"] = round(totals["conversion_value"], 2)
    return totals


def _group(rows: Iterable[dict], field: str) -> "OrderedDict[str, list[dict]]":
    groups: "OrderedDict[str, list[dict]]" = OrderedDict()
    for row in rows:
        key = row.get(field)
        if key in (None, ""):
            continue
        groups.setdefault(str(key), []).append(row)
    return groups


def _first(rows: list[dict], field: str):
    for row in rows:
        if row.get(field) not in (None, ""):
            return row[field]
    return None


class NewsBreakAdapter(RecreatingDuplicator, PlatformAdapter):
    platform = "newsbreak"

    name_fields = {EntityType.CAMPAIGN: "campaign_name", EntityType.ADSET: "adgroup_name", EntityType.AD: "ad_name"}
    parent_fields = {EntityType.ADSET: "campaign_id", EntityType.AD: "adgroup_id"}

    def __init__(self, transport: PlatformTransport, account_id: str):
        super().__init__(transport)
        self.account_id = account_id

    @classmethod
    def from_settings(cls, settings: Settings, http: Optional[httpx.AsyncBaseTransport] = None) -> "NewsBreakAdapter":
        transport = PlatformTransport(
            "newsbreak", NB_BASE_URL,
            unwrap=unwrap_envelope,
            headers={"Access-Token": settings.newsbreak_api_key, "Accept": "application/json"},
            timeout=settings.http_timeout_seconds,
            max_retries=settings.http_max_retries,
            backoff=settings.http_backoff_seconds,
            transport=http,
        )
        return cls(transport, settings.newsbreak_account_id)

    def _advertiser(self) -> dict:
        return {"advertiser_id": self.account_id} if self.account_id and self.account_id != "default" else {}

    async def _report_rows(self, date_range: Optional[DateRange]) -> list[dict]:
        start = date_range.start if date_range else date.today()
        end = date_range.end if date_range else date.today()
        body = {
            "name": f"liveops_{start.isoformat()}_{end.isoformat()}",
            "dateRange": "FIXED",
            "startDate": start.isoformat(),
            "endDate": end.isoformat(),
            "dimensions": ["CAMPAIGN", "AD_SET", "AD"],
            "metrics": ["COST"],
            **self._advertiser(),
        }
        # The report is a POST but has no side effect, so it goes through the retrying path.
        data = await self.transport.read("POST", "/reports/getIntegratedReport", json=body)
        return [r for r in data.get("rows") or [] if r.get("adId")]

    # ── Reads ─────────────────────────────────────────────────────────

    async def list_campaigns(self, filter: Optional[CampaignFilter] = None) -> list[LiveCampaign]:
        rows = await self._report_rows(filter.date_range if filter else None)
        campaigns = []
        for campaign_id, group in _group(rows, "campaignId").items():
            campaigns.append(LiveCampaign(
                campaign_id=campaign_id,
                platform=self.platform,
                campaign_name=_first(group, "campaign") or "",
                account_name=str(_first(group, "advertiserId") or self.account_id or ""),
                status=normalize_status(_first(group, "campaignStatus")),
                adset_count=len(_group(group, "adSetId")),
                ad_count=len(_group(group, "adId")),
                **_sum_metrics(group),
            ))
        return campaigns

    async def list_adsets(self, campaign_id: str, date_range: Optional[DateRange] = None) -> list[LiveAdset]:
        rows = [r for r in await self._report_rows(date_range) if str(r.get("campaignId")) == str(campaign_id)]
        adsets = []
        for adset_id, group in _group(rows, "adSetId").items():
            budget = _first(group, "dailyBudget")
            bid = _first(group, "bidRate")
            adsets.append(LiveAdset(
                adset_id=adset_id,
                campaign_id=str(campaign_id),
                platform=self.platform,
                adset_name=_first(group, "adSet") or "",
                status=normalize_status(_first(group, "adSetStatus") or _first(group, "campaignStatus")),
                daily_budget_cents=to_int(budget) if budget is not None else None,
                bid_cap_cents=to_int(bid) if bid is not None else None,
                bid_type=_first(group, "bidType"),
                ad_count=len(_group(group, "adId")),
                **_sum_metrics(group),
            ))
        return adsets

    async def list_ads(self, adset_id: str, date_range: Optional[DateRange] = None) -> list[LiveAd]:
        rows = [r for r in await self._report_rows(date_range) if str(r.get("adSetId")) == str(adset_id)]
        return [
            LiveAd(
                ad_id=ad_id,
                adset_id=str(adset_id),
                platform=self.platform,
                ad_name=_first(group, "ad") or "",
                status=normalize_status(_first(group, "adStatus") or _first(group, "adSetStatus")),
                **_sum_metrics(group),
            )
            for ad_id, group in _group(rows, "adId").items()
        ]

    async def get_budget(self, entity_type: EntityType, entity_id: str) -> Optional[int]:
        if entity_type != EntityType.ADSET:
            return None
        rows = [r for r in await self._report_rows(None) if str(r.get("adSetId")) == str(entity_id)]
        budget = _first(rows, "dailyBudget")
        return to_int(budget) if budget is not None else None

    # ── Mutations ─────────────────────────────────────────────────────

    async def set_entity_status(self, entity_type: EntityType, entity_id: str, enable: bool) -> None:
        obj = OBJECT[entity_type]
        await self.transport.write("POST", f"/{obj}s/update/status", json={
            **self._advertiser(),
            f"{obj}_id": entity_id,
            "status": "ENABLE" if enable else "DISABLE",
        })

    async def _write_budget(self, entity_type: EntityType, entity_id: str, new_budget_cents: int) -> None:
        obj = OBJECT[entity_type]
        await self.transport.write("POST", f"/{obj}s/update", json={
            **self._advertiser(),
            f"{obj}_id": entity_id,
            "budget": dollars(new_budget_cents),
        })

    async def set_bid_cap(self, entity_id: str, new_bid_cap_cents: int) -> None:
        await self.transport.write("POST", "/adgroups/update", json={
            **self._advertiser(),
            "adgroup_id": entity_id,
            "bid_rate": new_bid_cap_cents,
        })

    # ── Duplicate (read and recreate) ─────────────────────────────────

    async def _read_entity(self, entity_type: EntityType, entity_id: str) -> dict:
        obj = OBJECT[entity_type]
        data = await self.transport.read("POST", f"/{obj}s/get", json={**self._advertiser(), "ids": [entity_id]})
        items = data.get("list") or []
        if not items:
            raise UpstreamError(f"NewsBreak {obj} {entity_id} not found", platform=self.platform, entity_id=entity_id)
        return {k: v for k, v in items[0].items() if k in COPY_FIELDS[entity_type] and v not in (None, "", [])}

    async def _create_entity(self, entity_type: EntityType, fields: dict) -> str:
        obj = OBJECT[entity_type]
        data = await self.transport.write("POST", f"/{obj}s/create", json={**self._advertiser(), **fields})
        new_id = data.get(f"{obj}_id")
        if not new_id:
            raise UpstreamError(f"NewsBreak did not return the id of the new {obj}", platform=self.platform)
        if entity_type != EntityType.AD:
            # Copies start disabled, matching the other platforms.
            await self.transport.write("POST", f"/{obj}s/update/status", json={
                **self._advertiser(), f"{obj}_id": str(new_id), "status": "DISABLE",
            })
        return str(new_id)

    async def _child_ids(self, entity_type: EntityType, entity_id: str) -> list[str]:
        rows = await self._report_rows(None)
        if entity_type == EntityType.CAMPAIGN:
            return list(_group([r for r in rows if str(r.get("campaignId")) == str(entity_id)], "adSetId"))
        return list(_group([r for r in rows if str(r.get("adSetId")) == str(entity_id)], "adId"))
