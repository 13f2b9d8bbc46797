"""
TikTok adapter over the TikTok Business API (v1.3).

Every response is an envelope ``{"code", "message", "data"}``; a non-zero
code is an error even on HTTP 200. Budgets and bids are dollars on the wire.
"""

import json
import logging
from datetime import date
from typing import Optional

import httpx

from liveops.config import Settings
from liveops.entities import (
    CampaignFilter, DateRange, EntityType, LiveAd, LiveAdset, LiveCampaign, normalize_status,
)
from liveops.errors import UpstreamError
from liveops.services.adapters.base import (
    PlatformAdapter, PlatformTransport, RecreatingDuplicator, cents, dollars, to_float, to_int,
)

logger = logging.getLogger(__name__)

TIKTOK_API_BASE = "https://business-api.tiktok.com/open_api/v1.3"

RATE_LIMIT_CODES = {40100, 40133}

# TikTok's own name for each level of the tree.
OBJECT = {EntityType.CAMPAIGN: "campaign", EntityType.ADSET: "adgroup", EntityType.AD: "ad"}

DATA_LEVEL = {EntityType.CAMPAIGN: "AUCTION_CAMPAIGN", EntityType.ADSET: "AUCTION_ADGROUP", EntityType.AD: "AUCTION_AD"}

REPORT_METRICS = ["spend", "clicks", "impressions", "conversion", "total_complete_payment_rate"]

COPY_FIELDS = {
    EntityType.CAMPAIGN: ["campaign_name", "objective_type", "budget", "budget_mode"],
    EntityType.ADSET: [
        "campaign_id", "adgroup_name", "placement_type", "budget", "budget_mode", "schedule_type",
        "schedule_start_time", "schedule_end_time", "optimization_goal", "bid_type", "bid_price",
        "billing_event", "location_ids", "gender", "age_groups", "operating_systems",
    ],
    EntityType.AD: [
        "adgroup_id", "ad_name", "ad_format", "ad_text", "image_ids", "video_id",
        "call_to_action", "landing_page_url",
    ],
}


def unwrap_envelope(response: httpx.Response):
    try:
        body = response.json()
    except ValueError:
        raise UpstreamError(f"TikTok API returned invalid JSON: {response.text[:200]}", platform="tiktok")
    code = body.get("code")
    if code != 0:
        raise UpstreamError(
            body.get("message") or f"TikTok API error code {code}",
            rate_limited=code in RATE_LIMIT_CODES,
            platform="tiktok",
        )
    return body.get("data") or {}


def _metrics(row: Optional[dict]) -> dict:
    m = (row or {}).get("metrics") or {}
    return {
        "spend": to_float(m.get("spend")),
        "clicks": to_int(m.get("clicks")),
        "impressions": to_int(m.get("impressions")),
        "conversions": to_float(m.get("conversion")),
        "conversion_value": to_float(m.get("total_complete_payment_rate")),
    }


def _daily_budget(item: dict) -> Optional[int]:
    if item.get("budget_mode") not in (None, "BUDGET_MODE_DAY", "BUDGET_MODE_DYNAMIC_DAILY_BUDGET"):
        return None
    return cents(item.get("budget")) or None


def _count_by(items: list[dict], field: str) -> dict[str, int]:
    counts: dict[str, int] = {}
    for item in items:
        key = str(item.get(field))
        counts[key] = counts.get(key, 0) + 1
    return counts


class TikTokAdapter(RecreatingDuplicator, PlatformAdapter):
    platform = "tiktok"

    name_fields = {EntityType.CAMPAIGN: "campaign_name", EntityType.ADSET: "adgroup_name", EntityType.AD: "ad_name"}
    parent_fields = {EntityType.ADSET: "campaign_id", EntityType.AD: "adgroup_id"}

    def __init__(self, transport: PlatformTransport, advertiser_id: str):
        super().__init__(transport)
        self.advertiser_id = advertiser_id

    @classmethod
    def from_settings(cls, settings: Settings, http: Optional[httpx.AsyncBaseTransport] = None) -> "TikTokAdapter":
        transport = PlatformTransport(
            "tiktok", TIKTOK_API_BASE,
            unwrap=unwrap_envelope,
            headers={"Access-Token": settings.tiktok_access_token},
            timeout=settings.http_timeout_seconds,
            max_retries=settings.http_max_retries,
            backoff=settings.http_backoff_seconds,
            transport=http,
        )
        return cls(transport, settings.tiktok_advertiser_id)

    async def _get_all(self, endpoint: str, fields: list[str], filtering: Optional[dict] = None) -> list[dict]:
        rows: list[dict] = []
        page = 1
        while True:
            params = {
                "advertiser_id": self.advertiser_id,
                "fields": json.dumps(fields),
                "page": page,
                "page_size": 1000,
            }
            if filtering:
                params["filtering"] = json.dumps(filtering)
            data = await self.transport.get(endpoint, params=params)
            rows.extend(data.get("list") or [])
            total_pages = to_int((data.get("page_info") or {}).get("total_page")) or 1
            if page >= total_pages:
                return rows
            page += 1

    async def _report(
        self,
        level: EntityType,
        date_range: Optional[DateRange],
        filter_field: Optional[str] = None,
        filter_id: Optional[str] = None,
    ) -> dict[str, dict]:
        start = date_range.start if date_range else date.today()
        end = date_range.end if date_range else date.today()
        id_field = f"{OBJECT[level]}_id"
        params = {
            "advertiser_id": self.advertiser_id,
            "report_type": "BASIC",
            "data_level": DATA_LEVEL[level],
            "dimensions": json.dumps([id_field]),
            "metrics": json.dumps(REPORT_METRICS),
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "page_size": 1000,
        }
        if filter_field:
            params["filtering"] = json.dumps([
                {"field_name": filter_field, "filter_type": "IN", "filter_value": json.dumps([filter_id])}
            ])
        data = await self.transport.get("/report/integrated/get/", params=params)
        return {
            str((row.get("dimensions") or {}).get(id_field)): row
            for row in data.get("list") or []
        }

    # ── Reads ─────────────────────────────────────────────────────────

    async def list_campaigns(self, filter: Optional[CampaignFilter] = None) -> list[LiveCampaign]:
        date_range = filter.date_range if filter else None
        campaigns = await self._get_all(
            "/campaign/get/", ["campaign_id", "campaign_name", "operation_status", "budget", "budget_mode"]
        )
        adset_counts = _count_by(await self._get_all("/adgroup/get/", ["adgroup_id", "campaign_id"]), "campaign_id")
        ad_counts = _count_by(await self._get_all("/ad/get/", ["ad_id", "campaign_id"]), "campaign_id")
        report = await self._report(EntityType.CAMPAIGN, date_range)
        return [
            LiveCampaign(
                campaign_id=str(c["campaign_id"]),
                platform=self.platform,
                campaign_name=c.get("campaign_name") or "",
                account_name=self.advertiser_id,
                status=normalize_status(c.get("operation_status")),
                daily_budget_cents=_daily_budget(c),
                adset_count=adset_counts.get(str(c["campaign_id"]), 0),
                ad_count=ad_counts.get(str(c["campaign_id"]), 0),
                **_metrics(report.get(str(c["campaign_id"]))),
            )
            for c in campaigns
        ]

    async def list_adsets(self, campaign_id: str, date_range: Optional[DateRange] = None) -> list[LiveAdset]:
        adgroups = await self._get_all(
            "/adgroup/get/",
            ["adgroup_id", "adgroup_name", "campaign_id", "operation_status", "budget", "budget_mode", "bid_price", "bid_type"],
            filtering={"campaign_ids": [campaign_id]},
        )
        ad_counts = _count_by(
            await self._get_all("/ad/get/", ["ad_id", "adgroup_id"], filtering={"campaign_ids": [campaign_id]}),
            "adgroup_id",
        )
        report = await self._report(EntityType.ADSET, date_range, "campaign_ids", campaign_id)
        return [
            LiveAdset(
                adset_id=str(g["adgroup_id"]),
                campaign_id=str(g.get("campaign_id") or campaign_id),
                platform=self.platform,
                adset_name=g.get("adgroup_name") or "",
                status=normalize_status(g.get("operation_status")),
                daily_budget_cents=_daily_budget(g),
                bid_cap_cents=cents(g.get("bid_price")) or None,
                bid_type=g.get("bid_type"),
                ad_count=ad_counts.get(str(g["adgroup_id"]), 0),
                **_metrics(report.get(str(g["adgroup_id"]))),
            )
            for g in adgroups
        ]

    async def list_ads(self, adset_id: str, date_range: Optional[DateRange] = None) -> list[LiveAd]:
        ads = await self._get_all(
            "/ad/get/", ["ad_id", "ad_name", "adgroup_id", "operation_status"],
            filtering={"adgroup_ids": [adset_id]},
        )
        report = await self._report(EntityType.AD, date_range, "adgroup_ids", adset_id)
        return [
            LiveAd(
                ad_id=str(a["ad_id"]),
                adset_id=str(a.get("adgroup_id") or adset_id),
                platform=self.platform,
                ad_name=a.get("ad_name") or "",
                status=normalize_status(a.get("operation_status")),
                **_metrics(report.get(str(a["ad_id"]))),
            )
            for a in ads
        ]

    async def get_budget(self, entity_type: EntityType, entity_id: str) -> Optional[int]:
        obj = OBJECT[entity_type]
        rows = await self._get_all(f"/{obj}/get/", ["budget", "budget_mode"], filtering={f"{obj}_ids": [entity_id]})
        if not rows:
            raise UpstreamError(f"TikTok {obj} {entity_id} not found", platform=self.platform, entity_id=entity_id)
        return _daily_budget(rows[0])

    # ── Mutations ─────────────────────────────────────────────────────

    async def set_entity_status(self, entity_type: EntityType, entity_id: str, enable: bool) -> None:
        obj = OBJECT[entity_type]
        await self.transport.write("POST", f"/{obj}/status/update/", json={
            "advertiser_id": self.advertiser_id,
            f"{obj}_ids": [entity_id],
            "opt_status": "ENABLE" if enable else "DISABLE",
        })

    async def _write_budget(self, entity_type: EntityType, entity_id: str, new_budget_cents: int) -> None:
        obj = OBJECT[entity_type]
        await self.transport.write("POST", f"/{obj}/update/", json={
            "advertiser_id": self.advertiser_id,
            f"{obj}_id": entity_id,
            "budget": dollars(new_budget_cents),
        })

    async def set_bid_cap(self, entity_id: str, new_bid_cap_cents: int) -> None:
        await self.transport.write("POST", "/adgroup/update/", json={
            "advertiser_id": self.advertiser_id,
            "adgroup_id": entity_id,
            "bid_price": dollars(new_bid_cap_cents),
        })

    # ── Duplicate (read and recreate) ─────────────────────────────────

    async def _read_entity(self, entity_type: EntityType, entity_id: str) -> dict:
        obj = OBJECT[entity_type]
        rows = await self._get_all(f"/{obj}/get/", COPY_FIELDS[entity_type], filtering={f"{obj}_ids": [entity_id]})
        if not rows:
            raise UpstreamError(f"TikTok {obj} {entity_id} not found", platform=self.platform, entity_id=entity_id)
        return {k: v for k, v in rows[0].items() if k in COPY_FIELDS[entity_type] and v not in (None, "", [])}

    async def _create_entity(self, entity_type: EntityType, fields: dict) -> str:
        obj = OBJECT[entity_type]
        body = {"advertiser_id": self.advertiser_id, **fields}
        if entity_type != EntityType.AD:
            body["operation_status"] = "DISABLE"
        data = await self.transport.write("POST", f"/{obj}/create/", json=body)
        new_id = data.get(f"{obj}_id") or next(iter(data.get(f"{obj}_ids") or []), None)
        if not new_id:
            raise UpstreamError(f"TikTok did not return the id of the new {obj}", platform=self.platform)
        return str(new_id)

    async def _child_ids(self, entity_type: EntityType, entity_id: str) -> list[str]:
        if entity_type == EntityType.CAMPAIGN:
            rows = await self._get_all("/adgroup/get/", ["adgroup_id"], filtering={"campaign_ids": [entity_id]})
            return [str(r["adgroup_id"]) for r in rows]
        rows = await self._get_all("/ad/get/", ["ad_id"], filtering={"adgroup_ids": [entity_id]})
        return [str(r["ad_id"]) for r in rows]
