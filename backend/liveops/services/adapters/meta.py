"""
Meta (Facebook / Instagram) adapter over the Graph Marketing API.

Budgets and bid amounts travel in cents on the wire, so no conversion is
needed. Metrics come from the insights edge at the matching level and are
joined onto the object list by id.
"""

import json
import logging
from typing import Optional

import httpx

from liveops.config import Settings
from liveops.entities import (
    CampaignFilter, DateRange, EntityType, LiveAd, LiveAdset, LiveCampaign, normalize_status,
)
from liveops.errors import UpstreamError
from liveops.services.adapters.base import PlatformAdapter, PlatformTransport, to_float, to_int

logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.facebook.com/v21.0"

# Graph error codes meaning "slow down": app / user / account-level throttling.
RATE_LIMIT_CODES = {4, 17, 32, 613, 80004}

PURCHASE_ACTIONS = ("purchase", "offsite_conversion.fb_pixel_purchase", "omni_purchase")

INSIGHT_FIELDS = "campaign_id,adset_id,ad_id,spend,clicks,impressions,actions,action_values"


def unwrap_graph(response: httpx.Response):
    try:
        body = response.json()
    except ValueError:
        raise UpstreamError(f"Meta returned invalid JSON (HTTP {response.status_code})", platform="meta")
    error = body.get("error") if isinstance(body, dict) else None
    if error:
        raise UpstreamError(
            error.get("message") or "Meta API error",
            rate_limited=error.get("code") in RATE_LIMIT_CODES,
            platform="meta",
        )
    return body


def _first_action(actions: Optional[list]) -> float:
    for wanted in PURCHASE_ACTIONS:
        for action in actions or []:
            if action.get("action_type") == wanted:
                return to_float(action.get("value"))
    return 0.0


def _metrics(row: Optional[dict]) -> dict:
    row = row or {}
    return {
        "spend": to_float(row.get("spend")),
        "clicks": to_int(row.get("clicks")),
        "impressions": to_int(row.get("impressions")),
        "conversions": _first_action(row.get("actions")),
        "conversion_value": _first_action(row.get("action_values")),
    }


def _summary_count(item: dict, edge: str) -> int:
    return to_int(((item.get(edge) or {}).get("summary") or {}).get("total_count"))


def _window(date_range: Optional[DateRange]) -> dict:
    if date_range is None:
        return {"date_preset": "today"}
    return {"time_range": json.dumps({"since": date_range.start.isoformat(), "until": date_range.end.isoformat()})}


class MetaAdapter(PlatformAdapter):
    platform = "meta"

    def __init__(self, transport: PlatformTransport, ad_account_id: str):
        super().__init__(transport)
        self.ad_account_id = ad_account_id if ad_account_id.startswith("act_") else f"act_{ad_account_id}"

    @classmethod
    def from_settings(cls, settings: Settings, http: Optional[httpx.AsyncBaseTransport] = None) -> "MetaAdapter":
        transport = PlatformTransport(
            "meta", GRAPH_URL,
            unwrap=unwrap_graph,
            headers={"Authorization": f"Bearer {settings.meta_access_token}"},
            timeout=settings.http_timeout_seconds,
            max_retries=settings.http_max_retries,
            backoff=settings.http_backoff_seconds,
            transport=http,
        )
        return cls(transport, settings.meta_ad_account_id)

    async def _paged(self, path: str, params: dict) -> list[dict]:
        rows: list[dict] = []
        params = {**params, "limit": 500}
        while True:
            body = await self.transport.get(path, params=params)
            rows.extend(body.get("data", []))
            after = ((body.get("paging") or {}).get("cursors") or {}).get("after")
            if not after or not (body.get("paging") or {}).get("next"):
                return rows
            params = {**params, "after": after}

    async def _insights(self, parent: str, level: str, date_range: Optional[DateRange]) -> dict[str, dict]:
        rows = await self._paged(f"/{parent}/insights", {"level": level, "fields": INSIGHT_FIELDS, **_window(date_range)})
        id_field = f"{level}_id"
        return {str(r.get(id_field)): r for r in rows if r.get(id_field)}

    # ── Reads ─────────────────────────────────────────────────────────

    async def list_campaigns(self, filter: Optional[CampaignFilter] = None) -> list[LiveCampaign]:
        date_range = filter.date_range if filter else None
        items = await self._paged(
            f"/{self.ad_account_id}/campaigns",
            {"fields": "id,name,status,daily_budget,adsets.limit(0).summary(true),ads.limit(0).summary(true)"},
        )
        insights = await self._insights(self.ad_account_id, "campaign", date_range)
        return [
            LiveCampaign(
                campaign_id=str(item["id"]),
                platform=self.platform,
                campaign_name=item.get("name") or "",
                account_name=self.ad_account_id,
                status=normalize_status(item.get("status")),
                daily_budget_cents=to_int(item["daily_budget"]) if item.get("daily_budget") else None,
                adset_count=_summary_count(item, "adsets"),
                ad_count=_summary_count(item, "ads"),
                **_metrics(insights.get(str(item["id"]))),
            )
            for item in items
        ]

    async def list_adsets(self, campaign_id: str, date_range: Optional[DateRange] = None) -> list[LiveAdset]:
        items = await self._paged(
            f"/{campaign_id}/adsets",
            {"fields": "id,name,campaign_id,status,daily_budget,bid_amount,bid_strategy,ads.limit(0).summary(true)"},
        )
        insights = await self._insights(campaign_id, "adset", date_range)
        return [
            LiveAdset(
                adset_id=str(item["id"]),
                campaign_id=str(item.get("campaign_id") or campaign_id),
                platform=self.platform,
                adset_name=item.get("name") or "",
                status=normalize_status(item.get("status")),
                daily_budget_cents=to_int(item["daily_budget"]) if item.get("daily_budget") else None,
                bid_cap_cents=to_int(item["bid_amount"]) if item.get("bid_amount") else None,
                bid_type=item.get("bid_strategy"),
                ad_count=_summary_count(item, "ads"),
                **_metrics(insights.get(str(item["id"]))),
            )
            for item in items
        ]

    async def list_ads(self, adset_id: str, date_range: Optional[DateRange] = None) -> list[LiveAd]:
        items = await self._paged(f"/{adset_id}/ads", {"fields": "id,name,adset_id,status"})
        insights = await self._insights(adset_id, "ad", date_range)
        return [
            LiveAd(
                ad_id=str(item["id"]),
                adset_id=str(item.get("adset_id") or adset_id),
                platform=self.platform,
                ad_name=item.get("name") or "",
                status=normalize_status(item.get("status")),
                **_metrics(insights.get(str(item["id"]))),
            )
            for item in items
        ]

    async def get_budget(self, entity_type: EntityType, entity_id: str) -> Optional[int]:
        body = await self.transport.get(f"/{entity_id}", params={"fields": "daily_budget"})
        return to_int(body["daily_budget"]) if body.get("daily_budget") else None

    # ── Mutations ─────────────────────────────────────────────────────

    async def set_entity_status(self, entity_type: EntityType, entity_id: str, enable: bool) -> None:
        await self.transport.write("POST", f"/{entity_id}", data={"status": "ACTIVE" if enable else "PAUSED"})

    async def _write_budget(self, entity_type: EntityType, entity_id: str, new_budget_cents: int) -> None:
        await self.transport.write("POST", f"/{entity_id}", data={"daily_budget": str(new_budget_cents)})

    async def set_bid_cap(self, entity_id: str, new_bid_cap_cents: int) -> None:
        await self.transport.write("POST", f"/{entity_id}", data={"bid_amount": str(new_bid_cap_cents)})

    async def duplicate(
        self,
        entity_type: EntityType,
        entity_id: str,
        target_parent_id: Optional[str] = None,
    ) -> str:
        data = {
            "status_option": "PAUSED",
            "rename_options": json.dumps({"rename_suffix": self.copy_suffix}),
        }
        if entity_type != EntityType.AD:
            data["deep_copy"] = "true"
        if target_parent_id:
            if entity_type == EntityType.ADSET:
                data["campaign_id"] = target_parent_id
            elif entity_type == EntityType.AD:
                data["adset_id"] = target_parent_id

        body = await self.transport.write("POST", f"/{entity_id}/copies", data=data)
        new_id = body.get(f"copied_{entity_type.value}_id")
        if not new_id:
            # Deep copies of large trees come back as an async batch; the id is still first in the list.
            copied = body.get("ad_object_ids") or []
            new_id = copied[0].get("copied_id") if copied else None
        if not new_id:
            raise UpstreamError("Meta did not return the id of the copy", platform=self.platform, entity_id=entity_id)
        logger.info(f"Meta duplicated {entity_type.value} {entity_id} -> {new_id}")
        return str(new_id)
