"""
Google Ads adapter over the REST interface.

Reads are GAQL queries through ``googleAds:search``; writes are
``<resource>:mutate`` operations with an update mask. Money is micros on the
wire (1 cent = 10,000 micros). Budgets live on a separate campaign budget
resource, and ad groups have none. There is no copy operation, so duplicate
stays unsupported.
"""

import logging
from typing import Optional

import httpx

from liveops.config import Settings
from liveops.entities import (
    CampaignFilter, DateRange, EntityType, LiveAd, LiveAdset, LiveCampaign, normalize_status,
)
from liveops.errors import UpstreamError, ValidationError
from liveops.services.adapters.base import PlatformAdapter, PlatformTransport, to_float, to_int
from liveops.services.token_service import GoogleTokenProvider

logger = logging.getLogger(__name__)

GOOGLE_ADS_URL = "https://googleads.googleapis.com/v17"

MICROS_PER_CENT = 10_000

METRICS = "metrics.cost_micros, metrics.clicks, metrics.impressions, metrics.conversions, metrics.conversions_value"


def unwrap_google(response: httpx.Response):
    try:
        body = response.json()
    except ValueError:
        raise UpstreamError(f"Google Ads returned invalid JSON: {response.text[:200]}", platform="google")
    if isinstance(body, list):
        # Error responses sometimes arrive wrapped in a one-element list.
        body = body[0] if body else {}
    error = body.get("error") if isinstance(body, dict) else None
    if error:
        raise UpstreamError(
            error.get("message") or "Google Ads API error",
            rate_limited=error.get("status") == "RESOURCE_EXHAUSTED",
            platform="google",
        )
    return body


def micros_to_cents(value) -> Optional[int]:
    if value in (None, ""):
        return None
    return to_int(value) // MICROS_PER_CENT


def _metrics(row: dict) -> dict:
    m = row.get("metrics") or {}
    return {
        "spend": round(to_int(m.get("costMicros")) / 1_000_000, 2),
        "clicks": to_int(m.get("clicks")),
        "impressions": to_int(m.get("impressions")),
        "conversions": to_float(m.get("conversions")),
        "conversion_value": to_float(m.get("conversionsValue")),
    }


def _during(date_range: Optional[DateRange]) -> str:
    if date_range is None:
        return "segments.date DURING TODAY"
    return f"segments.date BETWEEN '{date_range.start.isoformat()}' AND '{date_range.end.isoformat()}'"


def _numeric_id(entity_id: str) -> str:
    if not str(entity_id).isdigit():
        raise ValidationError(f"Google Ads ids are numeric, got {entity_id!r}", platform="google", entity_id=entity_id)
    return str(entity_id)


class GoogleAdsAdapter(PlatformAdapter):
    platform = "google"
    supports_duplicate = False

    def __init__(self, transport: PlatformTransport, customer_id: str):
        super().__init__(transport)
        self.customer_id = customer_id.replace("-", "")

    @classmethod
    def from_settings(cls, settings: Settings, http: Optional[httpx.AsyncBaseTransport] = None) -> "GoogleAdsAdapter":
        tokens = GoogleTokenProvider(
            settings.google_client_id,
            settings.google_client_secret,
            settings.google_refresh_token,
            access_token=settings.google_access_token,
            transport=http,
        )
        headers = {"developer-token": settings.google_developer_token}
        if settings.google_login_customer_id:
            headers["login-customer-id"] = settings.google_login_customer_id.replace("-", "")
        transport = PlatformTransport(
            "google", GOOGLE_ADS_URL,
            unwrap=unwrap_google,
            headers=headers,
            headers_factory=tokens.headers,
            timeout=settings.http_timeout_seconds,
            max_retries=settings.http_max_retries,
            backoff=settings.http_backoff_seconds,
            transport=http,
        )
        return cls(transport, settings.google_customer_id)

    def _resource(self, collection: str, *ids: str) -> str:
        return f"customers/{self.customer_id}/{collection}/{'~'.join(ids)}"

    async def _search(self, query: str) -> list[dict]:
        rows: list[dict] = []
        body: dict = {"query": query}
        while True:
            # Search is read-only; it is a POST only because the query goes in the body.
            data = await self.transport.read("POST", f"/customers/{self.customer_id}/googleAds:search", json=body)
            rows.extend(data.get("results") or [])
            token = data.get("nextPageToken")
            if not token:
                return rows
            body = {"query": query, "pageToken": token}

    async def _mutate(self, collection: str, resource_name: str, fields: dict) -> dict:
        operation = {"update": {"resourceName": resource_name, **fields}, "updateMask": ",".join(fields)}
        return await self.transport.write(
            "POST", f"/customers/{self.customer_id}/{collection}:mutate", json={"operations": [operation]}
        )

    # ── Reads ─────────────────────────────────────────────────────────

    async def list_campaigns(self, filter: Optional[CampaignFilter] = None) -> list[LiveCampaign]:
        date_range = filter.date_range if filter else None
        rows = await self._search(
            f"SELECT campaign.id, campaign.name, campaign.status, campaign_budget.amount_micros, "
            f"customer.descriptive_name, {METRICS} FROM campaign "
            f"WHERE campaign.status != 'REMOVED' AND {_during(date_range)}"
        )
        adset_counts: dict[str, int] = {}
        for r in await self._search("SELECT campaign.id, ad_group.id FROM ad_group WHERE ad_group.status != 'REMOVED'"):
            cid = str(r["campaign"]["id"])
            adset_counts[cid] = adset_counts.get(cid, 0) + 1
        ad_counts: dict[str, int] = {}
        for r in await self._search("SELECT campaign.id, ad_group_ad.ad.id FROM ad_group_ad WHERE ad_group_ad.status != 'REMOVED'"):
            cid = str(r["campaign"]["id"])
            ad_counts[cid] = ad_counts.get(cid, 0) + 1

        return [
            LiveCampaign(
                campaign_id=str(r["campaign"]["id"]),
                platform=self.platform,
                campaign_name=r["campaign"].get("name") or "",
                account_name=(r.get("customer") or {}).get("descriptiveName") or self.customer_id,
                status=normalize_status(r["campaign"].get("status")),
                daily_budget_cents=micros_to_cents((r.get("campaignBudget") or {}).get("amountMicros")),
                adset_count=adset_counts.get(str(r["campaign"]["id"]), 0),
                ad_count=ad_counts.get(str(r["campaign"]["id"]), 0),
                **_metrics(r),
            )
            for r in rows
        ]

    async def list_adsets(self, campaign_id: str, date_range: Optional[DateRange] = None) -> list[LiveAdset]:
        campaign_id = _numeric_id(campaign_id)
        rows = await self._search(
            f"SELECT ad_group.id, ad_group.name, ad_group.status, ad_group.cpc_bid_micros, ad_group.type, "
            f"campaign.id, {METRICS} FROM ad_group "
            f"WHERE campaign.id = {campaign_id} AND ad_group.status != 'REMOVED' AND {_during(date_range)}"
        )
        ad_counts: dict[str, int] = {}
        for r in await self._search(
            f"SELECT ad_group.id, ad_group_ad.ad.id FROM ad_group_ad "
            f"WHERE campaign.id = {campaign_id} AND ad_group_ad.status != 'REMOVED'"
        ):
            gid = str(r["adGroup"]["id"])
            ad_counts[gid] = ad_counts.get(gid, 0) + 1

        return [
            LiveAdset(
                adset_id=str(r["adGroup"]["id"]),
                campaign_id=campaign_id,
                platform=self.platform,
                adset_name=r["adGroup"].get("name") or "",
                status=normalize_status(r["adGroup"].get("status")),
                bid_cap_cents=micros_to_cents(r["adGroup"].get("cpcBidMicros")),
                bid_type=r["adGroup"].get("type"),
                ad_count=ad_counts.get(str(r["adGroup"]["id"]), 0),
                **_metrics(r),
            )
            for r in rows
        ]

    async def list_ads(self, adset_id: str, date_range: Optional[DateRange] = None) -> list[LiveAd]:
        adset_id = _numeric_id(adset_id)
        rows = await self._search(
            f"SELECT ad_group_ad.ad.id, ad_group_ad.ad.name, ad_group_ad.status, ad_group.id, {METRICS} "
            f"FROM ad_group_ad WHERE ad_group.id = {adset_id} AND ad_group_ad.status != 'REMOVED' "
            f"AND {_during(date_range)}"
        )
        return [
            LiveAd(
                ad_id=str(r["adGroupAd"]["ad"]["id"]),
                adset_id=adset_id,
                platform=self.platform,
                ad_name=r["adGroupAd"]["ad"].get("name") or "",
                status=normalize_status(r["adGroupAd"].get("status")),
                **_metrics(r),
            )
            for r in rows
        ]

    async def _campaign_budget(self, campaign_id: str) -> tuple[Optional[str], Optional[int]]:
        rows = await self._search(
            f"SELECT campaign.campaign_budget, campaign_budget.amount_micros FROM campaign "
            f"WHERE campaign.id = {_numeric_id(campaign_id)}"
        )
        if not rows:
            raise UpstreamError(f"Google campaign {campaign_id} not found", platform=self.platform, entity_id=campaign_id)
        return rows[0]["campaign"].get("campaignBudget"), micros_to_cents((rows[0].get("campaignBudget") or {}).get("amountMicros"))

    async def get_budget(self, entity_type: EntityType, entity_id: str) -> Optional[int]:
        if entity_type != EntityType.CAMPAIGN:
            return None
        _, amount = await self._campaign_budget(entity_id)
        return amount

    # ── Mutations ─────────────────────────────────────────────────────

    async def set_entity_status(self, entity_type: EntityType, entity_id: str, enable: bool) -> None:
        status = {"status": "ENABLED" if enable else "PAUSED"}
        entity_id = _numeric_id(entity_id)
        if entity_type == EntityType.CAMPAIGN:
            await self._mutate("campaigns", self._resource("campaigns", entity_id), status)
        elif entity_type == EntityType.ADSET:
            await self._mutate("adGroups", self._resource("adGroups", entity_id), status)
        else:
            rows = await self._search(f"SELECT ad_group_ad.resource_name FROM ad_group_ad WHERE ad_group_ad.ad.id = {entity_id}")
            if not rows:
                raise UpstreamError(f"Google ad {entity_id} not found", platform=self.platform, entity_id=entity_id)
            await self._mutate("adGroupAds", rows[0]["adGroupAd"]["resourceName"], status)

    async def _write_budget(self, entity_type: EntityType, entity_id: str, new_budget_cents: int) -> None:
        if entity_type != EntityType.CAMPAIGN:
            raise ValidationError(
                "Google Ads budgets are set on campaigns, not ad groups",
                platform=self.platform, entity_id=entity_id, action="budget_change",
            )
        budget_resource, _ = await self._campaign_budget(entity_id)
        if not budget_resource:
            raise UpstreamError(f"Google campaign {entity_id} has no budget resource", platform=self.platform, entity_id=entity_id)
        await self._mutate("campaignBudgets", budget_resource, {"amountMicros": str(new_budget_cents * MICROS_PER_CENT)})

    async def set_bid_cap(self, entity_id: str, new_bid_cap_cents: int) -> None:
        await self._mutate(
            "adGroups",
            self._resource("adGroups", _numeric_id(entity_id)),
            {"cpcBidMicros": str(new_bid_cap_cents * MICROS_PER_CENT)},
        )
