import logging
from typing import Optional

import httpx

from liveops.config import Settings
from liveops.errors import UnknownPlatformError
from liveops.services.adapters.base import PlatformAdapter
from liveops.services.adapters.google import GoogleAdsAdapter
from liveops.services.adapters.meta import MetaAdapter
from liveops.services.adapters.newsbreak import NewsBreakAdapter
from liveops.services.adapters.tiktok import TikTokAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Platform name -> adapter. Names are case-insensitive."""

    def __init__(self):
        self._adapters: dict[str, PlatformAdapter] = {}

    def register(self, adapter: PlatformAdapter, name: Optional[str] = None) -> None:
        key = (name or adapter.platform).lower()
        if not key:
            raise ValueError("Adapter has no platform name")
        self._adapters[key] = adapter

    def get(self, platform: str) -> PlatformAdapter:
        adapter = self._adapters.get((platform or "").lower())
        if adapter is None:
            raise UnknownPlatformError(f"Unknown or unconfigured platform: {platform!r}", platform=platform)
        return adapter

    def has(self, platform: str) -> bool:
        return (platform or "").lower() in self._adapters

    def platforms(self) -> list[str]:
        return sorted(self._adapters)

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()


def build_default_registry(settings: Settings, http: Optional[httpx.AsyncBaseTransport] = None) -> AdapterRegistry:
    """Register an adapter for every platform whose credentials are configured."""
    registry = AdapterRegistry()
    if settings.meta_access_token and settings.meta_ad_account_id:
        registry.register(MetaAdapter.from_settings(settings, http))
    if settings.tiktok_access_token and settings.tiktok_advertiser_id:
        registry.register(TikTokAdapter.from_settings(settings, http))
    if settings.newsbreak_api_key:
        registry.register(NewsBreakAdapter.from_settings(settings, http))
    if settings.google_developer_token and settings.google_customer_id and (
        settings.google_access_token or settings.google_refresh_token
    ):
        registry.register(GoogleAdsAdapter.from_settings(settings, http))
    logger.info(f"Configured platforms: {', '.join(registry.platforms()) or 'none'}")
    return registry
