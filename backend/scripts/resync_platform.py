#!/usr/bin/env python3
"""
One-off pull of a platform's live campaign list, printed as a table.
Useful to check credentials and wire formats without starting the API.

Run from backend directory:
  python scripts/resync_platform.py meta
  python scripts/resync_platform.py tiktok --start 2026-10-01 --end 2026-10-07 --adsets
"""

import asyncio
import argparse
import sys
from pathlib import Path

# Ensure backend root is on path
backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from liveops.config import get_settings
from liveops.errors import LiveOpsError
from liveops.services.adapters.registry import build_default_registry
from liveops.services.entity_store import EntityStore
from liveops.utils import parse_date_range


def _money(cents):
    return "-" if cents is None else f"${cents / 100:,.2f}"


async def main():
    parser = argparse.ArgumentParser(description="Pull a platform's live campaign list")
    parser.add_argument("platform", help="meta, tiktok, newsbreak, google, or 'all'")
    parser.add_argument("--start", help="YYYY-MM-DD (default: today)")
    parser.add_argument("--end", help="YYYY-MM-DD (default: start)")
    parser.add_argument("--adsets", action="store_true", help="Also expand every campaign into its ad sets")
    args = parser.parse_args()

    registry = build_default_registry(get_settings())
    if not registry.platforms():
        print("No platform credentials configured. Set them in .env first.")
        sys.exit(1)

    store = EntityStore(registry)
    try:
        platforms = registry.platforms() if args.platform == "all" else [args.platform]
        loaded = await store.load_campaigns(platforms, parse_date_range(args.start, args.end))
        for platform, error in loaded.errors.items():
            print(f"  {platform}: FAILED: {error}")

        for campaign in loaded.campaigns:
            print(
                f"  [{campaign.platform}] {campaign.campaign_id:<20} {campaign.status.value:<8} "
                f"budget {_money(campaign.daily_budget_cents):>12}  spend ${campaign.spend:,.2f}  "
                f"roas {campaign.roas:.2f}  {campaign.campaign_name}"
            )
            if not args.adsets:
                continue
            try:
                adsets = await store.expand(campaign.key)
            except LiveOpsError as e:
                print(f"      ad sets failed: {e}")
                continue
            for adset in adsets:
                print(
                    f"      {adset.adset_id:<20} {adset.status.value:<8} "
                    f"budget {_money(adset.daily_budget_cents):>12}  bid {_money(adset.bid_cap_cents):>9}  {adset.adset_name}"
                )

        print(f"\n{len(loaded.campaigns)} campaigns from {len(platforms) - len(loaded.errors)} of {len(platforms)} platforms")
    finally:
        await store.close()
        await registry.aclose()

    if loaded.errors:
        sys.exit(2)


if __name__ == "__main__":
    asyncio.run(main())
