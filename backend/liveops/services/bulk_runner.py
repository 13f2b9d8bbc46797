"""
Bulk Operation Runner: Applies one change across a selection of campaigns.

Items of the same platform run one after another to stay inside that
platform's rate limits. Different platforms run side by side. A failed item
is recorded and the batch carries on.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from liveops.entities import EntityType
from liveops.errors import LiveOpsError, ValidationError
from liveops.services import account_map
from liveops.services.entity_store import EntityStore
from liveops.services.mutation_coordinator import MutationCoordinator

logger = logging.getLogger(__name__)

UNRESOLVED = "unresolved"


@dataclass
class BulkItemResult:
    campaign_id: str
    platform: Optional[str]
    ok: bool
    error: Optional[dict] = None

    def to_dict(self) -> dict:
        return {"campaign_id": self.campaign_id, "platform": self.platform, "ok": self.ok, "error": self.error}


@dataclass
class BulkResult:
    action: str
    items: list[BulkItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[str]:
        return [i.campaign_id for i in self.items if i.ok]

    @property
    def failed(self) -> list[str]:
        return [i.campaign_id for i in self.items if not i.ok]

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "total": len(self.items),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "items": [i.to_dict() for i in self.items],
        }


ItemOp = Callable[[str, str], Awaitable[object]]


class BulkOperationRunner:
    def __init__(self, coordinator: MutationCoordinator, store: EntityStore):
        self.coordinator = coordinator
        self.store = store

    async def run(self, action: str, items: list[tuple[Optional[str], str]], op: ItemOp) -> BulkResult:
        """
        Run ``op(platform, campaign_id)`` for every (platform, campaign_id) item.
        Results come back in input order.
        """
        groups: "OrderedDict[str, list[int]]" = OrderedDict()
        for index, (platform, _) in enumerate(items):
            groups.setdefault(platform or UNRESOLVED, []).append(index)

        results: list[Optional[BulkItemResult]] = [None] * len(items)

        async def run_group(indexes: list[int]) -> None:
            for index in indexes:
                platform, campaign_id = items[index]
                try:
                    if platform is None:
                        raise ValidationError(
                            f"Campaign {campaign_id} is not in the loaded campaign list",
                            entity_id=campaign_id, action=action,
                        )
                    await op(platform, campaign_id)
                    results[index] = BulkItemResult(campaign_id, platform, ok=True)
                except LiveOpsError as e:
                    e.with_context(platform or "", campaign_id, action)
                    logger.warning(f"Bulk {action} item failed: {e}")
                    results[index] = BulkItemResult(campaign_id, platform, ok=False, error=e.to_dict()["error"])
                except Exception as e:
                    logger.error(f"Bulk {action} item {campaign_id} failed unexpectedly: {e!r}", exc_info=True)
                    results[index] = BulkItemResult(campaign_id, platform, ok=False, error={
                        "code": "INTERNAL_ERROR",
                        "message": str(e) or repr(e),
                        "platform": platform,
                        "entity_id": campaign_id,
                        "action": action,
                    })

        await asyncio.gather(*(run_group(indexes) for indexes in groups.values()))
        result = BulkResult(action=action, items=[r for r in results if r is not None])
        logger.info(f"Bulk {action}: {len(result.succeeded)} ok, {len(result.failed)} failed")
        return result

    def resolve(self, campaign_ids: list[str], platform: Optional[str] = None) -> list[tuple[Optional[str], str]]:
        """Pair each campaign id with its platform, taken from the loaded campaign list unless given."""
        items = []
        for campaign_id in campaign_ids:
            if platform:
                items.append((platform.lower(), campaign_id))
                continue
            campaign = self.store.find_campaign(campaign_id)
            items.append((campaign.platform if campaign else None, campaign_id))
        return items

    async def set_status(self, campaign_ids: list[str], enable: bool, platform: Optional[str] = None) -> BulkResult:
        async def op(p: str, campaign_id: str):
            return await self.coordinator.set_status(p, EntityType.CAMPAIGN, campaign_id, enable)

        items = self.resolve(campaign_ids, platform)
        try:
            return await self.run("resume" if enable else "pause", items, op)
        finally:
            await self._reload({p for p, _ in items if p})

    async def reassign(self, campaign_ids: list[str], account_id: int, session_factory: async_sessionmaker) -> BulkResult:
        # One session per item so a bad id cannot poison the rest of the batch.
        async def op(_platform: str, campaign_id: str):
            async with session_factory() as db:
                await account_map.assign(db, campaign_id, account_id)
                await db.commit()

        items = [(campaign.platform if campaign else "internal", cid)
                 for cid, campaign in ((cid, self.store.find_campaign(cid)) for cid in campaign_ids)]
        return await self.run("assign_account", items, op)

    async def _reload(self, platforms: set[str]) -> None:
        """Full reload of the touched platforms' campaign lists after a batch."""
        if not platforms:
            return
        loaded = await self.store.load_campaigns(sorted(platforms), self.store.date_range)
        for platform, error in loaded.errors.items():
            logger.warning(f"Post-bulk reload failed for {platform}: {error.message}")
