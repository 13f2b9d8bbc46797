"""
EntityStore: In-memory view of the expanded part of each platform's
campaign -> ad set -> ad tree, plus the override maps that hold confirmed
but not yet resynced mutations.

Fetched records are never modified. Overrides are merged in at read time
(``model_copy``), so a resync can replace a base record without racing the
override map. Map mutation happens under a per-key lock that is never held
across a network call.
"""

import asyncio
import enum
import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Union

from liveops.entities import (
    CampaignFilter, DateRange, EntityKey, EntityStatus, EntityType, LiveAd, LiveAdset, LiveCampaign,
)
from liveops.errors import ConflictError, LiveOpsError, UpstreamError
from liveops.services.adapters.registry import AdapterRegistry

logger = logging.getLogger(__name__)

Record = Union[LiveCampaign, LiveAdset, LiveAd]


class ExpansionStatus(str, enum.Enum):
    PENDING = "pending"
    LOADED = "loaded"
    ERROR = "error"


class OverrideField(str, enum.Enum):
    STATUS = "status"
    BUDGET = "budget"
    BID_CAP = "bid_cap"


@dataclass
class _Override:
    value: Any
    seq: int


@dataclass
class _Expansion:
    key: EntityKey
    generation: int
    date_range: Optional[DateRange]
    seq: int = 0
    task: Optional[asyncio.Task] = None
    status: ExpansionStatus = ExpansionStatus.PENDING
    error: Optional[BaseException] = None


@dataclass
class ResyncSnapshot:
    """What a resync job will refresh, and the override sequence it is allowed to retire."""
    platform: str
    seq: int
    has_roots: bool
    date_range: Optional[DateRange]
    expanded: list[tuple[EntityKey, Optional[DateRange]]] = field(default_factory=list)


@dataclass
class LoadResult:
    campaigns: list[LiveCampaign]
    errors: dict[str, LiveOpsError]


def _consume_result(task: asyncio.Task) -> None:
    # Expansion errors are reported through ExpansionStatus; keep asyncio from warning about them.
    if not task.cancelled():
        task.exception()


class EntityStore:
    def __init__(self, registry: AdapterRegistry):
        self.registry = registry
        self.date_range: Optional[DateRange] = None

        self._roots: dict[str, list[EntityKey]] = {}
        self._records: dict[EntityKey, Record] = {}
        self._children: dict[EntityKey, list[EntityKey]] = {}
        self._parent: dict[EntityKey, EntityKey] = {}
        self._expansions: dict[EntityKey, _Expansion] = {}
        self._overrides: dict[tuple[EntityKey, OverrideField], _Override] = {}

        self._seq = itertools.count(1)
        self._last_seq = 0
        self._generations = itertools.count(1)
        self._locks: dict[EntityKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _locked(self, key: EntityKey):
        with self._locks_guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield

    # ── Overrides ─────────────────────────────────────────────────────

    def apply_override(self, key: EntityKey, field_: OverrideField, value: Any) -> int:
        with self._locked(key):
            seq = next(self._seq)
            self._last_seq = seq
            self._overrides[(key, field_)] = _Override(value, seq)
        return seq

    def clear_override(self, key: EntityKey, field_: OverrideField) -> None:
        with self._locked(key):
            self._overrides.pop((key, field_), None)

    def override(self, key: EntityKey, field_: OverrideField) -> Optional[Any]:
        entry = self._overrides.get((key, field_))
        return entry.value if entry else None

    def _retire_overrides(self, keys: Iterable[EntityKey], max_seq: Optional[int] = None) -> int:
        retired = 0
        for key in keys:
            with self._locked(key):
                for field_ in OverrideField:
                    entry = self._overrides.get((key, field_))
                    if entry is not None and (max_seq is None or entry.seq <= max_seq):
                        del self._overrides[(key, field_)]
                        retired += 1
        return retired

    # ── Effective reads ───────────────────────────────────────────────

    def _effective(self, record: Record) -> Record:
        key = record.key
        update: dict[str, Any] = {}
        status = self.override(key, OverrideField.STATUS)
        if status is not None:
            update["status"] = EntityStatus.ACTIVE if status else EntityStatus.PAUSED
        if not isinstance(record, LiveAd):
            budget = self.override(key, OverrideField.BUDGET)
            if budget is not None:
                update["daily_budget_cents"] = budget
        if isinstance(record, LiveAdset):
            bid = self.override(key, OverrideField.BID_CAP)
            if bid is not None:
                update["bid_cap_cents"] = bid
        return record.model_copy(update=update) if update else record

    def get(self, key: EntityKey) -> Optional[Record]:
        record = self._records.get(key)
        return self._effective(record) if record is not None else None

    def find(self, platform: str, entity_id: str) -> Optional[Record]:
        for entity_type in EntityType:
            record = self.get(EntityKey(platform, entity_type, str(entity_id)))
            if record is not None:
                return record
        return None

    def campaigns(self, platform: Optional[str] = None) -> list[LiveCampaign]:
        platforms = [platform.lower()] if platform else list(self._roots)
        return [
            self._effective(self._records[key])
            for p in platforms
            for key in self._roots.get(p, [])
            if key in self._records
        ]

    def find_campaign(self, campaign_id: str) -> Optional[LiveCampaign]:
        for keys in self._roots.values():
            for key in keys:
                if key.entity_id == str(campaign_id):
                    return self.get(key)
        return None

    def children(self, key: EntityKey) -> Optional[list[Record]]:
        """Effective children of an expanded node; None if the node is not loaded."""
        child_keys = self._children.get(key)
        if child_keys is None:
            return None
        return [self._effective(self._records[k]) for k in child_keys if k in self._records]

    def adsets(self, campaign_key: EntityKey) -> Optional[list[LiveAdset]]:
        return self.children(campaign_key)

    def ads(self, adset_key: EntityKey) -> Optional[list[LiveAd]]:
        return self.children(adset_key)

    def expansion_status(self, key: EntityKey) -> Optional[ExpansionStatus]:
        exp = self._expansions.get(key)
        return exp.status if exp else None

    def expanded_keys(self, platform: Optional[str] = None) -> list[EntityKey]:
        return [
            k for k, exp in self._expansions.items()
            if exp.status == ExpansionStatus.LOADED and (platform is None or k.platform == platform)
        ]

    # ── Root level ────────────────────────────────────────────────────

    async def load_campaigns(
        self,
        platforms: Optional[list[str]] = None,
        date_range: Optional[DateRange] = None,
    ) -> LoadResult:
        """Full reload of the campaign lists. Drops every expansion and override for the reloaded platforms."""
        platforms = [p.lower() for p in (platforms or self.registry.platforms())]
        adapters = [self.registry.get(p) for p in platforms]
        self.date_range = date_range
        seq = self._last_seq
        results = await asyncio.gather(
            *(a.list_campaigns(CampaignFilter(date_range=date_range)) for a in adapters),
            return_exceptions=True,
        )

        errors: dict[str, LiveOpsError] = {}
        for platform, result in zip(platforms, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                if isinstance(result, LiveOpsError):
                    error = result
                    logger.warning(f"Campaign list failed for {platform}: {error.message}")
                else:
                    error = UpstreamError(f"Campaign list failed: {result!r}")
                    logger.error(f"Campaign list failed for {platform}", exc_info=result)
                errors[platform] = error.with_context(platform, "", "list_campaigns")
                continue
            self._replace_roots(platform, result, full_reload=True, max_seq=seq)

        return LoadResult(campaigns=self.campaigns_for(platforms), errors=errors)

    def campaigns_for(self, platforms: list[str]) -> list[LiveCampaign]:
        return [c for p in platforms for c in self.campaigns(p)]

    def _replace_roots(self, platform: str, campaigns: list[LiveCampaign], *, full_reload: bool, max_seq: Optional[int] = None) -> None:
        old_keys = self._roots.get(platform, [])
        if full_reload:
            for key in list(self._expansions):
                if key.platform == platform:
                    self.collapse(key)
            self._retire_overrides({k for (k, _f) in list(self._overrides) if k.platform == platform}, max_seq)
        else:
            self._retire_overrides(set(old_keys) | {c.key for c in campaigns}, max_seq)

        for key in old_keys:
            if key not in self._expansions:
                self._records.pop(key, None)
        new_keys = []
        for campaign in campaigns:
            with self._locked(campaign.key):
                self._records[campaign.key] = campaign
            new_keys.append(campaign.key)
        self._roots[platform] = new_keys

    # ── Expansion ─────────────────────────────────────────────────────

    def begin_expand(self, key: EntityKey, date_range: Optional[DateRange] = None) -> ExpansionStatus:
        """Start (or join) the expansion of a campaign or ad set without waiting for it."""
        return self._start(key, date_range).status

    def _start(self, key: EntityKey, date_range: Optional[DateRange]) -> _Expansion:
        if key.entity_type == EntityType.AD:
            raise ValueError("Ads have no children to expand")
        date_range = date_range if date_range is not None else self.date_range
        exp = self._expansions.get(key)
        if exp is not None and exp.date_range == date_range and exp.status != ExpansionStatus.ERROR:
            return exp
        if exp is not None:
            self._cancel(exp)

        exp = _Expansion(key=key, generation=next(self._generations), date_range=date_range, seq=self._last_seq)
        self._expansions[key] = exp
        exp.task = asyncio.ensure_future(self._run_expansion(exp))
        exp.task.add_done_callback(_consume_result)
        return exp

    async def fetch_children(self, key: EntityKey, date_range: Optional[DateRange]) -> list[Record]:
        adapter = self.registry.get(key.platform)
        if key.entity_type == EntityType.CAMPAIGN:
            return await adapter.list_adsets(key.entity_id, date_range)
        return await adapter.list_ads(key.entity_id, date_range)

    async def _run_expansion(self, exp: _Expansion) -> list[Record]:
        try:
            records = await self.fetch_children(exp.key, exp.date_range)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._is_current(exp):
                exp.status = ExpansionStatus.ERROR
                exp.error = e
            raise

        # Deferred write check: a collapse or re-expansion since this fetch started wins.
        if not self._is_current(exp):
            logger.info(f"Discarding stale expansion result for {exp.key}")
            return records
        self._store_children(exp.key, records)
        # Fresh platform data supersedes overrides confirmed before the fetch started.
        self._retire_overrides({r.key for r in records}, exp.seq)
        exp.status = ExpansionStatus.LOADED
        return records

    def _is_current(self, exp: _Expansion) -> bool:
        return self._expansions.get(exp.key) is exp

    def _store_children(self, key: EntityKey, records: list[Record]) -> None:
        with self._locked(key):
            old = self._children.get(key, [])
            new_keys = [r.key for r in records]
            for child in old:
                if child not in new_keys:
                    self._drop_subtree(child)
            for record in records:
                self._records[record.key] = record
                self._parent[record.key] = key
            self._children[key] = new_keys

    async def expand(self, key: EntityKey, date_range: Optional[DateRange] = None) -> list[Record]:
        """
        Load the children of a campaign (ad sets) or ad set (ads) and return them.
        Concurrent calls for the same key share one fetch.
        """
        exp = self._start(key, date_range)
        if exp.status == ExpansionStatus.LOADED:
            return self.children(key) or []
        try:
            # Shielded so one waiter going away does not cancel the fetch other waiters share.
            await asyncio.shield(exp.task)
        except asyncio.CancelledError:
            if exp.task.cancelled():
                raise ConflictError(
                    f"Expansion of {key} was cancelled by a collapse",
                    platform=key.platform, entity_id=key.entity_id, action="expand",
                ) from None
            raise
        return self.children(key) or []

    async def expand_adset(self, adset_key: EntityKey, date_range: Optional[DateRange] = None) -> list[LiveAd]:
        """
        Ads of an ad set. Only stored when the ad set sits inside an expanded
        campaign; otherwise the fetch is a pass-through.
        """
        parent = self._parent.get(adset_key)
        if parent is None or self.expansion_status(parent) != ExpansionStatus.LOADED:
            date_range = date_range if date_range is not None else self.date_range
            ads = await self.registry.get(adset_key.platform).list_ads(adset_key.entity_id, date_range)
            return [self._effective(a) for a in ads]
        return await self.expand(adset_key, date_range)

    def collapse(self, key: EntityKey) -> None:
        """Drop a node's subtree and cancel its in-flight fetches. Siblings are untouched."""
        exp = self._expansions.pop(key, None)
        if exp is not None:
            self._cancel(exp)
        for child in self._children.pop(key, []):
            self._drop_subtree(child)

    def _drop_subtree(self, key: EntityKey) -> None:
        self.collapse(key)
        self._retire_overrides([key])
        self._records.pop(key, None)
        self._parent.pop(key, None)

    @staticmethod
    def _cancel(exp: _Expansion) -> None:
        if exp.task is not None and not exp.task.done():
            exp.task.cancel()

    # ── Resync ────────────────────────────────────────────────────────

    def begin_resync(self, platform: str) -> ResyncSnapshot:
        expanded = [
            (key, self._expansions[key].date_range)
            for key in self.expanded_keys(platform)
        ]
        return ResyncSnapshot(
            platform=platform,
            seq=self._last_seq,
            has_roots=platform in self._roots,
            date_range=self.date_range,
            expanded=expanded,
        )

    def apply_resync_roots(self, snapshot: ResyncSnapshot, campaigns: list[LiveCampaign]) -> None:
        self._replace_roots(snapshot.platform, campaigns, full_reload=False, max_seq=snapshot.seq)

    def apply_resync(self, snapshot: ResyncSnapshot, key: EntityKey, records: list[Record]) -> bool:
        """Replace a node's children with resynced data. False if the node was collapsed meanwhile."""
        exp = self._expansions.get(key)
        if exp is None or exp.status != ExpansionStatus.LOADED:
            return False
        stale = set(self._children.get(key, []))
        self._store_children(key, records)
        self._retire_overrides(stale | {r.key for r in records}, snapshot.seq)
        return True

    async def close(self) -> None:
        tasks = [exp.task for exp in self._expansions.values() if exp.task is not None and not exp.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
