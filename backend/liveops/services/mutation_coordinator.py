"""
Mutation Coordinator: Runs one operator-issued change against a platform.

Per entity: Idle -> Submitting -> Committed | RolledBack. Validation and the
one-in-flight rule are checked before any network call. State is only
written to the store after the platform confirms; a failure leaves the store
exactly as it was and re-raises the adapter's error with context attached
(anything outside the error taxonomy comes back as an UpstreamError).
The adapter call runs in its own task, shielded from the caller, so a
disconnecting client never aborts a mutation halfway.
"""

import asyncio
import enum
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from liveops.entities import EntityKey, EntityType, LiveAdset, LiveCampaign
from liveops.errors import BusyError, LiveOpsError, UpstreamError, ValidationError
from liveops.models import ActivityAction
from liveops.services.activity_log import ActivityLogService
from liveops.services.adapters.registry import AdapterRegistry
from liveops.services.entity_store import EntityStore, OverrideField, Record
from liveops.services.sync_scheduler import SyncScheduler
from liveops.utils import parse_entity_id

logger = logging.getLogger(__name__)


class MutationState(str, enum.Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class MutationResult:
    key: EntityKey
    action: str
    state: MutationState
    record: Optional[Record] = None
    new_entity_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "platform": self.key.platform,
            "entity_type": self.key.entity_type.value,
            "entity_id": self.key.entity_id,
            "action": self.action,
            "state": self.state.value,
            "record": self.record.model_dump(mode="json") if self.record is not None else None,
            "new_entity_id": self.new_entity_id,
        }


def _consume_result(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


class MutationCoordinator:
    def __init__(
        self,
        registry: AdapterRegistry,
        store: EntityStore,
        activity_log: Optional[ActivityLogService] = None,
        scheduler: Optional[SyncScheduler] = None,
        min_budget_cents: int = 500,
        max_tracked_states: int = 1000,
    ):
        self.registry = registry
        self.store = store
        self.activity_log = activity_log
        self.scheduler = scheduler
        self.min_budget_cents = min_budget_cents
        self.max_tracked_states = max_tracked_states
        # Keyed by platform:entity_id so every kind of change to one entity shares the busy rule.
        self._states: "OrderedDict[str, MutationState]" = OrderedDict()
        self._inflight: set[asyncio.Task] = set()

    def state(self, key: EntityKey) -> MutationState:
        return self._states.get(key.token, MutationState.IDLE)

    # ── Operations ────────────────────────────────────────────────────

    async def set_status(self, platform: str, entity_type: EntityType, entity_id: str, enable: bool) -> MutationResult:
        action = "resume" if enable else "pause"
        key = self._key(platform, entity_type, entity_id, action)
        adapter = self.registry.get(key.platform)

        async def commit(_):
            self.store.apply_override(key, OverrideField.STATUS, enable)
            await self._log(key, ActivityAction.RESUME if enable else ActivityAction.PAUSE)

        await self._submit(key, action, lambda: adapter.set_entity_status(key.entity_type, key.entity_id, enable), commit)
        return MutationResult(key, action, self.state(key), record=self.store.get(key))

    async def set_budget(
        self,
        platform: str,
        entity_id: str,
        new_budget_cents: int,
        previous_budget_cents: Optional[int] = None,
        entity_type: Optional[EntityType] = None,
    ) -> MutationResult:
        action = "budget_change"
        entity_type = entity_type or self._budget_owner_type(platform, entity_id)
        key = self._key(platform, entity_type, entity_id, action)
        if new_budget_cents < self.min_budget_cents:
            raise ValidationError(
                f"Daily budget must be at least ${self.min_budget_cents / 100:.2f}",
                platform=key.platform, entity_id=key.entity_id, action=action,
            )
        if previous_budget_cents is not None and previous_budget_cents < 0:
            raise ValidationError("previous_budget_cents cannot be negative", platform=key.platform, entity_id=key.entity_id, action=action)
        adapter = self.registry.get(key.platform)

        known = self.store.get(key)
        old_cents = previous_budget_cents
        if old_cents is None and isinstance(known, (LiveCampaign, LiveAdset)):
            old_cents = known.daily_budget_cents

        async def commit(_):
            self.store.apply_override(key, OverrideField.BUDGET, new_budget_cents)
            await self._log(key, ActivityAction.BUDGET_CHANGE, old_cents, new_budget_cents)

        await self._submit(
            key, action,
            lambda: adapter.set_budget(key.entity_id, new_budget_cents, previous_budget_cents, entity_type=key.entity_type),
            commit,
        )
        return MutationResult(key, action, self.state(key), record=self.store.get(key))

    async def set_bid_cap(self, platform: str, entity_id: str, new_bid_cap_cents: int) -> MutationResult:
        action = "bid_cap"
        key = self._key(platform, EntityType.ADSET, entity_id, action)
        if new_bid_cap_cents <= 0:
            raise ValidationError("Bid cap must be greater than $0.00", platform=key.platform, entity_id=key.entity_id, action=action)
        adapter = self.registry.get(key.platform)

        async def commit(_):
            self.store.apply_override(key, OverrideField.BID_CAP, new_bid_cap_cents)

        await self._submit(key, action, lambda: adapter.set_bid_cap(key.entity_id, new_bid_cap_cents), commit)
        return MutationResult(key, action, self.state(key), record=self.store.get(key))

    async def duplicate(
        self,
        platform: str,
        entity_type: EntityType,
        entity_id: str,
        target_parent_id: Optional[str] = None,
    ) -> MutationResult:
        action = "duplicate"
        key = self._key(platform, entity_type, entity_id, action)
        adapter = self.registry.get(key.platform)
        if not adapter.supports_duplicate:
            raise ValidationError(f"Duplicating is not supported on {key.platform}", platform=key.platform, entity_id=key.entity_id, action=action)
        if target_parent_id is not None:
            if entity_type == EntityType.CAMPAIGN:
                raise ValidationError("Campaigns have no parent to copy into", platform=key.platform, entity_id=key.entity_id, action=action)
            target_parent_id = parse_entity_id(target_parent_id, "target_parent_id", key.platform)

        async def commit(_):
            # No override: the copy shows up through the resync this commit triggers.
            return None

        new_id = await self._submit(
            key, action, lambda: adapter.duplicate(key.entity_type, key.entity_id, target_parent_id), commit,
        )
        return MutationResult(key, action, self.state(key), new_entity_id=str(new_id))

    # ── Internals ─────────────────────────────────────────────────────

    def _key(self, platform: str, entity_type: EntityType, entity_id: str, action: str) -> EntityKey:
        platform = (platform or "").lower()
        try:
            entity_id = parse_entity_id(entity_id, platform=platform)
        except ValidationError as e:
            raise e.with_context(platform, entity_id, action)
        return EntityKey(platform, entity_type, entity_id)

    def _budget_owner_type(self, platform: str, entity_id: str) -> EntityType:
        """Budgets live on ad sets unless the id is a loaded campaign (campaign-level budgets)."""
        record = self.store.find((platform or "").lower(), entity_id)
        return EntityType.CAMPAIGN if isinstance(record, LiveCampaign) else EntityType.ADSET

    async def _submit(
        self,
        key: EntityKey,
        action: str,
        call: Callable[[], Awaitable[Any]],
        commit: Callable[[Any], Awaitable[None]],
    ) -> Any:
        if self._states.get(key.token) == MutationState.SUBMITTING:
            raise BusyError(
                f"A change to {key.token} is already in flight",
                platform=key.platform, entity_id=key.entity_id, action=action,
            )
        self._states[key.token] = MutationState.SUBMITTING
        task = asyncio.ensure_future(self._run(key, action, call, commit))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        task.add_done_callback(_consume_result)
        return await asyncio.shield(task)

    async def _run(
        self,
        key: EntityKey,
        action: str,
        call: Callable[[], Awaitable[Any]],
        commit: Callable[[Any], Awaitable[None]],
    ) -> Any:
        try:
            result = await call()
        except LiveOpsError as e:
            self._finish(key, MutationState.ROLLED_BACK)
            logger.warning(f"Mutation rolled back: {e.with_context(key.platform, key.entity_id, action)}")
            raise
        except Exception as e:
            self._finish(key, MutationState.ROLLED_BACK)
            logger.error(f"Mutation rolled back: [{action} {key.token}] {e!r}", exc_info=True)
            raise UpstreamError(
                f"{action} failed: {e!r}",
                platform=key.platform, entity_id=key.entity_id, action=action,
            ) from e
        except BaseException:
            self._finish(key, MutationState.ROLLED_BACK)
            raise

        # Accepted by the platform: leaves Submitting even if commit is interrupted.
        try:
            await commit(result)
        finally:
            self._finish(key, MutationState.COMMITTED)
        logger.info(f"Mutation committed: [{action} {key}]")
        if self.scheduler is not None:
            self.scheduler.trigger(key.platform)
        return result

    def _finish(self, key: EntityKey, state: MutationState) -> None:
        """Record a terminal state, forgetting the oldest terminal entries past max_tracked_states."""
        self._states[key.token] = state
        self._states.move_to_end(key.token)
        excess = len(self._states) - self.max_tracked_states
        if excess > 0:
            stale = [t for t, s in self._states.items() if s != MutationState.SUBMITTING][:excess]
            for token in stale:
                del self._states[token]

    async def _log(
        self,
        key: EntityKey,
        action: ActivityAction,
        old_budget_cents: Optional[int] = None,
        new_budget_cents: Optional[int] = None,
    ) -> None:
        if self.activity_log is None:
            return
        try:
            await self.activity_log.record(
                key.platform, key.entity_type, key.entity_id, action, old_budget_cents, new_budget_cents,
            )
        except Exception as e:
            # The platform already accepted the change; a missing log row must not undo it.
            logger.error(f"Activity log write failed for {key}: {e}", exc_info=True)

    async def drain(self) -> None:
        """Wait for in-flight mutations (used on shutdown)."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
