"""
Platform adapter contract and shared HTTP transport.

One PlatformAdapter per ad network normalizes that network's campaign /
ad set / ad representations and mutation verbs into the common entity model.
The transport retries idempotent reads only; mutating calls go out exactly
once so a timeout never turns into a duplicate side effect on the platform.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from liveops.entities import CampaignFilter, DateRange, EntityType, LiveAd, LiveAdset, LiveCampaign
from liveops.errors import ConflictError, LiveOpsError, UpstreamError

logger = logging.getLogger(__name__)

# Unwraps a platform response envelope into its payload, raising UpstreamError on platform-level errors.
Unwrap = Callable[[httpx.Response], Any]
HeadersFactory = Callable[[], Awaitable[dict[str, str]]]


def _is_retryable(exc: BaseException) -> bool:
    """Rate limits, 5xx and failures with no HTTP status (timeouts, connection errors)."""
    return isinstance(exc, UpstreamError) and (
        exc.rate_limited or exc.upstream_status is None or exc.upstream_status >= 500
    )


def default_unwrap(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        raise UpstreamError(f"Platform returned invalid JSON: {response.text[:200]}")


class PlatformTransport:
    """Thin httpx wrapper shared by all adapters of one platform."""

    def __init__(
        self,
        platform: str,
        base_url: str,
        *,
        unwrap: Unwrap = default_unwrap,
        headers: Optional[dict[str, str]] = None,
        headers_factory: Optional[HeadersFactory] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.platform = platform
        self.unwrap = unwrap
        self.headers_factory = headers_factory
        self.max_retries = max_retries
        self.backoff = backoff
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers or {},
            timeout=timeout,
            transport=transport,
        )

    async def _send(self, method: str, path: str, **kwargs) -> Any:
        headers = await self.headers_factory() if self.headers_factory else None
        logger.info(f"{self.platform} {method} {path}")
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"{self.platform} request timed out: {e}", platform=self.platform)
        except httpx.TransportError as e:
            raise UpstreamError(f"{self.platform} network error: {e}", platform=self.platform)

        if response.status_code == 429:
            raise UpstreamError(
                f"{self.platform} rate limit exceeded",
                rate_limited=True, upstream_status=429, platform=self.platform,
            )
        if response.status_code >= 400:
            # Platforms put the useful message in the body; let the adapter extract it.
            try:
                self.unwrap(response)
            except UpstreamError as e:
                e.upstream_status = e.upstream_status or response.status_code
                e.platform = e.platform or self.platform
                raise
            raise UpstreamError(
                f"{self.platform} API error: HTTP {response.status_code}",
                upstream_status=response.status_code, platform=self.platform,
            )
        return self.unwrap(response)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        logger.warning(
            f"{self.platform} read failed ({getattr(error, 'message', error)}); "
            f"retry {retry_state.attempt_number}/{self.max_retries} in {retry_state.next_action.sleep:.1f}s"
        )

    async def read(self, method: str, path: str, **kwargs) -> Any:
        """Idempotent call: retried on network errors, rate limits and 5xx."""
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            wait=wait_exponential(multiplier=self.backoff, max=8.0),
            stop=stop_after_attempt(self.max_retries + 1),
            before_sleep=self._log_retry,
            reraise=True,
        )
        return await retrying(self._send, method, path, **kwargs)

    async def get(self, path: str, params: Optional[dict] = None) -> Any:
        return await self.read("GET", path, params=params)

    async def write(self, method: str, path: str, **kwargs) -> Any:
        """Mutating call: sent exactly once."""
        return await self._send(method, path, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()


class PlatformAdapter(ABC):
    """Contract implemented once per ad platform."""

    platform: str = ""
    supports_duplicate: bool = True
    copy_suffix: str = " - Copy"

    def __init__(self, transport: PlatformTransport):
        self.transport = transport

    # ── Reads ─────────────────────────────────────────────────────────

    @abstractmethod
    async def list_campaigns(self, filter: Optional[CampaignFilter] = None) -> list[LiveCampaign]:
        ...

    @abstractmethod
    async def list_adsets(self, campaign_id: str, date_range: Optional[DateRange] = None) -> list[LiveAdset]:
        ...

    @abstractmethod
    async def list_ads(self, adset_id: str, date_range: Optional[DateRange] = None) -> list[LiveAd]:
        ...

    @abstractmethod
    async def get_budget(self, entity_type: EntityType, entity_id: str) -> Optional[int]:
        """Current platform-side daily budget in cents, or None if the entity has none."""

    # ── Mutations ─────────────────────────────────────────────────────

    @abstractmethod
    async def set_entity_status(self, entity_type: EntityType, entity_id: str, enable: bool) -> None:
        """Must be idempotent: enabling an enabled entity succeeds without side effect."""

    async def set_budget(
        self,
        entity_id: str,
        new_budget_cents: int,
        previous_budget_cents: Optional[int] = None,
        entity_type: EntityType = EntityType.ADSET,
    ) -> None:
        if previous_budget_cents is not None:
            current = await self.get_budget(entity_type, entity_id)
            if current is not None and current != previous_budget_cents:
                raise ConflictError(
                    f"Budget changed on {self.platform} since last sync: "
                    f"expected {previous_budget_cents}¢, platform has {current}¢",
                    platform=self.platform, entity_id=entity_id, action="budget_change",
                )
        await self._write_budget(entity_type, entity_id, new_budget_cents)

    @abstractmethod
    async def _write_budget(self, entity_type: EntityType, entity_id: str, new_budget_cents: int) -> None:
        ...

    @abstractmethod
    async def set_bid_cap(self, entity_id: str, new_bid_cap_cents: int) -> None:
        ...

    async def duplicate(
        self,
        entity_type: EntityType,
        entity_id: str,
        target_parent_id: Optional[str] = None,
    ) -> str:
        raise LiveOpsError(
            f"Duplicating is not supported on {self.platform}",
            platform=self.platform, entity_id=entity_id, action="duplicate",
        )

    def copy_name(self, name: Optional[str]) -> str:
        return f"{name or 'Untitled'}{self.copy_suffix}"

    async def aclose(self) -> None:
        await self.transport.aclose()


def cents(dollars: Any) -> Optional[int]:
    """Dollar amount (number or numeric string) to integer cents."""
    if dollars in (None, ""):
        return None
    try:
        return int(round(float(dollars) * 100))
    except (TypeError, ValueError):
        return None


def dollars(cents_value: int) -> float:
    return round(cents_value / 100, 2)


def to_int(value: Any) -> int:
    try:
        return int(float(value or 0))
    except (TypeError, ValueError):
        return 0


def to_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


CHILD_TYPE = {EntityType.CAMPAIGN: EntityType.ADSET, EntityType.ADSET: EntityType.AD}


class RecreatingDuplicator(ABC):
    """
    Duplicate for platforms without a native copy endpoint.

    Reads the source entity, creates a twin under the target parent (or the
    original parent), then recurses into the children so a campaign copy
    carries its ad sets and ads. Mix in ahead of PlatformAdapter.
    """

    name_fields: dict[EntityType, str] = {}
    parent_fields: dict[EntityType, str] = {}

    @abstractmethod
    async def _read_entity(self, entity_type: EntityType, entity_id: str) -> dict:
        """Copyable fields of the source entity, as the create call takes them."""

    @abstractmethod
    async def _create_entity(self, entity_type: EntityType, fields: dict) -> str:
        ...

    @abstractmethod
    async def _child_ids(self, entity_type: EntityType, entity_id: str) -> list[str]:
        ...

    async def duplicate(
        self,
        entity_type: EntityType,
        entity_id: str,
        target_parent_id: Optional[str] = None,
    ) -> str:
        fields = dict(await self._read_entity(entity_type, entity_id))
        name_field = self.name_fields[entity_type]
        fields[name_field] = self.copy_name(fields.get(name_field))
        if target_parent_id and entity_type in self.parent_fields:
            fields[self.parent_fields[entity_type]] = target_parent_id

        new_id = await self._create_entity(entity_type, fields)
        logger.info(f"{self.platform} recreated {entity_type.value} {entity_id} as {new_id}")

        child_type = CHILD_TYPE.get(entity_type)
        if child_type:
            for child_id in await self._child_ids(entity_type, entity_id):
                await self.duplicate(child_type, child_id, new_id)
        return new_id
