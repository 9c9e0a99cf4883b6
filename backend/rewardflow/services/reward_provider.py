"""
Adapter for the external rewards marketplace.

The issuer only needs one call: fulfill() returning ISSUED, FAILED or PENDING.
One attempt per call; retrying is the caller's decision.
"""
from __future__ import annotations
import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
import httpx
import structlog

from rewardflow.config import Settings
from rewardflow.errors import IssuanceFailed

log = structlog.get_logger()


class ProviderStatus(str, enum.Enum):
    ISSUED = "ISSUED"
    FAILED = "FAILED"
    PENDING = "PENDING"


@dataclass(frozen=True)
class ProviderRequest:
    idempotency_key: str
    participant_id: str
    type: str  # sku | monetary
    sku_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_json(self) -> dict[str, Any]:
        body: dict[str, Any] = {"participantId": self.participant_id, "type": self.type, "metadata": self.metadata}
        if self.sku_id:
            body["skuId"] = self.sku_id
            body["quantity"] = 1
        if self.amount is not None:
            body["amount"] = str(self.amount)
        if self.currency:
            body["currency"] = self.currency
        return body


@dataclass(frozen=True)
class ProviderResult:
    status: ProviderStatus
    transaction_id: str | None = None
    error: str | None = None


class RewardProvider:
    name = "base"

    async def fulfill(self, request: ProviderRequest) -> ProviderResult:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class UnconfiguredRewardProvider(RewardProvider):
    name = "unconfigured"

    async def fulfill(self, request: ProviderRequest) -> ProviderResult:
        return ProviderResult(status=ProviderStatus.FAILED, error="reward provider not configured")


# Provider-side transaction states -> our view
_STATUS_MAP = {
    "completed": ProviderStatus.ISSUED,
    "issued": ProviderStatus.ISSUED,
    "success": ProviderStatus.ISSUED,
    "failed": ProviderStatus.FAILED,
    "rejected": ProviderStatus.FAILED,
    "cancelled": ProviderStatus.FAILED,
    "pending": ProviderStatus.PENDING,
    "processing": ProviderStatus.PENDING,
    "created": ProviderStatus.PENDING,
}


def _text(value: Any, limit: int) -> str | None:
    # Provider ids may arrive as numbers; columns are bounded strings
    if value is None or value == "":
        return None
    return str(value)[:limit]


class HttpRewardProvider(RewardProvider):
    name = "http"

    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0, client: httpx.AsyncClient | None = None):
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)
        self._api_key = api_key

    async def fulfill(self, request: ProviderRequest) -> ProviderResult:
        headers = {"Idempotency-Key": request.idempotency_key}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            resp = await self._client.post("/transactions", json=request.as_json(), headers=headers)
        except httpx.TimeoutException:
            # Outcome unknown; leave it for reconciliation rather than guessing
            log.warning("reward_provider.timeout", idempotency_key=request.idempotency_key)
            return ProviderResult(status=ProviderStatus.PENDING, error="provider_timeout")
        except httpx.HTTPError as e:
            raise IssuanceFailed(f"reward provider unreachable: {e}")

        if resp.status_code >= 400:
            raise IssuanceFailed(f"reward provider returned {resp.status_code}: {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError:
            raise IssuanceFailed("reward provider returned a non-JSON body")
        if not isinstance(data, dict):
            raise IssuanceFailed(f"reward provider returned an unexpected body: {resp.text[:200]}")
        raw_status = str(data.get("status") or "pending").lower()
        status = _STATUS_MAP.get(raw_status, ProviderStatus.PENDING)
        return ProviderResult(
            status=status,
            transaction_id=_text(data.get("id") or data.get("transactionId"), 128),
            error=_text(data.get("error"), 500) if status is ProviderStatus.FAILED else None,
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def build_reward_provider(settings: Settings) -> RewardProvider:
    if not settings.reward_provider_url:
        return UnconfiguredRewardProvider()
    return HttpRewardProvider(
        settings.reward_provider_url,
        settings.reward_provider_api_key,
        timeout=settings.reward_provider_timeout_seconds,
    )
