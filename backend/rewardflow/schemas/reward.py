from __future__ import annotations
from decimal import Decimal
from pydantic import Field
from uuid import UUID
from datetime import datetime

from rewardflow.schemas.base import CamelModel


class RewardInput(CamelModel):
    type: str
    amount: Decimal | None = None
    currency: str | None = Field(default=None, max_length=8)
    sku_id: str | None = Field(default=None, max_length=64)
    provider: str | None = Field(default=None, max_length=32)


class RewardPublic(CamelModel):
    id: UUID
    workspace_id: UUID
    user_id: UUID
    challenge_id: UUID | None = None
    submission_id: UUID | None = None
    type: str
    amount: Decimal | None = None
    currency: str | None = None
    sku_id: str | None = None
    provider: str | None = None
    status: str
    external_transaction_id: str | None = None
    error: str | None = None
    issued_at: datetime | None = None
    created_at: datetime


class ManualRewardRequest(RewardInput):
    user_id: UUID
    challenge_id: UUID | None = None


class RetryRequest(CamelModel):
    reward_ids: list[UUID] = Field(min_length=1, max_length=100)


class RetryResult(CamelModel):
    reward_id: UUID
    ok: bool
    reward: RewardPublic | None = None
    error: str | None = None


class ProviderEventData(CamelModel):
    id: str
    status: str | None = None
    error: str | None = None


class ProviderEvent(CamelModel):
    """transaction.* / adjustment.* / participant.* notifications from the reward provider."""
    id: str | None = None
    type: str
    data: ProviderEventData
