"""
Which reward an approval pays out.

Priority: explicit reward in the request, then the legacy pointsAwarded
integer, then the challenge's default reward. First one that resolves wins.
"""
from __future__ import annotations
import enum
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from rewardflow.errors import ValidationError


# Column limits: Numeric(12, 2) amounts, 32-bit integer point counters
MAX_AMOUNT = Decimal("9999999999.99")
MAX_POINTS = 1_000_000_000


class RewardType(str, enum.Enum):
    POINTS = "points"
    SKU = "sku"
    MONETARY = "monetary"


@dataclass(frozen=True)
class RewardTerms:
    type: RewardType
    amount: Decimal | None = None
    currency: str | None = None
    sku_id: str | None = None
    provider: str | None = None

    def validate(self) -> "RewardTerms":
        if self.type is RewardType.POINTS:
            if self.amount is None or self.amount <= 0 or self.amount != self.amount.to_integral_value():
                raise ValidationError("Points rewards require a positive whole amount")
            if self.amount > MAX_POINTS:
                raise ValidationError(f"Points rewards cannot exceed {MAX_POINTS}")
        elif self.type is RewardType.MONETARY:
            if self.amount is None or self.amount <= 0 or not self.currency:
                raise ValidationError("Monetary rewards require a positive amount and a currency")
        elif self.type is RewardType.SKU:
            if not self.sku_id:
                raise ValidationError("SKU rewards require skuId")
        if self.amount is not None and (self.amount > MAX_AMOUNT or self.amount.as_tuple().exponent < -2):
            raise ValidationError(f"Reward amount must be at most {MAX_AMOUNT} with two decimal places")
        return self

    @property
    def points(self) -> int:
        return int(self.amount or 0)


@dataclass(frozen=True)
class RewardSpec:
    """RewardTerms bound to a recipient and (optionally) the submission that earned it."""
    workspace_id: uuid.UUID
    user_id: uuid.UUID
    terms: RewardTerms
    challenge_id: uuid.UUID | None = None
    submission_id: uuid.UUID | None = None
    actor_user_id: uuid.UUID | None = None

    @property
    def type(self) -> RewardType:
        return self.terms.type


def _decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def terms_from_request(reward: dict[str, Any] | None) -> RewardTerms | None:
    """Explicit reward object from a review request; invalid objects are a ValidationError."""
    if not reward or not reward.get("type"):
        return None
    try:
        rtype = RewardType(reward["type"])
    except ValueError:
        raise ValidationError(f"Unknown reward type: {reward['type']}")
    return RewardTerms(
        type=rtype,
        amount=_decimal(reward.get("amount")),
        currency=reward.get("currency") or None,
        sku_id=reward.get("skuId") or reward.get("sku_id") or None,
        provider=reward.get("provider") or None,
    ).validate()


def terms_from_challenge(
    reward_type: str | None,
    reward_config: dict[str, Any] | None,
    activity_points: int | None = None,
    default_currency: str = "USD",
) -> RewardTerms | None:
    """Challenge default. Incomplete defaults resolve to None rather than failing the approval."""
    if not reward_type:
        return None
    try:
        rtype = RewardType(reward_type)
    except ValueError:
        return None
    cfg = reward_config or {}
    provider = cfg.get("provider") or None
    if rtype is RewardType.POINTS:
        amount = _decimal(cfg.get("pointsAmount")) or _decimal(cfg.get("amount")) or _decimal(activity_points)
        if amount is None or amount <= 0:
            return None
        return RewardTerms(type=rtype, amount=amount, provider=provider)
    if rtype is RewardType.SKU:
        if not cfg.get("skuId"):
            return None
        return RewardTerms(type=rtype, sku_id=str(cfg["skuId"]), provider=provider)
    amount = _decimal(cfg.get("amount"))
    if amount is None or amount <= 0:
        return None
    return RewardTerms(type=rtype, amount=amount, currency=cfg.get("currency") or default_currency, provider=provider)


def resolve_reward_terms(
    explicit: RewardTerms | None,
    legacy_points: int | None,
    challenge_default: RewardTerms | None,
) -> RewardTerms | None:
    if explicit is not None:
        return explicit
    if legacy_points is not None and legacy_points > 0:
        return RewardTerms(type=RewardType.POINTS, amount=Decimal(legacy_points)).validate()
    return challenge_default


def bind(terms: RewardTerms, **targets: Any) -> RewardSpec:
    return RewardSpec(terms=terms, **targets)
