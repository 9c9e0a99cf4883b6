"""
Reward issuance.

issue() is idempotent per (submission_id, type): an existing record for the key
is returned untouched. Points go through the BudgetLedger and are credited
locally; sku / monetary rewards are handed to the external RewardProvider.
Budget and provider failures are recorded on the RewardIssuance row, never
raised to the caller.
"""
from __future__ import annotations
import enum
import uuid
from decimal import Decimal
from typing import Any
from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from rewardflow.db import utcnow
from rewardflow.errors import BudgetExceeded, IssuanceFailed, NotFound, ValidationError
from rewardflow.models.ledger import PointsBalance, PointsLedger
from rewardflow.models.reward import RewardIssuance
from rewardflow.models.submission import Submission
from rewardflow.models.user import User
from rewardflow.services.budget import BudgetLedger
from rewardflow.services.events import EventLogger, EventType
from rewardflow.services.reward_provider import ProviderRequest, ProviderResult, ProviderStatus, RewardProvider
from rewardflow.services.reward_spec import RewardSpec, RewardTerms, RewardType

log = structlog.get_logger()


class RewardStatus(str, enum.Enum):
    PENDING = "PENDING"
    ISSUED = "ISSUED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


_EVENT_FOR_STATUS = {
    RewardStatus.ISSUED.value: EventType.REWARD_ISSUED,
    RewardStatus.PENDING.value: EventType.REWARD_PENDING,
    RewardStatus.FAILED.value: EventType.REWARD_FAILED,
    RewardStatus.CANCELLED.value: EventType.REWARD_CANCELLED,
}


def idempotency_key(reward: RewardIssuance) -> str:
    return f"rewardflow-{reward.type}-{reward.id}"


def spec_from_record(reward: RewardIssuance, actor_user_id: uuid.UUID | None = None) -> RewardSpec:
    return RewardSpec(
        workspace_id=reward.workspace_id,
        user_id=reward.user_id,
        challenge_id=reward.challenge_id,
        submission_id=reward.submission_id,
        actor_user_id=actor_user_id or reward.actor_user_id,
        terms=RewardTerms(
            type=RewardType(reward.type),
            amount=Decimal(reward.amount) if reward.amount is not None else None,
            currency=reward.currency,
            sku_id=reward.sku_id,
            provider=reward.provider,
        ),
    )


class RewardIssuer:
    def __init__(
        self,
        session: AsyncSession,
        provider: RewardProvider,
        ledger: BudgetLedger | None = None,
        events: EventLogger | None = None,
    ):
        self.session = session
        self.provider = provider
        self.ledger = ledger or BudgetLedger(session)
        self.events = events or EventLogger(session)

    # ---------- lookups ----------

    async def get(self, workspace_id: uuid.UUID, reward_id: uuid.UUID) -> RewardIssuance:
        reward = await self.session.scalar(
            select(RewardIssuance).where(RewardIssuance.id == reward_id, RewardIssuance.workspace_id == workspace_id)
        )
        if not reward:
            raise NotFound("Reward not found")
        return reward

    async def existing_for(self, submission_id: uuid.UUID, type: RewardType, *, include_failed: bool) -> RewardIssuance | None:
        q = select(RewardIssuance).where(
            RewardIssuance.submission_id == submission_id,
            RewardIssuance.type == type.value,
        )
        if not include_failed:
            q = q.where(RewardIssuance.status != RewardStatus.FAILED.value)
        # Live record first, then the latest failed attempt
        q = q.order_by(
            case((RewardIssuance.status == RewardStatus.FAILED.value, 1), else_=0),
            RewardIssuance.created_at.desc(),
        ).limit(1)
        return await self.session.scalar(q)

    async def list(
        self,
        workspace_id: uuid.UUID,
        *,
        status: str | None = None,
        type: str | None = None,
        challenge_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
        limit: int = 100,
    ) -> list[RewardIssuance]:
        q = select(RewardIssuance).where(RewardIssuance.workspace_id == workspace_id)
        if status:
            q = q.where(RewardIssuance.status == status)
        if type:
            q = q.where(RewardIssuance.type == type)
        if challenge_id:
            q = q.where(RewardIssuance.challenge_id == challenge_id)
        if user_id:
            q = q.where(RewardIssuance.user_id == user_id)
        q = q.order_by(RewardIssuance.created_at.desc()).limit(limit)
        return list((await self.session.execute(q)).scalars().all())

    # ---------- issuance ----------

    async def issue(self, spec: RewardSpec, *, retry: bool = False) -> RewardIssuance:
        """
        retry=False: any record already holding the (submission, type) key is returned.
        retry=True:  only a live (non-FAILED) record short-circuits; a FAILED key gets a new attempt.
        """
        spec.terms.validate()
        if spec.submission_id is not None:
            existing = await self.existing_for(spec.submission_id, spec.type, include_failed=not retry)
            if existing is not None:
                log.info("reward.idempotent_hit", reward_id=str(existing.id), status=existing.status)
                return existing

        reward = self._new_record(spec)
        try:
            async with self.session.begin_nested():
                self.session.add(reward)
        except IntegrityError:
            # Lost the race on the live-issuance unique index
            existing = await self.existing_for(spec.submission_id, spec.type, include_failed=False) if spec.submission_id else None
            if existing is None:
                raise
            log.info("reward.idempotent_race", reward_id=str(existing.id))
            return existing

        if spec.type is RewardType.POINTS:
            await self._issue_points(reward, spec)
        else:
            await self._fulfill_external(reward)
        await self._after_status_change(reward)
        return reward

    async def record_failure(self, spec: RewardSpec, error: str) -> RewardIssuance:
        """FAILED record for an issuance that broke before it could record itself; retryable like any other."""
        reward = self._new_record(spec)
        self._mark(reward, RewardStatus.FAILED, error=error)
        self.session.add(reward)
        await self._after_status_change(reward)
        return reward

    def _new_record(self, spec: RewardSpec) -> RewardIssuance:
        terms = spec.terms
        return RewardIssuance(
            id=uuid.uuid4(),
            workspace_id=spec.workspace_id,
            user_id=spec.user_id,
            challenge_id=spec.challenge_id,
            submission_id=spec.submission_id,
            type=terms.type.value,
            amount=terms.amount,
            currency=terms.currency,
            sku_id=terms.sku_id,
            provider=terms.provider or (None if terms.type is RewardType.POINTS else self.provider.name),
            status=RewardStatus.PENDING.value,
            actor_user_id=spec.actor_user_id,
            metadata_json={},
        )

    async def _issue_points(self, reward: RewardIssuance, spec: RewardSpec) -> None:
        points = spec.terms.points
        try:
            await self.ledger.reserve(spec.workspace_id, points, spec.challenge_id)
        except BudgetExceeded as e:
            self._mark(reward, RewardStatus.FAILED, error=e.message)
            return
        await self._credit_points(reward, points)
        self._mark(reward, RewardStatus.ISSUED)

    async def _increment_balance(self, reward: RewardIssuance, points: int) -> int:
        res = await self.session.execute(
            update(PointsBalance)
            .where(PointsBalance.user_id == reward.user_id, PointsBalance.workspace_id == reward.workspace_id)
            .values(
                total_points=PointsBalance.total_points + points,
                available_points=PointsBalance.available_points + points,
            )
            .execution_options(synchronize_session="fetch")
        )
        return res.rowcount

    async def _credit_points(self, reward: RewardIssuance, points: int) -> None:
        if await self._increment_balance(reward, points) == 0:
            try:
                async with self.session.begin_nested():
                    self.session.add(PointsBalance(
                        user_id=reward.user_id,
                        workspace_id=reward.workspace_id,
                        total_points=points,
                        available_points=points,
                    ))
            except IntegrityError:
                # A concurrent first credit created the balance row
                log.info("points.balance_race", user_id=str(reward.user_id), workspace_id=str(reward.workspace_id))
                if await self._increment_balance(reward, points) != 1:
                    raise
        self.session.add(PointsLedger(
            workspace_id=reward.workspace_id,
            challenge_id=reward.challenge_id,
            to_user_id=reward.user_id,
            amount=points,
            reason="AWARD_APPROVED" if reward.submission_id else "MANUAL_AWARD",
            submission_id=reward.submission_id,
            reward_issuance_id=reward.id,
            actor_user_id=reward.actor_user_id,
        ))

    async def _fulfill_external(self, reward: RewardIssuance) -> None:
        user = await self.session.get(User, reward.user_id)
        participant_id = (user.external_reward_id if user and user.external_reward_id else str(reward.user_id))
        request = ProviderRequest(
            idempotency_key=idempotency_key(reward),
            participant_id=participant_id,
            type=reward.type,
            sku_id=reward.sku_id,
            amount=reward.amount,
            currency=reward.currency,
            metadata={
                "rewardIssuanceId": str(reward.id),
                "workspaceId": str(reward.workspace_id),
                "submissionId": str(reward.submission_id) if reward.submission_id else None,
            },
        )
        try:
            result = await self.provider.fulfill(request)
        except IssuanceFailed as e:
            self._mark(reward, RewardStatus.FAILED, error=e.message)
            return
        self._apply_provider_result(reward, result)

    def _apply_provider_result(self, reward: RewardIssuance, result: ProviderResult) -> None:
        if result.transaction_id:
            reward.external_transaction_id = result.transaction_id
        if result.status is ProviderStatus.ISSUED:
            self._mark(reward, RewardStatus.ISSUED)
        elif result.status is ProviderStatus.FAILED:
            self._mark(reward, RewardStatus.FAILED, error=result.error or "reward provider reported failure")
        else:
            self._mark(reward, RewardStatus.PENDING, error=result.error)

    def _mark(self, reward: RewardIssuance, status: RewardStatus, error: str | None = None) -> None:
        reward.status = status.value
        reward.error = error
        if status is RewardStatus.ISSUED and reward.issued_at is None:
            reward.issued_at = utcnow()
        level = log.warning if status is RewardStatus.FAILED else log.info
        level(
            f"reward.{status.value.lower()}",
            reward_id=str(reward.id),
            type=reward.type,
            submission_id=str(reward.submission_id) if reward.submission_id else None,
            error=error,
        )

    async def _after_status_change(self, reward: RewardIssuance) -> None:
        if reward.submission_id is not None and reward.status != RewardStatus.FAILED.value:
            sub = await self.session.get(Submission, reward.submission_id)
            if sub is not None:
                sub.reward_issuance_id = reward.id
                sub.reward_issued = reward.status == RewardStatus.ISSUED.value
                if reward.type == RewardType.POINTS.value and reward.status == RewardStatus.ISSUED.value:
                    sub.points_awarded = int(reward.amount or 0)
        await self.session.flush()
        await self.events.append(
            reward.workspace_id,
            _EVENT_FOR_STATUS[reward.status],
            challenge_id=reward.challenge_id,
            user_id=reward.user_id,
            actor_user_id=reward.actor_user_id,
            metadata=_reward_metadata(reward),
        )

    # ---------- follow-ups ----------

    async def retry(self, workspace_id: uuid.UUID, reward_id: uuid.UUID, actor_user_id: uuid.UUID | None = None) -> RewardIssuance:
        reward = await self.get(workspace_id, reward_id)
        if reward.status == RewardStatus.FAILED.value:
            return await self.issue(spec_from_record(reward, actor_user_id), retry=True)
        if (
            reward.status == RewardStatus.PENDING.value
            and reward.type != RewardType.POINTS.value
            and not reward.external_transaction_id
        ):
            # Same record, same provider idempotency key
            await self._fulfill_external(reward)
            await self._after_status_change(reward)
            return reward
        raise ValidationError(f"Reward is {reward.status} and cannot be retried")

    async def cancel(self, workspace_id: uuid.UUID, reward_id: uuid.UUID, actor_user_id: uuid.UUID | None = None) -> RewardIssuance:
        reward = await self.get(workspace_id, reward_id)
        if reward.status != RewardStatus.PENDING.value:
            raise ValidationError(f"Only PENDING rewards can be cancelled (reward is {reward.status})")
        reward.actor_user_id = actor_user_id or reward.actor_user_id
        self._mark(reward, RewardStatus.CANCELLED)
        await self._after_status_change(reward)
        return reward

    async def apply_provider_event(
        self, workspace_id: uuid.UUID, transaction_id: str, event_type: str, error: str | None = None
    ) -> RewardIssuance | None:
        """Webhook result for an earlier PENDING issuance. Settled records are left as they are."""
        reward = await self.session.scalar(
            select(RewardIssuance).where(
                RewardIssuance.workspace_id == workspace_id,
                RewardIssuance.external_transaction_id == transaction_id,
            )
        )
        if reward is None:
            log.warning("reward.webhook_unknown_transaction", transaction_id=transaction_id, event_type=event_type)
            return None
        outcome = event_type.rsplit(".", 1)[-1]
        if reward.status != RewardStatus.PENDING.value:
            log.info("reward.webhook_ignored", reward_id=str(reward.id), status=reward.status, event_type=event_type)
            return reward
        if outcome == "completed":
            self._mark(reward, RewardStatus.ISSUED)
        elif outcome == "failed":
            self._mark(reward, RewardStatus.FAILED, error=error or "reward provider reported failure")
        else:
            log.info("reward.webhook_progress", reward_id=str(reward.id), event_type=event_type)
            return reward
        await self._after_status_change(reward)
        return reward


def _reward_metadata(reward: RewardIssuance) -> dict[str, Any]:
    return {
        "rewardIssuanceId": str(reward.id),
        "submissionId": str(reward.submission_id) if reward.submission_id else None,
        "type": reward.type,
        "amount": str(reward.amount) if reward.amount is not None else None,
        "currency": reward.currency,
        "skuId": reward.sku_id,
        "status": reward.status,
        "error": reward.error,
    }
