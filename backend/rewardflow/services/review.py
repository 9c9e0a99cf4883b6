"""
Review orchestration: the one entry point the review endpoints call.

    load (workspace scoped) -> permission context -> state guard
      -> self / assignment decision -> conditional status write
      -> PostApprovalEffect (reward, best effort) -> event log

Everything before the status write aborts without side effects. The reward
step runs after the approval is applied and never undoes it.
"""
from __future__ import annotations
import uuid
from dataclasses import dataclass, field, replace
from typing import Any
from sqlalchemy import Select, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from rewardflow.config import settings
from rewardflow.errors import DomainError, NotAuthorized, NotFound, ValidationError
from rewardflow.models.challenge import Activity, Challenge, Enrollment
from rewardflow.models.reward import RewardIssuance
from rewardflow.models.submission import Submission
from rewardflow.services.budget import BudgetLedger
from rewardflow.services.events import EventLogger, EventType
from rewardflow.services.permissions import PermissionResolver, Role, decide_review, ensure_allowed
from rewardflow.services.reward_provider import RewardProvider
from rewardflow.services.reward_spec import (
    RewardSpec,
    RewardTerms,
    bind,
    resolve_reward_terms,
    terms_from_challenge,
    terms_from_request,
)
from rewardflow.services.rewards import RewardIssuer, RewardStatus
from rewardflow.services.state_machine import (
    ReviewStage,
    SubmissionStatus,
    Transition,
    apply_transition,
    validate_transition,
)

log = structlog.get_logger()

_EVENT_FOR_TARGET = {
    SubmissionStatus.MANAGER_APPROVED: EventType.SUBMISSION_MANAGER_APPROVED,
    SubmissionStatus.NEEDS_REVISION: EventType.SUBMISSION_NEEDS_REVISION,
    SubmissionStatus.APPROVED: EventType.SUBMISSION_APPROVED,
    SubmissionStatus.REJECTED: EventType.SUBMISSION_REJECTED,
    SubmissionStatus.PENDING: EventType.SUBMISSION_RESUBMITTED,
}


@dataclass(frozen=True)
class AdminDecision:
    status: str | None
    review_notes: str | None = None
    points_awarded: int | None = None
    reward: dict[str, Any] | None = None


@dataclass(frozen=True)
class ManagerDecision:
    action: str
    notes: str | None = None

    def validate(self) -> SubmissionStatus:
        if self.action == "approve":
            return SubmissionStatus.MANAGER_APPROVED
        if self.action == "reject":
            if not (self.notes or "").strip():
                raise ValidationError("Notes are required when requesting revisions")
            return SubmissionStatus.NEEDS_REVISION
        raise ValidationError(f"Unknown manager action: {self.action}")


@dataclass(frozen=True)
class SubmissionPayload:
    text_content: str | None = None
    file_urls: list[str] = field(default_factory=list)
    link_url: str | None = None

    def validate(self) -> "SubmissionPayload":
        if not (self.text_content or "").strip() and not self.file_urls and not (self.link_url or "").strip():
            raise ValidationError("A submission needs text, files or a link")
        return self


@dataclass
class ReviewOutcome:
    submission: Submission
    transition: Transition
    reward: RewardIssuance | None = None

    @property
    def admin_override(self) -> bool:
        return self.transition.admin_override


class PostApprovalEffect:
    """
    Reward issuance that follows an applied approval.

    Budget and provider failures already come back as a FAILED RewardIssuance.
    Anything else raised while issuing is rolled back to a savepoint, logged,
    and recorded as a FAILED RewardIssuance for the submission, so the
    approval stays in place and the reward can be retried through
    /rewards/retry.
    """

    def __init__(self, issuer: RewardIssuer):
        self.issuer = issuer

    async def run(self, spec: RewardSpec) -> RewardIssuance | None:
        session = self.issuer.session
        fields = {"submission_id": str(spec.submission_id), "reward_type": spec.type.value}
        try:
            async with session.begin_nested():
                return await self.issuer.issue(spec)
        except DomainError as e:
            log.warning("review.post_approval_failed", code=e.code, error=e.message, **fields)
            error = e.message
        except Exception as e:
            log.error("review.post_approval_failed", code="internal", error=repr(e), exc_info=True, **fields)
            error = f"reward issuance failed: {type(e).__name__}"

        try:
            async with session.begin_nested():
                return await self.issuer.record_failure(spec, error)
        except SQLAlchemyError:
            log.error("review.post_approval_unrecorded", exc_info=True, **fields)
            return None


class ReviewOrchestrator:
    def __init__(
        self,
        session: AsyncSession,
        resolver: PermissionResolver,
        issuer: RewardIssuer,
        events: EventLogger,
        default_currency: str | None = None,
    ):
        self.session = session
        self.resolver = resolver
        self.issuer = issuer
        self.events = events
        self.post_approval = PostApprovalEffect(issuer)
        self.default_currency = default_currency or settings.default_reward_currency

    @classmethod
    def for_session(cls, session: AsyncSession, provider: RewardProvider) -> "ReviewOrchestrator":
        events = EventLogger(session)
        issuer = RewardIssuer(session, provider, ledger=BudgetLedger(session), events=events)
        return cls(session, PermissionResolver(session), issuer, events)

    # ---------- loading / visibility ----------

    async def _load(self, submission_id: uuid.UUID, workspace_id: uuid.UUID) -> tuple[Submission, Activity, Challenge]:
        row = (await self.session.execute(
            select(Submission, Activity, Challenge)
            .join(Activity, Submission.activity_id == Activity.id)
            .join(Challenge, Activity.challenge_id == Challenge.id)
            .where(Submission.id == submission_id, Challenge.workspace_id == workspace_id)
        )).first()
        if not row:
            raise NotFound("Submission not found")
        return row[0], row[1], row[2]

    async def _visible(self, workspace_id: uuid.UUID, user_id: uuid.UUID) -> tuple[Role, Select]:
        m = await self.resolver.membership(user_id, workspace_id)
        role = Role(m.role)
        q = (
            select(Submission)
            .join(Activity, Submission.activity_id == Activity.id)
            .join(Challenge, Activity.challenge_id == Challenge.id)
            .where(Challenge.workspace_id == workspace_id)
        )
        if role is Role.MANAGER:
            assigned = await self.resolver.assigned_challenge_ids(user_id, workspace_id)
            q = q.where(Challenge.id.in_(list(assigned)) | (Submission.user_id == user_id))
        elif role is Role.PARTICIPANT:
            q = q.where(Submission.user_id == user_id)
        return role, q

    async def list_submissions(
        self,
        workspace_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        status: str | None = None,
        challenge_id: uuid.UUID | None = None,
        limit: int = 100,
    ) -> list[Submission]:
        _, q = await self._visible(workspace_id, user_id)
        if status:
            q = q.where(Submission.status == status)
        if challenge_id:
            q = q.where(Challenge.id == challenge_id)
        q = q.order_by(Submission.submitted_at.desc()).limit(limit)
        return list((await self.session.execute(q)).scalars().all())

    async def manager_queue(self, workspace_id: uuid.UUID, user_id: uuid.UUID, limit: int = 100) -> list[Submission]:
        """PENDING work the caller can act on. Own submissions are never in the queue."""
        role, q = await self._visible(workspace_id, user_id)
        if role is Role.PARTICIPANT:
            raise NotAuthorized("Only managers and admins have a review queue")
        q = (
            q.where(Submission.status == SubmissionStatus.PENDING.value, Submission.user_id != user_id)
            .order_by(Submission.submitted_at.asc())
            .limit(limit)
        )
        return list((await self.session.execute(q)).scalars().all())

    async def get_submission(self, workspace_id: uuid.UUID, user_id: uuid.UUID, submission_id: uuid.UUID) -> Submission:
        _, q = await self._visible(workspace_id, user_id)
        sub = await self.session.scalar(q.where(Submission.id == submission_id))
        if not sub:
            raise NotFound("Submission not found")
        return sub

    # ---------- participant side ----------

    async def create_submission(
        self, activity_id: uuid.UUID, payload: SubmissionPayload, workspace_id: uuid.UUID, user_id: uuid.UUID
    ) -> Submission:
        await self.resolver.membership(user_id, workspace_id)
        row = (await self.session.execute(
            select(Activity, Challenge)
            .join(Challenge, Activity.challenge_id == Challenge.id)
            .where(Activity.id == activity_id, Challenge.workspace_id == workspace_id)
        )).first()
        if not row:
            raise NotFound("Activity not found")
        activity, challenge = row[0], row[1]
        enrollment = await self.session.scalar(
            select(Enrollment).where(Enrollment.user_id == user_id, Enrollment.challenge_id == challenge.id)
        )
        if not enrollment:
            raise NotAuthorized("You are not enrolled in this challenge")
        payload.validate()

        sub = Submission(
            activity_id=activity.id,
            user_id=user_id,
            enrollment_id=enrollment.id,
            status=SubmissionStatus.PENDING.value,
            text_content=payload.text_content,
            file_urls=list(payload.file_urls),
            link_url=payload.link_url,
        )
        self.session.add(sub)
        await self.session.flush()
        log.info("submission.created", submission_id=str(sub.id), activity_id=str(activity.id))
        await self.events.append(
            workspace_id,
            EventType.SUBMISSION_CREATED,
            challenge_id=challenge.id,
            user_id=user_id,
            actor_user_id=user_id,
            metadata={"submissionId": str(sub.id), "activityId": str(activity.id)},
        )
        return sub

    async def resubmit(
        self, submission_id: uuid.UUID, payload: SubmissionPayload, workspace_id: uuid.UUID, user_id: uuid.UUID
    ) -> ReviewOutcome:
        await self.resolver.membership(user_id, workspace_id)
        sub, _, challenge = await self._load(submission_id, workspace_id)
        if sub.user_id != user_id:
            raise NotAuthorized("Only the author can resubmit")
        transition = validate_transition(sub.status, SubmissionStatus.PENDING, ReviewStage.PARTICIPANT)
        payload.validate()
        await apply_transition(
            self.session, sub, transition,
            actor_id=user_id,
            extra={"text_content": payload.text_content, "file_urls": list(payload.file_urls), "link_url": payload.link_url},
        )
        await self._record(workspace_id, challenge, sub, transition, user_id)
        return ReviewOutcome(submission=sub, transition=transition)

    # ---------- reviews ----------

    def resolve_terms(self, decision: AdminDecision, challenge: Challenge, activity: Activity) -> RewardTerms | None:
        explicit = terms_from_request(decision.reward)
        default = terms_from_challenge(challenge.reward_type, challenge.reward_config, activity.points_value, self.default_currency)
        return resolve_reward_terms(explicit, decision.points_awarded, default)

    async def review_submission(
        self, submission_id: uuid.UUID, decision: AdminDecision, workspace_id: uuid.UUID, acting_user_id: uuid.UUID
    ) -> ReviewOutcome:
        """Final admin review: PENDING | MANAGER_APPROVED -> APPROVED | REJECTED."""
        if not decision.status:
            raise ValidationError("status is required")
        # Membership first: non-members learn nothing about which submissions exist
        ctx = await self.resolver.resolve(acting_user_id, None, workspace_id)
        sub, activity, challenge = await self._load(submission_id, workspace_id)
        ctx = replace(ctx, challenge_id=challenge.id)
        if ctx.role is not Role.ADMIN and sub.user_id != acting_user_id:
            raise NotAuthorized("Only workspace admins can finalize a review")

        transition = validate_transition(sub.status, decision.status, ReviewStage.ADMIN)
        ensure_allowed(decide_review(ctx, ReviewStage.ADMIN, sub.user_id, acting_user_id))

        terms = None
        if transition.to_status is SubmissionStatus.APPROVED:
            # Bad explicit or legacy reward terms fail here, before the status write
            terms = self.resolve_terms(decision, challenge, activity)

        await apply_transition(self.session, sub, transition, actor_id=acting_user_id, notes=decision.review_notes)

        reward = None
        if terms is not None:
            spec = bind(
                terms,
                workspace_id=workspace_id,
                user_id=sub.user_id,
                challenge_id=challenge.id,
                submission_id=sub.id,
                actor_user_id=acting_user_id,
            )
            reward = await self.post_approval.run(spec)
            if reward is None or reward.status == "FAILED":
                # A rolled-back savepoint expires what it touched
                await self.session.refresh(sub)

        await self._record(workspace_id, challenge, sub, transition, acting_user_id, notes=decision.review_notes, reward=reward)
        return ReviewOutcome(submission=sub, transition=transition, reward=reward)

    async def manager_review(
        self, submission_id: uuid.UUID, decision: ManagerDecision, workspace_id: uuid.UUID, acting_user_id: uuid.UUID
    ) -> ReviewOutcome:
        """Manager pre-review: PENDING -> MANAGER_APPROVED | NEEDS_REVISION."""
        target = decision.validate()
        ctx = await self.resolver.resolve(acting_user_id, None, workspace_id)
        sub, _, challenge = await self._load(submission_id, workspace_id)
        ctx = replace(ctx, challenge_id=challenge.id)
        if ctx.role is Role.PARTICIPANT and sub.user_id != acting_user_id:
            raise NotAuthorized("Only managers and admins can review submissions")

        transition = validate_transition(sub.status, target, ReviewStage.MANAGER)
        ensure_allowed(decide_review(ctx, ReviewStage.MANAGER, sub.user_id, acting_user_id))

        await apply_transition(self.session, sub, transition, actor_id=acting_user_id, notes=decision.notes)
        await self._record(workspace_id, challenge, sub, transition, acting_user_id, notes=decision.notes)
        return ReviewOutcome(submission=sub, transition=transition)

    async def _record(
        self,
        workspace_id: uuid.UUID,
        challenge: Challenge,
        sub: Submission,
        transition: Transition,
        actor_id: uuid.UUID,
        *,
        notes: str | None = None,
        reward: RewardIssuance | None = None,
    ) -> None:
        issued = reward is not None and reward.status == RewardStatus.ISSUED.value
        metadata: dict[str, Any] = {
            "submissionId": str(sub.id),
            "fromStatus": transition.from_status.value,
            "toStatus": transition.to_status.value,
            "stage": transition.stage.value,
            "notes": notes,
        }
        if transition.stage is ReviewStage.ADMIN:
            metadata["adminOverride"] = transition.admin_override
            metadata["rewardAmount"] = str(reward.amount) if issued and reward.amount is not None else "0"
            metadata["rewardType"] = reward.type if reward else None
            metadata["rewardStatus"] = reward.status if reward else None
            metadata["rewardIssuanceId"] = str(reward.id) if reward else None
        log.info(
            "review.applied",
            submission_id=str(sub.id),
            from_status=transition.from_status.value,
            to_status=transition.to_status.value,
            stage=transition.stage.value,
            admin_override=transition.admin_override,
            reward_status=reward.status if reward else None,
        )
        await self.events.append(
            workspace_id,
            _EVENT_FOR_TARGET[transition.to_status],
            challenge_id=challenge.id,
            user_id=sub.user_id,
            actor_user_id=actor_id,
            metadata=metadata,
        )
