"""
Who may move a submission.

resolve() reads membership / assignment / enrollment once per request into a
PermissionContext; decide_review() is a pure function over that context so
every role is handled in one place.
"""
from __future__ import annotations
import enum
import uuid
from dataclasses import dataclass, field
from typing import Union
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rewardflow.errors import NotAuthorized, NotAssignedToChallenge, SelfApprovalForbidden
from rewardflow.models.challenge import ChallengeAssignment, Enrollment
from rewardflow.models.user import WorkspaceMembership
from rewardflow.services.state_machine import ReviewStage


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    PARTICIPANT = "PARTICIPANT"


class DenialReason(str, enum.Enum):
    SELF_APPROVAL = "self_approval"
    ROLE = "role"
    NOT_ASSIGNED = "not_assigned"


@dataclass(frozen=True)
class Allowed:
    pass


@dataclass(frozen=True)
class Denied:
    reason: DenialReason


Decision = Union[Allowed, Denied]


@dataclass(frozen=True)
class PermissionContext:
    user_id: uuid.UUID
    workspace_id: uuid.UUID
    role: Role
    challenge_id: uuid.UUID | None = None
    assigned_challenge_ids: frozenset[uuid.UUID] = field(default_factory=frozenset)
    is_enrolled: bool = False

    @property
    def is_assigned(self) -> bool:
        return self.challenge_id is not None and self.challenge_id in self.assigned_challenge_ids

    @property
    def can_review(self) -> bool:
        return self.role is Role.ADMIN or (self.role is Role.MANAGER and self.is_assigned)


def decide_review(ctx: PermissionContext, stage: ReviewStage, submission_owner_id: uuid.UUID, acting_user_id: uuid.UUID) -> Decision:
    if submission_owner_id == acting_user_id:
        return Denied(DenialReason.SELF_APPROVAL)
    if ctx.role is Role.ADMIN:
        return Allowed()
    if ctx.role is Role.MANAGER:
        if stage is not ReviewStage.MANAGER:
            return Denied(DenialReason.ROLE)
        return Allowed() if ctx.is_assigned else Denied(DenialReason.NOT_ASSIGNED)
    if ctx.role is Role.PARTICIPANT:
        return Denied(DenialReason.ROLE)
    raise AssertionError(f"unhandled role {ctx.role!r}")


def can_approve(ctx: PermissionContext, submission_owner_id: uuid.UUID, acting_user_id: uuid.UUID) -> bool:
    """False for the submission's owner whatever their role."""
    stage = ReviewStage.ADMIN if ctx.role is Role.ADMIN else ReviewStage.MANAGER
    return isinstance(decide_review(ctx, stage, submission_owner_id, acting_user_id), Allowed)


def ensure_allowed(decision: Decision) -> None:
    if isinstance(decision, Allowed):
        return
    if decision.reason is DenialReason.SELF_APPROVAL:
        raise SelfApprovalForbidden()
    if decision.reason is DenialReason.NOT_ASSIGNED:
        raise NotAssignedToChallenge()
    if decision.reason is DenialReason.ROLE:
        raise NotAuthorized("Your workspace role cannot perform this review")
    raise AssertionError(f"unhandled denial {decision.reason!r}")


class PermissionResolver:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def membership(self, user_id: uuid.UUID, workspace_id: uuid.UUID) -> WorkspaceMembership:
        m = await self.session.scalar(
            select(WorkspaceMembership).where(
                WorkspaceMembership.user_id == user_id,
                WorkspaceMembership.workspace_id == workspace_id,
            )
        )
        if not m:
            raise NotAuthorized("Not a member of this workspace")
        return m

    async def assigned_challenge_ids(self, user_id: uuid.UUID, workspace_id: uuid.UUID) -> frozenset[uuid.UUID]:
        rows = (await self.session.execute(
            select(ChallengeAssignment.challenge_id).where(
                ChallengeAssignment.manager_id == user_id,
                ChallengeAssignment.workspace_id == workspace_id,
            )
        )).scalars().all()
        return frozenset(rows)

    async def resolve(self, user_id: uuid.UUID, challenge_id: uuid.UUID | None, workspace_id: uuid.UUID) -> PermissionContext:
        m = await self.membership(user_id, workspace_id)
        role = Role(m.role)
        assigned: frozenset[uuid.UUID] = frozenset()
        if role is Role.MANAGER:
            assigned = await self.assigned_challenge_ids(user_id, workspace_id)
        enrolled = False
        if challenge_id is not None:
            enrolled = bool(await self.session.scalar(
                select(Enrollment.id).where(Enrollment.user_id == user_id, Enrollment.challenge_id == challenge_id)
            ))
        return PermissionContext(
            user_id=user_id,
            workspace_id=workspace_id,
            role=role,
            challenge_id=challenge_id,
            assigned_challenge_ids=assigned,
            is_enrolled=enrolled,
        )
