"""
Submission lifecycle.

    PENDING ──manager──> MANAGER_APPROVED ──admin──> APPROVED | REJECTED
       │   └─manager──> NEEDS_REVISION ──participant resubmits──> PENDING
       └──────admin──────────────────────────────> APPROVED | REJECTED

APPROVED and REJECTED are terminal. Writes go through apply_transition,
which only succeeds if the row still holds the status the caller observed,
so two racing reviewers cannot both win.
"""
from __future__ import annotations
import enum
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from rewardflow.db import utcnow
from rewardflow.errors import AlreadyReviewed, ValidationError
from rewardflow.models.submission import Submission


class SubmissionStatus(str, enum.Enum):
    PENDING = "PENDING"
    MANAGER_APPROVED = "MANAGER_APPROVED"
    NEEDS_REVISION = "NEEDS_REVISION"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ReviewStage(str, enum.Enum):
    MANAGER = "manager"
    ADMIN = "admin"
    PARTICIPANT = "participant"


S = SubmissionStatus

# target -> stage -> allowed source states
TRANSITIONS: dict[SubmissionStatus, dict[ReviewStage, frozenset[SubmissionStatus]]] = {
    S.MANAGER_APPROVED: {ReviewStage.MANAGER: frozenset({S.PENDING})},
    S.NEEDS_REVISION: {ReviewStage.MANAGER: frozenset({S.PENDING})},
    S.APPROVED: {ReviewStage.ADMIN: frozenset({S.PENDING, S.MANAGER_APPROVED})},
    S.REJECTED: {ReviewStage.ADMIN: frozenset({S.PENDING, S.MANAGER_APPROVED})},
    S.PENDING: {ReviewStage.PARTICIPANT: frozenset({S.NEEDS_REVISION})},
}

TERMINAL = frozenset({S.APPROVED, S.REJECTED})


@dataclass(frozen=True)
class Transition:
    from_status: SubmissionStatus
    to_status: SubmissionStatus
    stage: ReviewStage

    @property
    def admin_override(self) -> bool:
        """An admin reversing a manager's prior approval."""
        return self.from_status is S.MANAGER_APPROVED and self.to_status is S.REJECTED

    @property
    def is_terminal(self) -> bool:
        return self.to_status in TERMINAL


def targets_for(stage: ReviewStage) -> frozenset[SubmissionStatus]:
    return frozenset(t for t, by_stage in TRANSITIONS.items() if stage in by_stage)


def reviewable_states(stage: ReviewStage) -> frozenset[SubmissionStatus]:
    out: set[SubmissionStatus] = set()
    for by_stage in TRANSITIONS.values():
        out |= by_stage.get(stage, frozenset())
    return frozenset(out)


def can_transition(current: SubmissionStatus | str, target: SubmissionStatus | str, stage: ReviewStage) -> bool:
    try:
        current, target = S(current), S(target)
    except ValueError:
        return False
    return current in TRANSITIONS.get(target, {}).get(stage, frozenset())


def validate_transition(current: SubmissionStatus | str, target: SubmissionStatus | str, stage: ReviewStage) -> Transition:
    """
    Raise ValidationError when the stage may never produce `target`,
    AlreadyReviewed when `current` is not a legal source for it.
    """
    try:
        target = S(target)
    except ValueError:
        raise ValidationError(f"Unknown submission status: {target}")
    allowed = TRANSITIONS.get(target, {}).get(stage)
    if allowed is None:
        raise ValidationError(f"A {stage.value} review cannot set status {target.value}")
    current = S(current)
    if current not in allowed:
        raise AlreadyReviewed(
            f"Submission is {current.value}; {target.value} requires one of "
            f"{sorted(s.value for s in allowed)}"
        )
    return Transition(from_status=current, to_status=target, stage=stage)


def _stamp(transition: Transition, actor_id: uuid.UUID, notes: str | None, now: datetime) -> dict[str, Any]:
    if transition.stage is ReviewStage.MANAGER:
        return {"manager_reviewed_at": now, "manager_reviewed_by": actor_id, "manager_notes": notes}
    if transition.stage is ReviewStage.ADMIN:
        return {"reviewed_at": now, "reviewed_by": actor_id, "review_notes": notes}
    return {"submitted_at": now}


async def apply_transition(
    session: AsyncSession,
    submission: Submission,
    transition: Transition,
    *,
    actor_id: uuid.UUID,
    notes: str | None = None,
    extra: dict[str, Any] | None = None,
) -> Submission:
    """
    Persist the transition with a conditional UPDATE on the observed status.
    Zero affected rows means someone else moved the submission first.
    """
    values = {"status": transition.to_status.value, **_stamp(transition, actor_id, notes, utcnow()), **(extra or {})}
    res = await session.execute(
        update(Submission)
        .where(Submission.id == submission.id, Submission.status == transition.from_status.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise AlreadyReviewed("Submission was reviewed concurrently")
    await session.refresh(submission)
    return submission
