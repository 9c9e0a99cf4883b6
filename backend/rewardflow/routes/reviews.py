from __future__ import annotations
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from uuid import UUID

from rewardflow.db import get_session
from rewardflow.auth_deps import get_current_user, get_workspace, get_orchestrator
from rewardflow.models.user import User, Workspace
from rewardflow.schemas.review import ManagerReviewRequest, ReviewRequest, ReviewResult
from rewardflow.schemas.reward import RewardPublic
from rewardflow.schemas.submission import SubmissionPublic
from rewardflow.services.review import AdminDecision, ManagerDecision, ReviewOrchestrator, ReviewOutcome

router = APIRouter(prefix="/workspaces/{slug}", tags=["reviews"])

def _result(outcome: ReviewOutcome) -> ReviewResult:
    base = SubmissionPublic.model_validate(outcome.submission).model_dump()
    return ReviewResult(
        **base,
        admin_override=outcome.admin_override,
        reward=RewardPublic.model_validate(outcome.reward) if outcome.reward else None,
    )

@router.post("/submissions/{submission_id}/review", response_model=ReviewResult)
async def review_submission(
    submission_id: UUID,
    body: ReviewRequest,
    ws: Workspace = Depends(get_workspace),
    user: User = Depends(get_current_user),
    orchestrator: ReviewOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_session),
):
    """
    Final admin review. The response is the updated submission even when its
    reward failed to issue; `reward.status` / `reward.error` tell the caller.
    """
    decision = AdminDecision(
        status=body.status,
        review_notes=body.review_notes,
        points_awarded=body.points_awarded,
        reward=body.reward.model_dump(by_alias=True) if body.reward else None,
    )
    outcome = await orchestrator.review_submission(submission_id, decision, ws.id, user.id)
    await session.commit()
    return _result(outcome)

@router.post("/submissions/{submission_id}/manager-review", response_model=ReviewResult)
async def manager_review(
    submission_id: UUID,
    body: ManagerReviewRequest,
    ws: Workspace = Depends(get_workspace),
    user: User = Depends(get_current_user),
    orchestrator: ReviewOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_session),
):
    outcome = await orchestrator.manager_review(submission_id, ManagerDecision(action=body.action, notes=body.notes), ws.id, user.id)
    await session.commit()
    return _result(outcome)

@router.get("/manager/queue", response_model=list[SubmissionPublic])
async def manager_queue(
    ws: Workspace = Depends(get_workspace),
    user: User = Depends(get_current_user),
    orchestrator: ReviewOrchestrator = Depends(get_orchestrator),
    limit: int = Query(default=50, ge=1, le=200),
):
    rows = await orchestrator.manager_queue(ws.id, user.id, limit=limit)
    return [SubmissionPublic.model_validate(s) for s in rows]
