from __future__ import annotations
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Literal
from uuid import UUID

from rewardflow.db import get_session
from rewardflow.auth_deps import get_current_user, get_workspace, get_orchestrator
from rewardflow.models.submission import Submission
from rewardflow.models.user import User, Workspace
from rewardflow.schemas.review import ReviewResult
from rewardflow.schemas.submission import SubmissionCreate, SubmissionPublic
from rewardflow.services.review import ReviewOrchestrator, SubmissionPayload

router = APIRouter(prefix="/workspaces/{slug}", tags=["submissions"])

StatusFilter = Literal["PENDING", "MANAGER_APPROVED", "NEEDS_REVISION", "APPROVED", "REJECTED"]

def _pub(s: Submission) -> SubmissionPublic:
    return SubmissionPublic.model_validate(s)

def _payload(body: SubmissionCreate) -> SubmissionPayload:
    return SubmissionPayload(text_content=body.text_content, file_urls=list(body.file_urls), link_url=body.link_url)

@router.post("/activities/{activity_id}/submissions", response_model=SubmissionPublic, status_code=201)
async def create_submission(
    activity_id: UUID,
    body: SubmissionCreate,
    ws: Workspace = Depends(get_workspace),
    user: User = Depends(get_current_user),
    orchestrator: ReviewOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_session),
):
    sub = await orchestrator.create_submission(activity_id, _payload(body), ws.id, user.id)
    await session.commit()
    return _pub(sub)

@router.get("/submissions", response_model=list[SubmissionPublic])
async def list_submissions(
    ws: Workspace = Depends(get_workspace),
    user: User = Depends(get_current_user),
    orchestrator: ReviewOrchestrator = Depends(get_orchestrator),
    status: StatusFilter | None = Query(default=None),
    challenge_id: UUID | None = Query(default=None, alias="challengeId"),
    limit: int = Query(default=50, ge=1, le=200),
):
    rows = await orchestrator.list_submissions(ws.id, user.id, status=status, challenge_id=challenge_id, limit=limit)
    return [_pub(s) for s in rows]

@router.get("/submissions/{submission_id}", response_model=SubmissionPublic)
async def get_submission(
    submission_id: UUID,
    ws: Workspace = Depends(get_workspace),
    user: User = Depends(get_current_user),
    orchestrator: ReviewOrchestrator = Depends(get_orchestrator),
):
    return _pub(await orchestrator.get_submission(ws.id, user.id, submission_id))

@router.post("/submissions/{submission_id}/resubmit", response_model=ReviewResult)
async def resubmit(
    submission_id: UUID,
    body: SubmissionCreate,
    ws: Workspace = Depends(get_workspace),
    user: User = Depends(get_current_user),
    orchestrator: ReviewOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_session),
):
    outcome = await orchestrator.resubmit(submission_id, _payload(body), ws.id, user.id)
    await session.commit()
    return ReviewResult(**_pub(outcome.submission).model_dump())
