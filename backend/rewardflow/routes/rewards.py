from __future__ import annotations
from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Literal
from uuid import UUID
from rq import Queue
import structlog

from rewardflow.config import settings
from rewardflow.db import get_session
from rewardflow.auth_deps import get_issuer, get_workspace, require_admin
from rewardflow.errors import DomainError, NotFound, ValidationError
from rewardflow.models.challenge import Challenge
from rewardflow.models.user import Workspace, WorkspaceMembership
from rewardflow.schemas.reward import ManualRewardRequest, RetryRequest, RetryResult, RewardPublic
from rewardflow.services.reward_spec import RewardSpec, terms_from_request
from rewardflow.services.rewards import RewardIssuer
from rewardflow.jobs.reconcile_rewards import reconcile_rewards
from rewardflow.queue import get_queue

router = APIRouter(prefix="/workspaces/{slug}/rewards", tags=["rewards"])
log = structlog.get_logger()

RewardStatusFilter = Literal["PENDING", "ISSUED", "FAILED", "CANCELLED"]
RewardTypeFilter = Literal["points", "sku", "monetary"]

@router.get("", response_model=list[RewardPublic])
async def list_rewards(
    ws: Workspace = Depends(get_workspace),
    _admin: WorkspaceMembership = Depends(require_admin),
    issuer: RewardIssuer = Depends(get_issuer),
    status: RewardStatusFilter | None = Query(default=None),
    type: RewardTypeFilter | None = Query(default=None),
    challenge_id: UUID | None = Query(default=None, alias="challengeId"),
    user_id: UUID | None = Query(default=None, alias="userId"),
    limit: int = Query(default=100, ge=1, le=500),
):
    rows = await issuer.list(ws.id, status=status, type=type, challenge_id=challenge_id, user_id=user_id, limit=limit)
    return [RewardPublic.model_validate(r) for r in rows]

@router.post("/issue", response_model=RewardPublic, status_code=201)
async def issue_manual_reward(
    body: ManualRewardRequest,
    ws: Workspace = Depends(get_workspace),
    admin: WorkspaceMembership = Depends(require_admin),
    issuer: RewardIssuer = Depends(get_issuer),
    session: AsyncSession = Depends(get_session),
):
    """Submission-less reward. Points still draw on the budget; failures come back as a FAILED record."""
    recipient = await session.scalar(
        select(WorkspaceMembership).where(WorkspaceMembership.user_id == body.user_id, WorkspaceMembership.workspace_id == ws.id)
    )
    if not recipient:
        raise NotFound("User is not a member of this workspace")
    if body.challenge_id is not None:
        ch = await session.get(Challenge, body.challenge_id)
        if not ch or ch.workspace_id != ws.id:
            raise NotFound("Challenge not found")
    terms = terms_from_request(body.model_dump(by_alias=True, include={"type", "amount", "currency", "sku_id", "provider"}))
    if terms is None:
        raise ValidationError("Reward type is required")
    spec = RewardSpec(
        workspace_id=ws.id,
        user_id=body.user_id,
        challenge_id=body.challenge_id,
        terms=terms,
        actor_user_id=admin.user_id,
    )
    reward = await issuer.issue(spec)
    await session.commit()
    return RewardPublic.model_validate(reward)

@router.post("/retry", response_model=list[RetryResult])
async def retry_rewards(
    body: RetryRequest,
    ws: Workspace = Depends(get_workspace),
    admin: WorkspaceMembership = Depends(require_admin),
    issuer: RewardIssuer = Depends(get_issuer),
    session: AsyncSession = Depends(get_session),
):
    results: list[RetryResult] = []
    for reward_id in dict.fromkeys(body.reward_ids):
        try:
            async with session.begin_nested():
                reward = await issuer.retry(ws.id, reward_id, admin.user_id)
        except DomainError as e:
            results.append(RetryResult(reward_id=reward_id, ok=False, error=e.message))
            continue
        results.append(RetryResult(reward_id=reward_id, ok=True, reward=RewardPublic.model_validate(reward)))
    await session.commit()
    log.info("reward.retry_batch", requested=len(body.reward_ids), ok=sum(1 for r in results if r.ok))
    return results

@router.post("/{reward_id}/cancel", response_model=RewardPublic)
async def cancel_reward(
    reward_id: UUID,
    ws: Workspace = Depends(get_workspace),
    admin: WorkspaceMembership = Depends(require_admin),
    issuer: RewardIssuer = Depends(get_issuer),
    session: AsyncSession = Depends(get_session),
):
    reward = await issuer.cancel(ws.id, reward_id, admin.user_id)
    await session.commit()
    return RewardPublic.model_validate(reward)

@router.post("/reconcile", status_code=202)
async def reconcile(
    ws: Workspace = Depends(get_workspace),
    admin: WorkspaceMembership = Depends(require_admin),
    queue: Queue = Depends(get_queue),
    stale_minutes: int = Query(default=settings.reconcile_stale_minutes, ge=0, le=7 * 24 * 60, alias="staleMinutes"),
):
    """Queue a re-send of sku / monetary rewards the provider never acknowledged."""
    job = queue.enqueue(reconcile_rewards, str(ws.id), stale_minutes)
    log.info("reward.reconcile_enqueued", workspace_id=str(ws.id), job_id=job.id, actor=str(admin.user_id))
    return {"jobId": job.id, "staleMinutes": stale_minutes}
