from __future__ import annotations
from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from uuid import UUID
import structlog

from rewardflow.db import get_session
from rewardflow.auth_deps import get_membership, get_workspace, require_admin
from rewardflow.errors import NotFound, NotAuthorized, ValidationError
from rewardflow.models.challenge import Challenge, ChallengeAssignment
from rewardflow.models.ledger import PointsBalance
from rewardflow.models.user import User, Workspace, WorkspaceMembership
from rewardflow.schemas.challenge import EventPublic, ManagerPublic, PointsPublic
from rewardflow.services.events import EventLogger, EventType
from rewardflow.services.permissions import PermissionResolver

router = APIRouter(prefix="/workspaces/{slug}", tags=["challenges"])
log = structlog.get_logger()

async def _challenge_in(session: AsyncSession, ws: Workspace, challenge_id: UUID) -> Challenge:
    ch = await session.get(Challenge, challenge_id)
    if not ch or ch.workspace_id != ws.id:
        raise NotFound("Challenge not found")
    return ch

async def _managers(session: AsyncSession, ch: Challenge) -> list[ManagerPublic]:
    rows = (await session.execute(
        select(ChallengeAssignment, User, WorkspaceMembership)
        .join(User, User.id == ChallengeAssignment.manager_id)
        .join(
            WorkspaceMembership,
            (WorkspaceMembership.user_id == ChallengeAssignment.manager_id)
            & (WorkspaceMembership.workspace_id == ChallengeAssignment.workspace_id),
        )
        .where(ChallengeAssignment.challenge_id == ch.id)
        .order_by(ChallengeAssignment.assigned_at.asc())
    )).all()
    return [
        ManagerPublic(user_id=u.id, email=u.email, display_name=u.display_name, role=m.role, assigned_at=a.assigned_at)
        for a, u, m in rows
    ]

@router.get("/challenges/{challenge_id}/managers", response_model=list[ManagerPublic])
async def list_managers(
    challenge_id: UUID,
    ws: Workspace = Depends(get_workspace),
    _admin: WorkspaceMembership = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    ch = await _challenge_in(session, ws, challenge_id)
    return await _managers(session, ch)

@router.put("/challenges/{challenge_id}/managers/{user_id}", response_model=list[ManagerPublic])
async def assign_manager(
    challenge_id: UUID,
    user_id: UUID,
    ws: Workspace = Depends(get_workspace),
    admin: WorkspaceMembership = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    ch = await _challenge_in(session, ws, challenge_id)
    m = await session.scalar(
        select(WorkspaceMembership).where(WorkspaceMembership.user_id == user_id, WorkspaceMembership.workspace_id == ws.id)
    )
    if not m:
        raise NotFound("User is not a member of this workspace")
    if m.role not in ("MANAGER", "ADMIN"):
        raise ValidationError("Only managers and admins can be assigned to a challenge")

    existing = await session.scalar(
        select(ChallengeAssignment).where(ChallengeAssignment.manager_id == user_id, ChallengeAssignment.challenge_id == ch.id)
    )
    if existing is None:
        try:
            async with session.begin_nested():
                session.add(ChallengeAssignment(manager_id=user_id, challenge_id=ch.id, workspace_id=ws.id))
        except IntegrityError:
            # Concurrent assign of the same pair; the row exists either way
            log.info("assignment.duplicate", challenge_id=str(ch.id), manager_id=str(user_id))
        else:
            await EventLogger(session).append(
                ws.id, EventType.MANAGER_ASSIGNED,
                challenge_id=ch.id, user_id=user_id, actor_user_id=admin.user_id,
                metadata={"managerId": str(user_id)},
            )
    await session.commit()
    return await _managers(session, ch)

@router.delete("/challenges/{challenge_id}/managers/{user_id}", status_code=204)
async def unassign_manager(
    challenge_id: UUID,
    user_id: UUID,
    ws: Workspace = Depends(get_workspace),
    admin: WorkspaceMembership = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    ch = await _challenge_in(session, ws, challenge_id)
    a = await session.scalar(
        select(ChallengeAssignment).where(ChallengeAssignment.manager_id == user_id, ChallengeAssignment.challenge_id == ch.id)
    )
    if not a:
        raise NotFound("Assignment not found")
    await session.delete(a)
    await EventLogger(session).append(
        ws.id, EventType.MANAGER_UNASSIGNED,
        challenge_id=ch.id, user_id=user_id, actor_user_id=admin.user_id,
        metadata={"managerId": str(user_id)},
    )
    await session.commit()
    return Response(status_code=204)

@router.get("/challenges/{challenge_id}/events", response_model=list[EventPublic])
async def challenge_events(
    challenge_id: UUID,
    ws: Workspace = Depends(get_workspace),
    m: WorkspaceMembership = Depends(get_membership),
    session: AsyncSession = Depends(get_session),
    limit: int = Query(default=100, ge=1, le=500),
):
    ch = await _challenge_in(session, ws, challenge_id)
    ctx = await PermissionResolver(session).resolve(m.user_id, ch.id, ws.id)
    if not ctx.can_review:
        raise NotAuthorized("Only admins and assigned managers can read the challenge timeline")
    rows = await EventLogger(session).for_challenge(ch.id, limit=limit)
    return [
        EventPublic(
            id=e.id, type=e.type, challenge_id=e.challenge_id, user_id=e.user_id,
            actor_user_id=e.actor_user_id, metadata=e.metadata_json or {}, created_at=e.created_at,
        )
        for e in rows
    ]

@router.get("/points", response_model=PointsPublic)
async def my_points(
    ws: Workspace = Depends(get_workspace),
    m: WorkspaceMembership = Depends(get_membership),
    session: AsyncSession = Depends(get_session),
):
    bal = await session.scalar(
        select(PointsBalance).where(PointsBalance.user_id == m.user_id, PointsBalance.workspace_id == ws.id)
    )
    if not bal:
        return PointsPublic(workspace_id=ws.id, user_id=m.user_id)
    return PointsPublic(
        workspace_id=ws.id, user_id=m.user_id,
        total_points=bal.total_points, available_points=bal.available_points,
    )
