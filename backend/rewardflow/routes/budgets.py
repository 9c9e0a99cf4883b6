from __future__ import annotations
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from uuid import UUID

from rewardflow.db import get_session
from rewardflow.auth_deps import get_workspace, require_admin
from rewardflow.errors import NotFound
from rewardflow.models.budget import ChallengePointsBudget, WorkspacePointsBudget
from rewardflow.models.challenge import Challenge
from rewardflow.models.user import Workspace, WorkspaceMembership
from rewardflow.schemas.budget import BudgetPublic, BudgetUpdate
from rewardflow.services.budget import BudgetLedger
from rewardflow.services.events import EventLogger, EventType

router = APIRouter(prefix="/workspaces/{slug}", tags=["budgets"])

def _pub(scope: str, scope_id: UUID, row: WorkspacePointsBudget | ChallengePointsBudget | None) -> BudgetPublic:
    if row is None:
        return BudgetPublic(scope=scope, scope_id=scope_id)
    return BudgetPublic(
        scope=scope,
        scope_id=scope_id,
        total_budget=row.total_budget,
        allocated=row.allocated,
        remaining=row.total_budget - row.allocated,
        updated_by=row.updated_by,
        updated_at=row.updated_at,
    )

async def _challenge_in(session: AsyncSession, ws: Workspace, challenge_id: UUID) -> Challenge:
    ch = await session.get(Challenge, challenge_id)
    if not ch or ch.workspace_id != ws.id:
        raise NotFound("Challenge not found")
    return ch

@router.get("/budget", response_model=BudgetPublic)
async def get_workspace_budget(
    ws: Workspace = Depends(get_workspace),
    _admin: WorkspaceMembership = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    return _pub("workspace", ws.id, await BudgetLedger(session).workspace_budget(ws.id))

@router.put("/budget", response_model=BudgetPublic)
async def set_workspace_budget(
    body: BudgetUpdate,
    ws: Workspace = Depends(get_workspace),
    admin: WorkspaceMembership = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    row = await BudgetLedger(session).set_workspace_budget(ws.id, body.total_budget, updated_by=admin.user_id)
    await EventLogger(session).append(
        ws.id, EventType.BUDGET_UPDATED,
        actor_user_id=admin.user_id,
        metadata={"scope": "workspace", "totalBudget": row.total_budget, "allocated": row.allocated},
    )
    await session.commit()
    return _pub("workspace", ws.id, row)

@router.get("/challenges/{challenge_id}/budget", response_model=BudgetPublic)
async def get_challenge_budget(
    challenge_id: UUID,
    ws: Workspace = Depends(get_workspace),
    _admin: WorkspaceMembership = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    ch = await _challenge_in(session, ws, challenge_id)
    return _pub("challenge", ch.id, await BudgetLedger(session).challenge_budget(ch.id))

@router.put("/challenges/{challenge_id}/budget", response_model=BudgetPublic)
async def set_challenge_budget(
    challenge_id: UUID,
    body: BudgetUpdate,
    ws: Workspace = Depends(get_workspace),
    admin: WorkspaceMembership = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    ch = await _challenge_in(session, ws, challenge_id)
    row = await BudgetLedger(session).set_challenge_budget(ch.id, ws.id, body.total_budget, updated_by=admin.user_id)
    await EventLogger(session).append(
        ws.id, EventType.BUDGET_UPDATED,
        challenge_id=ch.id,
        actor_user_id=admin.user_id,
        metadata={"scope": "challenge", "totalBudget": row.total_budget, "allocated": row.allocated},
    )
    await session.commit()
    return _pub("challenge", ch.id, row)
