from __future__ import annotations
import uuid
from fastapi import Depends, HTTPException, Path, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from rewardflow.db import get_session
from rewardflow.errors import NotAuthorized, NotFound
from rewardflow.security import decode_token
from rewardflow.models.user import User, Workspace, WorkspaceMembership
from rewardflow.services.reward_provider import RewardProvider
from rewardflow.services.review import ReviewOrchestrator
from rewardflow.services.rewards import RewardIssuer

security = HTTPBearer()

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    session: AsyncSession = Depends(get_session)
) -> User:
    token = credentials.credentials
    try:
        data = decode_token(token)
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if data.get("type") != "access":
        raise HTTPException(status_code=401, detail="Wrong token type")
    try:
        user_id = uuid.UUID(str(data.get("sub")))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token subject")
    user = await session.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user

async def get_workspace(
    slug: str = Path(..., max_length=64),
    session: AsyncSession = Depends(get_session),
) -> Workspace:
    ws = await session.scalar(select(Workspace).where(Workspace.slug == slug))
    if not ws:
        raise NotFound("Workspace not found")
    return ws

async def get_membership(
    ws: Workspace = Depends(get_workspace),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> WorkspaceMembership:
    m = await session.scalar(
        select(WorkspaceMembership).where(
            WorkspaceMembership.workspace_id == ws.id,
            WorkspaceMembership.user_id == user.id,
        )
    )
    if not m:
        raise NotAuthorized("Not a member of this workspace")
    return m

async def require_admin(m: WorkspaceMembership = Depends(get_membership)) -> WorkspaceMembership:
    if m.role != "ADMIN":
        raise NotAuthorized("Workspace admin role required")
    return m

def get_reward_provider(request: Request) -> RewardProvider:
    return request.app.state.reward_provider

def get_orchestrator(
    session: AsyncSession = Depends(get_session),
    provider: RewardProvider = Depends(get_reward_provider),
) -> ReviewOrchestrator:
    return ReviewOrchestrator.for_session(session, provider)

def get_issuer(
    session: AsyncSession = Depends(get_session),
    provider: RewardProvider = Depends(get_reward_provider),
) -> RewardIssuer:
    return RewardIssuer(session, provider)
