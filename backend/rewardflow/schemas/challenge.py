from __future__ import annotations
from uuid import UUID
from datetime import datetime

from rewardflow.schemas.base import CamelModel


class ManagerPublic(CamelModel):
    user_id: UUID
    email: str
    display_name: str | None = None
    role: str
    assigned_at: datetime


class EventPublic(CamelModel):
    id: UUID
    type: str
    challenge_id: UUID | None = None
    user_id: UUID | None = None
    actor_user_id: UUID | None = None
    metadata: dict
    created_at: datetime


class PointsPublic(CamelModel):
    workspace_id: UUID
    user_id: UUID
    total_points: int = 0
    available_points: int = 0
