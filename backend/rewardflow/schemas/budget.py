from __future__ import annotations
from pydantic import Field
from uuid import UUID
from datetime import datetime

from rewardflow.schemas.base import CamelModel


class BudgetUpdate(CamelModel):
    total_budget: int = Field(ge=0)


class BudgetPublic(CamelModel):
    scope: str  # workspace | challenge
    scope_id: UUID
    total_budget: int | None = None  # None when no budget is configured
    allocated: int = 0
    remaining: int | None = None
    updated_by: UUID | None = None
    updated_at: datetime | None = None
