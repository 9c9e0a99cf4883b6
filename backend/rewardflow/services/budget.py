"""
Points budget accounting.

reserve() charges the challenge budget when one exists, else the workspace
budget. The limit check lives inside the UPDATE's WHERE clause so concurrent
reservations serialize on the row and never overshoot total_budget.
"""
from __future__ import annotations
import uuid
from dataclasses import dataclass
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from rewardflow.errors import BudgetExceeded, ValidationError
from rewardflow.models.budget import ChallengePointsBudget, WorkspacePointsBudget

log = structlog.get_logger()

BudgetRow = WorkspacePointsBudget | ChallengePointsBudget


@dataclass(frozen=True)
class Reservation:
    ok: bool
    remaining: int | None  # None when no budget is configured (unlimited)
    scope: str | None  # "challenge" | "workspace" | None
    scope_id: uuid.UUID | None = None


class BudgetLedger:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def workspace_budget(self, workspace_id: uuid.UUID) -> WorkspacePointsBudget | None:
        return await self.session.scalar(
            select(WorkspacePointsBudget).where(WorkspacePointsBudget.workspace_id == workspace_id)
        )

    async def challenge_budget(self, challenge_id: uuid.UUID) -> ChallengePointsBudget | None:
        return await self.session.scalar(
            select(ChallengePointsBudget).where(ChallengePointsBudget.challenge_id == challenge_id)
        )

    async def resolve_scope(self, workspace_id: uuid.UUID, challenge_id: uuid.UUID | None) -> BudgetRow | None:
        if challenge_id is not None:
            cb = await self.challenge_budget(challenge_id)
            if cb is not None:
                return cb
        return await self.workspace_budget(workspace_id)

    async def reserve(self, workspace_id: uuid.UUID, amount: int, challenge_id: uuid.UUID | None = None) -> Reservation:
        if amount <= 0:
            raise ValidationError("Reservation amount must be positive")

        row = await self.resolve_scope(workspace_id, challenge_id)
        if row is None:
            # No budget configured for this scope: points are not capped
            return Reservation(ok=True, remaining=None, scope=None)

        model = type(row)
        scope = "challenge" if model is ChallengePointsBudget else "workspace"
        res = await self.session.execute(
            update(model)
            .where(model.id == row.id, model.allocated + amount <= model.total_budget)
            .values(allocated=model.allocated + amount)
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(row)
        remaining = int(row.total_budget) - int(row.allocated)
        if res.rowcount != 1:
            log.warning("budget.exceeded", scope=scope, scope_id=str(row.id), amount=amount, remaining=remaining)
            raise BudgetExceeded(f"Budget exceeded: requested {amount}, remaining {remaining} in {scope} budget")

        log.info("budget.reserved", scope=scope, scope_id=str(row.id), amount=amount, remaining=remaining)
        return Reservation(ok=True, remaining=remaining, scope=scope, scope_id=row.id)

    async def set_workspace_budget(self, workspace_id: uuid.UUID, total_budget: int, updated_by: uuid.UUID | None = None) -> WorkspacePointsBudget:
        row = await self.workspace_budget(workspace_id)
        if row is None:
            row = WorkspacePointsBudget(workspace_id=workspace_id, total_budget=0, allocated=0)
            self.session.add(row)
        self._apply_total(row, total_budget, updated_by)
        await self.session.flush()
        return row

    async def set_challenge_budget(
        self, challenge_id: uuid.UUID, workspace_id: uuid.UUID, total_budget: int, updated_by: uuid.UUID | None = None
    ) -> ChallengePointsBudget:
        row = await self.challenge_budget(challenge_id)
        if row is None:
            row = ChallengePointsBudget(challenge_id=challenge_id, workspace_id=workspace_id, total_budget=0, allocated=0)
            self.session.add(row)
        self._apply_total(row, total_budget, updated_by)
        await self.session.flush()
        return row

    @staticmethod
    def _apply_total(row: BudgetRow, total_budget: int, updated_by: uuid.UUID | None) -> None:
        if total_budget < 0:
            raise ValidationError("totalBudget must be >= 0")
        if total_budget < int(row.allocated or 0):
            raise ValidationError(f"totalBudget cannot be lower than already allocated points ({row.allocated})")
        row.total_budget = total_budget
        row.updated_by = updated_by
