from __future__ import annotations
import enum
import uuid
from typing import Any
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from rewardflow.models.event import ActivityEvent

log = structlog.get_logger()


class EventType(str, enum.Enum):
    SUBMISSION_CREATED = "SUBMISSION_CREATED"
    SUBMISSION_RESUBMITTED = "SUBMISSION_RESUBMITTED"
    SUBMISSION_MANAGER_APPROVED = "SUBMISSION_MANAGER_APPROVED"
    SUBMISSION_NEEDS_REVISION = "SUBMISSION_NEEDS_REVISION"
    SUBMISSION_APPROVED = "SUBMISSION_APPROVED"
    SUBMISSION_REJECTED = "SUBMISSION_REJECTED"
    REWARD_ISSUED = "REWARD_ISSUED"
    REWARD_PENDING = "REWARD_PENDING"
    REWARD_FAILED = "REWARD_FAILED"
    REWARD_CANCELLED = "REWARD_CANCELLED"
    BUDGET_UPDATED = "BUDGET_UPDATED"
    MANAGER_ASSIGNED = "MANAGER_ASSIGNED"
    MANAGER_UNASSIGNED = "MANAGER_UNASSIGNED"


class EventLogger:
    """
    Append-only audit trail. append() never fails the caller's unit of work:
    the insert runs in a SAVEPOINT and a database error only rolls that back.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        workspace_id: uuid.UUID,
        type: EventType,
        *,
        challenge_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
        actor_user_id: uuid.UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ActivityEvent | None:
        ev = ActivityEvent(
            workspace_id=workspace_id,
            challenge_id=challenge_id,
            user_id=user_id,
            actor_user_id=actor_user_id,
            type=type.value,
            metadata_json=metadata or {},
        )
        try:
            async with self.session.begin_nested():
                self.session.add(ev)
        except SQLAlchemyError:
            log.warning("event_log.append_failed", event_type=type.value, workspace_id=str(workspace_id), exc_info=True)
            return None
        return ev

    async def for_challenge(self, challenge_id: uuid.UUID, limit: int = 100) -> list[ActivityEvent]:
        return list((await self.session.execute(
            select(ActivityEvent)
            .where(ActivityEvent.challenge_id == challenge_id)
            .order_by(ActivityEvent.created_at.desc())
            .limit(limit)
        )).scalars().all())
