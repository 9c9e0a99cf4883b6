"""
Reconciliation for rewards stuck in PENDING.

Only records the provider never acknowledged (no external transaction id) are
re-sent, with their original idempotency key. Records holding an external id
wait for the provider's webhook. FAILED records are left for an admin retry.
"""
from __future__ import annotations
import asyncio
import uuid
from datetime import timedelta
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from rewardflow.config import settings
from rewardflow.db import build_engine, utcnow
from rewardflow.errors import DomainError
from rewardflow.models.reward import RewardIssuance
from rewardflow.services.reward_provider import RewardProvider, build_reward_provider
from rewardflow.services.rewards import RewardIssuer, RewardStatus

log = structlog.get_logger()

async def _run(
    sessionmaker: async_sessionmaker[AsyncSession],
    provider: RewardProvider,
    workspace_id: uuid.UUID,
    stale_after: timedelta,
    limit: int = 200,
) -> dict[str, int]:
    cutoff = utcnow() - stale_after
    counts = {"checked": 0, "issued": 0, "failed": 0, "pending": 0, "errors": 0}
    async with sessionmaker() as session:
        ids = (await session.execute(
            select(RewardIssuance.id)
            .where(
                RewardIssuance.workspace_id == workspace_id,
                RewardIssuance.status == RewardStatus.PENDING.value,
                RewardIssuance.type != "points",
                RewardIssuance.external_transaction_id.is_(None),
                RewardIssuance.created_at < cutoff,
            )
            .order_by(RewardIssuance.created_at.asc())
            .limit(limit)
        )).scalars().all()

        issuer = RewardIssuer(session, provider)
        for reward_id in ids:
            counts["checked"] += 1
            try:
                reward = await issuer.retry(workspace_id, reward_id)
            except DomainError as e:
                counts["errors"] += 1
                log.warning("reconcile.skip", reward_id=str(reward_id), code=e.code, error=e.message)
                await session.rollback()
                continue
            counts[reward.status.lower()] = counts.get(reward.status.lower(), 0) + 1
            # One commit per record so a later crash keeps earlier outcomes
            await session.commit()

    log.info("reconcile.done", workspace_id=str(workspace_id), **counts)
    return counts

async def _main(workspace_id: str, stale_minutes: int) -> dict[str, int]:
    engine, sessionmaker = build_engine(settings.database_url)
    provider = build_reward_provider(settings)
    try:
        return await _run(sessionmaker, provider, uuid.UUID(workspace_id), timedelta(minutes=stale_minutes))
    finally:
        await provider.aclose()
        await engine.dispose()

def reconcile_rewards(workspace_id: str, stale_minutes: int | None = None):
    """RQ entrypoint."""
    return asyncio.run(_main(workspace_id, stale_minutes if stale_minutes is not None else settings.reconcile_stale_minutes))
