from datetime import timedelta
import pytest
from sqlalchemy import select

from rewardflow.db import utcnow
from rewardflow.errors import IssuanceFailed
from rewardflow.jobs.reconcile_rewards import _run
from rewardflow.models.reward import RewardIssuance


async def _pending(sessionmaker, world, *, age: timedelta, external_id: str | None = None) -> RewardIssuance:
    async with sessionmaker() as s:
        r = RewardIssuance(
            workspace_id=world.workspace.id,
            user_id=world.participant.id,
            type="sku",
            sku_id="mug",
            provider="fake",
            status="PENDING",
            external_transaction_id=external_id,
            created_at=utcnow() - age,
        )
        s.add(r)
        await s.commit()
        return r


@pytest.mark.asyncio
async def test_reconcile_resends_only_stale_unacknowledged(sessionmaker, world, provider):
    stale = await _pending(sessionmaker, world, age=timedelta(hours=2))
    await _pending(sessionmaker, world, age=timedelta(minutes=1))
    await _pending(sessionmaker, world, age=timedelta(hours=2), external_id="tx-waiting")

    counts = await _run(sessionmaker, provider, world.workspace.id, timedelta(minutes=30))

    assert counts["checked"] == 1 and counts["issued"] == 1
    assert len(provider.requests) == 1
    assert provider.requests[0].idempotency_key == f"rewardflow-sku-{stale.id}"

    async with sessionmaker() as s:
        row = await s.get(RewardIssuance, stale.id)
        assert row.status == "ISSUED" and row.external_transaction_id == "tx-1"


@pytest.mark.asyncio
async def test_reconcile_records_provider_failures(sessionmaker, world, provider):
    stale = await _pending(sessionmaker, world, age=timedelta(hours=2))
    provider.results.append(IssuanceFailed("out of stock"))

    counts = await _run(sessionmaker, provider, world.workspace.id, timedelta(minutes=30))
    assert counts["failed"] == 1 and counts["errors"] == 0

    async with sessionmaker() as s:
        row = await s.get(RewardIssuance, stale.id)
        assert row.status == "FAILED" and row.error == "out of stock"
        other = (await s.execute(select(RewardIssuance).where(RewardIssuance.id != stale.id))).scalars().all()
        assert other == []
