from decimal import Decimal
import pytest
from sqlalchemy import func, select

from rewardflow.errors import IssuanceFailed, ValidationError
from rewardflow.models.budget import WorkspacePointsBudget
from rewardflow.models.ledger import PointsBalance, PointsLedger
from rewardflow.models.reward import RewardIssuance
from rewardflow.models.submission import Submission
from rewardflow.services.reward_provider import ProviderResult, ProviderStatus
from rewardflow.services.reward_spec import bind, terms_from_request
from rewardflow.services.rewards import RewardIssuer
from conftest import make_submission

def _spec(world, reward, submission=None):
    return bind(
        terms_from_request(reward),
        workspace_id=world.workspace.id,
        user_id=world.participant.id,
        challenge_id=world.challenge.id,
        submission_id=submission.id if submission else None,
        actor_user_id=world.admin.id,
    )

async def _count(session, model, *where):
    return await session.scalar(select(func.count()).select_from(model).where(*where))

@pytest.mark.asyncio
async def test_points_issue_reserves_budget_and_credits_balance(session, sessionmaker, world, provider):
    sub = await make_submission(sessionmaker, world, status="APPROVED")
    reward = await RewardIssuer(session, provider).issue(_spec(world, {"type": "points", "amount": 50}, sub))

    assert reward.status == "ISSUED" and reward.issued_at is not None
    assert reward.amount == Decimal(50)
    budget = await session.scalar(select(WorkspacePointsBudget).where(WorkspacePointsBudget.workspace_id == world.workspace.id))
    await session.refresh(budget)
    assert budget.allocated == 50
    bal = await session.scalar(select(PointsBalance).where(PointsBalance.user_id == world.participant.id))
    assert bal.total_points == 50 and bal.available_points == 50
    entry = await session.scalar(select(PointsLedger).where(PointsLedger.submission_id == sub.id))
    assert entry.amount == 50 and entry.reason == "AWARD_APPROVED" and entry.reward_issuance_id == reward.id
    linked = await session.get(Submission, sub.id)
    assert linked.reward_issued and linked.points_awarded == 50 and linked.reward_issuance_id == reward.id
    assert provider.requests == []

@pytest.mark.asyncio
async def test_second_issue_returns_existing_record(session, sessionmaker, world, provider):
    sub = await make_submission(sessionmaker, world, status="APPROVED")
    issuer = RewardIssuer(session, provider)
    first = await issuer.issue(_spec(world, {"type": "points", "amount": 30}, sub))
    second = await issuer.issue(_spec(world, {"type": "points", "amount": 30}, sub))

    assert second.id == first.id
    assert await _count(session, RewardIssuance, RewardIssuance.submission_id == sub.id) == 1
    bal = await session.scalar(select(PointsBalance).where(PointsBalance.user_id == world.participant.id))
    await session.refresh(bal)
    assert bal.total_points == 30

@pytest.mark.asyncio
async def test_budget_exhaustion_records_failed_and_leaves_balance(session, sessionmaker, world, provider):
    sub = await make_submission(sessionmaker, world, status="APPROVED")
    reward = await RewardIssuer(session, provider).issue(_spec(world, {"type": "points", "amount": 150}, sub))

    assert reward.status == "FAILED"
    assert "Budget exceeded" in reward.error
    assert await _count(session, PointsBalance, PointsBalance.user_id == world.participant.id) == 0
    assert await _count(session, PointsLedger) == 0
    linked = await session.get(Submission, sub.id)
    assert not linked.reward_issued

@pytest.mark.asyncio
async def test_failed_key_is_returned_unchanged_unless_retrying(session, sessionmaker, world, provider):
    sub = await make_submission(sessionmaker, world, status="APPROVED")
    issuer = RewardIssuer(session, provider)
    failed = await issuer.issue(_spec(world, {"type": "points", "amount": 150}, sub))
    again = await issuer.issue(_spec(world, {"type": "points", "amount": 150}, sub))
    assert again.id == failed.id and again.status == "FAILED"

    # Budget raised; an explicit retry makes a new attempt under the same key
    budget = await session.scalar(select(WorkspacePointsBudget).where(WorkspacePointsBudget.workspace_id == world.workspace.id))
    budget.total_budget = 200
    await session.flush()
    retried = await issuer.retry(world.workspace.id, failed.id, world.admin.id)
    assert retried.id != failed.id and retried.status == "ISSUED"
    assert await _count(session, RewardIssuance, RewardIssuance.submission_id == sub.id) == 2

    # Retrying the old FAILED row again hits the live record
    assert (await issuer.retry(world.workspace.id, failed.id)).id == retried.id

@pytest.mark.asyncio
async def test_sku_issue_goes_through_provider(session, sessionmaker, world, provider):
    sub = await make_submission(sessionmaker, world, status="APPROVED")
    reward = await RewardIssuer(session, provider).issue(_spec(world, {"type": "sku", "skuId": "MUG-1"}, sub))

    assert reward.status == "ISSUED" and reward.external_transaction_id == "tx-1"
    assert reward.provider == "fake"
    [req] = provider.requests
    assert req.sku_id == "MUG-1" and req.participant_id == str(world.participant.id)
    assert req.idempotency_key.endswith(str(reward.id))
    budget = await session.scalar(select(WorkspacePointsBudget).where(WorkspacePointsBudget.workspace_id == world.workspace.id))
    assert budget.allocated == 0

@pytest.mark.asyncio
async def test_provider_failure_is_recorded_not_raised(session, sessionmaker, world, provider):
    sub = await make_submission(sessionmaker, world, status="APPROVED")
    provider.results.append(IssuanceFailed("reward provider returned 500: boom"))
    reward = await RewardIssuer(session, provider).issue(_spec(world, {"type": "monetary", "amount": "10.00", "currency": "USD"}, sub))
    assert reward.status == "FAILED"
    assert reward.error.startswith("reward provider returned 500")

@pytest.mark.asyncio
async def test_pending_then_webhook_completes(session, sessionmaker, world, provider):
    sub = await make_submission(sessionmaker, world, status="APPROVED")
    provider.results.append(ProviderResult(status=ProviderStatus.PENDING, transaction_id="tx-async"))
    issuer = RewardIssuer(session, provider)
    reward = await issuer.issue(_spec(world, {"type": "sku", "skuId": "HOODIE"}, sub))
    assert reward.status == "PENDING" and reward.external_transaction_id == "tx-async"

    done = await issuer.apply_provider_event(world.workspace.id, "tx-async", "transaction.completed")
    assert done.id == reward.id and done.status == "ISSUED"
    linked = await session.get(Submission, sub.id)
    assert linked.reward_issued

    # Settled records ignore later events
    again = await issuer.apply_provider_event(world.workspace.id, "tx-async", "transaction.failed", error="late")
    assert again.status == "ISSUED" and again.error is None

@pytest.mark.asyncio
async def test_webhook_for_unknown_transaction_is_ignored(session, world, provider):
    assert await RewardIssuer(session, provider).apply_provider_event(world.workspace.id, "nope", "transaction.completed") is None

@pytest.mark.asyncio
async def test_timeout_pending_is_resent_with_same_key(session, sessionmaker, world, provider):
    sub = await make_submission(sessionmaker, world, status="APPROVED")
    provider.results.append(ProviderResult(status=ProviderStatus.PENDING, error="provider_timeout"))
    issuer = RewardIssuer(session, provider)
    reward = await issuer.issue(_spec(world, {"type": "sku", "skuId": "MUG-1"}, sub))
    assert reward.status == "PENDING" and reward.error == "provider_timeout"

    again = await issuer.retry(world.workspace.id, reward.id)
    assert again.id == reward.id and again.status == "ISSUED"
    assert provider.requests[0].idempotency_key == provider.requests[1].idempotency_key

@pytest.mark.asyncio
async def test_cancel_only_pending(session, sessionmaker, world, provider):
    sub = await make_submission(sessionmaker, world, status="APPROVED")
    provider.results.append(ProviderResult(status=ProviderStatus.PENDING, transaction_id="tx-9"))
    issuer = RewardIssuer(session, provider)
    reward = await issuer.issue(_spec(world, {"type": "sku", "skuId": "MUG-1"}, sub))
    cancelled = await issuer.cancel(world.workspace.id, reward.id, world.admin.id)
    assert cancelled.status == "CANCELLED"
    with pytest.raises(ValidationError):
        await issuer.cancel(world.workspace.id, reward.id)
    with pytest.raises(ValidationError):
        await issuer.retry(world.workspace.id, reward.id)

@pytest.mark.asyncio
async def test_manual_points_award_without_submission(session, world, provider):
    issuer = RewardIssuer(session, provider)
    spec = _spec(world, {"type": "points", "amount": 5})
    a = await issuer.issue(spec)
    b = await issuer.issue(spec)
    assert a.id != b.id and a.status == b.status == "ISSUED"
    reasons = (await session.execute(select(PointsLedger.reason))).scalars().all()
    assert reasons == ["MANUAL_AWARD", "MANUAL_AWARD"]

@pytest.mark.asyncio
async def test_lost_insert_race_returns_the_winning_record(sessionmaker, world, provider):
    sub = await make_submission(sessionmaker, world, status="APPROVED")
    async with sessionmaker() as a:
        first = await RewardIssuer(a, provider).issue(_spec(world, {"type": "points", "amount": 30}, sub))
        await a.commit()

    async with sessionmaker() as b:
        issuer = RewardIssuer(b, provider)
        lookup = issuer.existing_for
        calls = []

        async def stale_then_real(*args, **kwargs):
            # First lookup ran before the other writer committed
            calls.append(kwargs)
            return None if len(calls) == 1 else await lookup(*args, **kwargs)

        issuer.existing_for = stale_then_real
        second = await issuer.issue(_spec(world, {"type": "points", "amount": 30}, sub))
        await b.commit()

        assert second.id == first.id and second.status == "ISSUED"
        assert len(calls) == 2
        assert await _count(b, RewardIssuance, RewardIssuance.submission_id == sub.id) == 1
        budget = await b.scalar(select(WorkspacePointsBudget).where(WorkspacePointsBudget.workspace_id == world.workspace.id))
        await b.refresh(budget)
        assert budget.allocated == 30

@pytest.mark.asyncio
async def test_first_credit_race_falls_back_to_increment(session, world, provider):
    session.add(PointsBalance(user_id=world.participant.id, workspace_id=world.workspace.id, total_points=5, available_points=5))
    await session.flush()

    issuer = RewardIssuer(session, provider)
    increment = issuer._increment_balance
    calls = []

    async def miss_then_real(reward, points):
        # The concurrent writer's balance row is not visible to the first UPDATE
        calls.append(points)
        return 0 if len(calls) == 1 else await increment(reward, points)

    issuer._increment_balance = miss_then_real
    reward = await issuer.issue(_spec(world, {"type": "points", "amount": 20}))
    await session.commit()

    assert reward.status == "ISSUED" and calls == [20, 20]
    assert await _count(session, PointsBalance, PointsBalance.user_id == world.participant.id) == 1
    bal = await session.scalar(select(PointsBalance).where(PointsBalance.user_id == world.participant.id))
    await session.refresh(bal)
    assert bal.total_points == 25 and bal.available_points == 25
