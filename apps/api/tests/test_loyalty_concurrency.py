from uuid import uuid4

import pytest
from sqlalchemy import func, select

from maisuchi_api.models.loyalty import (
    ClaimedReward,
    LoyaltyLedgerEntry,
    LoyaltyLedgerEntryKind,
    LoyaltyPointSource,
    LoyaltyRewardType,
    PendingCredit,
)
from maisuchi_api.services.loyalty import LoyaltyService
from maisuchi_api.services.loyalty.errors import DailyLimitExceededError, InsufficientPointsError


async def _create_reward(service: LoyaltyService, name: str, points: int):
    reward = await service.catalog.create_reward(
        name=name,
        reward_type=LoyaltyRewardType.DISCOUNT,
        points_required=points,
        discount_percentage=10,
    )
    await service.catalog.commit()
    return reward.id


async def _count(session, model, *criteria) -> int:
    result = await session.execute(select(func.count()).select_from(model).where(*criteria))
    return int(result.scalar_one())


@pytest.mark.asyncio
async def test_balance_check_during_order_credit_does_not_count_it_twice(
    shared_session_factory, clock, monkeypatch
) -> None:
    user_id = uuid4()
    async with shared_session_factory() as first, shared_session_factory() as second:
        crediting = LoyaltyService(first, clock=clock)
        checking = LoyaltyService(second, clock=clock)
        await crediting.credit_points(user_id, 10, source=LoyaltyPointSource.WELCOME)

        apply_delta = crediting.balances.apply_delta
        checks = []

        async def check_then_apply(*args, **kwargs):
            checks.append(await checking.balances.verify(user_id))
            return await apply_delta(*args, **kwargs)

        monkeypatch.setattr(crediting.balances, "apply_delta", check_then_apply)
        outcome = await crediting.on_order_completed("ORD-1", user_id, 100)
        monkeypatch.undo()

        assert outcome.status == "applied"
        assert outcome.balance == 110
        assert checks[0].repaired is False
        assert checks[0].ledger_points == 10

        reconciled = await checking.reconcile(user_id)

        assert reconciled.repaired is False
        assert reconciled.ledger_points == 110
        assert await checking.balances.read_cached(user_id) == 110


@pytest.mark.asyncio
async def test_balance_check_during_drain_does_not_count_it_twice(shared_session_factory, clock, monkeypatch) -> None:
    user_id = uuid4()
    async with shared_session_factory() as first, shared_session_factory() as second:
        draining = LoyaltyService(first, clock=clock)
        checking = LoyaltyService(second, clock=clock)
        await draining.credit_points(user_id, 10, source=LoyaltyPointSource.WELCOME)
        await draining.pending_credits.enqueue("WEB-4001", user_id, 60)

        apply_delta = draining.balances.apply_delta

        async def check_then_apply(*args, **kwargs):
            await checking.balances.verify(user_id)
            return await apply_delta(*args, **kwargs)

        monkeypatch.setattr(draining.balances, "apply_delta", check_then_apply)
        drained = await draining.on_user_authenticated(user_id)
        monkeypatch.undo()

        assert drained.applied == 1
        assert await checking.balances.read_cached(user_id) == 70
        assert await checking.ledger.sum_by_user(user_id) == 70
        assert (await checking.balances.verify(user_id)).repaired is False


@pytest.mark.asyncio
async def test_claim_validated_before_a_concurrent_claim_cannot_overspend(
    shared_session_factory, clock, monkeypatch
) -> None:
    user_id = uuid4()
    async with shared_session_factory() as first, shared_session_factory() as second:
        late = LoyaltyService(first, clock=clock)
        early = LoyaltyService(second, clock=clock)
        reward_id = await _create_reward(late, "20% off", 80)
        await late.credit_points(user_id, 100, source=LoyaltyPointSource.ORDER, order_id="ORD-1")

        validate = late.claims._validate
        early_claims = []

        async def validate_then_let_other_claim(user, reward):
            validated = await validate(user, reward)
            early_claims.append(await early.claim_reward(user, reward))
            return validated

        monkeypatch.setattr(late.claims, "_validate", validate_then_let_other_claim)
        with pytest.raises(InsufficientPointsError):
            await late.claim_reward(user_id, reward_id)
        monkeypatch.undo()

        assert early_claims[0].balance == 20
        assert await late.ledger.sum_by_user(user_id) == 20
        assert await late.balances.read_cached(user_id) == 20
        assert await _count(first, ClaimedReward, ClaimedReward.user_id == user_id) == 1
        assert (
            await _count(
                first,
                LoyaltyLedgerEntry,
                LoyaltyLedgerEntry.user_id == user_id,
                LoyaltyLedgerEntry.kind == LoyaltyLedgerEntryKind.REDEEM,
            )
            == 1
        )


@pytest.mark.asyncio
async def test_claim_validated_before_a_concurrent_claim_respects_daily_limit(
    shared_session_factory, clock, monkeypatch
) -> None:
    user_id = uuid4()
    async with shared_session_factory() as first, shared_session_factory() as second:
        late = LoyaltyService(first, clock=clock)
        early = LoyaltyService(second, clock=clock)
        reward_id = await _create_reward(late, "5% off", 10)
        await late.credit_points(user_id, 100, source=LoyaltyPointSource.ORDER, order_id="ORD-1")
        await late.claim_reward(user_id, reward_id)
        await late.claim_reward(user_id, reward_id)

        validate = late.claims._validate

        async def validate_then_let_other_claim(user, reward):
            validated = await validate(user, reward)
            await early.claim_reward(user, reward)
            return validated

        monkeypatch.setattr(late.claims, "_validate", validate_then_let_other_claim)
        with pytest.raises(DailyLimitExceededError) as excinfo:
            await late.claim_reward(user_id, reward_id)
        monkeypatch.undo()

        assert excinfo.value.used == 3
        assert await _count(first, ClaimedReward, ClaimedReward.user_id == user_id) == 3
        assert await late.ledger.sum_by_user(user_id) == 70
        assert await late.balances.read_cached(user_id) == 70


@pytest.mark.asyncio
@pytest.mark.parametrize("check_sees_other_drain", [True, False])
async def test_concurrent_drains_credit_an_order_once(
    shared_session_factory, clock, monkeypatch, check_sees_other_drain
) -> None:
    user_id = uuid4()
    async with shared_session_factory() as first, shared_session_factory() as second:
        draining = LoyaltyService(first, clock=clock)
        racing = LoyaltyService(second, clock=clock)
        await draining.pending_credits.enqueue("WEB-3001", user_id, 45)

        has_order_credit = racing.ledger.has_order_credit
        other_drains = []

        async def check_after_other_drain(user, order_id):
            other_drains.append(await draining.pending_credits.drain(user))
            if check_sees_other_drain:
                return await has_order_credit(user, order_id)
            return False

        monkeypatch.setattr(racing.ledger, "has_order_credit", check_after_other_drain)
        result = await racing.pending_credits.drain(user_id)
        monkeypatch.undo()

        assert other_drains[0].applied == 1
        assert result.as_dict() == {"applied": 0, "skipped": 1, "failed": 0, "pointsApplied": 0}
        assert (
            await _count(
                second,
                LoyaltyLedgerEntry,
                LoyaltyLedgerEntry.order_id == "WEB-3001",
                LoyaltyLedgerEntry.kind == LoyaltyLedgerEntryKind.EARN,
            )
            == 1
        )
        assert await _count(second, PendingCredit) == 0
        assert await racing.ledger.sum_by_user(user_id) == 45
        assert await racing.balances.read_cached(user_id) == 45
