from uuid import uuid4

import pytest
from sqlalchemy import select, update

from maisuchi_api.models.loyalty import LoyaltyBalance, LoyaltyLedgerEntryKind, LoyaltyPointSource
from maisuchi_api.services.loyalty import BalanceCache, LedgerStore
from maisuchi_api.services.loyalty.errors import ConcurrencyConflictError, InsufficientPointsError


async def _version(session, user_id) -> int:
    result = await session.execute(select(LoyaltyBalance.version).where(LoyaltyBalance.user_id == user_id))
    return result.scalar_one()


@pytest.mark.asyncio
async def test_apply_delta_creates_row_and_bumps_version(session_factory) -> None:
    user_id = uuid4()
    async with session_factory() as session:
        balances = BalanceCache(session, LedgerStore(session))
        assert await balances.read(user_id) == 0
        assert await balances.read_cached(user_id) is None

        assert await balances.apply_delta(user_id, 70) == 70
        assert await balances.apply_delta(user_id, -20) == 50
        assert await balances.apply_delta(user_id, 0) == 50
        await session.commit()

        assert await balances.read(user_id) == 50
        assert await _version(session, user_id) == 3


@pytest.mark.asyncio
async def test_apply_delta_refuses_to_overdraw(session_factory) -> None:
    user_id = uuid4()
    async with session_factory() as session:
        balances = BalanceCache(session, LedgerStore(session))
        await balances.apply_delta(user_id, 30)
        await session.commit()

        with pytest.raises(InsufficientPointsError) as excinfo:
            await balances.apply_delta(user_id, -31)

        assert excinfo.value.balance == 30
        assert excinfo.value.required == 31
        assert await balances.read(user_id) == 30
        assert await _version(session, user_id) == 1


@pytest.mark.asyncio
async def test_apply_delta_retries_after_losing_a_race(session_factory, monkeypatch) -> None:
    user_id = uuid4()
    async with session_factory() as session:
        balances = BalanceCache(session, LedgerStore(session))
        await balances.apply_delta(user_id, 10)
        await session.commit()

        real_read_row = balances._read_row
        calls = {"count": 0}

        async def stale_once(uid):
            calls["count"] += 1
            if calls["count"] == 1:
                return 10, 0
            return await real_read_row(uid)

        monkeypatch.setattr(balances, "_read_row", stale_once)

        assert await balances.apply_delta(user_id, 5) == 15
        assert calls["count"] == 2


@pytest.mark.asyncio
async def test_apply_delta_raises_conflict_when_retries_exhausted(session_factory, monkeypatch) -> None:
    user_id = uuid4()
    async with session_factory() as session:
        balances = BalanceCache(session, LedgerStore(session), max_retries=3)
        await balances.apply_delta(user_id, 10)
        await session.commit()

        calls = {"count": 0}

        async def always_stale(uid):
            calls["count"] += 1
            return 10, 99

        monkeypatch.setattr(balances, "_read_row", always_stale)

        with pytest.raises(ConcurrencyConflictError):
            await balances.apply_delta(user_id, 5)
        assert calls["count"] == 3


@pytest.mark.asyncio
async def test_reconcile_overwrites_drifted_cache_with_ledger_sum(session_factory) -> None:
    user_id = uuid4()
    async with session_factory() as session:
        ledger = LedgerStore(session)
        balances = BalanceCache(session, ledger)
        await ledger.append(user_id, 120, LoyaltyLedgerEntryKind.EARN, source=LoyaltyPointSource.ORDER, order_id="R-1")
        await balances.apply_delta(user_id, 120)
        await session.execute(update(LoyaltyBalance).where(LoyaltyBalance.user_id == user_id).values(points=999))
        await session.commit()

        result = await balances.reconcile(user_id)
        await session.commit()

        assert result.repaired is True
        assert result.cached_points == 999
        assert result.ledger_points == 120
        assert await balances.read(user_id) == 120

        again = await balances.verify(user_id)
        assert again.repaired is False
