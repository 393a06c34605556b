import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import update

from maisuchi_api.jobs.loyalty import archive_expired_rewards, run_balance_reconciliation
from maisuchi_api.models.loyalty import LoyaltyBalance, LoyaltyLedgerEntryKind, LoyaltyPointSource, LoyaltyRewardType
from maisuchi_api.observability.loyalty import get_loyalty_store
from maisuchi_api.services.loyalty import BalanceCache, LedgerStore, RewardCatalog
from maisuchi_api.workers import LoyaltyReconciliationWorker


async def _seed_drift(session_factory):
    drifted, missing, healthy = uuid4(), uuid4(), uuid4()
    async with session_factory() as session:
        ledger = LedgerStore(session)
        balances = BalanceCache(session, ledger)
        for user_id, points in ((drifted, 100), (missing, 40), (healthy, 25)):
            await ledger.append(user_id, points, LoyaltyLedgerEntryKind.EARN, source=LoyaltyPointSource.BONUS)
        await balances.apply_delta(drifted, 100)
        await balances.apply_delta(healthy, 25)
        await session.execute(update(LoyaltyBalance).where(LoyaltyBalance.user_id == drifted).values(points=5))
        await session.commit()
    return drifted, missing, healthy


@pytest.mark.asyncio
async def test_reconciliation_sweep_repairs_drift_and_creates_missing_rows(session_factory) -> None:
    drifted, missing, healthy = await _seed_drift(session_factory)

    summary = await run_balance_reconciliation(session_factory=session_factory)

    assert summary == {"checked": 3, "repaired": 1, "missing_created": 1}
    async with session_factory() as session:
        cached = await BalanceCache(session, LedgerStore(session)).list_cached()
    assert cached == {drifted: 100, missing: 40, healthy: 25}

    snapshot = get_loyalty_store().snapshot()
    assert snapshot.reconciliations == {"checked": 3, "repaired": 2}

    again = await run_balance_reconciliation(session_factory=session_factory)
    assert again == {"checked": 3, "repaired": 0, "missing_created": 0}


@pytest.mark.asyncio
async def test_archive_job_deactivates_lapsed_rewards(session_factory) -> None:
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        catalog = RewardCatalog(session)
        await catalog.create_reward(
            name="Autumn ramen",
            reward_type=LoyaltyRewardType.SPECIAL,
            points_required=30,
            valid_until=now - timedelta(days=2),
        )
        await catalog.create_reward(name="Free tea", reward_type=LoyaltyRewardType.FREE_ITEM, points_required=10)
        await session.commit()

    assert await archive_expired_rewards(session_factory=session_factory) == {"archived": 1}
    assert await archive_expired_rewards(session_factory=session_factory) == {"archived": 0}


@pytest.mark.asyncio
async def test_worker_run_once_combines_sweeps(session_factory) -> None:
    await _seed_drift(session_factory)
    worker = LoyaltyReconciliationWorker(session_factory, interval_seconds=60)

    summary = await worker.run_once()

    assert summary == {"checked": 3, "repaired": 1, "missing_created": 1, "archived": 0}


@pytest.mark.asyncio
async def test_worker_start_and_stop(session_factory) -> None:
    worker = LoyaltyReconciliationWorker(session_factory, interval_seconds=3600)

    worker.start()
    assert worker.is_running is True
    await asyncio.sleep(0.05)
    await worker.stop()

    assert worker.is_running is False
    assert get_loyalty_store().snapshot().reconciliations == {"checked": 0, "repaired": 0}
