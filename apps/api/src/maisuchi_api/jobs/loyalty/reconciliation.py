"""Sweep that repairs cached loyalty balances from the ledger."""

# meta: job: loyalty-balance-reconciliation

from __future__ import annotations

from typing import Dict

from loguru import logger

from maisuchi_api.jobs.sessions import SessionFactory, open_session
from maisuchi_api.observability.loyalty import get_loyalty_store
from maisuchi_api.services.loyalty import BalanceCache, LedgerStore


async def run_balance_reconciliation(*, session_factory: SessionFactory) -> Dict[str, int]:
    """Compare every cached balance with the ledger sum and repair drift.

    Members that appear only in the ledger get a balance row created.
    """

    session = await open_session(session_factory)
    async with session as managed_session:
        ledger = LedgerStore(managed_session)
        balances = BalanceCache(managed_session, ledger)

        ledger_sums = await ledger.sum_all()
        cached = await balances.list_cached()

        summary = {"checked": 0, "repaired": 0, "missing_created": 0}
        for user_id in sorted(set(ledger_sums) | set(cached), key=str):
            summary["checked"] += 1
            if user_id in cached and cached[user_id] == ledger_sums.get(user_id, 0):
                continue
            result = await balances.reconcile(user_id)
            await managed_session.commit()
            if user_id not in cached:
                summary["missing_created"] += 1
            elif result.repaired:
                summary["repaired"] += 1

    get_loyalty_store().record_reconciliation(
        checked=summary["checked"],
        repaired=summary["repaired"] + summary["missing_created"],
    )
    logger.bind(summary=summary).info("Loyalty balance reconciliation sweep completed")
    return summary
