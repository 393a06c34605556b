"""Repair cached loyalty balances from the ledger once.

Intended usage: schedule via cron, or run by hand after an incident that may
have left balance rows out of step with the ledger.

Example:
    python tooling/scripts/reconcile_loyalty_balances.py --archive-expired
    python tooling/scripts/reconcile_loyalty_balances.py --user 5b0d...
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from uuid import UUID

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile loyalty balance cache with the ledger")
    parser.add_argument(
        "--user",
        type=UUID,
        default=None,
        help="Reconcile a single member instead of sweeping every balance.",
    )
    parser.add_argument(
        "--archive-expired",
        action="store_true",
        help="Also deactivate rewards whose validity window has closed.",
    )
    return parser.parse_args()


async def _run(user_id: UUID | None, archive_expired: bool) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from maisuchi_api.db.session import async_session  # type: ignore import-position
    from maisuchi_api.jobs.loyalty import (  # type: ignore import-position
        archive_expired_rewards,
        run_balance_reconciliation,
    )
    from maisuchi_api.services.loyalty import LoyaltyService  # type: ignore import-position

    if user_id is not None:
        async with async_session() as session:
            result = await LoyaltyService(session).reconcile(user_id)
        summary = {"checked": 1, "repaired": int(result.repaired), "missing_created": 0}
    else:
        summary = await run_balance_reconciliation(session_factory=async_session)

    if archive_expired:
        summary.update(await archive_expired_rewards(session_factory=async_session))
    return summary


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.user, args.archive_expired))
    logger.success("Loyalty balance reconciliation completed", **summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
