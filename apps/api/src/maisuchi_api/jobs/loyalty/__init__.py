"""Loyalty job exports."""

from .reconciliation import run_balance_reconciliation  # noqa: F401
from .rewards import archive_expired_rewards  # noqa: F401

__all__ = [
    "archive_expired_rewards",
    "run_balance_reconciliation",
]
