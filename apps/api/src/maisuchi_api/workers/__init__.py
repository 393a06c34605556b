"""Background workers supporting async processing."""

from .loyalty_reconciliation import LoyaltyReconciliationWorker

__all__ = [
    "LoyaltyReconciliationWorker",
]
