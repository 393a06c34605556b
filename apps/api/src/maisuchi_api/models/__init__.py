"""SQLAlchemy models package."""

from .customer_profile import CustomerProfile  # noqa: F401
from .loyalty import (  # noqa: F401
    ClaimedReward,
    LoyaltyBalance,
    LoyaltyLedgerEntry,
    LoyaltyLedgerEntryKind,
    LoyaltyPointSource,
    LoyaltyReward,
    LoyaltyRewardType,
    PendingCredit,
    RewardRedemptionLog,
)
