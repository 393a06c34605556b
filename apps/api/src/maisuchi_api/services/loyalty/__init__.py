"""Loyalty service exports."""

from .balances import BalanceCache, ReconciliationResult  # noqa: F401
from .catalog import RewardAnalytics, RewardCatalog  # noqa: F401
from .claim_limits import DailyClaimLimiter, DailyClaimStatus  # noqa: F401
from .claims import ClaimEngine, ClaimResult, generate_redemption_code  # noqa: F401
from .descriptions import describe_points, points_for_order_total  # noqa: F401
from .ledger import LedgerStore, decode_time_uuid_cursor, encode_time_uuid_cursor  # noqa: F401
from .loyalty_service import CreditOutcome, LoyaltyService  # noqa: F401
from .pending_credits import DrainResult, PendingCreditQueue  # noqa: F401
from .profile_mirror import ProfileMirror  # noqa: F401
