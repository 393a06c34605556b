"""Member-facing wording for ledger entries and the order earn rate."""

from __future__ import annotations

import math
from decimal import Decimal
from typing import Any, Callable, Mapping

from maisuchi_api.core.settings import settings
from maisuchi_api.models.loyalty import LoyaltyLedgerEntryKind, LoyaltyPointSource


def format_currency(amount: Decimal | float | int | None) -> str:
    value = Decimal(str(amount or 0)).quantize(Decimal("0.01"))
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"


_DESCRIPTIONS: dict[LoyaltyPointSource, Callable[[Mapping[str, Any]], str]] = {
    LoyaltyPointSource.ORDER: lambda meta: f"Order • {format_currency(meta.get('amount'))}",
    LoyaltyPointSource.BONUS: lambda meta: f"Bonus • {meta.get('reason') or 'Special offer'}",
    LoyaltyPointSource.REWARD: lambda meta: f"Reward • {meta.get('rewardName') or 'Claimed reward'}",
    LoyaltyPointSource.BIRTHDAY: lambda meta: "Birthday surprise",
    LoyaltyPointSource.REFERRAL: lambda meta: f"Referral • {meta.get('friendName') or 'Friend signed up'}",
    LoyaltyPointSource.TIER_UPGRADE: lambda meta: f"{meta.get('tier') or 'New'} tier welcome",
    LoyaltyPointSource.WELCOME: lambda meta: "Welcome bonus",
    LoyaltyPointSource.REVIEW: lambda meta: f"Review • {meta.get('platform') or 'Feedback'}",
    LoyaltyPointSource.SOCIAL_SHARE: lambda meta: f"Social share • {meta.get('platform') or 'Social media'}",
    LoyaltyPointSource.REDEMPTION: lambda meta: f"Points redeemed for reward: {meta.get('rewardName') or 'reward'}",
    LoyaltyPointSource.ADJUSTMENT: lambda meta: f"Adjustment • {meta.get('reason') or 'Manual correction'}",
}


def describe_points(source: LoyaltyPointSource, metadata: Mapping[str, Any] | None = None) -> str:
    return _DESCRIPTIONS[source](metadata or {})


def kind_for_source(source: LoyaltyPointSource) -> LoyaltyLedgerEntryKind:
    """Collapse the detailed source into the three ledger kinds."""

    if source is LoyaltyPointSource.REDEMPTION:
        return LoyaltyLedgerEntryKind.REDEEM
    if source is LoyaltyPointSource.ADJUSTMENT:
        return LoyaltyLedgerEntryKind.ADJUSTMENT
    return LoyaltyLedgerEntryKind.EARN


def points_for_order_total(total: Decimal | float | int, *, rate: int | None = None) -> int:
    """Whole points earned for an order subtotal (rounded down)."""

    per_unit = settings.loyalty_points_per_currency_unit if rate is None else rate
    amount = Decimal(str(total))
    if amount <= 0 or per_unit <= 0:
        return 0
    return int(math.floor(amount * per_unit))
