from decimal import Decimal

from maisuchi_api.models.loyalty import LoyaltyLedgerEntryKind, LoyaltyPointSource
from maisuchi_api.services.loyalty import describe_points, points_for_order_total
from maisuchi_api.services.loyalty.descriptions import format_currency, kind_for_source


def test_format_currency() -> None:
    assert format_currency(Decimal("1234.5")) == "$1,234.50"
    assert format_currency(-3) == "-$3.00"
    assert format_currency(None) == "$0.00"


def test_describe_points_per_source() -> None:
    assert describe_points(LoyaltyPointSource.ORDER, {"amount": "42.5"}) == "Order • $42.50"
    assert describe_points(LoyaltyPointSource.BONUS) == "Bonus • Special offer"
    assert describe_points(LoyaltyPointSource.REFERRAL, {"friendName": "Mika"}) == "Referral • Mika"
    assert describe_points(LoyaltyPointSource.BIRTHDAY) == "Birthday surprise"
    assert describe_points(LoyaltyPointSource.TIER_UPGRADE, {"tier": "Gold"}) == "Gold tier welcome"
    assert (
        describe_points(LoyaltyPointSource.REDEMPTION, {"rewardName": "Free bento"})
        == "Points redeemed for reward: Free bento"
    )


def test_kind_for_source() -> None:
    assert kind_for_source(LoyaltyPointSource.REDEMPTION) is LoyaltyLedgerEntryKind.REDEEM
    assert kind_for_source(LoyaltyPointSource.ADJUSTMENT) is LoyaltyLedgerEntryKind.ADJUSTMENT
    assert kind_for_source(LoyaltyPointSource.REVIEW) is LoyaltyLedgerEntryKind.EARN


def test_points_for_order_total_rounds_down() -> None:
    assert points_for_order_total(Decimal("42.99")) == 42
    assert points_for_order_total(Decimal("42.50"), rate=2) == 85
    assert points_for_order_total(0) == 0
    assert points_for_order_total(Decimal("-5")) == 0
