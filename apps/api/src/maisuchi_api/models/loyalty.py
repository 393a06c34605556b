"""Loyalty ledger, balance, reward and claim models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    false,
    true,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from maisuchi_api.db.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class LoyaltyLedgerEntryKind(str, Enum):
    """Ledger entry kinds; the sign of the delta follows the kind."""

    EARN = "earn"
    REDEEM = "redeem"
    ADJUSTMENT = "adjustment"


class LoyaltyPointSource(str, Enum):
    """What caused a ledger entry, used for member-facing descriptions."""

    ORDER = "order"
    BONUS = "bonus"
    REWARD = "reward"
    BIRTHDAY = "birthday"
    REFERRAL = "referral"
    TIER_UPGRADE = "tier_upgrade"
    WELCOME = "welcome"
    REVIEW = "review"
    SOCIAL_SHARE = "social_share"
    REDEMPTION = "redemption"
    ADJUSTMENT = "adjustment"


class LoyaltyRewardType(str, Enum):
    DISCOUNT = "discount"
    FREE_ITEM = "free_item"
    BIRTHDAY = "birthday"
    SPECIAL = "special"


class LoyaltyLedgerEntry(Base):
    """Append-only point transaction; never updated once written."""

    __tablename__ = "loyalty_ledger_entries"
    __table_args__ = (
        UniqueConstraint("user_id", "order_id", "kind", name="uq_loyalty_ledger_user_order_kind"),
        Index("ix_loyalty_ledger_user_created", "user_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False)
    points_delta = Column(Integer, nullable=False)
    kind = Column(SqlEnum(LoyaltyLedgerEntryKind, name="loyalty_ledger_entry_kind", values_callable=_enum_values), nullable=False)
    source = Column(
        SqlEnum(LoyaltyPointSource, name="loyalty_point_source", values_callable=_enum_values),
        nullable=False,
        default=LoyaltyPointSource.ORDER,
    )
    description = Column(String, nullable=True)
    order_id = Column(String, nullable=True)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_rewards.id", ondelete="SET NULL"), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class LoyaltyBalance(Base):
    """Denormalized per-user balance derived from the ledger."""

    __tablename__ = "loyalty_balances"

    user_id = Column(UUID(as_uuid=True), primary_key=True)
    points = Column(Integer, nullable=False, default=0, server_default="0")
    version = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class LoyaltyReward(Base):
    """Claimable reward managed by the admin console."""

    __tablename__ = "loyalty_rewards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    reward_type = Column(SqlEnum(LoyaltyRewardType, name="loyalty_reward_type", values_callable=_enum_values), nullable=False)
    points_required = Column(Integer, nullable=False, default=0, server_default="0")
    discount_percentage = Column(Integer, nullable=True)
    free_item_name = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    valid_until = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    claims = relationship("ClaimedReward", back_populates="reward")


class ClaimedReward(Base):
    """One successful claim; repeated claims of the same reward are separate rows."""

    __tablename__ = "loyalty_claimed_rewards"
    __table_args__ = (
        Index("ix_loyalty_claimed_rewards_user_claimed", "user_id", "claimed_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_rewards.id"), nullable=False)
    claimed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    redemption_code = Column(String, nullable=False, unique=True, index=True)
    is_used = Column(Boolean, nullable=False, default=False, server_default=false())
    used_at = Column(DateTime(timezone=True), nullable=True)
    redeemed_by = Column(String, nullable=True)
    redemption_method = Column(String, nullable=True)

    reward = relationship("LoyaltyReward", back_populates="claims")


class PendingCredit(Base):
    """Deferred order credit awaiting a resolvable identity."""

    __tablename__ = "loyalty_pending_credits"

    order_id = Column(String, primary_key=True)
    user_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    guest_email = Column(String, nullable=True, index=True)
    points = Column(Integer, nullable=False)
    description = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class RewardRedemptionLog(Base):
    """Audit trail for in-store redemption of claimed rewards."""

    __tablename__ = "loyalty_reward_redemption_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    claimed_reward_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_claimed_rewards.id", ondelete="CASCADE"),
        nullable=False,
    )
    redemption_code = Column(String, nullable=False)
    redeemed_by = Column(String, nullable=False)
    method = Column(String, nullable=False, default="in_person")
    redeemed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
