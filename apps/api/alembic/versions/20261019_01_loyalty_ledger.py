"""Create loyalty ledger, balance, reward and claim tables."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


LEDGER_KINDS = ("earn", "redeem", "adjustment")
POINT_SOURCES = (
    "order",
    "bonus",
    "reward",
    "birthday",
    "referral",
    "tier_upgrade",
    "welcome",
    "review",
    "social_share",
    "redemption",
    "adjustment",
)
REWARD_TYPES = ("discount", "free_item", "birthday", "special")


def _uuid() -> sa.types.TypeEngine:
    return sa.dialects.postgresql.UUID(as_uuid=True)


def upgrade() -> None:
    op.create_table(
        "customer_profiles",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("phone_number", sa.String(32), nullable=True),
        sa.Column("total_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_customer_profiles_user_id", "customer_profiles", ["user_id"], unique=True)
    op.create_index("ix_customer_profiles_email", "customer_profiles", ["email"])

    op.create_table(
        "loyalty_rewards",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("reward_type", sa.Enum(*REWARD_TYPES, name="loyalty_reward_type"), nullable=False),
        sa.Column("points_required", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("discount_percentage", sa.Integer(), nullable=True),
        sa.Column("free_item_name", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "loyalty_ledger_entries",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("points_delta", sa.Integer(), nullable=False),
        sa.Column("kind", sa.Enum(*LEDGER_KINDS, name="loyalty_ledger_entry_kind"), nullable=False),
        sa.Column("source", sa.Enum(*POINT_SOURCES, name="loyalty_point_source"), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column(
            "reward_id",
            _uuid(),
            sa.ForeignKey("loyalty_rewards.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "order_id", "kind", name="uq_loyalty_ledger_user_order_kind"),
    )
    op.create_index("ix_loyalty_ledger_user_created", "loyalty_ledger_entries", ["user_id", "created_at"])

    op.create_table(
        "loyalty_balances",
        sa.Column("user_id", _uuid(), primary_key=True),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "loyalty_claimed_rewards",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("reward_id", _uuid(), sa.ForeignKey("loyalty_rewards.id"), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("redemption_code", sa.String(), nullable=False),
        sa.Column("is_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("redeemed_by", sa.String(), nullable=True),
        sa.Column("redemption_method", sa.String(), nullable=True),
    )
    op.create_index(
        "ix_loyalty_claimed_rewards_redemption_code",
        "loyalty_claimed_rewards",
        ["redemption_code"],
        unique=True,
    )
    op.create_index(
        "ix_loyalty_claimed_rewards_user_claimed",
        "loyalty_claimed_rewards",
        ["user_id", "claimed_at"],
    )

    op.create_table(
        "loyalty_pending_credits",
        sa.Column("order_id", sa.String(), primary_key=True),
        sa.Column("user_id", _uuid(), nullable=True),
        sa.Column("guest_email", sa.String(), nullable=True),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_loyalty_pending_credits_user_id", "loyalty_pending_credits", ["user_id"])
    op.create_index("ix_loyalty_pending_credits_guest_email", "loyalty_pending_credits", ["guest_email"])

    op.create_table(
        "loyalty_reward_redemption_logs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "claimed_reward_id",
            _uuid(),
            sa.ForeignKey("loyalty_claimed_rewards.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("redemption_code", sa.String(), nullable=False),
        sa.Column("redeemed_by", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False, server_default="in_person"),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("loyalty_reward_redemption_logs")
    op.drop_index("ix_loyalty_pending_credits_guest_email", table_name="loyalty_pending_credits")
    op.drop_index("ix_loyalty_pending_credits_user_id", table_name="loyalty_pending_credits")
    op.drop_table("loyalty_pending_credits")
    op.drop_index("ix_loyalty_claimed_rewards_user_claimed", table_name="loyalty_claimed_rewards")
    op.drop_index("ix_loyalty_claimed_rewards_redemption_code", table_name="loyalty_claimed_rewards")
    op.drop_table("loyalty_claimed_rewards")
    op.drop_table("loyalty_balances")
    op.drop_index("ix_loyalty_ledger_user_created", table_name="loyalty_ledger_entries")
    op.drop_table("loyalty_ledger_entries")
    op.drop_table("loyalty_rewards")
    op.drop_index("ix_customer_profiles_email", table_name="customer_profiles")
    op.drop_index("ix_customer_profiles_user_id", table_name="customer_profiles")
    op.drop_table("customer_profiles")

    bind = op.get_bind()
    for enum_name in ("loyalty_point_source", "loyalty_ledger_entry_kind", "loyalty_reward_type"):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
