"""Service layer coordinating the loyalty ledger, balances and reward claims."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Literal, Optional, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from maisuchi_api.core.settings import settings
from maisuchi_api.models.loyalty import (
    LoyaltyLedgerEntry,
    LoyaltyLedgerEntryKind,
    LoyaltyPointSource,
    LoyaltyReward,
)
from maisuchi_api.observability.loyalty import get_loyalty_store
from maisuchi_api.services.loyalty.balances import BalanceCache, ReconciliationResult
from maisuchi_api.services.loyalty.catalog import RewardCatalog
from maisuchi_api.services.loyalty.claim_limits import DailyClaimLimiter, DailyClaimStatus
from maisuchi_api.services.loyalty.claims import ClaimEngine, ClaimResult
from maisuchi_api.services.loyalty.clock import Clock, resolve_clock
from maisuchi_api.services.loyalty.descriptions import (
    describe_points,
    format_currency,
    kind_for_source,
    points_for_order_total,
)
from maisuchi_api.services.loyalty.errors import (
    DuplicateCreditError,
    LoyaltyError,
    StorageError,
    ValidationError,
)
from maisuchi_api.services.loyalty.ledger import LedgerCursor, LedgerStore
from maisuchi_api.services.loyalty.pending_credits import DrainResult, PendingCreditQueue
from maisuchi_api.services.loyalty.profile_mirror import ProfileMirror

CreditStatus = Literal["applied", "duplicate", "deferred"]


@dataclass
class CreditOutcome:
    """Result of crediting an order or a bonus."""

    status: CreditStatus
    points: int
    user_id: Optional[UUID] = None
    order_id: Optional[str] = None
    balance: Optional[int] = None
    entry_id: Optional[UUID] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "points": self.points,
            "userId": str(self.user_id) if self.user_id else None,
            "orderId": self.order_id,
            "balance": self.balance,
            "entryId": str(self.entry_id) if self.entry_id else None,
        }


class LoyaltyService:
    """Coordinates loyalty credits, balances and reward claims for members.

    Every point change writes its ledger entry and the balance cache update in
    one transaction. For claims and admin adjustments a cache failure aborts the
    change, since the cache carries the non-negative guard. Credits update the
    cache inside a savepoint, so a cache failure rolls back only the cache write
    and the credit still commits.
    """

    def __init__(self, db_session: AsyncSession, *, clock: Clock | None = None) -> None:
        self._db = db_session
        self._clock = resolve_clock(clock)
        self.ledger = LedgerStore(db_session, clock=self._clock)
        self.balances = BalanceCache(db_session, self.ledger, clock=self._clock)
        self.limiter = DailyClaimLimiter(db_session, clock=self._clock)
        self.catalog = RewardCatalog(db_session, clock=self._clock)
        self.profile_mirror = ProfileMirror(db_session, clock=self._clock)
        self.claims = ClaimEngine(
            db_session,
            ledger=self.ledger,
            balances=self.balances,
            limiter=self.limiter,
            catalog=self.catalog,
            profile_mirror=self.profile_mirror,
            clock=self._clock,
        )
        self.pending_credits = PendingCreditQueue(
            db_session,
            ledger=self.ledger,
            balances=self.balances,
            profile_mirror=self.profile_mirror,
            clock=self._clock,
        )

    async def on_order_completed(
        self,
        order_id: str,
        user_id: UUID | None,
        points_earned: int | None = None,
        *,
        guest_email: str | None = None,
        order_total: Decimal | float | None = None,
    ) -> CreditOutcome:
        """Credit an order now, or park it until the buyer signs in."""

        if not order_id:
            raise ValidationError("order_id is required")
        points = points_earned
        if points is None and order_total is not None:
            points = points_for_order_total(order_total)
        if points is None or points <= 0:
            raise ValidationError("Orders must earn a positive number of points", order_id=order_id, points=points)

        metadata: dict[str, Any] = {"orderId": order_id}
        if order_total is not None:
            metadata["amount"] = str(order_total)
        description = _order_description(order_id, order_total)

        if user_id is not None:
            return await self.credit_points(
                user_id,
                points,
                source=LoyaltyPointSource.ORDER,
                order_id=order_id,
                metadata=metadata,
                description=description,
            )

        await self.pending_credits.enqueue(
            order_id,
            None,
            points,
            guest_email=guest_email,
            description=description,
            metadata=metadata,
        )
        get_loyalty_store().record_credit("deferred")
        return CreditOutcome(status="deferred", points=points, order_id=order_id)

    async def on_user_authenticated(self, user_id: UUID, *, email: str | None = None) -> DrainResult:
        if email:
            await self.pending_credits.attach_guest_credits(email, user_id)
        return await self.pending_credits.drain(user_id)

    async def credit_points(
        self,
        user_id: UUID,
        points: int,
        *,
        source: LoyaltyPointSource = LoyaltyPointSource.ORDER,
        order_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        description: str | None = None,
    ) -> CreditOutcome:
        """Append an earn entry, then bring the cache and profile along.

        A duplicate `order_id` is reported as `duplicate` rather than raised.
        """

        if points <= 0:
            raise ValidationError("Credits require a positive number of points", points=points)
        if kind_for_source(source) is not LoyaltyLedgerEntryKind.EARN:
            raise ValidationError("Source cannot be used for credits", source=source.value)

        store = get_loyalty_store()
        try:
            entry = await self.ledger.append(
                user_id,
                points,
                LoyaltyLedgerEntryKind.EARN,
                source=source,
                description=description or describe_points(source, metadata),
                order_id=order_id,
                metadata=metadata,
            )
            entry_id = entry.id
            balance = await self.balances.apply_credit(user_id, points, order_id=order_id)
            await self._db.commit()
        except DuplicateCreditError:
            await self._db.rollback()
            store.record_credit("duplicate")
            return CreditOutcome(status="duplicate", points=points, user_id=user_id, order_id=order_id)
        except LoyaltyError:
            await self._db.rollback()
            raise
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception("Loyalty credit commit failed", user_id=str(user_id), order_id=order_id)
            raise StorageError("Could not record loyalty credit", user_id=str(user_id)) from exc

        if balance is None:
            balance = await self.ledger.sum_by_user(user_id)
        store.record_credit("applied")
        logger.info(
            "Credited loyalty points",
            user_id=str(user_id),
            order_id=order_id,
            points=points,
            source=source.value,
            balance=balance,
        )
        await self.profile_mirror.sync(user_id, balance)
        return CreditOutcome(
            status="applied",
            points=points,
            user_id=user_id,
            order_id=order_id,
            balance=balance,
            entry_id=entry_id,
        )

    async def adjust_points(self, user_id: UUID, delta: int, *, reason: str, staff: str | None = None) -> int:
        """Admin correction; negative adjustments cannot overdraw the balance."""

        if not delta:
            raise ValidationError("Adjustments require a non-zero delta")
        metadata = {"reason": reason, "staff": staff}
        try:
            await self.balances.verify(user_id)
            await self.ledger.append(
                user_id,
                delta,
                LoyaltyLedgerEntryKind.ADJUSTMENT,
                source=LoyaltyPointSource.ADJUSTMENT,
                description=describe_points(LoyaltyPointSource.ADJUSTMENT, metadata),
                metadata=metadata,
            )
            balance = await self.balances.apply_delta(user_id, delta)
            await self._db.commit()
        except LoyaltyError:
            await self._db.rollback()
            raise
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageError("Could not record adjustment", user_id=str(user_id)) from exc

        logger.info("Adjusted loyalty points", user_id=str(user_id), delta=delta, reason=reason, staff=staff)
        await self.profile_mirror.sync(user_id, balance)
        return balance

    async def get_balance(self, user_id: UUID) -> int:
        cached = await self.balances.read_cached(user_id)
        if cached is None:
            return await self.ledger.sum_by_user(user_id)
        return cached

    async def get_history(self, user_id: UUID, limit: int | None = None) -> list[LoyaltyLedgerEntry]:
        return await self.ledger.list_by_user(user_id, limit or settings.loyalty_history_default_limit)

    async def get_history_page(
        self,
        user_id: UUID,
        *,
        limit: int | None = None,
        cursor: LedgerCursor | None = None,
        kinds: Sequence[LoyaltyLedgerEntryKind] | None = None,
    ) -> tuple[list[LoyaltyLedgerEntry], LedgerCursor | None]:
        return await self.ledger.list_window(
            user_id,
            limit=limit or settings.loyalty_history_default_limit,
            cursor=cursor,
            kinds=kinds,
        )

    async def get_daily_claim_status(self, user_id: UUID) -> DailyClaimStatus:
        return await self.limiter.status(user_id)

    async def list_available_rewards(self, user_id: UUID | None = None) -> list[LoyaltyReward]:
        return await self.catalog.list_available(user_id)

    async def claim_reward(self, user_id: UUID, reward_id: UUID) -> ClaimResult:
        return await self.claims.claim(user_id, reward_id)

    async def reconcile(self, user_id: UUID) -> ReconciliationResult:
        try:
            result = await self.balances.reconcile(user_id)
            await self._db.commit()
        except LoyaltyError:
            await self._db.rollback()
            raise
        get_loyalty_store().record_reconciliation(checked=1, repaired=int(result.repaired))
        await self.profile_mirror.sync(user_id, result.ledger_points)
        return result


def _order_description(order_id: str, order_total: Decimal | float | None) -> str:
    if order_total is None:
        return f"Order • {order_id}"
    return f"Order • {format_currency(order_total)}"
