"""Per-user balance cache kept consistent with the ledger."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from maisuchi_api.core.settings import settings
from maisuchi_api.db.upsert import conflict_insert
from maisuchi_api.models.loyalty import LoyaltyBalance
from maisuchi_api.observability.loyalty import get_loyalty_store
from maisuchi_api.services.loyalty.clock import Clock, resolve_clock
from maisuchi_api.services.loyalty.errors import (
    ConcurrencyConflictError,
    InsufficientPointsError,
    LoyaltyError,
    StorageError,
)
from maisuchi_api.services.loyalty.ledger import LedgerStore


@dataclass(frozen=True)
class ReconciliationResult:
    user_id: UUID
    cached_points: int
    ledger_points: int
    repaired: bool


class BalanceCache:
    """Denormalized balance rows written only after the ledger.

    Writes use a version column as a compare-and-swap token: a delta is applied
    only if the row still carries the version that was read, otherwise the read
    is repeated. The row therefore acts as the per-user serialization point for
    debits and claims.
    """

    def __init__(
        self,
        session: AsyncSession,
        ledger: LedgerStore,
        *,
        max_retries: int | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._db = session
        self._ledger = ledger
        self._max_retries = max_retries or settings.loyalty_balance_max_retries
        self._clock = resolve_clock(clock)

    async def ensure_record(self, user_id: UUID) -> None:
        """Create a zero balance row if none exists; safe under concurrency."""

        now = self._clock()
        stmt = (
            conflict_insert(self._db, LoyaltyBalance)
            .values(user_id=user_id, points=0, version=0, created_at=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=[LoyaltyBalance.user_id])
        )
        try:
            await self._db.execute(stmt)
        except SQLAlchemyError as exc:
            raise StorageError("Could not create balance record", user_id=str(user_id)) from exc

    async def read(self, user_id: UUID) -> int:
        row = await self._read_row(user_id)
        return row[0] if row else 0

    async def read_cached(self, user_id: UUID) -> int | None:
        """Cached points, or None when no balance row exists yet."""

        row = await self._read_row(user_id)
        return row[0] if row else None

    async def apply_delta(self, user_id: UUID, delta: int, *, allow_negative: bool = False) -> int:
        """Add `delta` and return the new balance.

        Raises `InsufficientPointsError` without writing when the result would
        drop below zero, and `ConcurrencyConflictError` when every attempt lost
        the compare-and-swap.
        """

        try:
            await self.ensure_record(user_id)
            for attempt in range(1, self._max_retries + 1):
                row = await self._read_row(user_id)
                current, version = row if row else (0, 0)
                new_balance = current + delta
                if new_balance < 0 and not allow_negative:
                    raise InsufficientPointsError(
                        "Insufficient points",
                        balance=current,
                        required=-delta,
                        user_id=str(user_id),
                    )

                stmt = (
                    update(LoyaltyBalance)
                    .where(LoyaltyBalance.user_id == user_id, LoyaltyBalance.version == version)
                    .values(
                        points=LoyaltyBalance.points + delta,
                        version=LoyaltyBalance.version + 1,
                        updated_at=self._clock(),
                    )
                    .execution_options(synchronize_session=False)
                )
                result = await self._db.execute(stmt)
                if result.rowcount == 1:
                    return new_balance

                logger.info(
                    "Balance compare-and-swap lost race",
                    user_id=str(user_id),
                    attempt=attempt,
                    version=version,
                )
        except SQLAlchemyError as exc:
            raise StorageError("Balance update failed", user_id=str(user_id)) from exc

        raise ConcurrencyConflictError(
            "Balance changed concurrently; retry the operation",
            user_id=str(user_id),
            attempts=self._max_retries,
        )

    async def apply_credit(self, user_id: UUID, points: int, *, order_id: str | None = None) -> int | None:
        """Add an earned credit inside a savepoint of the caller's transaction.

        Call after the ledger entry has been flushed so both commit together.
        Returns the new cached balance, or None when the cache write failed; in
        that case only the savepoint is rolled back and the ledger entry still
        commits with the outer transaction.
        """

        try:
            async with self._db.begin_nested():
                return await self.apply_delta(user_id, points, allow_negative=True)
        except (LoyaltyError, SQLAlchemyError) as exc:
            get_loyalty_store().record_cache_failure()
            logger.warning(
                "Balance cache update failed; ledger entry kept",
                user_id=str(user_id),
                order_id=order_id,
                error=str(exc),
            )
            return None

    async def reconcile(self, user_id: UUID) -> ReconciliationResult:
        """Overwrite the cached value with the ledger sum.

        The write is guarded by the row version so a claim that commits
        between the ledger read and the write forces a fresh read.
        """

        try:
            await self.ensure_record(user_id)
            for _ in range(self._max_retries):
                row = await self._read_row(user_id)
                cached_points, version = row if row else (0, 0)
                ledger_points = await self._ledger.sum_by_user(user_id)
                stmt = (
                    update(LoyaltyBalance)
                    .where(LoyaltyBalance.user_id == user_id, LoyaltyBalance.version == version)
                    .values(
                        points=ledger_points,
                        version=LoyaltyBalance.version + 1,
                        updated_at=self._clock(),
                    )
                    .execution_options(synchronize_session=False)
                )
                result = await self._db.execute(stmt)
                if result.rowcount == 1:
                    break
            else:
                raise ConcurrencyConflictError("Balance kept changing during reconciliation", user_id=str(user_id))
        except SQLAlchemyError as exc:
            raise StorageError("Balance reconciliation failed", user_id=str(user_id)) from exc

        repaired = cached_points != ledger_points
        if repaired:
            logger.warning(
                "Repaired loyalty balance drift",
                user_id=str(user_id),
                cached_points=cached_points,
                ledger_points=ledger_points,
            )
        if ledger_points < 0:
            logger.error("Ledger sum is negative", user_id=str(user_id), ledger_points=ledger_points)
        return ReconciliationResult(
            user_id=user_id,
            cached_points=cached_points,
            ledger_points=ledger_points,
            repaired=repaired,
        )

    async def verify(self, user_id: UUID) -> ReconciliationResult:
        """Compare cache and ledger, reconciling only when they disagree."""

        ledger_points = await self._ledger.sum_by_user(user_id)
        cached_points = await self.read(user_id)
        if cached_points == ledger_points:
            return ReconciliationResult(
                user_id=user_id,
                cached_points=cached_points,
                ledger_points=ledger_points,
                repaired=False,
            )
        return await self.reconcile(user_id)

    async def list_cached(self) -> dict[UUID, int]:
        result = await self._db.execute(select(LoyaltyBalance.user_id, LoyaltyBalance.points))
        return {row[0]: int(row[1]) for row in result.all()}

    async def _read_row(self, user_id: UUID) -> tuple[int, int] | None:
        stmt = select(LoyaltyBalance.points, LoyaltyBalance.version).where(LoyaltyBalance.user_id == user_id)
        result = await self._db.execute(stmt)
        row = result.first()
        if row is None:
            return None
        return int(row[0]), int(row[1])
