"""Order credits parked until the member's identity can be resolved."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from maisuchi_api.db.upsert import conflict_insert
from maisuchi_api.models.loyalty import LoyaltyLedgerEntryKind, LoyaltyPointSource, PendingCredit
from maisuchi_api.observability.loyalty import get_loyalty_store
from maisuchi_api.services.loyalty.balances import BalanceCache
from maisuchi_api.services.loyalty.clock import Clock, resolve_clock
from maisuchi_api.services.loyalty.errors import (
    DuplicateCreditError,
    LoyaltyError,
    StorageError,
    ValidationError,
)
from maisuchi_api.services.loyalty.ledger import LedgerStore
from maisuchi_api.services.loyalty.profile_mirror import ProfileMirror


@dataclass(frozen=True)
class DrainResult:
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    points_applied: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "applied": self.applied,
            "skipped": self.skipped,
            "failed": self.failed,
            "pointsApplied": self.points_applied,
        }


def normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


class PendingCreditQueue:
    """At most one row per order; draining is idempotent against the ledger."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        ledger: LedgerStore,
        balances: BalanceCache,
        profile_mirror: ProfileMirror,
        clock: Clock | None = None,
    ) -> None:
        self._db = session
        self._ledger = ledger
        self._balances = balances
        self._mirror = profile_mirror
        self._clock = resolve_clock(clock)

    async def enqueue(
        self,
        order_id: str,
        user_id: UUID | None,
        points: int,
        *,
        guest_email: str | None = None,
        description: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        """Store or replace the deferred credit for `order_id`."""

        email = normalize_email(guest_email)
        if not order_id:
            raise ValidationError("order_id is required")
        if points <= 0:
            raise ValidationError("Pending credits require positive points", points=points)
        if user_id is None and email is None:
            raise ValidationError("A pending credit needs a user id or a guest email", order_id=order_id)

        now = self._clock()
        # `metadata_json` maps to the `metadata` column, so key by attribute.
        values = {
            PendingCredit.user_id: user_id,
            PendingCredit.guest_email: email,
            PendingCredit.points: int(points),
            PendingCredit.description: description,
            PendingCredit.metadata_json: dict(metadata or {}),
            PendingCredit.updated_at: now,
        }
        stmt = (
            conflict_insert(self._db, PendingCredit)
            .values({PendingCredit.order_id: order_id, PendingCredit.created_at: now, **values})
            .on_conflict_do_update(index_elements=[PendingCredit.order_id], set_=values)
        )
        try:
            await self._db.execute(stmt)
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageError("Could not queue pending credit", order_id=order_id) from exc

        logger.info(
            "Queued pending loyalty credit",
            order_id=order_id,
            user_id=str(user_id) if user_id else None,
            guest=email is not None,
            points=points,
        )

    async def attach_guest_credits(self, email: str, user_id: UUID) -> int:
        """Bind unclaimed guest credits for `email` to a member."""

        normalized = normalize_email(email)
        if normalized is None:
            return 0
        stmt = (
            update(PendingCredit)
            .where(
                PendingCredit.user_id.is_(None),
                func.lower(PendingCredit.guest_email) == normalized,
            )
            .values(user_id=user_id, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self._db.execute(stmt)
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageError("Could not attach guest credits", user_id=str(user_id)) from exc

        attached = int(result.rowcount or 0)
        if attached:
            logger.info("Attached guest loyalty credits", user_id=str(user_id), attached=attached)
        return attached

    async def list_pending(self, user_id: UUID) -> list[PendingCredit]:
        stmt = (
            select(PendingCredit)
            .where(PendingCredit.user_id == user_id)
            .order_by(PendingCredit.created_at.asc(), PendingCredit.order_id.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def drain(self, user_id: UUID) -> DrainResult:
        """Apply every pending credit for `user_id`.

        Each credit is its own transaction: ledger append, row removal and the
        balance cache update. The cache write sits in a savepoint; if it fails
        the credit still commits and the drift is left for reconciliation.
        """

        pending = [
            (row.order_id, int(row.points), row.description, dict(row.metadata_json or {}))
            for row in await self.list_pending(user_id)
        ]
        applied = skipped = failed = points_applied = 0

        for order_id, points, description, metadata in pending:
            try:
                if await self._ledger.has_order_credit(user_id, order_id):
                    await self._remove(order_id)
                    await self._db.commit()
                    skipped += 1
                    continue

                await self._ledger.append(
                    user_id,
                    points,
                    LoyaltyLedgerEntryKind.EARN,
                    source=LoyaltyPointSource.ORDER,
                    description=description,
                    order_id=order_id,
                    metadata=metadata,
                )
                await self._remove(order_id)
                await self._balances.apply_credit(user_id, points, order_id=order_id)
                await self._db.commit()
            except DuplicateCreditError:
                await self._db.rollback()
                if await self._discard(user_id, order_id):
                    skipped += 1
                else:
                    failed += 1
                continue
            except (LoyaltyError, SQLAlchemyError) as exc:
                await self._db.rollback()
                failed += 1
                logger.warning(
                    "Pending loyalty credit could not be applied",
                    user_id=str(user_id),
                    order_id=order_id,
                    error=str(exc),
                )
                continue

            applied += 1
            points_applied += points

        result = DrainResult(applied=applied, skipped=skipped, failed=failed, points_applied=points_applied)
        get_loyalty_store().record_drain(applied=applied, skipped=skipped, failed=failed)
        if pending:
            logger.info("Drained pending loyalty credits", user_id=str(user_id), **result.as_dict())
        if applied:
            await self._mirror.sync(user_id, await self._ledger.sum_by_user(user_id))
        return result

    async def _remove(self, order_id: str) -> None:
        await self._db.execute(delete(PendingCredit).where(PendingCredit.order_id == order_id))

    async def _discard(self, user_id: UUID, order_id: str) -> bool:
        """Drop a pending row whose order is already in the ledger."""

        try:
            await self._remove(order_id)
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.warning(
                "Pending loyalty credit could not be discarded",
                user_id=str(user_id),
                order_id=order_id,
                error=str(exc),
            )
            return False
        return True
