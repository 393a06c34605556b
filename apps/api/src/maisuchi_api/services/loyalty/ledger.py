"""Append-only loyalty ledger; the single source of truth for balances."""

from __future__ import annotations

import base64
from datetime import datetime
from typing import Any, Sequence, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from maisuchi_api.models.loyalty import (
    LoyaltyLedgerEntry,
    LoyaltyLedgerEntryKind,
    LoyaltyPointSource,
)
from maisuchi_api.services.loyalty.clock import Clock, resolve_clock
from maisuchi_api.services.loyalty.errors import DuplicateCreditError, StorageError, ValidationError

MAX_PAGE_SIZE = 100

LedgerCursor = Tuple[datetime, UUID]


class LedgerStore:
    """Reads and appends ledger entries within the caller's transaction.

    `append` only flushes; committing (or rolling back after a failure) is the
    caller's job, so a ledger row and the work that depends on it can share one
    transaction.
    """

    def __init__(self, session: AsyncSession, *, clock: Clock | None = None) -> None:
        self._db = session
        self._clock = resolve_clock(clock)

    async def append(
        self,
        user_id: UUID,
        points_delta: int,
        kind: LoyaltyLedgerEntryKind,
        *,
        source: LoyaltyPointSource,
        description: str | None = None,
        order_id: str | None = None,
        reward_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LoyaltyLedgerEntry:
        """Write one immutable entry.

        Raises `DuplicateCreditError` when `(user_id, order_id, kind)` already
        exists and `StorageError` for any other persistence failure. In both
        cases the session must be rolled back by the caller.
        """

        _check_delta_sign(kind, points_delta)

        entry = LoyaltyLedgerEntry(
            user_id=user_id,
            points_delta=int(points_delta),
            kind=kind,
            source=source,
            description=description,
            order_id=order_id,
            reward_id=reward_id,
            metadata_json=metadata or {},
            created_at=self._clock(),
        )
        self._db.add(entry)
        try:
            await self._db.flush()
        except IntegrityError as exc:
            if order_id is not None:
                logger.info(
                    "Ledger already holds entry for order",
                    user_id=str(user_id),
                    order_id=order_id,
                    kind=kind.value,
                )
                raise DuplicateCreditError(
                    "Points for this order were already recorded",
                    user_id=str(user_id),
                    order_id=order_id,
                ) from exc
            raise StorageError("Ledger append rejected by the store", user_id=str(user_id)) from exc
        except SQLAlchemyError as exc:
            logger.exception("Ledger append failed", user_id=str(user_id), kind=kind.value)
            raise StorageError("Ledger append failed", user_id=str(user_id)) from exc

        logger.debug(
            "Appended loyalty ledger entry",
            entry_id=str(entry.id),
            user_id=str(user_id),
            points_delta=entry.points_delta,
            kind=kind.value,
            order_id=order_id,
        )
        return entry

    async def list_by_user(self, user_id: UUID, limit: int = 10) -> list[LoyaltyLedgerEntry]:
        """Most-recent-first history for a user."""

        entries, _ = await self.list_window(user_id, limit=limit)
        return entries

    async def list_window(
        self,
        user_id: UUID,
        *,
        limit: int = 25,
        cursor: LedgerCursor | None = None,
        kinds: Sequence[LoyaltyLedgerEntryKind] | None = None,
    ) -> tuple[list[LoyaltyLedgerEntry], LedgerCursor | None]:
        """Return a page of entries plus the cursor for the next page."""

        bounded_limit = max(1, min(limit, MAX_PAGE_SIZE))
        stmt = (
            select(LoyaltyLedgerEntry)
            .where(LoyaltyLedgerEntry.user_id == user_id)
            .order_by(LoyaltyLedgerEntry.created_at.desc(), LoyaltyLedgerEntry.id.desc())
        )
        if kinds:
            stmt = stmt.where(LoyaltyLedgerEntry.kind.in_(list(kinds)))
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    LoyaltyLedgerEntry.created_at < cursor_time,
                    and_(
                        LoyaltyLedgerEntry.created_at == cursor_time,
                        LoyaltyLedgerEntry.id < cursor_id,
                    ),
                )
            )

        stmt = stmt.limit(bounded_limit + 1)
        result = await self._db.execute(stmt)
        rows = list(result.scalars().all())
        entries = rows[:bounded_limit]
        next_cursor: LedgerCursor | None = None
        if len(rows) > bounded_limit and entries:
            tail = entries[-1]
            next_cursor = (tail.created_at, tail.id)
        return entries, next_cursor

    async def sum_by_user(self, user_id: UUID) -> int:
        """Authoritative balance: sum over the user's whole history."""

        stmt = select(func.coalesce(func.sum(LoyaltyLedgerEntry.points_delta), 0)).where(
            LoyaltyLedgerEntry.user_id == user_id
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one() or 0)

    async def sum_all(self) -> dict[UUID, int]:
        stmt = select(
            LoyaltyLedgerEntry.user_id,
            func.coalesce(func.sum(LoyaltyLedgerEntry.points_delta), 0),
        ).group_by(LoyaltyLedgerEntry.user_id)
        result = await self._db.execute(stmt)
        return {row[0]: int(row[1] or 0) for row in result.all()}

    async def has_order_credit(self, user_id: UUID, order_id: str) -> bool:
        stmt = (
            select(LoyaltyLedgerEntry.id)
            .where(
                LoyaltyLedgerEntry.user_id == user_id,
                LoyaltyLedgerEntry.order_id == order_id,
                LoyaltyLedgerEntry.kind == LoyaltyLedgerEntryKind.EARN,
            )
            .limit(1)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none() is not None


def _check_delta_sign(kind: LoyaltyLedgerEntryKind, points_delta: int) -> None:
    if kind is LoyaltyLedgerEntryKind.EARN and points_delta <= 0:
        raise ValidationError("Earn entries require a positive delta", points_delta=points_delta)
    if kind is LoyaltyLedgerEntryKind.REDEEM and points_delta > 0:
        raise ValidationError("Redeem entries cannot add points", points_delta=points_delta)
    if kind is LoyaltyLedgerEntryKind.ADJUSTMENT and points_delta == 0:
        raise ValidationError("Adjustments require a non-zero delta")


def encode_time_uuid_cursor(timestamp: datetime, identifier: UUID) -> str:
    """Encode pagination cursor for chronological queries."""

    payload = f"{timestamp.isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_time_uuid_cursor(cursor: str) -> LedgerCursor:
    """Decode pagination cursor into datetime and UUID parts."""

    raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
    timestamp_str, identifier_str = raw.split("|", 1)
    return datetime.fromisoformat(timestamp_str), UUID(identifier_str)
