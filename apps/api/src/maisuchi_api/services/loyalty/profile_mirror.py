"""Best-effort copy of the balance onto the customer profile."""

from __future__ import annotations

from uuid import UUID

from loguru import logger
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from maisuchi_api.models.customer_profile import CustomerProfile
from maisuchi_api.observability.loyalty import get_loyalty_store
from maisuchi_api.services.loyalty.clock import Clock, resolve_clock


class ProfileMirror:
    """Non-authoritative; a failure here never touches ledger or balance."""

    def __init__(self, session: AsyncSession, *, clock: Clock | None = None) -> None:
        self._db = session
        self._clock = resolve_clock(clock)

    async def sync(self, user_id: UUID, points: int) -> bool:
        """Write `points` to the profile in its own commit; returns False on failure."""

        stmt = (
            update(CustomerProfile)
            .where(CustomerProfile.user_id == user_id)
            .values(total_points=points, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        try:
            await self._db.execute(stmt)
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            get_loyalty_store().record_mirror_failure()
            logger.warning("Profile points mirror failed", user_id=str(user_id), error=str(exc))
            return False
        return True
