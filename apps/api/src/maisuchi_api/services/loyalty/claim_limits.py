"""Per-day reward claim quota derived from the claim history."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from maisuchi_api.core.settings import settings
from maisuchi_api.models.loyalty import ClaimedReward
from maisuchi_api.services.loyalty.clock import Clock, ensure_aware, resolve_clock


@dataclass(frozen=True)
class DailyClaimStatus:
    used: int
    remaining: int
    limit: int

    @property
    def can_claim(self) -> bool:
        return self.remaining > 0


class DailyClaimLimiter:
    """Counts today's claims with a range query; there is no counter to reset.

    "Today" starts at local midnight in the store timezone
    (`settings.loyalty_timezone`), the same day boundary for every member.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        limit: int | None = None,
        timezone_name: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._db = session
        self.limit = settings.loyalty_daily_claim_limit if limit is None else limit
        self._zone = ZoneInfo(timezone_name or settings.loyalty_timezone)
        self._clock = resolve_clock(clock)

    def day_window(self, now: datetime | None = None) -> tuple[datetime, datetime]:
        """Return the current local calendar day as a UTC `[start, end)` range."""

        current = ensure_aware(now or self._clock())
        local_day = current.astimezone(self._zone).date()
        start = datetime.combine(local_day, time.min, tzinfo=self._zone)
        end = datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=self._zone)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    async def claims_today(self, user_id: UUID, *, now: datetime | None = None) -> int:
        start, end = self.day_window(now)
        stmt = select(func.count(ClaimedReward.id)).where(
            ClaimedReward.user_id == user_id,
            ClaimedReward.claimed_at >= start,
            ClaimedReward.claimed_at < end,
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one() or 0)

    async def remaining(self, user_id: UUID, *, now: datetime | None = None) -> int:
        return max(0, self.limit - await self.claims_today(user_id, now=now))

    async def status(self, user_id: UUID, *, now: datetime | None = None) -> DailyClaimStatus:
        used = await self.claims_today(user_id, now=now)
        return DailyClaimStatus(used=used, remaining=max(0, self.limit - used), limit=self.limit)
