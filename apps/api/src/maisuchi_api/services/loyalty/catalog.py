"""Reward catalog reads for members and maintenance for the admin console."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from maisuchi_api.models.loyalty import ClaimedReward, LoyaltyReward, LoyaltyRewardType
from maisuchi_api.services.loyalty.clock import Clock, ensure_aware, resolve_clock
from maisuchi_api.services.loyalty.errors import NotFoundError, StorageError, ValidationError

_UPDATABLE_FIELDS = {
    "name",
    "description",
    "reward_type",
    "points_required",
    "discount_percentage",
    "free_item_name",
    "is_active",
    "valid_until",
    "metadata_json",
}
_NOT_NULL_FIELDS = {"name", "reward_type", "points_required", "is_active"}


@dataclass
class RewardAnalytics:
    reward: LoyaltyReward
    total_claimed: int
    total_used: int
    active_users: int
    monthly_breakdown: dict[str, int] = field(default_factory=dict)

    @property
    def pending_redemption(self) -> int:
        return self.total_claimed - self.total_used

    @property
    def redemption_rate(self) -> int:
        """Percentage of claims already used in store, rounded."""

        if not self.total_claimed:
            return 0
        return round(self.total_used * 100 / self.total_claimed)


def is_reward_expired(reward: LoyaltyReward, now: datetime) -> bool:
    if reward.valid_until is None:
        return False
    return ensure_aware(reward.valid_until) <= ensure_aware(now)


class RewardCatalog:
    def __init__(self, session: AsyncSession, *, clock: Clock | None = None) -> None:
        self._db = session
        self._clock = resolve_clock(clock)

    async def get(self, reward_id: UUID) -> LoyaltyReward:
        reward = await self._db.get(LoyaltyReward, reward_id)
        if reward is None:
            raise NotFoundError("Reward not found", reward_id=str(reward_id))
        return reward

    async def list_available(self, user_id: UUID | None = None) -> list[LoyaltyReward]:
        """Active rewards that have not passed `valid_until`, cheapest first.

        Every member sees the same list; repeated claims are allowed so nothing
        is hidden per user.
        """

        now = self._clock()
        stmt = (
            select(LoyaltyReward)
            .where(
                LoyaltyReward.is_active.is_(True),
                or_(LoyaltyReward.valid_until.is_(None), LoyaltyReward.valid_until > now),
            )
            .order_by(LoyaltyReward.points_required.asc(), LoyaltyReward.name.asc())
        )
        result = await self._db.execute(stmt)
        rewards = list(result.scalars().all())
        logger.debug(
            "Fetched available loyalty rewards",
            count=len(rewards),
            user_id=str(user_id) if user_id else None,
        )
        return rewards

    async def list_all(self) -> list[LoyaltyReward]:
        stmt = select(LoyaltyReward).order_by(LoyaltyReward.created_at.desc())
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def create_reward(
        self,
        *,
        name: str,
        reward_type: LoyaltyRewardType,
        points_required: int,
        description: str | None = None,
        discount_percentage: int | None = None,
        free_item_name: str | None = None,
        valid_until: datetime | None = None,
        is_active: bool = True,
        metadata: Mapping[str, Any] | None = None,
    ) -> LoyaltyReward:
        _validate_reward_fields(name=name, points_required=points_required, discount_percentage=discount_percentage)
        now = self._clock()
        reward = LoyaltyReward(
            name=name.strip(),
            reward_type=reward_type,
            points_required=points_required,
            description=description,
            discount_percentage=discount_percentage,
            free_item_name=free_item_name,
            valid_until=ensure_aware(valid_until) if valid_until else None,
            is_active=is_active,
            metadata_json=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self._db.add(reward)
        await self._flush("Could not create reward", name=reward.name)
        logger.info(
            "Created loyalty reward",
            reward_id=str(reward.id),
            reward_type=reward_type.value,
            points_required=points_required,
        )
        return reward

    async def create_rewards(self, payloads: Iterable[Mapping[str, Any]]) -> list[LoyaltyReward]:
        """Bulk creation for seasonal promotions; all or nothing within the transaction."""

        created = [await self.create_reward(**dict(payload)) for payload in payloads]
        logger.info("Created loyalty rewards in bulk", count=len(created))
        return created

    async def update_reward(self, reward_id: UUID, **changes: Any) -> LoyaltyReward:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError("Unsupported reward fields", fields=sorted(unknown))
        nulled = sorted(key for key in _NOT_NULL_FIELDS & set(changes) if changes[key] is None)
        if nulled:
            raise ValidationError("Reward fields cannot be cleared", fields=nulled)

        reward = await self.get(reward_id)
        _validate_reward_fields(
            name=changes.get("name", reward.name),
            points_required=changes.get("points_required", reward.points_required),
            discount_percentage=changes.get("discount_percentage", reward.discount_percentage),
        )
        if changes.get("valid_until") is not None:
            changes["valid_until"] = ensure_aware(changes["valid_until"])
        for key, value in changes.items():
            setattr(reward, key, value)
        reward.updated_at = self._clock()
        await self._flush("Could not update reward", reward_id=str(reward_id))
        logger.info("Updated loyalty reward", reward_id=str(reward_id), fields=sorted(changes))
        return reward

    async def set_active(self, reward_id: UUID, is_active: bool) -> LoyaltyReward:
        return await self.update_reward(reward_id, is_active=is_active)

    async def archive_expired(self) -> int:
        """Deactivate active rewards whose validity window has closed."""

        now = self._clock()
        stmt = (
            update(LoyaltyReward)
            .where(
                LoyaltyReward.is_active.is_(True),
                LoyaltyReward.valid_until.is_not(None),
                LoyaltyReward.valid_until <= now,
            )
            .values(is_active=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self._db.execute(stmt)
        except SQLAlchemyError as exc:
            raise StorageError("Could not archive expired rewards") from exc
        archived = int(result.rowcount or 0)
        logger.info("Archived expired loyalty rewards", archived=archived)
        return archived

    async def reward_analytics(self, reward_id: UUID) -> RewardAnalytics:
        reward = await self.get(reward_id)
        stmt = select(ClaimedReward).where(ClaimedReward.reward_id == reward_id)
        result = await self._db.execute(stmt)
        return _summarize_claims(reward, list(result.scalars().all()))

    async def list_with_analytics(self) -> list[RewardAnalytics]:
        rewards = await self.list_all()
        result = await self._db.execute(select(ClaimedReward))
        claims_by_reward: dict[UUID, list[ClaimedReward]] = {}
        for claim in result.scalars().all():
            claims_by_reward.setdefault(claim.reward_id, []).append(claim)
        return [_summarize_claims(reward, claims_by_reward.get(reward.id, [])) for reward in rewards]

    async def commit(self) -> None:
        """Commit catalog changes made in the current transaction."""

        try:
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageError("Could not save reward changes") from exc

    async def _flush(self, message: str, **context: Any) -> None:
        try:
            await self._db.flush()
        except SQLAlchemyError as exc:
            raise StorageError(message, **context) from exc


def _summarize_claims(reward: LoyaltyReward, claims: list[ClaimedReward]) -> RewardAnalytics:
    monthly: Counter[str] = Counter(ensure_aware(claim.claimed_at).strftime("%Y-%m") for claim in claims)
    return RewardAnalytics(
        reward=reward,
        total_claimed=len(claims),
        total_used=sum(1 for claim in claims if claim.is_used),
        active_users=len({claim.user_id for claim in claims}),
        monthly_breakdown=dict(sorted(monthly.items())),
    )


def _validate_reward_fields(*, name: str | None, points_required: int, discount_percentage: int | None) -> None:
    if not name or not name.strip():
        raise ValidationError("Reward name is required")
    if points_required is None or points_required < 0:
        raise ValidationError("points_required must be zero or positive", points_required=points_required)
    if discount_percentage is not None and not 0 < discount_percentage <= 100:
        raise ValidationError("discount_percentage must be between 1 and 100", discount_percentage=discount_percentage)
