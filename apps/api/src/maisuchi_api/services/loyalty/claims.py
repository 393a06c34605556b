"""Reward claims: validate, debit the ledger, issue a redemption code."""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from maisuchi_api.core.settings import settings
from maisuchi_api.models.loyalty import (
    ClaimedReward,
    LoyaltyLedgerEntryKind,
    LoyaltyPointSource,
    LoyaltyReward,
    RewardRedemptionLog,
)
from maisuchi_api.observability.loyalty import get_loyalty_store
from maisuchi_api.services.loyalty.balances import BalanceCache
from maisuchi_api.services.loyalty.catalog import RewardCatalog, is_reward_expired
from maisuchi_api.services.loyalty.claim_limits import DailyClaimLimiter, DailyClaimStatus
from maisuchi_api.services.loyalty.clock import Clock, resolve_clock
from maisuchi_api.services.loyalty.descriptions import describe_points
from maisuchi_api.services.loyalty.errors import (
    DailyLimitExceededError,
    ExpiredRewardError,
    InsufficientPointsError,
    LoyaltyError,
    NotFoundError,
    StorageError,
)
from maisuchi_api.services.loyalty.ledger import LedgerStore
from maisuchi_api.services.loyalty.profile_mirror import ProfileMirror

CODE_ALPHABET = "".join(ch for ch in string.ascii_uppercase + string.digits if ch not in "0O1I")
CODE_GROUPS = 3
CODE_GROUP_LENGTH = 4
MAX_CODE_ATTEMPTS = 10


@dataclass(frozen=True)
class ClaimResult:
    redemption_code: str
    claimed_reward_id: UUID
    reward_id: UUID
    reward_name: str
    points_spent: int
    balance: int
    daily_status: DailyClaimStatus
    success: bool = True


def generate_redemption_code(prefix: str | None = None) -> str:
    groups = [
        "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_GROUP_LENGTH))
        for _ in range(CODE_GROUPS)
    ]
    return "-".join([prefix or settings.loyalty_redemption_code_prefix, *groups])


class ClaimEngine:
    """Runs one claim as a single transaction.

    The ledger debit, the balance compare-and-swap, the daily-limit recount and
    the claim row commit together or not at all. The balance row CAS is what
    serializes concurrent claims for the same member, including free rewards
    whose debit is zero.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        ledger: LedgerStore,
        balances: BalanceCache,
        limiter: DailyClaimLimiter,
        catalog: RewardCatalog,
        profile_mirror: ProfileMirror,
        clock: Clock | None = None,
    ) -> None:
        self._db = session
        self._ledger = ledger
        self._balances = balances
        self._limiter = limiter
        self._catalog = catalog
        self._mirror = profile_mirror
        self._clock = resolve_clock(clock)

    async def claim(self, user_id: UUID, reward_id: UUID) -> ClaimResult:
        log = logger.bind(claim_attempt=uuid4().hex[:12], user_id=str(user_id), reward_id=str(reward_id))
        log.info("Reward claim requested")
        store = get_loyalty_store()

        try:
            reward = await self._validate(user_id, reward_id)
            log.info("Reward claim validated", points_required=reward.points_required)

            cost = int(reward.points_required)
            await self._ledger.append(
                user_id,
                -cost,
                LoyaltyLedgerEntryKind.REDEEM,
                source=LoyaltyPointSource.REDEMPTION,
                description=describe_points(LoyaltyPointSource.REDEMPTION, {"rewardName": reward.name}),
                reward_id=reward.id,
                metadata={"rewardName": reward.name, "rewardType": reward.reward_type.value},
            )
            balance = await self._balances.apply_delta(user_id, -cost)
            log.info("Reward claim debited", points_spent=cost, balance=balance)

            used = await self._limiter.claims_today(user_id)
            if used >= self._limiter.limit:
                raise DailyLimitExceededError(
                    "Daily claim limit reached",
                    used=used,
                    limit=self._limiter.limit,
                )

            claim = ClaimedReward(
                user_id=user_id,
                reward_id=reward.id,
                claimed_at=self._clock(),
                redemption_code=await self._unique_code(),
                is_used=False,
            )
            self._db.add(claim)
            await self._db.flush()
            await self._db.commit()
        except LoyaltyError as exc:
            await self._db.rollback()
            store.record_claim(exc.code)
            log.info("Reward claim rejected", reason=exc.code, detail=exc.message)
            raise
        except SQLAlchemyError as exc:
            await self._db.rollback()
            store.record_claim(StorageError.code)
            log.exception("Reward claim failed in storage")
            raise StorageError("Could not record reward claim", user_id=str(user_id)) from exc

        store.record_claim("issued")
        log.info("Reward claim issued", redemption_code=claim.redemption_code, claimed_reward_id=str(claim.id))

        limit = self._limiter.limit
        result = ClaimResult(
            redemption_code=claim.redemption_code,
            claimed_reward_id=claim.id,
            reward_id=reward.id,
            reward_name=reward.name,
            points_spent=cost,
            balance=balance,
            daily_status=DailyClaimStatus(used=used + 1, remaining=max(0, limit - used - 1), limit=limit),
        )
        await self._mirror.sync(user_id, balance)
        return result

    async def list_claimed(self, user_id: UUID, *, limit: int = 50) -> list[ClaimedReward]:
        stmt = (
            select(ClaimedReward)
            .options(selectinload(ClaimedReward.reward))
            .where(ClaimedReward.user_id == user_id)
            .order_by(ClaimedReward.claimed_at.desc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def redeem_in_person(self, code: str, staff_name: str, *, method: str = "in_person") -> ClaimedReward:
        """Mark a claimed reward as used at the counter."""

        normalized = (code or "").strip().upper()
        stmt = (
            select(ClaimedReward)
            .options(selectinload(ClaimedReward.reward))
            .where(ClaimedReward.redemption_code == normalized)
        )
        result = await self._db.execute(stmt)
        claim = result.scalar_one_or_none()
        if claim is None or claim.is_used:
            raise NotFoundError("Invalid or already used redemption code", redemption_code=normalized)

        now = self._clock()
        claim.is_used = True
        claim.used_at = now
        claim.redeemed_by = staff_name
        claim.redemption_method = method
        try:
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageError("Could not mark reward as used", redemption_code=normalized) from exc

        logger.info(
            "Redeemed reward in person",
            claimed_reward_id=str(claim.id),
            redemption_code=normalized,
            staff=staff_name,
        )
        await self._write_redemption_log(claim, staff_name, method)
        return claim

    async def _validate(self, user_id: UUID, reward_id: UUID) -> LoyaltyReward:
        reward = await self._catalog.get(reward_id)
        if not reward.is_active or is_reward_expired(reward, self._clock()):
            raise ExpiredRewardError("Reward is no longer available", reward_id=str(reward_id))

        status = await self._limiter.status(user_id)
        if not status.can_claim:
            raise DailyLimitExceededError("Daily claim limit reached", used=status.used, limit=status.limit)

        if settings.loyalty_verify_balance_on_claim:
            verified = await self._balances.verify(user_id)
            if verified.repaired:
                await self._db.commit()

        if reward.points_required > 0:
            balance = await self._balances.read(user_id)
            if balance < reward.points_required:
                raise InsufficientPointsError(
                    "Insufficient points",
                    balance=balance,
                    required=reward.points_required,
                )
        return reward

    async def _unique_code(self) -> str:
        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_redemption_code()
            stmt = select(ClaimedReward.id).where(ClaimedReward.redemption_code == code).limit(1)
            result = await self._db.execute(stmt)
            if result.scalar_one_or_none() is None:
                return code
        raise StorageError("Could not allocate a unique redemption code")

    async def _write_redemption_log(self, claim: ClaimedReward, staff_name: str, method: str) -> None:
        self._db.add(
            RewardRedemptionLog(
                claimed_reward_id=claim.id,
                redemption_code=claim.redemption_code,
                redeemed_by=staff_name,
                method=method,
                redeemed_at=self._clock(),
            )
        )
        try:
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            await self._db.refresh(claim)
            await self._db.refresh(claim, ["reward"])
            logger.warning("Redemption audit log write failed", claimed_reward_id=str(claim.id), error=str(exc))
