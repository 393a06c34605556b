"""API endpoints for loyalty balances, history, rewards and claims."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from maisuchi_api.api.dependencies.security import require_checkout_api_key
from maisuchi_api.api.dependencies.session import require_member_session
from maisuchi_api.db.session import get_session
from maisuchi_api.models.loyalty import (
    ClaimedReward,
    LoyaltyLedgerEntry,
    LoyaltyLedgerEntryKind,
    LoyaltyReward,
    LoyaltyRewardType,
)
from maisuchi_api.services.loyalty import (
    DailyClaimStatus,
    LoyaltyService,
    RewardAnalytics,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)


router = APIRouter(prefix="/loyalty", tags=["loyalty"])
admin_router = APIRouter(
    prefix="/loyalty/admin",
    tags=["loyalty-admin"],
    dependencies=[Depends(require_checkout_api_key)],
)


class BalanceResponse(BaseModel):
    userId: UUID
    points: int


class LedgerEntryResponse(BaseModel):
    id: UUID
    pointsDelta: int
    kind: str
    source: str
    description: Optional[str]
    orderId: Optional[str]
    rewardId: Optional[UUID]
    metadata: dict[str, Any]
    createdAt: datetime


class LedgerWindowResponse(BaseModel):
    entries: List[LedgerEntryResponse]
    nextCursor: Optional[str]


class DailyClaimStatusResponse(BaseModel):
    used: int
    remaining: int
    limit: int
    canClaim: bool


class LoyaltyRewardResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    rewardType: str
    pointsRequired: int
    discountPercentage: Optional[int]
    freeItemName: Optional[str]
    isActive: bool
    validUntil: Optional[datetime]


class ClaimResponse(BaseModel):
    success: bool
    redemptionCode: str
    claimedRewardId: UUID
    rewardName: str
    pointsSpent: int
    balance: int
    dailyLimitInfo: DailyClaimStatusResponse


class ClaimedRewardResponse(BaseModel):
    id: UUID
    rewardId: UUID
    rewardName: Optional[str]
    redemptionCode: str
    claimedAt: datetime
    isUsed: bool
    usedAt: Optional[datetime]
    redeemedBy: Optional[str]


class OrderCompletedRequest(BaseModel):
    orderId: str = Field(..., min_length=1, description="Storefront order identifier")
    userId: Optional[UUID] = Field(None, description="Member id when the buyer is signed in")
    guestEmail: Optional[str] = Field(None, description="Checkout email for guest orders")
    pointsEarned: Optional[int] = Field(None, gt=0, description="Points to award; derived from orderTotal when omitted")
    orderTotal: Optional[Decimal] = Field(None, ge=0, description="Order subtotal used for description and earn rate")

    @model_validator(mode="after")
    def validate_credit(self) -> "OrderCompletedRequest":
        if self.pointsEarned is None and self.orderTotal is None:
            raise ValueError("pointsEarned or orderTotal must be provided")
        if self.userId is None and not self.guestEmail:
            raise ValueError("userId or guestEmail must be provided")
        return self


class CreditOutcomeResponse(BaseModel):
    status: str
    points: int
    userId: Optional[UUID]
    orderId: Optional[str]
    balance: Optional[int]


class MemberAuthenticatedRequest(BaseModel):
    email: Optional[str] = Field(None, description="Verified email used to attach guest credits")


class DrainResponse(BaseModel):
    applied: int
    skipped: int
    failed: int
    pointsApplied: int


class RewardCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    rewardType: LoyaltyRewardType
    pointsRequired: int = Field(..., ge=0)
    description: Optional[str] = None
    discountPercentage: Optional[int] = Field(None, gt=0, le=100)
    freeItemName: Optional[str] = None
    validUntil: Optional[datetime] = None
    isActive: bool = True
    metadata: Optional[dict[str, Any]] = None

    def to_kwargs(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "reward_type": self.rewardType,
            "points_required": self.pointsRequired,
            "description": self.description,
            "discount_percentage": self.discountPercentage,
            "free_item_name": self.freeItemName,
            "valid_until": self.validUntil,
            "is_active": self.isActive,
            "metadata": self.metadata,
        }


class RewardUpdateRequest(BaseModel):
    name: Optional[str] = None
    rewardType: Optional[LoyaltyRewardType] = None
    pointsRequired: Optional[int] = Field(None, ge=0)
    description: Optional[str] = None
    discountPercentage: Optional[int] = Field(None, gt=0, le=100)
    freeItemName: Optional[str] = None
    validUntil: Optional[datetime] = None
    isActive: Optional[bool] = None
    metadata: Optional[dict[str, Any]] = None


_UPDATE_FIELD_MAP = {
    "name": "name",
    "rewardType": "reward_type",
    "pointsRequired": "points_required",
    "description": "description",
    "discountPercentage": "discount_percentage",
    "freeItemName": "free_item_name",
    "validUntil": "valid_until",
    "isActive": "is_active",
    "metadata": "metadata_json",
}


class RewardAnalyticsResponse(BaseModel):
    reward: LoyaltyRewardResponse
    totalClaimed: int
    totalUsed: int
    pendingRedemption: int
    redemptionRate: int
    activeUsers: int
    monthlyBreakdown: dict[str, int]


class ArchiveResponse(BaseModel):
    archived: int


class RedemptionRequest(BaseModel):
    redemptionCode: str = Field(..., min_length=1)
    staffName: str = Field(..., min_length=1)
    method: str = Field("in_person")


class AdjustmentRequest(BaseModel):
    delta: int
    reason: str = Field(..., min_length=1)
    staff: Optional[str] = None

    @model_validator(mode="after")
    def validate_delta(self) -> "AdjustmentRequest":
        if self.delta == 0:
            raise ValueError("delta must be non-zero")
        return self


class ReconcileResponse(BaseModel):
    userId: UUID
    cachedPoints: int
    ledgerPoints: int
    repaired: bool


def _serialize_ledger_entry(entry: LoyaltyLedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        pointsDelta=entry.points_delta,
        kind=entry.kind.value,
        source=entry.source.value,
        description=entry.description,
        orderId=entry.order_id,
        rewardId=entry.reward_id,
        metadata=entry.metadata_json or {},
        createdAt=entry.created_at,
    )


def _serialize_status(daily_status: DailyClaimStatus) -> DailyClaimStatusResponse:
    return DailyClaimStatusResponse(
        used=daily_status.used,
        remaining=daily_status.remaining,
        limit=daily_status.limit,
        canClaim=daily_status.can_claim,
    )


def _serialize_reward(reward: LoyaltyReward) -> LoyaltyRewardResponse:
    return LoyaltyRewardResponse(
        id=reward.id,
        name=reward.name,
        description=reward.description,
        rewardType=reward.reward_type.value,
        pointsRequired=reward.points_required,
        discountPercentage=reward.discount_percentage,
        freeItemName=reward.free_item_name,
        isActive=reward.is_active,
        validUntil=reward.valid_until,
    )


def _serialize_claimed(claim: ClaimedReward) -> ClaimedRewardResponse:
    return ClaimedRewardResponse(
        id=claim.id,
        rewardId=claim.reward_id,
        rewardName=claim.reward.name if claim.reward else None,
        redemptionCode=claim.redemption_code,
        claimedAt=claim.claimed_at,
        isUsed=claim.is_used,
        usedAt=claim.used_at,
        redeemedBy=claim.redeemed_by,
    )


def _serialize_analytics(analytics: RewardAnalytics) -> RewardAnalyticsResponse:
    return RewardAnalyticsResponse(
        reward=_serialize_reward(analytics.reward),
        totalClaimed=analytics.total_claimed,
        totalUsed=analytics.total_used,
        pendingRedemption=analytics.pending_redemption,
        redemptionRate=analytics.redemption_rate,
        activeUsers=analytics.active_users,
        monthlyBreakdown=analytics.monthly_breakdown,
    )


@router.get("/balance", response_model=BalanceResponse)
async def get_member_balance(
    user_id: UUID = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> BalanceResponse:
    service = LoyaltyService(db)
    return BalanceResponse(userId=user_id, points=await service.get_balance(user_id))


@router.get("/history", response_model=LedgerWindowResponse)
async def list_member_history(
    limit: int = Query(10, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    kinds: list[str] | None = Query(None, description="Filter ledger entry kinds"),
    user_id: UUID = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> LedgerWindowResponse:
    """Return member ledger entries, most recent first."""

    entry_kinds: list[LoyaltyLedgerEntryKind] | None = None
    if kinds:
        entry_kinds = []
        for value in kinds:
            try:
                entry_kinds.append(LoyaltyLedgerEntryKind(value))
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=f"Unsupported ledger kind: {value}") from exc

    decoded_cursor = None
    if cursor:
        try:
            decoded_cursor = decode_time_uuid_cursor(cursor)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid ledger cursor") from exc

    service = LoyaltyService(db)
    entries, next_cursor = await service.get_history_page(
        user_id,
        limit=limit,
        cursor=decoded_cursor,
        kinds=entry_kinds,
    )
    return LedgerWindowResponse(
        entries=[_serialize_ledger_entry(entry) for entry in entries],
        nextCursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


@router.get("/claims/daily-status", response_model=DailyClaimStatusResponse)
async def get_daily_claim_status(
    user_id: UUID = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> DailyClaimStatusResponse:
    service = LoyaltyService(db)
    return _serialize_status(await service.get_daily_claim_status(user_id))


@router.get("/claims", response_model=List[ClaimedRewardResponse])
async def list_member_claims(
    limit: int = Query(50, ge=1, le=200),
    user_id: UUID = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> List[ClaimedRewardResponse]:
    service = LoyaltyService(db)
    claims = await service.claims.list_claimed(user_id, limit=limit)
    return [_serialize_claimed(claim) for claim in claims]


@router.get("/rewards", response_model=List[LoyaltyRewardResponse])
async def list_available_rewards(
    user_id: UUID = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> List[LoyaltyRewardResponse]:
    service = LoyaltyService(db)
    rewards = await service.list_available_rewards(user_id)
    return [_serialize_reward(reward) for reward in rewards]


@router.post("/rewards/{reward_id}/claim", response_model=ClaimResponse, status_code=status.HTTP_201_CREATED)
async def claim_reward(
    reward_id: UUID,
    user_id: UUID = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> ClaimResponse:
    """Claim a reward; failures come back as typed error bodies."""

    service = LoyaltyService(db)
    result = await service.claim_reward(user_id, reward_id)
    return ClaimResponse(
        success=result.success,
        redemptionCode=result.redemption_code,
        claimedRewardId=result.claimed_reward_id,
        rewardName=result.reward_name,
        pointsSpent=result.points_spent,
        balance=result.balance,
        dailyLimitInfo=_serialize_status(result.daily_status),
    )


@router.post(
    "/orders/completed",
    response_model=CreditOutcomeResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def record_completed_order(
    payload: OrderCompletedRequest,
    db: AsyncSession = Depends(get_session),
) -> CreditOutcomeResponse:
    """Credit points for a completed order or defer them until sign-in."""

    service = LoyaltyService(db)
    outcome = await service.on_order_completed(
        payload.orderId,
        payload.userId,
        payload.pointsEarned,
        guest_email=payload.guestEmail,
        order_total=payload.orderTotal,
    )
    return CreditOutcomeResponse(
        status=outcome.status,
        points=outcome.points,
        userId=outcome.user_id,
        orderId=outcome.order_id,
        balance=outcome.balance,
    )


@router.post(
    "/members/{user_id}/authenticated",
    response_model=DrainResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def record_member_authenticated(
    user_id: UUID,
    payload: MemberAuthenticatedRequest | None = Body(None),
    db: AsyncSession = Depends(get_session),
) -> DrainResponse:
    """Apply credits that were waiting for this member to sign in."""

    service = LoyaltyService(db)
    result = await service.on_user_authenticated(user_id, email=payload.email if payload else None)
    return DrainResponse(**result.as_dict())


@admin_router.post("/rewards", response_model=LoyaltyRewardResponse, status_code=status.HTTP_201_CREATED)
async def create_reward(
    payload: RewardCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> LoyaltyRewardResponse:
    service = LoyaltyService(db)
    reward = await service.catalog.create_reward(**payload.to_kwargs())
    await service.catalog.commit()
    return _serialize_reward(reward)


@admin_router.post("/rewards/bulk", response_model=List[LoyaltyRewardResponse], status_code=status.HTTP_201_CREATED)
async def create_rewards_bulk(
    payload: List[RewardCreateRequest],
    db: AsyncSession = Depends(get_session),
) -> List[LoyaltyRewardResponse]:
    service = LoyaltyService(db)
    rewards = await service.catalog.create_rewards(item.to_kwargs() for item in payload)
    await service.catalog.commit()
    return [_serialize_reward(reward) for reward in rewards]


@admin_router.patch("/rewards/{reward_id}", response_model=LoyaltyRewardResponse)
async def update_reward(
    reward_id: UUID,
    payload: RewardUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> LoyaltyRewardResponse:
    changes = {
        _UPDATE_FIELD_MAP[key]: value for key, value in payload.model_dump(exclude_unset=True).items()
    }
    if not changes:
        raise HTTPException(status_code=400, detail="No reward fields supplied")
    service = LoyaltyService(db)
    reward = await service.catalog.update_reward(reward_id, **changes)
    await service.catalog.commit()
    return _serialize_reward(reward)


@admin_router.post("/rewards/archive-expired", response_model=ArchiveResponse)
async def archive_expired_rewards(db: AsyncSession = Depends(get_session)) -> ArchiveResponse:
    service = LoyaltyService(db)
    archived = await service.catalog.archive_expired()
    await service.catalog.commit()
    return ArchiveResponse(archived=archived)


@admin_router.get("/rewards/analytics", response_model=List[RewardAnalyticsResponse])
async def list_reward_analytics(db: AsyncSession = Depends(get_session)) -> List[RewardAnalyticsResponse]:
    service = LoyaltyService(db)
    return [_serialize_analytics(item) for item in await service.catalog.list_with_analytics()]


@admin_router.get("/rewards/{reward_id}/analytics", response_model=RewardAnalyticsResponse)
async def get_reward_analytics(
    reward_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> RewardAnalyticsResponse:
    service = LoyaltyService(db)
    return _serialize_analytics(await service.catalog.reward_analytics(reward_id))


@admin_router.post("/redemptions", response_model=ClaimedRewardResponse)
async def redeem_claimed_reward(
    payload: RedemptionRequest,
    db: AsyncSession = Depends(get_session),
) -> ClaimedRewardResponse:
    """Mark a member's redemption code as used at the counter."""

    service = LoyaltyService(db)
    claim = await service.claims.redeem_in_person(payload.redemptionCode, payload.staffName, method=payload.method)
    return _serialize_claimed(claim)


@admin_router.post("/members/{user_id}/adjustments", response_model=BalanceResponse)
async def adjust_member_points(
    user_id: UUID,
    payload: AdjustmentRequest,
    db: AsyncSession = Depends(get_session),
) -> BalanceResponse:
    service = LoyaltyService(db)
    balance = await service.adjust_points(user_id, payload.delta, reason=payload.reason, staff=payload.staff)
    return BalanceResponse(userId=user_id, points=balance)


@admin_router.post("/members/{user_id}/reconcile", response_model=ReconcileResponse)
async def reconcile_member_balance(
    user_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> ReconcileResponse:
    service = LoyaltyService(db)
    result = await service.reconcile(user_id)
    return ReconcileResponse(
        userId=result.user_id,
        cachedPoints=result.cached_points,
        ledgerPoints=result.ledger_points,
        repaired=result.repaired,
    )
