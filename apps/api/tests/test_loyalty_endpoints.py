import re
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from maisuchi_api.core.settings import settings
from maisuchi_api.models.loyalty import LoyaltyRewardType
from maisuchi_api.services.loyalty import LoyaltyService

CODE_PATTERN = re.compile(r"^RWD-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}$")


async def _seed_reward(session_factory, name: str, points: int, **kwargs):
    async with session_factory() as session:
        service = LoyaltyService(session)
        reward = await service.catalog.create_reward(
            name=name,
            reward_type=kwargs.pop("reward_type", LoyaltyRewardType.FREE_ITEM),
            points_required=points,
            **kwargs,
        )
        await session.commit()
        return reward.id


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_order_credit_claim_and_history_flow(app_with_db) -> None:
    app, session_factory = app_with_db
    user_id = str(uuid4())
    member = {"X-Session-User": user_id}
    reward_id = await _seed_reward(session_factory, "Free bento", 100, free_item_name="Bento box")
    discount_id = await _seed_reward(
        session_factory, "10% off", 50, reward_type=LoyaltyRewardType.DISCOUNT, discount_percentage=10
    )

    async with _client(app) as client:
        credit = await client.post(
            "/api/v1/loyalty/orders/completed",
            json={"orderId": "WEB-100", "userId": user_id, "orderTotal": "120.00"},
        )
        assert credit.status_code == 200
        assert credit.json()["status"] == "applied"
        assert credit.json()["points"] == 120
        assert credit.json()["balance"] == 120

        repeat = await client.post(
            "/api/v1/loyalty/orders/completed",
            json={"orderId": "WEB-100", "userId": user_id, "orderTotal": "120.00"},
        )
        assert repeat.json()["status"] == "duplicate"

        balance = await client.get("/api/v1/loyalty/balance", headers=member)
        assert balance.json() == {"userId": user_id, "points": 120}

        rewards = await client.get("/api/v1/loyalty/rewards", headers=member)
        assert [item["name"] for item in rewards.json()] == ["10% off", "Free bento"]

        claim = await client.post(f"/api/v1/loyalty/rewards/{reward_id}/claim", headers=member)
        assert claim.status_code == 201
        body = claim.json()
        assert body["success"] is True
        assert CODE_PATTERN.match(body["redemptionCode"])
        assert body["pointsSpent"] == 100
        assert body["balance"] == 20
        assert body["dailyLimitInfo"] == {"used": 1, "remaining": 2, "limit": 3, "canClaim": True}

        rejected = await client.post(f"/api/v1/loyalty/rewards/{discount_id}/claim", headers=member)
        assert rejected.status_code == 409
        assert rejected.json()["success"] is False
        assert rejected.json()["error"] == "insufficient_points"
        assert rejected.json()["details"]["balance"] == 20
        assert rejected.json()["details"]["required"] == 50

        history = await client.get("/api/v1/loyalty/history", headers=member)
        entries = history.json()["entries"]
        assert [entry["pointsDelta"] for entry in entries] == [-100, 120]
        assert entries[0]["description"] == "Points redeemed for reward: Free bento"
        assert entries[1]["description"] == "Order • $120.00"

        redeemed_only = await client.get("/api/v1/loyalty/history", params={"kinds": "redeem"}, headers=member)
        assert [entry["kind"] for entry in redeemed_only.json()["entries"]] == ["redeem"]

        claims = await client.get("/api/v1/loyalty/claims", headers=member)
        assert [item["redemptionCode"] for item in claims.json()] == [body["redemptionCode"]]
        assert claims.json()[0]["rewardName"] == "Free bento"

        status_response = await client.get("/api/v1/loyalty/claims/daily-status", headers=member)
        assert status_response.json()["used"] == 1


@pytest.mark.asyncio
async def test_member_routes_require_session_header(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        missing = await client.get("/api/v1/loyalty/balance")
        invalid = await client.get("/api/v1/loyalty/balance", headers={"X-Session-User": "not-a-uuid"})
        bad_kind = await client.get(
            "/api/v1/loyalty/history", params={"kinds": "bogus"}, headers={"X-Session-User": str(uuid4())}
        )
        bad_cursor = await client.get(
            "/api/v1/loyalty/history", params={"cursor": "%%%"}, headers={"X-Session-User": str(uuid4())}
        )

    assert missing.status_code == 401
    assert invalid.status_code == 400
    assert bad_kind.status_code == 400
    assert bad_cursor.status_code == 400


@pytest.mark.asyncio
async def test_claim_errors_map_to_status_codes(app_with_db) -> None:
    app, session_factory = app_with_db
    member = {"X-Session-User": str(uuid4())}
    retired_id = await _seed_reward(session_factory, "Old combo", 0, is_active=False)
    free_id = await _seed_reward(session_factory, "Free tea", 0)

    async with _client(app) as client:
        missing = await client.post(f"/api/v1/loyalty/rewards/{uuid4()}/claim", headers=member)
        retired = await client.post(f"/api/v1/loyalty/rewards/{retired_id}/claim", headers=member)
        for _ in range(3):
            ok = await client.post(f"/api/v1/loyalty/rewards/{free_id}/claim", headers=member)
            assert ok.status_code == 201
        limited = await client.post(f"/api/v1/loyalty/rewards/{free_id}/claim", headers=member)

    assert missing.status_code == 404
    assert missing.json()["error"] == "not_found"
    assert retired.status_code == 410
    assert retired.json()["error"] == "reward_expired"
    assert limited.status_code == 409
    assert limited.json()["error"] == "daily_limit_exceeded"
    assert limited.json()["details"] == {"used": 3, "limit": 3}


@pytest.mark.asyncio
async def test_guest_order_is_applied_when_member_signs_in(app_with_db) -> None:
    app, _ = app_with_db
    user_id = str(uuid4())

    async with _client(app) as client:
        deferred = await client.post(
            "/api/v1/loyalty/orders/completed",
            json={"orderId": "WEB-200", "guestEmail": "walkin@example.com", "pointsEarned": 35},
        )
        assert deferred.json()["status"] == "deferred"
        assert deferred.json()["balance"] is None

        drained = await client.post(
            f"/api/v1/loyalty/members/{user_id}/authenticated",
            json={"email": "Walkin@Example.com"},
        )
        assert drained.status_code == 200
        assert drained.json() == {"applied": 1, "skipped": 0, "failed": 0, "pointsApplied": 35}

        again = await client.post(f"/api/v1/loyalty/members/{user_id}/authenticated")
        assert again.json()["applied"] == 0

        balance = await client.get("/api/v1/loyalty/balance", headers={"X-Session-User": user_id})
        assert balance.json()["points"] == 35


@pytest.mark.asyncio
async def test_order_payload_requires_points_and_identity(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        no_points = await client.post(
            "/api/v1/loyalty/orders/completed",
            json={"orderId": "WEB-300", "userId": str(uuid4())},
        )
        no_identity = await client.post(
            "/api/v1/loyalty/orders/completed",
            json={"orderId": "WEB-301", "pointsEarned": 10},
        )

    assert no_points.status_code == 422
    assert no_identity.status_code == 422


@pytest.mark.asyncio
async def test_checkout_and_admin_routes_require_api_key(app_with_db) -> None:
    app, _ = app_with_db
    previous_key = settings.checkout_api_key
    settings.checkout_api_key = "checkout-key"
    payload = {"orderId": "WEB-400", "userId": str(uuid4()), "pointsEarned": 10}

    try:
        async with _client(app) as client:
            missing = await client.post("/api/v1/loyalty/orders/completed", json=payload)
            admin_missing = await client.get("/api/v1/loyalty/admin/rewards/analytics")
            accepted = await client.post(
                "/api/v1/loyalty/orders/completed",
                json=payload,
                headers={"X-API-Key": "checkout-key"},
            )
        assert missing.status_code == 401
        assert admin_missing.status_code == 401
        assert accepted.status_code == 200
    finally:
        settings.checkout_api_key = previous_key


@pytest.mark.asyncio
async def test_admin_reward_management(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        created = await client.post(
            "/api/v1/loyalty/admin/rewards",
            json={"name": "Free gyoza", "rewardType": "free_item", "pointsRequired": 80, "freeItemName": "Gyoza"},
        )
        assert created.status_code == 201
        reward = created.json()
        assert reward["rewardType"] == "free_item"
        assert reward["isActive"] is True

        patched = await client.patch(
            f"/api/v1/loyalty/admin/rewards/{reward['id']}",
            json={"pointsRequired": 60, "description": "Six pieces"},
        )
        assert patched.status_code == 200
        assert patched.json()["pointsRequired"] == 60
        assert patched.json()["description"] == "Six pieces"

        empty_patch = await client.patch(f"/api/v1/loyalty/admin/rewards/{reward['id']}", json={})
        assert empty_patch.status_code == 400

        cleared = await client.patch(
            f"/api/v1/loyalty/admin/rewards/{reward['id']}",
            json={"isActive": None, "rewardType": None},
        )
        assert cleared.status_code == 400
        assert cleared.json()["error"] == "validation_error"
        assert cleared.json()["details"]["fields"] == ["is_active", "reward_type"]

        still_active = await client.get(f"/api/v1/loyalty/admin/rewards/{reward['id']}/analytics")
        assert still_active.json()["reward"]["isActive"] is True
        assert still_active.json()["reward"]["rewardType"] == "free_item"

        invalid = await client.post(
            "/api/v1/loyalty/admin/rewards",
            json={"name": "Too generous", "rewardType": "discount", "pointsRequired": 10, "discountPercentage": 150},
        )
        assert invalid.status_code == 422

        bulk = await client.post(
            "/api/v1/loyalty/admin/rewards/bulk",
            json=[
                {"name": "Holiday roll", "rewardType": "special", "pointsRequired": 40},
                {"name": "5% off", "rewardType": "discount", "pointsRequired": 20, "discountPercentage": 5},
            ],
        )
        assert bulk.status_code == 201
        assert len(bulk.json()) == 2

        analytics = await client.get(f"/api/v1/loyalty/admin/rewards/{reward['id']}/analytics")
        assert analytics.status_code == 200
        assert analytics.json()["totalClaimed"] == 0
        assert analytics.json()["redemptionRate"] == 0

        listing = await client.get("/api/v1/loyalty/admin/rewards/analytics")
        assert len(listing.json()) == 3

        archived = await client.post("/api/v1/loyalty/admin/rewards/archive-expired")
        assert archived.json() == {"archived": 0}

        missing = await client.get(f"/api/v1/loyalty/admin/rewards/{uuid4()}/analytics")
        assert missing.status_code == 404


@pytest.mark.asyncio
async def test_admin_redemption_adjustment_and_reconcile(app_with_db) -> None:
    app, session_factory = app_with_db
    user_id = str(uuid4())
    member = {"X-Session-User": user_id}
    reward_id = await _seed_reward(session_factory, "Free miso", 0)

    async with _client(app) as client:
        claim = await client.post(f"/api/v1/loyalty/rewards/{reward_id}/claim", headers=member)
        code = claim.json()["redemptionCode"]

        redeemed = await client.post(
            "/api/v1/loyalty/admin/redemptions",
            json={"redemptionCode": code.lower(), "staffName": "Kenji"},
        )
        assert redeemed.status_code == 200
        assert redeemed.json()["isUsed"] is True
        assert redeemed.json()["redeemedBy"] == "Kenji"

        reused = await client.post(
            "/api/v1/loyalty/admin/redemptions",
            json={"redemptionCode": code, "staffName": "Kenji"},
        )
        assert reused.status_code == 404

        credit = await client.post(
            f"/api/v1/loyalty/admin/members/{user_id}/adjustments",
            json={"delta": 50, "reason": "Service recovery", "staff": "Aiko"},
        )
        assert credit.json() == {"userId": user_id, "points": 50}

        overdraw = await client.post(
            f"/api/v1/loyalty/admin/members/{user_id}/adjustments",
            json={"delta": -80, "reason": "Correction"},
        )
        assert overdraw.status_code == 409
        assert overdraw.json()["error"] == "insufficient_points"

        zero = await client.post(
            f"/api/v1/loyalty/admin/members/{user_id}/adjustments",
            json={"delta": 0, "reason": "Nothing"},
        )
        assert zero.status_code == 422

        reconciled = await client.post(f"/api/v1/loyalty/admin/members/{user_id}/reconcile")
        assert reconciled.json() == {
            "userId": user_id,
            "cachedPoints": 50,
            "ledgerPoints": 50,
            "repaired": False,
        }
