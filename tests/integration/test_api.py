"""HTTP API tests: authentication, error mapping and webhook intake."""
import hashlib
import hmac
import json
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.config import settings
from subscription_engine.models.plan import Region
from tests.utils.auth import bearer


@pytest.mark.asyncio
async def test_health_check(async_client: AsyncClient) -> None:
    """Test the liveness endpoint."""
    response = await async_client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_readiness_check(async_client: AsyncClient) -> None:
    """Test the readiness endpoint against the test database."""
    response = await async_client.get("/health/ready")

    assert response.status_code == 200
    assert response.json()["checks"]["database"] == "connected"
    assert response.json()["checks"]["active_plans"] == 0


@pytest.mark.asyncio
async def test_list_plans_is_public(async_client: AsyncClient, basic_plan, pro_plan) -> None:
    """Test that active plans are listed without authentication."""
    response = await async_client.get("/v1/plans")

    assert response.status_code == 200
    assert [plan["name"] for plan in response.json()] == ["Basic", "Pro"]


@pytest.mark.asyncio
async def test_quote_endpoint(async_client: AsyncClient, basic_plan, gst_setting) -> None:
    """Test quoting a plan over HTTP."""
    response = await async_client.get(
        f"/v1/plans/{basic_plan.id}/quote", params={"region": "india", "currency": "INR"}
    )

    assert response.status_code == 200
    assert Decimal(response.json()["total"]) == Decimal("1000.00")


@pytest.mark.asyncio
async def test_consume_until_limit(
    async_client: AsyncClient, lifecycle, basic_plan, db_session: AsyncSession
) -> None:
    """Test that the fourth use of a three-use allowance answers 429."""
    await lifecycle.start_subscription(701, basic_plan.id, Region.INDIA, "INR")
    await db_session.commit()
    headers = bearer(701)

    for expected_remaining in (2, 1, 0):
        response = await async_client.post(
            "/v1/entitlements/701/consume", json={"feature_code": "resume_generation"}, headers=headers
        )
        assert response.status_code == 200
        assert response.json()["remaining"] == expected_remaining

    response = await async_client.post(
        "/v1/entitlements/701/consume", json={"feature_code": "resume_generation"}, headers=headers
    )

    assert response.status_code == 429
    body = response.json()
    assert body["error"] == "LimitExceeded"
    assert body["code"] == "limit_exceeded"
    assert body["details"]["limit"] == 3
    assert body["details"]["plan_name"] == "Basic"


@pytest.mark.asyncio
async def test_feature_not_on_plan_is_forbidden(
    async_client: AsyncClient, lifecycle, basic_plan, db_session: AsyncSession
) -> None:
    """Test that a boolean feature missing from the plan answers 403."""
    await lifecycle.start_subscription(702, basic_plan.id, Region.INDIA, "INR")
    await db_session.commit()

    response = await async_client.post(
        "/v1/entitlements/702/consume", json={"feature_code": "premium_templates"}, headers=bearer(702)
    )

    assert response.status_code == 403
    assert response.json()["error"] == "FeatureUnavailable"


@pytest.mark.asyncio
async def test_consume_requires_matching_caller(async_client: AsyncClient, features) -> None:
    """Test authentication and per-user authorization on consume."""
    body = {"feature_code": "resume_generation"}

    anonymous = await async_client.post("/v1/entitlements/703/consume", json=body)
    assert anonymous.status_code == 401

    bad_token = await async_client.post(
        "/v1/entitlements/703/consume", json=body, headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert bad_token.status_code == 401

    other_user = await async_client.post("/v1/entitlements/703/consume", json=body, headers=bearer(704))
    assert other_user.status_code == 403


@pytest.mark.asyncio
async def test_unknown_feature_is_not_found(
    async_client: AsyncClient, lifecycle, basic_plan, admin_headers, db_session: AsyncSession
) -> None:
    """Test that an admin may act for a user and unknown features answer 404."""
    await lifecycle.start_subscription(705, basic_plan.id, Region.INDIA, "INR")
    await db_session.commit()

    response = await async_client.post(
        "/v1/entitlements/705/consume", json={"feature_code": "no_such_feature"}, headers=admin_headers
    )

    assert response.status_code == 404
    assert response.json()["error"] == "NotFound"


@pytest.mark.asyncio
async def test_admin_routes_reject_users(async_client: AsyncClient, admin_headers) -> None:
    """Test that catalog writes need the admin role."""
    payload = {"name": "Team"}

    forbidden = await async_client.post("/v1/plans", json=payload, headers=bearer(706))
    assert forbidden.status_code == 403

    created = await async_client.post("/v1/plans", json=payload, headers=admin_headers)
    assert created.status_code == 201
    assert created.json()["name"] == "Team"


@pytest.mark.asyncio
async def test_razorpay_webhook_endpoint(async_client: AsyncClient, features) -> None:
    """Test that a signed delivery is acknowledged and an unsigned one refused."""
    body = json.dumps({"event": "order.paid", "payload": {}, "created_at": 1767225600}).encode()
    signature = hmac.new(settings.razorpay_webhook_secret.encode(), body, hashlib.sha256).hexdigest()

    accepted = await async_client.post(
        "/webhooks/razorpay",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Razorpay-Signature": signature,
            "X-Razorpay-Event-Id": "evt_api_1",
        },
    )
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "processed"

    rejected = await async_client.post(
        "/webhooks/razorpay",
        content=body,
        headers={"Content-Type": "application/json", "X-Razorpay-Signature": "0" * 64},
    )
    assert rejected.status_code == 403
    assert rejected.json()["error"] == "Unauthorized"
