"""Integration tests for the plan catalog."""
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.errors import Conflict, NotFound, ValidationError
from subscription_engine.models.feature import LimitType
from subscription_engine.models.plan import Region
from subscription_engine.models.subscription import SubscriptionStatus
from subscription_engine.schemas.plan import FeatureCreate, PlanCreate, PlanFeatureSet, PlanPricingCreate, PlanUpdate


@pytest.mark.asyncio
async def test_create_plan_defaults(catalog, db_session: AsyncSession) -> None:
    """Test creating a plan with minimal fields."""
    plan = await catalog.create_plan(PlanCreate(name="Starter"))
    await db_session.commit()

    assert plan.id is not None
    assert plan.active is True
    assert plan.is_freemium is False
    assert plan.billing_cycle.value == "monthly"


@pytest.mark.asyncio
async def test_duplicate_regional_price_rejected(catalog, basic_plan) -> None:
    """Test that a plan has at most one price per region and currency."""
    with pytest.raises(Conflict):
        await catalog.set_pricing(
            basic_plan.id, PlanPricingCreate(region=Region.INDIA, currency="inr", price=Decimal("1200.00"))
        )


@pytest.mark.asyncio
async def test_same_currency_in_two_regions_allowed(catalog, basic_plan, db_session: AsyncSession) -> None:
    """Test that uniqueness is per (region, currency) pair."""
    pricing = await catalog.set_pricing(
        basic_plan.id, PlanPricingCreate(region=Region.GLOBAL, currency="INR", price=Decimal("1100.00"))
    )
    await db_session.commit()

    assert pricing.currency == "INR"
    india = await catalog.get_pricing(basic_plan.id, Region.INDIA, "INR")
    world = await catalog.get_pricing(basic_plan.id, Region.GLOBAL, "INR")
    assert india.id != world.id


@pytest.mark.asyncio
async def test_missing_pricing_and_unsupported_currency(catalog, basic_plan) -> None:
    """Test pricing lookups that cannot be satisfied."""
    with pytest.raises(NotFound):
        await catalog.get_pricing(basic_plan.id, Region.INDIA, "USD")

    assert await catalog.find_pricing(basic_plan.id, Region.INDIA, "USD") is None

    with pytest.raises(ValidationError):
        await catalog.set_pricing(
            basic_plan.id, PlanPricingCreate(region=Region.GLOBAL, currency="XYZ", price=Decimal("1.00"))
        )


@pytest.mark.asyncio
async def test_deactivated_plan_keeps_existing_subscriptions(
    catalog, lifecycle, ledger, basic_plan, now, db_session: AsyncSession
) -> None:
    """Test that retiring a plan stops new sales without touching subscribers."""
    subscription = await lifecycle.start_subscription(601, basic_plan.id, Region.INDIA, "INR", now=now)
    await catalog.update_plan(basic_plan.id, PlanUpdate(active=False, description="Retired"))
    await db_session.commit()

    assert basic_plan.id not in [p.id for p in await catalog.list_active_plans()]
    with pytest.raises(NotFound):
        await catalog.get_plan(basic_plan.id)
    assert (await catalog.get_plan_any_state(basic_plan.id)).description == "Retired"

    with pytest.raises(NotFound):
        await lifecycle.start_subscription(602, basic_plan.id, Region.INDIA, "INR", now=now)

    assert subscription.status == SubscriptionStatus.ACTIVE
    result = await ledger.check_and_consume(601, "resume_generation", now=now)
    assert result.remaining == 2


@pytest.mark.asyncio
async def test_features_for_plan(catalog, pro_plan) -> None:
    """Test reading a plan's feature limits."""
    limits = {pf.feature.code: pf for pf in await catalog.get_features_for_plan(pro_plan.id)}

    assert limits["resume_generation"].limit_type == LimitType.UNLIMITED
    assert limits["resume_generation"].limit_value is None
    assert limits["premium_templates"].limit_type == LimitType.BOOLEAN
    assert limits["ai_cover_letter"].limit_value == 100


@pytest.mark.asyncio
async def test_count_limit_requires_value(catalog, basic_plan) -> None:
    """Test that a COUNT limit without a value is rejected."""
    with pytest.raises(ValidationError):
        await catalog.set_plan_feature(
            basic_plan.id, PlanFeatureSet(feature_code="premium_templates", limit_type=LimitType.COUNT)
        )


@pytest.mark.asyncio
async def test_duplicate_feature_code_rejected(catalog, features) -> None:
    """Test that feature codes are unique."""
    with pytest.raises(Conflict):
        await catalog.create_feature(FeatureCreate(code="resume_generation", name="Again"))


@pytest.mark.asyncio
async def test_freemium_plan_lookup(catalog, free_plan, basic_plan) -> None:
    """Test finding the plan assigned without payment."""
    freemium = await catalog.get_freemium_plan()

    assert freemium.id == free_plan.id
