"""Pytest configuration and fixtures for async testing."""
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import subscription_engine.models  # noqa: F401  registers every table
from subscription_engine.database import Base
from subscription_engine.main import app
from subscription_engine.models.feature import FeatureType, LimitType, ResetFrequency
from subscription_engine.models.plan import Region
from subscription_engine.models.tax import TaxSetting, TaxType
from subscription_engine.schemas.plan import FeatureCreate, PlanCreate, PlanFeatureSet, PlanPricingCreate
from subscription_engine.services.entitlement_service import EntitlementLedger
from subscription_engine.services.plan_catalog import PlanCatalog
from subscription_engine.services.subscription_service import SubscriptionLifecycle
from tests.utils.auth import bearer

# Shared in-memory database; StaticPool keeps the single connection alive
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    poolclass=StaticPool,
    connect_args={"check_same_thread": False},
)

TestAsyncSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

NOW = datetime(2026, 1, 15, 12, 0, 0)


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create a fresh database for each test.

    Yields:
        AsyncSession: Database session for testing
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestAsyncSessionLocal() as session:
        yield session
        await session.rollback()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(scope="function")
async def async_client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client bound to the app, sharing the test session.

    Yields:
        AsyncClient: Client for API testing
    """
    from subscription_engine.api.deps import get_db

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return bearer(1, "admin")


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def catalog(db_session: AsyncSession) -> PlanCatalog:
    return PlanCatalog(db_session)


@pytest.fixture
def lifecycle(db_session: AsyncSession, catalog: PlanCatalog) -> SubscriptionLifecycle:
    return SubscriptionLifecycle(db_session, catalog)


@pytest.fixture
def ledger(lifecycle: SubscriptionLifecycle) -> EntitlementLedger:
    return lifecycle.entitlements


@pytest_asyncio.fixture
async def features(catalog: PlanCatalog, db_session: AsyncSession) -> dict:
    """
    Feature catalog used across tests.

    - resume_generation: advanced, count-limited
    - ai_cover_letter: advanced, token-metered
    - profile_page: essential, never listed on a plan
    - premium_templates: professional, boolean
    """
    created = {}
    for feature in (
        FeatureCreate(code="resume_generation", name="Resume generation", feature_type=FeatureType.ADVANCED),
        FeatureCreate(
            code="ai_cover_letter",
            name="AI cover letter",
            feature_type=FeatureType.ADVANCED,
            is_token_based=True,
            cost_factor=Decimal("0.002"),
        ),
        FeatureCreate(
            code="profile_page", name="Profile page", feature_type=FeatureType.ESSENTIAL, is_countable=False
        ),
        FeatureCreate(
            code="premium_templates",
            name="Premium templates",
            feature_type=FeatureType.PROFESSIONAL,
            is_countable=False,
        ),
    ):
        created[feature.code] = await catalog.create_feature(feature)
    await db_session.commit()
    return created


@pytest_asyncio.fixture
async def free_plan(catalog: PlanCatalog, features: dict, db_session: AsyncSession):
    plan = await catalog.create_plan(PlanCreate(name="Free", is_freemium=True))
    await catalog.set_plan_feature(
        plan.id,
        PlanFeatureSet(
            feature_code="resume_generation",
            limit_type=LimitType.COUNT,
            limit_value=1,
            reset_frequency=ResetFrequency.MONTHLY,
        ),
    )
    await db_session.commit()
    return plan


@pytest_asyncio.fixture
async def basic_plan(catalog: PlanCatalog, features: dict, db_session: AsyncSession):
    """Basic: 3 resumes a month, 10 cover letters, no premium templates."""
    plan = await catalog.create_plan(PlanCreate(name="Basic", description="For job seekers"))
    await catalog.set_pricing(
        plan.id, PlanPricingCreate(region=Region.INDIA, currency="INR", price=Decimal("1000.00"), tax_inclusive=True)
    )
    await catalog.set_pricing(plan.id, PlanPricingCreate(region=Region.GLOBAL, currency="USD", price=Decimal("12.00")))
    await catalog.set_plan_feature(
        plan.id,
        PlanFeatureSet(
            feature_code="resume_generation",
            limit_type=LimitType.COUNT,
            limit_value=3,
            reset_frequency=ResetFrequency.MONTHLY,
        ),
    )
    await catalog.set_plan_feature(
        plan.id,
        PlanFeatureSet(feature_code="ai_cover_letter", limit_type=LimitType.COUNT, limit_value=10),
    )
    await db_session.commit()
    return plan


@pytest_asyncio.fixture
async def pro_plan(catalog: PlanCatalog, features: dict, db_session: AsyncSession):
    """Pro: unlimited resumes and premium templates."""
    plan = await catalog.create_plan(PlanCreate(name="Pro", is_featured=True))
    await catalog.set_pricing(
        plan.id, PlanPricingCreate(region=Region.INDIA, currency="INR", price=Decimal("2500.00"), tax_inclusive=True)
    )
    await catalog.set_pricing(plan.id, PlanPricingCreate(region=Region.GLOBAL, currency="USD", price=Decimal("30.00")))
    await catalog.set_plan_feature(
        plan.id, PlanFeatureSet(feature_code="resume_generation", limit_type=LimitType.UNLIMITED)
    )
    await catalog.set_plan_feature(
        plan.id, PlanFeatureSet(feature_code="premium_templates", limit_type=LimitType.BOOLEAN)
    )
    await catalog.set_plan_feature(
        plan.id,
        PlanFeatureSet(feature_code="ai_cover_letter", limit_type=LimitType.COUNT, limit_value=100),
    )
    await db_session.commit()
    return plan


@pytest_asyncio.fixture
async def gst_setting(db_session: AsyncSession) -> TaxSetting:
    setting = TaxSetting(
        name="GST",
        tax_type=TaxType.GST,
        percentage=Decimal("18.00"),
        apply_to_region=Region.INDIA,
        apply_currency="INR",
    )
    db_session.add(setting)
    await db_session.commit()
    return setting
