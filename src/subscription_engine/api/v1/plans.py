"""Plan catalog API endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.api.deps import get_db
from subscription_engine.auth.rbac import require_admin
from subscription_engine.models.plan import Region
from subscription_engine.schemas.invoice import TaxBreakdown
from subscription_engine.schemas.plan import (
    Feature,
    FeatureCreate,
    Plan,
    PlanCreate,
    PlanFeature,
    PlanFeatureSet,
    PlanPricing,
    PlanPricingCreate,
    PlanUpdate,
)
from subscription_engine.services.plan_catalog import PlanCatalog
from subscription_engine.services.tax_service import TaxCalculator

router = APIRouter(tags=["Plans"])


@router.get("/plans", response_model=list[Plan])
async def list_plans(db: AsyncSession = Depends(get_db)) -> list[Plan]:
    """List plans available for new subscriptions."""
    catalog = PlanCatalog(db)
    return await catalog.list_active_plans()


@router.get("/plans/{plan_id}", response_model=Plan)
async def get_plan(plan_id: UUID, db: AsyncSession = Depends(get_db)) -> Plan:
    """Get an active plan by ID."""
    catalog = PlanCatalog(db)
    return await catalog.get_plan(plan_id)


@router.get("/plans/{plan_id}/features", response_model=list[PlanFeature])
async def get_plan_features(plan_id: UUID, db: AsyncSession = Depends(get_db)) -> list[PlanFeature]:
    """Feature limits of a plan."""
    catalog = PlanCatalog(db)
    await catalog.get_plan(plan_id)
    return await catalog.get_features_for_plan(plan_id)


@router.get("/plans/{plan_id}/quote", response_model=TaxBreakdown)
async def quote_plan(
    plan_id: UUID,
    region: Region,
    currency: str,
    db: AsyncSession = Depends(get_db),
) -> TaxBreakdown:
    """
    Price of a plan in a region/currency, split into subtotal and tax.

    - **region**: ``india`` or ``global``
    - **currency**: ISO 4217 currency code
    """
    calculator = TaxCalculator(db)
    return await calculator.quote(plan_id, region, currency)


@router.post("/plans", response_model=Plan, status_code=status.HTTP_201_CREATED)
async def create_plan(
    plan_data: PlanCreate,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_admin),
) -> Plan:
    """Create a plan (admin)."""
    catalog = PlanCatalog(db)
    plan = await catalog.create_plan(plan_data)
    await db.commit()
    return plan


@router.patch("/plans/{plan_id}", response_model=Plan)
async def update_plan(
    plan_id: UUID,
    update_data: PlanUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_admin),
) -> Plan:
    """
    Update plan metadata (admin).

    Deactivating a plan hides it from new subscriptions; existing
    subscriptions keep working.
    """
    catalog = PlanCatalog(db)
    plan = await catalog.update_plan(plan_id, update_data)
    await db.commit()
    return plan


@router.post("/plans/{plan_id}/pricing", response_model=PlanPricing, status_code=status.HTTP_201_CREATED)
async def set_pricing(
    plan_id: UUID,
    pricing_data: PlanPricingCreate,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_admin),
) -> PlanPricing:
    """Add the price for one region/currency pair (admin). Returns 409 if it already exists."""
    catalog = PlanCatalog(db)
    pricing = await catalog.set_pricing(plan_id, pricing_data)
    await db.commit()
    return pricing


@router.put("/plans/{plan_id}/features", response_model=PlanFeature)
async def set_plan_feature(
    plan_id: UUID,
    feature_data: PlanFeatureSet,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_admin),
) -> PlanFeature:
    """Create or replace a feature limit on a plan (admin)."""
    catalog = PlanCatalog(db)
    plan_feature = await catalog.set_plan_feature(plan_id, feature_data)
    await db.commit()
    return plan_feature


@router.post("/features", response_model=Feature, status_code=status.HTTP_201_CREATED)
async def create_feature(
    feature_data: FeatureCreate,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_admin),
) -> Feature:
    """Register a feature code (admin)."""
    catalog = PlanCatalog(db)
    feature = await catalog.create_feature(feature_data)
    await db.commit()
    return feature
