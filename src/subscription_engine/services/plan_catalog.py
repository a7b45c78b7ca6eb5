"""Plan catalog: plans, regional pricing and per-plan feature limits."""
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.errors import Conflict, InvariantViolation, NotFound, ValidationError
from subscription_engine.models.feature import Feature, LimitType, PlanFeature
from subscription_engine.models.plan import Plan, PlanPricing, Region
from subscription_engine.schemas.plan import FeatureCreate, PlanCreate, PlanFeatureSet, PlanPricingCreate, PlanUpdate
from subscription_engine.utils.currency import require_currency

logger = structlog.get_logger(__name__)


class PlanCatalog:
    """
    Read-mostly lookup over plans, pricing and plan features.

    Constructed per session and handed to the services that need it.
    """

    def __init__(self, db: AsyncSession):
        """Initialize the catalog with a database session."""
        self.db = db

    async def get_plan(self, plan_id: UUID) -> Plan:
        """
        Get an active plan.

        Raises:
            NotFound: If the plan does not exist or is inactive
        """
        plan = await self._load_plan(plan_id)
        if not plan.active:
            raise NotFound(f"Plan {plan_id} is not active", plan_id=str(plan_id))
        return plan

    async def get_plan_any_state(self, plan_id: UUID) -> Plan:
        """Get a plan regardless of its active flag (existing subscriptions keep working)."""
        return await self._load_plan(plan_id)

    async def list_active_plans(self) -> list[Plan]:
        result = await self.db.execute(select(Plan).where(Plan.active.is_(True)).order_by(Plan.name))
        return list(result.scalars().all())

    async def get_freemium_plan(self) -> Plan | None:
        result = await self.db.execute(
            select(Plan).where(Plan.is_freemium.is_(True), Plan.active.is_(True)).order_by(Plan.created_at).limit(1)
        )
        return result.scalar_one_or_none()

    async def get_pricing(self, plan_id: UUID, region: Region, currency: str) -> PlanPricing:
        """
        Get the price of an active plan in a region/currency.

        Args:
            plan_id: Plan UUID
            region: Target region
            currency: ISO 4217 currency code

        Returns:
            Matching PlanPricing row

        Raises:
            NotFound: If the plan is inactive or has no price for the pair
            InvariantViolation: If more than one price matches
        """
        await self.get_plan(plan_id)
        return await self._find_pricing(plan_id, region, currency)

    async def find_pricing(self, plan_id: UUID, region: Region, currency: str) -> PlanPricing | None:
        """Pricing lookup that ignores the active flag and returns None when absent."""
        try:
            return await self._find_pricing(plan_id, region, currency)
        except NotFound:
            return None

    async def get_feature(self, code: str) -> Feature:
        result = await self.db.execute(select(Feature).where(Feature.code == code))
        feature = result.scalar_one_or_none()
        if feature is None:
            raise NotFound(f"Feature '{code}' not found", feature_code=code)
        return feature

    async def get_features_for_plan(self, plan_id: UUID) -> list[PlanFeature]:
        """
        Get the feature limits a plan unlocks.

        Returns:
            PlanFeature rows with their Feature loaded
        """
        result = await self.db.execute(
            select(PlanFeature).where(PlanFeature.plan_id == plan_id)
        )
        return list(result.unique().scalars().all())

    async def get_plan_feature(self, plan_id: UUID, feature_id: UUID) -> PlanFeature | None:
        """
        Get the limit row for one (plan, feature) pair.

        Raises:
            InvariantViolation: If the uniqueness of (plan, feature) is broken
        """
        result = await self.db.execute(
            select(PlanFeature).where(PlanFeature.plan_id == plan_id, PlanFeature.feature_id == feature_id)
        )
        rows = result.unique().scalars().all()
        if len(rows) > 1:
            logger.error("plan_feature_duplicate_rows", plan_id=str(plan_id), feature_id=str(feature_id), rows=len(rows))
            raise InvariantViolation(
                "More than one plan feature row matched",
                plan_id=str(plan_id),
                feature_id=str(feature_id),
            )
        return rows[0] if rows else None

    # Administrative writes

    async def create_plan(self, plan_data: PlanCreate) -> Plan:
        """
        Create a new subscription plan.

        Args:
            plan_data: Plan creation data

        Returns:
            Created plan
        """
        plan = Plan(**plan_data.model_dump())
        self.db.add(plan)
        await self.db.flush()
        await self.db.refresh(plan)

        logger.info("plan_created", plan_id=str(plan.id), name=plan.name, freemium=plan.is_freemium)
        return plan

    async def update_plan(self, plan_id: UUID, update_data: PlanUpdate) -> Plan:
        """
        Apply an administrative edit.

        Subscriptions referencing the plan are left untouched.
        """
        plan = await self._load_plan(plan_id)
        for field, value in update_data.model_dump(exclude_unset=True).items():
            setattr(plan, field, value)

        await self.db.flush()
        await self.db.refresh(plan)

        logger.info("plan_updated", plan_id=str(plan.id), fields=sorted(update_data.model_fields_set))
        return plan

    async def set_pricing(self, plan_id: UUID, pricing_data: PlanPricingCreate) -> PlanPricing:
        """
        Add a price for a (region, currency) pair.

        Raises:
            NotFound: If the plan does not exist
            ValidationError: If the currency is not supported
            Conflict: If the plan already has a price for the pair
        """
        await self._load_plan(plan_id)
        currency = require_currency(pricing_data.currency)

        if await self.find_pricing(plan_id, pricing_data.region, currency) is not None:
            raise Conflict(
                f"Plan {plan_id} already has a {pricing_data.region.value}/{currency} price",
                plan_id=str(plan_id),
                region=pricing_data.region.value,
                currency=currency,
            )

        pricing = PlanPricing(
            plan_id=plan_id,
            region=pricing_data.region,
            currency=currency,
            price=pricing_data.price,
            tax_inclusive=pricing_data.tax_inclusive,
        )
        self.db.add(pricing)
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise Conflict("Duplicate plan pricing", plan_id=str(plan_id), currency=currency) from e

        logger.info(
            "plan_pricing_set",
            plan_id=str(plan_id),
            region=pricing.region.value,
            currency=currency,
            price=str(pricing.price),
        )
        return pricing

    async def create_feature(self, feature_data: FeatureCreate) -> Feature:
        existing = await self.db.execute(select(Feature).where(Feature.code == feature_data.code))
        if existing.scalar_one_or_none() is not None:
            raise Conflict(f"Feature '{feature_data.code}' already exists", feature_code=feature_data.code)

        feature = Feature(**feature_data.model_dump())
        self.db.add(feature)
        await self.db.flush()
        await self.db.refresh(feature)
        return feature

    async def set_plan_feature(self, plan_id: UUID, feature_data: PlanFeatureSet) -> PlanFeature:
        """
        Create or replace the limit of a feature on a plan.

        Raises:
            NotFound: If the plan or feature does not exist
            ValidationError: If a count limit has no (or a negative) value
        """
        await self._load_plan(plan_id)
        feature = await self.get_feature(feature_data.feature_code)

        if feature_data.limit_type == LimitType.COUNT:
            if feature_data.limit_value is None or feature_data.limit_value < 0:
                raise ValidationError(
                    "Count limits require a non-negative limit_value",
                    feature_code=feature.code,
                )

        plan_feature = await self.get_plan_feature(plan_id, feature.id)
        if plan_feature is None:
            plan_feature = PlanFeature(plan_id=plan_id, feature_id=feature.id)
            self.db.add(plan_feature)

        plan_feature.limit_type = feature_data.limit_type
        plan_feature.limit_value = feature_data.limit_value if feature_data.limit_type == LimitType.COUNT else None
        plan_feature.is_enabled = feature_data.is_enabled
        plan_feature.reset_frequency = feature_data.reset_frequency

        await self.db.flush()
        await self.db.refresh(plan_feature)
        return plan_feature

    async def _load_plan(self, plan_id: UUID) -> Plan:
        result = await self.db.execute(select(Plan).where(Plan.id == plan_id))
        plan = result.scalar_one_or_none()
        if plan is None:
            raise NotFound(f"Plan {plan_id} not found", plan_id=str(plan_id))
        return plan

    async def _find_pricing(self, plan_id: UUID, region: Region, currency: str) -> PlanPricing:
        result = await self.db.execute(
            select(PlanPricing).where(
                PlanPricing.plan_id == plan_id,
                PlanPricing.region == region,
                PlanPricing.currency == currency.upper(),
            )
        )
        rows = result.scalars().all()
        if len(rows) > 1:
            logger.error("plan_pricing_duplicate_rows", plan_id=str(plan_id), region=region.value, currency=currency)
            raise InvariantViolation(
                "More than one price matched",
                plan_id=str(plan_id),
                region=region.value,
                currency=currency,
            )
        if not rows:
            raise NotFound(
                f"Plan {plan_id} has no {region.value}/{currency} pricing",
                plan_id=str(plan_id),
                region=region.value,
                currency=currency,
            )
        return rows[0]
