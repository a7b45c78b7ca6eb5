"""Pydantic schemas for the plan catalog."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict

from subscription_engine.models.plan import BillingCycle, Region
from subscription_engine.models.feature import FeatureType, LimitType, ResetFrequency


class PlanBase(BaseModel):
    """Base plan schema with common fields."""

    name: str = Field(..., min_length=1, max_length=255, description="Plan name")
    description: str | None = Field(default=None, description="Marketing description")
    billing_cycle: BillingCycle = Field(default=BillingCycle.MONTHLY, description="Billing cycle")
    is_featured: bool = Field(default=False, description="Highlight on the pricing page")
    is_freemium: bool = Field(default=False, description="Free plan assigned without payment")
    active: bool = Field(default=True, description="Whether plan is available for new subscriptions")


class PlanCreate(PlanBase):
    """Schema for creating a new plan."""


class PlanUpdate(BaseModel):
    """Administrative edit. Never alters existing subscriptions."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    is_featured: bool | None = None
    active: bool | None = None


class Plan(PlanBase):
    """Schema for returning plan data."""

    id: UUID
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PlanPricingCreate(BaseModel):
    """Price for one (region, currency) pair."""

    region: Region
    currency: str = Field(..., min_length=3, max_length=3, description="ISO 4217 currency code")
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    tax_inclusive: bool = Field(default=False, description="Listed price already contains tax")


class PlanPricing(PlanPricingCreate):
    """Schema for returning pricing data."""

    id: UUID
    plan_id: UUID

    model_config = ConfigDict(from_attributes=True)


class FeatureCreate(BaseModel):
    """Schema for registering a feature code."""

    code: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9_]+$")
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    feature_type: FeatureType = FeatureType.ESSENTIAL
    is_countable: bool = True
    is_token_based: bool = False
    cost_factor: Decimal = Field(default=Decimal("1.0"), ge=0)


class Feature(FeatureCreate):
    """Schema for returning feature data."""

    id: UUID

    model_config = ConfigDict(from_attributes=True)


class PlanFeatureSet(BaseModel):
    """Limit assignment of a feature on a plan."""

    feature_code: str
    limit_type: LimitType
    limit_value: int | None = None
    is_enabled: bool = True
    reset_frequency: ResetFrequency = ResetFrequency.NEVER


class PlanFeature(BaseModel):
    """Schema for returning a plan's feature limit."""

    id: UUID
    plan_id: UUID
    feature: Feature
    limit_type: LimitType
    limit_value: int | None
    is_enabled: bool
    reset_frequency: ResetFrequency

    model_config = ConfigDict(from_attributes=True)
