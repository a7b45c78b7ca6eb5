"""Pydantic schemas for Subscription model."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict

from subscription_engine.models.payment import PaymentGateway
from subscription_engine.models.plan import Region
from subscription_engine.models.subscription import PlanChangeType, SubscriptionStatus


class SubscriptionCreate(BaseModel):
    """Schema for starting a subscription after checkout."""

    user_id: int = Field(..., ge=1, description="User this subscription belongs to")
    plan_id: UUID = Field(..., description="Plan ID for this subscription")
    region: Region = Field(default=Region.GLOBAL)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    payment_gateway: PaymentGateway = Field(default=PaymentGateway.NONE)
    payment_reference: str | None = Field(default=None, description="Gateway-side subscription id")
    auto_renew: bool = True


class SubscriptionCancel(BaseModel):
    """Schema for cancelling a subscription."""

    immediate: bool = Field(default=False, description="End access now instead of at end_date")
    reason: str | None = None


class SubscriptionPlanChange(BaseModel):
    """Schema for requesting a plan change."""

    new_plan_id: UUID = Field(..., description="Plan to switch to")


class Subscription(BaseModel):
    """Schema for returning subscription data."""

    id: UUID
    user_id: int
    plan_id: UUID
    status: SubscriptionStatus
    region: Region
    currency: str
    start_date: datetime
    end_date: datetime
    auto_renew: bool
    grace_period_end: datetime | None
    cancel_date: datetime | None
    upgrade_date: datetime | None
    previous_plan_id: UUID | None
    payment_gateway: PaymentGateway
    payment_reference: str | None
    pending_plan_change_to: UUID | None
    pending_plan_change_type: PlanChangeType | None
    pending_plan_change_date: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PlanChangeResponse(BaseModel):
    """Result of a plan change request."""

    subscription: Subscription
    change_type: PlanChangeType
    effective_date: datetime
    prorated_amount: Decimal
