"""Pydantic schemas for API request/response validation."""

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
from subscription_engine.schemas.usage import ConsumeRequest, ConsumeResult, UsageSnapshot
from subscription_engine.schemas.subscription import (
    PlanChangeResponse,
    Subscription,
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionPlanChange,
)
from subscription_engine.schemas.payment import (
    Dispute,
    DisputeCreate,
    DisputeUpdate,
    PaymentTransaction,
    Refund,
    RefundCreate,
)
from subscription_engine.schemas.webhook_event import IngestResult
from subscription_engine.schemas.invoice import Invoice, TaxBreakdown, TaxLine

__all__ = [
    "Feature",
    "FeatureCreate",
    "Plan",
    "PlanCreate",
    "PlanFeature",
    "PlanFeatureSet",
    "PlanPricing",
    "PlanPricingCreate",
    "PlanUpdate",
    "ConsumeRequest",
    "ConsumeResult",
    "UsageSnapshot",
    "PlanChangeResponse",
    "Subscription",
    "SubscriptionCancel",
    "SubscriptionCreate",
    "SubscriptionPlanChange",
    "Dispute",
    "DisputeCreate",
    "DisputeUpdate",
    "PaymentTransaction",
    "Refund",
    "RefundCreate",
    "IngestResult",
    "Invoice",
    "TaxBreakdown",
    "TaxLine",
]
