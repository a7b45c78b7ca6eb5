"""SQLAlchemy ORM models for the subscription engine."""
# Import all models here to ensure they are registered with Alembic

from subscription_engine.models.base import Base
from subscription_engine.models.plan import Plan, PlanPricing, BillingCycle, Region
from subscription_engine.models.feature import Feature, PlanFeature, FeatureType, LimitType, ResetFrequency
from subscription_engine.models.payment import (
    PaymentGateway,
    PaymentStatus,
    PaymentTransaction,
    Refund,
    Dispute,
    DisputeStatus,
)
from subscription_engine.models.subscription import (
    Subscription,
    SubscriptionStatus,
    SubscriptionHistory,
    PlanChangeType,
)
from subscription_engine.models.usage import FeatureUsage
from subscription_engine.models.webhook_event import WebhookEvent
from subscription_engine.models.gateway import PaymentGatewayConfig, GatewayPlanMapping
from subscription_engine.models.tax import TaxSetting, TaxType, CompanyTaxInfo, BillingDetails
from subscription_engine.models.invoice import Invoice, InvoiceStatus, InvoiceSettings
from subscription_engine.models.notification import NotificationEvent

__all__ = [
    "Base",
    "Plan",
    "PlanPricing",
    "BillingCycle",
    "Region",
    "Feature",
    "PlanFeature",
    "FeatureType",
    "LimitType",
    "ResetFrequency",
    "PaymentGateway",
    "PaymentStatus",
    "PaymentTransaction",
    "Refund",
    "Dispute",
    "DisputeStatus",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionHistory",
    "PlanChangeType",
    "FeatureUsage",
    "WebhookEvent",
    "PaymentGatewayConfig",
    "GatewayPlanMapping",
    "TaxSetting",
    "TaxType",
    "CompanyTaxInfo",
    "BillingDetails",
    "Invoice",
    "InvoiceStatus",
    "InvoiceSettings",
    "NotificationEvent",
]
