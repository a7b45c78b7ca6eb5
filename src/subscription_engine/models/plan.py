"""Plan and regional pricing models."""
from sqlalchemy import Column, String, Boolean, Numeric, ForeignKey, Text, UniqueConstraint, Enum as SQLEnum, Uuid
from sqlalchemy.orm import relationship
import enum

from subscription_engine.models.base import Base


class BillingCycle(enum.Enum):
    """Billing cycle for plans."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class Region(enum.Enum):
    """Market a price row applies to."""

    INDIA = "india"
    GLOBAL = "global"


class Plan(Base):
    """
    Subscription plan.

    Prices live in PlanPricing so one plan can be sold in several
    region/currency combinations. Admin edits never touch subscriptions
    already referencing the plan.
    """

    __tablename__ = "subscription_plans"

    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    billing_cycle = Column(SQLEnum(BillingCycle), nullable=False, default=BillingCycle.MONTHLY)
    is_featured = Column(Boolean, nullable=False, default=False)
    is_freemium = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True, index=True)

    # Relationships
    pricing = relationship("PlanPricing", back_populates="plan", cascade="all, delete-orphan")
    features = relationship("PlanFeature", back_populates="plan", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        """String representation."""
        return f"<Plan(id={self.id}, name={self.name}, cycle={self.billing_cycle.value}, freemium={self.is_freemium})>"


class PlanPricing(Base):
    """Price of a plan for one (region, currency) pair."""

    __tablename__ = "plan_pricing"
    __table_args__ = (
        UniqueConstraint("plan_id", "region", "currency", name="uq_plan_pricing_plan_region_currency"),
    )

    plan_id = Column(Uuid, ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False, index=True)
    region = Column(SQLEnum(Region), nullable=False)
    currency = Column(String(3), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    # True when the listed price already contains tax (e.g. GST in India)
    tax_inclusive = Column(Boolean, nullable=False, default=False)

    plan = relationship("Plan", back_populates="pricing")

    def __repr__(self) -> str:
        """String representation."""
        return f"<PlanPricing(plan_id={self.plan_id}, region={self.region.value}, {self.price} {self.currency})>"
