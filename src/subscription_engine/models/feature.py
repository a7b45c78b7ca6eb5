"""Feature catalog and per-plan feature limits."""
from decimal import Decimal

from sqlalchemy import Column, String, Boolean, Integer, Numeric, ForeignKey, Text, UniqueConstraint, Enum as SQLEnum, Uuid
from sqlalchemy.orm import relationship
import enum

from subscription_engine.models.base import Base


class FeatureType(enum.Enum):
    """Feature tier."""

    ESSENTIAL = "essential"
    ADVANCED = "advanced"
    PROFESSIONAL = "professional"


class LimitType(enum.Enum):
    """How a plan limits a feature."""

    UNLIMITED = "unlimited"
    COUNT = "count"
    BOOLEAN = "boolean"


class ResetFrequency(enum.Enum):
    """Cadence at which a usage counter returns to zero."""

    NEVER = "never"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Feature(Base):
    """
    A capability calling code asks permission for, addressed by ``code``
    (e.g. ``resume_generation``).
    """

    __tablename__ = "features"

    name = Column(String, nullable=False)
    code = Column(String, nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)
    feature_type = Column(SQLEnum(FeatureType), nullable=False, default=FeatureType.ESSENTIAL)
    is_countable = Column(Boolean, nullable=False, default=True)
    is_token_based = Column(Boolean, nullable=False, default=False)
    cost_factor = Column(Numeric(10, 4), nullable=False, default=Decimal("1.0"))

    def __repr__(self) -> str:
        """String representation."""
        return f"<Feature(code={self.code}, type={self.feature_type.value})>"


class PlanFeature(Base):
    """Limit a plan places on one feature."""

    __tablename__ = "plan_features"
    __table_args__ = (
        UniqueConstraint("plan_id", "feature_id", name="uq_plan_features_plan_feature"),
    )

    plan_id = Column(Uuid, ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False, index=True)
    feature_id = Column(Uuid, ForeignKey("features.id", ondelete="CASCADE"), nullable=False, index=True)
    limit_type = Column(SQLEnum(LimitType), nullable=False, default=LimitType.BOOLEAN)
    limit_value = Column(Integer, nullable=True)  # Required when limit_type is COUNT
    is_enabled = Column(Boolean, nullable=False, default=True)
    reset_frequency = Column(SQLEnum(ResetFrequency), nullable=False, default=ResetFrequency.NEVER)

    plan = relationship("Plan", back_populates="features")
    feature = relationship("Feature", lazy="joined")

    def __repr__(self) -> str:
        """String representation."""
        return f"<PlanFeature(plan_id={self.plan_id}, feature_id={self.feature_id}, limit={self.limit_type.value}:{self.limit_value})>"
