"""Subscription model for user subscriptions to plans."""
from datetime import datetime
from sqlalchemy import Column, Integer, Boolean, Enum as SQLEnum, ForeignKey, DateTime, String, Index, Uuid, text
from sqlalchemy.orm import relationship
import enum

from subscription_engine.models.base import Base, JSONType
from subscription_engine.models.plan import Region
from subscription_engine.models.payment import PaymentGateway


class SubscriptionStatus(enum.Enum):
    """Subscription lifecycle status."""

    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED)


class PlanChangeType(enum.Enum):
    """Direction of a plan change."""

    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


class Subscription(Base):
    """
    A user's subscription to a plan.

    Exactly one row per user carries ``is_current``. Plan changes create a
    new row linked through ``previous_plan_id``/``previous_subscription_id``
    and retire the old one, so history is never rewritten in place.
    """

    __tablename__ = "user_subscriptions"
    __table_args__ = (
        Index(
            "uq_user_subscriptions_current",
            "user_id",
            unique=True,
            postgresql_where=text("is_current"),
            sqlite_where=text("is_current = 1"),
        ),
    )

    user_id = Column(Integer, nullable=False, index=True)
    plan_id = Column(Uuid, ForeignKey("subscription_plans.id"), nullable=False, index=True)
    status = Column(SQLEnum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)
    region = Column(SQLEnum(Region), nullable=False, default=Region.GLOBAL)
    currency = Column(String(3), nullable=False, default="USD")
    start_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    end_date = Column(DateTime, nullable=False, index=True)
    auto_renew = Column(Boolean, nullable=False, default=True)
    grace_period_end = Column(DateTime, nullable=True)
    cancel_date = Column(DateTime, nullable=True)
    upgrade_date = Column(DateTime, nullable=True)
    previous_plan_id = Column(Uuid, ForeignKey("subscription_plans.id"), nullable=True)
    previous_subscription_id = Column(Uuid, ForeignKey("user_subscriptions.id"), nullable=True)
    payment_gateway = Column(SQLEnum(PaymentGateway), nullable=False, default=PaymentGateway.NONE)
    payment_reference = Column(String, nullable=True, index=True)  # Gateway-side subscription id
    pending_plan_change_to = Column(Uuid, ForeignKey("subscription_plans.id"), nullable=True)
    pending_plan_change_type = Column(SQLEnum(PlanChangeType), nullable=True)
    pending_plan_change_date = Column(DateTime, nullable=True)
    is_current = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)
    extra_metadata = Column(JSONType, nullable=False, default=dict)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    plan = relationship("Plan", foreign_keys=[plan_id], lazy="joined")
    history = relationship("SubscriptionHistory", back_populates="subscription", cascade="all, delete-orphan")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def grants_access(self, now: datetime) -> bool:
        """Whether this subscription currently entitles its user to the plan."""
        if self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD):
            return True
        # Non-immediate cancellation keeps access until end_date
        return self.status == SubscriptionStatus.CANCELLED and self.end_date > now

    def __repr__(self) -> str:
        """String representation."""
        return f"<Subscription(id={self.id}, user_id={self.user_id}, status={self.status.value})>"


class SubscriptionHistory(Base):
    """
    Audit trail for subscription changes.

    Tracks status transitions and plan changes.
    """

    __tablename__ = "subscription_history"

    subscription_id = Column(Uuid, ForeignKey("user_subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String, nullable=False)  # status_change, plan_change, renewal
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=False)
    reason = Column(String, nullable=True)

    # Relationships
    subscription = relationship("Subscription", back_populates="history")

    def __repr__(self) -> str:
        """String representation."""
        return f"<SubscriptionHistory(subscription_id={self.subscription_id}, event={self.event_type})>"
