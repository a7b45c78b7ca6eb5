"""Payment gateway configuration and external plan mappings."""
from sqlalchemy import Column, String, Boolean, ForeignKey, UniqueConstraint, Enum as SQLEnum, Uuid

from subscription_engine.models.base import Base, JSONType
from subscription_engine.models.payment import PaymentGateway


class PaymentGatewayConfig(Base):
    """
    Stored gateway configuration.

    ``config`` is always written through the typed schemas in
    ``subscription_engine.schemas.gateway``.
    """

    __tablename__ = "payment_gateway_configs"

    name = Column(String, nullable=False)
    gateway = Column(SQLEnum(PaymentGateway), nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_default = Column(Boolean, nullable=False, default=False)
    test_mode = Column(Boolean, nullable=False, default=True)
    config = Column(JSONType, nullable=False, default=dict)

    def __repr__(self) -> str:
        """String representation."""
        return f"<PaymentGatewayConfig(gateway={self.gateway.value}, active={self.is_active})>"


class GatewayPlanMapping(Base):
    """External plan object for one (gateway, plan, currency)."""

    __tablename__ = "gateway_plan_mappings"
    __table_args__ = (
        UniqueConstraint("gateway", "plan_id", "currency", name="uq_gateway_plan_mappings_gateway_plan_currency"),
    )

    gateway = Column(SQLEnum(PaymentGateway), nullable=False, index=True)
    plan_id = Column(Uuid, ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False, index=True)
    currency = Column(String(3), nullable=False)
    external_plan_id = Column(String, nullable=False)

    def __repr__(self) -> str:
        """String representation."""
        return f"<GatewayPlanMapping({self.gateway.value}, plan_id={self.plan_id}, {self.currency} -> {self.external_plan_id})>"
