"""Inbound payment-gateway webhook events."""
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, UniqueConstraint, Enum as SQLEnum

from subscription_engine.models.base import Base, JSONType
from subscription_engine.models.payment import PaymentGateway


class WebhookEvent(Base):
    """
    Raw gateway event, stored before it is processed.

    ``(gateway, external_event_id)`` is the deduplication key.
    """

    __tablename__ = "payment_webhook_events"
    __table_args__ = (
        UniqueConstraint("gateway", "external_event_id", name="uq_webhook_events_gateway_external_id"),
    )

    gateway = Column(SQLEnum(PaymentGateway), nullable=False)
    external_event_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False, index=True)
    payload = Column(JSONType, nullable=False)
    processed = Column(Boolean, nullable=False, default=False, index=True)
    processing_error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    claimed_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<WebhookEvent(id={self.id}, gateway={self.gateway.value}, event_type={self.event_type}, processed={self.processed})>"
