"""Outbox for lifecycle notifications."""
from sqlalchemy import Column, Integer, String, Boolean

from subscription_engine.models.base import Base, JSONType


class NotificationEvent(Base):
    """
    Notification waiting for the delivery subsystem.

    The engine only records the event; delivery happens elsewhere.
    """

    __tablename__ = "notification_events"

    user_id = Column(Integer, nullable=False, index=True)
    event_type = Column(String, nullable=False, index=True)  # grace_period_started, subscription_renewed, ...
    payload = Column(JSONType, nullable=False, default=dict)
    delivered = Column(Boolean, nullable=False, default=False, index=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<NotificationEvent(user_id={self.user_id}, event_type={self.event_type}, delivered={self.delivered})>"
