"""Notification outbox integration for lifecycle events."""
from typing import Any
import structlog

from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.models.notification import NotificationEvent

logger = structlog.get_logger(__name__)


class NotificationService:
    """
    Records lifecycle notifications for the delivery subsystem.

    The engine never sends email or SMS itself. Each notification is an
    outbox row written in the same transaction as the transition that
    caused it, so a rolled-back transition leaves no stray notification.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize notification service.

        Args:
            db: Database session shared with the calling service
        """
        self.db = db

    async def emit(
        self,
        user_id: int,
        event_type: str,
        payload: dict[str, Any] | None = None,
    ) -> NotificationEvent:
        """
        Record a notification event.

        Args:
            user_id: Recipient user
            event_type: Notification type (grace_period_started, subscription_renewed, ...)
            payload: Template variables for the delivery subsystem

        Returns:
            The stored NotificationEvent
        """
        notification = NotificationEvent(
            user_id=user_id,
            event_type=event_type,
            payload=payload or {},
        )
        self.db.add(notification)
        await self.db.flush()

        logger.info(
            "notification_emitted",
            user_id=user_id,
            event_type=event_type,
            notification_id=str(notification.id),
        )
        return notification
