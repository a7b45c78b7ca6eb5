"""Idempotent processing of inbound payment gateway webhooks."""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.adapters.base import (
    DISPUTE_CREATED,
    PAYMENT_FAILED,
    PAYMENT_SUCCESS,
    REFUND_PROCESSED,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_HALTED,
)
from subscription_engine.config import settings
from subscription_engine.errors import Conflict, InvariantViolation, NotFound, ValidationError
from subscription_engine.metrics import webhook_events_total
from subscription_engine.models.payment import PaymentGateway, PaymentStatus, PaymentTransaction
from subscription_engine.models.subscription import Subscription, SubscriptionStatus
from subscription_engine.models.webhook_event import WebhookEvent
from subscription_engine.schemas.gateway import GatewayEvent
from subscription_engine.schemas.webhook_event import IngestResult
from subscription_engine.services.payment_ledger import PaymentLedger
from subscription_engine.services.subscription_service import SubscriptionLifecycle
from subscription_engine.utils.currency import parse_amount

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 500


class WebhookReconciler:
    """
    Applies gateway events to subscriptions and the payment ledger.

    The raw event is committed before any handler runs, and the row is
    claimed with a conditional update so concurrent deliveries of the same
    event are applied once. This service owns the transaction boundaries
    of the session it is given.
    """

    def __init__(
        self,
        db: AsyncSession,
        lifecycle: SubscriptionLifecycle | None = None,
        ledger: PaymentLedger | None = None,
    ):
        """Initialize reconciler with database session and collaborators."""
        self.db = db
        self.ledger = ledger or PaymentLedger(db)
        self.lifecycle = lifecycle or SubscriptionLifecycle(db, payments=self.ledger)
        self._handlers = {
            PAYMENT_SUCCESS: self._handle_payment_success,
            PAYMENT_FAILED: self._handle_payment_failed,
            SUBSCRIPTION_HALTED: self._handle_subscription_halted,
            SUBSCRIPTION_CANCELLED: self._handle_subscription_cancelled,
            REFUND_PROCESSED: self._handle_refund,
            DISPUTE_CREATED: self._handle_dispute,
        }

    async def ingest_event(self, event: GatewayEvent, now: datetime | None = None) -> IngestResult:
        """Ingest an event already verified and normalized by an adapter."""
        return await self.ingest(event.gateway, event.external_event_id, event.event_type, event.payload, now)

    async def ingest(
        self,
        gateway: PaymentGateway,
        external_event_id: str,
        event_type: str,
        payload: dict[str, Any],
        now: datetime | None = None,
    ) -> IngestResult:
        """
        Store and process one gateway event.

        Args:
            gateway: Originating gateway
            external_event_id: Gateway event id (deduplication key)
            event_type: Canonical event type
            payload: Normalized event payload
            now: Processing time (defaults to utcnow)

        Returns:
            IngestResult; ``ok`` tells the HTTP layer whether to acknowledge

        Raises:
            InvariantViolation: After recording it on the event
        """
        now = now or datetime.utcnow()

        event = await self._find_event(gateway, external_event_id)
        if event is None:
            event = await self._store_event(gateway, external_event_id, event_type, payload)

        if event.processed:
            webhook_events_total.labels(gateway=gateway.value, outcome="duplicate").inc()
            logger.info(
                "webhook_event_duplicate",
                gateway=gateway.value,
                external_event_id=external_event_id,
                event_id=str(event.id),
            )
            return IngestResult(event_id=event.id, status="duplicate", duplicate=True)

        return await self._process(event, now)

    async def retry_failed(self, limit: int = 50, now: datetime | None = None) -> list[IngestResult]:
        """
        Reprocess stored events that have not been processed yet.

        Events whose claim lease is still running are skipped by the claim.
        """
        now = now or datetime.utcnow()
        result = await self.db.execute(
            select(WebhookEvent.id)
            .where(WebhookEvent.processed.is_(False))
            .order_by(WebhookEvent.created_at)
            .limit(limit)
        )
        event_ids = list(result.scalars().all())

        results = []
        for event_id in event_ids:
            # Reloaded per event; a failed predecessor rolls back and expires instances
            event = await self.db.get(WebhookEvent, event_id, populate_existing=True)
            if event is None or event.processed:
                continue
            try:
                results.append(await self._process(event, now))
            except InvariantViolation as e:
                results.append(IngestResult(event_id=event_id, status="failed", error=e.message))

        logger.info("webhook_retry_completed", candidates=len(event_ids), processed=sum(r.ok for r in results))
        return results

    async def _find_event(self, gateway: PaymentGateway, external_event_id: str) -> WebhookEvent | None:
        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.gateway == gateway, WebhookEvent.external_event_id == external_event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _store_event(
        self,
        gateway: PaymentGateway,
        external_event_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> WebhookEvent:
        """Persist the raw event, committing it before any processing."""
        event = WebhookEvent(
            gateway=gateway,
            external_event_id=external_event_id,
            event_type=event_type,
            payload=payload,
            processed=False,
            attempts=0,
        )
        self.db.add(event)
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost the insert race to a concurrent delivery
            await self.db.rollback()
            existing = await self._find_event(gateway, external_event_id)
            if existing is None:
                raise InvariantViolation(
                    "Webhook event insert conflicted but no row exists",
                    gateway=gateway.value,
                    external_event_id=external_event_id,
                )
            return existing

        logger.info(
            "webhook_event_stored",
            event_id=str(event.id),
            gateway=gateway.value,
            external_event_id=external_event_id,
            event_type=event_type,
        )
        return event

    async def _claim(self, event_id: UUID, now: datetime) -> bool:
        lease_expired = now - timedelta(seconds=settings.webhook_claim_lease_seconds)
        result = await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.id == event_id,
                WebhookEvent.processed.is_(False),
                or_(WebhookEvent.claimed_at.is_(None), WebhookEvent.claimed_at < lease_expired),
            )
            .values(claimed_at=now, attempts=WebhookEvent.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def _process(self, event: WebhookEvent, now: datetime) -> IngestResult:
        # Captured up front; a rollback expires the instance
        event_id = event.id
        gateway = event.gateway
        event_type = event.event_type
        external_event_id = event.external_event_id
        payload = dict(event.payload or {})
        log = logger.bind(event_id=str(event_id), gateway=gateway.value, event_type=event_type)

        if not await self._claim(event_id, now):
            webhook_events_total.labels(gateway=gateway.value, outcome="in_progress").inc()
            log.info("webhook_event_claimed_elsewhere")
            return IngestResult(event_id=event_id, status="in_progress")

        handler = self._handlers.get(event_type)
        try:
            if handler is None:
                log.info("webhook_event_unhandled")
            else:
                await handler(gateway, payload, external_event_id, now)
            await self._mark_processed(event_id, now)
        except Conflict as e:
            # Already applied under another envelope or by a concurrent writer
            await self.db.rollback()
            log.info("webhook_event_conflict_treated_as_applied", error=e.message)
            await self._mark_processed(event_id, now)
        except InvariantViolation as e:
            await self.db.rollback()
            log.error("webhook_invariant_violation", error=e.message, details=e.details)
            await self._mark_failed(event_id, e.message)
            webhook_events_total.labels(gateway=gateway.value, outcome="failed").inc()
            raise
        except Exception as e:
            await self.db.rollback()
            log.error("webhook_event_failed", error=str(e), exc_info=True)
            await self._mark_failed(event_id, str(e))
            webhook_events_total.labels(gateway=gateway.value, outcome="failed").inc()
            return IngestResult(event_id=event_id, status="failed", error=str(e)[:MAX_ERROR_LENGTH])

        webhook_events_total.labels(gateway=gateway.value, outcome="processed").inc()
        log.info("webhook_event_processed")
        return IngestResult(event_id=event_id, status="processed")

    async def _mark_processed(self, event_id: UUID, now: datetime) -> None:
        await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(processed=True, processed_at=now, processing_error=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _mark_failed(self, event_id: UUID, error: str) -> None:
        """Store the error and release the claim so a retry can pick the event up."""
        await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(processing_error=error[:MAX_ERROR_LENGTH], claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    # Handlers

    async def _resolve_subscription(self, gateway: PaymentGateway, payload: dict[str, Any]) -> Subscription:
        """Find the subscription an event refers to."""
        if payload.get("subscription_id"):
            try:
                subscription_id = UUID(str(payload["subscription_id"]))
            except ValueError as e:
                raise ValidationError(f"Malformed subscription id {payload['subscription_id']!r}") from e
            return await self.lifecycle.get_subscription(subscription_id)

        if payload.get("payment_reference"):
            subscription = await self.lifecycle.find_by_payment_reference(gateway, payload["payment_reference"])
            if subscription is not None:
                return subscription

        if payload.get("transaction_id"):
            transaction = await self.ledger.find_by_gateway_id(gateway, payload["transaction_id"])
            if transaction is not None:
                return await self.lifecycle.get_subscription(transaction.subscription_id)

        raise NotFound(
            "Event does not reference a known subscription",
            gateway=gateway.value,
            payment_reference=payload.get("payment_reference"),
            transaction_id=payload.get("transaction_id"),
        )

    async def _require_transaction(self, gateway: PaymentGateway, payload: dict[str, Any]) -> PaymentTransaction:
        gateway_transaction_id = payload.get("transaction_id")
        transaction = None
        if gateway_transaction_id:
            transaction = await self.ledger.find_by_gateway_id(gateway, gateway_transaction_id)
        if transaction is None:
            raise NotFound(
                f"Transaction {gateway_transaction_id} not found",
                gateway=gateway.value,
                transaction_id=gateway_transaction_id,
            )
        return transaction

    async def _handle_payment_success(
        self,
        gateway: PaymentGateway,
        payload: dict[str, Any],
        external_event_id: str,
        now: datetime,
    ) -> None:
        if payload.get("amount") is None:
            raise ValidationError("Payment event carries no amount", gateway=gateway.value)
        amount = parse_amount(payload["amount"])
        gateway_transaction_id = payload.get("transaction_id") or f"event:{external_event_id}"

        existing = await self.ledger.find_by_gateway_id(gateway, gateway_transaction_id)
        if existing is not None and existing.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            logger.info(
                "payment_already_applied",
                transaction_id=str(existing.id),
                gateway_transaction_id=gateway_transaction_id,
            )
            return

        subscription = await self._resolve_subscription(gateway, payload)
        if subscription.is_terminal:
            # A plan change may have superseded the referenced row
            current = await self.lifecycle.get_current(subscription.user_id)
            if current is not None and not current.is_terminal:
                subscription = current

        if subscription.is_terminal:
            subscription = await self.lifecycle.reactivate(subscription.id, now)
            await self._record_payment(subscription, amount, payload, gateway, gateway_transaction_id, PaymentStatus.COMPLETED)
            return

        transaction = await self._record_payment(
            subscription, amount, payload, gateway, gateway_transaction_id, PaymentStatus.COMPLETED
        )
        if transaction.status != PaymentStatus.COMPLETED:
            raise InvariantViolation(
                "Payment success left the transaction uncompleted",
                transaction_id=str(transaction.id),
                status=transaction.status.value,
            )
        await self.lifecycle.record_successful_payment(subscription.id, now)

    async def _handle_payment_failed(
        self,
        gateway: PaymentGateway,
        payload: dict[str, Any],
        external_event_id: str,
        now: datetime,
    ) -> None:
        subscription = await self._resolve_subscription(gateway, payload)
        gateway_transaction_id = payload.get("transaction_id") or f"event:{external_event_id}"
        amount = parse_amount(payload["amount"]) if payload.get("amount") is not None else Decimal("0.00")
        await self._record_payment(subscription, amount, payload, gateway, gateway_transaction_id, PaymentStatus.FAILED)

        renewal_due = subscription.end_date - now <= timedelta(days=settings.renewal_window_days)
        if subscription.status == SubscriptionStatus.ACTIVE and renewal_due:
            await self.lifecycle.move_to_grace_period(
                subscription.id,
                reason=payload.get("reason") or "renewal_payment_failed",
                now=now,
            )

    async def _handle_subscription_halted(
        self,
        gateway: PaymentGateway,
        payload: dict[str, Any],
        external_event_id: str,
        now: datetime,
    ) -> None:
        subscription = await self._resolve_subscription(gateway, payload)
        await self.lifecycle.move_to_grace_period(subscription.id, halted=True, reason="gateway_halted", now=now)

    async def _handle_subscription_cancelled(
        self,
        gateway: PaymentGateway,
        payload: dict[str, Any],
        external_event_id: str,
        now: datetime,
    ) -> None:
        subscription = await self._resolve_subscription(gateway, payload)
        if subscription.is_terminal or not subscription.is_current:
            logger.info(
                "gateway_cancellation_ignored",
                subscription_id=str(subscription.id),
                status=subscription.status.value,
            )
            return
        await self.lifecycle.cancel(subscription.user_id, immediate=False, reason="gateway_cancelled", now=now)

    async def _handle_refund(
        self,
        gateway: PaymentGateway,
        payload: dict[str, Any],
        external_event_id: str,
        now: datetime,
    ) -> None:
        transaction = await self._require_transaction(gateway, payload)
        if payload.get("amount") is not None:
            amount = parse_amount(payload["amount"])
        else:
            amount = Decimal(transaction.amount) - Decimal(transaction.refunded_amount or 0)
        await self.ledger.refund(
            transaction.id,
            amount,
            reason=payload.get("reason") or "gateway_refund",
            gateway_refund_id=payload.get("refund_id"),
        )

    async def _handle_dispute(
        self,
        gateway: PaymentGateway,
        payload: dict[str, Any],
        external_event_id: str,
        now: datetime,
    ) -> None:
        transaction = await self._require_transaction(gateway, payload)
        await self.ledger.open_dispute(
            transaction.id,
            reason=payload.get("reason") or "unspecified",
            gateway_dispute_id=payload.get("dispute_id"),
        )

    async def _record_payment(
        self,
        subscription: Subscription,
        amount: Decimal,
        payload: dict[str, Any],
        gateway: PaymentGateway,
        gateway_transaction_id: str,
        status: PaymentStatus,
    ) -> PaymentTransaction:
        return await self.ledger.record_transaction(
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            amount=amount,
            currency=payload.get("currency") or subscription.currency,
            gateway=gateway,
            gateway_transaction_id=gateway_transaction_id,
            status=status,
            metadata={"payment_reference": payload.get("payment_reference")},
        )
