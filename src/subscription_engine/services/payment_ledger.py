"""Payment ledger: transactions, refunds and disputes."""
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from subscription_engine.errors import Conflict, NotFound, ValidationError
from subscription_engine.metrics import payments_recorded_total, refunds_total
from subscription_engine.models.payment import (
    Dispute,
    DisputeStatus,
    PaymentGateway,
    PaymentStatus,
    PaymentTransaction,
    Refund,
)
from subscription_engine.utils.currency import parse_amount, quantize_money, require_currency

logger = structlog.get_logger(__name__)

# Allowed status moves outside of refunds
STATUS_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: set(),
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}

DISPUTE_TRANSITIONS = {
    DisputeStatus.OPEN: {DisputeStatus.UNDER_REVIEW, DisputeStatus.RESOLVED, DisputeStatus.REJECTED},
    DisputeStatus.UNDER_REVIEW: {DisputeStatus.RESOLVED, DisputeStatus.REJECTED},
    DisputeStatus.RESOLVED: set(),
    DisputeStatus.REJECTED: set(),
}


class PaymentLedger:
    """Append-mostly record of money movements."""

    def __init__(self, db: AsyncSession):
        """Initialize payment ledger with database session."""
        self.db = db

    async def record_transaction(
        self,
        user_id: int,
        subscription_id: UUID,
        amount: Decimal,
        currency: str,
        gateway: PaymentGateway,
        gateway_transaction_id: str | None,
        status: PaymentStatus = PaymentStatus.PENDING,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentTransaction:
        """
        Record a transaction against exactly one subscription.

        Idempotent on ``(gateway, gateway_transaction_id)``: recording the
        same gateway transaction again returns the stored row, moving it out
        of PENDING when the new status allows it. A FAILED row reported as
        COMPLETED is a gateway retry of the same charge and is marked succeeded.

        Args:
            user_id: Paying user
            subscription_id: Subscription the payment belongs to
            amount: Amount in major units
            currency: ISO 4217 currency code
            gateway: Processing gateway
            gateway_transaction_id: Gateway payment id (None for internal entries)
            status: Initial status
            metadata: Extra gateway details

        Returns:
            The stored transaction

        Raises:
            ValidationError: If the amount is negative or the currency unsupported
        """
        amount = parse_amount(amount)
        currency = require_currency(currency)

        if gateway_transaction_id is not None:
            existing = await self.find_by_gateway_id(gateway, gateway_transaction_id)
            if existing is not None:
                if existing.subscription_id != subscription_id:
                    raise Conflict(
                        f"Gateway transaction {gateway_transaction_id} already belongs to another subscription",
                        transaction_id=str(existing.id),
                    )
                if existing.status == PaymentStatus.FAILED and status == PaymentStatus.COMPLETED:
                    await self.mark_succeeded(existing.id, amount)
                elif existing.status != status and status in STATUS_TRANSITIONS[existing.status]:
                    await self.update_status(existing.id, status)
                logger.info(
                    "payment_transaction_already_recorded",
                    transaction_id=str(existing.id),
                    gateway=gateway.value,
                    gateway_transaction_id=gateway_transaction_id,
                )
                return existing

        transaction = PaymentTransaction(
            user_id=user_id,
            subscription_id=subscription_id,
            amount=amount,
            currency=currency,
            gateway=gateway,
            gateway_transaction_id=gateway_transaction_id,
            status=status,
            refunded_amount=Decimal("0.00"),
            extra_metadata=metadata or {},
        )
        self.db.add(transaction)
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise Conflict(
                "Gateway transaction was recorded concurrently",
                gateway=gateway.value,
                gateway_transaction_id=gateway_transaction_id,
            ) from e

        payments_recorded_total.labels(gateway=gateway.value, status=status.value, currency=currency).inc()
        logger.info(
            "payment_transaction_recorded",
            transaction_id=str(transaction.id),
            subscription_id=str(subscription_id),
            user_id=user_id,
            amount=str(amount),
            currency=currency,
            gateway=gateway.value,
            status=status.value,
        )
        return transaction

    async def get_transaction(self, transaction_id: UUID) -> PaymentTransaction:
        """
        Get transaction by ID.

        Raises:
            NotFound: If the transaction does not exist
        """
        result = await self.db.execute(
            select(PaymentTransaction)
            .options(selectinload(PaymentTransaction.refunds))
            .where(PaymentTransaction.id == transaction_id)
        )
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise NotFound(f"Transaction {transaction_id} not found", transaction_id=str(transaction_id))
        return transaction

    async def find_by_gateway_id(self, gateway: PaymentGateway, gateway_transaction_id: str) -> PaymentTransaction | None:
        result = await self.db.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.gateway == gateway,
                PaymentTransaction.gateway_transaction_id == gateway_transaction_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_transactions(self, user_id: int) -> list[PaymentTransaction]:
        result = await self.db.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.user_id == user_id)
            .order_by(PaymentTransaction.created_at.desc())
        )
        return list(result.scalars().all())

    async def update_status(self, transaction_id: UUID, status: PaymentStatus) -> PaymentTransaction:
        """
        Move a transaction to a new status.

        Only PENDING transactions change status here; completed ones move
        to REFUNDED through ``refund``.

        Raises:
            ValidationError: If the transition is not allowed
        """
        transaction = await self._lock(transaction_id)
        if status not in STATUS_TRANSITIONS[transaction.status]:
            raise ValidationError(
                f"Cannot move transaction from {transaction.status.value} to {status.value}",
                transaction_id=str(transaction_id),
            )

        old_status = transaction.status
        transaction.status = status
        await self.db.flush()

        payments_recorded_total.labels(
            gateway=transaction.gateway.value, status=status.value, currency=transaction.currency
        ).inc()
        logger.info(
            "payment_status_changed",
            transaction_id=str(transaction_id),
            old_status=old_status.value,
            new_status=status.value,
        )
        return transaction

    async def mark_succeeded(self, transaction_id: UUID, amount: Decimal | None = None) -> PaymentTransaction:
        """
        Complete a pending or declined transaction the gateway later captured.

        Gateways retry a declined charge under the same payment id, so a
        FAILED row may still become COMPLETED. The captured amount replaces
        the stored one when given.

        Raises:
            ValidationError: If the transaction is already completed or refunded
        """
        transaction = await self._lock(transaction_id)
        if transaction.status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            raise ValidationError(
                f"Cannot mark a {transaction.status.value} transaction as succeeded",
                transaction_id=str(transaction_id),
            )

        old_status = transaction.status
        transaction.status = PaymentStatus.COMPLETED
        if amount is not None:
            transaction.amount = parse_amount(amount)
        await self.db.flush()

        payments_recorded_total.labels(
            gateway=transaction.gateway.value, status=PaymentStatus.COMPLETED.value, currency=transaction.currency
        ).inc()
        logger.info(
            "payment_marked_succeeded",
            transaction_id=str(transaction_id),
            old_status=old_status.value,
            amount=str(transaction.amount),
        )
        return transaction

    async def refund(
        self,
        transaction_id: UUID,
        amount: Decimal,
        reason: str,
        gateway_refund_id: str | None = None,
    ) -> Refund:
        """
        Refund part or all of a completed transaction.

        Args:
            transaction_id: Transaction to refund
            amount: Amount to refund in major units
            reason: Why the money is returned
            gateway_refund_id: Gateway refund id, makes the call idempotent

        Returns:
            The Refund row (the existing one for a repeated gateway refund id)

        Raises:
            ValidationError: If the transaction is not completed, the amount is
                not positive, or cumulative refunds would exceed the original amount
        """
        transaction = await self._lock(transaction_id)

        if gateway_refund_id is not None:
            result = await self.db.execute(
                select(Refund).where(Refund.gateway == transaction.gateway, Refund.gateway_refund_id == gateway_refund_id)
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                logger.info("refund_already_applied", refund_id=str(existing.id), gateway_refund_id=gateway_refund_id)
                return existing

        amount = parse_amount(amount)
        if amount <= 0:
            raise ValidationError("Refund amount must be positive", transaction_id=str(transaction_id))
        if transaction.status != PaymentStatus.COMPLETED:
            raise ValidationError(
                f"Cannot refund a {transaction.status.value} transaction",
                transaction_id=str(transaction_id),
            )

        already_refunded = Decimal(transaction.refunded_amount or 0)
        original = Decimal(transaction.amount)
        if already_refunded + amount > original:
            raise ValidationError(
                f"Refund of {amount} exceeds refundable balance {original - already_refunded}",
                transaction_id=str(transaction_id),
                amount=str(amount),
                refunded=str(already_refunded),
                original=str(original),
            )

        total_refunded = quantize_money(already_refunded + amount)
        is_partial = total_refunded < original

        refund = Refund(
            transaction_id=transaction.id,
            gateway=transaction.gateway,
            gateway_refund_id=gateway_refund_id,
            amount=amount,
            reason=reason,
            is_partial=is_partial,
        )
        self.db.add(refund)

        transaction.refunded_amount = total_refunded
        transaction.refund_reason = reason
        if not is_partial:
            transaction.status = PaymentStatus.REFUNDED

        await self.db.flush()

        refunds_total.labels(kind="partial" if is_partial else "full", currency=transaction.currency).inc()
        logger.info(
            "refund_applied",
            transaction_id=str(transaction.id),
            refund_id=str(refund.id),
            amount=str(amount),
            total_refunded=str(total_refunded),
            partial=is_partial,
        )
        return refund

    async def open_dispute(
        self,
        transaction_id: UUID,
        reason: str,
        gateway_dispute_id: str | None = None,
    ) -> Dispute:
        """
        Open a dispute on a transaction.

        Repeating a known gateway dispute id returns the stored dispute.
        """
        transaction = await self.get_transaction(transaction_id)

        if gateway_dispute_id is not None:
            result = await self.db.execute(
                select(Dispute).where(
                    Dispute.transaction_id == transaction.id,
                    Dispute.gateway_dispute_id == gateway_dispute_id,
                )
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                return existing

        dispute = Dispute(
            transaction_id=transaction.id,
            user_id=transaction.user_id,
            gateway_dispute_id=gateway_dispute_id,
            reason=reason,
            status=DisputeStatus.OPEN,
        )
        self.db.add(dispute)
        await self.db.flush()

        logger.warning(
            "dispute_opened",
            dispute_id=str(dispute.id),
            transaction_id=str(transaction.id),
            user_id=transaction.user_id,
            reason=reason,
        )
        return dispute

    async def update_dispute(
        self,
        dispute_id: UUID,
        status: DisputeStatus,
        resolution_notes: str | None = None,
    ) -> Dispute:
        """
        Move a dispute along its workflow.

        Raises:
            NotFound: If the dispute does not exist
            ValidationError: If the transition is not allowed
        """
        result = await self.db.execute(select(Dispute).where(Dispute.id == dispute_id))
        dispute = result.scalar_one_or_none()
        if dispute is None:
            raise NotFound(f"Dispute {dispute_id} not found", dispute_id=str(dispute_id))

        if status not in DISPUTE_TRANSITIONS[dispute.status]:
            raise ValidationError(
                f"Cannot move dispute from {dispute.status.value} to {status.value}",
                dispute_id=str(dispute_id),
            )

        dispute.status = status
        if resolution_notes is not None:
            dispute.resolution_notes = resolution_notes
        if status in (DisputeStatus.RESOLVED, DisputeStatus.REJECTED):
            dispute.resolved_at = datetime.utcnow()
        await self.db.flush()

        logger.info("dispute_updated", dispute_id=str(dispute_id), status=status.value)
        return dispute

    async def _lock(self, transaction_id: UUID) -> PaymentTransaction:
        result = await self.db.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise NotFound(f"Transaction {transaction_id} not found", transaction_id=str(transaction_id))
        return transaction
