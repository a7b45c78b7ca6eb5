"""Invoice service: one frozen invoice per payment transaction."""
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.config import settings
from subscription_engine.errors import Conflict, NotFound, ValidationError
from subscription_engine.integrations.notification_service import NotificationService
from subscription_engine.metrics import invoices_issued_total
from subscription_engine.models.invoice import Invoice, InvoiceSettings, InvoiceStatus
from subscription_engine.models.payment import PaymentStatus, PaymentTransaction
from subscription_engine.models.subscription import Subscription
from subscription_engine.models.tax import BillingDetails, CompanyTaxInfo
from subscription_engine.services.payment_ledger import PaymentLedger
from subscription_engine.services.tax_service import TaxCalculator

logger = structlog.get_logger(__name__)

INVOICEABLE_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.PENDING, PaymentStatus.REFUNDED)


class InvoiceService:
    """Service layer for invoice operations."""

    def __init__(
        self,
        db: AsyncSession,
        calculator: TaxCalculator | None = None,
        ledger: PaymentLedger | None = None,
        notifications: NotificationService | None = None,
    ):
        """Initialize invoice service with database session."""
        self.db = db
        self.calculator = calculator or TaxCalculator(db)
        self.ledger = ledger or PaymentLedger(db)
        self.notifications = notifications or NotificationService(db)

    async def issue_for_transaction(self, transaction_id: UUID, now: datetime | None = None) -> Invoice:
        """
        Issue the invoice for a payment transaction.

        Calling this again for the same transaction returns the existing
        invoice. Billing details, company details, the tax breakdown and
        line items are copied into the invoice and never recomputed.

        Args:
            transaction_id: Transaction being invoiced
            now: Issue time (defaults to utcnow)

        Returns:
            The invoice for the transaction

        Raises:
            NotFound: If the transaction does not exist
            ValidationError: If the transaction failed
        """
        now = now or datetime.utcnow()
        existing = await self.get_invoice_for_transaction(transaction_id)
        if existing is not None:
            logger.info("invoice_already_issued", invoice_id=str(existing.id), transaction_id=str(transaction_id))
            return existing

        transaction = await self.ledger.get_transaction(transaction_id)
        if transaction.status not in INVOICEABLE_STATUSES:
            raise ValidationError(
                f"Cannot invoice a {transaction.status.value} transaction",
                transaction_id=str(transaction_id),
            )

        subscription = await self._get_subscription(transaction.subscription_id)
        pricing = await self.calculator.catalog.find_pricing(
            subscription.plan_id, subscription.region, transaction.currency
        )
        tax_inclusive = pricing.tax_inclusive if pricing is not None else False
        # The captured amount already carries any tax, so it is always the invoice total
        breakdown = await self.calculator.calculate(
            transaction.amount, subscription.region, transaction.currency, tax_inclusive=True
        )
        breakdown = breakdown.model_copy(update={"tax_inclusive": tax_inclusive})

        invoice_settings = await self._lock_invoice_settings()
        invoice_number = f"{invoice_settings.invoice_prefix}{invoice_settings.next_invoice_number}"
        invoice_settings.next_invoice_number += 1

        paid = transaction.status != PaymentStatus.PENDING
        invoice = Invoice(
            invoice_number=invoice_number,
            user_id=transaction.user_id,
            subscription_id=subscription.id,
            transaction_id=transaction.id,
            status=InvoiceStatus.PAID if paid else InvoiceStatus.ISSUED,
            subtotal=breakdown.subtotal,
            tax_amount=breakdown.tax_amount,
            total=breakdown.total,
            currency=breakdown.currency,
            billing_details=await self._billing_snapshot(transaction.user_id),
            company_details=await self._company_snapshot(transaction.currency),
            tax_details=breakdown.snapshot(),
            items=self._line_items(subscription, breakdown.subtotal),
            issued_at=now,
            due_date=now + timedelta(days=invoice_settings.default_due_days),
            paid_at=transaction.created_at if paid else None,
        )
        self.db.add(invoice)
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise Conflict(
                "Invoice for this transaction was issued concurrently",
                transaction_id=str(transaction_id),
            ) from e

        invoices_issued_total.labels(currency=invoice.currency).inc()
        await self.notifications.emit(
            invoice.user_id,
            "invoice_issued",
            {"invoice_id": str(invoice.id), "invoice_number": invoice_number, "total": str(invoice.total)},
        )
        logger.info(
            "invoice_issued",
            invoice_id=str(invoice.id),
            invoice_number=invoice_number,
            transaction_id=str(transaction_id),
            total=str(invoice.total),
            currency=invoice.currency,
        )
        return invoice

    async def get_invoice(self, invoice_id: UUID) -> Invoice:
        """
        Get invoice by ID.

        Raises:
            NotFound: If the invoice does not exist
        """
        result = await self.db.execute(select(Invoice).where(Invoice.id == invoice_id))
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise NotFound(f"Invoice {invoice_id} not found", invoice_id=str(invoice_id))
        return invoice

    async def get_invoice_for_transaction(self, transaction_id: UUID) -> Invoice | None:
        result = await self.db.execute(select(Invoice).where(Invoice.transaction_id == transaction_id))
        return result.scalar_one_or_none()

    async def list_invoices(self, user_id: int) -> list[Invoice]:
        result = await self.db.execute(
            select(Invoice).where(Invoice.user_id == user_id).order_by(Invoice.issued_at.desc())
        )
        return list(result.scalars().all())

    async def _get_subscription(self, subscription_id: UUID) -> Subscription:
        result = await self.db.execute(select(Subscription).where(Subscription.id == subscription_id))
        subscription = result.unique().scalar_one_or_none()
        if subscription is None:
            raise NotFound(f"Subscription {subscription_id} not found", subscription_id=str(subscription_id))
        return subscription

    async def _lock_invoice_settings(self) -> InvoiceSettings:
        """Settings row holding the invoice counter, created with defaults on first use."""
        result = await self.db.execute(
            select(InvoiceSettings).order_by(InvoiceSettings.created_at).limit(1).with_for_update()
        )
        invoice_settings = result.scalar_one_or_none()
        if invoice_settings is None:
            invoice_settings = InvoiceSettings(
                invoice_prefix=settings.invoice_prefix,
                next_invoice_number=settings.invoice_start_number,
                default_due_days=settings.invoice_due_days,
            )
            self.db.add(invoice_settings)
            await self.db.flush()
        return invoice_settings

    async def _billing_snapshot(self, user_id: int) -> dict:
        result = await self.db.execute(select(BillingDetails).where(BillingDetails.user_id == user_id))
        details = result.scalar_one_or_none()
        return details.snapshot() if details else {}

    async def _company_snapshot(self, currency: str) -> dict:
        result = await self.db.execute(select(CompanyTaxInfo).order_by(CompanyTaxInfo.created_at).limit(1))
        company = result.scalar_one_or_none()
        if company is None:
            return {}
        # GSTIN only belongs on Indian invoices
        return company.snapshot(include_gstin=currency.upper() == "INR")

    @staticmethod
    def _line_items(subscription: Subscription, subtotal: Decimal) -> list[dict]:
        plan = subscription.plan
        return [
            {
                "description": (
                    f"{plan.name} ({subscription.start_date.strftime('%Y-%m-%d')} - "
                    f"{subscription.end_date.strftime('%Y-%m-%d')})"
                ),
                "quantity": 1,
                "unit_price": str(subtotal),
                "amount": str(subtotal),
            }
        ]
