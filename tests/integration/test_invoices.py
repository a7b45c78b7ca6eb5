"""Integration tests for tax calculation and invoice issuance."""
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.errors import InvariantViolation, NotFound, ValidationError
from subscription_engine.models.invoice import InvoiceStatus
from subscription_engine.models.payment import PaymentGateway, PaymentStatus
from subscription_engine.models.plan import Region
from subscription_engine.models.tax import BillingDetails, CompanyTaxInfo, TaxSetting, TaxType
from subscription_engine.schemas.plan import PlanCreate, PlanPricingCreate
from subscription_engine.services.invoice_service import InvoiceService
from subscription_engine.services.payment_ledger import PaymentLedger
from subscription_engine.services.tax_service import TaxCalculator
from tests.utils.factories import BillingDetailsFactory, CompanyTaxInfoFactory


async def paid_transaction(lifecycle, user_id, plan, now, region, currency, amount, status=PaymentStatus.COMPLETED):
    gateway = PaymentGateway.RAZORPAY if currency == "INR" else PaymentGateway.STRIPE
    subscription = await lifecycle.start_subscription(user_id, plan.id, region, currency, gateway=gateway, now=now)
    transaction = await PaymentLedger(lifecycle.db).record_transaction(
        user_id=user_id,
        subscription_id=subscription.id,
        amount=Decimal(amount),
        currency=currency,
        gateway=gateway,
        gateway_transaction_id=f"pay_{user_id}",
        status=status,
    )
    await lifecycle.db.commit()
    return transaction


@pytest.mark.asyncio
async def test_tax_inclusive_price_is_split(db_session: AsyncSession, gst_setting) -> None:
    """Test that 1000.00 INR inclusive of 18% GST splits into 847.46 + 152.54."""
    breakdown = await TaxCalculator(db_session).calculate(Decimal("1000.00"), Region.INDIA, "INR", tax_inclusive=True)

    assert breakdown.subtotal == Decimal("847.46")
    assert breakdown.tax_amount == Decimal("152.54")
    assert breakdown.total == Decimal("1000.00")
    assert breakdown.subtotal + breakdown.tax_amount == breakdown.total
    assert [line.name for line in breakdown.lines] == ["GST"]


@pytest.mark.asyncio
async def test_tax_exclusive_price_adds_tax(db_session: AsyncSession, gst_setting) -> None:
    """Test that tax is added on top of an exclusive price."""
    breakdown = await TaxCalculator(db_session).calculate(Decimal("1000.00"), Region.INDIA, "INR")

    assert breakdown.subtotal == Decimal("1000.00")
    assert breakdown.tax_amount == Decimal("180.00")
    assert breakdown.total == Decimal("1180.00")


@pytest.mark.asyncio
async def test_no_tax_outside_configured_region(db_session: AsyncSession, gst_setting) -> None:
    """Test that GLOBAL/USD prices carry no tax when nothing is configured."""
    breakdown = await TaxCalculator(db_session).calculate(Decimal("12.00"), Region.GLOBAL, "USD")

    assert breakdown.tax_amount == Decimal("0.00")
    assert breakdown.total == Decimal("12.00")
    assert breakdown.lines == []


@pytest.mark.asyncio
async def test_split_tax_components(db_session: AsyncSession) -> None:
    """Test that CGST and SGST share the tax and add up exactly."""
    for name in ("CGST", "SGST"):
        db_session.add(
            TaxSetting(
                name=name,
                tax_type=TaxType.GST,
                percentage=Decimal("9.00"),
                apply_to_region=Region.INDIA,
                apply_currency="INR",
            )
        )
    await db_session.commit()

    breakdown = await TaxCalculator(db_session).calculate(Decimal("999.00"), Region.INDIA, "INR", tax_inclusive=True)

    assert breakdown.tax_rate == Decimal("18.00")
    assert sum(line.amount for line in breakdown.lines) == breakdown.tax_amount
    assert {line.name for line in breakdown.lines} == {"CGST", "SGST"}


@pytest.mark.asyncio
async def test_quote_uses_plan_pricing(db_session: AsyncSession, basic_plan, gst_setting) -> None:
    """Test quoting a plan's regional price."""
    calculator = TaxCalculator(db_session)

    quote = await calculator.quote(basic_plan.id, Region.INDIA, "INR")
    assert quote.total == Decimal("1000.00")
    assert quote.tax_inclusive is True

    with pytest.raises(NotFound):
        await calculator.quote(basic_plan.id, Region.INDIA, "USD")


@pytest.mark.asyncio
async def test_invoice_issued_with_frozen_snapshots(
    lifecycle, basic_plan, gst_setting, now, db_session: AsyncSession
) -> None:
    """Test that an INR invoice carries the tax split, GSTIN and buyer details."""
    db_session.add(CompanyTaxInfo(**CompanyTaxInfoFactory.create({"gstin": "29ABCDE1234F1Z5"})))
    billing = BillingDetails(**BillingDetailsFactory.create({"user_id": 401, "city": "Bengaluru"}))
    db_session.add(billing)
    transaction = await paid_transaction(lifecycle, 401, basic_plan, now, Region.INDIA, "INR", "1000.00")

    service = InvoiceService(db_session)
    invoice = await service.issue_for_transaction(transaction.id, now=now)
    await db_session.commit()

    assert invoice.invoice_number == "INV-1000"
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.subtotal == Decimal("847.46")
    assert invoice.tax_amount == Decimal("152.54")
    assert invoice.total == Decimal("1000.00")
    assert invoice.company_details["gstin"] == "29ABCDE1234F1Z5"
    assert invoice.billing_details["city"] == "Bengaluru"
    assert invoice.items[0]["description"].startswith("Basic (")
    assert invoice.tax_details["tax_inclusive"] is True

    billing.city = "Mysuru"
    await db_session.commit()
    again = await service.get_invoice(invoice.id)
    assert again.billing_details["city"] == "Bengaluru"


@pytest.mark.asyncio
async def test_usd_invoice_omits_gstin(lifecycle, basic_plan, now, db_session: AsyncSession) -> None:
    """Test that GSTIN only appears on INR invoices."""
    db_session.add(CompanyTaxInfo(**CompanyTaxInfoFactory.create()))
    transaction = await paid_transaction(lifecycle, 402, basic_plan, now, Region.GLOBAL, "USD", "12.00")

    invoice = await InvoiceService(db_session).issue_for_transaction(transaction.id, now=now)

    assert "gstin" not in invoice.company_details
    assert invoice.currency == "USD"
    assert invoice.tax_amount == Decimal("0.00")
    assert invoice.total == Decimal("12.00")


@pytest.mark.asyncio
async def test_issue_is_idempotent_and_numbers_increase(
    lifecycle, basic_plan, pro_plan, gst_setting, now, db_session: AsyncSession
) -> None:
    """Test that one transaction yields one invoice and numbering is sequential."""
    service = InvoiceService(db_session)
    first_txn = await paid_transaction(lifecycle, 403, basic_plan, now, Region.INDIA, "INR", "1000.00")
    second_txn = await paid_transaction(lifecycle, 404, pro_plan, now, Region.INDIA, "INR", "2500.00")

    first = await service.issue_for_transaction(first_txn.id, now=now)
    repeat = await service.issue_for_transaction(first_txn.id, now=now)
    second = await service.issue_for_transaction(second_txn.id, now=now)
    await db_session.commit()

    assert repeat.id == first.id
    assert first.invoice_number == "INV-1000"
    assert second.invoice_number == "INV-1001"
    assert [i.id for i in await service.list_invoices(403)] == [first.id]


@pytest.mark.asyncio
async def test_issued_invoice_is_immutable(lifecycle, basic_plan, gst_setting, now, db_session: AsyncSession) -> None:
    """Test that changing a frozen invoice field is refused."""
    transaction = await paid_transaction(lifecycle, 405, basic_plan, now, Region.INDIA, "INR", "1000.00")
    invoice = await InvoiceService(db_session).issue_for_transaction(transaction.id, now=now)
    await db_session.commit()

    invoice.total = Decimal("1.00")
    with pytest.raises(InvariantViolation):
        await db_session.flush()


@pytest.mark.asyncio
async def test_failed_transaction_cannot_be_invoiced(lifecycle, basic_plan, now, db_session: AsyncSession) -> None:
    """Test that failed payments are not invoiced."""
    transaction = await paid_transaction(
        lifecycle, 406, basic_plan, now, Region.INDIA, "INR", "1000.00", status=PaymentStatus.FAILED
    )

    with pytest.raises(ValidationError):
        await InvoiceService(db_session).issue_for_transaction(transaction.id, now=now)


@pytest.mark.asyncio
async def test_exclusive_price_invoice_total_matches_amount_paid(
    catalog, lifecycle, features, gst_setting, now, db_session: AsyncSession
) -> None:
    """Test that a tax-exclusive plan is invoiced for exactly what the customer paid."""
    plan = await catalog.create_plan(PlanCreate(name="Business"))
    await catalog.set_pricing(
        plan.id, PlanPricingCreate(region=Region.INDIA, currency="INR", price=Decimal("1000.00"), tax_inclusive=False)
    )
    await db_session.commit()
    transaction = await paid_transaction(lifecycle, 407, plan, now, Region.INDIA, "INR", "1180.00")

    invoice = await InvoiceService(db_session).issue_for_transaction(transaction.id, now=now)
    await db_session.commit()

    assert invoice.subtotal == Decimal("1000.00")
    assert invoice.tax_amount == Decimal("180.00")
    assert invoice.total == Decimal("1180.00")
    assert invoice.total == Decimal(transaction.amount)
    assert invoice.items[0]["amount"] == "1000.00"
    assert invoice.tax_details["tax_inclusive"] is False


@pytest.mark.asyncio
async def test_tax_rate_change_does_not_touch_issued_invoice(
    lifecycle, basic_plan, gst_setting, now, db_session: AsyncSession
) -> None:
    """Test that editing a tax setting after issue leaves stored invoice amounts alone."""
    service = InvoiceService(db_session)
    transaction = await paid_transaction(lifecycle, 408, basic_plan, now, Region.INDIA, "INR", "1000.00")
    invoice = await service.issue_for_transaction(transaction.id, now=now)
    await db_session.commit()

    gst_setting.percentage = Decimal("28.00")
    await db_session.commit()
    await db_session.refresh(invoice)

    assert invoice.tax_amount == Decimal("152.54")
    assert invoice.total == Decimal("1000.00")
    assert invoice.tax_details["tax_rate"] == "18.00"

    later = await paid_transaction(lifecycle, 409, basic_plan, now, Region.INDIA, "INR", "1000.00")
    fresh = await service.issue_for_transaction(later.id, now=now)
    assert fresh.tax_amount == Decimal("218.75")
