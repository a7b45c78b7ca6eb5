"""Integration tests for the payment ledger: transactions, refunds and disputes."""
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.errors import Conflict, NotFound, ValidationError
from subscription_engine.models.payment import DisputeStatus, PaymentGateway, PaymentStatus
from subscription_engine.models.plan import Region
from subscription_engine.services.payment_ledger import PaymentLedger


@pytest_asyncio.fixture
async def subscription(lifecycle, basic_plan, now, db_session: AsyncSession):
    subscription = await lifecycle.start_subscription(
        501, basic_plan.id, Region.INDIA, "INR", gateway=PaymentGateway.RAZORPAY, now=now
    )
    await db_session.commit()
    return subscription


async def completed(ledger: PaymentLedger, subscription, gateway_id: str = "pay_501", amount: str = "1000.00"):
    return await ledger.record_transaction(
        user_id=subscription.user_id,
        subscription_id=subscription.id,
        amount=Decimal(amount),
        currency="INR",
        gateway=PaymentGateway.RAZORPAY,
        gateway_transaction_id=gateway_id,
        status=PaymentStatus.COMPLETED,
    )


@pytest.mark.asyncio
async def test_record_transaction_is_idempotent(db_session: AsyncSession, subscription) -> None:
    """Test that the same gateway payment is stored once and can leave PENDING."""
    ledger = PaymentLedger(db_session)
    pending = await ledger.record_transaction(
        user_id=501,
        subscription_id=subscription.id,
        amount=Decimal("1000.00"),
        currency="inr",
        gateway=PaymentGateway.RAZORPAY,
        gateway_transaction_id="pay_501",
    )
    assert pending.status == PaymentStatus.PENDING
    assert pending.currency == "INR"

    again = await completed(ledger, subscription)
    await db_session.commit()

    assert again.id == pending.id
    assert again.status == PaymentStatus.COMPLETED
    assert [t.id for t in await ledger.list_transactions(501)] == [pending.id]


@pytest.mark.asyncio
async def test_gateway_transaction_cannot_move_between_subscriptions(
    lifecycle, basic_plan, now, db_session: AsyncSession, subscription
) -> None:
    """Test that a gateway payment id belongs to exactly one subscription."""
    ledger = PaymentLedger(db_session)
    await completed(ledger, subscription)
    other = await lifecycle.start_subscription(502, basic_plan.id, Region.INDIA, "INR", now=now)

    with pytest.raises(Conflict):
        await completed(ledger, other)


@pytest.mark.asyncio
async def test_invalid_amount_and_currency(db_session: AsyncSession, subscription) -> None:
    """Test that malformed amounts and unsupported currencies are rejected."""
    ledger = PaymentLedger(db_session)

    with pytest.raises(ValidationError):
        await ledger.record_transaction(501, subscription.id, Decimal("-1.00"), "INR", PaymentGateway.NONE, None)

    with pytest.raises(ValidationError):
        await ledger.record_transaction(501, subscription.id, Decimal("1.00"), "XYZ", PaymentGateway.NONE, None)


@pytest.mark.asyncio
async def test_completed_transaction_status_is_final(db_session: AsyncSession, subscription) -> None:
    """Test that only PENDING transactions change status directly."""
    ledger = PaymentLedger(db_session)
    transaction = await completed(ledger, subscription)

    with pytest.raises(ValidationError):
        await ledger.update_status(transaction.id, PaymentStatus.FAILED)


@pytest.mark.asyncio
async def test_declined_charge_retried_by_gateway_completes(db_session: AsyncSession, subscription) -> None:
    """Test that a FAILED gateway payment later reported as captured becomes COMPLETED."""
    ledger = PaymentLedger(db_session)
    declined = await ledger.record_transaction(
        user_id=501,
        subscription_id=subscription.id,
        amount=Decimal("0.00"),
        currency="INR",
        gateway=PaymentGateway.RAZORPAY,
        gateway_transaction_id="pay_501",
        status=PaymentStatus.FAILED,
    )

    captured = await completed(ledger, subscription)
    await db_session.commit()

    assert captured.id == declined.id
    assert captured.status == PaymentStatus.COMPLETED
    assert Decimal(captured.amount) == Decimal("1000.00")

    with pytest.raises(ValidationError):
        await ledger.mark_succeeded(captured.id)


@pytest.mark.asyncio
async def test_partial_then_full_refund(db_session: AsyncSession, subscription) -> None:
    """Test cumulative refunds up to the original amount."""
    ledger = PaymentLedger(db_session)
    transaction = await completed(ledger, subscription)

    partial = await ledger.refund(transaction.id, Decimal("400.00"), reason="goodwill")
    assert partial.is_partial is True
    assert Decimal(transaction.refunded_amount) == Decimal("400.00")
    assert transaction.status == PaymentStatus.COMPLETED

    with pytest.raises(ValidationError):
        await ledger.refund(transaction.id, Decimal("600.01"), reason="too much")

    rest = await ledger.refund(transaction.id, Decimal("600.00"), reason="cancelled")
    await db_session.commit()

    assert rest.is_partial is False
    assert Decimal(transaction.refunded_amount) == Decimal("1000.00")
    assert transaction.status == PaymentStatus.REFUNDED

    with pytest.raises(ValidationError):
        await ledger.refund(transaction.id, Decimal("1.00"), reason="again")


@pytest.mark.asyncio
async def test_refund_requires_completed_and_positive(db_session: AsyncSession, subscription) -> None:
    """Test refund preconditions."""
    ledger = PaymentLedger(db_session)
    pending = await ledger.record_transaction(
        501, subscription.id, Decimal("1000.00"), "INR", PaymentGateway.RAZORPAY, "pay_pending"
    )
    transaction = await completed(ledger, subscription)

    with pytest.raises(ValidationError):
        await ledger.refund(pending.id, Decimal("10.00"), reason="not yet paid")

    with pytest.raises(ValidationError):
        await ledger.refund(transaction.id, Decimal("0.00"), reason="nothing")


@pytest.mark.asyncio
async def test_gateway_refund_id_is_applied_once(db_session: AsyncSession, subscription) -> None:
    """Test that replaying a gateway refund returns the stored refund."""
    ledger = PaymentLedger(db_session)
    transaction = await completed(ledger, subscription)

    first = await ledger.refund(transaction.id, Decimal("250.00"), reason="gateway", gateway_refund_id="rfnd_1")
    second = await ledger.refund(transaction.id, Decimal("250.00"), reason="gateway", gateway_refund_id="rfnd_1")

    assert second.id == first.id
    assert Decimal(transaction.refunded_amount) == Decimal("250.00")


@pytest.mark.asyncio
async def test_dispute_workflow(db_session: AsyncSession, subscription) -> None:
    """Test moving a dispute from open to resolved."""
    ledger = PaymentLedger(db_session)
    transaction = await completed(ledger, subscription)

    dispute = await ledger.open_dispute(transaction.id, reason="product_not_received", gateway_dispute_id="dp_1")
    assert dispute.status == DisputeStatus.OPEN
    assert dispute.user_id == 501

    replay = await ledger.open_dispute(transaction.id, reason="product_not_received", gateway_dispute_id="dp_1")
    assert replay.id == dispute.id

    await ledger.update_dispute(dispute.id, DisputeStatus.UNDER_REVIEW)
    resolved = await ledger.update_dispute(dispute.id, DisputeStatus.RESOLVED, resolution_notes="Refunded in full")
    await db_session.commit()

    assert resolved.status == DisputeStatus.RESOLVED
    assert resolved.resolved_at is not None
    assert resolved.resolution_notes == "Refunded in full"

    with pytest.raises(ValidationError):
        await ledger.update_dispute(dispute.id, DisputeStatus.OPEN)


@pytest.mark.asyncio
async def test_unknown_transaction(db_session: AsyncSession, features) -> None:
    """Test lookups of a transaction that does not exist."""
    from uuid import uuid4

    ledger = PaymentLedger(db_session)

    with pytest.raises(NotFound):
        await ledger.get_transaction(uuid4())

    with pytest.raises(NotFound):
        await ledger.refund(uuid4(), Decimal("1.00"), reason="missing")
