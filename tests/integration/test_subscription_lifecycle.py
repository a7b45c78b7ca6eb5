"""Integration tests for the subscription lifecycle and the scheduled cycle."""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.errors import LimitExceeded, NotFound, Unauthorized, ValidationError
from subscription_engine.models.payment import PaymentGateway, PaymentStatus, PaymentTransaction
from subscription_engine.models.plan import Region
from subscription_engine.models.subscription import PlanChangeType, Subscription, SubscriptionStatus
from subscription_engine.models.usage import FeatureUsage
from subscription_engine.workers.subscription_cycle import process_subscription_cycle


async def current_rows(db: AsyncSession, user_id: int) -> int:
    return await db.scalar(
        select(func.count(Subscription.id)).where(Subscription.user_id == user_id, Subscription.is_current.is_(True))
    )


@pytest.mark.asyncio
async def test_start_subscription(lifecycle, basic_plan, now, db_session: AsyncSession) -> None:
    """Test starting a paid subscription."""
    subscription = await lifecycle.start_subscription(301, basic_plan.id, Region.INDIA, "inr", now=now)
    await db_session.commit()

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.currency == "INR"
    assert subscription.start_date == now
    assert subscription.end_date == now.replace(month=2)
    assert subscription.is_current is True

    history = await lifecycle.get_history(subscription.id)
    assert [h.event_type for h in history] == ["subscription_created"]


@pytest.mark.asyncio
async def test_start_requires_regional_pricing(lifecycle, basic_plan, now) -> None:
    """Test that a paid plan cannot be sold where it has no price."""
    with pytest.raises(NotFound):
        await lifecycle.start_subscription(302, basic_plan.id, Region.INDIA, "USD", now=now)


@pytest.mark.asyncio
async def test_new_purchase_supersedes_current(lifecycle, basic_plan, pro_plan, now, db_session: AsyncSession) -> None:
    """Test that a user never holds two current subscriptions."""
    first = await lifecycle.start_subscription(303, basic_plan.id, Region.INDIA, "INR", now=now)
    second = await lifecycle.start_subscription(303, pro_plan.id, Region.INDIA, "INR", now=now + timedelta(hours=1))
    await db_session.commit()

    assert await current_rows(db_session, 303) == 1
    assert first.is_current is False
    assert first.status == SubscriptionStatus.CANCELLED
    assert second.previous_subscription_id == first.id
    assert second.previous_plan_id == basic_plan.id


@pytest.mark.asyncio
async def test_activate_free_plan_records_zero_transaction(lifecycle, free_plan, now, db_session: AsyncSession) -> None:
    """Test that the freemium plan is assigned with a zero-amount ledger entry."""
    subscription = await lifecycle.activate_free_plan(304, now=now)
    await db_session.commit()

    assert subscription.plan_id == free_plan.id
    transaction = await db_session.scalar(
        select(PaymentTransaction).where(PaymentTransaction.subscription_id == subscription.id)
    )
    assert Decimal(transaction.amount) == Decimal("0.00")
    assert transaction.status == PaymentStatus.COMPLETED
    assert transaction.gateway == PaymentGateway.NONE


@pytest.mark.asyncio
async def test_activate_free_plan_rejects_paid_plan(lifecycle, basic_plan, now) -> None:
    """Test that only freemium plans can be activated for free."""
    with pytest.raises(ValidationError):
        await lifecycle.activate_free_plan(305, plan_id=basic_plan.id, now=now)


@pytest.mark.asyncio
async def test_cancel_at_period_end(lifecycle, basic_plan, now, db_session: AsyncSession) -> None:
    """Test that a plain cancellation keeps the end date."""
    subscription = await lifecycle.start_subscription(306, basic_plan.id, Region.INDIA, "INR", now=now)
    end_date = subscription.end_date

    cancelled = await lifecycle.cancel(306, reason="too expensive", now=now + timedelta(days=3))
    await db_session.commit()

    assert cancelled.status == SubscriptionStatus.CANCELLED
    assert cancelled.end_date == end_date
    assert cancelled.auto_renew is False
    assert cancelled.cancel_date == now + timedelta(days=3)

    with pytest.raises(ValidationError):
        await lifecycle.cancel(306, now=now + timedelta(days=4))


@pytest.mark.asyncio
async def test_cancel_and_expire_resync_usage_counters(lifecycle, basic_plan, now, db_session: AsyncSession) -> None:
    """Test that terminal transitions re-derive the plan's usage counters."""

    async def counter_codes(user_id: int) -> set[str]:
        result = await db_session.execute(
            select(FeatureUsage).where(FeatureUsage.user_id == user_id).execution_options(populate_existing=True)
        )
        return {usage.feature.code for usage in result.unique().scalars().all()}

    await lifecycle.start_subscription(315, basic_plan.id, Region.INDIA, "INR", now=now)
    await db_session.execute(delete(FeatureUsage).where(FeatureUsage.user_id == 315))
    await lifecycle.cancel(315, now=now + timedelta(days=1))
    await db_session.commit()

    assert await counter_codes(315) == {"resume_generation", "ai_cover_letter"}

    lapsing = await lifecycle.start_subscription(316, basic_plan.id, Region.INDIA, "INR", now=now)
    await lifecycle.move_to_grace_period(lapsing.id, reason="renewal_not_paid", now=lapsing.end_date)
    await db_session.execute(delete(FeatureUsage).where(FeatureUsage.user_id == 316))
    expired = await lifecycle.expire(lapsing.id, now=lapsing.end_date + timedelta(days=8))
    await db_session.commit()

    assert expired.status == SubscriptionStatus.EXPIRED
    assert await counter_codes(316) == {"resume_generation", "ai_cover_letter"}


@pytest.mark.asyncio
async def test_cancel_without_subscription(lifecycle, features, now) -> None:
    """Test cancelling when the user has nothing to cancel."""
    with pytest.raises(NotFound):
        await lifecycle.cancel(307, now=now)


@pytest.mark.asyncio
async def test_upgrade_applies_immediately_with_proration(
    lifecycle, basic_plan, pro_plan, now, db_session: AsyncSession
) -> None:
    """Test that an upgrade halfway through the period charges the difference."""
    old = await lifecycle.start_subscription(308, basic_plan.id, Region.GLOBAL, "USD", now=now)
    halfway = old.start_date + (old.end_date - old.start_date) / 2

    result = await lifecycle.request_plan_change(308, pro_plan.id, now=halfway)
    await db_session.commit()

    # 30.00 minus half of 12.00 unused
    assert result.change_type == PlanChangeType.UPGRADE
    assert result.prorated_amount == Decimal("24.00")
    assert result.effective_date == halfway
    assert result.subscription.plan_id == pro_plan.id
    assert result.subscription.start_date == halfway
    assert result.subscription.previous_subscription_id == old.id
    assert old.is_current is False
    assert await current_rows(db_session, 308) == 1


@pytest.mark.asyncio
async def test_downgrade_applies_at_renewal_boundary(
    lifecycle, ledger, basic_plan, pro_plan, now, db_session: AsyncSession
) -> None:
    """Test that a downgrade waits for the period end and then applies the new limits."""
    subscription = await lifecycle.start_subscription(309, pro_plan.id, Region.INDIA, "INR", now=now)
    boundary = subscription.end_date

    result = await lifecycle.request_plan_change(309, basic_plan.id, now=now + timedelta(days=5))
    await db_session.commit()

    assert result.change_type == PlanChangeType.DOWNGRADE
    assert result.effective_date == boundary
    assert result.prorated_amount == Decimal("0.00")
    assert result.subscription.plan_id == pro_plan.id
    assert result.subscription.pending_plan_change_to == basic_plan.id

    # Still on Pro until the boundary
    for _ in range(5):
        allowed = await ledger.check_and_consume(309, "resume_generation", now=now + timedelta(days=6))
    assert allowed.remaining is None
    await db_session.commit()

    stats = await process_subscription_cycle(db_session, now=boundary)

    assert stats["plan_changes_applied"] == 1
    assert stats["errors"] == 0
    current = await lifecycle.get_current(309)
    assert current.plan_id == basic_plan.id
    assert current.start_date == boundary
    assert current.previous_plan_id == pro_plan.id
    assert current.status == SubscriptionStatus.ACTIVE

    for _ in range(3):
        await ledger.check_and_consume(309, "resume_generation", now=boundary + timedelta(hours=1))
    with pytest.raises(LimitExceeded):
        await ledger.check_and_consume(309, "resume_generation", now=boundary + timedelta(hours=1))


@pytest.mark.asyncio
async def test_cancel_pending_downgrade(lifecycle, basic_plan, pro_plan, now, db_session: AsyncSession) -> None:
    """Test dropping a scheduled downgrade."""
    await lifecycle.start_subscription(310, pro_plan.id, Region.INDIA, "INR", now=now)
    await lifecycle.request_plan_change(310, basic_plan.id, now=now)

    subscription = await lifecycle.cancel_pending_change(310)
    await db_session.commit()

    assert subscription.pending_plan_change_to is None
    assert subscription.pending_plan_change_type is None
    assert subscription.pending_plan_change_date is None

    with pytest.raises(ValidationError):
        await lifecycle.cancel_pending_change(310)


@pytest.mark.asyncio
async def test_plan_change_to_same_plan_rejected(lifecycle, basic_plan, now) -> None:
    """Test that changing to the current plan is rejected."""
    await lifecycle.start_subscription(311, basic_plan.id, Region.INDIA, "INR", now=now)

    with pytest.raises(ValidationError):
        await lifecycle.request_plan_change(311, basic_plan.id, now=now)


@pytest.mark.asyncio
async def test_unpaid_renewal_goes_to_grace_then_expires(
    lifecycle, ledger, basic_plan, now, db_session: AsyncSession
) -> None:
    """Test the full dunning path: lapse, grace with access, then expiry without access."""
    subscription = await lifecycle.start_subscription(312, basic_plan.id, Region.INDIA, "INR", now=now)
    await db_session.commit()
    subscription_id = subscription.id
    end_date = subscription.end_date

    stats = await process_subscription_cycle(db_session, now=end_date + timedelta(hours=1))
    assert stats["lapsed_processed"] == 1

    subscription = await db_session.get(Subscription, subscription_id, populate_existing=True)
    assert subscription.status == SubscriptionStatus.GRACE_PERIOD
    grace_end = subscription.grace_period_end
    assert grace_end == end_date + timedelta(hours=1, days=7)

    during_grace = await ledger.check_and_consume(312, "resume_generation", now=grace_end - timedelta(days=1))
    assert during_grace.allowed is True
    await db_session.commit()

    stats = await process_subscription_cycle(db_session, now=grace_end + timedelta(seconds=1))
    assert stats["expired"] == 1

    subscription = await db_session.get(Subscription, subscription_id, populate_existing=True)
    assert subscription.status == SubscriptionStatus.EXPIRED

    with pytest.raises(Unauthorized):
        await ledger.check_and_consume(312, "resume_generation", now=grace_end + timedelta(minutes=1))


@pytest.mark.asyncio
async def test_free_plan_renews_itself(lifecycle, free_plan, now, db_session: AsyncSession) -> None:
    """Test that a lapsed freemium subscription rolls into a new period."""
    subscription = await lifecycle.activate_free_plan(313, now=now)
    await db_session.commit()
    subscription_id = subscription.id
    end_date = subscription.end_date

    stats = await process_subscription_cycle(db_session, now=end_date)

    assert stats["lapsed_processed"] == 1
    subscription = await db_session.get(Subscription, subscription_id, populate_existing=True)
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.start_date == end_date
    assert subscription.end_date > end_date


@pytest.mark.asyncio
async def test_expire_requires_grace_period(lifecycle, basic_plan, now) -> None:
    """Test that only grace-period subscriptions can expire."""
    subscription = await lifecycle.start_subscription(314, basic_plan.id, Region.INDIA, "INR", now=now)

    with pytest.raises(ValidationError):
        await lifecycle.expire(subscription.id, now=now)


@pytest.mark.asyncio
async def test_successful_payment_in_renewal_window_renews(
    lifecycle, basic_plan, now, db_session: AsyncSession
) -> None:
    """Test that a payment just before the end date extends the period by one cycle."""
    subscription = await lifecycle.start_subscription(315, basic_plan.id, Region.INDIA, "INR", now=now)
    end_date = subscription.end_date

    early = await lifecycle.record_successful_payment(subscription.id, now=now + timedelta(days=1))
    assert early.end_date == end_date

    renewed = await lifecycle.record_successful_payment(subscription.id, now=end_date - timedelta(days=1))
    await db_session.commit()

    assert renewed.start_date == end_date
    assert renewed.end_date == end_date.replace(month=3)
    history = [h.event_type for h in await lifecycle.get_history(subscription.id)]
    assert "renewal" in history
