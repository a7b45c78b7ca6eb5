"""Subscription lifecycle state machine."""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from subscription_engine.config import settings
from subscription_engine.errors import Conflict, NotFound, ValidationError
from subscription_engine.integrations.notification_service import NotificationService
from subscription_engine.metrics import plan_changes_total, subscription_transitions_total
from subscription_engine.models.payment import PaymentGateway, PaymentStatus
from subscription_engine.models.plan import Plan, Region
from subscription_engine.models.subscription import (
    PlanChangeType,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
)
from subscription_engine.services.entitlement_service import EntitlementLedger
from subscription_engine.services.payment_ledger import PaymentLedger
from subscription_engine.services.plan_catalog import PlanCatalog
from subscription_engine.utils.currency import quantize_money, require_currency
from subscription_engine.utils.periods import period_end

logger = structlog.get_logger(__name__)


@dataclass
class PlanChangeResult:
    """Outcome of ``SubscriptionLifecycle.request_plan_change``."""

    subscription: Subscription
    change_type: PlanChangeType
    effective_date: datetime
    prorated_amount: Decimal


class SubscriptionLifecycle:
    """
    Service layer for subscription state transitions.

    Every mutation locks the user's subscription row and relies on the
    ``version`` column, so a webhook and a user action racing on the same
    subscription serialize instead of interleaving.
    """

    def __init__(
        self,
        db: AsyncSession,
        catalog: PlanCatalog | None = None,
        entitlements: EntitlementLedger | None = None,
        notifications: NotificationService | None = None,
        payments: PaymentLedger | None = None,
    ):
        """Initialize the lifecycle with a database session and its collaborators."""
        self.db = db
        self.catalog = catalog or PlanCatalog(db)
        self.entitlements = entitlements or EntitlementLedger(db, self.catalog, lifecycle=self)
        self.notifications = notifications or NotificationService(db)
        self.payments = payments or PaymentLedger(db)

    # Reads

    async def get_subscription(self, subscription_id: UUID) -> Subscription:
        """
        Get subscription by ID.

        Raises:
            NotFound: If the subscription does not exist
        """
        result = await self.db.execute(select(Subscription).where(Subscription.id == subscription_id))
        subscription = result.unique().scalar_one_or_none()
        if subscription is None:
            raise NotFound(f"Subscription {subscription_id} not found", subscription_id=str(subscription_id))
        return subscription

    async def get_current(self, user_id: int) -> Subscription | None:
        result = await self.db.execute(
            select(Subscription).where(Subscription.user_id == user_id, Subscription.is_current.is_(True))
        )
        return result.unique().scalar_one_or_none()

    async def get_entitled_subscription(self, user_id: int, now: datetime | None = None) -> Subscription | None:
        """Current subscription if it still grants access at ``now``."""
        now = now or datetime.utcnow()
        subscription = await self.get_current(user_id)
        if subscription is None or not subscription.grants_access(now):
            return None
        return subscription

    async def find_by_payment_reference(self, gateway: PaymentGateway, reference: str) -> Subscription | None:
        """Latest subscription carrying a gateway-side reference."""
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.payment_gateway == gateway, Subscription.payment_reference == reference)
            .order_by(Subscription.is_current.desc(), Subscription.created_at.desc())
            .limit(1)
        )
        return result.unique().scalar_one_or_none()

    async def get_history(self, subscription_id: UUID) -> list[SubscriptionHistory]:
        result = await self.db.execute(
            select(SubscriptionHistory)
            .where(SubscriptionHistory.subscription_id == subscription_id)
            .order_by(SubscriptionHistory.created_at)
        )
        return list(result.scalars().all())

    # Purchases

    async def start_subscription(
        self,
        user_id: int,
        plan_id: UUID,
        region: Region = Region.GLOBAL,
        currency: str = "USD",
        gateway: PaymentGateway = PaymentGateway.NONE,
        payment_reference: str | None = None,
        auto_renew: bool = True,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Start a new subscription, superseding the user's current one.

        Args:
            user_id: Subscribing user
            plan_id: Plan purchased
            region: Region the plan was sold in
            currency: Currency the plan was sold in
            gateway: Gateway that collects renewals
            payment_reference: Gateway-side subscription id
            auto_renew: Whether the gateway renews automatically
            now: Start time (defaults to utcnow)

        Returns:
            The new current subscription

        Raises:
            NotFound: If the plan is inactive or not priced for region/currency
            ValidationError: If the currency is not supported
        """
        now = now or datetime.utcnow()
        currency = require_currency(currency)
        plan = await self.catalog.get_plan(plan_id)
        if not plan.is_freemium:
            await self.catalog.get_pricing(plan_id, region, currency)

        previous = await self._lock_current(user_id)
        if previous is not None:
            await self._retire(previous, now, reason="superseded_by_purchase")

        subscription = Subscription(
            user_id=user_id,
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE,
            region=region,
            currency=currency,
            start_date=now,
            end_date=period_end(plan.billing_cycle, now),
            auto_renew=auto_renew,
            payment_gateway=gateway,
            payment_reference=payment_reference,
            previous_plan_id=previous.plan_id if previous else None,
            previous_subscription_id=previous.id if previous else None,
            is_current=True,
        )
        self.db.add(subscription)
        await self._flush()
        await self._record(subscription, "subscription_created", None, SubscriptionStatus.ACTIVE.value)
        await self.db.refresh(subscription)

        await self.entitlements.sync_for_plan(user_id, plan.id, now)
        await self.notifications.emit(
            user_id,
            "subscription_activated",
            {"subscription_id": str(subscription.id), "plan_name": plan.name, "end_date": subscription.end_date.isoformat()},
        )
        subscription_transitions_total.labels(from_status="none", to_status=SubscriptionStatus.ACTIVE.value).inc()

        logger.info(
            "subscription_started",
            subscription_id=str(subscription.id),
            user_id=user_id,
            plan_id=str(plan.id),
            region=region.value,
            currency=currency,
            gateway=gateway.value,
        )
        return subscription

    async def activate_free_plan(
        self,
        user_id: int,
        plan_id: UUID | None = None,
        region: Region = Region.GLOBAL,
        currency: str = "USD",
        now: datetime | None = None,
    ) -> Subscription:
        """
        Put a user on the freemium plan.

        Records a zero-amount completed transaction so every subscription
        has a ledger entry.

        Raises:
            NotFound: If no freemium plan exists
            ValidationError: If ``plan_id`` is not a freemium plan
        """
        if plan_id is None:
            plan = await self.catalog.get_freemium_plan()
            if plan is None:
                raise NotFound("No freemium plan is configured")
        else:
            plan = await self.catalog.get_plan(plan_id)
        if not plan.is_freemium:
            raise ValidationError(f"Plan {plan.name} is not a freemium plan", plan_id=str(plan.id))

        subscription = await self.start_subscription(user_id, plan.id, region, currency, now=now)
        await self.payments.record_transaction(
            user_id=user_id,
            subscription_id=subscription.id,
            amount=Decimal("0.00"),
            currency=subscription.currency,
            gateway=PaymentGateway.NONE,
            gateway_transaction_id=None,
            status=PaymentStatus.COMPLETED,
            metadata={"type": "freemium_activation", "plan_name": plan.name},
        )
        return subscription

    async def reactivate(self, subscription_id: UUID, now: datetime | None = None) -> Subscription:
        """
        Start a fresh subscription to the plan of a terminal one.

        Equivalent to a new purchase; the terminal row is left untouched
        apart from losing its current flag.

        Raises:
            ValidationError: If the subscription is not terminal
        """
        terminal = await self.get_subscription(subscription_id)
        if not terminal.is_terminal:
            raise ValidationError(
                f"Subscription {subscription_id} is {terminal.status.value}, not terminal",
                subscription_id=str(subscription_id),
            )
        logger.info("subscription_reactivating", subscription_id=str(subscription_id), user_id=terminal.user_id)
        return await self.start_subscription(
            terminal.user_id,
            terminal.plan_id,
            terminal.region,
            terminal.currency,
            gateway=terminal.payment_gateway,
            payment_reference=terminal.payment_reference,
            now=now,
        )

    # Cancellation

    async def cancel(
        self,
        user_id: int,
        immediate: bool = False,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Cancel the user's current subscription.

        Access continues until ``end_date`` unless ``immediate``.

        Raises:
            NotFound: If the user has no subscription
            ValidationError: If the subscription is already terminal
        """
        now = now or datetime.utcnow()
        subscription = await self._require_current(user_id)
        if subscription.is_terminal:
            raise ValidationError(
                f"Subscription is already {subscription.status.value}",
                subscription_id=str(subscription.id),
            )

        old_status = subscription.status
        subscription.status = SubscriptionStatus.CANCELLED
        subscription.cancel_date = now
        subscription.auto_renew = False
        subscription.grace_period_end = None
        self._clear_pending_change(subscription)
        if immediate:
            subscription.end_date = now

        await self._flush()
        await self.entitlements.sync_for_plan(user_id, subscription.plan_id, now)
        await self._record(subscription, "status_change", old_status.value, SubscriptionStatus.CANCELLED.value, reason)
        await self.notifications.emit(
            user_id,
            "subscription_cancelled",
            {
                "subscription_id": str(subscription.id),
                "immediate": immediate,
                "access_until": subscription.end_date.isoformat(),
            },
        )
        subscription_transitions_total.labels(
            from_status=old_status.value, to_status=SubscriptionStatus.CANCELLED.value
        ).inc()

        logger.info(
            "subscription_cancelled",
            subscription_id=str(subscription.id),
            user_id=user_id,
            immediate=immediate,
            reason=reason,
        )
        return subscription

    # Plan changes

    async def request_plan_change(
        self,
        user_id: int,
        new_plan_id: UUID,
        now: datetime | None = None,
    ) -> PlanChangeResult:
        """
        Upgrade now or schedule a downgrade for the next renewal.

        The direction is decided by comparing the two plans' prices in the
        subscription's region and currency.

        Returns:
            PlanChangeResult. For upgrades ``prorated_amount`` is the amount
            due now after crediting the unused part of the current period.

        Raises:
            NotFound: If the target plan is inactive or not priced
            ValidationError: If the subscription is not active or the plan is unchanged
        """
        now = now or datetime.utcnow()
        subscription = await self._require_current(user_id)
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise ValidationError(
                f"Cannot change plan of a {subscription.status.value} subscription",
                subscription_id=str(subscription.id),
            )
        if subscription.plan_id == new_plan_id:
            raise ValidationError("Subscription is already on this plan", plan_id=str(new_plan_id))

        new_plan = await self.catalog.get_plan(new_plan_id)
        new_price = await self._price_of(new_plan, subscription, required=True)
        current_price = await self._price_of(subscription.plan, subscription, required=False)

        if new_price > current_price:
            prorated = self._prorate(subscription, current_price, new_price, now)
            upgraded = await self._supersede(subscription, new_plan, now, start=now, change_type=PlanChangeType.UPGRADE)
            plan_changes_total.labels(change_type=PlanChangeType.UPGRADE.value).inc()
            await self.notifications.emit(
                user_id,
                "plan_changed",
                {"subscription_id": str(upgraded.id), "plan_name": new_plan.name, "prorated_amount": str(prorated)},
            )
            return PlanChangeResult(upgraded, PlanChangeType.UPGRADE, now, prorated)

        subscription.pending_plan_change_to = new_plan.id
        subscription.pending_plan_change_type = PlanChangeType.DOWNGRADE
        subscription.pending_plan_change_date = subscription.end_date
        await self._flush()
        await self._record(subscription, "plan_change_scheduled", str(subscription.plan_id), str(new_plan.id))
        await self.notifications.emit(
            user_id,
            "plan_change_scheduled",
            {
                "subscription_id": str(subscription.id),
                "plan_name": new_plan.name,
                "effective_date": subscription.end_date.isoformat(),
            },
        )
        plan_changes_total.labels(change_type=PlanChangeType.DOWNGRADE.value).inc()

        logger.info(
            "downgrade_scheduled",
            subscription_id=str(subscription.id),
            user_id=user_id,
            new_plan_id=str(new_plan.id),
            effective_date=subscription.end_date.isoformat(),
        )
        return PlanChangeResult(subscription, PlanChangeType.DOWNGRADE, subscription.end_date, Decimal("0.00"))

    async def cancel_pending_change(self, user_id: int) -> Subscription:
        """
        Drop a scheduled downgrade.

        Raises:
            ValidationError: If nothing is scheduled
        """
        subscription = await self._require_current(user_id)
        if subscription.pending_plan_change_to is None:
            raise ValidationError("No plan change is scheduled", subscription_id=str(subscription.id))

        pending = str(subscription.pending_plan_change_to)
        self._clear_pending_change(subscription)
        await self._flush()
        await self._record(subscription, "plan_change_cancelled", pending, str(subscription.plan_id))
        return subscription

    async def apply_scheduled_change(self, subscription_id: UUID, now: datetime | None = None) -> Subscription:
        """
        Apply a due downgrade at its renewal boundary.

        Returns:
            The new current subscription, or the unchanged one when nothing
            is due
        """
        now = now or datetime.utcnow()
        subscription = await self._lock(subscription_id)
        if (
            subscription.pending_plan_change_to is None
            or subscription.pending_plan_change_date is None
            or subscription.pending_plan_change_date > now
            or subscription.status != SubscriptionStatus.ACTIVE
        ):
            return subscription

        new_plan = await self.catalog.get_plan_any_state(subscription.pending_plan_change_to)
        return await self._supersede(
            subscription,
            new_plan,
            now,
            start=subscription.pending_plan_change_date,
            change_type=PlanChangeType.DOWNGRADE,
        )

    # Renewal and dunning

    async def record_successful_payment(self, subscription_id: UUID, now: datetime | None = None) -> Subscription:
        """
        React to a successful charge.

        A subscription in grace returns to active with a renewed period; an
        active one renews when its end date is inside the renewal window.
        Other payments (e.g. the initial purchase) change nothing.

        Returns:
            The subscription that is current after the payment
        """
        now = now or datetime.utcnow()
        subscription = await self._lock(subscription_id)

        if subscription.status == SubscriptionStatus.GRACE_PERIOD:
            return await self.renew(subscription, now)

        window = timedelta(days=settings.renewal_window_days)
        if subscription.status == SubscriptionStatus.ACTIVE and subscription.end_date - now <= window:
            return await self.renew(subscription, now)

        logger.info(
            "payment_without_transition",
            subscription_id=str(subscription.id),
            status=subscription.status.value,
        )
        return subscription

    async def renew(self, subscription: Subscription, now: datetime | None = None) -> Subscription:
        """
        Extend a subscription by one billing cycle.

        A downgrade scheduled for this boundary is applied instead of
        extending the old plan.
        """
        now = now or datetime.utcnow()
        if subscription.pending_plan_change_type == PlanChangeType.DOWNGRADE and subscription.pending_plan_change_to:
            new_plan = await self.catalog.get_plan_any_state(subscription.pending_plan_change_to)
            start = subscription.end_date if subscription.end_date > now else now
            return await self._supersede(subscription, new_plan, now, start=start, change_type=PlanChangeType.DOWNGRADE)

        old_status = subscription.status
        start = subscription.end_date
        end = period_end(subscription.plan.billing_cycle, start)
        if end <= now:
            start, end = now, period_end(subscription.plan.billing_cycle, now)

        subscription.status = SubscriptionStatus.ACTIVE
        subscription.start_date = start
        subscription.end_date = end
        subscription.grace_period_end = None
        await self._flush()
        await self._record(subscription, "renewal", old_status.value, SubscriptionStatus.ACTIVE.value)
        await self.entitlements.sync_for_plan(subscription.user_id, subscription.plan_id, now)
        await self.notifications.emit(
            subscription.user_id,
            "subscription_renewed",
            {"subscription_id": str(subscription.id), "end_date": end.isoformat()},
        )
        if old_status != SubscriptionStatus.ACTIVE:
            subscription_transitions_total.labels(
                from_status=old_status.value, to_status=SubscriptionStatus.ACTIVE.value
            ).inc()

        logger.info(
            "subscription_renewed",
            subscription_id=str(subscription.id),
            user_id=subscription.user_id,
            previous_status=old_status.value,
            end_date=end.isoformat(),
        )
        return subscription

    async def move_to_grace_period(
        self,
        subscription_id: UUID,
        halted: bool = False,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Start the grace period after a failed renewal.

        Access is preserved until ``grace_period_end``. Subscriptions that
        are not active are returned unchanged.
        """
        now = now or datetime.utcnow()
        subscription = await self._lock(subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE:
            logger.info(
                "grace_period_skipped",
                subscription_id=str(subscription.id),
                status=subscription.status.value,
            )
            return subscription

        days = settings.halted_grace_period_days if halted else settings.grace_period_days
        subscription.status = SubscriptionStatus.GRACE_PERIOD
        subscription.grace_period_end = now + timedelta(days=days)
        await self._flush()
        await self._record(
            subscription,
            "status_change",
            SubscriptionStatus.ACTIVE.value,
            SubscriptionStatus.GRACE_PERIOD.value,
            reason,
        )
        await self.entitlements.sync_for_plan(subscription.user_id, subscription.plan_id, now)
        await self.notifications.emit(
            subscription.user_id,
            "grace_period_started",
            {
                "subscription_id": str(subscription.id),
                "grace_period_end": subscription.grace_period_end.isoformat(),
                "halted": halted,
            },
        )
        subscription_transitions_total.labels(
            from_status=SubscriptionStatus.ACTIVE.value, to_status=SubscriptionStatus.GRACE_PERIOD.value
        ).inc()

        logger.warning(
            "subscription_grace_period_started",
            subscription_id=str(subscription.id),
            user_id=subscription.user_id,
            grace_period_end=subscription.grace_period_end.isoformat(),
            halted=halted,
            reason=reason,
        )
        return subscription

    async def handle_lapse(self, subscription_id: UUID, now: datetime | None = None) -> Subscription:
        """
        Deal with an active subscription whose end date has passed.

        Free plans renew on their own; paid plans enter the grace period.
        """
        now = now or datetime.utcnow()
        subscription = await self._lock(subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE or subscription.end_date > now:
            return subscription

        if subscription.plan.is_freemium and subscription.auto_renew:
            return await self.renew(subscription, now)
        return await self.move_to_grace_period(subscription.id, reason="renewal_not_paid", now=now)

    async def expire(self, subscription_id: UUID, now: datetime | None = None) -> Subscription:
        """
        Expire a subscription whose grace period ended unpaid.

        Raises:
            ValidationError: If the subscription is not in its grace period
        """
        now = now or datetime.utcnow()
        subscription = await self._lock(subscription_id)
        if subscription.status != SubscriptionStatus.GRACE_PERIOD:
            raise ValidationError(
                f"Only grace-period subscriptions can expire, got {subscription.status.value}",
                subscription_id=str(subscription.id),
            )

        subscription.status = SubscriptionStatus.EXPIRED
        subscription.auto_renew = False
        self._clear_pending_change(subscription)
        await self._flush()
        await self.entitlements.sync_for_plan(subscription.user_id, subscription.plan_id, now)
        await self._record(
            subscription, "status_change", SubscriptionStatus.GRACE_PERIOD.value, SubscriptionStatus.EXPIRED.value
        )
        await self.notifications.emit(
            subscription.user_id,
            "subscription_expired",
            {"subscription_id": str(subscription.id)},
        )
        subscription_transitions_total.labels(
            from_status=SubscriptionStatus.GRACE_PERIOD.value, to_status=SubscriptionStatus.EXPIRED.value
        ).inc()

        logger.warning("subscription_expired", subscription_id=str(subscription.id), user_id=subscription.user_id)
        return subscription

    # Scheduled sweeps

    async def find_due_plan_changes(self, now: datetime) -> list[UUID]:
        result = await self.db.execute(
            select(Subscription.id).where(
                Subscription.is_current.is_(True),
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.pending_plan_change_type == PlanChangeType.DOWNGRADE,
                Subscription.pending_plan_change_date <= now,
            )
        )
        return list(result.scalars().all())

    async def find_lapsed(self, now: datetime) -> list[UUID]:
        result = await self.db.execute(
            select(Subscription.id).where(
                Subscription.is_current.is_(True),
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.end_date <= now,
            )
        )
        return list(result.scalars().all())

    async def find_grace_ended(self, now: datetime) -> list[UUID]:
        result = await self.db.execute(
            select(Subscription.id).where(
                Subscription.status == SubscriptionStatus.GRACE_PERIOD,
                Subscription.grace_period_end <= now,
            )
        )
        return list(result.scalars().all())

    async def apply_scheduled_changes(self, now: datetime | None = None) -> list[Subscription]:
        """Apply every downgrade whose boundary has been reached."""
        now = now or datetime.utcnow()
        return [await self.apply_scheduled_change(sub_id, now) for sub_id in await self.find_due_plan_changes(now)]

    async def process_due_renewals(self, now: datetime | None = None) -> list[Subscription]:
        """Renew free plans and move unpaid lapsed subscriptions to grace."""
        now = now or datetime.utcnow()
        return [await self.handle_lapse(sub_id, now) for sub_id in await self.find_lapsed(now)]

    async def expire_grace_periods(self, now: datetime | None = None) -> list[Subscription]:
        """Expire subscriptions whose grace period has ended."""
        now = now or datetime.utcnow()
        return [await self.expire(sub_id, now) for sub_id in await self.find_grace_ended(now)]

    # Internals

    async def _lock(self, subscription_id: UUID) -> Subscription:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .with_for_update(of=Subscription)
            .execution_options(populate_existing=True)
        )
        subscription = result.unique().scalar_one_or_none()
        if subscription is None:
            raise NotFound(f"Subscription {subscription_id} not found", subscription_id=str(subscription_id))
        return subscription

    async def _lock_current(self, user_id: int) -> Subscription | None:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.is_current.is_(True))
            .with_for_update(of=Subscription)
            .execution_options(populate_existing=True)
        )
        return result.unique().scalar_one_or_none()

    async def _require_current(self, user_id: int) -> Subscription:
        subscription = await self._lock_current(user_id)
        if subscription is None:
            raise NotFound(f"User {user_id} has no subscription", user_id=user_id)
        return subscription

    async def _retire(self, subscription: Subscription, now: datetime, reason: str) -> None:
        """Take a subscription out of the current slot."""
        old_status = subscription.status
        if not subscription.is_terminal:
            subscription.status = SubscriptionStatus.CANCELLED
            subscription.cancel_date = now
            subscription.auto_renew = False
        subscription.is_current = False
        self._clear_pending_change(subscription)
        await self._flush()
        if old_status != subscription.status:
            await self._record(subscription, "status_change", old_status.value, subscription.status.value, reason)

    async def _supersede(
        self,
        old: Subscription,
        new_plan: Plan,
        now: datetime,
        start: datetime,
        change_type: PlanChangeType,
    ) -> Subscription:
        """Replace ``old`` with a new current row on ``new_plan``."""
        old_plan_id = old.plan_id
        auto_renew = old.auto_renew or old.status != SubscriptionStatus.ACTIVE
        await self._retire(old, now, reason=f"plan_{change_type.value}")

        subscription = Subscription(
            user_id=old.user_id,
            plan_id=new_plan.id,
            status=SubscriptionStatus.ACTIVE,
            region=old.region,
            currency=old.currency,
            start_date=start,
            end_date=period_end(new_plan.billing_cycle, start),
            auto_renew=auto_renew,
            payment_gateway=old.payment_gateway,
            payment_reference=old.payment_reference,
            previous_plan_id=old_plan_id,
            previous_subscription_id=old.id,
            upgrade_date=now,
            is_current=True,
        )
        self.db.add(subscription)
        await self._flush()
        await self._record(subscription, "plan_change", str(old_plan_id), str(new_plan.id), change_type.value)
        await self.db.refresh(subscription)
        await self.entitlements.sync_for_plan(subscription.user_id, new_plan.id, now)

        logger.info(
            "plan_change_applied",
            user_id=subscription.user_id,
            old_subscription_id=str(old.id),
            subscription_id=str(subscription.id),
            old_plan_id=str(old_plan_id),
            new_plan_id=str(new_plan.id),
            change_type=change_type.value,
        )
        return subscription

    async def _price_of(self, plan: Plan, subscription: Subscription, required: bool) -> Decimal:
        if plan.is_freemium:
            return Decimal("0.00")
        if required:
            pricing = await self.catalog.get_pricing(plan.id, subscription.region, subscription.currency)
        else:
            pricing = await self.catalog.find_pricing(plan.id, subscription.region, subscription.currency)
        return Decimal(pricing.price) if pricing else Decimal("0.00")

    @staticmethod
    def _prorate(subscription: Subscription, current_price: Decimal, new_price: Decimal, now: datetime) -> Decimal:
        """Amount due now: new price minus credit for the unused current period."""
        period = (subscription.end_date - subscription.start_date).total_seconds()
        remaining = max((subscription.end_date - now).total_seconds(), 0)
        if period <= 0:
            return quantize_money(new_price)
        credit = current_price * Decimal(remaining) / Decimal(period)
        return quantize_money(max(new_price - credit, Decimal("0")))

    @staticmethod
    def _clear_pending_change(subscription: Subscription) -> None:
        subscription.pending_plan_change_to = None
        subscription.pending_plan_change_type = None
        subscription.pending_plan_change_date = None

    async def _flush(self) -> None:
        try:
            await self.db.flush()
        except StaleDataError as e:
            raise Conflict("Subscription was modified concurrently; retry the operation") from e

    async def _record(
        self,
        subscription: Subscription,
        event_type: str,
        old_value: str | None,
        new_value: str,
        reason: str | None = None,
    ) -> None:
        """Append a SubscriptionHistory row."""
        self.db.add(
            SubscriptionHistory(
                subscription_id=subscription.id,
                event_type=event_type,
                old_value=old_value,
                new_value=new_value,
                reason=reason,
            )
        )
        await self.db.flush()
