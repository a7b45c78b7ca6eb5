"""Entitlement ledger: per-user feature counters and access checks."""
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.errors import FeatureUnavailable, LimitExceeded, Unauthorized, ValidationError
from subscription_engine.metrics import entitlement_checks_total, usage_resets_total
from subscription_engine.models.feature import Feature, FeatureType, LimitType, PlanFeature, ResetFrequency
from subscription_engine.models.usage import FeatureUsage
from subscription_engine.schemas.usage import ConsumeResult, UsageSnapshot
from subscription_engine.services.plan_catalog import PlanCatalog
from subscription_engine.utils.periods import next_reset_date

if TYPE_CHECKING:
    from subscription_engine.services.subscription_service import SubscriptionLifecycle

logger = structlog.get_logger(__name__)


class EntitlementLedger:
    """Answers "can this user do X right now" and meters countable features."""

    def __init__(
        self,
        db: AsyncSession,
        catalog: PlanCatalog | None = None,
        lifecycle: "SubscriptionLifecycle | None" = None,
    ):
        """
        Initialize the ledger.

        Args:
            db: Database session
            catalog: Plan catalog (a new one on ``db`` when omitted)
            lifecycle: Subscription lifecycle used to resolve the user's plan
        """
        self.db = db
        self.catalog = catalog or PlanCatalog(db)
        if lifecycle is None:
            from subscription_engine.services.subscription_service import SubscriptionLifecycle

            lifecycle = SubscriptionLifecycle(db, self.catalog, entitlements=self)
        self.lifecycle = lifecycle

    async def check_and_consume(
        self,
        user_id: int,
        feature_code: str,
        amount: int = 1,
        *,
        ai_model_type: str | None = None,
        token_count: int | None = None,
        now: datetime | None = None,
    ) -> ConsumeResult:
        """
        Authorize a feature use and consume allowance for it.

        Count-limited features are incremented with a single conditional
        UPDATE, so concurrent calls can never push usage past the limit.

        Args:
            user_id: User performing the action
            feature_code: Feature code, e.g. ``resume_generation``
            amount: Units to consume
            ai_model_type: Model used, for token-metered features
            token_count: Tokens spent, for token-metered features
            now: Evaluation time (defaults to utcnow)

        Returns:
            ConsumeResult with the remaining allowance (None when unlimited)

        Raises:
            ValidationError: If amount is not a positive integer
            NotFound: If the feature code is unknown
            Unauthorized: If the user has no entitling subscription
            FeatureUnavailable: If the plan does not include the feature
            LimitExceeded: If the count limit would be exceeded
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
            raise ValidationError(f"Consumption amount must be a positive integer, got {amount!r}")

        now = now or datetime.utcnow()
        feature = await self.catalog.get_feature(feature_code)

        subscription = await self.lifecycle.get_entitled_subscription(user_id, now)
        if subscription is None:
            entitlement_checks_total.labels(feature_code=feature_code, outcome="unauthorized").inc()
            raise Unauthorized("No active subscription", user_id=user_id, feature_code=feature_code)

        plan = subscription.plan
        plan_feature = await self.catalog.get_plan_feature(plan.id, feature.id)

        if plan_feature is None:
            if feature.feature_type == FeatureType.ESSENTIAL:
                entitlement_checks_total.labels(feature_code=feature_code, outcome="allowed").inc()
                return ConsumeResult(allowed=True, remaining=None, feature_code=feature_code)
            entitlement_checks_total.labels(feature_code=feature_code, outcome="unavailable").inc()
            raise FeatureUnavailable(
                f"'{feature_code}' is not available on the {plan.name} plan",
                feature_code=feature_code,
                plan_name=plan.name,
            )

        if not plan_feature.is_enabled:
            entitlement_checks_total.labels(feature_code=feature_code, outcome="unavailable").inc()
            raise FeatureUnavailable(
                f"'{feature_code}' is disabled on the {plan.name} plan",
                feature_code=feature_code,
                plan_name=plan.name,
            )

        if plan_feature.limit_type in (LimitType.UNLIMITED, LimitType.BOOLEAN):
            entitlement_checks_total.labels(feature_code=feature_code, outcome="allowed").inc()
            return ConsumeResult(allowed=True, remaining=None, feature_code=feature_code)

        limit = plan_feature.limit_value or 0
        usage = await self._get_or_create_usage(user_id, feature, plan_feature, now)
        await self._reset_if_due(usage, plan_feature, now)

        values = {
            "usage_count": FeatureUsage.usage_count + amount,
            "last_used": now,
            "updated_at": now,
        }
        if feature.is_token_based and token_count:
            values["ai_token_count"] = FeatureUsage.ai_token_count + token_count
            values["ai_cost"] = FeatureUsage.ai_cost + Decimal(token_count) * Decimal(feature.cost_factor)
            if ai_model_type:
                values["ai_model_type"] = ai_model_type

        result = await self.db.execute(
            update(FeatureUsage)
            .where(
                FeatureUsage.id == usage.id,
                FeatureUsage.usage_count + amount <= limit,
            )
            .values(**values)
            .returning(FeatureUsage.usage_count)
            .execution_options(synchronize_session=False)
        )
        used = result.scalar_one_or_none()

        if used is None:
            current = await self.db.scalar(select(FeatureUsage.usage_count).where(FeatureUsage.id == usage.id))
            entitlement_checks_total.labels(feature_code=feature_code, outcome="limit_exceeded").inc()
            logger.info(
                "entitlement_limit_exceeded",
                user_id=user_id,
                feature_code=feature_code,
                plan_id=str(plan.id),
                limit=limit,
                used=current,
                requested=amount,
            )
            raise LimitExceeded(feature_code=feature_code, plan_name=plan.name, limit=limit, used=current or 0)

        entitlement_checks_total.labels(feature_code=feature_code, outcome="allowed").inc()
        logger.debug("entitlement_consumed", user_id=user_id, feature_code=feature_code, used=used, limit=limit)
        return ConsumeResult(
            allowed=True,
            remaining=max(limit - used, 0),
            feature_code=feature_code,
            limit=limit,
            used=used,
        )

    async def get_usage_snapshot(self, user_id: int, now: datetime | None = None) -> list[UsageSnapshot]:
        """
        Read-only usage summary for display.

        A counter whose reset date has passed is reported as 0 without
        being written back.

        Args:
            user_id: User to summarize

        Returns:
            One line per feature on the user's plan
        """
        now = now or datetime.utcnow()
        subscription = await self.lifecycle.get_entitled_subscription(user_id, now)
        if subscription is None:
            return []

        usage_by_feature = {usage.feature_id: usage for usage in await self._list_usage(user_id)}
        snapshot = []
        for plan_feature in await self.catalog.get_features_for_plan(subscription.plan_id):
            usage = usage_by_feature.get(plan_feature.feature_id)
            used = usage.usage_count if usage else 0
            resets_at = usage.reset_date if usage else None
            if resets_at is not None and resets_at <= now:
                used = 0
                resets_at = next_reset_date(plan_feature.reset_frequency, now, anchor=resets_at)

            snapshot.append(
                UsageSnapshot(
                    feature_code=plan_feature.feature.code,
                    used=used,
                    limit=plan_feature.limit_value if plan_feature.limit_type == LimitType.COUNT else None,
                    resets_at=resets_at,
                )
            )
        return snapshot

    async def sync_for_plan(self, user_id: int, plan_id: UUID, now: datetime | None = None) -> list[FeatureUsage]:
        """
        Re-derive counters after a plan transition.

        Creates missing rows for the plan's count-limited features and gives
        rows without a reset date one when the new cadence needs it.
        Accumulated counts are kept.
        """
        now = now or datetime.utcnow()
        synced = []
        for plan_feature in await self.catalog.get_features_for_plan(plan_id):
            if plan_feature.limit_type != LimitType.COUNT:
                continue
            usage = await self._get_or_create_usage(user_id, plan_feature.feature, plan_feature, now)
            if usage.reset_date is None and plan_feature.reset_frequency != ResetFrequency.NEVER:
                usage.reset_date = next_reset_date(plan_feature.reset_frequency, now)
            synced.append(usage)

        await self.db.flush()
        logger.info("entitlements_synced", user_id=user_id, plan_id=str(plan_id), counters=len(synced))
        return synced

    async def reset_usage(self, user_id: int, feature_code: str | None = None) -> int:
        """
        Explicitly reset a user's counters (admin action).

        Returns:
            Number of counters reset
        """
        stmt = update(FeatureUsage).where(FeatureUsage.user_id == user_id)
        if feature_code is not None:
            feature = await self.catalog.get_feature(feature_code)
            stmt = stmt.where(FeatureUsage.feature_id == feature.id)

        result = await self.db.execute(
            stmt.values(usage_count=0, updated_at=datetime.utcnow()).execution_options(synchronize_session=False)
        )
        logger.info("usage_reset", user_id=user_id, feature_code=feature_code, counters=result.rowcount)
        return result.rowcount

    async def _list_usage(self, user_id: int) -> list[FeatureUsage]:
        result = await self.db.execute(
            select(FeatureUsage)
            .where(FeatureUsage.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return list(result.unique().scalars().all())

    async def _get_or_create_usage(
        self,
        user_id: int,
        feature: Feature,
        plan_feature: PlanFeature,
        now: datetime,
    ) -> FeatureUsage:
        result = await self.db.execute(
            select(FeatureUsage)
            .where(FeatureUsage.user_id == user_id, FeatureUsage.feature_id == feature.id)
            .execution_options(populate_existing=True)
        )
        usage = result.unique().scalar_one_or_none()
        if usage is not None:
            return usage

        usage = FeatureUsage(
            user_id=user_id,
            feature_id=feature.id,
            usage_count=0,
            reset_date=next_reset_date(plan_feature.reset_frequency, now),
        )
        try:
            async with self.db.begin_nested():
                self.db.add(usage)
                await self.db.flush()
        except IntegrityError:
            # Another request created the counter first; use theirs
            logger.info("usage_counter_created_concurrently", user_id=user_id, feature_code=feature.code)
            result = await self.db.execute(
                select(FeatureUsage)
                .where(FeatureUsage.user_id == user_id, FeatureUsage.feature_id == feature.id)
                .execution_options(populate_existing=True)
            )
            usage = result.unique().scalar_one()
        return usage

    async def _reset_if_due(self, usage: FeatureUsage, plan_feature: PlanFeature, now: datetime) -> None:
        """Zero the counter when its reset date has passed."""
        if usage.reset_date is None:
            return
        if usage.reset_date > now:
            return

        previous = usage.reset_date
        new_reset = next_reset_date(plan_feature.reset_frequency, now, anchor=previous)
        # Guarded on the old reset date so concurrent callers reset only once
        result = await self.db.execute(
            update(FeatureUsage)
            .where(FeatureUsage.id == usage.id, FeatureUsage.reset_date == previous)
            .values(usage_count=0, reset_date=new_reset, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            usage_resets_total.labels(frequency=plan_feature.reset_frequency.value).inc()
            logger.info(
                "usage_counter_reset",
                user_id=usage.user_id,
                feature_id=str(usage.feature_id),
                previous_reset=previous.isoformat(),
                next_reset=new_reset.isoformat() if new_reset else None,
            )
        await self.db.refresh(usage)
