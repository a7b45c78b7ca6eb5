"""Subscription API endpoints."""
import structlog
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.api.deps import ensure_user_access, get_current_user, get_db
from subscription_engine.auth.rbac import require_admin
from subscription_engine.errors import NotFound
from subscription_engine.schemas.subscription import (
    PlanChangeResponse,
    Subscription,
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionPlanChange,
)
from subscription_engine.services.subscription_service import SubscriptionLifecycle

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Subscriptions"])


@router.post("/subscriptions", response_model=Subscription, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    subscription_data: SubscriptionCreate,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_admin),
) -> Subscription:
    """
    Start a subscription after checkout (admin / platform backend).

    - **user_id**: Subscribing user
    - **plan_id**: Purchased plan
    - **region** / **currency**: Where the plan was sold
    - **payment_gateway** / **payment_reference**: Gateway-side subscription

    Any current subscription of the user is superseded.
    """
    lifecycle = SubscriptionLifecycle(db)
    subscription = await lifecycle.start_subscription(
        subscription_data.user_id,
        subscription_data.plan_id,
        region=subscription_data.region,
        currency=subscription_data.currency,
        gateway=subscription_data.payment_gateway,
        payment_reference=subscription_data.payment_reference,
        auto_renew=subscription_data.auto_renew,
    )
    await db.commit()
    return subscription


@router.get("/users/{user_id}/subscription", response_model=Subscription)
async def get_current_subscription(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(get_current_user),
) -> Subscription:
    """Get the user's current subscription."""
    ensure_user_access(current_user, user_id)
    lifecycle = SubscriptionLifecycle(db)
    subscription = await lifecycle.get_current(user_id)
    if subscription is None:
        raise NotFound(f"User {user_id} has no subscription", user_id=user_id)
    return subscription


@router.post("/users/{user_id}/subscription/free", response_model=Subscription, status_code=status.HTTP_201_CREATED)
async def activate_free_plan(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(get_current_user),
) -> Subscription:
    """Put the user on the freemium plan."""
    ensure_user_access(current_user, user_id)
    lifecycle = SubscriptionLifecycle(db)
    subscription = await lifecycle.activate_free_plan(user_id)
    await db.commit()
    return subscription


@router.post("/users/{user_id}/subscription/cancel", response_model=Subscription)
async def cancel_subscription(
    user_id: int,
    cancel_data: SubscriptionCancel,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(get_current_user),
) -> Subscription:
    """
    Cancel the user's subscription.

    - **immediate**: End access now (default: false, access continues until end_date)
    - **reason**: Optional cancellation reason
    """
    ensure_user_access(current_user, user_id)
    lifecycle = SubscriptionLifecycle(db)
    subscription = await lifecycle.cancel(user_id, immediate=cancel_data.immediate, reason=cancel_data.reason)
    await db.commit()
    return subscription


@router.post("/users/{user_id}/subscription/plan-change", response_model=PlanChangeResponse)
async def request_plan_change(
    user_id: int,
    change_data: SubscriptionPlanChange,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(get_current_user),
) -> PlanChangeResponse:
    """
    Change plan.

    Upgrades apply immediately and report the prorated amount due;
    downgrades are scheduled for the end of the current period.
    """
    ensure_user_access(current_user, user_id)
    lifecycle = SubscriptionLifecycle(db)
    result = await lifecycle.request_plan_change(user_id, change_data.new_plan_id)
    await db.commit()
    return PlanChangeResponse(
        subscription=Subscription.model_validate(result.subscription),
        change_type=result.change_type,
        effective_date=result.effective_date,
        prorated_amount=result.prorated_amount,
    )


@router.delete("/users/{user_id}/subscription/plan-change", response_model=Subscription)
async def cancel_plan_change(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(get_current_user),
) -> Subscription:
    """Drop a scheduled downgrade."""
    ensure_user_access(current_user, user_id)
    lifecycle = SubscriptionLifecycle(db)
    subscription = await lifecycle.cancel_pending_change(user_id)
    await db.commit()
    return subscription
