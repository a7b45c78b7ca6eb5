"""Subscription cycle worker.

Runs hourly to:
1. Apply downgrades whose scheduled boundary has been reached
2. Renew free plans and move unpaid lapsed subscriptions to grace
3. Expire subscriptions whose grace period ended unpaid
4. Retry webhook events that failed processing

Usage (with ARQ):
    arq subscription_engine.workers.subscription_cycle.WorkerSettings
"""
from datetime import datetime
from typing import Awaitable, Callable
from uuid import UUID

import structlog
from arq import cron
from arq.connections import RedisSettings
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.config import settings
from subscription_engine.database import AsyncSessionLocal
from subscription_engine.services.subscription_service import SubscriptionLifecycle
from subscription_engine.services.webhook_reconciler import WebhookReconciler

logger = structlog.get_logger(__name__)


async def _sweep(
    db: AsyncSession,
    step: str,
    subscription_ids: list[UUID],
    action: Callable[[UUID], Awaitable[object]],
) -> tuple[int, int]:
    """Run ``action`` per subscription, committing each one on its own."""
    done = errors = 0
    for subscription_id in subscription_ids:
        try:
            await action(subscription_id)
            await db.commit()
            done += 1
        except Exception as e:
            await db.rollback()
            errors += 1
            logger.exception(
                "subscription_cycle_step_failed",
                step=step,
                subscription_id=str(subscription_id),
                exc_info=e,
            )
    return done, errors


async def process_subscription_cycle(db: AsyncSession, now: datetime | None = None) -> dict[str, int]:
    """
    Process every time-driven subscription transition that is due.

    Downgrades run before lapse handling so a downgrade scheduled for the
    period boundary takes effect before the renewal decision.

    Args:
        db: Database session
        now: Evaluation time (defaults to utcnow)

    Returns:
        Dict with counts per step and the number of failures
    """
    now = now or datetime.utcnow()
    lifecycle = SubscriptionLifecycle(db)

    changed, change_errors = await _sweep(
        db,
        "plan_change",
        await lifecycle.find_due_plan_changes(now),
        lambda sub_id: lifecycle.apply_scheduled_change(sub_id, now),
    )
    lapsed, lapse_errors = await _sweep(
        db,
        "lapse",
        await lifecycle.find_lapsed(now),
        lambda sub_id: lifecycle.handle_lapse(sub_id, now),
    )
    expired, expire_errors = await _sweep(
        db,
        "expire",
        await lifecycle.find_grace_ended(now),
        lambda sub_id: lifecycle.expire(sub_id, now),
    )

    stats = {
        "plan_changes_applied": changed,
        "lapsed_processed": lapsed,
        "expired": expired,
        "errors": change_errors + lapse_errors + expire_errors,
    }
    logger.info("subscription_cycle_completed", **stats)
    return stats


async def run_subscription_cycle(ctx: dict) -> dict[str, int]:
    """ARQ task wrapping ``process_subscription_cycle``."""
    logger.info("subscription_cycle_started")
    async with AsyncSessionLocal() as db:
        return await process_subscription_cycle(db)


async def retry_failed_webhooks(ctx: dict) -> dict[str, int]:
    """ARQ task that re-runs webhook events left unprocessed."""
    async with AsyncSessionLocal() as db:
        results = await WebhookReconciler(db).retry_failed()

    stats = {
        "retried": len(results),
        "processed": sum(1 for r in results if r.status == "processed"),
        "failed": sum(1 for r in results if r.status == "failed"),
    }
    logger.info("webhook_retry_job_completed", **stats)
    return stats


class WorkerSettings:
    """
    ARQ worker settings.

    Schedule:
    - Subscription cycle: every hour at :05
    - Webhook retries: every hour at :35
    """

    functions = [run_subscription_cycle, retry_failed_webhooks]

    cron_jobs = [
        cron(run_subscription_cycle, minute=5, run_at_startup=False),
        cron(retry_failed_webhooks, minute=35, run_at_startup=False),
    ]

    redis_settings = RedisSettings.from_dsn(str(settings.arq_redis_url))

    max_jobs = 10
    job_timeout = 600
