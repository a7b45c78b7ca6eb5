"""Entitlement API endpoints."""
import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.api.deps import ensure_user_access, get_current_user, get_db
from subscription_engine.schemas.usage import ConsumeRequest, ConsumeResult, UsageSnapshot
from subscription_engine.services.entitlement_service import EntitlementLedger

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/entitlements", tags=["Entitlements"])


@router.post("/{user_id}/consume", response_model=ConsumeResult)
async def consume_feature(
    user_id: int,
    request: ConsumeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(get_current_user),
) -> ConsumeResult:
    """
    Authorize a feature use and consume allowance for it.

    - **feature_code**: Feature being used
    - **amount**: Units to consume (default: 1)
    - **ai_model_type** / **token_count**: Metering for token-based features

    Returns 429 with the plan limit when the allowance is exhausted and
    403 when the plan does not include the feature.
    """
    ensure_user_access(current_user, user_id)
    ledger = EntitlementLedger(db)
    result = await ledger.check_and_consume(
        user_id,
        request.feature_code,
        request.amount,
        ai_model_type=request.ai_model_type,
        token_count=request.token_count,
    )
    await db.commit()
    return result


@router.get("/{user_id}/usage", response_model=list[UsageSnapshot])
async def get_usage(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(get_current_user),
) -> list[UsageSnapshot]:
    """Usage summary per feature on the user's current plan."""
    ensure_user_access(current_user, user_id)
    ledger = EntitlementLedger(db)
    return await ledger.get_usage_snapshot(user_id)
