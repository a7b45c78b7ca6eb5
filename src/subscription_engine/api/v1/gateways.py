"""Payment gateway administration endpoints."""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.adapters.registry import GatewayRegistry
from subscription_engine.api.deps import get_db, get_gateway_registry
from subscription_engine.auth.rbac import require_admin
from subscription_engine.models.payment import PaymentGateway
from subscription_engine.schemas.gateway import (
    CredentialCheck,
    GatewayPlanCreate,
    GatewayPlanMapping,
    VerificationResult,
)
from subscription_engine.services.gateway_service import GatewayService

router = APIRouter(prefix="/gateways", tags=["Gateways"], dependencies=[Depends(require_admin)])


@router.post("/{gateway}/verify", response_model=VerificationResult)
async def verify_credentials(
    gateway: PaymentGateway,
    check: CredentialCheck,
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_gateway_registry),
) -> VerificationResult:
    """
    Check a credential against the live gateway without storing it.

    Razorpay expects ``key_id:key_secret``; Stripe expects a secret key.
    """
    service = GatewayService(db, registry)
    return await service.verify_credentials(gateway, check.key)


@router.post("/{gateway}/plans", response_model=GatewayPlanMapping)
async def ensure_gateway_plan(
    gateway: PaymentGateway,
    plan_data: GatewayPlanCreate,
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_gateway_registry),
) -> GatewayPlanMapping:
    """
    Return the gateway plan for a plan/currency, creating it on first use.

    Returns 502 when the gateway times out or rejects the request.
    """
    service = GatewayService(db, registry)
    mapping = await service.ensure_plan_mapping(gateway, plan_data.plan_id, plan_data.currency)
    await db.commit()
    return mapping


@router.get("/{gateway}/mappings", response_model=list[GatewayPlanMapping])
async def list_mappings(
    gateway: PaymentGateway,
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_gateway_registry),
) -> list[GatewayPlanMapping]:
    """List stored plan mappings of a gateway."""
    service = GatewayService(db, registry)
    return await service.list_mappings(gateway)
