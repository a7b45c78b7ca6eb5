"""Razorpay webhook handler for subscription and payment events."""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.adapters.registry import GatewayRegistry
from subscription_engine.api.deps import get_db, get_gateway_registry
from subscription_engine.api.webhooks.ingest import receive_webhook
from subscription_engine.models.payment import PaymentGateway

router = APIRouter(prefix="/webhooks/razorpay", tags=["webhooks"])


@router.post("")
async def handle_razorpay_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_gateway_registry),
) -> JSONResponse:
    """
    Handle incoming Razorpay webhook events.

    Verifies ``X-Razorpay-Signature`` (HMAC-SHA256 of the raw body) and
    reconciles charged, failed, halted, cancelled, refund and dispute events.
    Redeliveries carrying the same ``X-Razorpay-Event-Id`` are acknowledged
    without being applied twice.
    """
    return await receive_webhook(PaymentGateway.RAZORPAY, request, db, registry)
