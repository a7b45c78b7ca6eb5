"""Stripe webhook handler for payment events."""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.adapters.registry import GatewayRegistry
from subscription_engine.api.deps import get_db, get_gateway_registry
from subscription_engine.api.webhooks.ingest import receive_webhook
from subscription_engine.models.payment import PaymentGateway

router = APIRouter(prefix="/webhooks/stripe", tags=["webhooks"])


@router.post("")
async def handle_stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_gateway_registry),
) -> JSONResponse:
    """
    Handle incoming Stripe webhook events.

    Verifies the ``Stripe-Signature`` header and reconciles:
    - invoice.paid / payment_intent.succeeded: record payment, renew or reactivate
    - invoice.payment_failed / payment_intent.payment_failed: record failure, start grace
    - customer.subscription.deleted: cancel
    - charge.refunded / charge.dispute.created: refund and dispute bookkeeping
    """
    return await receive_webhook(PaymentGateway.STRIPE, request, db, registry)
