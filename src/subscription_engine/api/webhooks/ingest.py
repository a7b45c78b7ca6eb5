"""Shared webhook intake: verify, normalize, reconcile."""
import structlog
from fastapi import Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.adapters.registry import GatewayRegistry
from subscription_engine.models.payment import PaymentGateway
from subscription_engine.services.webhook_reconciler import WebhookReconciler

logger = structlog.get_logger(__name__)


async def receive_webhook(
    gateway: PaymentGateway,
    request: Request,
    db: AsyncSession,
    registry: GatewayRegistry,
) -> JSONResponse:
    """
    Verify a gateway delivery and hand it to the reconciler.

    Signature failures surface as ``Unauthorized`` (403) and malformed
    bodies as ``ValidationError`` (422). Events that failed processing
    answer 500 so the gateway redelivers them.
    """
    body = await request.body()
    adapter = registry.get(gateway)
    event = adapter.parse_webhook(body, request.headers)

    logger.info(
        "webhook_received",
        gateway=gateway.value,
        external_event_id=event.external_event_id,
        event_type=event.event_type,
    )

    result = await WebhookReconciler(db).ingest_event(event)
    status_code = status.HTTP_200_OK if result.ok else status.HTTP_500_INTERNAL_SERVER_ERROR
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))
