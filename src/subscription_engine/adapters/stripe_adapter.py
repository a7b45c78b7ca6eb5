"""Stripe payment gateway adapter (GLOBAL / USD)."""
import asyncio
import functools
import json
from collections.abc import Callable, Mapping
from decimal import Decimal
from typing import Any

import stripe
import structlog

from subscription_engine.adapters.base import (
    DISPUTE_CREATED,
    PAYMENT_FAILED,
    PAYMENT_SUCCESS,
    REFUND_PROCESSED,
    SUBSCRIPTION_CANCELLED,
    PaymentGatewayAdapter,
)
from subscription_engine.config import settings
from subscription_engine.errors import GatewayError, Unauthorized, ValidationError
from subscription_engine.metrics import gateway_request_seconds
from subscription_engine.models.payment import PaymentGateway
from subscription_engine.models.plan import BillingCycle, Plan, Region
from subscription_engine.schemas.gateway import (
    ChargeResult,
    GatewayEvent,
    RefundResult,
    StripeGatewayConfig,
    VerificationResult,
)
from subscription_engine.utils.currency import convert_from_smallest_unit, convert_to_smallest_unit

logger = structlog.get_logger(__name__)

WEBHOOK_TOLERANCE_SECONDS = 300

# Stripe event type -> canonical event type
EVENT_TYPES = {
    "invoice.paid": PAYMENT_SUCCESS,
    "invoice.payment_succeeded": PAYMENT_SUCCESS,
    "payment_intent.succeeded": PAYMENT_SUCCESS,
    "invoice.payment_failed": PAYMENT_FAILED,
    "payment_intent.payment_failed": PAYMENT_FAILED,
    "customer.subscription.deleted": SUBSCRIPTION_CANCELLED,
    "charge.refunded": REFUND_PROCESSED,
    "charge.dispute.created": DISPUTE_CREATED,
}

INTERVALS = {
    BillingCycle.MONTHLY: "month",
    BillingCycle.YEARLY: "year",
}

CHARGE_STATUSES = {
    "succeeded": "completed",
    "canceled": "failed",
    "requires_payment_method": "failed",
}


class StripeAdapter(PaymentGatewayAdapter):
    """Adapter for Stripe payment gateway integration."""

    gateway = PaymentGateway.STRIPE
    supported_regions = frozenset({Region.GLOBAL})
    supported_currencies = frozenset({"USD"})

    def __init__(self, config: StripeGatewayConfig, client: stripe.StripeClient | None = None):
        """
        Initialize Stripe adapter.

        Args:
            config: Typed Stripe credentials
            client: Preconfigured Stripe client, used by tests
        """
        self.config = config
        self.client = client or self._build_client(config.secret_key.get_secret_value())

    @staticmethod
    def _build_client(secret_key: str) -> stripe.StripeClient:
        return stripe.StripeClient(
            secret_key,
            http_client=stripe.RequestsClient(timeout=settings.gateway_timeout_seconds),
            max_network_retries=0,
        )

    async def _call(self, operation: str, fn: Callable[..., Any], **kwargs: Any) -> Any:
        """Run a blocking Stripe SDK call off the event loop."""
        loop = asyncio.get_running_loop()
        with gateway_request_seconds.labels(gateway=self.gateway.value, operation=operation).time():
            try:
                return await loop.run_in_executor(None, functools.partial(fn, **kwargs))
            except stripe.APIConnectionError as e:
                logger.error("stripe_connection_failed", operation=operation, error=str(e))
                raise GatewayError(
                    "Stripe request timed out or could not connect",
                    gateway=self.gateway.value,
                    operation=operation,
                ) from e
            except stripe.StripeError as e:
                logger.warning("stripe_request_rejected", operation=operation, error=str(e), code=e.code)
                raise GatewayError(
                    f"Stripe rejected {operation}: {e.user_message or e}",
                    gateway=self.gateway.value,
                    operation=operation,
                    status_code=e.http_status,
                ) from e

    async def create_plan(self, plan: Plan, currency: str, amount: Decimal) -> str:
        """
        Create a Stripe product with a recurring price.

        Returns:
            Stripe price id (``price_...``)
        """
        if currency.upper() not in self.supported_currencies:
            raise ValidationError(f"Stripe does not support {currency}", currency=currency)

        metadata = {"internal_plan_id": str(plan.id)}
        product = await self._call(
            "create_product",
            self.client.products.create,
            params={"name": plan.name, "description": plan.description or plan.name, "metadata": metadata},
        )
        price = await self._call(
            "create_price",
            self.client.prices.create,
            params={
                "product": product.id,
                "unit_amount": convert_to_smallest_unit(amount, currency),
                "currency": currency.lower(),
                "recurring": {"interval": INTERVALS[plan.billing_cycle]},
                "metadata": metadata,
            },
        )

        logger.info("stripe_plan_created", plan_id=str(plan.id), product_id=product.id, price_id=price.id)
        return price.id

    async def verify_credentials(self, key: str | None = None) -> VerificationResult:
        """Verify a secret key by retrieving the account balance."""
        client = self.client
        if key is not None:
            if not key.startswith(("sk_", "rk_")):
                return VerificationResult(valid=False, error="Secret key must start with 'sk_' or 'rk_'")
            client = self._build_client(key)

        try:
            await self._call("verify_credentials", client.balance.retrieve)
        except GatewayError as e:
            if isinstance(e.__cause__, stripe.AuthenticationError):
                return VerificationResult(valid=False, error="Authentication failed")
            return VerificationResult(valid=False, error=e.message)
        return VerificationResult(valid=True)

    async def charge(
        self,
        amount: Decimal,
        currency: str,
        reference: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChargeResult:
        """Create a payment intent."""
        intent = await self._call(
            "charge",
            self.client.payment_intents.create,
            params={
                "amount": convert_to_smallest_unit(amount, currency),
                "currency": currency.lower(),
                "metadata": {**(metadata or {}), "reference": reference},
            },
        )
        return ChargeResult(
            gateway_transaction_id=intent.id,
            status=CHARGE_STATUSES.get(intent.status, "pending"),
            amount=amount,
            currency=currency.upper(),
        )

    async def refund(self, gateway_transaction_id: str, amount: Decimal, currency: str) -> RefundResult:
        """Refund a payment intent."""
        refund = await self._call(
            "refund",
            self.client.refunds.create,
            params={
                "payment_intent": gateway_transaction_id,
                "amount": convert_to_smallest_unit(amount, currency),
            },
        )
        return RefundResult(
            gateway_refund_id=refund.id,
            amount=convert_from_smallest_unit(refund.amount, currency),
            status=refund.status,
        )

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        """
        Verify the ``Stripe-Signature`` header and normalize the event.

        Args:
            body: Raw request body
            headers: Request headers

        Returns:
            GatewayEvent with canonical payload keys
        """
        headers = {k.lower(): v for k, v in headers.items()}
        try:
            stripe.Webhook.construct_event(
                body,
                headers.get("stripe-signature", ""),
                self.config.webhook_secret.get_secret_value(),
                tolerance=WEBHOOK_TOLERANCE_SECONDS,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe_webhook_signature_invalid", error=str(e))
            raise Unauthorized("Invalid webhook signature", gateway=self.gateway.value) from e
        except ValueError as e:
            raise ValidationError("Webhook body is not valid JSON", gateway=self.gateway.value) from e

        data = json.loads(body)

        event_type = data.get("type", "")
        obj = (data.get("data") or {}).get("object") or {}

        return GatewayEvent(
            gateway=self.gateway,
            external_event_id=data.get("id", ""),
            event_type=EVENT_TYPES.get(event_type, event_type),
            payload={**self._canonical_payload(event_type, obj), "raw": data},
        )

    def _canonical_payload(self, event_type: str, obj: dict[str, Any]) -> dict[str, Any]:
        currency = (obj.get("currency") or "usd").upper()
        metadata = obj.get("metadata") or {}
        payload: dict[str, Any] = {
            "subscription_id": metadata.get("subscription_id"),
            "payment_reference": None,
            "transaction_id": None,
            "amount": None,
            "currency": currency,
            "refund_id": None,
            "dispute_id": None,
            "reason": None,
        }

        if event_type.startswith("invoice."):
            details = obj.get("subscription_details") or {}
            payload["subscription_id"] = payload["subscription_id"] or (details.get("metadata") or {}).get(
                "subscription_id"
            )
            payload["payment_reference"] = obj.get("subscription")
            payload["transaction_id"] = obj.get("payment_intent") or obj.get("id")
            minor_amount = obj.get("amount_paid") or obj.get("amount_due")
        elif event_type.startswith("payment_intent."):
            payload["transaction_id"] = obj.get("id")
            minor_amount = obj.get("amount_received") or obj.get("amount")
            payload["reason"] = (obj.get("last_payment_error") or {}).get("message")
        elif event_type == "customer.subscription.deleted":
            payload["payment_reference"] = obj.get("id")
            minor_amount = None
        elif event_type == "charge.refunded":
            payload["transaction_id"] = obj.get("payment_intent") or obj.get("id")
            refunds = (obj.get("refunds") or {}).get("data") or []
            latest = refunds[0] if refunds else {}
            payload["refund_id"] = latest.get("id")
            payload["reason"] = latest.get("reason")
            minor_amount = latest.get("amount", obj.get("amount_refunded"))
        elif event_type == "charge.dispute.created":
            payload["transaction_id"] = obj.get("payment_intent") or obj.get("charge")
            payload["dispute_id"] = obj.get("id")
            payload["reason"] = obj.get("reason")
            minor_amount = obj.get("amount")
        else:
            minor_amount = None

        if minor_amount is not None:
            payload["amount"] = str(convert_from_smallest_unit(minor_amount, currency))
        return payload
