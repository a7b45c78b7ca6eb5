"""Razorpay payment gateway adapter (INDIA / INR)."""
import hashlib
import hmac
import json
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

import httpx
import structlog

from subscription_engine.adapters.base import (
    DISPUTE_CREATED,
    PAYMENT_FAILED,
    PAYMENT_SUCCESS,
    REFUND_PROCESSED,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_HALTED,
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
    RazorpayGatewayConfig,
    RefundResult,
    VerificationResult,
)
from subscription_engine.utils.currency import convert_from_smallest_unit, convert_to_smallest_unit

logger = structlog.get_logger(__name__)

MIN_SECRET_LENGTH = 8

# Razorpay event name -> canonical event type
EVENT_TYPES = {
    "payment.captured": PAYMENT_SUCCESS,
    "subscription.charged": PAYMENT_SUCCESS,
    "payment.failed": PAYMENT_FAILED,
    "subscription.pending": PAYMENT_FAILED,
    "subscription.halted": SUBSCRIPTION_HALTED,
    "subscription.cancelled": SUBSCRIPTION_CANCELLED,
    "refund.processed": REFUND_PROCESSED,
    "payment.dispute.created": DISPUTE_CREATED,
}

PERIODS = {
    BillingCycle.MONTHLY: "monthly",
    BillingCycle.YEARLY: "yearly",
}


def _notes(entity: dict[str, Any]) -> dict[str, Any]:
    # Razorpay sends an empty list when an entity has no notes
    notes = entity.get("notes")
    return notes if isinstance(notes, dict) else {}


def parse_key(key: str) -> tuple[str, str]:
    """
    Split a ``key_id:key_secret`` credential string.

    Raises:
        ValueError: If the string is not a well-formed Razorpay key
    """
    key_id, sep, key_secret = key.partition(":")
    if not sep:
        raise ValueError("Expected 'key_id:key_secret'")
    if not key_id.startswith("rzp_"):
        raise ValueError("Key id must start with 'rzp_'")
    if len(key_secret) < MIN_SECRET_LENGTH:
        raise ValueError(f"Key secret must be at least {MIN_SECRET_LENGTH} characters")
    return key_id, key_secret


class RazorpayAdapter(PaymentGatewayAdapter):
    """Adapter for the Razorpay REST API."""

    gateway = PaymentGateway.RAZORPAY
    supported_regions = frozenset({Region.INDIA})
    supported_currencies = frozenset({"INR"})

    def __init__(
        self,
        config: RazorpayGatewayConfig,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize Razorpay adapter.

        Args:
            config: Typed Razorpay credentials
            timeout: Request timeout in seconds (defaults to settings)
            transport: Optional httpx transport, used by tests
        """
        self.config = config
        self.timeout = timeout if timeout is not None else settings.gateway_timeout_seconds
        self.transport = transport

    def _client(self, key_id: str | None = None, key_secret: str | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url,
            auth=(key_id or self.config.key_id, key_secret or self.config.key_secret.get_secret_value()),
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        credentials: tuple[str, str] | None = None,
    ) -> httpx.Response:
        """Send a request, mapping transport failures onto GatewayError."""
        key_id, key_secret = credentials or (None, None)
        with gateway_request_seconds.labels(gateway=self.gateway.value, operation=operation).time():
            try:
                async with self._client(key_id, key_secret) as client:
                    return await client.request(method, path, json=json_body, params=params)
            except httpx.TimeoutException as e:
                logger.error("razorpay_timeout", operation=operation, timeout=self.timeout)
                raise GatewayError("Razorpay request timed out", gateway=self.gateway.value, operation=operation) from e
            except httpx.HTTPError as e:
                logger.error("razorpay_request_failed", operation=operation, error=str(e))
                raise GatewayError(
                    f"Razorpay request failed: {e}", gateway=self.gateway.value, operation=operation
                ) from e

    def _raise_for_status(self, response: httpx.Response, operation: str) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_error:
            description = (data.get("error") or {}).get("description") or response.reason_phrase
            logger.warning(
                "razorpay_request_rejected",
                operation=operation,
                status_code=response.status_code,
                description=description,
            )
            raise GatewayError(
                f"Razorpay rejected {operation}: {description}",
                gateway=self.gateway.value,
                operation=operation,
                status_code=response.status_code,
            )
        return data

    async def create_plan(self, plan: Plan, currency: str, amount: Decimal) -> str:
        """
        Create a Razorpay plan.

        Args:
            plan: Catalog plan
            currency: Must be INR
            amount: Price in rupees

        Returns:
            Razorpay plan id (``plan_...``)
        """
        if currency.upper() not in self.supported_currencies:
            raise ValidationError(f"Razorpay does not support {currency}", currency=currency)

        body = {
            "period": PERIODS[plan.billing_cycle],
            "interval": 1,
            "item": {
                "name": plan.name,
                "amount": convert_to_smallest_unit(amount, currency),
                "currency": currency.upper(),
                "description": plan.description or plan.name,
            },
            "notes": {"internal_plan_id": str(plan.id), "currency": currency.upper()},
        }
        response = await self._request("POST", "/plans", "create_plan", json_body=body)
        data = self._raise_for_status(response, "create_plan")

        logger.info("razorpay_plan_created", plan_id=str(plan.id), external_plan_id=data["id"])
        return data["id"]

    async def verify_credentials(self, key: str | None = None) -> VerificationResult:
        """
        Verify a ``key_id:key_secret`` pair with a lightweight API call.

        Format problems are reported without contacting Razorpay.
        """
        if key is None:
            credentials = (self.config.key_id, self.config.key_secret.get_secret_value())
        else:
            try:
                credentials = parse_key(key)
            except ValueError as e:
                return VerificationResult(valid=False, error=str(e))

        try:
            response = await self._request(
                "GET", "/customers", "verify_credentials", params={"count": 1}, credentials=credentials
            )
        except GatewayError as e:
            return VerificationResult(valid=False, error=e.message)

        if response.status_code == 401:
            return VerificationResult(valid=False, error="Authentication failed")
        if response.is_error:
            return VerificationResult(valid=False, error=f"Unexpected status {response.status_code}")
        return VerificationResult(valid=True)

    async def charge(
        self,
        amount: Decimal,
        currency: str,
        reference: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChargeResult:
        """Create a Razorpay order for the checkout to complete."""
        body = {
            "amount": convert_to_smallest_unit(amount, currency),
            "currency": currency.upper(),
            "receipt": reference,
            "notes": metadata or {},
        }
        response = await self._request("POST", "/orders", "charge", json_body=body)
        data = self._raise_for_status(response, "charge")

        status = "completed" if data.get("status") == "paid" else "pending"
        return ChargeResult(
            gateway_transaction_id=data["id"],
            status=status,
            amount=amount,
            currency=currency.upper(),
            raw=data,
        )

    async def refund(self, gateway_transaction_id: str, amount: Decimal, currency: str) -> RefundResult:
        """Refund a captured Razorpay payment."""
        response = await self._request(
            "POST",
            f"/payments/{gateway_transaction_id}/refund",
            "refund",
            json_body={"amount": convert_to_smallest_unit(amount, currency)},
        )
        data = self._raise_for_status(response, "refund")
        return RefundResult(
            gateway_refund_id=data["id"],
            amount=convert_from_smallest_unit(data.get("amount", 0), currency),
            status=data.get("status", "processed"),
        )

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        """
        Verify ``X-Razorpay-Signature`` and normalize the event.

        Args:
            body: Raw request body exactly as received
            headers: Request headers

        Returns:
            GatewayEvent with canonical payload keys
        """
        headers = {k.lower(): v for k, v in headers.items()}
        signature = headers.get("x-razorpay-signature", "")
        expected = hmac.new(
            self.config.webhook_secret.get_secret_value().encode(),
            body,
            hashlib.sha256,
        ).hexdigest()
        if not signature or not hmac.compare_digest(expected, signature):
            logger.warning("razorpay_webhook_signature_invalid")
            raise Unauthorized("Invalid webhook signature", gateway=self.gateway.value)

        try:
            data = json.loads(body)
        except ValueError as e:
            raise ValidationError("Webhook body is not valid JSON", gateway=self.gateway.value) from e

        event_name = data.get("event", "")
        entities = data.get("payload") or {}
        payment = (entities.get("payment") or {}).get("entity") or {}
        subscription = (entities.get("subscription") or {}).get("entity") or {}
        refund = (entities.get("refund") or {}).get("entity") or {}
        dispute = (entities.get("dispute") or {}).get("entity") or {}

        notes = _notes(subscription) or _notes(payment)
        currency = (payment.get("currency") or refund.get("currency") or dispute.get("currency") or "INR").upper()
        minor_amount = refund.get("amount") if refund else payment.get("amount")

        payload = {
            "subscription_id": notes.get("subscription_id"),
            "payment_reference": subscription.get("id") or payment.get("subscription_id"),
            "transaction_id": payment.get("id") or refund.get("payment_id") or dispute.get("payment_id"),
            "amount": str(convert_from_smallest_unit(minor_amount, currency)) if minor_amount is not None else None,
            "currency": currency,
            "refund_id": refund.get("id"),
            "dispute_id": dispute.get("id"),
            "reason": payment.get("error_description") or dispute.get("reason_code") or _notes(refund).get("reason"),
            "raw": data,
        }

        entity_id = subscription.get("id") or payment.get("id") or refund.get("id") or dispute.get("id")
        external_event_id = headers.get("x-razorpay-event-id") or f"{event_name}:{entity_id}:{data.get('created_at')}"

        return GatewayEvent(
            gateway=self.gateway,
            external_event_id=external_event_id,
            event_type=EVENT_TYPES.get(event_name, event_name),
            payload=payload,
        )
