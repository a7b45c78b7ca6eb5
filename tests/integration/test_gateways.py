"""Tests for gateway adapters, the adapter registry and gateway administration."""
import hashlib
import hmac
import json
import time
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.adapters.base import PAYMENT_FAILED, PAYMENT_SUCCESS, REFUND_PROCESSED
from subscription_engine.adapters.razorpay_adapter import RazorpayAdapter
from subscription_engine.adapters.registry import GatewayRegistry
from subscription_engine.adapters.stripe_adapter import StripeAdapter
from subscription_engine.errors import GatewayError, NotFound, Unauthorized, ValidationError
from subscription_engine.models.payment import PaymentGateway
from subscription_engine.models.plan import Region
from subscription_engine.schemas.gateway import RazorpayGatewayConfig, StripeGatewayConfig
from subscription_engine.services.gateway_service import GatewayService, normalize_legacy_plan_mappings
from tests.utils.factories import RazorpayEventFactory

RAZORPAY_WEBHOOK_SECRET = "rzp_webhook_secret"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


def razorpay_config() -> RazorpayGatewayConfig:
    return RazorpayGatewayConfig(
        key_id="rzp_test_abc123",
        key_secret="secretsecret",
        webhook_secret=RAZORPAY_WEBHOOK_SECRET,
    )


def stripe_config() -> StripeGatewayConfig:
    return StripeGatewayConfig(secret_key="sk_test_abc123", webhook_secret=STRIPE_WEBHOOK_SECRET)


def razorpay_signature(body: bytes) -> str:
    return hmac.new(RAZORPAY_WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()


def stripe_signature(payload: str) -> str:
    timestamp = int(time.time())
    signed = hmac.new(STRIPE_WEBHOOK_SECRET.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signed}"


class RecordingHandler:
    """httpx mock handler that records requests and replays one response."""

    def __init__(self, status_code: int = 200, body: dict | None = None, error: Exception | None = None):
        self.status_code = status_code
        self.body = body or {}
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json=self.body)


@pytest.mark.asyncio
async def test_razorpay_create_plan_sends_paise(basic_plan) -> None:
    """Test that the plan amount is sent in the smallest currency unit."""
    handler = RecordingHandler(body={"id": "plan_abc"})
    adapter = RazorpayAdapter(razorpay_config(), transport=httpx.MockTransport(handler))

    external_id = await adapter.create_plan(basic_plan, "INR", Decimal("1000.00"))

    assert external_id == "plan_abc"
    sent = json.loads(handler.requests[0].content)
    assert handler.requests[0].url.path.endswith("/plans")
    assert sent["item"]["amount"] == 100000
    assert sent["item"]["currency"] == "INR"
    assert sent["period"] == "monthly"


@pytest.mark.asyncio
async def test_razorpay_rejection_raises_gateway_error(basic_plan) -> None:
    """Test that an error status from Razorpay becomes a GatewayError."""
    handler = RecordingHandler(status_code=400, body={"error": {"description": "amount too small"}})
    adapter = RazorpayAdapter(razorpay_config(), transport=httpx.MockTransport(handler))

    with pytest.raises(GatewayError) as exc_info:
        await adapter.create_plan(basic_plan, "INR", Decimal("1000.00"))

    assert "amount too small" in exc_info.value.message


@pytest.mark.asyncio
async def test_razorpay_timeout_raises_gateway_error(basic_plan) -> None:
    """Test that a timed-out call is reported as a GatewayError."""
    handler = RecordingHandler(error=httpx.ReadTimeout("read timed out"))
    adapter = RazorpayAdapter(razorpay_config(), transport=httpx.MockTransport(handler))

    with pytest.raises(GatewayError) as exc_info:
        await adapter.create_plan(basic_plan, "INR", Decimal("1000.00"))

    assert "timed out" in exc_info.value.message


@pytest.mark.asyncio
async def test_razorpay_rejects_unsupported_currency(basic_plan) -> None:
    """Test that Razorpay only creates INR plans."""
    adapter = RazorpayAdapter(razorpay_config(), transport=httpx.MockTransport(RecordingHandler()))

    with pytest.raises(ValidationError):
        await adapter.create_plan(basic_plan, "USD", Decimal("12.00"))


@pytest.mark.asyncio
async def test_razorpay_verify_credentials() -> None:
    """Test credential checks for malformed, rejected and accepted keys."""
    handler = RecordingHandler(body={"items": []})
    adapter = RazorpayAdapter(razorpay_config(), transport=httpx.MockTransport(handler))

    malformed = await adapter.verify_credentials("not-a-key")
    assert malformed.valid is False
    assert handler.requests == []

    short_secret = await adapter.verify_credentials("rzp_test_abc:short")
    assert short_secret.valid is False

    accepted = await adapter.verify_credentials("rzp_test_abc:longenoughsecret")
    assert accepted.valid is True

    rejecting = RazorpayAdapter(razorpay_config(), transport=httpx.MockTransport(RecordingHandler(status_code=401)))
    rejected = await rejecting.verify_credentials("rzp_test_abc:longenoughsecret")
    assert rejected.valid is False
    assert rejected.error == "Authentication failed"


def test_razorpay_webhook_signature_and_normalization() -> None:
    """Test that a signed Razorpay webhook is verified and normalized."""
    adapter = RazorpayAdapter(razorpay_config())
    body = json.dumps(
        RazorpayEventFactory.payment(amount_paise=249900, subscription_id="sub-123", payment_id="pay_1")
    ).encode()

    event = adapter.parse_webhook(
        body, {"X-Razorpay-Signature": razorpay_signature(body), "X-Razorpay-Event-Id": "evt_1"}
    )

    assert event.gateway == PaymentGateway.RAZORPAY
    assert event.external_event_id == "evt_1"
    assert event.event_type == PAYMENT_SUCCESS
    assert event.payload["subscription_id"] == "sub-123"
    assert event.payload["transaction_id"] == "pay_1"
    assert event.payload["amount"] == "2499.00"
    assert event.payload["currency"] == "INR"


def test_razorpay_webhook_with_empty_notes() -> None:
    """Test that a notes list (Razorpay's empty form) yields no subscription id."""
    adapter = RazorpayAdapter(razorpay_config())
    body = json.dumps(RazorpayEventFactory.payment(event="payment.failed", payment_id="pay_2")).encode()

    event = adapter.parse_webhook(body, {"x-razorpay-signature": razorpay_signature(body)})

    assert event.event_type == PAYMENT_FAILED
    assert event.payload["subscription_id"] is None
    assert event.payload["reason"] == "Card declined"
    assert event.external_event_id.startswith("payment.failed:pay_2:")


def test_razorpay_webhook_bad_signature() -> None:
    """Test that a tampered Razorpay body is refused."""
    adapter = RazorpayAdapter(razorpay_config())
    body = json.dumps(RazorpayEventFactory.payment()).encode()
    signature = razorpay_signature(body)

    with pytest.raises(Unauthorized):
        adapter.parse_webhook(body + b" ", {"x-razorpay-signature": signature})

    with pytest.raises(Unauthorized):
        adapter.parse_webhook(body, {})


@pytest.mark.asyncio
async def test_stripe_create_plan(basic_plan) -> None:
    """Test that a Stripe plan is a product plus a recurring price in cents."""
    calls = {}

    def create_product(params):
        calls["product"] = params
        return SimpleNamespace(id="prod_1")

    def create_price(params):
        calls["price"] = params
        return SimpleNamespace(id="price_1")

    client = SimpleNamespace(
        products=SimpleNamespace(create=create_product),
        prices=SimpleNamespace(create=create_price),
    )
    adapter = StripeAdapter(stripe_config(), client=client)

    external_id = await adapter.create_plan(basic_plan, "USD", Decimal("12.00"))

    assert external_id == "price_1"
    assert calls["product"]["name"] == "Basic"
    assert calls["price"]["unit_amount"] == 1200
    assert calls["price"]["currency"] == "usd"
    assert calls["price"]["recurring"] == {"interval": "month"}


@pytest.mark.asyncio
async def test_stripe_connection_error_raises_gateway_error(basic_plan) -> None:
    """Test that Stripe connectivity failures become GatewayError."""

    def unreachable(params):
        raise stripe.APIConnectionError("Could not connect to Stripe")

    client = SimpleNamespace(products=SimpleNamespace(create=unreachable))
    adapter = StripeAdapter(stripe_config(), client=client)

    with pytest.raises(GatewayError):
        await adapter.create_plan(basic_plan, "USD", Decimal("12.00"))


def test_stripe_webhook_signature_and_normalization() -> None:
    """Test that a signed Stripe refund event is verified and normalized."""
    adapter = StripeAdapter(stripe_config(), client=SimpleNamespace())
    payload = json.dumps(
        {
            "id": "evt_stripe_1",
            "object": "event",
            "type": "charge.refunded",
            "data": {
                "object": {
                    "id": "ch_1",
                    "object": "charge",
                    "payment_intent": "pi_1",
                    "currency": "usd",
                    "amount_refunded": 500,
                    "refunds": {"data": [{"id": "re_1", "amount": 500, "reason": "requested_by_customer"}]},
                }
            },
        }
    )

    event = adapter.parse_webhook(payload.encode(), {"Stripe-Signature": stripe_signature(payload)})

    assert event.external_event_id == "evt_stripe_1"
    assert event.event_type == REFUND_PROCESSED
    assert event.payload["transaction_id"] == "pi_1"
    assert event.payload["refund_id"] == "re_1"
    assert event.payload["amount"] == "5.00"
    assert event.payload["currency"] == "USD"


def test_stripe_webhook_bad_signature() -> None:
    """Test that an unsigned Stripe body is refused."""
    adapter = StripeAdapter(stripe_config(), client=SimpleNamespace())
    payload = json.dumps({"id": "evt_2", "object": "event", "type": "invoice.paid", "data": {"object": {}}})

    with pytest.raises(Unauthorized):
        adapter.parse_webhook(payload.encode(), {"stripe-signature": "t=1,v1=deadbeef"})


def test_registry_routes_by_region_and_currency() -> None:
    """Test picking the adapter for a region and currency."""
    registry = GatewayRegistry.from_configs([razorpay_config(), stripe_config()])

    assert registry.for_region(Region.INDIA, "inr").gateway == PaymentGateway.RAZORPAY
    assert registry.for_region(Region.GLOBAL, "USD").gateway == PaymentGateway.STRIPE
    assert PaymentGateway.STRIPE in registry

    with pytest.raises(ValidationError):
        registry.for_region(Region.INDIA, "USD")


def test_registry_unknown_gateway() -> None:
    """Test looking up a gateway that is not configured."""
    registry = GatewayRegistry.from_configs([razorpay_config()])

    with pytest.raises(NotFound):
        registry.get(PaymentGateway.STRIPE)


def test_normalize_legacy_plan_mappings() -> None:
    """Test that bare external ids are read as INR mappings."""
    normalized = normalize_legacy_plan_mappings({"p1": "plan_abc", "p2": {"usd": "price_x", "INR": "plan_y"}})

    assert normalized == {"p1": {"INR": "plan_abc"}, "p2": {"USD": "price_x", "INR": "plan_y"}}

    with pytest.raises(ValidationError):
        normalize_legacy_plan_mappings({"p3": 42})


@pytest.mark.asyncio
async def test_ensure_plan_mapping_creates_once(db_session: AsyncSession, basic_plan) -> None:
    """Test that the gateway plan is created on first use and reused afterwards."""
    handler = RecordingHandler(body={"id": "plan_basic_inr"})
    registry = GatewayRegistry.from_configs([razorpay_config()], transport=httpx.MockTransport(handler))
    service = GatewayService(db_session, registry)

    first = await service.ensure_plan_mapping(PaymentGateway.RAZORPAY, basic_plan.id, "inr")
    second = await service.ensure_plan_mapping(PaymentGateway.RAZORPAY, basic_plan.id, "INR")
    await db_session.commit()

    assert first.id == second.id
    assert first.external_plan_id == "plan_basic_inr"
    assert len(handler.requests) == 1
    assert await service.get_external_plan_id(PaymentGateway.RAZORPAY, basic_plan.id, "INR") == "plan_basic_inr"

    with pytest.raises(ValidationError):
        await service.ensure_plan_mapping(PaymentGateway.RAZORPAY, basic_plan.id, "USD")


@pytest.mark.asyncio
async def test_save_config_imports_legacy_mappings(db_session: AsyncSession, basic_plan) -> None:
    """Test storing a typed config and importing its legacy plan mappings."""
    service = GatewayService(db_session, GatewayRegistry.from_configs([razorpay_config()]))

    row = await service.save_config(
        {
            "gateway": "razorpay",
            "key_id": "rzp_live_xyz",
            "key_secret": "livesecret123",
            "webhook_secret": "livewebhook",
            "plan_mappings": {str(basic_plan.id): "plan_legacy"},
        },
        test_mode=False,
    )
    await db_session.commit()

    assert "plan_mappings" not in row.config
    assert row.config["key_secret"] == "livesecret123"
    config = await service.get_config(PaymentGateway.RAZORPAY)
    assert config.key_id == "rzp_live_xyz"
    assert await service.mappings_by_plan(PaymentGateway.RAZORPAY) == {str(basic_plan.id): {"INR": "plan_legacy"}}


@pytest.mark.asyncio
async def test_save_config_rejects_wrong_shape(db_session: AsyncSession) -> None:
    """Test that a config missing its gateway's credentials is rejected."""
    service = GatewayService(db_session, GatewayRegistry.from_configs([razorpay_config()]))

    with pytest.raises(ValidationError):
        await service.save_config({"gateway": "razorpay", "key_id": "pk_wrong"})
