"""Uniform interface over external payment processors."""
from abc import ABC, abstractmethod
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from subscription_engine.models.payment import PaymentGateway
from subscription_engine.models.plan import Plan, Region
from subscription_engine.schemas.gateway import ChargeResult, GatewayEvent, RefundResult, VerificationResult

# Canonical event types understood by the webhook reconciler
PAYMENT_SUCCESS = "payment.success"
PAYMENT_FAILED = "payment.failed"
SUBSCRIPTION_HALTED = "subscription.halted"
SUBSCRIPTION_CANCELLED = "subscription.cancelled"
REFUND_PROCESSED = "refund.processed"
DISPUTE_CREATED = "dispute.created"


class PaymentGatewayAdapter(ABC):
    """
    Base class for gateway adapters.

    Each adapter declares the regions and currencies it serves and talks
    to its processor with bounded timeouts, raising ``GatewayError`` on
    timeouts and rejections.
    """

    gateway: PaymentGateway
    supported_regions: frozenset[Region] = frozenset()
    supported_currencies: frozenset[str] = frozenset()

    def supports(self, region: Region, currency: str) -> bool:
        return region in self.supported_regions and currency.upper() in self.supported_currencies

    @abstractmethod
    async def create_plan(self, plan: Plan, currency: str, amount: Decimal) -> str:
        """Create the gateway-side plan object and return its id."""

    @abstractmethod
    async def verify_credentials(self, key: str | None = None) -> VerificationResult:
        """Check a credential string, or the configured one when ``key`` is None."""

    @abstractmethod
    async def charge(
        self,
        amount: Decimal,
        currency: str,
        reference: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChargeResult:
        """Start a one-off charge."""

    @abstractmethod
    async def refund(self, gateway_transaction_id: str, amount: Decimal, currency: str) -> RefundResult:
        """Refund (part of) a captured payment."""

    @abstractmethod
    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        """
        Verify the signature of an inbound webhook and normalize it.

        Raises:
            Unauthorized: If the signature does not match
            ValidationError: If the body is not a valid event
        """

    def __repr__(self) -> str:
        """String representation."""
        return f"<{type(self).__name__}(gateway={self.gateway.value})>"
