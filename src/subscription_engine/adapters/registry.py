"""Lookup of gateway adapters by gateway and by region/currency."""
from collections.abc import Iterable, Iterator

import httpx

from subscription_engine.adapters.base import PaymentGatewayAdapter
from subscription_engine.adapters.razorpay_adapter import RazorpayAdapter
from subscription_engine.adapters.stripe_adapter import StripeAdapter
from subscription_engine.config import Settings
from subscription_engine.errors import NotFound, ValidationError
from subscription_engine.models.payment import PaymentGateway
from subscription_engine.models.plan import Region
from subscription_engine.schemas.gateway import RazorpayGatewayConfig, StripeGatewayConfig


def build_adapter(
    config: RazorpayGatewayConfig | StripeGatewayConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PaymentGatewayAdapter:
    """Build the adapter matching a typed gateway config."""
    if isinstance(config, RazorpayGatewayConfig):
        return RazorpayAdapter(config, transport=transport)
    return StripeAdapter(config)


class GatewayRegistry:
    """Holds one adapter per gateway."""

    def __init__(self, adapters: Iterable[PaymentGatewayAdapter]):
        self._adapters = {adapter.gateway: adapter for adapter in adapters}

    @classmethod
    def from_configs(
        cls,
        configs: Iterable[RazorpayGatewayConfig | StripeGatewayConfig],
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "GatewayRegistry":
        return cls(build_adapter(config, transport) for config in configs)

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayRegistry":
        """Build a registry from environment credentials."""
        return cls.from_configs(
            [
                RazorpayGatewayConfig(
                    key_id=settings.razorpay_key_id,
                    key_secret=settings.razorpay_key_secret,
                    webhook_secret=settings.razorpay_webhook_secret,
                    base_url=settings.razorpay_base_url,
                ),
                StripeGatewayConfig(
                    secret_key=settings.stripe_secret_key,
                    webhook_secret=settings.stripe_webhook_secret,
                ),
            ]
        )

    def get(self, gateway: PaymentGateway) -> PaymentGatewayAdapter:
        """
        Get the adapter for a gateway.

        Raises:
            NotFound: If the gateway is not configured
        """
        adapter = self._adapters.get(gateway)
        if adapter is None:
            raise NotFound(f"Gateway {gateway.value} is not configured", gateway=gateway.value)
        return adapter

    def for_region(self, region: Region, currency: str) -> PaymentGatewayAdapter:
        """
        Pick the adapter serving a region/currency pair.

        Raises:
            ValidationError: If no configured gateway supports the pair
        """
        for adapter in self._adapters.values():
            if adapter.supports(region, currency):
                return adapter
        raise ValidationError(
            f"No payment gateway supports {region.value}/{currency}",
            region=region.value,
            currency=currency,
        )

    def __iter__(self) -> Iterator[PaymentGatewayAdapter]:
        return iter(self._adapters.values())

    def __contains__(self, gateway: PaymentGateway) -> bool:
        return gateway in self._adapters
