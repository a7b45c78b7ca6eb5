"""Typed gateway configuration and adapter result schemas.

Stored gateway configs are a tagged union keyed by ``gateway``; each
variant carries only the credentials that gateway understands.
"""
from decimal import Decimal
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, SecretStr, TypeAdapter, field_validator

from subscription_engine.models.payment import PaymentGateway


class RazorpayGatewayConfig(BaseModel):
    """Razorpay credentials."""

    gateway: Literal["razorpay"] = "razorpay"
    key_id: str = Field(..., description="Public key id, starts with rzp_")
    key_secret: SecretStr
    webhook_secret: SecretStr
    base_url: str = "https://api.razorpay.com/v1"

    @field_validator("key_id")
    @classmethod
    def validate_key_id(cls, v: str) -> str:
        if not v.startswith("rzp_"):
            raise ValueError("Razorpay key id must start with 'rzp_'")
        return v


class StripeGatewayConfig(BaseModel):
    """Stripe credentials."""

    gateway: Literal["stripe"] = "stripe"
    secret_key: SecretStr
    webhook_secret: SecretStr


GatewayConfig = Annotated[
    Union[RazorpayGatewayConfig, StripeGatewayConfig],
    Field(discriminator="gateway"),
]

gateway_config_adapter: TypeAdapter[GatewayConfig] = TypeAdapter(GatewayConfig)


def parse_gateway_config(raw: dict[str, Any]) -> RazorpayGatewayConfig | StripeGatewayConfig:
    """Validate a stored config blob into its typed variant."""
    return gateway_config_adapter.validate_python(raw)


def dump_gateway_config(config: RazorpayGatewayConfig | StripeGatewayConfig) -> dict[str, Any]:
    """Serialize a typed config for storage, revealing secrets."""
    data = config.model_dump()
    for key, value in data.items():
        if isinstance(value, SecretStr):
            data[key] = value.get_secret_value()
    return data


class VerificationResult(BaseModel):
    """Outcome of a credential check."""

    valid: bool
    error: str | None = None


class ChargeResult(BaseModel):
    """Outcome of a one-off charge."""

    gateway_transaction_id: str
    status: Literal["pending", "completed", "failed"]
    amount: Decimal
    currency: str
    raw: dict[str, Any] = {}


class RefundResult(BaseModel):
    """Outcome of a gateway refund."""

    gateway_refund_id: str
    amount: Decimal
    status: str


class GatewayEvent(BaseModel):
    """
    A verified, normalized inbound webhook.

    ``payload`` carries canonical keys (``subscription_id``,
    ``payment_reference``, ``transaction_id``, ``amount``, ``currency``,
    ``refund_id``, ``dispute_id``, ``reason``) next to the untouched
    ``raw`` body.
    """

    gateway: PaymentGateway
    external_event_id: str
    event_type: str
    payload: dict[str, Any]


class GatewayPlanCreate(BaseModel):
    """Admin request to create (or look up) a gateway plan."""

    plan_id: UUID
    currency: str = Field(..., min_length=3, max_length=3)


class GatewayPlanMapping(BaseModel):
    """Schema for returning a stored plan mapping."""

    gateway: PaymentGateway
    plan_id: UUID
    currency: str
    external_plan_id: str

    model_config = ConfigDict(from_attributes=True)


class CredentialCheck(BaseModel):
    """Admin request to verify a credential before saving it."""

    key: str | None = Field(default=None, description="Gateway-specific key string; configured key when omitted")
