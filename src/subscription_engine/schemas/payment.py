"""Pydantic schemas for the payment ledger."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict

from subscription_engine.models.payment import DisputeStatus, PaymentGateway, PaymentStatus


class RefundCreate(BaseModel):
    """Schema for refunding a transaction."""

    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    reason: str = Field(..., min_length=1)


class Refund(BaseModel):
    """Schema for returning a refund."""

    id: UUID
    transaction_id: UUID
    amount: Decimal
    reason: str | None
    is_partial: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentTransaction(BaseModel):
    """Schema for returning a transaction."""

    id: UUID
    user_id: int
    subscription_id: UUID
    amount: Decimal
    currency: str
    gateway: PaymentGateway
    gateway_transaction_id: str | None
    status: PaymentStatus
    refunded_amount: Decimal
    refund_reason: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DisputeCreate(BaseModel):
    """Schema for opening a dispute."""

    reason: str = Field(..., min_length=1)


class DisputeUpdate(BaseModel):
    """Schema for moving a dispute along."""

    status: DisputeStatus
    resolution_notes: str | None = None


class Dispute(BaseModel):
    """Schema for returning a dispute."""

    id: UUID
    transaction_id: UUID
    user_id: int
    reason: str
    status: DisputeStatus
    resolution_notes: str | None
    resolved_at: datetime | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
