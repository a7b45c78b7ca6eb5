"""Pydantic schemas for tax breakdowns and invoices."""
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_serializer

from subscription_engine.models.invoice import InvoiceStatus


class TaxLine(BaseModel):
    """One tax component (e.g. CGST) of a breakdown."""

    name: str
    tax_type: str
    percentage: Decimal
    amount: Decimal


class TaxBreakdown(BaseModel):
    """Subtotal/tax/total split of a price."""

    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    currency: str
    tax_rate: Decimal
    tax_inclusive: bool
    lines: list[TaxLine] = []

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe frozen copy for invoice storage."""
        return self.model_dump(mode="json")


class Invoice(BaseModel):
    """Schema for returning an invoice."""

    id: UUID
    invoice_number: str
    user_id: int
    subscription_id: UUID
    transaction_id: UUID
    status: InvoiceStatus
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    currency: str
    billing_details: dict[str, Any]
    company_details: dict[str, Any]
    tax_details: dict[str, Any]
    items: list[dict[str, Any]]
    issued_at: datetime
    due_date: datetime
    paid_at: datetime | None

    model_config = ConfigDict(from_attributes=True)

    @field_serializer("subtotal", "tax_amount", "total")
    def _money(self, value: Decimal) -> str:
        return f"{value:.2f}"
