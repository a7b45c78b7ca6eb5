"""Invoice models with frozen billing snapshots."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Numeric, Enum as SQLEnum, ForeignKey, DateTime, Uuid, event, inspect
import enum

from subscription_engine.errors import InvariantViolation
from subscription_engine.models.base import Base, JSONType


class InvoiceStatus(enum.Enum):
    """Invoice lifecycle status."""

    ISSUED = "issued"
    PAID = "paid"


class Invoice(Base):
    """
    Invoice issued for a payment transaction.

    Amounts and the billing/company/tax snapshots are written once at
    issuance and never recomputed.
    """

    __tablename__ = "invoices"

    invoice_number = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    subscription_id = Column(Uuid, ForeignKey("user_subscriptions.id"), nullable=False, index=True)
    transaction_id = Column(Uuid, ForeignKey("payment_transactions.id"), nullable=False, unique=True)
    status = Column(SQLEnum(InvoiceStatus), nullable=False, default=InvoiceStatus.ISSUED, index=True)
    subtotal = Column(Numeric(10, 2), nullable=False)
    tax_amount = Column(Numeric(10, 2), nullable=False)
    total = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    billing_details = Column(JSONType, nullable=False, default=dict)
    company_details = Column(JSONType, nullable=False, default=dict)
    tax_details = Column(JSONType, nullable=False, default=dict)
    items = Column(JSONType, nullable=False, default=list)  # [{description, quantity, unit_price, amount}]
    issued_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    due_date = Column(DateTime, nullable=False)
    paid_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<Invoice(number={self.invoice_number}, total={self.total} {self.currency}, status={self.status.value})>"


FROZEN_INVOICE_FIELDS = (
    "subtotal",
    "tax_amount",
    "total",
    "currency",
    "billing_details",
    "company_details",
    "tax_details",
    "items",
)


@event.listens_for(Invoice, "before_update")
def _guard_frozen_invoice(mapper, connection, target: Invoice) -> None:
    state = inspect(target)
    changed = [name for name in FROZEN_INVOICE_FIELDS if state.attrs[name].history.has_changes()]
    if changed:
        raise InvariantViolation(
            f"Invoice {target.invoice_number} is immutable",
            invoice_id=str(target.id),
            fields=changed,
        )


class InvoiceSettings(Base):
    """Numbering and due-date defaults for issued invoices."""

    __tablename__ = "invoice_settings"

    invoice_prefix = Column(String, nullable=False, default="INV-")
    next_invoice_number = Column(Integer, nullable=False, default=1000)
    default_due_days = Column(Integer, nullable=False, default=15)

    def __repr__(self) -> str:
        """String representation."""
        return f"<InvoiceSettings(prefix={self.invoice_prefix}, next={self.next_invoice_number})>"
