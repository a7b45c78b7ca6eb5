"""Payment ledger models: transactions, refunds and disputes."""
from decimal import Decimal

from sqlalchemy import CheckConstraint, Column, Integer, String, Boolean, Numeric, DateTime, Enum as SQLEnum, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
import enum

from subscription_engine.models.base import Base, JSONType


class PaymentGateway(enum.Enum):
    """External payment processors."""

    RAZORPAY = "razorpay"
    STRIPE = "stripe"
    NONE = "none"  # Freemium and admin-assigned plans


class PaymentStatus(enum.Enum):
    """Payment transaction status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class DisputeStatus(enum.Enum):
    """Dispute resolution status."""

    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class PaymentTransaction(Base):
    """
    A charge against exactly one subscription.

    Append-mostly: after COMPLETED only the refund fields and the status
    (to REFUNDED) may change.
    """

    __tablename__ = "payment_transactions"
    __table_args__ = (
        UniqueConstraint("gateway", "gateway_transaction_id", name="uq_payment_transactions_gateway_txn"),
        CheckConstraint(
            "refunded_amount >= 0 AND refunded_amount <= amount", name="ck_payment_transactions_refund_bound"
        ),
    )

    user_id = Column(Integer, nullable=False, index=True)
    subscription_id = Column(Uuid, ForeignKey("user_subscriptions.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    gateway = Column(SQLEnum(PaymentGateway), nullable=False)
    gateway_transaction_id = Column(String, nullable=True)
    status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    refunded_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    refund_reason = Column(Text, nullable=True)
    extra_metadata = Column(JSONType, nullable=False, default=dict)

    # Relationships
    refunds = relationship("Refund", back_populates="transaction", order_by="Refund.created_at")
    disputes = relationship("Dispute", back_populates="transaction")

    def __repr__(self) -> str:
        """String representation."""
        return f"<PaymentTransaction(id={self.id}, status={self.status.value}, amount={self.amount} {self.currency})>"


class Refund(Base):
    """A single refund applied to a transaction."""

    __tablename__ = "payment_refunds"
    __table_args__ = (
        UniqueConstraint("gateway", "gateway_refund_id", name="uq_payment_refunds_gateway_refund"),
    )

    transaction_id = Column(Uuid, ForeignKey("payment_transactions.id", ondelete="CASCADE"), nullable=False, index=True)
    gateway = Column(SQLEnum(PaymentGateway), nullable=False)
    gateway_refund_id = Column(String, nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    reason = Column(Text, nullable=True)
    is_partial = Column(Boolean, nullable=False)

    transaction = relationship("PaymentTransaction", back_populates="refunds")

    def __repr__(self) -> str:
        """String representation."""
        kind = "partial" if self.is_partial else "full"
        return f"<Refund(transaction_id={self.transaction_id}, amount={self.amount}, {kind})>"


class Dispute(Base):
    """Chargeback or customer dispute raised against a transaction."""

    __tablename__ = "disputes"
    __table_args__ = (
        UniqueConstraint("transaction_id", "gateway_dispute_id", name="uq_disputes_transaction_gateway_dispute"),
    )

    transaction_id = Column(Uuid, ForeignKey("payment_transactions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    gateway_dispute_id = Column(String, nullable=True)
    reason = Column(Text, nullable=False)
    status = Column(SQLEnum(DisputeStatus), nullable=False, default=DisputeStatus.OPEN, index=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    transaction = relationship("PaymentTransaction", back_populates="disputes")

    def __repr__(self) -> str:
        """String representation."""
        return f"<Dispute(id={self.id}, transaction_id={self.transaction_id}, status={self.status.value})>"
