"""Payment ledger API endpoints (admin)."""
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.api.deps import ensure_user_access, get_current_user, get_db
from subscription_engine.auth.rbac import require_admin
from subscription_engine.schemas.invoice import Invoice
from subscription_engine.schemas.payment import (
    Dispute,
    DisputeCreate,
    DisputeUpdate,
    PaymentTransaction,
    Refund,
    RefundCreate,
)
from subscription_engine.services.invoice_service import InvoiceService
from subscription_engine.services.payment_ledger import PaymentLedger

router = APIRouter(tags=["Payments"])


@router.get("/users/{user_id}/transactions", response_model=list[PaymentTransaction])
async def list_transactions(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(get_current_user),
) -> list[PaymentTransaction]:
    """List a user's payment transactions, newest first."""
    ensure_user_access(current_user, user_id)
    ledger = PaymentLedger(db)
    return await ledger.list_transactions(user_id)


@router.get("/users/{user_id}/invoices", response_model=list[Invoice])
async def list_invoices(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(get_current_user),
) -> list[Invoice]:
    """List a user's invoices, newest first."""
    ensure_user_access(current_user, user_id)
    service = InvoiceService(db)
    return await service.list_invoices(user_id)


@router.post("/payments/{transaction_id}/refund", response_model=Refund, status_code=status.HTTP_201_CREATED)
async def refund_transaction(
    transaction_id: UUID,
    refund_data: RefundCreate,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_admin),
) -> Refund:
    """
    Refund part or all of a completed transaction.

    Returns 422 when cumulative refunds would exceed the original amount.
    """
    ledger = PaymentLedger(db)
    refund = await ledger.refund(transaction_id, refund_data.amount, refund_data.reason)
    await db.commit()
    return refund


@router.post("/payments/{transaction_id}/invoice", response_model=Invoice)
async def issue_invoice(
    transaction_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_admin),
) -> Invoice:
    """Issue (or return the already issued) invoice for a transaction."""
    service = InvoiceService(db)
    invoice = await service.issue_for_transaction(transaction_id)
    await db.commit()
    return invoice


@router.post("/payments/{transaction_id}/disputes", response_model=Dispute, status_code=status.HTTP_201_CREATED)
async def open_dispute(
    transaction_id: UUID,
    dispute_data: DisputeCreate,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_admin),
) -> Dispute:
    """Open a dispute on a transaction."""
    ledger = PaymentLedger(db)
    dispute = await ledger.open_dispute(transaction_id, dispute_data.reason)
    await db.commit()
    return dispute


@router.patch("/disputes/{dispute_id}", response_model=Dispute)
async def update_dispute(
    dispute_id: UUID,
    dispute_data: DisputeUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_admin),
) -> Dispute:
    """Move a dispute to under_review, resolved or rejected."""
    ledger = PaymentLedger(db)
    dispute = await ledger.update_dispute(dispute_id, dispute_data.status, dispute_data.resolution_notes)
    await db.commit()
    return dispute
