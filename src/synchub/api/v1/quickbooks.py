"""Outbound QuickBooks push endpoints (Bearer CRON_SECRET).

Provides:
- POST /quickbooks/push/invoices: invoice every closed transaction (batch)
- POST /quickbooks/push/invoices/{transaction_id}: invoice one transaction
- POST /quickbooks/push/bills: bill every pending commission payment (batch)
- POST /quickbooks/push/bills/{payment_id}: bill one commission payment
- POST /quickbooks/bills/{payment_id}/void: zero a payment's bill balance

Per-record failures are reported in the body; an authentication failure
against QuickBooks is a 502.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from src.synchub.api.deps import verify_cron_secret
from src.synchub.core.errors import AuthError
from src.synchub.sync.quickbooks_push import QB_PUSH_LIMIT
from src.synchub.sync.schemas import BatchResult, PaymentStatus, RecordOutcome, TransactionStage

router = APIRouter(
    prefix="/quickbooks",
    tags=["quickbooks"],
    dependencies=[Depends(verify_cron_secret)],
)


def _get_publisher(request: Request) -> Any:
    """Retrieve QuickBooksPublisher from app.state, 503 if not configured."""
    publisher = getattr(request.app.state, "quickbooks_publisher", None)
    if publisher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="QuickBooks not configured",
        )
    return publisher


def _auth_failed(exc: AuthError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Authentication with quickbooks failed: {exc}",
    )


# ── Invoices ─────────────────────────────────────────────────────────────────


@router.post("/push/invoices", response_model=BatchResult)
async def push_invoices(
    request: Request,
    stage: TransactionStage = TransactionStage.CLOSED,
    limit: int = Query(default=QB_PUSH_LIMIT, ge=1, le=1000),
) -> BatchResult:
    """Create or update invoices for transactions in ``stage``."""
    publisher = _get_publisher(request)
    try:
        return await publisher.push_transactions(stage=stage, limit=limit)
    except AuthError as exc:
        raise _auth_failed(exc) from exc


@router.post("/push/invoices/{transaction_id}", response_model=RecordOutcome)
async def push_invoice(transaction_id: str, request: Request) -> RecordOutcome:
    publisher = _get_publisher(request)
    try:
        return await publisher.push_transaction(transaction_id)
    except AuthError as exc:
        raise _auth_failed(exc) from exc


# ── Bills ────────────────────────────────────────────────────────────────────


@router.post("/push/bills", response_model=BatchResult)
async def push_bills(
    request: Request,
    payment_status: PaymentStatus = Query(default=PaymentStatus.PENDING, alias="status"),
    limit: int = Query(default=QB_PUSH_LIMIT, ge=1, le=1000),
) -> BatchResult:
    """Create or update bills for commission payments in ``status``."""
    publisher = _get_publisher(request)
    try:
        return await publisher.push_commission_payments(status=payment_status, limit=limit)
    except AuthError as exc:
        raise _auth_failed(exc) from exc


@router.post("/push/bills/{payment_id}", response_model=RecordOutcome)
async def push_bill(payment_id: str, request: Request) -> RecordOutcome:
    publisher = _get_publisher(request)
    try:
        return await publisher.push_commission_payment(payment_id)
    except AuthError as exc:
        raise _auth_failed(exc) from exc


@router.post("/bills/{payment_id}/void", response_model=RecordOutcome)
async def void_bill(payment_id: str, request: Request) -> RecordOutcome:
    """Zero the balance of the payment's QuickBooks bill."""
    publisher = _get_publisher(request)
    try:
        return await publisher.void_bill(payment_id)
    except AuthError as exc:
        raise _auth_failed(exc) from exc
