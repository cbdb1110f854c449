"""
Payment Ledger Routes

  POST   /api/payments/                       – create payment (ACH / CARD / MANUAL)
  GET    /api/payments/                       – list payments
  POST   /api/payments/methods                – save gateway payment method
  GET    /api/payments/methods                – list a tenant's payment methods
  POST   /api/payments/late-fees              – assess late fee
  GET    /api/payments/late-fees              – list late fees
  POST   /api/payments/late-fees/{id}/waive   – waive (never after payment)
  POST   /api/payments/late-fees/{id}/pay     – attribute a completed payment
  GET    /api/payments/{id}                   – payment detail
  POST   /api/payments/{id}/refund            – refund completed payment
  POST   /api/payments/{id}/sync              – poll gateway for status
"""
import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.routes.leases import get_lease_or_404
from app.core.deps import get_late_fee_assessor, get_payment_ledger
from app.core.security import StaffContext, get_current_staff
from app.database import get_db
from app.models.payment import LateFee, Payment, PaymentMethodRecord, PaymentStatus
from app.schemas.payment import (
    AssessLateFeeRequest,
    CreatePaymentRequest,
    PayLateFeeRequest,
    SavePaymentMethodRequest,
)
from app.services.late_fees import LateFeeAssessor, late_after
from app.services.payment_ledger import PaymentLedger

router = APIRouter(prefix="/payments", tags=["Payments"])
logger = logging.getLogger(__name__)


# ═══════════════════════ HELPERS ═══════════════════════

def _fmt(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _money(value) -> Optional[str]:
    return None if value is None else str(value)


def payment_to_out(payment: Payment) -> dict:
    return {
        "id": str(payment.id),
        "lease_id": str(payment.lease_id),
        "tenant_id": str(payment.tenant_id),
        "amount": _money(payment.amount),
        "method": payment.method.value,
        "status": payment.status.value,
        "payment_method_id": str(payment.payment_method_id) if payment.payment_method_id else None,
        "gateway_charge_ref": payment.gateway_charge_ref,
        "gateway_fee": _money(payment.gateway_fee),
        "net_amount": _money(payment.net_amount),
        "fee_settled": payment.fee_settled,
        "paid_at": _fmt(payment.paid_at),
        "refunded_at": _fmt(payment.refunded_at),
        "failure_reason": payment.failure_reason,
        "description": payment.description,
        "created_at": _fmt(payment.created_at),
    }


def method_to_out(record: PaymentMethodRecord) -> dict:
    return {
        "id": str(record.id),
        "tenant_id": str(record.tenant_id),
        "type": record.type.value,
        "last4": record.last4,
        "bank_name": record.bank_name,
        "is_default": record.is_default,
        "autopay_enabled": record.autopay_enabled,
        "created_at": _fmt(record.created_at),
    }


def late_fee_to_out(late_fee: LateFee) -> dict:
    return {
        "id": str(late_fee.id),
        "lease_id": str(late_fee.lease_id),
        "amount": _money(late_fee.amount),
        "period": _fmt(late_fee.period),
        "assessed_date": _fmt(late_fee.assessed_date),
        "late_after": _fmt(late_after(late_fee.lease, late_fee.period)),
        "waived": late_fee.waived,
        "waived_at": _fmt(late_fee.waived_at),
        "paid_date": _fmt(late_fee.paid_date),
        "payment_id": str(late_fee.payment_id) if late_fee.payment_id else None,
    }


# ═══════════════════════ PAYMENTS ═══════════════════════

@router.post("/", response_model=dict, status_code=status.HTTP_201_CREATED)
def create_payment(
    payload: CreatePaymentRequest,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    lease = get_lease_or_404(payload.lease_id, db)
    payment = ledger.create_payment(
        lease,
        tenant_id=payload.tenant_id,
        amount=payload.amount,
        method=payload.method,
        payment_method_ref=payload.payment_method_id,
        paid_at=payload.paid_at,
        description=payload.description,
    )
    return payment_to_out(payment)


@router.get("/", response_model=List[dict])
def list_payments(
    lease_id: Optional[UUID] = Query(None),
    tenant_id: Optional[UUID] = Query(None),
    status_filter: Optional[PaymentStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
):
    query = db.query(Payment)
    if lease_id:
        query = query.filter(Payment.lease_id == lease_id)
    if tenant_id:
        query = query.filter(Payment.tenant_id == tenant_id)
    if status_filter:
        query = query.filter(Payment.status == status_filter)
    payments = query.order_by(Payment.created_at.desc()).offset(skip).limit(limit).all()
    return [payment_to_out(p) for p in payments]


# ═══════════════════════ PAYMENT METHODS ═══════════════════════

@router.post("/methods", response_model=dict, status_code=status.HTTP_201_CREATED)
def save_payment_method(
    payload: SavePaymentMethodRequest,
    staff: StaffContext = Depends(get_current_staff),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    record = ledger.save_payment_method(**payload.model_dump())
    return method_to_out(record)


@router.get("/methods", response_model=List[dict])
def list_payment_methods(
    tenant_id: UUID = Query(...),
    staff: StaffContext = Depends(get_current_staff),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    return [method_to_out(r) for r in ledger.list_payment_methods(tenant_id)]


# ═══════════════════════ LATE FEES ═══════════════════════

@router.post("/late-fees", response_model=dict, status_code=status.HTTP_201_CREATED)
def assess_late_fee(
    payload: AssessLateFeeRequest,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    assessor: LateFeeAssessor = Depends(get_late_fee_assessor),
):
    lease = get_lease_or_404(payload.lease_id, db)
    late_fee = assessor.assess(lease, override_amount=payload.amount, period=payload.period)
    return late_fee_to_out(late_fee)


@router.get("/late-fees", response_model=List[dict])
def list_late_fees(
    lease_id: Optional[UUID] = Query(None),
    outstanding: bool = Query(False, description="Only fees neither waived nor paid"),
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
):
    query = db.query(LateFee)
    if lease_id:
        query = query.filter(LateFee.lease_id == lease_id)
    if outstanding:
        query = query.filter(LateFee.waived.is_(False), LateFee.paid_date.is_(None))
    return [late_fee_to_out(f) for f in query.order_by(LateFee.period.desc()).all()]


@router.post("/late-fees/{late_fee_id}/waive", response_model=dict)
def waive_late_fee(
    late_fee_id: UUID,
    staff: StaffContext = Depends(get_current_staff),
    assessor: LateFeeAssessor = Depends(get_late_fee_assessor),
):
    late_fee = assessor.waive(assessor.get_late_fee(late_fee_id), waived_by=staff.user_id)
    return late_fee_to_out(late_fee)


@router.post("/late-fees/{late_fee_id}/pay", response_model=dict)
def pay_late_fee(
    late_fee_id: UUID,
    payload: PayLateFeeRequest,
    staff: StaffContext = Depends(get_current_staff),
    assessor: LateFeeAssessor = Depends(get_late_fee_assessor),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    late_fee = assessor.get_late_fee(late_fee_id)
    payment = ledger.get_payment(payload.payment_id)
    return late_fee_to_out(assessor.record_payment(late_fee, payment))


# ═══════════════════════ SINGLE PAYMENT ═══════════════════════

@router.get("/{payment_id}", response_model=dict)
def get_payment(
    payment_id: UUID,
    staff: StaffContext = Depends(get_current_staff),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    return payment_to_out(ledger.get_payment(payment_id))


@router.post("/{payment_id}/refund", response_model=dict)
def refund_payment(
    payment_id: UUID,
    staff: StaffContext = Depends(get_current_staff),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    payment = ledger.refund(ledger.get_payment(payment_id))
    logger.info(f"[PAYMENT] {payment.id} refund requested by {staff.user_id}")
    return payment_to_out(payment)


@router.post("/{payment_id}/sync", response_model=dict)
def sync_payment(
    payment_id: UUID,
    staff: StaffContext = Depends(get_current_staff),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    return payment_to_out(ledger.sync_with_gateway(ledger.get_payment(payment_id)))
