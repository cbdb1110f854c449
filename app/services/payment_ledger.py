"""
Payment Ledger

Owns every payment status change. Status only moves along

    PENDING ──→ PROCESSING ──→ COMPLETED ──→ REFUNDED
       │            │
       └────────────┴───────→ FAILED

and each move is one conditional UPDATE on the allowed source statuses, so
the synchronous API path, explicit gateway polls and webhook deliveries can
interleave in any order without walking a payment backwards. A refund reported
by the gateway may also take PENDING/PROCESSING straight to REFUNDED
(mark_refunded).
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.core.exceptions import (
    GatewayError,
    GatewayTimeout,
    LeaseNotActive,
    MissingPaymentMethod,
    PaymentMethodNotFound,
    PaymentNotFound,
    PaymentNotRefundable,
    TenantNotOnLease,
    ValidationFailed,
)
from app.db.base import utcnow
from app.models.lease import Lease, LeaseStatus
from app.models.payment import (
    Payment,
    PaymentMethod,
    PaymentMethodRecord,
    PaymentMethodType,
    PaymentStatus,
)
from app.models.tenant import Tenant
from app.services.lease_state_machine import effective_status
from app.services.notifications import DomainEvent, EventSink, get_event_sink
from app.services.payment_gateways import ChargeResult, ChargeStatus, StripeGateway

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

# target status → statuses it may be entered from
ALLOWED_SOURCES = {
    PaymentStatus.PROCESSING: (PaymentStatus.PENDING,),
    PaymentStatus.COMPLETED: (PaymentStatus.PENDING, PaymentStatus.PROCESSING),
    PaymentStatus.FAILED: (PaymentStatus.PENDING, PaymentStatus.PROCESSING),
    PaymentStatus.REFUNDED: (PaymentStatus.COMPLETED,),
}

# Refund notifications from the gateway may overtake the success notification
GATEWAY_REFUND_SOURCES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.COMPLETED)

METHOD_TYPES = {
    PaymentMethod.ACH: PaymentMethodType.BANK_ACCOUNT,
    PaymentMethod.CARD: PaymentMethodType.CARD,
}


# ── Monotonic transitions (shared with the webhook reconciler) ────────────────

def transition(db: Session, criterion, target: PaymentStatus, **values) -> bool:
    result = db.execute(
        update(Payment)
        .where(criterion, Payment.status.in_(ALLOWED_SOURCES[target]))
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


def mark_completed(db: Session, criterion, paid_at: datetime, fee: Optional[Decimal]) -> bool:
    """fee=None records provisional settlement numbers (fee 0, net = amount)."""
    settled = fee is not None
    fee = fee if settled else ZERO
    return transition(
        db, criterion, PaymentStatus.COMPLETED,
        paid_at=paid_at,
        gateway_fee=fee,
        net_amount=Payment.amount - fee,
        fee_settled=settled,
        failure_reason=None,
    )


def refine_settlement(db: Session, criterion, fee: Decimal) -> bool:
    """Replace provisional fee/net on a COMPLETED payment. Status is untouched."""
    result = db.execute(
        update(Payment)
        .where(
            criterion,
            Payment.status == PaymentStatus.COMPLETED,
            Payment.fee_settled.is_(False),
        )
        .values(gateway_fee=fee, net_amount=Payment.amount - fee, fee_settled=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


def mark_refunded(db: Session, criterion, refunded_at: datetime) -> bool:
    """Gateway-reported refund. Also closes payments still awaiting their success notification."""
    result = db.execute(
        update(Payment)
        .where(criterion, Payment.status.in_(GATEWAY_REFUND_SOURCES))
        .values(
            status=PaymentStatus.REFUNDED,
            refunded_at=refunded_at,
            paid_at=func.coalesce(Payment.paid_at, refunded_at),
            failure_reason=None,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


def status_event(payment: Payment) -> DomainEvent:
    return DomainEvent(f"payment.{payment.status.value.lower()}", {
        "payment_id": str(payment.id),
        "lease_id": str(payment.lease_id),
        "tenant_id": str(payment.tenant_id),
        "amount": str(payment.amount),
        "status": payment.status.value,
    })


class PaymentLedger:

    def __init__(self, db: Session, gateway: StripeGateway, events: Optional[EventSink] = None):
        self.db = db
        self.gateway = gateway
        self.events = events or get_event_sink()

    # ═══════════════════════════════════════════════════════════════
    # PAYMENTS
    # ═══════════════════════════════════════════════════════════════

    def get_payment(self, payment_id: uuid.UUID) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if not payment:
            raise PaymentNotFound()
        return payment

    def create_payment(
        self,
        lease: Lease,
        tenant_id: uuid.UUID,
        amount: Decimal,
        method: PaymentMethod,
        payment_method_ref: Optional[uuid.UUID] = None,
        paid_at: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> Payment:
        amount = Decimal(amount).quantize(Decimal("0.01"))
        if amount <= 0:
            raise ValidationFailed("Payment amount must be positive")
        if effective_status(lease) != LeaseStatus.ACTIVE:
            raise LeaseNotActive("Payments can only be recorded against an active lease")
        if tenant_id not in lease.tenant_ids:
            raise TenantNotOnLease()

        if method == PaymentMethod.MANUAL:
            return self._record_manual(lease, tenant_id, amount, paid_at, description)

        if payment_method_ref is None:
            raise MissingPaymentMethod()
        stored = self._stored_method(tenant_id, payment_method_ref)
        if stored.type != METHOD_TYPES[method]:
            raise ValidationFailed(f"{method.value} payments need a {METHOD_TYPES[method].value} payment method")

        payment = Payment(
            organization_id=lease.organization_id,
            lease_id=lease.id,
            tenant_id=tenant_id,
            amount=amount,
            method=method,
            payment_method_id=stored.id,
            status=PaymentStatus.PENDING,
            description=description,
        )
        self.db.add(payment)
        self.db.commit()
        self.db.refresh(payment)
        logger.info(f"[PAYMENT] {payment.id} created PENDING {method.value} {amount}")

        try:
            result = self.gateway.create_charge(
                amount=amount,
                payment_method_ref=stored.gateway_payment_method_id,
                metadata={
                    "payment_id": str(payment.id),
                    "lease_id": str(lease.id),
                    "tenant_id": str(tenant_id),
                },
                idempotency_key=str(payment.id),
                method=method.value.lower(),
            )
        except GatewayTimeout:
            # Outcome unknown: the charge may exist. Poll or webhook settles it.
            transition(self.db, Payment.id == payment.id, PaymentStatus.PROCESSING)
            self.db.commit()
            logger.warning(f"[PAYMENT] {payment.id} gateway timeout; left PROCESSING")
            raise
        except GatewayError:
            logger.error(f"[PAYMENT] {payment.id} gateway error; left PENDING")
            raise

        self._apply_charge_result(payment, result)
        return payment

    def refund(self, payment: Payment) -> Payment:
        if payment.status != PaymentStatus.COMPLETED:
            raise PaymentNotRefundable()

        if payment.gateway_charge_ref:
            self.gateway.refund(payment.gateway_charge_ref)

        moved = transition(
            self.db, Payment.id == payment.id, PaymentStatus.REFUNDED, refunded_at=utcnow()
        )
        self.db.commit()
        self.db.refresh(payment)

        if not moved and payment.status != PaymentStatus.REFUNDED:
            raise PaymentNotRefundable()
        if moved:
            logger.info(f"[PAYMENT] {payment.id} refunded")
            self.events.emit(status_event(payment))
        return payment

    def sync_with_gateway(self, payment: Payment) -> Payment:
        """Poll the gateway and apply its answer through the monotonic transitions."""
        if payment.method == PaymentMethod.MANUAL:
            return payment

        if payment.gateway_charge_ref:
            result = self.gateway.retrieve_charge(payment.gateway_charge_ref)
        else:
            stored = self.db.get(PaymentMethodRecord, payment.payment_method_id) if payment.payment_method_id else None
            if stored is None or not stored.gateway_payment_method_id:
                logger.warning(f"[PAYMENT] {payment.id} has no charge or stored method to sync")
                return payment
            # Same idempotency key returns the original intent if one exists
            result = self.gateway.create_charge(
                amount=payment.amount,
                payment_method_ref=stored.gateway_payment_method_id,
                metadata={"payment_id": str(payment.id), "lease_id": str(payment.lease_id)},
                idempotency_key=str(payment.id),
                method=payment.method.value.lower(),
            )

        self._apply_charge_result(payment, result)
        return payment

    # ═══════════════════════════════════════════════════════════════
    # PAYMENT METHODS
    # ═══════════════════════════════════════════════════════════════

    def save_payment_method(
        self,
        tenant_id: uuid.UUID,
        type: PaymentMethodType,
        gateway_payment_method_id: str,
        last4: Optional[str] = None,
        bank_name: Optional[str] = None,
        is_default: bool = False,
        autopay_enabled: bool = False,
    ) -> PaymentMethodRecord:
        if not self.db.get(Tenant, tenant_id):
            raise ValidationFailed("Tenant not found")
        if not gateway_payment_method_id:
            raise ValidationFailed("gateway_payment_method_id is required")

        has_methods = (
            self.db.query(PaymentMethodRecord.id)
            .filter(PaymentMethodRecord.tenant_id == tenant_id)
            .first()
            is not None
        )
        is_default = is_default or not has_methods
        if is_default:
            self.db.execute(
                update(PaymentMethodRecord)
                .where(PaymentMethodRecord.tenant_id == tenant_id)
                .values(is_default=False)
                .execution_options(synchronize_session=False)
            )

        record = PaymentMethodRecord(
            tenant_id=tenant_id,
            type=type,
            gateway_payment_method_id=gateway_payment_method_id,
            last4=last4,
            bank_name=bank_name,
            is_default=is_default,
            autopay_enabled=autopay_enabled,
        )
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        logger.info(f"[PAYMENT] Saved {type.value} method {record.id} for tenant {tenant_id}")
        return record

    def list_payment_methods(self, tenant_id: uuid.UUID) -> List[PaymentMethodRecord]:
        return (
            self.db.query(PaymentMethodRecord)
            .filter(PaymentMethodRecord.tenant_id == tenant_id)
            .order_by(PaymentMethodRecord.is_default.desc(), PaymentMethodRecord.created_at.desc())
            .all()
        )

    # ═══════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════

    def _record_manual(self, lease, tenant_id, amount, paid_at, description) -> Payment:
        payment = Payment(
            organization_id=lease.organization_id,
            lease_id=lease.id,
            tenant_id=tenant_id,
            amount=amount,
            method=PaymentMethod.MANUAL,
            status=PaymentStatus.COMPLETED,
            gateway_fee=ZERO,
            net_amount=amount,
            fee_settled=True,
            paid_at=paid_at or utcnow(),
            description=description,
        )
        self.db.add(payment)
        self.db.commit()
        self.db.refresh(payment)
        logger.info(f"[PAYMENT] Manual payment {payment.id} recorded: {amount}")
        self.events.emit(status_event(payment))
        return payment

    def _stored_method(self, tenant_id, payment_method_ref) -> PaymentMethodRecord:
        stored = (
            self.db.query(PaymentMethodRecord)
            .filter(
                PaymentMethodRecord.id == payment_method_ref,
                PaymentMethodRecord.tenant_id == tenant_id,
            )
            .first()
        )
        if not stored or not stored.gateway_payment_method_id:
            raise PaymentMethodNotFound()
        return stored

    def _apply_charge_result(self, payment: Payment, result: ChargeResult) -> None:
        before = payment.status
        by_id = Payment.id == payment.id

        self.db.execute(
            update(Payment)
            .where(by_id, Payment.gateway_charge_ref.is_(None))
            .values(gateway_charge_ref=result.charge_ref)
            .execution_options(synchronize_session=False)
        )

        if result.status == ChargeStatus.SUCCEEDED:
            if not mark_completed(self.db, by_id, utcnow(), result.fee) and result.fee is not None:
                refine_settlement(self.db, by_id, result.fee)
        elif result.status == ChargeStatus.PROCESSING:
            transition(self.db, by_id, PaymentStatus.PROCESSING)
        elif result.status == ChargeStatus.FAILED:
            transition(
                self.db, by_id, PaymentStatus.FAILED,
                failure_reason=result.failure_reason or "Declined by payment gateway",
            )
        elif result.status == ChargeStatus.REFUNDED:
            mark_refunded(self.db, by_id, utcnow())

        self.db.commit()
        self.db.refresh(payment)

        logger.info(
            f"[PAYMENT] {payment.id} charge {result.charge_ref}: "
            f"gateway={result.status.value} ledger {before.value} → {payment.status.value}"
        )
        if payment.status != before:
            self.events.emit(status_event(payment))
