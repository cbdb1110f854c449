"""
Late Fee Assessor

One fee per lease per billing period. A fee ends in at most one of two
terminal states, waived or paid; both moves are conditional UPDATEs on
``waived = false AND paid_date IS NULL`` so a waive racing a payment
attribution can never produce both.
"""
from __future__ import annotations

import logging
import uuid
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import (
    AlreadyPaid,
    AlreadyWaived,
    LateFeeAlreadyAssessed,
    LateFeeNotFound,
    LeaseNotActive,
    NoLateFeePolicyConfigured,
    ValidationFailed,
)
from app.db.base import utcnow
from app.models.lease import LateFeeType, Lease, LeaseStatus
from app.models.payment import LateFee, Payment, PaymentStatus
from app.services.lease_state_machine import effective_status
from app.services.notifications import DomainEvent, EventSink, get_event_sink

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def billing_period(day: date) -> date:
    return day.replace(day=1)


def policy_amount(lease: Lease) -> Optional[Decimal]:
    """Late fee the lease terms call for, or None when no policy is configured."""
    if lease.late_fee_amount is None:
        return None
    if lease.late_fee_type == LateFeeType.PERCENTAGE:
        if lease.monthly_rent is None:
            return None
        raw = Decimal(lease.monthly_rent) * Decimal(lease.late_fee_amount) / Decimal("100")
        return raw.quantize(CENT, rounding=ROUND_HALF_UP)
    return Decimal(lease.late_fee_amount).quantize(CENT, rounding=ROUND_HALF_UP)


def due_date(lease: Lease, period: date) -> date:
    """Rent due date for the period; a fee may be assessed after due + grace."""
    return billing_period(period).replace(day=lease.rent_due_day or 1)


def late_after(lease: Lease, period: date) -> date:
    return due_date(lease, period) + timedelta(days=lease.grace_period_days or 0)


class LateFeeAssessor:

    def __init__(self, db: Session, events: Optional[EventSink] = None):
        self.db = db
        self.events = events or get_event_sink()

    def get_late_fee(self, late_fee_id: uuid.UUID) -> LateFee:
        late_fee = self.db.get(LateFee, late_fee_id)
        if not late_fee:
            raise LateFeeNotFound()
        return late_fee

    def assess(
        self,
        lease: Lease,
        override_amount: Optional[Decimal] = None,
        period: Optional[date] = None,
    ) -> LateFee:
        today = utcnow().date()
        if effective_status(lease, today) != LeaseStatus.ACTIVE:
            raise LeaseNotActive("Late fees can only be assessed on an active lease")

        if override_amount is not None:
            amount = Decimal(override_amount).quantize(CENT, rounding=ROUND_HALF_UP)
            if amount <= 0:
                raise ValidationFailed("Late fee amount must be positive")
        else:
            amount = policy_amount(lease)
            if amount is None:
                raise NoLateFeePolicyConfigured()

        period = billing_period(period or today)
        exists = (
            self.db.query(LateFee.id)
            .filter(LateFee.lease_id == lease.id, LateFee.period == period)
            .first()
        )
        if exists:
            raise LateFeeAlreadyAssessed()

        late_fee = LateFee(
            lease_id=lease.id,
            amount=amount,
            assessed_date=today,
            period=period,
            waived=False,
        )
        self.db.add(late_fee)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise LateFeeAlreadyAssessed() from exc
        self.db.refresh(late_fee)

        logger.info(f"[LATE_FEE] Assessed {amount} on lease {lease.id} for {period:%Y-%m}")
        self.events.emit(DomainEvent("late_fee.assessed", {
            "late_fee_id": str(late_fee.id),
            "lease_id": str(lease.id),
            "amount": str(amount),
            "period": period.isoformat(),
        }))
        return late_fee

    def waive(self, late_fee: LateFee, waived_by: Optional[uuid.UUID] = None) -> LateFee:
        result = self.db.execute(
            update(LateFee)
            .where(
                LateFee.id == late_fee.id,
                LateFee.waived.is_(False),
                LateFee.paid_date.is_(None),
            )
            .values(waived=True, waived_at=utcnow(), waived_by=waived_by)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(late_fee)

        if result.rowcount != 1:
            if late_fee.paid_date is not None:
                raise AlreadyPaid()
            raise AlreadyWaived()

        logger.info(f"[LATE_FEE] Waived {late_fee.id} on lease {late_fee.lease_id}")
        self.events.emit(DomainEvent("late_fee.waived", {
            "late_fee_id": str(late_fee.id),
            "lease_id": str(late_fee.lease_id),
        }))
        return late_fee

    def record_payment(self, late_fee: LateFee, payment: Payment) -> LateFee:
        if payment.lease_id != late_fee.lease_id:
            raise ValidationFailed("Payment belongs to a different lease")
        if payment.status != PaymentStatus.COMPLETED:
            raise ValidationFailed("Only completed payments can settle a late fee")

        result = self.db.execute(
            update(LateFee)
            .where(
                LateFee.id == late_fee.id,
                LateFee.waived.is_(False),
                LateFee.paid_date.is_(None),
            )
            .values(paid_date=payment.paid_at or utcnow(), payment_id=payment.id)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(late_fee)

        if result.rowcount != 1:
            if late_fee.waived:
                raise AlreadyWaived("Cannot pay a late fee that has been waived")
            raise AlreadyPaid("This late fee has already been paid")

        logger.info(f"[LATE_FEE] {late_fee.id} paid by payment {payment.id}")
        self.events.emit(DomainEvent("late_fee.paid", {
            "late_fee_id": str(late_fee.id),
            "lease_id": str(late_fee.lease_id),
            "payment_id": str(payment.id),
        }))
        return late_fee

    def due_date(self, lease: Lease, period: date) -> date:
        return due_date(lease, period)
