from datetime import date
from decimal import Decimal

import pytest

from app.core.exceptions import (
    AlreadyPaid,
    AlreadyWaived,
    LateFeeAlreadyAssessed,
    LeaseNotActive,
    NoLateFeePolicyConfigured,
    ValidationFailed,
)
from app.models.lease import LateFeeType
from app.models.payment import PaymentMethod
from app.services.late_fees import late_after, policy_amount


def test_percentage_fee_on_monthly_rent(active_lease, assessor, this_month, sink):
    lease = active_lease(late_fee_type=LateFeeType.PERCENTAGE, late_fee_amount=Decimal("5"))

    fee = assessor.assess(lease)

    assert fee.amount == Decimal("75.00")
    assert fee.period == this_month
    assert fee.waived is False
    assert "late_fee.assessed" in sink.names


def test_percentage_rounds_half_up(make_lease):
    lease = make_lease(
        monthly_rent=Decimal("1234.55"),
        late_fee_type=LateFeeType.PERCENTAGE,
        late_fee_amount=Decimal("3.5"),
    )

    assert policy_amount(lease) == Decimal("43.21")


def test_flat_fee_and_override(active_lease, assessor):
    lease = active_lease()

    assert assessor.assess(lease, period=date(2026, 1, 15)).amount == Decimal("50.00")
    assert assessor.assess(lease, override_amount=Decimal("25"), period=date(2026, 2, 3)).amount == Decimal("25.00")


def test_one_fee_per_period(active_lease, assessor):
    lease = active_lease()
    assessor.assess(lease, period=date(2026, 3, 2))

    with pytest.raises(LateFeeAlreadyAssessed):
        assessor.assess(lease, period=date(2026, 3, 28))


def test_missing_policy_needs_explicit_amount(active_lease, assessor):
    lease = active_lease(late_fee_amount=None)

    with pytest.raises(NoLateFeePolicyConfigured):
        assessor.assess(lease)
    assert assessor.assess(lease, override_amount=Decimal("40")).amount == Decimal("40.00")


def test_fee_requires_active_lease(make_lease, assessor):
    with pytest.raises(LeaseNotActive):
        assessor.assess(make_lease())


def test_waive_then_pay_is_rejected(active_lease, assessor, ledger, tenants, landlord_id, sink):
    lease = active_lease()
    fee = assessor.assess(lease)

    assessor.waive(fee, waived_by=landlord_id)
    assert fee.waived is True
    assert fee.waived_by == landlord_id
    assert "late_fee.waived" in sink.names

    with pytest.raises(AlreadyWaived):
        assessor.waive(fee)

    payment = ledger.create_payment(lease, tenants[0].id, Decimal("50.00"), PaymentMethod.MANUAL)
    with pytest.raises(AlreadyWaived):
        assessor.record_payment(fee, payment)
    assert fee.paid_date is None


def test_pay_then_waive_is_rejected(active_lease, assessor, ledger, tenants, sink):
    lease = active_lease()
    fee = assessor.assess(lease)
    payment = ledger.create_payment(lease, tenants[0].id, Decimal("50.00"), PaymentMethod.MANUAL)

    assessor.record_payment(fee, payment)
    assert fee.paid_date is not None
    assert fee.payment_id == payment.id
    assert "late_fee.paid" in sink.names

    with pytest.raises(AlreadyPaid):
        assessor.waive(fee)
    assert fee.waived is False


def test_payment_from_other_lease_is_rejected(active_lease, assessor, ledger, tenants):
    lease = active_lease()
    other = active_lease()
    fee = assessor.assess(lease)
    payment = ledger.create_payment(other, tenants[0].id, Decimal("50.00"), PaymentMethod.MANUAL)

    with pytest.raises(ValidationFailed):
        assessor.record_payment(fee, payment)


def test_late_after_includes_grace_period(make_lease):
    lease = make_lease(rent_due_day=3, grace_period_days=5)

    assert late_after(lease, date(2026, 3, 20)) == date(2026, 3, 8)
