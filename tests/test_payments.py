from decimal import Decimal

import pytest

from app.core.exceptions import (
    GatewayError,
    GatewayTimeout,
    LeaseNotActive,
    MissingPaymentMethod,
    PaymentNotRefundable,
    TenantNotOnLease,
    ValidationFailed,
)
from app.models.payment import Payment, PaymentMethod, PaymentMethodType, PaymentStatus
from app.services.payment_gateways import ChargeResult, ChargeStatus


@pytest.fixture
def bank_method(ledger, tenants):
    return ledger.save_payment_method(
        tenant_id=tenants[0].id,
        type=PaymentMethodType.BANK_ACCOUNT,
        gateway_payment_method_id="pm_bank_123",
        last4="6789",
        bank_name="First Credit Union",
    )


@pytest.fixture
def card_method(ledger, tenants):
    return ledger.save_payment_method(
        tenant_id=tenants[0].id,
        type=PaymentMethodType.CARD,
        gateway_payment_method_id="pm_card_123",
        last4="4242",
    )


def test_first_saved_method_becomes_default(bank_method, card_method, ledger, tenants):
    methods = ledger.list_payment_methods(tenants[0].id)

    assert bank_method.is_default
    assert len(methods) == 2
    assert sum(1 for m in methods if m.is_default) == 1


def test_ach_payment_waits_for_settlement(active_lease, ledger, gateway, bank_method, tenants, sink):
    lease = active_lease()
    gateway.charge_results.append(ChargeResult("pi_ach_1", ChargeStatus.PROCESSING))

    payment = ledger.create_payment(
        lease, tenants[0].id, Decimal("1500.00"), PaymentMethod.ACH, bank_method.id
    )

    assert payment.status == PaymentStatus.PROCESSING
    assert payment.gateway_charge_ref == "pi_ach_1"
    assert gateway.charges[0]["idempotency_key"] == str(payment.id)
    assert gateway.charges[0]["payment_method_ref"] == "pm_bank_123"
    assert "payment.processing" in sink.names


def test_card_payment_completes_with_provisional_fee(active_lease, ledger, gateway, card_method, tenants):
    lease = active_lease()
    gateway.charge_results.append(ChargeResult("pi_card_1", ChargeStatus.SUCCEEDED))

    payment = ledger.create_payment(
        lease, tenants[0].id, Decimal("1500.00"), PaymentMethod.CARD, card_method.id
    )

    assert payment.status == PaymentStatus.COMPLETED
    assert payment.paid_at is not None
    assert payment.gateway_fee == Decimal("0")
    assert payment.net_amount == Decimal("1500.00")
    assert payment.fee_settled is False


def test_card_payment_with_known_fee(active_lease, ledger, gateway, card_method, tenants):
    lease = active_lease()
    gateway.charge_results.append(ChargeResult("pi_card_2", ChargeStatus.SUCCEEDED, fee=Decimal("43.80")))

    payment = ledger.create_payment(
        lease, tenants[0].id, Decimal("1500.00"), PaymentMethod.CARD, card_method.id
    )

    assert payment.gateway_fee == Decimal("43.80")
    assert payment.net_amount == Decimal("1456.20")
    assert payment.fee_settled is True


def test_declined_payment_fails(active_lease, ledger, gateway, card_method, tenants):
    lease = active_lease()
    gateway.charge_results.append(
        ChargeResult("pi_card_3", ChargeStatus.FAILED, failure_reason="Your card was declined.")
    )

    payment = ledger.create_payment(
        lease, tenants[0].id, Decimal("1500.00"), PaymentMethod.CARD, card_method.id
    )

    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Your card was declined."


def test_manual_payment_is_completed_immediately(active_lease, ledger, tenants, sink, gateway):
    lease = active_lease()

    payment = ledger.create_payment(lease, tenants[1].id, Decimal("750.00"), PaymentMethod.MANUAL)

    assert payment.status == PaymentStatus.COMPLETED
    assert payment.net_amount == Decimal("750.00")
    assert payment.fee_settled is True
    assert gateway.charges == []
    assert "payment.completed" in sink.names


def test_gateway_timeout_leaves_payment_processing(active_lease, ledger, gateway, card_method, tenants, db):
    lease = active_lease()
    gateway.charge_results.append(GatewayTimeout())

    with pytest.raises(GatewayTimeout):
        ledger.create_payment(lease, tenants[0].id, Decimal("1500.00"), PaymentMethod.CARD, card_method.id)

    payment = db.query(Payment).filter(Payment.lease_id == lease.id).one()
    assert payment.status == PaymentStatus.PROCESSING
    assert payment.gateway_charge_ref is None


def test_gateway_error_leaves_payment_pending(active_lease, ledger, gateway, card_method, tenants, db):
    lease = active_lease()
    gateway.charge_results.append(GatewayError("Payment gateway rejected the request"))

    with pytest.raises(GatewayError):
        ledger.create_payment(lease, tenants[0].id, Decimal("1500.00"), PaymentMethod.CARD, card_method.id)

    payment = db.query(Payment).filter(Payment.lease_id == lease.id).one()
    assert payment.status == PaymentStatus.PENDING


def test_payment_requires_active_lease(make_lease, ledger, tenants):
    lease = make_lease()

    with pytest.raises(LeaseNotActive):
        ledger.create_payment(lease, tenants[0].id, Decimal("100.00"), PaymentMethod.MANUAL)


def test_payment_requires_tenant_on_lease(active_lease, ledger, tenants):
    lease = active_lease(tenant_rows=[tenants[0]])

    with pytest.raises(TenantNotOnLease):
        ledger.create_payment(lease, tenants[1].id, Decimal("100.00"), PaymentMethod.MANUAL)


def test_gateway_payment_requires_method(active_lease, ledger, tenants):
    lease = active_lease()

    with pytest.raises(MissingPaymentMethod):
        ledger.create_payment(lease, tenants[0].id, Decimal("100.00"), PaymentMethod.ACH)


def test_method_type_must_match(active_lease, ledger, bank_method, tenants):
    lease = active_lease()

    with pytest.raises(ValidationFailed):
        ledger.create_payment(lease, tenants[0].id, Decimal("100.00"), PaymentMethod.CARD, bank_method.id)


def test_refund_completed_payment(active_lease, ledger, gateway, card_method, tenants, sink):
    lease = active_lease()
    gateway.charge_results.append(ChargeResult("pi_card_4", ChargeStatus.SUCCEEDED, fee=Decimal("1.00")))
    payment = ledger.create_payment(
        lease, tenants[0].id, Decimal("200.00"), PaymentMethod.CARD, card_method.id
    )

    ledger.refund(payment)

    assert payment.status == PaymentStatus.REFUNDED
    assert payment.refunded_at is not None
    assert gateway.refunds == ["pi_card_4"]
    assert "payment.refunded" in sink.names


def test_failed_gateway_refund_keeps_payment_completed(active_lease, ledger, gateway, card_method, tenants, db):
    lease = active_lease()
    gateway.charge_results.append(ChargeResult("pi_card_6", ChargeStatus.SUCCEEDED, fee=Decimal("1.00")))
    payment = ledger.create_payment(
        lease, tenants[0].id, Decimal("200.00"), PaymentMethod.CARD, card_method.id
    )
    gateway.refund_errors.append(GatewayError("Payment gateway rejected the refund"))

    with pytest.raises(GatewayError):
        ledger.refund(payment)

    db.refresh(payment)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.refunded_at is None

    ledger.refund(payment)
    assert payment.status == PaymentStatus.REFUNDED
    assert gateway.refunds == ["pi_card_6"]


def test_only_completed_payments_refund(active_lease, ledger, gateway, bank_method, tenants):
    lease = active_lease()
    gateway.charge_results.append(ChargeResult("pi_ach_2", ChargeStatus.PROCESSING))
    payment = ledger.create_payment(
        lease, tenants[0].id, Decimal("200.00"), PaymentMethod.ACH, bank_method.id
    )

    with pytest.raises(PaymentNotRefundable):
        ledger.refund(payment)
    assert gateway.refunds == []


def test_sync_applies_gateway_status(active_lease, ledger, gateway, bank_method, tenants):
    lease = active_lease()
    gateway.charge_results.append(ChargeResult("pi_ach_3", ChargeStatus.PROCESSING))
    payment = ledger.create_payment(
        lease, tenants[0].id, Decimal("1500.00"), PaymentMethod.ACH, bank_method.id
    )
    gateway.retrieve_result = ChargeResult("pi_ach_3", ChargeStatus.SUCCEEDED, fee=Decimal("5.00"))

    ledger.sync_with_gateway(payment)

    assert payment.status == PaymentStatus.COMPLETED
    assert payment.net_amount == Decimal("1495.00")
    assert payment.fee_settled is True


def test_sync_picks_up_refund_before_settlement(active_lease, ledger, gateway, bank_method, tenants):
    lease = active_lease()
    gateway.charge_results.append(ChargeResult("pi_ach_4", ChargeStatus.PROCESSING))
    payment = ledger.create_payment(
        lease, tenants[0].id, Decimal("1500.00"), PaymentMethod.ACH, bank_method.id
    )
    gateway.retrieve_result = ChargeResult("pi_ach_4", ChargeStatus.REFUNDED)

    ledger.sync_with_gateway(payment)

    assert payment.status == PaymentStatus.REFUNDED
    assert payment.refunded_at is not None


def test_sync_never_moves_backwards(active_lease, ledger, gateway, card_method, tenants):
    lease = active_lease()
    gateway.charge_results.append(ChargeResult("pi_card_5", ChargeStatus.SUCCEEDED, fee=Decimal("1.00")))
    payment = ledger.create_payment(
        lease, tenants[0].id, Decimal("100.00"), PaymentMethod.CARD, card_method.id
    )
    gateway.retrieve_result = ChargeResult("pi_card_5", ChargeStatus.PROCESSING)

    ledger.sync_with_gateway(payment)

    assert payment.status == PaymentStatus.COMPLETED
