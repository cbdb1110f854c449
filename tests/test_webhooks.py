import time
from datetime import timedelta
from decimal import Decimal

import pytest

from app.core.exceptions import WebhookSignatureInvalid
from app.db.base import utcnow
from app.models.payment import PaymentMethod, PaymentMethodType, PaymentStatus, ProcessedWebhookEvent
from app.services.payment_gateways import ChargeResult, ChargeStatus, WebhookValidator
from app.services.webhook_reconciler import ReconcileOutcome


@pytest.fixture
def processing_payment(active_lease, ledger, gateway, tenants):
    """ACH payment submitted to the gateway and awaiting settlement."""
    lease = active_lease()
    method = ledger.save_payment_method(
        tenant_id=tenants[0].id,
        type=PaymentMethodType.BANK_ACCOUNT,
        gateway_payment_method_id="pm_bank_1",
    )
    gateway.charge_results.append(ChargeResult("pi_1", ChargeStatus.PROCESSING))
    return ledger.create_payment(lease, tenants[0].id, Decimal("1500.00"), PaymentMethod.ACH, method.id)


def deliver(reconciler, signed, payload):
    return reconciler.handle(payload, signed(payload))


# ═══════════════════════ SIGNATURE ═══════════════════════

def test_validator_accepts_fresh_signature(signed):
    payload = b'{"id": "evt_0"}'
    WebhookValidator.verify(payload, signed(payload), "whsec_test_secret", 300)


def test_tampered_payload_is_rejected(reconciler, signed, make_event, processing_payment, db):
    payload = make_event("evt_1", "payment_intent.succeeded", "pi_1")
    header = signed(payload)

    with pytest.raises(WebhookSignatureInvalid):
        reconciler.handle(payload.replace(b"pi_1", b"pi_2"), header)
    assert db.query(ProcessedWebhookEvent).count() == 0


def test_stale_timestamp_is_rejected(reconciler, signed, make_event):
    payload = make_event("evt_2", "payment_intent.succeeded", "pi_1")

    with pytest.raises(WebhookSignatureInvalid):
        reconciler.handle(payload, signed(payload, timestamp=time.time() - 3600))


def test_missing_header_is_rejected(reconciler, make_event):
    with pytest.raises(WebhookSignatureInvalid):
        reconciler.handle(make_event("evt_3", "payment_intent.succeeded", "pi_1"), "")


# ═══════════════════════ RECONCILIATION ═══════════════════════

def test_success_event_settles_payment(reconciler, signed, make_event, processing_payment, db, sink):
    payload = make_event("evt_10", "payment_intent.succeeded", "pi_1", fee_cents=80)

    assert deliver(reconciler, signed, payload) == ReconcileOutcome.APPLIED

    db.refresh(processing_payment)
    assert processing_payment.status == PaymentStatus.COMPLETED
    assert processing_payment.gateway_fee == Decimal("0.80")
    assert processing_payment.net_amount == Decimal("1499.20")
    assert processing_payment.fee_settled is True
    assert "payment.completed" in sink.names


def test_duplicate_delivery_is_applied_once(reconciler, signed, make_event, processing_payment, db):
    payload = make_event("evt_11", "payment_intent.succeeded", "pi_1")

    assert deliver(reconciler, signed, payload) == ReconcileOutcome.APPLIED
    assert deliver(reconciler, signed, payload) == ReconcileOutcome.DUPLICATE
    assert db.query(ProcessedWebhookEvent).count() == 1


def test_failure_event_fails_payment(reconciler, signed, make_event, processing_payment, db):
    payload = make_event(
        "evt_12", "payment_intent.payment_failed", "pi_1",
        last_payment_error={"message": "Insufficient funds"},
    )

    assert deliver(reconciler, signed, payload) == ReconcileOutcome.APPLIED

    db.refresh(processing_payment)
    assert processing_payment.status == PaymentStatus.FAILED
    assert processing_payment.failure_reason == "Insufficient funds"


def test_late_success_cannot_revive_refunded_payment(reconciler, signed, make_event, processing_payment, db):
    deliver(reconciler, signed, make_event("evt_20", "payment_intent.succeeded", "pi_1"))
    refunded = deliver(reconciler, signed, make_event("evt_21", "charge.refunded", "pi_1"))
    late = deliver(reconciler, signed, make_event("evt_22", "payment_intent.succeeded", "pi_1", fee_cents=50))

    assert refunded == ReconcileOutcome.APPLIED
    assert late == ReconcileOutcome.STALE
    db.refresh(processing_payment)
    assert processing_payment.status == PaymentStatus.REFUNDED


def test_refund_arriving_before_success_still_lands_refunded(
    reconciler, signed, make_event, processing_payment, db, sink
):
    refund = make_event("evt_23", "charge.refunded", "pi_1")

    first = deliver(reconciler, signed, refund)
    late_success = deliver(reconciler, signed, make_event("evt_24", "payment_intent.succeeded", "pi_1"))
    redelivered = deliver(reconciler, signed, refund)

    assert (first, late_success, redelivered) == (
        ReconcileOutcome.APPLIED, ReconcileOutcome.STALE, ReconcileOutcome.DUPLICATE,
    )
    db.refresh(processing_payment)
    assert processing_payment.status == PaymentStatus.REFUNDED
    assert processing_payment.refunded_at is not None
    assert processing_payment.paid_at is not None
    assert "payment.refunded" in sink.names


def test_failure_after_completion_is_stale(reconciler, signed, make_event, processing_payment, db):
    deliver(reconciler, signed, make_event("evt_30", "payment_intent.succeeded", "pi_1"))
    outcome = deliver(reconciler, signed, make_event("evt_31", "payment_intent.payment_failed", "pi_1"))

    assert outcome == ReconcileOutcome.STALE
    db.refresh(processing_payment)
    assert processing_payment.status == PaymentStatus.COMPLETED


def test_settlement_refines_provisional_fee(
    active_lease, ledger, gateway, tenants, reconciler, signed, make_event, db
):
    lease = active_lease()
    method = ledger.save_payment_method(
        tenant_id=tenants[0].id,
        type=PaymentMethodType.CARD,
        gateway_payment_method_id="pm_card_1",
    )
    gateway.charge_results.append(ChargeResult("pi_card", ChargeStatus.SUCCEEDED))
    payment = ledger.create_payment(lease, tenants[0].id, Decimal("100.00"), PaymentMethod.CARD, method.id)
    assert payment.fee_settled is False

    outcome = deliver(
        reconciler, signed, make_event("evt_40", "payment_intent.succeeded", "pi_card", fee_cents=320)
    )

    assert outcome == ReconcileOutcome.APPLIED
    db.refresh(payment)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.gateway_fee == Decimal("3.20")
    assert payment.net_amount == Decimal("96.80")
    assert payment.fee_settled is True


def test_unknown_charge_is_not_recorded(reconciler, signed, make_event, db):
    outcome = deliver(reconciler, signed, make_event("evt_50", "payment_intent.succeeded", "pi_unknown"))

    assert outcome == ReconcileOutcome.UNKNOWN_CHARGE
    assert db.get(ProcessedWebhookEvent, "evt_50") is None


def test_unhandled_event_type_is_ignored(reconciler, signed, make_event, db):
    outcome = deliver(reconciler, signed, make_event("evt_60", "customer.created", "cus_1"))

    assert outcome == ReconcileOutcome.IGNORED
    assert db.query(ProcessedWebhookEvent).count() == 0


def test_purge_drops_old_processed_events(reconciler, db):
    db.add_all([
        ProcessedWebhookEvent(
            event_id="evt_old", event_type="payment_intent.succeeded", outcome="applied",
            processed_at=utcnow() - timedelta(days=45),
        ),
        ProcessedWebhookEvent(
            event_id="evt_new", event_type="payment_intent.succeeded", outcome="applied",
        ),
    ])
    db.commit()

    assert reconciler.purge_processed_events() == 1
    assert db.get(ProcessedWebhookEvent, "evt_new") is not None
