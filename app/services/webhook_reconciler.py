"""
Webhook Reconciler

Applies gateway notifications to the payment ledger.

Deliveries can be duplicated, reordered and concurrent with the API path:
  • signature is verified before anything is read or written
  • each event id is applied at most once (processed_webhook_events PK,
    inserted in the same transaction as the ledger update)
  • ledger updates go through the monotonic transitions in payment_ledger,
    so a late "succeeded" can never revive a REFUNDED payment, and a refund
    that overtakes its "succeeded" still lands on REFUNDED
  • events for charges we have not stored yet are dropped without being
    recorded; the gateway's redelivery applies them later
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import WebhookSignatureInvalid
from app.db.base import utcnow
from app.models.payment import Payment, PaymentStatus, ProcessedWebhookEvent
from app.services.notifications import EventSink, get_event_sink
from app.services.payment_gateways import ChargeStatus, GatewayEvent, StripeGateway
from app.services.payment_ledger import (
    ZERO,
    mark_completed,
    mark_refunded,
    refine_settlement,
    status_event,
    transition,
)

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNKNOWN_CHARGE = "unknown_charge"
    STALE = "stale"


class WebhookReconciler:

    def __init__(self, db: Session, gateway: StripeGateway, events: Optional[EventSink] = None):
        self.db = db
        self.gateway = gateway
        self.events = events or get_event_sink()

    def handle(self, payload: bytes, signature_header: str) -> ReconcileOutcome:
        try:
            event = self.gateway.verify_event_signature(payload, signature_header)
        except WebhookSignatureInvalid as e:
            logger.warning(f"[WEBHOOK] Rejected delivery: {e.message}")
            raise

        if event.kind is None:
            logger.info(f"[WEBHOOK] Ignoring {event.event_type} ({event.event_id})")
            return ReconcileOutcome.IGNORED

        if self.db.get(ProcessedWebhookEvent, event.event_id) is not None:
            logger.info(f"[WEBHOOK] Duplicate delivery {event.event_id}")
            return ReconcileOutcome.DUPLICATE

        payment = self._payment_for(event.charge_ref)
        if payment is None:
            logger.warning(
                f"[WEBHOOK] {event.event_type} {event.event_id}: no payment for charge "
                f"{event.charge_ref}; not recorded"
            )
            return ReconcileOutcome.UNKNOWN_CHARGE

        before = payment.status
        try:
            outcome = self._apply(event, payment)
            self.db.add(ProcessedWebhookEvent(
                event_id=event.event_id,
                event_type=event.event_type,
                charge_ref=event.charge_ref,
                outcome=outcome.value,
            ))
            self.db.flush()
            self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event committed first
            self.db.rollback()
            logger.info(f"[WEBHOOK] Duplicate delivery {event.event_id} (concurrent)")
            return ReconcileOutcome.DUPLICATE

        self.db.refresh(payment)
        logger.info(
            f"[WEBHOOK] {event.event_type} {event.event_id} → {outcome.value} "
            f"(payment {payment.id} {before.value} → {payment.status.value})"
        )
        if payment.status != before:
            self.events.emit(status_event(payment))
        return outcome

    def purge_processed_events(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - timedelta(days=settings.WEBHOOK_EVENT_RETENTION_DAYS)
        result = self.db.execute(
            delete(ProcessedWebhookEvent).where(ProcessedWebhookEvent.processed_at < cutoff)
        )
        self.db.commit()
        if result.rowcount:
            logger.info(f"[WEBHOOK] Purged {result.rowcount} processed event(s) older than {cutoff:%Y-%m-%d}")
        return result.rowcount

    # ═══════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════

    def _payment_for(self, charge_ref: Optional[str]) -> Optional[Payment]:
        if not charge_ref:
            return None
        return (
            self.db.query(Payment)
            .filter(Payment.gateway_charge_ref == charge_ref)
            .first()
        )

    def _apply(self, event: GatewayEvent, payment: Payment) -> ReconcileOutcome:
        by_ref = Payment.gateway_charge_ref == event.charge_ref

        if event.kind == ChargeStatus.SUCCEEDED:
            fee = event.fee if event.fee is not None else ZERO
            if mark_completed(self.db, by_ref, event.occurred_at, fee):
                return ReconcileOutcome.APPLIED
            if refine_settlement(self.db, by_ref, fee):
                return ReconcileOutcome.APPLIED
            return ReconcileOutcome.STALE

        if event.kind == ChargeStatus.FAILED:
            moved = transition(
                self.db, by_ref, PaymentStatus.FAILED,
                failure_reason=event.failure_reason or "Payment failed",
            )
            return ReconcileOutcome.APPLIED if moved else ReconcileOutcome.STALE

        if event.kind == ChargeStatus.REFUNDED:
            moved = mark_refunded(self.db, by_ref, event.occurred_at)
            return ReconcileOutcome.APPLIED if moved else ReconcileOutcome.STALE

        return ReconcileOutcome.IGNORED
