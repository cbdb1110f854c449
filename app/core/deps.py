"""
Service dependencies for routes.
Each request gets services bound to its own database session; the gateway
and event sink are overridable in tests via app.dependency_overrides.
"""
from fastapi import Depends
from sqlalchemy.orm import Session

from app.database import get_db
from app.services.late_fees import LateFeeAssessor
from app.services.lease_state_machine import LeaseStateMachine
from app.services.notifications import EventSink, get_event_sink
from app.services.payment_gateways import StripeGateway, get_payment_gateway
from app.services.payment_ledger import PaymentLedger
from app.services.signature_collector import SignatureCollector
from app.services.signing_tokens import SigningTokenIssuer
from app.services.webhook_reconciler import WebhookReconciler


def get_token_issuer(db: Session = Depends(get_db)) -> SigningTokenIssuer:
    return SigningTokenIssuer(db)


def get_state_machine(
    db: Session = Depends(get_db),
    events: EventSink = Depends(get_event_sink),
) -> LeaseStateMachine:
    return LeaseStateMachine(db, events)


def get_signature_collector(
    db: Session = Depends(get_db),
    events: EventSink = Depends(get_event_sink),
) -> SignatureCollector:
    return SignatureCollector(db, events)


def get_payment_ledger(
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    events: EventSink = Depends(get_event_sink),
) -> PaymentLedger:
    return PaymentLedger(db, gateway, events)


def get_webhook_reconciler(
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    events: EventSink = Depends(get_event_sink),
) -> WebhookReconciler:
    return WebhookReconciler(db, gateway, events)


def get_late_fee_assessor(
    db: Session = Depends(get_db),
    events: EventSink = Depends(get_event_sink),
) -> LateFeeAssessor:
    return LateFeeAssessor(db, events)
