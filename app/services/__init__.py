from app.services.late_fees import LateFeeAssessor
from app.services.lease_state_machine import LeaseStateMachine
from app.services.payment_ledger import PaymentLedger
from app.services.signature_collector import SignatureCollector
from app.services.signing_tokens import SigningTokenIssuer
from app.services.webhook_reconciler import WebhookReconciler

__all__ = [
    "LateFeeAssessor",
    "LeaseStateMachine",
    "PaymentLedger",
    "SignatureCollector",
    "SigningTokenIssuer",
    "WebhookReconciler",
]
