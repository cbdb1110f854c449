# Import all models in correct order so string relationships resolve
from app.models.tenant import Tenant
from app.models.lease import (
    Lease, LeaseTenant, LeaseAddendum, LeaseStatus, AddendumStatus, LateFeeType,
)
from app.models.signature import SigningToken, Signature, DocumentType, SignerRole
from app.models.payment import (
    Payment, PaymentMethodRecord, LateFee, ProcessedWebhookEvent,
    PaymentStatus, PaymentMethod, PaymentMethodType,
)

__all__ = [
    "Tenant",
    "Lease",
    "LeaseTenant",
    "LeaseAddendum",
    "LeaseStatus",
    "AddendumStatus",
    "LateFeeType",
    "SigningToken",
    "Signature",
    "DocumentType",
    "SignerRole",
    "Payment",
    "PaymentMethodRecord",
    "LateFee",
    "ProcessedWebhookEvent",
    "PaymentStatus",
    "PaymentMethod",
    "PaymentMethodType",
]
