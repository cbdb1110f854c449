"""
Domain Errors
Every service failure carries a stable error code and the HTTP status the
API layer answers with. Routes never translate these by hand; the handler
registered in app.main renders them.
"""
from typing import Optional


class DomainError(Exception):
    """Base class for all lease / ledger errors."""

    code: str = "DOMAIN_ERROR"
    status_code: int = 400
    default_message: str = "Request could not be processed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


# ==================== Validation ====================

class ValidationFailed(DomainError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid input"


class IncompleteLeaseTerms(ValidationFailed):
    code = "INCOMPLETE_LEASE_TERMS"
    default_message = "Lease is missing required terms"


class MissingPaymentMethod(ValidationFailed):
    code = "MISSING_PAYMENT_METHOD"
    default_message = "A payment method is required for ACH and card payments"


class TenantNotOnLease(ValidationFailed):
    code = "TENANT_NOT_ON_LEASE"
    default_message = "This tenant is not associated with the specified lease"


class NoLateFeePolicyConfigured(ValidationFailed):
    code = "NO_LATE_FEE_POLICY"
    default_message = "No late fee amount configured on this lease. Provide an explicit amount."


# ==================== State conflicts ====================

class StateConflict(DomainError):
    code = "STATE_CONFLICT"
    status_code = 409
    default_message = "Operation is not allowed in the current state"


class InvalidDocumentState(StateConflict):
    code = "INVALID_DOCUMENT_STATE"
    default_message = "Document is not in a state that allows this operation"


class TokenAlreadyUsed(StateConflict):
    code = "TOKEN_ALREADY_USED"
    default_message = "This signing link has already been used"


class TokenExpired(StateConflict):
    code = "TOKEN_EXPIRED"
    status_code = 410
    default_message = "This signing link has expired"


class DuplicateSignature(StateConflict):
    code = "DUPLICATE_SIGNATURE"
    default_message = "This signer has already signed this document"


class UnauthorizedSigner(StateConflict):
    code = "UNAUTHORIZED_SIGNER"
    status_code = 403
    default_message = "Signer is not a required party to this document"


class NoActiveLease(StateConflict):
    code = "NO_ACTIVE_LEASE"
    default_message = "Lease is not active"


class LeaseNotActive(StateConflict):
    code = "LEASE_NOT_ACTIVE"
    default_message = "Lease must be ACTIVE for this operation"


class PaymentNotRefundable(StateConflict):
    code = "PAYMENT_NOT_REFUNDABLE"
    default_message = "Only completed payments can be refunded"


class AlreadyWaived(StateConflict):
    code = "ALREADY_WAIVED"
    default_message = "This late fee has already been waived"


class AlreadyPaid(StateConflict):
    code = "ALREADY_PAID"
    default_message = "Cannot waive a late fee that has been paid"


class LateFeeAlreadyAssessed(StateConflict):
    code = "LATE_FEE_ALREADY_ASSESSED"
    default_message = "A late fee has already been assessed for this period"


# ==================== Not found ====================

class NotFound(DomainError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class TokenNotFound(NotFound):
    code = "TOKEN_NOT_FOUND"
    default_message = "Invalid signing link"


class LeaseNotFound(NotFound):
    code = "LEASE_NOT_FOUND"
    default_message = "Lease not found"


class AddendumNotFound(NotFound):
    code = "ADDENDUM_NOT_FOUND"
    default_message = "Addendum not found"


class PaymentNotFound(NotFound):
    code = "PAYMENT_NOT_FOUND"
    default_message = "Payment not found"


class PaymentMethodNotFound(NotFound):
    code = "PAYMENT_METHOD_NOT_FOUND"
    default_message = "Payment method not found"


class LateFeeNotFound(NotFound):
    code = "LATE_FEE_NOT_FOUND"
    default_message = "Late fee not found"


# ==================== External dependencies ====================

class ExternalDependencyError(DomainError):
    code = "EXTERNAL_DEPENDENCY_ERROR"
    status_code = 502
    default_message = "An upstream service failed"


class GatewayError(ExternalDependencyError):
    code = "GATEWAY_ERROR"
    default_message = "Payment gateway request failed"


class GatewayTimeout(GatewayError):
    code = "GATEWAY_TIMEOUT"
    status_code = 504
    default_message = "Payment gateway did not answer in time; outcome will be reconciled"


class WebhookSignatureInvalid(ExternalDependencyError):
    code = "WEBHOOK_SIGNATURE_INVALID"
    status_code = 400
    default_message = "Invalid webhook signature"
