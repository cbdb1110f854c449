"""
Payment Gateway Integration
Stripe-compatible REST client (PaymentIntents, Refunds) and webhook
signature validation.

All amounts cross this boundary as Decimal dollars; the wire format is
integer cents.
"""
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from app.core.config import settings
from app.core.exceptions import (
    GatewayError,
    GatewayTimeout,
    ValidationFailed,
    WebhookSignatureInvalid,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("100")


class ChargeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    FAILED = "failed"
    REFUNDED = "refunded"


# Stripe PaymentIntent.status → ledger outcome
INTENT_STATUS_MAP = {
    "succeeded": ChargeStatus.SUCCEEDED,
    "processing": ChargeStatus.PROCESSING,
    "requires_capture": ChargeStatus.PROCESSING,
    "requires_action": ChargeStatus.PROCESSING,
    "requires_confirmation": ChargeStatus.PROCESSING,
    "requires_payment_method": ChargeStatus.FAILED,
    "canceled": ChargeStatus.FAILED,
}

# Webhook event type → ledger outcome; anything else is acknowledged and ignored
EVENT_KIND_MAP = {
    "payment_intent.succeeded": ChargeStatus.SUCCEEDED,
    "payment_intent.payment_failed": ChargeStatus.FAILED,
    "charge.refunded": ChargeStatus.REFUNDED,
}


@dataclass
class ChargeResult:
    charge_ref: str
    status: ChargeStatus
    fee: Optional[Decimal] = None
    failure_reason: Optional[str] = None


@dataclass
class GatewayEvent:
    event_id: str
    event_type: str
    kind: Optional[ChargeStatus]
    charge_ref: Optional[str]
    amount: Optional[Decimal]
    fee: Optional[Decimal]
    occurred_at: datetime
    failure_reason: Optional[str] = None


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * CENTS).to_integral_value())


def from_cents(value: Optional[int]) -> Optional[Decimal]:
    if value is None:
        return None
    return (Decimal(value) / CENTS).quantize(Decimal("0.01"))


class WebhookValidator:
    """Validate Stripe-style ``t=<ts>,v1=<hmac>`` webhook signatures"""

    @staticmethod
    def parse_header(signature_header: str) -> Dict[str, list]:
        parts: Dict[str, list] = {}
        for item in (signature_header or "").split(","):
            key, sep, value = item.strip().partition("=")
            if sep:
                parts.setdefault(key, []).append(value)
        return parts

    @staticmethod
    def compute_signature(payload: bytes, timestamp: str, secret: str) -> str:
        signed = timestamp.encode() + b"." + payload
        return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()

    @classmethod
    def verify(
        cls,
        payload: bytes,
        signature_header: str,
        secret: str,
        tolerance: int,
        now: Optional[float] = None,
    ) -> None:
        if not secret:
            raise WebhookSignatureInvalid("Webhook secret is not configured")

        parts = cls.parse_header(signature_header)
        timestamps = parts.get("t")
        signatures = parts.get("v1", [])
        if not timestamps or not signatures:
            raise WebhookSignatureInvalid("Malformed signature header")

        timestamp = timestamps[0]
        try:
            ts = int(timestamp)
        except ValueError:
            raise WebhookSignatureInvalid("Malformed signature timestamp")

        expected = cls.compute_signature(payload, timestamp, secret)
        if not any(hmac.compare_digest(expected, sig) for sig in signatures):
            raise WebhookSignatureInvalid()

        now = time.time() if now is None else now
        if tolerance and abs(now - ts) > tolerance:
            raise WebhookSignatureInvalid("Signature timestamp outside tolerance window")


class StripeGateway:
    """Stripe payment gateway integration"""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize Stripe client

        Args:
            secret_key: Stripe secret key
            base_url: API root, overridable for test doubles
            timeout: request timeout in seconds
            transport: optional httpx transport (tests use httpx.MockTransport)
        """
        self.secret_key = secret_key if secret_key is not None else settings.STRIPE_SECRET_KEY
        self.base_url = (base_url or settings.STRIPE_API_URL).rstrip("/")
        self.timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS
        self.transport = transport
        self.headers = {"Authorization": f"Bearer {self.secret_key}"}

    def create_charge(
        self,
        amount: Decimal,
        payment_method_ref: str,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
        method: str = "card",
    ) -> ChargeResult:
        """
        Create and confirm a PaymentIntent for a stored payment method.

        The idempotency key makes a retried create return the original intent
        instead of charging twice.
        """
        form = {
            "amount": str(to_cents(amount)),
            "currency": settings.STRIPE_CURRENCY,
            "payment_method": payment_method_ref,
            "payment_method_types[]": "us_bank_account" if method == "ach" else "card",
            "confirm": "true",
            "off_session": "true",
        }
        for key, value in (metadata or {}).items():
            form[f"metadata[{key}]"] = str(value)

        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        data = self._request("POST", "/payment_intents", data=form, headers=headers)
        return self._charge_result(data)

    def retrieve_charge(self, charge_ref: str) -> ChargeResult:
        data = self._request(
            "GET",
            f"/payment_intents/{charge_ref}",
            params={"expand[]": "latest_charge.balance_transaction"},
        )
        return self._charge_result(data)

    def refund(self, charge_ref: str, amount: Optional[Decimal] = None) -> Dict[str, Any]:
        form = {"payment_intent": charge_ref}
        if amount is not None:
            form["amount"] = str(to_cents(amount))
        data = self._request("POST", "/refunds", data=form, headers={"Idempotency-Key": f"refund-{charge_ref}"})
        logger.info(f"[STRIPE] Refund {data.get('id')} created for {charge_ref}")
        return data

    def verify_event_signature(
        self,
        payload: bytes,
        signature_header: str,
        secret: Optional[str] = None,
        tolerance: Optional[int] = None,
    ) -> GatewayEvent:
        WebhookValidator.verify(
            payload,
            signature_header,
            secret if secret is not None else settings.STRIPE_WEBHOOK_SECRET,
            settings.WEBHOOK_TOLERANCE_SECONDS if tolerance is None else tolerance,
        )
        return parse_event(payload)

    # ═══════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        headers = {**self.headers, **kwargs.pop("headers", {})}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
                response.raise_for_status()
                return response.json()

        except httpx.TimeoutException as e:
            logger.error(f"[STRIPE] {method} {path} timed out: {e}")
            raise GatewayTimeout()
        except httpx.HTTPStatusError as e:
            message = _error_message(e.response)
            logger.error(f"[STRIPE] {method} {path} failed ({e.response.status_code}): {message}")
            raise GatewayError(f"Payment gateway rejected the request: {message}")
        except httpx.HTTPError as e:
            logger.error(f"[STRIPE] {method} {path} error: {e}")
            raise GatewayError(f"Payment gateway request failed: {str(e)}")

    @staticmethod
    def _charge_result(data: Dict[str, Any]) -> ChargeResult:
        status = INTENT_STATUS_MAP.get(data.get("status"), ChargeStatus.PROCESSING)
        fee = None
        latest = data.get("latest_charge")
        if isinstance(latest, dict):
            balance = latest.get("balance_transaction")
            if isinstance(balance, dict):
                fee = from_cents(balance.get("fee"))
            if latest.get("refunded"):
                status = ChargeStatus.REFUNDED
        error = data.get("last_payment_error") or {}
        return ChargeResult(
            charge_ref=data["id"],
            status=status,
            fee=fee,
            failure_reason=error.get("message") if status == ChargeStatus.FAILED else None,
        )


def parse_event(payload: bytes) -> GatewayEvent:
    try:
        body = json.loads(payload)
        obj = body["data"]["object"]
        event_id = body["id"]
        event_type = body["type"]
    except (ValueError, KeyError, TypeError):
        raise ValidationFailed("Malformed webhook payload")

    kind = EVENT_KIND_MAP.get(event_type)
    if event_type.startswith("charge."):
        charge_ref = obj.get("payment_intent")
        amount = from_cents(obj.get("amount"))
    else:
        charge_ref = obj.get("id")
        amount = from_cents(obj.get("amount_received") or obj.get("amount"))

    error = obj.get("last_payment_error") or {}
    created = body.get("created")
    occurred_at = (
        datetime.fromtimestamp(int(created), tz=timezone.utc)
        if created is not None
        else datetime.now(timezone.utc)
    )
    return GatewayEvent(
        event_id=event_id,
        event_type=event_type,
        kind=kind,
        charge_ref=charge_ref,
        amount=amount,
        fee=from_cents(obj.get("application_fee_amount")),
        occurred_at=occurred_at,
        failure_reason=error.get("message"),
    )


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("error", {}).get("message") or response.text
    except ValueError:
        return response.text


_gateway: Optional[StripeGateway] = None


def get_payment_gateway() -> StripeGateway:
    """FastAPI dependency; tests override it with a fake gateway."""
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway
