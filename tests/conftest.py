import json
import time
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.security import create_access_token
from app.database import get_db
from app.db.base import Base, utcnow
from app.main import app
from app.models.lease import LateFeeType
from app.models.tenant import Tenant
from app.services.late_fees import LateFeeAssessor
from app.services.lease_state_machine import LeaseStateMachine
from app.services.notifications import EventSink, get_event_sink
from app.services.payment_gateways import WebhookValidator, get_payment_gateway, parse_event
from app.services.payment_ledger import PaymentLedger
from app.services.signature_collector import SignatureArtifact, SignatureCollector
from app.services.signing_tokens import SigningTokenIssuer
from app.services.webhook_reconciler import WebhookReconciler

TEST_DATABASE_URL = "sqlite://"
WEBHOOK_SECRET = "whsec_test_secret"


# ═══════════════════════ TEST DOUBLES ═══════════════════════

class RecordingSink(EventSink):
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    @property
    def names(self):
        return [e.name for e in self.events]


class FakeGateway:
    """Scripted stand-in for StripeGateway. Queue ChargeResults or exceptions."""

    def __init__(self):
        self.charge_results = []
        self.retrieve_result = None
        self.charges = []
        self.refunds = []
        self.refund_errors = []

    def create_charge(self, amount, payment_method_ref, metadata=None, idempotency_key=None, method="card"):
        self.charges.append({
            "amount": amount,
            "payment_method_ref": payment_method_ref,
            "idempotency_key": idempotency_key,
            "method": method,
        })
        result = self.charge_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def retrieve_charge(self, charge_ref):
        return self.retrieve_result

    def refund(self, charge_ref, amount=None):
        if self.refund_errors:
            raise self.refund_errors.pop(0)
        self.refunds.append(charge_ref)
        return {"id": f"re_{charge_ref}", "status": "succeeded"}

    def verify_event_signature(self, payload, signature_header, secret=None, tolerance=None):
        WebhookValidator.verify(payload, signature_header, WEBHOOK_SECRET, 300)
        return parse_event(payload)


def sign_webhook(payload: bytes, timestamp=None, secret=WEBHOOK_SECRET) -> str:
    ts = str(int(timestamp if timestamp is not None else time.time()))
    return f"t={ts},v1={WebhookValidator.compute_signature(payload, ts, secret)}"


def gateway_event(event_id, event_type, charge_ref, amount_cents=150000, fee_cents=None, **extra) -> bytes:
    if event_type.startswith("charge."):
        obj = {"id": f"ch_{charge_ref}", "payment_intent": charge_ref, "amount": amount_cents}
    else:
        obj = {"id": charge_ref, "amount_received": amount_cents}
    if fee_cents is not None:
        obj["application_fee_amount"] = fee_cents
    obj.update(extra)
    return json.dumps({
        "id": event_id,
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }).encode()


# ═══════════════════════ DATABASE ═══════════════════════

@pytest.fixture
def engine():
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def gateway():
    return FakeGateway()


# ═══════════════════════ SERVICES ═══════════════════════

@pytest.fixture
def issuer(db):
    return SigningTokenIssuer(db)


@pytest.fixture
def machine(db, sink, issuer):
    return LeaseStateMachine(db, sink, issuer)


@pytest.fixture
def collector(db, sink, issuer, machine):
    return SignatureCollector(db, sink, issuer, machine)


@pytest.fixture
def ledger(db, gateway, sink):
    return PaymentLedger(db, gateway, sink)


@pytest.fixture
def reconciler(db, gateway, sink):
    return WebhookReconciler(db, gateway, sink)


@pytest.fixture
def assessor(db, sink):
    return LateFeeAssessor(db, sink)


# ═══════════════════════ DATA ═══════════════════════

@pytest.fixture
def landlord_id():
    return uuid.uuid4()


@pytest.fixture
def tenants(db):
    rows = [
        Tenant(full_name="Jane Doe", email="jane@example.com"),
        Tenant(full_name="John Roe", email="john@example.com"),
    ]
    db.add_all(rows)
    db.commit()
    for row in rows:
        db.refresh(row)
    return rows


@pytest.fixture
def make_lease(machine, tenants, landlord_id):
    """Complete DRAFT lease; pass overrides for any term."""
    def _make(tenant_rows=None, **overrides):
        today = utcnow().date()
        fields = {
            "unit_id": uuid.uuid4(),
            "start_date": today - timedelta(days=30),
            "end_date": today + timedelta(days=335),
            "monthly_rent": Decimal("1500.00"),
            "late_fee_type": LateFeeType.FLAT,
            "late_fee_amount": Decimal("50.00"),
            "landlord_name": "Lee Landlord",
            "landlord_email": "landlord@example.com",
        }
        fields.update(overrides)
        rows = tenants if tenant_rows is None else tenant_rows
        return machine.create_lease(
            landlord_id=landlord_id,
            tenant_ids=[t.id for t in rows],
            **fields,
        )
    return _make


@pytest.fixture
def artifact():
    def _artifact(name="Jane Doe", email=None):
        return SignatureArtifact(
            signature_type="typed",
            signature_data=name,
            full_name=name,
            email=email,
        )
    return _artifact


@pytest.fixture
def sign_with_token(issuer, collector, artifact):
    """Resolve a signing link and submit a typed signature through it."""
    def _sign(token):
        token_value = token if isinstance(token, str) else token.token
        document_ref, signer_ref = issuer.resolve(token_value)
        return collector.record_signature(
            document_ref,
            signer_ref,
            artifact(),
            {"consent_electronic_records": True, "consent_terms": True},
            token=token_value,
        )
    return _sign


@pytest.fixture
def active_lease(make_lease, machine, sign_with_token):
    """Lease executed by every tenant and the landlord."""
    def _active(**overrides):
        lease = make_lease(**overrides)
        for token in machine.send_for_signature(lease):
            sign_with_token(token)
        return lease
    return _active


@pytest.fixture
def this_month():
    return utcnow().date().replace(day=1)


# ═══════════════════════ API ═══════════════════════

@pytest.fixture
def client(db, sink, gateway):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_sink] = lambda: sink
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(landlord_id):
    token = create_access_token({
        "sub": str(landlord_id),
        "email": "landlord@example.com",
        "name": "Lee Landlord",
    })
    return {"Authorization": f"Bearer {token}"}


# ═══════════════════════ WEBHOOKS ═══════════════════════

@pytest.fixture
def make_event():
    return gateway_event


@pytest.fixture
def signed():
    return sign_webhook
