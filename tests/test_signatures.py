import uuid
from datetime import timedelta

import pytest

from app.core.exceptions import (
    DuplicateSignature,
    InvalidDocumentState,
    TokenAlreadyUsed,
    TokenExpired,
    UnauthorizedSigner,
    ValidationFailed,
)
from app.models.lease import AddendumStatus, LeaseStatus
from app.models.signature import Signature, SignerRole, SigningToken
from app.services.documents import DocumentRef, SignerRef
from app.services.signature_collector import SignatureArtifact


def _by_role(tokens, role):
    return [t for t in tokens if t.signer_role == role]


def test_lease_activates_only_after_every_signature(make_lease, machine, sign_with_token, sink, db):
    lease = make_lease()
    tokens = machine.send_for_signature(lease)
    tenant_links = _by_role(tokens, SignerRole.TENANT)
    landlord_link = _by_role(tokens, SignerRole.LANDLORD)[0]

    assert lease.signatures_required == 3

    first = sign_with_token(tenant_links[0])
    assert first.remaining_signatures == 2
    assert first.document_status == LeaseStatus.PENDING_SIGNATURE
    assert not first.activated

    second = sign_with_token(tenant_links[1])
    assert second.remaining_signatures == 1
    assert not second.activated

    last = sign_with_token(landlord_link)
    assert last.activated
    assert last.remaining_signatures == 0
    assert last.document_status == LeaseStatus.ACTIVE

    db.refresh(lease)
    assert lease.status == LeaseStatus.ACTIVE
    assert lease.signatures_collected == 3
    assert lease.activated_at is not None
    assert sink.names.count("lease.activated") == 1


def test_activation_happens_once(active_lease, machine, db):
    lease = active_lease()

    assert machine.on_signature_complete(lease) is False
    db.commit()
    db.refresh(lease)
    assert lease.status == LeaseStatus.ACTIVE


def test_replayed_link_is_rejected(make_lease, machine, sign_with_token, db):
    lease = make_lease()
    token = machine.send_for_signature(lease)[0]
    value = token.token
    sign_with_token(value)

    with pytest.raises(TokenAlreadyUsed):
        sign_with_token(value)
    assert db.query(Signature).count() == 1


def test_duplicate_signature_without_token(make_lease, machine, sign_with_token, collector, artifact, tenants):
    lease = make_lease()
    sign_with_token(machine.send_for_signature(lease)[0])

    with pytest.raises(DuplicateSignature):
        collector.record_signature(
            DocumentRef.of(lease),
            SignerRef(SignerRole.TENANT, tenants[0].id),
            artifact(),
        )


def test_stranger_cannot_sign(make_lease, machine, collector, artifact):
    lease = make_lease()
    machine.send_for_signature(lease)

    with pytest.raises(UnauthorizedSigner):
        collector.record_signature(
            DocumentRef.of(lease),
            SignerRef(SignerRole.TENANT, uuid.uuid4()),
            artifact(),
        )


def test_link_cannot_be_used_for_another_signer(make_lease, machine, collector, artifact, tenants, db):
    lease = make_lease()
    tokens = machine.send_for_signature(lease)
    jane_link = [t for t in tokens if t.signer_id == tenants[0].id][0].token

    with pytest.raises(UnauthorizedSigner):
        collector.record_signature(
            DocumentRef.of(lease),
            SignerRef(SignerRole.TENANT, tenants[1].id),
            artifact("John Roe"),
            token=jane_link,
        )

    # The failed attempt rolled back; the link is still usable
    row = db.query(SigningToken).filter(SigningToken.token == jane_link).one()
    assert row.used_at is None


def test_draft_lease_cannot_be_signed(make_lease, collector, artifact, tenants):
    lease = make_lease()

    with pytest.raises(InvalidDocumentState):
        collector.record_signature(
            DocumentRef.of(lease),
            SignerRef(SignerRole.TENANT, tenants[0].id),
            artifact(),
        )


def test_signature_keeps_compliance_trail(make_lease, machine, sign_with_token, db):
    lease = make_lease(document_hash="abc123")
    result = sign_with_token(machine.send_for_signature(lease)[0])

    signature = db.get(Signature, result.signature.id)
    assert signature.signing_metadata["consent_terms"] is True
    assert signature.signing_metadata["document_hash"] == "abc123"
    assert signature.signing_metadata["full_name"] == "Jane Doe"
    assert len(signature.signature_hash) == 64


def test_empty_artifact_is_rejected(make_lease, machine, collector, tenants):
    lease = make_lease()
    machine.send_for_signature(lease)

    with pytest.raises(ValidationFailed):
        collector.record_signature(
            DocumentRef.of(lease),
            SignerRef(SignerRole.TENANT, tenants[0].id),
            SignatureArtifact(signature_type="typed", signature_data=" ", full_name="Jane Doe"),
        )


def test_collector_progress_helpers(make_lease, machine, sign_with_token, collector, landlord_id):
    lease = make_lease()
    tokens = machine.send_for_signature(lease)
    ref = DocumentRef.of(lease)

    for token in _by_role(tokens, SignerRole.TENANT):
        sign_with_token(token)

    assert collector.unsigned_signers(ref) == [SignerRef(SignerRole.LANDLORD, landlord_id)]
    assert collector.remaining_signatures(ref) == 1
    assert not collector.is_complete(ref)


def test_addendum_needs_every_tenant(active_lease, machine, sign_with_token, sink, db):
    lease = active_lease()
    addendum = machine.create_addendum(lease, title="Pet policy", content="One cat permitted.")
    tokens = machine.send_addendum(addendum)

    assert len(tokens) == 2
    assert all(t.signer_role == SignerRole.TENANT for t in tokens)

    first = sign_with_token(tokens[0])
    assert first.document_status == AddendumStatus.SENT
    assert first.remaining_signatures == 1

    last = sign_with_token(tokens[1])
    assert last.activated
    db.refresh(addendum)
    assert addendum.status == AddendumStatus.ACTIVE
    assert "addendum.activated" in sink.names


def test_addendum_signer_with_expired_link_gets_a_new_one(
    active_lease, machine, issuer, sign_with_token, tenants, db
):
    lease = active_lease()
    addendum = machine.create_addendum(lease, title="Utilities", content="Water billed monthly.")
    sent = machine.send_addendum(addendum)
    ref = DocumentRef.of(addendum)
    jane = SignerRef(SignerRole.TENANT, tenants[0].id)
    john = SignerRef(SignerRole.TENANT, tenants[1].id)

    lapsed = issuer.issue(ref, jane, ttl=timedelta(seconds=-1))
    db.commit()
    with pytest.raises(TokenExpired):
        sign_with_token(lapsed)

    john_link = next(t for t in sent if t.signer_id == john.signer_id)
    assert not sign_with_token(john_link).activated
    db.refresh(addendum)
    assert addendum.status == AddendumStatus.SENT

    fresh = machine.resend_addendum(addendum, jane)
    assert len(fresh) == 1
    result = sign_with_token(fresh[0])

    assert result.activated
    db.refresh(addendum)
    assert addendum.status == AddendumStatus.ACTIVE
    assert addendum.signatures_collected == 2
