import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from app.core.exceptions import (
    IncompleteLeaseTerms,
    InvalidDocumentState,
    LeaseNotActive,
    NoActiveLease,
    TokenExpired,
    ValidationFailed,
)
from app.db.base import utcnow
from app.models.lease import AddendumStatus, LeaseStatus
from app.services.lease_state_machine import effective_status


def test_create_lease_starts_in_draft(make_lease, tenants):
    lease = make_lease()

    assert lease.status == LeaseStatus.DRAFT
    assert lease.tenant_ids == [t.id for t in tenants]
    assert lease.primary_tenant.tenant_id == tenants[0].id
    assert lease.grace_period_days == 5
    assert lease.rent_due_day == 1


def test_create_lease_rejects_unknown_tenant(machine, landlord_id):
    with pytest.raises(ValidationFailed):
        machine.create_lease(landlord_id=landlord_id, tenant_ids=[uuid.uuid4()])


def test_send_requires_complete_terms(machine, tenants, landlord_id):
    lease = machine.create_lease(landlord_id=landlord_id, tenant_ids=[tenants[0].id])

    with pytest.raises(IncompleteLeaseTerms) as exc:
        machine.send_for_signature(lease)
    assert "monthly rent" in exc.value.message
    assert lease.status == LeaseStatus.DRAFT


def test_send_moves_draft_to_pending(make_lease, machine, sink):
    lease = make_lease()
    machine.send_for_signature(lease)

    assert lease.status == LeaseStatus.PENDING_SIGNATURE
    assert lease.signatures_required == 3
    assert lease.sent_at is not None
    assert sink.names.count("signing.link_issued") == 3


def test_send_twice_is_rejected(make_lease, machine):
    lease = make_lease()
    machine.send_for_signature(lease)

    with pytest.raises(InvalidDocumentState):
        machine.send_for_signature(lease)


def test_terms_are_bounded_after_draft(make_lease, machine, tenants):
    lease = make_lease()
    machine.send_for_signature(lease)

    machine.update_terms(lease, {"monthly_rent": Decimal("1600.00")})
    assert lease.monthly_rent == Decimal("1600.00")

    with pytest.raises(InvalidDocumentState):
        machine.update_terms(lease, {"tenant_ids": [tenants[0].id]})
    with pytest.raises(InvalidDocumentState):
        machine.update_terms(lease, {"unit_id": uuid.uuid4()})


def test_draft_tenants_can_be_replaced(make_lease, machine, tenants):
    lease = make_lease()

    machine.update_terms(lease, {"tenant_ids": [tenants[1].id]})

    assert lease.tenant_ids == [tenants[1].id]
    assert lease.primary_tenant.tenant_id == tenants[1].id


def test_terminate_active_lease(active_lease, machine, sink):
    lease = active_lease()
    machine.terminate(lease)

    assert lease.status == LeaseStatus.TERMINATED
    assert lease.termination_date == utcnow().date()
    assert "lease.terminated" in sink.names

    with pytest.raises(NoActiveLease):
        machine.terminate(lease)


def test_terminate_draft_is_rejected(make_lease, machine):
    with pytest.raises(NoActiveLease):
        machine.terminate(make_lease())


def test_expiry_is_derived_not_stored(active_lease, machine):
    lease = active_lease()
    after_end = lease.end_date + timedelta(days=1)

    assert effective_status(lease, lease.end_date) == LeaseStatus.ACTIVE
    assert effective_status(lease, after_end) == LeaseStatus.EXPIRED
    assert lease.status == LeaseStatus.ACTIVE


def test_expired_lease_cannot_be_terminated(active_lease, machine):
    today = utcnow().date()
    lease = active_lease(
        start_date=today - timedelta(days=400),
        end_date=today - timedelta(days=10),
    )

    assert machine.effective_status(lease) == LeaseStatus.EXPIRED
    with pytest.raises(NoActiveLease):
        machine.terminate(lease)


def test_void_addendum_revokes_links(active_lease, machine, issuer, sink):
    lease = active_lease()
    addendum = machine.create_addendum(lease, title="Parking", content="Space 12 assigned.")
    tokens = machine.send_addendum(addendum)
    value = tokens[0].token

    machine.void_addendum(addendum)

    assert addendum.status == AddendumStatus.VOID
    assert "addendum.voided" in sink.names
    with pytest.raises(TokenExpired):
        issuer.resolve(value)


def test_addendum_needs_title_and_content(active_lease, machine):
    lease = active_lease()
    addendum = machine.create_addendum(lease, title="Untitled")

    with pytest.raises(InvalidDocumentState):
        machine.send_addendum(addendum)

    machine.update_addendum(addendum, {"content": "Quiet hours after 10pm."})
    assert addendum.document_hash is not None
    machine.send_addendum(addendum)
    assert addendum.status == AddendumStatus.SENT


def test_addendum_waits_for_lease_tenants_to_be_fixed(
    make_lease, machine, sign_with_token, tenants, db
):
    lease = make_lease(tenant_rows=[tenants[0]])
    addendum = machine.create_addendum(lease, title="Storage", content="Locker 4 included.")

    with pytest.raises(InvalidDocumentState):
        machine.send_addendum(addendum)
    db.refresh(addendum)
    assert addendum.status == AddendumStatus.DRAFT

    machine.update_terms(lease, {"tenant_ids": [tenants[0].id, tenants[1].id]})
    for token in machine.send_for_signature(lease):
        sign_with_token(token)

    tokens = machine.send_addendum(addendum)

    assert addendum.signatures_required == 2
    assert sorted(t.signer_id for t in tokens) == sorted(t.id for t in tenants)
    with pytest.raises(InvalidDocumentState):
        machine.update_terms(lease, {"tenant_ids": [tenants[0].id]})


def test_sent_addendum_cannot_be_edited(active_lease, machine):
    lease = active_lease()
    addendum = machine.create_addendum(lease, title="Parking", content="Space 12.")
    machine.send_addendum(addendum)

    with pytest.raises(InvalidDocumentState):
        machine.update_addendum(addendum, {"content": "Space 14."})


def test_terminated_lease_cannot_be_amended(active_lease, machine):
    lease = active_lease()
    machine.terminate(lease)

    with pytest.raises(LeaseNotActive):
        machine.create_addendum(lease, title="Late", content="Too late.")
