"""
Lease Execution Routes
Staff endpoints use a bearer JWT; tenant signing lives in signing.py (token-based).

  POST   /api/leases/                                 – create draft lease
  GET    /api/leases/                                 – list (status filter, EXPIRED derived)
  GET    /api/leases/{id}                             – detail + signature progress
  PUT    /api/leases/{id}                             – update terms (bounded after DRAFT)
  POST   /api/leases/{id}/send-for-signature          – DRAFT → PENDING_SIGNATURE, mint links
  POST   /api/leases/{id}/resend                      – re-issue unsigned signers' links
  POST   /api/leases/{id}/countersign                 – landlord signs
  POST   /api/leases/{id}/terminate                   – ACTIVE → TERMINATED
  POST   /api/leases/{id}/addendums                   – draft addendum
  GET    /api/leases/{id}/addendums                   – list addendums
  PUT    /api/leases/{id}/addendums/{aid}             – edit draft addendum
  POST   /api/leases/{id}/addendums/{aid}/send        – DRAFT → SENT, mint links
  POST   /api/leases/{id}/addendums/{aid}/resend      – re-issue links
  POST   /api/leases/{id}/addendums/{aid}/void        – SENT → VOID
"""
import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.deps import get_signature_collector, get_state_machine
from app.core.exceptions import AddendumNotFound, LeaseNotFound, ValidationFailed
from app.core.security import StaffContext, get_current_staff
from app.database import get_db
from app.db.base import utcnow
from app.models.lease import Lease, LeaseAddendum, LeaseStatus
from app.models.signature import DocumentType, Signature, SignerRole, SigningToken
from app.models.tenant import Tenant
from app.schemas.lease import (
    AddendumCreate, AddendumUpdate, LeaseCreate, LeaseUpdate,
    ResendRequest, SignRequest, TerminateRequest,
)
from app.services.documents import DocumentRef, SignerRef, required_signers
from app.services.lease_state_machine import LeaseStateMachine, effective_status
from app.services.late_fees import late_after
from app.services.notifications import signing_url
from app.services.signature_collector import SignatureArtifact, SignatureCollector

router = APIRouter(prefix="/leases", tags=["Leases"])
logger = logging.getLogger(__name__)


# ═══════════════════════ HELPERS ═══════════════════════

def _fmt(value) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def _money(value) -> Optional[str]:
    return None if value is None else str(value)


def get_lease_or_404(lease_id: UUID, db: Session) -> Lease:
    lease = db.get(Lease, lease_id)
    if not lease:
        raise LeaseNotFound()
    return lease


def get_addendum_or_404(lease_id: UUID, addendum_id: UUID, db: Session) -> LeaseAddendum:
    addendum = (
        db.query(LeaseAddendum)
        .filter(LeaseAddendum.id == addendum_id, LeaseAddendum.lease_id == lease_id)
        .first()
    )
    if not addendum:
        raise AddendumNotFound()
    return addendum


def signature_progress(document, db: Session) -> dict:
    """Per-signer status for the UI. Activation never reads this."""
    ref = DocumentRef.of(document)
    signatures = {
        (s.signer_role, s.signer_id): s
        for s in db.query(Signature).filter(
            Signature.document_type == ref.document_type,
            Signature.document_id == ref.document_id,
        )
    }
    signers = []
    for signer in required_signers(document):
        sig = signatures.get((signer.signer_role, signer.signer_id))
        signers.append({
            "signer_role": signer.signer_role.value,
            "signer_id": str(signer.signer_id),
            "signed": sig is not None,
            "signed_at": _fmt(sig.signed_at) if sig else None,
            "signature_type": sig.signature_type if sig else None,
        })
    return {
        "signatures_required": document.signatures_required,
        "signatures_collected": document.signatures_collected,
        "remaining_signatures": sum(1 for s in signers if not s["signed"]),
        "signers": signers,
    }


def lease_to_out(lease: Lease, db: Session, detail: bool = False) -> dict:
    """Serialise a Lease ORM object for the API."""
    tenants = []
    for lt in lease.tenants:
        tenant = db.get(Tenant, lt.tenant_id)
        tenants.append({
            "tenant_id": str(lt.tenant_id),
            "full_name": tenant.full_name if tenant else None,
            "email": tenant.email if tenant else None,
            "is_primary": lt.is_primary,
        })

    out = {
        "id": str(lease.id),
        "organization_id": str(lease.organization_id) if lease.organization_id else None,
        "landlord_id": str(lease.landlord_id),
        "landlord_name": lease.landlord_name,
        "landlord_email": lease.landlord_email,
        "unit_id": str(lease.unit_id) if lease.unit_id else None,
        "status": effective_status(lease).value,
        "stored_status": lease.status.value,
        "tenants": tenants,
        "start_date": _fmt(lease.start_date),
        "end_date": _fmt(lease.end_date),
        "monthly_rent": _money(lease.monthly_rent),
        "security_deposit": _money(lease.security_deposit),
        "late_fee_type": lease.late_fee_type.value,
        "late_fee_amount": _money(lease.late_fee_amount),
        "grace_period_days": lease.grace_period_days,
        "rent_due_day": lease.rent_due_day,
        "terms": lease.terms or {},
        "document_url": lease.document_url,
        "document_hash": lease.document_hash,
        "signatures_required": lease.signatures_required,
        "signatures_collected": lease.signatures_collected,
        "sent_at": _fmt(lease.sent_at),
        "activated_at": _fmt(lease.activated_at),
        "terminated_at": _fmt(lease.terminated_at),
        "termination_date": _fmt(lease.termination_date),
        "created_at": _fmt(lease.created_at),
        "updated_at": _fmt(lease.updated_at),
    }
    if detail:
        out["signature_progress"] = signature_progress(lease, db)
        if lease.status == LeaseStatus.ACTIVE:
            out["late_after"] = _fmt(late_after(lease, utcnow().date()))
    return out


def addendum_to_out(addendum: LeaseAddendum, db: Session, detail: bool = False) -> dict:
    out = {
        "id": str(addendum.id),
        "lease_id": str(addendum.lease_id),
        "title": addendum.title,
        "content": addendum.content,
        "document_url": addendum.document_url,
        "document_hash": addendum.document_hash,
        "effective_date": _fmt(addendum.effective_date),
        "status": addendum.status.value,
        "signatures_required": addendum.signatures_required,
        "signatures_collected": addendum.signatures_collected,
        "sent_at": _fmt(addendum.sent_at),
        "activated_at": _fmt(addendum.activated_at),
        "voided_at": _fmt(addendum.voided_at),
        "created_at": _fmt(addendum.created_at),
    }
    if detail:
        out["signature_progress"] = signature_progress(addendum, db)
    return out


def links_to_out(tokens: List[SigningToken]) -> List[dict]:
    return [
        {
            "signer_role": t.signer_role.value,
            "signer_id": str(t.signer_id),
            "signing_url": signing_url(t.token),
            "token": t.token,
            "expires_at": _fmt(t.expires_at),
        }
        for t in tokens
    ]


def signing_metadata(payload: SignRequest, request: Request) -> dict:
    return {
        "consent_electronic_records": payload.consent_electronic_records,
        "consent_terms": payload.consent_terms,
        "consent_at": payload.consent_at or utcnow().isoformat(),
        "view_duration_seconds": payload.view_duration_seconds,
        "ip_address": payload.ip_address or (request.client.host if request.client else None),
        "user_agent": payload.user_agent or request.headers.get("user-agent"),
    }


def _signer_from(payload: ResendRequest) -> Optional[SignerRef]:
    if payload.signer_id is None:
        return None
    try:
        role = SignerRole(payload.signer_role or SignerRole.TENANT.value)
    except ValueError:
        raise ValidationFailed("signer_role must be TENANT or LANDLORD")
    return SignerRef(role, payload.signer_id)


# ═══════════════════════ LEASES ═══════════════════════

@router.post("/", response_model=dict, status_code=status.HTTP_201_CREATED)
def create_lease(
    payload: LeaseCreate,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    machine: LeaseStateMachine = Depends(get_state_machine),
):
    fields = payload.model_dump(exclude={"tenant_ids", "primary_tenant_id"})
    fields["landlord_name"] = fields.get("landlord_name") or staff.full_name
    fields["landlord_email"] = fields.get("landlord_email") or staff.email
    lease = machine.create_lease(
        landlord_id=staff.user_id,
        organization_id=staff.organization_id,
        tenant_ids=payload.tenant_ids,
        primary_tenant_id=payload.primary_tenant_id,
        **fields,
    )
    return lease_to_out(lease, db, detail=True)


@router.get("/", response_model=List[dict])
def list_leases(
    status_filter: Optional[LeaseStatus] = Query(None, alias="status"),
    tenant_id: Optional[UUID] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
):
    today = utcnow().date()
    query = db.query(Lease)

    if status_filter == LeaseStatus.EXPIRED:
        query = query.filter(Lease.status == LeaseStatus.ACTIVE, Lease.end_date < today)
    elif status_filter == LeaseStatus.ACTIVE:
        query = query.filter(
            Lease.status == LeaseStatus.ACTIVE,
            or_(Lease.end_date.is_(None), Lease.end_date >= today),
        )
    elif status_filter is not None:
        query = query.filter(Lease.status == status_filter)

    if tenant_id:
        query = query.filter(Lease.tenants.any(tenant_id=tenant_id))

    leases = query.order_by(Lease.created_at.desc()).offset(skip).limit(limit).all()
    return [lease_to_out(lease, db) for lease in leases]


@router.get("/{lease_id}", response_model=dict)
def get_lease(
    lease_id: UUID,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
):
    return lease_to_out(get_lease_or_404(lease_id, db), db, detail=True)


@router.put("/{lease_id}", response_model=dict)
def update_lease(
    lease_id: UUID,
    payload: LeaseUpdate,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    machine: LeaseStateMachine = Depends(get_state_machine),
):
    lease = get_lease_or_404(lease_id, db)
    lease = machine.update_terms(lease, payload.model_dump(exclude_unset=True))
    return lease_to_out(lease, db, detail=True)


@router.post("/{lease_id}/send-for-signature", response_model=dict)
def send_for_signature(
    lease_id: UUID,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    machine: LeaseStateMachine = Depends(get_state_machine),
):
    lease = get_lease_or_404(lease_id, db)
    tokens = machine.send_for_signature(lease)
    logger.info(f"[LEASE] {lease.id} sent by {staff.user_id}")
    return {**lease_to_out(lease, db, detail=True), "signing_links": links_to_out(tokens)}


@router.post("/{lease_id}/resend", response_model=dict)
def resend_signing_links(
    lease_id: UUID,
    payload: Optional[ResendRequest] = None,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    machine: LeaseStateMachine = Depends(get_state_machine),
):
    lease = get_lease_or_404(lease_id, db)
    tokens = machine.resend(lease, _signer_from(payload or ResendRequest()))
    return {"lease_id": str(lease.id), "signing_links": links_to_out(tokens)}


@router.post("/{lease_id}/countersign", response_model=dict)
def countersign_lease(
    lease_id: UUID,
    payload: SignRequest,
    request: Request,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    collector: SignatureCollector = Depends(get_signature_collector),
):
    lease = get_lease_or_404(lease_id, db)
    result = collector.record_signature(
        DocumentRef(DocumentType.LEASE, lease.id),
        SignerRef(SignerRole.LANDLORD, staff.user_id),
        SignatureArtifact(
            signature_type=payload.signature_type,
            signature_data=payload.signature_data,
            full_name=payload.full_name,
            email=payload.email or staff.email,
        ),
        signing_metadata(payload, request),
    )
    return {
        "lease_id": str(lease.id),
        "status": result.document_status.value,
        "activated": result.activated,
        "remainingSignatures": result.remaining_signatures,
        "signed_at": _fmt(result.signature.signed_at),
    }


@router.post("/{lease_id}/terminate", response_model=dict)
def terminate_lease(
    lease_id: UUID,
    payload: Optional[TerminateRequest] = None,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    machine: LeaseStateMachine = Depends(get_state_machine),
):
    lease = get_lease_or_404(lease_id, db)
    payload = payload or TerminateRequest()
    lease = machine.terminate(lease, payload.termination_date)
    if payload.reason:
        logger.info(f"[LEASE] {lease.id} termination reason: {payload.reason}")
    return lease_to_out(lease, db)


# ═══════════════════════ ADDENDUMS ═══════════════════════

@router.post("/{lease_id}/addendums", response_model=dict, status_code=status.HTTP_201_CREATED)
def create_addendum(
    lease_id: UUID,
    payload: AddendumCreate,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    machine: LeaseStateMachine = Depends(get_state_machine),
):
    lease = get_lease_or_404(lease_id, db)
    addendum = machine.create_addendum(lease, **payload.model_dump())
    return addendum_to_out(addendum, db)


@router.get("/{lease_id}/addendums", response_model=List[dict])
def list_addendums(
    lease_id: UUID,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
):
    lease = get_lease_or_404(lease_id, db)
    return [addendum_to_out(a, db, detail=True) for a in lease.addendums]


@router.put("/{lease_id}/addendums/{addendum_id}", response_model=dict)
def update_addendum(
    lease_id: UUID,
    addendum_id: UUID,
    payload: AddendumUpdate,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    machine: LeaseStateMachine = Depends(get_state_machine),
):
    addendum = get_addendum_or_404(lease_id, addendum_id, db)
    addendum = machine.update_addendum(addendum, payload.model_dump(exclude_unset=True))
    return addendum_to_out(addendum, db)


@router.post("/{lease_id}/addendums/{addendum_id}/send", response_model=dict)
def send_addendum(
    lease_id: UUID,
    addendum_id: UUID,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    machine: LeaseStateMachine = Depends(get_state_machine),
):
    addendum = get_addendum_or_404(lease_id, addendum_id, db)
    tokens = machine.send_addendum(addendum)
    return {**addendum_to_out(addendum, db, detail=True), "signing_links": links_to_out(tokens)}


@router.post("/{lease_id}/addendums/{addendum_id}/resend", response_model=dict)
def resend_addendum(
    lease_id: UUID,
    addendum_id: UUID,
    payload: Optional[ResendRequest] = None,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    machine: LeaseStateMachine = Depends(get_state_machine),
):
    addendum = get_addendum_or_404(lease_id, addendum_id, db)
    tokens = machine.resend_addendum(addendum, _signer_from(payload or ResendRequest()))
    return {"addendum_id": str(addendum.id), "signing_links": links_to_out(tokens)}


@router.post("/{lease_id}/addendums/{addendum_id}/void", response_model=dict)
def void_addendum(
    lease_id: UUID,
    addendum_id: UUID,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    machine: LeaseStateMachine = Depends(get_state_machine),
):
    addendum = get_addendum_or_404(lease_id, addendum_id, db)
    addendum = machine.void_addendum(addendum)
    return addendum_to_out(addendum, db)
