"""
Lease State Machine

Lease:     DRAFT → PENDING_SIGNATURE → ACTIVE → TERMINATED
                                        └─→ EXPIRED (derived: today > end_date)
Addendum:  DRAFT → SENT → ACTIVE
                    └──→ VOID

Every status change is a conditional UPDATE on the expected source status,
so two concurrent requests can never both perform the same transition.
"""
from __future__ import annotations

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.core.exceptions import (
    IncompleteLeaseTerms,
    InvalidDocumentState,
    LeaseNotActive,
    NoActiveLease,
    UnauthorizedSigner,
    ValidationFailed,
)
from app.db.base import utcnow
from app.models.lease import (
    AddendumStatus,
    LateFeeType,
    Lease,
    LeaseAddendum,
    LeaseStatus,
    LeaseTenant,
)
from app.models.signature import Signature, SignerRole, SigningToken
from app.models.tenant import Tenant
from app.services.documents import (
    Document,
    DocumentRef,
    SignerRef,
    content_hash,
    document_label,
    required_signers,
)
from app.services.notifications import DomainEvent, EventSink, get_event_sink
from app.services.signing_tokens import SigningTokenIssuer

logger = logging.getLogger(__name__)

TERM_FIELDS = {
    "unit_id", "start_date", "end_date", "monthly_rent", "security_deposit",
    "late_fee_type", "late_fee_amount", "grace_period_days", "rent_due_day",
    "terms", "document_url", "document_hash", "landlord_name", "landlord_email",
}
# Editable after the lease leaves DRAFT
BOUNDED_FIELDS = {"monthly_rent", "end_date", "late_fee_type", "late_fee_amount"}
ADDENDUM_FIELDS = {"title", "content", "document_url", "document_hash", "effective_date"}


def effective_status(lease: Lease, today: Optional[date] = None) -> LeaseStatus:
    """Stored status with expiry applied. Never writes."""
    today = today or utcnow().date()
    if lease.status == LeaseStatus.ACTIVE and lease.end_date and today > lease.end_date:
        return LeaseStatus.EXPIRED
    return lease.status


class LeaseStateMachine:

    def __init__(
        self,
        db: Session,
        events: Optional[EventSink] = None,
        issuer: Optional[SigningTokenIssuer] = None,
    ):
        self.db = db
        self.events = events or get_event_sink()
        self.issuer = issuer or SigningTokenIssuer(db)

    # ═══════════════════════════════════════════════════════════════
    # LEASE
    # ═══════════════════════════════════════════════════════════════

    def create_lease(
        self,
        landlord_id: uuid.UUID,
        tenant_ids: List[uuid.UUID],
        primary_tenant_id: Optional[uuid.UUID] = None,
        organization_id: Optional[uuid.UUID] = None,
        **fields: Any,
    ) -> Lease:
        unknown = set(fields) - TERM_FIELDS
        if unknown:
            raise ValidationFailed(f"Unknown lease fields: {', '.join(sorted(unknown))}")

        lease = Lease(
            landlord_id=landlord_id,
            organization_id=organization_id,
            status=LeaseStatus.DRAFT,
            late_fee_type=fields.pop("late_fee_type", None) or LateFeeType.FLAT,
            grace_period_days=_default(fields.pop("grace_period_days", None), 5),
            rent_due_day=_default(fields.pop("rent_due_day", None), 1),
            security_deposit=_default(fields.pop("security_deposit", None), Decimal("0")),
            **fields,
        )
        self._validate_terms(lease)
        self._set_tenants(lease, tenant_ids, primary_tenant_id)

        self.db.add(lease)
        self.db.commit()
        self.db.refresh(lease)

        logger.info(f"[LEASE] Created draft {lease.id} with {len(tenant_ids)} tenant(s)")
        return lease

    def update_terms(self, lease: Lease, changes: Dict[str, Any]) -> Lease:
        if lease.status == LeaseStatus.TERMINATED:
            raise InvalidDocumentState("Terminated leases cannot be edited")

        tenant_ids = changes.pop("tenant_ids", None)
        primary_tenant_id = changes.pop("primary_tenant_id", None)

        allowed = TERM_FIELDS if lease.status == LeaseStatus.DRAFT else BOUNDED_FIELDS
        rejected = set(changes) - allowed
        if (tenant_ids is not None or primary_tenant_id is not None) and lease.status != LeaseStatus.DRAFT:
            rejected.add("tenants")
        if rejected:
            raise InvalidDocumentState(
                f"Cannot change {', '.join(sorted(rejected))} on a {lease.status.value} lease"
            )

        for key, value in changes.items():
            setattr(lease, key, value)
        self._validate_terms(lease)

        if tenant_ids is not None or primary_tenant_id is not None:
            new_ids = tenant_ids if tenant_ids is not None else [lt.tenant_id for lt in lease.tenants]
            primary = lease.primary_tenant.tenant_id if lease.primary_tenant else None
            if primary_tenant_id is None and primary in new_ids:
                primary_tenant_id = primary
            lease.tenants.clear()
            self.db.flush()
            self._set_tenants(lease, new_ids, primary_tenant_id)

        self.db.commit()
        self.db.refresh(lease)
        logger.info(f"[LEASE] Updated {lease.id}: {sorted(changes)}")
        return lease

    def send_for_signature(self, lease: Lease) -> List[SigningToken]:
        self._require_complete(lease)

        moved = self._transition(
            Lease, lease.id, [LeaseStatus.DRAFT],
            status=LeaseStatus.PENDING_SIGNATURE,
            signatures_required=len(lease.tenants) + 1,
            signatures_collected=0,
            sent_at=utcnow(),
        )
        if not moved:
            self.db.rollback()
            raise InvalidDocumentState("Only DRAFT leases can be sent for signature")
        self.db.refresh(lease)

        tokens = self._issue_links(lease, required_signers(lease))
        self.db.commit()

        logger.info(f"[LEASE] {lease.id} sent for signature ({len(tokens)} signer(s))")
        self._emit_links(lease, tokens)
        return tokens

    def resend(self, lease: Lease, signer: Optional[SignerRef] = None) -> List[SigningToken]:
        if lease.status != LeaseStatus.PENDING_SIGNATURE:
            raise InvalidDocumentState("Signing links can only be re-sent while awaiting signatures")
        return self._resend(lease, signer)

    def on_signature_complete(self, lease: Lease) -> bool:
        """
        Activate the lease if every required signature is on file.
        Runs inside the caller's signing transaction; returns True only for
        the one transaction that performed the activation.
        """
        return self._activate_if_complete(Lease, lease, LeaseStatus.PENDING_SIGNATURE, LeaseStatus.ACTIVE)

    def terminate(self, lease: Lease, effective_date: Optional[date] = None) -> Lease:
        today = utcnow().date()
        if effective_status(lease, today) != LeaseStatus.ACTIVE:
            raise NoActiveLease("Only active leases can be terminated")

        effective_date = effective_date or today
        if lease.start_date and effective_date < lease.start_date:
            raise ValidationFailed("Termination date cannot precede the lease start date")

        result = self.db.execute(
            update(Lease)
            .where(
                Lease.id == lease.id,
                Lease.status == LeaseStatus.ACTIVE,
                (Lease.end_date.is_(None)) | (Lease.end_date >= today),
            )
            .values(
                status=LeaseStatus.TERMINATED,
                terminated_at=utcnow(),
                termination_date=effective_date,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise NoActiveLease("Only active leases can be terminated")

        self.db.commit()
        self.db.refresh(lease)
        logger.info(f"[LEASE] {lease.id} terminated effective {effective_date}")
        self.events.emit(DomainEvent("lease.terminated", {
            "lease_id": str(lease.id),
            "termination_date": effective_date.isoformat(),
        }))
        return lease

    def effective_status(self, lease: Lease, today: Optional[date] = None) -> LeaseStatus:
        return effective_status(lease, today)

    # ═══════════════════════════════════════════════════════════════
    # ADDENDUM
    # ═══════════════════════════════════════════════════════════════

    def create_addendum(
        self,
        lease: Lease,
        title: str = "",
        content: str = "",
        document_url: Optional[str] = None,
        document_hash: Optional[str] = None,
        effective_date: Optional[date] = None,
    ) -> LeaseAddendum:
        self._require_amendable(lease)
        addendum = LeaseAddendum(
            lease_id=lease.id,
            title=title or "",
            content=content or "",
            document_url=document_url,
            document_hash=document_hash or content_hash(content),
            effective_date=effective_date,
            status=AddendumStatus.DRAFT,
        )
        self.db.add(addendum)
        self.db.commit()
        self.db.refresh(addendum)
        logger.info(f"[LEASE] Addendum {addendum.id} drafted for lease {lease.id}")
        return addendum

    def update_addendum(self, addendum: LeaseAddendum, changes: Dict[str, Any]) -> LeaseAddendum:
        if addendum.status != AddendumStatus.DRAFT:
            raise InvalidDocumentState("Only draft addendums can be edited")
        rejected = set(changes) - ADDENDUM_FIELDS
        if rejected:
            raise ValidationFailed(f"Unknown addendum fields: {', '.join(sorted(rejected))}")

        for key, value in changes.items():
            setattr(addendum, key, value)
        if "content" in changes and "document_hash" not in changes:
            addendum.document_hash = content_hash(addendum.content)

        self.db.commit()
        self.db.refresh(addendum)
        return addendum

    def send_addendum(self, addendum: LeaseAddendum) -> List[SigningToken]:
        if not addendum.title.strip() or not addendum.content.strip():
            raise InvalidDocumentState("Addendum needs a title and content before it can be sent")
        lease = addendum.lease
        self._require_amendable(lease)
        # Tenants are fixed once the lease leaves DRAFT
        if lease.status == LeaseStatus.DRAFT:
            raise InvalidDocumentState("Send the lease for signature before sending an addendum")
        if not lease.tenants:
            raise IncompleteLeaseTerms("Lease has no tenants to sign the addendum")

        moved = self._transition(
            LeaseAddendum, addendum.id, [AddendumStatus.DRAFT],
            status=AddendumStatus.SENT,
            signatures_required=len(lease.tenants),
            signatures_collected=0,
            sent_at=utcnow(),
        )
        if not moved:
            self.db.rollback()
            raise InvalidDocumentState("Only draft addendums can be sent")
        self.db.refresh(addendum)

        tokens = self._issue_links(addendum, required_signers(addendum))
        self.db.commit()

        logger.info(f"[LEASE] Addendum {addendum.id} sent to {len(tokens)} tenant(s)")
        self._emit_links(addendum, tokens)
        return tokens

    def resend_addendum(
        self, addendum: LeaseAddendum, signer: Optional[SignerRef] = None
    ) -> List[SigningToken]:
        if addendum.status != AddendumStatus.SENT:
            raise InvalidDocumentState("Signing links can only be re-sent while awaiting signatures")
        return self._resend(addendum, signer)

    def on_addendum_signature_complete(self, addendum: LeaseAddendum) -> bool:
        return self._activate_if_complete(
            LeaseAddendum, addendum, AddendumStatus.SENT, AddendumStatus.ACTIVE
        )

    def void_addendum(self, addendum: LeaseAddendum) -> LeaseAddendum:
        moved = self._transition(
            LeaseAddendum, addendum.id, [AddendumStatus.SENT],
            status=AddendumStatus.VOID,
            voided_at=utcnow(),
        )
        if not moved:
            self.db.rollback()
            raise InvalidDocumentState("Only addendums awaiting signature can be voided")
        self.issuer.revoke_document(DocumentRef.of(addendum))
        self.db.commit()
        self.db.refresh(addendum)

        logger.info(f"[LEASE] Addendum {addendum.id} voided")
        self.events.emit(DomainEvent("addendum.voided", {
            "addendum_id": str(addendum.id),
            "lease_id": str(addendum.lease_id),
        }))
        return addendum

    # ═══════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════

    def _transition(self, model, obj_id, from_statuses: Iterable, **values) -> bool:
        result = self.db.execute(
            update(model)
            .where(model.id == obj_id, model.status.in_(list(from_statuses)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _activate_if_complete(self, model, document: Document, signable, active) -> bool:
        ref = DocumentRef.of(document)
        signed = (
            select(func.count(Signature.id))
            .where(
                Signature.document_type == ref.document_type,
                Signature.document_id == ref.document_id,
            )
            .scalar_subquery()
        )
        result = self.db.execute(
            update(model)
            .where(
                model.id == document.id,
                model.status == signable,
                model.signatures_required > 0,
                signed >= model.signatures_required,
            )
            .values(status=active, activated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        activated = result.rowcount == 1
        if activated:
            logger.info(f"[LEASE] {ref.document_type.value} {document.id} fully signed → {active.value}")
        return activated

    def _resend(self, document: Document, signer: Optional[SignerRef]) -> List[SigningToken]:
        ref = DocumentRef.of(document)
        required = required_signers(document)
        if signer is not None:
            if signer not in required:
                raise UnauthorizedSigner()
            targets = [signer]
        else:
            signed = {
                SignerRef(role, sid)
                for role, sid in self.db.query(Signature.signer_role, Signature.signer_id).filter(
                    Signature.document_type == ref.document_type,
                    Signature.document_id == ref.document_id,
                )
            }
            targets = [s for s in required if s not in signed]

        tokens = self._issue_links(document, targets)
        self.db.commit()
        logger.info(f"[LEASE] Re-sent {len(tokens)} link(s) for {ref.document_type.value} {document.id}")
        self._emit_links(document, tokens)
        return tokens

    def _issue_links(self, document: Document, signers: List[SignerRef]) -> List[SigningToken]:
        ref = DocumentRef.of(document)
        return [self.issuer.issue(ref, signer) for signer in signers]

    def _emit_links(self, document: Document, tokens: List[SigningToken]) -> None:
        label = document_label(document)
        for token in tokens:
            name, email = self._signer_contact(document, token.signer_role, token.signer_id)
            self.events.emit(DomainEvent("signing.link_issued", {
                "document_type": token.document_type.value,
                "document_id": str(token.document_id),
                "signer_role": token.signer_role.value,
                "signer_id": str(token.signer_id),
                "token": token.token,
                "expires_at": token.expires_at,
                "name": name,
                "email": email,
                "label": label,
            }))

    def _signer_contact(self, document: Document, role: SignerRole, signer_id):
        if role == SignerRole.LANDLORD:
            lease = document if isinstance(document, Lease) else document.lease
            return lease.landlord_name, lease.landlord_email
        tenant = self.db.get(Tenant, signer_id)
        return (tenant.full_name, tenant.email) if tenant else (None, None)

    def _set_tenants(self, lease: Lease, tenant_ids, primary_tenant_id) -> None:
        tenant_ids = list(tenant_ids or [])
        if len(set(tenant_ids)) != len(tenant_ids):
            raise ValidationFailed("A tenant can only appear once on a lease")
        if primary_tenant_id is None and tenant_ids:
            primary_tenant_id = tenant_ids[0]
        if primary_tenant_id is not None and primary_tenant_id not in tenant_ids:
            raise ValidationFailed("Primary tenant must be one of the lease tenants")

        if tenant_ids:
            found = self.db.query(func.count(Tenant.id)).filter(Tenant.id.in_(tenant_ids)).scalar()
            if found != len(tenant_ids):
                raise ValidationFailed("One or more tenants do not exist")

        for position, tenant_id in enumerate(tenant_ids):
            lease.tenants.append(LeaseTenant(
                tenant_id=tenant_id,
                position=position,
                is_primary=tenant_id == primary_tenant_id,
            ))

    @staticmethod
    def _validate_terms(lease: Lease) -> None:
        if lease.start_date and lease.end_date and lease.end_date <= lease.start_date:
            raise ValidationFailed("Lease end date must be after the start date")
        if lease.rent_due_day is not None and not 1 <= lease.rent_due_day <= 28:
            raise ValidationFailed("Rent due day must be between 1 and 28")
        if lease.grace_period_days is not None and lease.grace_period_days < 0:
            raise ValidationFailed("Grace period cannot be negative")
        if lease.monthly_rent is not None and lease.monthly_rent <= 0:
            raise ValidationFailed("Monthly rent must be positive")
        if lease.late_fee_amount is not None and lease.late_fee_amount < 0:
            raise ValidationFailed("Late fee amount cannot be negative")

    @staticmethod
    def _require_complete(lease: Lease) -> None:
        missing = []
        if not lease.unit_id:
            missing.append("unit")
        if not lease.tenants:
            missing.append("tenants")
        elif sum(1 for lt in lease.tenants if lt.is_primary) != 1:
            missing.append("primary tenant")
        if not lease.start_date:
            missing.append("start date")
        if not lease.end_date:
            missing.append("end date")
        if not lease.monthly_rent:
            missing.append("monthly rent")
        if missing:
            raise IncompleteLeaseTerms(f"Lease is missing: {', '.join(missing)}")

    @staticmethod
    def _require_amendable(lease: Lease) -> None:
        if effective_status(lease) in (LeaseStatus.TERMINATED, LeaseStatus.EXPIRED):
            raise LeaseNotActive("Cannot amend a terminated or expired lease")


def _default(value, fallback):
    return fallback if value is None else value
