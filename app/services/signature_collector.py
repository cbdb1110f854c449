"""
Signature Collector

Records one signer's signature on a lease or addendum and decides, inside the
same database transaction, whether that signature completed the document.

Completion is never read-then-write: the signature count is incremented with
an in-database ``col = col + 1`` (which takes the document's row lock) and the
activation UPDATE re-counts the signatures table in its WHERE clause. Two
final signers racing each other therefore activate the document exactly once.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import (
    DuplicateSignature,
    InvalidDocumentState,
    UnauthorizedSigner,
    ValidationFailed,
)
from app.db.base import utcnow
from app.models.lease import Lease, LeaseAddendum
from app.models.signature import DocumentType, Signature
from app.models.tenant import Tenant
from app.services.documents import (
    SIGNABLE_STATUS,
    Document,
    DocumentRef,
    SignerRef,
    document_label,
    load_document,
    required_signers,
)
from app.services.lease_state_machine import LeaseStateMachine
from app.services.notifications import DomainEvent, EventSink, get_event_sink
from app.services.signing_tokens import SigningTokenIssuer

logger = logging.getLogger(__name__)

SIGNATURE_TYPES = ("typed", "drawn")


@dataclass
class SignatureArtifact:
    signature_type: str
    signature_data: str
    full_name: str
    email: Optional[str] = None


@dataclass
class SignatureResult:
    signature: Signature
    document_status: Any
    activated: bool
    remaining_signatures: int
    events: List[DomainEvent] = field(default_factory=list)


def signature_hash(
    document_ref: DocumentRef,
    signer_ref: SignerRef,
    artifact: SignatureArtifact,
    document_hash: Optional[str],
    signed_at: datetime,
) -> str:
    raw = "|".join([
        document_ref.document_type.value,
        str(document_ref.document_id),
        signer_ref.signer_role.value,
        str(signer_ref.signer_id),
        artifact.full_name,
        artifact.email or "",
        document_hash or "",
        signed_at.isoformat(),
    ])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class SignatureCollector:

    def __init__(
        self,
        db: Session,
        events: Optional[EventSink] = None,
        issuer: Optional[SigningTokenIssuer] = None,
        state_machine: Optional[LeaseStateMachine] = None,
    ):
        self.db = db
        self.events = events or get_event_sink()
        self.issuer = issuer or SigningTokenIssuer(db)
        self.state_machine = state_machine or LeaseStateMachine(db, self.events, self.issuer)

    def record_signature(
        self,
        document_ref: DocumentRef,
        signer_ref: SignerRef,
        artifact: SignatureArtifact,
        metadata: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> SignatureResult:
        if artifact.signature_type not in SIGNATURE_TYPES:
            raise ValidationFailed("signature_type must be 'typed' or 'drawn'")
        if not (artifact.signature_data or "").strip() or not (artifact.full_name or "").strip():
            raise ValidationFailed("Signature and full name are required")

        try:
            document = load_document(self.db, document_ref)
            if document.status != SIGNABLE_STATUS[document_ref.document_type]:
                raise InvalidDocumentState(
                    f"Document is {document.status.value}; it is not awaiting signatures"
                )
            if signer_ref not in required_signers(document):
                raise UnauthorizedSigner()

            if token is not None:
                token_doc, token_signer = self.issuer.consume(token)
                if token_doc != document_ref or token_signer != signer_ref:
                    raise UnauthorizedSigner("Signing link does not belong to this signer")

            if self._already_signed(document_ref, signer_ref):
                raise DuplicateSignature()

            signed_at = utcnow()
            signature = Signature(
                document_type=document_ref.document_type,
                document_id=document_ref.document_id,
                signer_role=signer_ref.signer_role,
                signer_id=signer_ref.signer_id,
                signature_type=artifact.signature_type,
                signature_data=artifact.signature_data,
                signing_metadata={
                    **(metadata or {}),
                    "full_name": artifact.full_name,
                    "email": artifact.email,
                    "document_hash": document.document_hash,
                },
                signature_hash=signature_hash(
                    document_ref, signer_ref, artifact, document.document_hash, signed_at
                ),
                signed_at=signed_at,
            )
            self.db.add(signature)
            try:
                self.db.flush()
            except IntegrityError as exc:
                raise DuplicateSignature() from exc

            model = LeaseAddendum if document_ref.document_type == DocumentType.ADDENDUM else Lease
            self.db.execute(
                update(model)
                .where(model.id == document_ref.document_id)
                .values(signatures_collected=model.signatures_collected + 1)
                .execution_options(synchronize_session=False)
            )

            if isinstance(document, LeaseAddendum):
                activated = self.state_machine.on_addendum_signature_complete(document)
            else:
                activated = self.state_machine.on_signature_complete(document)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(document)
        remaining = self.remaining_signatures(document_ref)
        logger.info(
            f"[SIGN] {signer_ref.signer_role.value} {signer_ref.signer_id} signed "
            f"{document_ref.document_type.value} {document_ref.document_id} "
            f"({remaining} remaining)"
        )

        events = [DomainEvent("signature.recorded", {
            "document_type": document_ref.document_type.value,
            "document_id": str(document_ref.document_id),
            "signer_role": signer_ref.signer_role.value,
            "signer_id": str(signer_ref.signer_id),
            "remaining_signatures": remaining,
        })]
        if activated:
            events.append(self._activation_event(document))
        self.events.emit_all(events)

        return SignatureResult(
            signature=signature,
            document_status=document.status,
            activated=activated,
            remaining_signatures=remaining,
            events=events,
        )

    def required_signers(self, document_ref: DocumentRef) -> List[SignerRef]:
        return required_signers(load_document(self.db, document_ref))

    def unsigned_signers(self, document_ref: DocumentRef) -> List[SignerRef]:
        signed = self._signed_refs(document_ref)
        return [s for s in self.required_signers(document_ref) if s not in signed]

    def is_complete(self, document_ref: DocumentRef) -> bool:
        return not self.unsigned_signers(document_ref)

    def remaining_signatures(self, document_ref: DocumentRef) -> int:
        return len(self.unsigned_signers(document_ref))

    # ═══════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════

    def _signed_refs(self, document_ref: DocumentRef) -> set:
        rows = self.db.query(Signature.signer_role, Signature.signer_id).filter(
            Signature.document_type == document_ref.document_type,
            Signature.document_id == document_ref.document_id,
        )
        return {SignerRef(role, signer_id) for role, signer_id in rows}

    def _already_signed(self, document_ref: DocumentRef, signer_ref: SignerRef) -> bool:
        return signer_ref in self._signed_refs(document_ref)

    def _activation_event(self, document: Document) -> DomainEvent:
        lease = document if isinstance(document, Lease) else document.lease
        recipients = []
        for lt in lease.tenants:
            tenant = self.db.get(Tenant, lt.tenant_id)
            if tenant:
                recipients.append({"name": tenant.full_name, "email": tenant.email})
        if lease.landlord_email:
            recipients.append({"name": lease.landlord_name, "email": lease.landlord_email})

        if isinstance(document, LeaseAddendum):
            return DomainEvent("addendum.activated", {
                "addendum_id": str(document.id),
                "lease_id": str(lease.id),
                "label": document_label(document),
                "recipients": recipients,
            })
        return DomainEvent("lease.activated", {
            "lease_id": str(lease.id),
            "label": document_label(document),
            "recipients": recipients,
        })
