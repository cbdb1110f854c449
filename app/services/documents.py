"""
Signable document helpers shared by the token issuer, the signature
collector and the lease state machine.

A document is addressed as (document_type, document_id); a signer as
(signer_role, signer_id). Leases need every tenant plus the landlord's
countersignature; addendums need every tenant of the parent lease.
"""
from __future__ import annotations

import hashlib
import uuid
from typing import List, NamedTuple, Union

from sqlalchemy.orm import Session

from app.core.exceptions import AddendumNotFound, LeaseNotFound
from app.models.lease import AddendumStatus, Lease, LeaseAddendum, LeaseStatus
from app.models.signature import DocumentType, SignerRole

Document = Union[Lease, LeaseAddendum]


class DocumentRef(NamedTuple):
    document_type: DocumentType
    document_id: uuid.UUID

    @classmethod
    def of(cls, document: Document) -> "DocumentRef":
        if isinstance(document, LeaseAddendum):
            return cls(DocumentType.ADDENDUM, document.id)
        return cls(DocumentType.LEASE, document.id)


class SignerRef(NamedTuple):
    signer_role: SignerRole
    signer_id: uuid.UUID


# Status a document must be in to accept signatures
SIGNABLE_STATUS = {
    DocumentType.LEASE: LeaseStatus.PENDING_SIGNATURE,
    DocumentType.ADDENDUM: AddendumStatus.SENT,
}

# Statuses from which tokens may be (re)issued
SENDABLE_STATUSES = {
    DocumentType.LEASE: (LeaseStatus.DRAFT, LeaseStatus.PENDING_SIGNATURE),
    DocumentType.ADDENDUM: (AddendumStatus.DRAFT, AddendumStatus.SENT),
}


def load_document(db: Session, ref: DocumentRef) -> Document:
    if ref.document_type == DocumentType.ADDENDUM:
        addendum = db.get(LeaseAddendum, ref.document_id)
        if not addendum:
            raise AddendumNotFound()
        return addendum
    lease = db.get(Lease, ref.document_id)
    if not lease:
        raise LeaseNotFound()
    return lease


def required_signers(document: Document) -> List[SignerRef]:
    if isinstance(document, LeaseAddendum):
        return [SignerRef(SignerRole.TENANT, lt.tenant_id) for lt in document.lease.tenants]
    signers = [SignerRef(SignerRole.TENANT, lt.tenant_id) for lt in document.tenants]
    signers.append(SignerRef(SignerRole.LANDLORD, document.landlord_id))
    return signers


def content_hash(content: str) -> str:
    return hashlib.sha256((content or "").encode("utf-8")).hexdigest()


def document_label(document: Document) -> str:
    if isinstance(document, LeaseAddendum):
        return f"Lease addendum: {document.title}"
    return "Lease agreement"
