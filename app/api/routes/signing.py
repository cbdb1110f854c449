"""
Public Signing Routes (no auth; the signing token is the credential)

  GET    /api/sign/{token}   – resolve link → document for review
  POST   /api/sign/{token}   – submit signature → status + remainingSignatures
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.api.routes.leases import addendum_to_out, lease_to_out, signing_metadata
from app.core.deps import get_signature_collector, get_token_issuer
from app.database import get_db
from app.models.lease import LeaseAddendum
from app.models.signature import SignerRole, SigningToken
from app.models.tenant import Tenant
from app.schemas.lease import SignRequest
from app.services.documents import load_document
from app.services.signature_collector import SignatureArtifact, SignatureCollector
from app.services.signing_tokens import SigningTokenIssuer

router = APIRouter(prefix="/sign", tags=["Signing"])
logger = logging.getLogger(__name__)


@router.get("/{token}")
def load_signing_page(
    token: str,
    db: Session = Depends(get_db),
    issuer: SigningTokenIssuer = Depends(get_token_issuer),
):
    document_ref, signer_ref = issuer.resolve(token)
    document = load_document(db, document_ref)
    row = db.query(SigningToken).filter(SigningToken.token == token).first()

    if signer_ref.signer_role == SignerRole.LANDLORD:
        lease = document if not isinstance(document, LeaseAddendum) else document.lease
        signer = {"name": lease.landlord_name, "email": lease.landlord_email}
    else:
        tenant = db.get(Tenant, signer_ref.signer_id)
        signer = {
            "name": tenant.full_name if tenant else None,
            "email": tenant.email if tenant else None,
        }

    if isinstance(document, LeaseAddendum):
        body = addendum_to_out(document, db, detail=True)
    else:
        body = lease_to_out(document, db, detail=True)

    return {
        "document_type": document_ref.document_type.value,
        "document": body,
        "signer": {
            "role": signer_ref.signer_role.value,
            "id": str(signer_ref.signer_id),
            **signer,
        },
        "expires_at": row.expires_at.isoformat() if row else None,
    }


@router.post("/{token}")
def submit_signature(
    token: str,
    payload: SignRequest,
    request: Request,
    issuer: SigningTokenIssuer = Depends(get_token_issuer),
    collector: SignatureCollector = Depends(get_signature_collector),
):
    document_ref, signer_ref = issuer.resolve(token)
    result = collector.record_signature(
        document_ref,
        signer_ref,
        SignatureArtifact(
            signature_type=payload.signature_type,
            signature_data=payload.signature_data,
            full_name=payload.full_name,
            email=payload.email,
        ),
        signing_metadata(payload, request),
        token=token,
    )
    return {
        "success": True,
        "document_type": document_ref.document_type.value,
        "document_id": str(document_ref.document_id),
        "status": result.document_status.value,
        "activated": result.activated,
        "remainingSignatures": result.remaining_signatures,
        "signed_at": result.signature.signed_at.isoformat(),
    }
