"""
Signing Token Issuer

Mints single-use, expiring signing links for one (document, signer) pair.

  issue()            → new token; supersedes the pair's outstanding links
  resolve()          → read-only lookup for the signing page
  consume()          → atomic single use (conditional UPDATE)
  revoke_document()  → expire every unused link for a document

None of these commit; the caller owns the transaction.
"""
from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    InvalidDocumentState,
    TokenAlreadyUsed,
    TokenExpired,
    TokenNotFound,
    UnauthorizedSigner,
)
from app.db.base import as_utc, utcnow
from app.models.lease import LeaseAddendum
from app.models.signature import Signature, SigningToken
from app.services.documents import (
    SENDABLE_STATUSES,
    DocumentRef,
    SignerRef,
    load_document,
    required_signers,
)

logger = logging.getLogger(__name__)


def generate_token() -> str:
    return secrets.token_urlsafe(32)


class SigningTokenIssuer:

    def __init__(self, db: Session, ttl_hours: Optional[int] = None):
        self.db = db
        self.ttl = timedelta(hours=ttl_hours or settings.SIGNING_TOKEN_TTL_HOURS)

    def issue(
        self,
        document_ref: DocumentRef,
        signer_ref: SignerRef,
        ttl: Optional[timedelta] = None,
    ) -> SigningToken:
        document = load_document(self.db, document_ref)

        if document.status not in SENDABLE_STATUSES[document_ref.document_type]:
            raise InvalidDocumentState(
                f"Cannot issue a signing link for a {document.status.value} document"
            )
        if isinstance(document, LeaseAddendum) and (
            not (document.title or "").strip() or not (document.content or "").strip()
        ):
            raise InvalidDocumentState("Addendum needs a title and content before it can be sent")
        if signer_ref not in required_signers(document):
            raise UnauthorizedSigner()
        if self._has_signed(document_ref, signer_ref):
            raise InvalidDocumentState("Signer has already signed this document")

        now = utcnow()
        self._revoke(document_ref, signer_ref, now)

        token = SigningToken(
            token=generate_token(),
            document_type=document_ref.document_type,
            document_id=document_ref.document_id,
            signer_role=signer_ref.signer_role,
            signer_id=signer_ref.signer_id,
            expires_at=now + (ttl or self.ttl),
            created_at=now,
        )
        self.db.add(token)
        self.db.flush()

        logger.info(
            f"[SIGN] Token issued for {document_ref.document_type.value} {document_ref.document_id} "
            f"→ {signer_ref.signer_role.value} {signer_ref.signer_id}"
        )
        return token

    def resolve(self, token: str) -> Tuple[DocumentRef, SignerRef]:
        row = self._lookup(token)
        self._raise_if_unusable(row)
        return self._refs(row)

    def consume(self, token: str) -> Tuple[DocumentRef, SignerRef]:
        """Mark the token used. Exactly one caller can succeed per token."""
        now = utcnow()
        result = self.db.execute(
            update(SigningToken)
            .where(
                SigningToken.token == token,
                SigningToken.used_at.is_(None),
                SigningToken.expires_at > now,
            )
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        row = self._lookup(token)
        if result.rowcount != 1:
            self._raise_if_unusable(row)
            # Row changed between the update and the re-read
            raise TokenAlreadyUsed()
        return self._refs(row)

    def revoke_document(self, document_ref: DocumentRef) -> int:
        result = self.db.execute(
            update(SigningToken)
            .where(
                SigningToken.document_type == document_ref.document_type,
                SigningToken.document_id == document_ref.document_id,
                SigningToken.used_at.is_(None),
            )
            .values(expires_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(
                f"[SIGN] Revoked {result.rowcount} link(s) for "
                f"{document_ref.document_type.value} {document_ref.document_id}"
            )
        return result.rowcount

    # ═══════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════

    def _lookup(self, token: str) -> SigningToken:
        row = (
            self.db.query(SigningToken)
            .filter(SigningToken.token == token)
            .populate_existing()
            .first()
        )
        if not row:
            raise TokenNotFound()
        return row

    @staticmethod
    def _raise_if_unusable(row: SigningToken) -> None:
        if row.used_at is not None:
            raise TokenAlreadyUsed()
        if as_utc(row.expires_at) <= utcnow():
            raise TokenExpired()

    @staticmethod
    def _refs(row: SigningToken) -> Tuple[DocumentRef, SignerRef]:
        return (
            DocumentRef(row.document_type, row.document_id),
            SignerRef(row.signer_role, row.signer_id),
        )

    def _has_signed(self, document_ref: DocumentRef, signer_ref: SignerRef) -> bool:
        return (
            self.db.query(Signature.id)
            .filter(
                Signature.document_type == document_ref.document_type,
                Signature.document_id == document_ref.document_id,
                Signature.signer_role == signer_ref.signer_role,
                Signature.signer_id == signer_ref.signer_id,
            )
            .first()
            is not None
        )

    def _revoke(self, document_ref: DocumentRef, signer_ref: SignerRef, now) -> None:
        self.db.execute(
            update(SigningToken)
            .where(
                SigningToken.document_type == document_ref.document_type,
                SigningToken.document_id == document_ref.document_id,
                SigningToken.signer_role == signer_ref.signer_role,
                SigningToken.signer_id == signer_ref.signer_id,
                SigningToken.used_at.is_(None),
                SigningToken.expires_at > now,
            )
            .values(expires_at=now)
            .execution_options(synchronize_session=False)
        )
