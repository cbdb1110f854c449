"""
E-Signature Models
Tables: signing_tokens, signatures

Both tables address documents polymorphically by (document_type, document_id)
so leases and addendums share one signing pipeline.
"""
from datetime import datetime
from enum import Enum
import uuid

from sqlalchemy import (
    JSON, DateTime, Enum as SQLEnum, Index, String, Text, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, utcnow


class DocumentType(str, Enum):
    LEASE = "LEASE"
    ADDENDUM = "ADDENDUM"


class SignerRole(str, Enum):
    TENANT = "TENANT"
    LANDLORD = "LANDLORD"


class SigningToken(Base):
    """Single-use, expiring credential for one (document, signer) pair."""
    __tablename__ = "signing_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    token: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)

    document_type: Mapped[DocumentType] = mapped_column(SQLEnum(DocumentType), nullable=False)
    document_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    signer_role: Mapped[SignerRole] = mapped_column(SQLEnum(SignerRole), nullable=False)
    signer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_signing_tokens_document", "document_type", "document_id"),
        Index(
            "idx_signing_tokens_pair",
            "document_type", "document_id", "signer_role", "signer_id",
        ),
    )


class Signature(Base):
    """
    Executed signature with its compliance trail.
    At most one row per (document, signer); re-submission is rejected.
    """
    __tablename__ = "signatures"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    document_type: Mapped[DocumentType] = mapped_column(SQLEnum(DocumentType), nullable=False)
    document_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    signer_role: Mapped[SignerRole] = mapped_column(SQLEnum(SignerRole), nullable=False)
    signer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # Artifact
    signature_type: Mapped[str] = mapped_column(String(20), nullable=False)  # typed | drawn
    signature_data: Mapped[str] = mapped_column(Text, nullable=False)        # name or base64 PNG

    # Session metadata: consent timestamps, view duration, ip, document hash
    signing_metadata: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    signature_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    signed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "document_type", "document_id", "signer_role", "signer_id",
            name="uq_signatures_document_signer",
        ),
        Index("idx_signatures_document", "document_type", "document_id"),
    )
