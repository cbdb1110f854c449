"""
Lease Execution Models
Tables: leases, lease_tenants, lease_addendums
"""
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
import uuid

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Date, DateTime, Enum as SQLEnum,
    ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin


class LeaseStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_SIGNATURE = "PENDING_SIGNATURE"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"  # derived at read time, never stored
    TERMINATED = "TERMINATED"


class AddendumStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    ACTIVE = "ACTIVE"
    VOID = "VOID"


class LateFeeType(str, Enum):
    FLAT = "FLAT"
    PERCENTAGE = "PERCENTAGE"


class Lease(TimestampMixin, Base):
    """Core lease agreement record."""
    __tablename__ = "leases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Scope and parties. The landlord is the staff user who countersigns.
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=True, index=True)
    landlord_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    landlord_name: Mapped[str] = mapped_column(String(255), nullable=True)
    landlord_email: Mapped[str] = mapped_column(String(255), nullable=True)
    unit_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=True, index=True)

    status: Mapped[LeaseStatus] = mapped_column(
        SQLEnum(LeaseStatus), default=LeaseStatus.DRAFT, nullable=False, index=True
    )

    # Financial terms
    start_date: Mapped[date] = mapped_column(Date, nullable=True)
    end_date: Mapped[date] = mapped_column(Date, nullable=True)
    monthly_rent: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=True)
    security_deposit: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    late_fee_type: Mapped[LateFeeType] = mapped_column(
        SQLEnum(LateFeeType), default=LateFeeType.FLAT, nullable=False
    )
    late_fee_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=True)
    grace_period_days: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    rent_due_day: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    terms: Mapped[dict] = mapped_column(JSON, nullable=True)

    # Stored document (file storage is external; we keep URL + content hash)
    document_url: Mapped[str] = mapped_column(String(1000), nullable=True)
    document_hash: Mapped[str] = mapped_column(String(64), nullable=True)

    # Signature progress. signatures_collected is a running count used for the
    # row lock and the UI; activation recomputes from the signatures table.
    signatures_required: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    signatures_collected: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Event timestamps
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    activated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    terminated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    termination_date: Mapped[date] = mapped_column(Date, nullable=True)

    tenants = relationship(
        "LeaseTenant",
        back_populates="lease",
        cascade="all, delete-orphan",
        order_by="LeaseTenant.position",
    )
    addendums = relationship(
        "LeaseAddendum",
        back_populates="lease",
        cascade="all, delete-orphan",
        order_by="LeaseAddendum.created_at",
    )

    __table_args__ = (
        CheckConstraint("rent_due_day BETWEEN 1 AND 28", name="ck_leases_rent_due_day"),
        CheckConstraint("grace_period_days >= 0", name="ck_leases_grace_period"),
        Index("idx_leases_status_end", "status", "end_date"),
    )

    @property
    def primary_tenant(self):
        for lt in self.tenants:
            if lt.is_primary:
                return lt
        return None

    @property
    def tenant_ids(self) -> list:
        return [lt.tenant_id for lt in self.tenants]


class LeaseTenant(Base):
    """A tenant party to a lease, in signing order."""
    __tablename__ = "lease_tenants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lease_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leases.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    lease = relationship("Lease", back_populates="tenants")
    tenant = relationship("Tenant", back_populates="leases")

    __table_args__ = (
        UniqueConstraint("lease_id", "tenant_id", name="uq_lease_tenants_pair"),
    )


class LeaseAddendum(TimestampMixin, Base):
    """Amendment to an executed lease; signed by every tenant on the lease."""
    __tablename__ = "lease_addendums"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lease_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leases.id", ondelete="CASCADE"), nullable=False, index=True
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    document_url: Mapped[str] = mapped_column(String(1000), nullable=True)
    document_hash: Mapped[str] = mapped_column(String(64), nullable=True)
    effective_date: Mapped[date] = mapped_column(Date, nullable=True)

    status: Mapped[AddendumStatus] = mapped_column(
        SQLEnum(AddendumStatus), default=AddendumStatus.DRAFT, nullable=False, index=True
    )
    signatures_required: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    signatures_collected: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    activated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)

    lease = relationship("Lease", back_populates="addendums")
