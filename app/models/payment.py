"""
Payment Ledger Models
Database models for rent payments, stored gateway payment methods, late fees
and the processed-webhook idempotency log
"""
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from sqlalchemy import (
    Boolean, CheckConstraint, Date, DateTime, ForeignKey, Index, Numeric, String,
    Text, UniqueConstraint, Enum as SQLEnum, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
import uuid

from app.db.base import Base, TimestampMixin, utcnow


class PaymentStatus(str, Enum):
    """Payment status enum"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    """How the tenant paid"""
    ACH = "ACH"
    CARD = "CARD"
    MANUAL = "MANUAL"


class PaymentMethodType(str, Enum):
    """Stored gateway payment method kinds"""
    BANK_ACCOUNT = "BANK_ACCOUNT"
    CARD = "CARD"


class Payment(TimestampMixin, Base):
    """Rent payment transaction record"""
    __tablename__ = "payments"

    # Primary key (also the gateway idempotency key)
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Scope
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=True, index=True)
    lease_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("leases.id"), nullable=False, index=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)

    # Payment details
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(SQLEnum(PaymentMethod), nullable=False)
    payment_method_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payment_methods.id"), nullable=True
    )
    status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False, index=True
    )

    # Gateway reference; webhooks join on this
    gateway_charge_ref: Mapped[str] = mapped_column(String(255), unique=True, nullable=True)

    # Settlement numbers. fee_settled=False means fee/net are provisional and
    # the settlement notification may still refine them.
    gateway_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=True)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=True)
    fee_settled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str] = mapped_column(String(500), nullable=True)
    description: Mapped[str] = mapped_column(String(500), nullable=True)

    # Relationships
    lease = relationship("Lease")
    tenant = relationship("Tenant")
    stored_method = relationship("PaymentMethodRecord")

    __table_args__ = (
        Index("idx_payments_lease_status", "lease_id", "status"),
    )


class PaymentMethodRecord(TimestampMixin, Base):
    """Tokenized payment method held at the gateway"""
    __tablename__ = "payment_methods"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)

    type: Mapped[PaymentMethodType] = mapped_column(SQLEnum(PaymentMethodType), nullable=False)
    gateway_payment_method_id: Mapped[str] = mapped_column(String(255), nullable=True)
    last4: Mapped[str] = mapped_column(String(4), nullable=True)
    bank_name: Mapped[str] = mapped_column(String(255), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    autopay_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    tenant = relationship("Tenant", back_populates="payment_methods")


class LateFee(TimestampMixin, Base):
    """Late fee assessed against a lease for one billing period"""
    __tablename__ = "late_fees"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lease_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("leases.id"), nullable=False, index=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    assessed_date: Mapped[date] = mapped_column(Date, nullable=False)
    period: Mapped[date] = mapped_column(Date, nullable=False)  # first day of billing month

    waived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    waived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    waived_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=True)
    paid_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("payments.id"), nullable=True)

    lease = relationship("Lease")
    payment = relationship("Payment")

    __table_args__ = (
        UniqueConstraint("lease_id", "period", name="uq_late_fees_lease_period"),
        CheckConstraint(
            "NOT (waived AND paid_date IS NOT NULL)",
            name="ck_late_fees_waived_or_paid",
        ),
    )


class ProcessedWebhookEvent(Base):
    """Gateway events already applied; the primary key is the idempotency guard"""
    __tablename__ = "processed_webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    charge_ref: Mapped[str] = mapped_column(String(255), nullable=True)
    outcome: Mapped[str] = mapped_column(String(50), nullable=False)
    detail: Mapped[str] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )
