"""
Tenant Model
Reference data owned by the tenant directory; the lease core only reads it
to resolve signer names and notification addresses.
"""
import uuid

from sqlalchemy import String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin


class Tenant(TimestampMixin, Base):
    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=True, index=True)

    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    phone: Mapped[str] = mapped_column(String(50), nullable=True)

    leases = relationship("LeaseTenant", back_populates="tenant")
    payment_methods = relationship(
        "PaymentMethodRecord",
        back_populates="tenant",
        cascade="all, delete-orphan",
    )
