"""
Lease Execution Schemas
Pydantic v2 request models for leases, addendums and the public signing page.
Responses are plain dicts built by the route serializers.
"""
from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from app.models.lease import LateFeeType


# ─────────────────────── Lease CRUD ───────────────────────

class LeaseCreate(BaseModel):
    tenant_ids: List[uuid.UUID] = []
    primary_tenant_id: Optional[uuid.UUID] = None
    unit_id: Optional[uuid.UUID] = None

    start_date: Optional[date] = None
    end_date: Optional[date] = None
    monthly_rent: Optional[Decimal] = Field(None, gt=0)
    security_deposit: Optional[Decimal] = Field(None, ge=0)

    late_fee_type: LateFeeType = LateFeeType.FLAT
    late_fee_amount: Optional[Decimal] = Field(None, ge=0)
    grace_period_days: int = Field(5, ge=0)
    rent_due_day: int = Field(1, ge=1, le=28)
    terms: Optional[Dict[str, Any]] = None

    document_url: Optional[str] = None
    document_hash: Optional[str] = None
    landlord_name: Optional[str] = None
    landlord_email: Optional[str] = None

    @model_validator(mode="after")
    def _check_dates(self) -> "LeaseCreate":
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class LeaseUpdate(BaseModel):
    """Partial update. After DRAFT only rent, end date and late-fee terms may change."""
    tenant_ids: Optional[List[uuid.UUID]] = None
    primary_tenant_id: Optional[uuid.UUID] = None
    unit_id: Optional[uuid.UUID] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    monthly_rent: Optional[Decimal] = Field(None, gt=0)
    security_deposit: Optional[Decimal] = Field(None, ge=0)
    late_fee_type: Optional[LateFeeType] = None
    late_fee_amount: Optional[Decimal] = Field(None, ge=0)
    grace_period_days: Optional[int] = Field(None, ge=0)
    rent_due_day: Optional[int] = Field(None, ge=1, le=28)
    terms: Optional[Dict[str, Any]] = None
    document_url: Optional[str] = None
    document_hash: Optional[str] = None
    landlord_name: Optional[str] = None
    landlord_email: Optional[str] = None


class ResendRequest(BaseModel):
    """Re-issue one signer's link, or every unsigned signer's when empty."""
    signer_role: Optional[str] = None
    signer_id: Optional[uuid.UUID] = None

    @field_validator("signer_role")
    @classmethod
    def _upper(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class TerminateRequest(BaseModel):
    termination_date: Optional[date] = None
    reason: Optional[str] = None


# ─────────────────────── Addendums ───────────────────────

class AddendumCreate(BaseModel):
    title: str = Field("", max_length=200)
    content: str = ""
    document_url: Optional[str] = None
    document_hash: Optional[str] = None
    effective_date: Optional[date] = None


class AddendumUpdate(BaseModel):
    title: Optional[str] = Field(None, max_length=200)
    content: Optional[str] = None
    document_url: Optional[str] = None
    document_hash: Optional[str] = None
    effective_date: Optional[date] = None


# ─────────────────────── Signing ───────────────────────

class SignRequest(BaseModel):
    """Submitted from the signing page (or by the landlord to countersign)."""
    signature_type: str                    # "typed" | "drawn"
    signature_data: str                    # full name or base64 PNG
    full_name: str
    email: Optional[str] = None

    # Consent / session trail
    consent_electronic_records: bool = False
    consent_terms: bool = False
    consent_at: Optional[str] = None
    view_duration_seconds: Optional[int] = Field(None, ge=0)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @field_validator("signature_type")
    @classmethod
    def _signature_type(cls, v: str) -> str:
        v = (v or "").lower()
        if v not in ("typed", "drawn"):
            raise ValueError("signature_type must be 'typed' or 'drawn'")
        return v

    @model_validator(mode="after")
    def _require_consent(self) -> "SignRequest":
        if not (self.consent_electronic_records and self.consent_terms):
            raise ValueError("Both electronic-records and terms consent are required")
        return self
