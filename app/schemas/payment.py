"""
Payment Request Schemas
Pydantic models for payment, payment-method and late-fee API validation
"""
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from app.models.payment import PaymentMethod, PaymentMethodType


# ==================== Payments ====================

class CreatePaymentRequest(BaseModel):
    lease_id: uuid.UUID
    tenant_id: uuid.UUID
    amount: Decimal = Field(..., gt=0, description="Payment amount")
    method: PaymentMethod
    payment_method_id: Optional[uuid.UUID] = Field(
        None, description="Stored payment method; required for ACH and CARD"
    )
    paid_at: Optional[datetime] = Field(None, description="MANUAL payments only")
    description: Optional[str] = Field(None, max_length=500)

    class Config:
        json_schema_extra = {
            "example": {
                "lease_id": "7f1d5c1e-8a0e-4c5e-9a57-0c3d7b0c2f11",
                "tenant_id": "1b4e28ba-2fa1-11d2-883f-0016d3cca427",
                "amount": "1850.00",
                "method": "ACH",
                "payment_method_id": "9a7b1c2d-3e4f-4a5b-8c9d-0e1f2a3b4c5d",
            }
        }


# ==================== Payment methods ====================

class SavePaymentMethodRequest(BaseModel):
    tenant_id: uuid.UUID
    type: PaymentMethodType
    gateway_payment_method_id: str = Field(..., min_length=1)
    last4: Optional[str] = Field(None, min_length=4, max_length=4)
    bank_name: Optional[str] = None
    is_default: bool = False
    autopay_enabled: bool = False


# ==================== Late fees ====================

class AssessLateFeeRequest(BaseModel):
    lease_id: uuid.UUID
    amount: Optional[Decimal] = Field(None, gt=0, description="Overrides the lease policy")
    period: Optional[date] = Field(None, description="Any day in the billing month")


class PayLateFeeRequest(BaseModel):
    payment_id: uuid.UUID
