"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class InitializePaymentRequest(BaseModel):
    """Request schema for opening a checkout."""

    session_id: Optional[int] = Field(
        default=None, description="Academic session (defaults to the current session)"
    )


class InitializePaymentResponse(BaseModel):
    """Response schema for an opened checkout."""

    reference: str = Field(..., description="Payment reference to verify later")
    amount: Decimal = Field(..., description="Amount to be charged (major units)")
    currency: str = Field(..., description="Currency code")
    payment_type: str = Field(..., description="full or partial")
    authorization_url: str = Field(..., description="Hosted checkout URL")
    access_code: str = Field(..., description="Access code for the inline popup")
    public_key: Optional[str] = Field(default=None, description="Institution public key")
    email: str = Field(..., description="Email the charge is made under")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "reference": "TPFUT-42-M1ABCDEF-9F3A21BC",
                    "amount": "5000.00",
                    "currency": "NGN",
                    "payment_type": "full",
                    "authorization_url": "https://checkout.paystack.com/abc123",
                    "access_code": "abc123",
                    "public_key": "pk_test_xxx",
                    "email": "FUT-2024-001@student.digitaltp.ng",
                }
            ]
        }
    }


class VerifyPaymentRequest(BaseModel):
    """Request schema for verifying a reference."""

    reference: str = Field(..., min_length=1, max_length=100, description="Payment reference")

    @field_validator("reference")
    @classmethod
    def strip_reference(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Payment reference is required")
        return v


class CreatePaymentRequest(BaseModel):
    """Request schema for recording a pending payment."""

    student_id: int = Field(..., description="Paying student")
    session_id: int = Field(..., description="Academic session")
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2, description="Amount")
    payment_type: Literal["full", "partial"] = Field(default="full", description="full or partial")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Extra context")


class PaymentResponse(BaseModel):
    """Ledger row as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    institution_id: int
    session_id: int
    student_id: int
    amount: Decimal
    currency: str
    payment_type: str
    reference: str
    gateway_reference: Optional[str] = None
    status: str
    channel: Optional[str] = None
    authorization: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="payment_metadata")
    recovered: bool = False
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class VerifyPaymentResponse(BaseModel):
    """Response schema for a verification attempt."""

    status: str = Field(..., description="Ledger status, or 'unverified' if the gateway was down")
    outcome: Optional[str] = Field(default=None, description="How the result was reached")
    message: str = Field(..., description="Human readable summary")
    gateway_status: Optional[str] = Field(default=None, description="Status reported by Paystack")
    retryable: bool = Field(default=False, description="Whether verifying again may help")
    payment: Optional[PaymentResponse] = None


class PaginationInfo(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class PaymentListResponse(BaseModel):
    payments: List[PaymentResponse]
    pagination: PaginationInfo


class StatusTotals(BaseModel):
    count: int
    amount: Decimal


class PaymentStatsResponse(BaseModel):
    """Response schema for ledger statistics."""

    total_count: int
    by_status: Dict[str, StatusTotals]
    total_collected: Decimal
    students_paid: int


class StudentPaymentStatusResponse(BaseModel):
    """What a student owes and has paid for a session."""

    required: bool
    status: str = Field(..., description="not_required, pending, partial or completed")
    message: Optional[str] = None
    amount: Optional[Decimal] = None
    paid: Optional[Decimal] = None
    remaining: Optional[Decimal] = None
    currency: Optional[str] = None
    session_id: Optional[int] = None
    payments: List[PaymentResponse] = Field(default_factory=list)


class WebhookResponse(BaseModel):
    """Response schema for webhook deliveries. Always acknowledged."""

    status: str = "received"


class CacheRefreshResponse(BaseModel):
    institution_id: int
    status: str = "invalidated"
