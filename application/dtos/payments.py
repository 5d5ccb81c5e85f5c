"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional, List
from pydantic import BaseModel, Field, ConfigDict

from domain.payment.entity import PaymentStatus, PaymentType, RefundStatus

# ---- Gateway results ----


class GatewayInitialization(BaseModel):
    authorization_url: str
    access_code: Optional[str] = None
    reference: str


class GatewayVerification(BaseModel):
    provider_status: str
    provider_transaction_id: Optional[str] = None
    amount_paid: int = 0
    currency: Optional[str] = None
    paid_at: Optional[datetime] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class GatewayRefund(BaseModel):
    accepted: bool
    provider_refund_reference: Optional[str] = None
    message: Optional[str] = None


class WebhookEvent(BaseModel):
    event: str
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def reference(self) -> Optional[str]:
        return self.data.get("reference")


# ---- Requests ----


class InitializePaymentRequest(BaseModel):
    payment_type: PaymentType
    amount: int = Field(gt=0, description="Amount in minor units")
    user_id: str
    course_id: Optional[str] = None
    application_id: Optional[str] = None
    due_date: Optional[datetime] = None
    metadata: Optional[dict[str, Any]] = None


class ManualPaymentRequest(BaseModel):
    """Payment taken outside the gateway (cash desk, bank transfer) and recorded by staff."""

    payment_type: PaymentType
    amount: int = Field(gt=0, description="Amount in minor units")
    user_id: str
    method: Literal["MANUAL", "BANK_TRANSFER"] = "MANUAL"
    recorded_by: str = Field(min_length=1)
    course_id: Optional[str] = None
    application_id: Optional[str] = None
    installment_number: Optional[int] = Field(default=None, ge=0)
    reference: Optional[str] = Field(default=None, min_length=1, max_length=100)
    notes: Optional[str] = None


class VerifyRequest(BaseModel):
    reference: str = Field(min_length=1)


class InstallmentScheduleRequest(BaseModel):
    user_id: str
    course_id: str
    plan_id: str = "standard"
    course_price: int = Field(gt=0)
    application_fee: int = Field(default=0, ge=0)


class RefundRequestDTO(BaseModel):
    payment_id: int
    reason: str = Field(min_length=1)
    amount: Optional[int] = None
    admin_notes: Optional[str] = None
    requested_by: Optional[str] = None


class RefundDecisionRequest(BaseModel):
    admin_id: str
    admin_notes: Optional[str] = None
    reason: Optional[str] = None


# ---- Results ----


class PaymentInitialization(BaseModel):
    payment_id: int
    reference: str
    authorization_url: str
    access_code: Optional[str] = None


class SettlementResult(BaseModel):
    success: bool
    payment_status: PaymentStatus
    reference: str
    already_settled: bool = False
    message: str = ""
    dispatch_error: Optional[str] = None


class PaymentDTO(BaseModel):
    id: int
    reference: str
    type: PaymentType
    amount: int
    currency: str
    status: PaymentStatus
    user_id: str
    course_id: Optional[str] = None
    application_id: Optional[str] = None
    enrollment_id: Optional[str] = None
    due_date: Optional[datetime] = None
    installment_number: Optional[int] = None
    provider_transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReceiptDTO(BaseModel):
    receipt_number: str
    reference: str
    payment_id: int
    payment_type: PaymentType
    amount: int
    currency: str
    method: str
    paid_at: datetime
    user_id: str
    course_id: Optional[str] = None
    installment_number: Optional[int] = None
    total_installments: Optional[int] = None


class RefundDTO(BaseModel):
    id: int
    payment_id: int
    amount: int
    reason: str
    status: RefundStatus
    provider_refund_reference: Optional[str] = None
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    failure_reason: Optional[str] = None
    requested_by: Optional[str] = None
    processed_by: Optional[str] = None
    requested_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RefundOutcome(BaseModel):
    success: bool
    refund: RefundDTO
    message: str = ""


class InstallmentPlanDTO(BaseModel):
    id: str
    name: str
    number_of_installments: int
    first_payment_percentage: int
    monthly_percentage: int
    total_amount: int = 0
    first_payment_amount: int = 0
    monthly_amount: int = 0

    model_config = ConfigDict(from_attributes=True)


class InstallmentScheduleDTO(BaseModel):
    plan: InstallmentPlanDTO
    payments: List[PaymentDTO]

