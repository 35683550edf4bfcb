"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CreateOrderRequest(BaseModel):
    """Request schema for opening a gateway order."""

    user_id: UUID = Field(..., description="User identifier")
    enrollment_id: UUID = Field(..., description="Enrollment being paid for")
    amount: int = Field(..., gt=0, description="Amount in the smallest currency unit (paise)")
    currency: Optional[str] = Field(
        default=None, min_length=3, max_length=3, description="Currency code (default INR)"
    )
    receipt: Optional[str] = Field(default=None, description="Merchant receipt label")
    payment_period: Optional[str] = Field(default=None, description="Billing period label")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Validate currency format."""
        return v.upper() if v else v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user_id": "123e4567-e89b-12d3-a456-426614174000",
                    "enrollment_id": "8d0e7a52-52c4-4bd8-a0b5-0c1f7e3c2a11",
                    "amount": 50000,
                    "currency": "INR",
                    "receipt": "r1",
                }
            ]
        }
    }


class CheckoutOrderResponse(BaseModel):
    """Parameters the checkout needs to open a one-time payment."""

    payment_id: str = Field(..., description="Local payment id")
    order_id: str = Field(..., description="Gateway order id")
    amount: int = Field(..., description="Amount in the smallest currency unit")
    currency: str = Field(..., description="Currency code")
    receipt: Optional[str] = Field(default=None, description="Receipt label sent to the gateway")
    key: str = Field(..., description="Gateway public key id")


class PaymentCallbackRequest(BaseModel):
    """Checkout handler payload for one-time orders."""

    razorpay_payment_id: str
    razorpay_order_id: str
    razorpay_signature: str


class SettlementResponse(BaseModel):
    payment_id: UUID
    status: str
    verified: bool
    changed: bool
    transaction_id: Optional[str] = None


class CreateInvoiceRequest(BaseModel):
    user_id: UUID
    enrollment_id: UUID
    amount: int = Field(..., gt=0, description="Amount in the smallest currency unit")
    method: str = Field(default="invoice", min_length=1)
    payment_period: Optional[str] = Field(default=None, description="Billing period (YYYY-MM)")
    notes: Optional[str] = None


class BulkInvoiceRequest(BaseModel):
    enrollment_id: UUID
    amount: int = Field(..., gt=0, description="Amount in the smallest currency unit")
    user_ids: List[str] = Field(..., min_length=1, description="Users to invoice")
    payment_period: Optional[str] = None


class BulkInvoiceItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    success: bool
    payment_id: Optional[UUID] = None
    error: Optional[str] = None


class BulkInvoiceResponse(BaseModel):
    created: int
    failed: int
    results: List[BulkInvoiceItem]


class PaymentResponse(BaseModel):
    """Payment record as exposed to collaborators and admins."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    enrollment_id: UUID
    amount: int
    currency: str
    status: str
    method: str
    gateway_order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    receipt_number: Optional[str] = None
    payment_period: Optional[str] = None
    notes: Optional[str] = None
    failure_reason: Optional[str] = None
    refunded: bool = False
    refund_amount: Optional[int] = None
    refund_reason: Optional[str] = None
    refund_date: Optional[datetime] = None
    payment_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class PaymentDetailResponse(PaymentResponse):
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    sport_name: Optional[str] = None
    batch_name: Optional[str] = None


class UpdatePaymentRequest(BaseModel):
    """Administrative edits; status and money fields are not editable here."""

    model_config = ConfigDict(extra="forbid")

    notes: Optional[str] = None
    receipt_number: Optional[str] = None
    payment_period: Optional[str] = None


class RefundRequest(BaseModel):
    refund_amount: int = Field(..., description="Amount to refund (smallest currency unit)")
    refund_reason: str = Field(..., description="Reason for refund")


class MarkPaidRequest(BaseModel):
    method: str = Field(..., min_length=1, description="Offline method, e.g. cash")
    reference: Optional[str] = Field(default=None, description="Offline receipt/reference")
    notes: Optional[str] = None


class PaymentStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_revenue: int
    refunded_total: int
    net_revenue: int
    completed_payments: int
    pending_payments: int
    attempted_payments: int
    failed_payments: int
    revenue_by_method: Dict[str, int]
    revenue_by_sport: Dict[str, int]
    revenue_by_batch: Dict[str, int]
    revenue_last_30_days: int = 0


class CreateSubscriptionRequest(BaseModel):
    user_id: UUID
    batch_id: UUID
    sport_id: UUID


class SubscriptionCheckoutResponse(BaseModel):
    id: str = Field(..., description="Local subscription id")
    subscription_id: str = Field(..., description="Gateway subscription id")
    key: str = Field(..., description="Gateway public key id")
    plan_id: str
    amount: int
    currency: str
    batch_name: str
    sport_name: str


class SubscriptionCallbackRequest(BaseModel):
    razorpay_payment_id: str
    razorpay_subscription_id: str
    razorpay_signature: str


class SubscriptionConfirmationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subscription_id: str
    status: str
    verified: bool
    changed: bool


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    batch_id: UUID
    sport_id: UUID
    razorpay_subscription_id: str
    status: str
    plan_id: str
    amount: int
    currency: str
    start_date: datetime
    end_date: Optional[datetime] = None


class SubscriptionSyncResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    checked: int
    changed: int
    errors: List[str]


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    event_id: Optional[str] = Field(default=None, description="Gateway event id")
    event_type: Optional[str] = Field(default=None, description="Event type")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Handler result")


class ErrorResponse(BaseModel):
    """Standard error response schema."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional details")


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")
    gateway_test_mode: Optional[bool] = None
