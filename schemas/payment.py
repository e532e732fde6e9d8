from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from schemas.common import UtcDateTime


class PaymentMethodIn(BaseModel):
    type: str = Field(default="card", max_length=30)
    # Gateway-issued token (authorization code, PaymentMethod id); raw card data never reaches the engine
    token: str = Field(min_length=1, max_length=255)


class AuthorizeRequest(BaseModel):
    payment_method: PaymentMethodIn = Field(alias="paymentMethod")
    gateway_type: str = Field(alias="gatewayType", min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True


class ChargeRequest(AuthorizeRequest):
    pass


class CaptureRequest(BaseModel):
    payment_id: Optional[int] = Field(default=None, alias="paymentId")
    amount: Optional[int] = Field(default=None, gt=0)

    class Config:
        populate_by_name = True


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)


class FeesOut(BaseModel):
    gateway_fee_cents: int
    platform_fee_cents: int
    platform_fee_percentage: Decimal
    platform_fee_fixed_cents: int
    total_fees_cents: int
    net_amount_cents: int
    fee_waived: bool
    fee_waived_reason: Optional[str] = None

    class Config:
        from_attributes = True


class PaymentOut(BaseModel):
    id: int
    tenant_id: int
    order_id: int
    amount_cents: int
    authorized_amount_cents: int
    refunded_cents: int
    currency: str
    payment_method: str
    status: str
    gateway_type: str
    gateway_transaction_id: Optional[str] = None
    gateway_authorization_id: Optional[str] = None
    idempotency_key: str
    gateway_fee_cents: int
    platform_fee_cents: int
    total_fees_cents: int
    net_amount_cents: int
    fee_waived: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    authorized_at: Optional[UtcDateTime] = None
    authorization_expires_at: Optional[UtcDateTime] = None
    captured_at: Optional[UtcDateTime] = None
    failed_at: Optional[UtcDateTime] = None
    cancelled_at: Optional[UtcDateTime] = None
    created_at: UtcDateTime
    updated_at: UtcDateTime

    class Config:
        from_attributes = True


class RefundOut(BaseModel):
    id: int
    payment_id: int
    order_id: int
    amount_cents: int
    reason: Optional[str] = None
    status: str
    is_partial: bool
    gateway_refund_id: Optional[str] = None
    initiated_by: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: UtcDateTime
    completed_at: Optional[UtcDateTime] = None

    class Config:
        from_attributes = True


class PaymentResponse(BaseModel):
    success: bool = True
    payment: PaymentOut
    fees: FeesOut


class PaymentDetailResponse(PaymentResponse):
    refunds: List[RefundOut]


class PaymentListResponse(BaseModel):
    success: bool = True
    payments: List[PaymentOut]


class RefundResponse(BaseModel):
    success: bool = True
    payment: PaymentOut
    refund: RefundOut


class RefundDetailResponse(BaseModel):
    success: bool = True
    refund: RefundOut


class RefundListResponse(BaseModel):
    success: bool = True
    refunds: List[RefundOut]
    page: int
    limit: int
    total: int


class WebhookAck(BaseModel):
    success: bool = True
    received: bool = True
    event_id: str
    duplicate: bool = False
    processed: bool = False
    queued: bool = False
