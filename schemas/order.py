from pydantic import BaseModel, EmailStr, Field
from typing import Any, Dict, List, Optional

from schemas.common import UtcDateTime
from schemas.payment import PaymentOut


class OrderItemIn(BaseModel):
    sku: Optional[str] = Field(default=None, max_length=100)
    name: str = Field(min_length=1, max_length=255)
    quantity: int = Field(ge=1)
    unit_price_cents: int = Field(ge=0)
    discount_cents: int = Field(default=0, ge=0)


class OrderCreate(BaseModel):
    customer_email: EmailStr
    customer_name: Optional[str] = Field(default=None, max_length=200)
    customer_phone: Optional[str] = Field(default=None, max_length=50)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    items: List[OrderItemIn] = Field(min_length=1)
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    tax_cents: int = Field(default=0, ge=0)
    shipping_cents: int = Field(default=0, ge=0)
    discount_cents: int = Field(default=0, ge=0)
    notes: Optional[str] = None


class OrderUpdateRequest(BaseModel):
    order_status: Optional[str] = Field(default=None, alias="orderStatus")
    reason: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = None
    internal_notes: Optional[str] = Field(default=None, alias="internalNotes")

    class Config:
        populate_by_name = True


class OrderItemOut(BaseModel):
    id: int
    sku: Optional[str] = None
    name: str
    quantity: int
    unit_price_cents: int
    discount_cents: int
    total_cents: int

    class Config:
        from_attributes = True


class HistoryOut(BaseModel):
    id: int
    from_status: Optional[str] = None
    to_status: str
    payment_status: Optional[str] = None
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: UtcDateTime

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    tenant_id: int
    order_number: str
    order_status: str
    payment_status: str
    fulfillment_status: str
    customer_email: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    currency: str
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    discount_cents: int
    total_cents: int
    notes: Optional[str] = None
    items: List[OrderItemOut]
    created_at: UtcDateTime
    updated_at: UtcDateTime
    confirmed_at: Optional[UtcDateTime] = None
    paid_at: Optional[UtcDateTime] = None
    fulfilled_at: Optional[UtcDateTime] = None
    cancelled_at: Optional[UtcDateTime] = None
    refunded_at: Optional[UtcDateTime] = None

    class Config:
        from_attributes = True


class OrderDetailOut(OrderOut):
    internal_notes: Optional[str] = None
    history: List[HistoryOut]
    payments: List[PaymentOut]


class OrderListOut(BaseModel):
    success: bool = True
    orders: List[OrderOut]
    page: int
    limit: int
    total: int
