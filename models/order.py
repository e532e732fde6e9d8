from datetime import datetime
from sqlalchemy import String, DateTime, ForeignKey, Integer, JSON, Text, CheckConstraint, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base, utcnow
from models.enums import OrderStatus, PaymentStatus, FulfillmentStatus


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "order_number", name="uq_orders_tenant_number"),
        CheckConstraint("total_cents >= 0", name="ck_orders_total_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    order_number: Mapped[str] = mapped_column(String(30), index=True)

    order_status: Mapped[str] = mapped_column(String(30), default=OrderStatus.DRAFT.value, index=True)
    payment_status: Mapped[str] = mapped_column(String(30), default=PaymentStatus.PENDING.value, index=True)
    fulfillment_status: Mapped[str] = mapped_column(String(30), default=FulfillmentStatus.UNFULFILLED.value)

    # Customer snapshot
    customer_email: Mapped[str] = mapped_column(String(255))
    customer_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    shipping_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    billing_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Totals in minor currency units
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    subtotal_cents: Mapped[int] = mapped_column(Integer, default=0)
    tax_cents: Mapped[int] = mapped_column(Integer, default=0)
    shipping_cents: Mapped[int] = mapped_column(Integer, default=0)
    discount_cents: Mapped[int] = mapped_column(Integer, default=0)
    total_cents: Mapped[int] = mapped_column(Integer, default=0)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    tenant = relationship("Tenant")
    items = relationship("OrderItem", cascade="all, delete-orphan", back_populates="order", order_by="OrderItem.id")
    history = relationship("OrderStatusHistory", back_populates="order", order_by="OrderStatusHistory.id")
    payments = relationship("Payment", back_populates="order", order_by="Payment.id")

    def recalculate_totals(self) -> int:
        """Derive subtotal and total from the line items and order-level adjustments."""
        self.subtotal_cents = sum(item.total_cents for item in self.items)
        self.total_cents = self.subtotal_cents + self.tax_cents + self.shipping_cents - self.discount_cents
        return self.total_cents

    def add_item(self, item) -> None:
        if self.order_status != OrderStatus.DRAFT.value:
            raise ValueError(f"Order {self.order_number} is {self.order_status}; items are frozen")
        self.items.append(item)
