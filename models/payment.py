from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, DateTime, ForeignKey, Integer, Numeric, Boolean, JSON, Text, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base, utcnow
from models.enums import PaymentStatus


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("refunded_cents >= 0", name="ck_payments_refunded_non_negative"),
        CheckConstraint("refunded_cents <= amount_cents", name="ck_payments_refund_within_amount"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)

    amount_cents: Mapped[int] = mapped_column(Integer)
    authorized_amount_cents: Mapped[int] = mapped_column(Integer)
    # Running total of completed and in-flight refunds, guarded by conditional updates
    refunded_cents: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    payment_method: Mapped[str] = mapped_column(String(30))
    status: Mapped[str] = mapped_column(String(30), default=PaymentStatus.PENDING.value, index=True)

    gateway_type: Mapped[str] = mapped_column(String(30))
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    gateway_authorization_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(120), unique=True)
    # Set while one caller owns the capture of this authorization
    capture_token: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Fee breakdown
    gateway_fee_cents: Mapped[int] = mapped_column(Integer, default=0)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, default=0)
    platform_fee_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"))
    platform_fee_fixed_cents: Mapped[int] = mapped_column(Integer, default=0)
    total_fees_cents: Mapped[int] = mapped_column(Integer, default=0)
    net_amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    fee_waived: Mapped[bool] = mapped_column(Boolean, default=False)
    fee_waived_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    details: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    authorized_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    authorization_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    captured_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    tenant = relationship("Tenant")
    order = relationship("Order", back_populates="payments")
    refunds = relationship("Refund", back_populates="payment", order_by="Refund.id")

    @property
    def refundable_cents(self) -> int:
        return self.amount_cents - self.refunded_cents

    def authorization_expired(self, now: datetime) -> bool:
        return self.authorization_expires_at is not None and now > self.authorization_expires_at

    def __repr__(self) -> str:
        return f"<Payment {self.id} {self.status} {self.amount_cents} {self.currency}>"
