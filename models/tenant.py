from datetime import datetime
from sqlalchemy import String, Boolean, DateTime, Integer, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base, utcnow


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(150), index=True)
    domain: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    subdomain: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True, index=True)

    # Platform fee tier; unassigned tenants fall back to the default tier
    fee_tier_id: Mapped[int | None] = mapped_column(ForeignKey("platform_fee_tiers.id", ondelete="SET NULL"), nullable=True)
    fee_waived: Mapped[bool] = mapped_column(Boolean, default=False)
    fee_waived_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Per-tenant counter behind human-readable order numbers
    order_sequence: Mapped[int] = mapped_column(Integer, default=0)

    # Status
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_suspended: Mapped[bool] = mapped_column(Boolean, default=False)
    suspension_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    fee_tier = relationship("PlatformFeeTier")
