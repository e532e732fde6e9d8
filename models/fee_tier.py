from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Boolean, DateTime, Integer, Numeric
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base, utcnow


class PlatformFeeTier(Base):
    """Catalog entry for the platform commission; read-only to the engine."""

    __tablename__ = "platform_fee_tiers"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"))
    fixed_fee_cents: Mapped[int] = mapped_column(Integer, default=0)
    # Bounds on the platform fee charged for a single transaction
    min_fee_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_fee_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fee_waived: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<PlatformFeeTier {self.name} {self.percentage}%>"
