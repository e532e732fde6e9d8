from datetime import datetime
from sqlalchemy import String, DateTime, ForeignKey, JSON, Text, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base, utcnow


class OrderStatusHistory(Base):
    """Append-only audit row, one per order transition or payment event."""

    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    from_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30))
    payment_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    actor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    order = relationship("Order", back_populates="history")


@event.listens_for(OrderStatusHistory, "before_update")
def _reject_history_update(mapper, connection, target):
    raise ValueError("Order status history is append-only")


@event.listens_for(OrderStatusHistory, "before_delete")
def _reject_history_delete(mapper, connection, target):
    raise ValueError("Order status history is append-only")
