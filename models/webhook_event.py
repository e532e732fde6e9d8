from datetime import datetime
from sqlalchemy import String, DateTime, Boolean, Integer, JSON, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base, utcnow


class WebhookEvent(Base):
    """
    Durable record of a gateway notification.
    (gateway_type, event_id) is unique so redelivered events insert nothing.
    """

    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("gateway_type", "event_id", name="uq_webhook_events_gateway_event"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    gateway_type: Mapped[str] = mapped_column(String(30))
    event_id: Mapped[str] = mapped_column(String(255), index=True)
    event_type: Mapped[str] = mapped_column(String(100))
    payload: Mapped[dict] = mapped_column(JSON)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    processing_attempts: Mapped[int] = mapped_column(Integer, default=0)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.gateway_type}:{self.event_id} processed={self.processed}>"
