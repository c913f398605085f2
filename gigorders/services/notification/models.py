"""Notification persistence model (per-recipient inbox rows + delivery state)."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from gigorders.common.db import Base


class Notification(Base):
    """One row per (recipient, event); delivery fields are owned by the worker."""

    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_recipient_id_created_at", "recipient_id", "created_at"),
        Index("ix_notifications_entity_type_entity_id", "entity_type", "entity_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    recipient_id: Mapped[int] = mapped_column(Integer)
    category: Mapped[str] = mapped_column(String, default="ORDER_UPDATE")
    content: Mapped[str] = mapped_column(String)
    entity_type: Mapped[str] = mapped_column(String, default="ORDER")
    entity_id: Mapped[int] = mapped_column(Integer)
    priority: Mapped[str] = mapped_column(String, default="HIGH")
    delivery_method: Mapped[str] = mapped_column(String, default="IN_APP")
    delivery_status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
