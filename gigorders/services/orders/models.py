"""Order database models.

This schema is the source of truth for order state, its extension history and
the append-only status timeline.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gigorders.common.db import Base


class Order(Base):
    """Current state of an order aggregate."""

    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_provider_status_priority", "provider_profile_id", "status", "order_priority"),
        Index("ix_orders_gig_id_status", "gig_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_number: Mapped[str] = mapped_column(String, unique=True, index=True)
    buyer_id: Mapped[int] = mapped_column(Integer, index=True)
    provider_profile_id: Mapped[int] = mapped_column(ForeignKey("provider_profiles.id"), index=True)
    gig_id: Mapped[int] = mapped_column(ForeignKey("gigs.id"))

    package_name: Mapped[str] = mapped_column(String)
    total_price_cents: Mapped[int] = mapped_column(Integer)
    priority_fee_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD")

    status: Mapped[str] = mapped_column(String, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivery_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    is_urgent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    urgency_level: Mapped[str] = mapped_column(String, default="STANDARD")
    order_priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivery_extensions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    extension_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    requirements: Mapped[str | None] = mapped_column(Text, nullable=True)
    order_source: Mapped[str] = mapped_column(String, default="WEB")
    # `metadata` is reserved on declarative classes.
    extra: Mapped[dict] = mapped_column("metadata", JSON().with_variant(JSONB(), "postgresql"), default=dict)
    last_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    status_history: Mapped[list["OrderStatusHistory"]] = relationship(
        back_populates="order", order_by="OrderStatusHistory.sequence"
    )


class OrderStatusHistory(Base):
    """Immutable audit trail of every committed status transition."""

    __tablename__ = "order_status_history"
    __table_args__ = (UniqueConstraint("order_id", "sequence", name="uq_order_status_history_sequence"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    sequence: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String)
    changed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    order: Mapped[Order] = relationship(back_populates="status_history")
