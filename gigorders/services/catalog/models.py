"""Catalog and provider profile tables the order coordinator reads and counts on.

Catalog CRUD lives elsewhere; only the columns the order lifecycle depends on
are mapped here.
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from gigorders.common.db import Base


class ProviderProfile(Base):
    """Service provider profile carrying capacity counters."""

    __tablename__ = "provider_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    active_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    order_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_concurrent_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    last_active_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Gig(Base):
    """Priced catalog entry an order is placed against.

    `pricing` is a list of `{"name": ..., "price_cents": ...}` packages.
    """

    __tablename__ = "gigs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    provider_profile_id: Mapped[int] = mapped_column(Integer, index=True)
    title: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="ACTIVE", index=True)
    pricing: Mapped[list] = mapped_column(JSON().with_variant(JSONB(), "postgresql"), default=list)
    delivery_time_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    order_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_ordered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
