"""API request/response schemas for order endpoints."""

import math
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field


class OrderOptions(BaseModel):
    """Order details beyond gig and package; origin fields are set by the HTTP layer."""

    express_delivery: bool = False
    requirements: str | None = None
    custom_details: dict[str, Any] | None = None
    order_source: Literal["WEB", "MOBILE", "API"] = "WEB"
    client_ip: str | None = None


class OrderCreateRequest(BaseModel):
    """Payload accepted by `POST /orders`; request origin is taken from the connection."""

    gig_id: int = Field(gt=0)
    package: str = Field(min_length=1)
    express_delivery: bool = False
    requirements: str | None = None
    custom_details: dict[str, Any] | None = None


class TransitionRequest(BaseModel):
    status: str = Field(min_length=1)
    reason: str | None = None


class CancelRequest(BaseModel):
    reason: str | None = None


class ExtensionRequest(BaseModel):
    reason: str = Field(min_length=1)
    days: int | None = Field(default=None, gt=0)


class StatusHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int
    status: str
    changed_by: int | None
    reason: str | None
    created_at: datetime | None


class OrderResponse(BaseModel):
    """Order as returned to buyers, providers and reporting callers."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    buyer_id: int
    provider_profile_id: int
    gig_id: int
    package_name: str
    total_price_cents: int
    priority_fee_cents: int | None
    currency: str
    status: str
    delivery_deadline: datetime
    completed_at: datetime | None
    cancellation_reason: str | None
    cancelled_at: datetime | None
    is_urgent: bool
    urgency_level: str
    order_priority: int
    delivery_extensions: int
    extension_reason: str | None
    status_history: list[StatusHistoryResponse] = []

    @computed_field
    @property
    def days_left(self) -> int:
        """Whole days until the delivery deadline, never negative."""

        deadline = self.delivery_deadline
        if deadline.tzinfo is None:
            deadline = deadline.replace(tzinfo=timezone.utc)
        seconds = (deadline - datetime.now(timezone.utc)).total_seconds()
        return max(0, math.ceil(seconds / 86400))


class OrderListResponse(BaseModel):
    orders: list[OrderResponse]
    total: int
    page: int
    limit: int
    total_pages: int
