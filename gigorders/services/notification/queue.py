"""Deferred delivery job envelope and the Redis list that carries it.

The order coordinator only ever calls `enqueue`; the delivery worker drains
the same list with `dequeue`.
"""

import json
from datetime import datetime, timezone
from typing import Protocol

import redis
from pydantic import BaseModel, Field

from gigorders.common.config import settings


ORDER_CREATED = "ORDER_CREATED"
ORDER_STATUS_UPDATE = "ORDER_STATUS_UPDATE"
DEADLINE_EXTENDED = "DEADLINE_EXTENDED"


class DeferredDeliveryJob(BaseModel):
    """Message handed to external delivery after the order transaction commits."""

    order_id: int
    buyer_id: int
    provider_id: int
    order_number: str
    event_kind: str
    status: str | None = None
    attempt: int = 0
    enqueued_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class DeliveryQueue(Protocol):
    def enqueue(self, job: DeferredDeliveryJob) -> None: ...


class RedisDeliveryQueue:
    """LPUSH/BRPOP queue with short socket timeouts so producers never hang."""

    def __init__(self, client: redis.Redis | None = None, name: str | None = None) -> None:
        self.client = client or redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.delivery_enqueue_timeout_seconds,
            socket_connect_timeout=settings.delivery_enqueue_timeout_seconds,
        )
        self.name = name or settings.delivery_queue_name

    def enqueue(self, job: DeferredDeliveryJob) -> None:
        self.client.lpush(self.name, json.dumps(job.model_dump()))

    def dequeue(self, timeout: int = 1) -> DeferredDeliveryJob | None:
        """Block up to `timeout` seconds for the oldest job."""

        item = self.client.brpop([self.name], timeout=timeout)
        if item is None:
            return None
        _, raw = item
        return DeferredDeliveryJob(**json.loads(raw))
