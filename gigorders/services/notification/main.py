"""Notification service lifecycle: deferred delivery worker plus inbox reads."""

import asyncio
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI, Header, HTTPException

from gigorders.common.config import settings
from gigorders.common.db import SessionLocal
from gigorders.common.logging import configure_logging, log_startup_config
from gigorders.common.metrics import metrics_response
from gigorders.common.tracing import instrument_app, setup_tracing
from gigorders.services.notification.queue import RedisDeliveryQueue
from gigorders.services.notification.service import NotificationStore
from gigorders.services.notification.worker import DeliveryWorker

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "REDIS_URL", "DELIVERY_QUEUE_NAME", "DELIVERY_WEBHOOK_URL"],
)
# The consumer blocks on BRPOP, so it gets a client without the producer's short socket timeout.
queue = RedisDeliveryQueue(client=redis.Redis.from_url(settings.redis_url, decode_responses=True))
worker = DeliveryWorker(SessionLocal, queue)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the delivery loop with FastAPI application lifecycle."""

    worker_task = asyncio.create_task(worker.run_forever())
    yield
    worker_task.cancel()
    worker.http.close()


app = FastAPI(title="Gig Orders Notification Service", lifespan=lifespan)
instrument_app(app)


@app.get("/notifications")
def inbox(x_user_id: int | None = Header(default=None), limit: int = 50):
    """Most recent notifications for the calling user."""

    if x_user_id is None:
        raise HTTPException(status_code=401, detail="missing x-user-id")
    with SessionLocal() as db:
        rows = NotificationStore(db).inbox(x_user_id, limit=max(1, min(limit, 200)))
        return [
            {
                "id": row.id,
                "category": row.category,
                "content": row.content,
                "entity_type": row.entity_type,
                "entity_id": row.entity_id,
                "delivery_status": row.delivery_status,
                "is_read": row.is_read,
                "created_at": row.created_at,
            }
            for row in rows
        ]


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
