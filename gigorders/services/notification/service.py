"""Best-effort notification fan-out run after an order transaction commits.

Two phases, both allowed to fail without affecting the caller:
1. write in-app notification rows so a client polling right after the change
   sees them;
2. hand a `DeferredDeliveryJob` to the delivery queue for external channels.
"""

from pydantic import BaseModel
from sqlalchemy import select

from gigorders.common.db import unit_of_work
from gigorders.common.errors import DeliveryDegraded
from gigorders.common.logging import logger
from gigorders.common.metrics import notification_failures_total
from gigorders.services.notification.models import Notification
from gigorders.services.notification.queue import DeferredDeliveryJob, DeliveryQueue


class NotificationRecord(BaseModel):
    """One notification to write for one recipient."""

    recipient_id: int
    content: str
    entity_id: int
    category: str = "ORDER_UPDATE"
    entity_type: str = "ORDER"
    priority: str = "HIGH"
    delivery_method: str = "IN_APP"


class NotificationStore:
    """Notification rows for one open session."""

    def __init__(self, db) -> None:
        self.db = db

    def create_notification(self, record: NotificationRecord) -> Notification:
        notification = Notification(**record.model_dump(), delivery_status="PENDING")
        self.db.add(notification)
        return notification

    def inbox(self, recipient_id: int, limit: int = 50) -> list[Notification]:
        return list(
            self.db.execute(
                select(Notification)
                .where(Notification.recipient_id == recipient_id)
                .order_by(Notification.created_at.desc(), Notification.id.desc())
                .limit(limit)
            ).scalars()
        )

    def pending_for_entity(self, entity_type: str, entity_id: int) -> list[Notification]:
        return list(
            self.db.execute(
                select(Notification)
                .where(
                    Notification.entity_type == entity_type,
                    Notification.entity_id == entity_id,
                    Notification.delivery_status == "PENDING",
                )
                .order_by(Notification.id)
            ).scalars()
        )


class NotificationFanout:
    """Writes notification rows, then enqueues deferred delivery; never raises."""

    def __init__(self, session_factory, queue: DeliveryQueue, service_name: str = "orders") -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.service_name = service_name

    def dispatch(self, records: list[NotificationRecord], job: DeferredDeliveryJob) -> bool:
        """Run both phases; returns False when either one degraded."""

        recorded = self._record(records, job)
        enqueued = self._enqueue(job)
        return recorded and enqueued

    def _record(self, records: list[NotificationRecord], job: DeferredDeliveryJob) -> bool:
        try:
            with unit_of_work(self.session_factory) as db:
                store = NotificationStore(db)
                for record in records:
                    store.create_notification(record)
            return True
        except Exception as exc:
            self._degraded("record", job, exc)
            return False

    def _enqueue(self, job: DeferredDeliveryJob) -> bool:
        try:
            self.queue.enqueue(job)
            return True
        except Exception as exc:
            self._degraded("enqueue", job, exc)
            return False

    def _degraded(self, phase: str, job: DeferredDeliveryJob, exc: Exception) -> None:
        error = DeliveryDegraded(f"notification {phase} failed for order {job.order_number}: {exc}")
        notification_failures_total.labels(service=self.service_name, phase=phase).inc()
        logger.warning(
            "delivery_degraded phase=%s order_id=%s event_kind=%s error=%s",
            phase,
            job.order_id,
            job.event_kind,
            error.message,
        )
