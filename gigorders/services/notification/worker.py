"""Deferred notification delivery worker.

Drains `DeferredDeliveryJob`s from the Redis list, pushes the order's pending
notification rows to the configured webhook and records the outcome on each
row. Failed deliveries are retried with exponential backoff until
`delivery_max_retries`, then marked `FAILED`.
"""

import asyncio
from datetime import datetime, timedelta

import httpx

from gigorders.common.config import settings
from gigorders.common.db import as_utc, unit_of_work, utcnow
from gigorders.common.logging import logger, order_id_ctx
from gigorders.common.metrics import delivery_attempts_total
from gigorders.services.notification.queue import DeferredDeliveryJob
from gigorders.services.notification.service import NotificationStore


SENT = "SENT"
FAILED = "FAILED"
RETRY = "RETRY"
EMPTY = "EMPTY"


class DeliveryWorker:
    """Consumes deferred jobs and records per-notification delivery state."""

    def __init__(
        self,
        session_factory,
        queue,
        http_client: httpx.Client | None = None,
        webhook_url: str | None = None,
        service_name: str = "notification",
    ) -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.http = http_client or httpx.Client(timeout=5.0)
        self.webhook_url = webhook_url if webhook_url is not None else settings.delivery_webhook_url
        self.service_name = service_name

    def _backoff(self, attempt: int) -> timedelta:
        return timedelta(seconds=settings.delivery_backoff_seconds * (2**attempt))

    def _deliver(self, job: DeferredDeliveryJob, notifications) -> None:
        if not self.webhook_url:
            # In-app only: the row itself is the delivery.
            return
        resp = self.http.post(
            self.webhook_url,
            json={
                "job": job.model_dump(),
                "notifications": [
                    {"id": n.id, "recipient_id": n.recipient_id, "content": n.content} for n in notifications
                ],
            },
        )
        resp.raise_for_status()

    def process(self, job: DeferredDeliveryJob) -> str:
        """Deliver one job; returns the outcome recorded on its notifications."""

        token = order_id_ctx.set(str(job.order_id))
        retry_job = None
        try:
            with unit_of_work(self.session_factory) as db:
                pending = NotificationStore(db).pending_for_entity("ORDER", job.order_id)
                if not pending:
                    return EMPTY
                now = utcnow()
                try:
                    self._deliver(job, pending)
                except httpx.HTTPError as exc:
                    attempt = job.attempt + 1
                    exhausted = attempt >= settings.delivery_max_retries
                    for notification in pending:
                        notification.retry_count += 1
                        if exhausted:
                            notification.delivery_status = FAILED
                        else:
                            notification.scheduled_at = now + self._backoff(job.attempt)
                    outcome = FAILED if exhausted else RETRY
                    logger.warning(
                        "delivery_failed order_number=%s attempt=%s outcome=%s error=%s",
                        job.order_number,
                        attempt,
                        outcome,
                        exc,
                    )
                    if not exhausted:
                        retry_job = job.model_copy(update={"attempt": attempt})
                else:
                    for notification in pending:
                        notification.delivery_status = SENT
                        notification.delivered_at = now
                    outcome = SENT
                    logger.info(
                        "delivery_sent order_number=%s event_kind=%s notifications=%s",
                        job.order_number,
                        job.event_kind,
                        len(pending),
                    )
            delivery_attempts_total.labels(service=self.service_name, result=outcome).inc()
            if retry_job is not None:
                self.queue.enqueue(retry_job)
            return outcome
        finally:
            order_id_ctx.reset(token)

    def is_due(self, job: DeferredDeliveryJob, now: datetime | None = None) -> bool:
        """A retried job waits until its notifications' `scheduled_at` has passed."""

        if job.attempt == 0:
            return True
        now = now or utcnow()
        with self.session_factory() as db:
            pending = NotificationStore(db).pending_for_entity("ORDER", job.order_id)
        due_times = [as_utc(n.scheduled_at) for n in pending if n.scheduled_at is not None]
        return not due_times or max(due_times) <= now

    async def run_forever(self, poll_timeout: int = 1) -> None:
        """Continuously drain the delivery queue; errors are logged and the loop continues.

        Dequeue removes the job, so one whose processing raises is pushed back
        onto the queue and its PENDING rows keep a job to deliver them.
        """

        while True:
            job = None
            try:
                job = await asyncio.to_thread(self.queue.dequeue, poll_timeout)
                if job is None:
                    continue
                if not await asyncio.to_thread(self.is_due, job):
                    await asyncio.to_thread(self.queue.enqueue, job)
                    await asyncio.sleep(0.5)
                    continue
                await asyncio.to_thread(self.process, job)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("delivery_loop_error queue=%s error=%s", settings.delivery_queue_name, exc)
                if job is not None:
                    await self._requeue(job)
                await asyncio.sleep(2)

    async def _requeue(self, job: DeferredDeliveryJob) -> None:
        try:
            await asyncio.to_thread(self.queue.enqueue, job)
        except Exception as exc:
            logger.error(
                "delivery_requeue_failed order_number=%s attempt=%s error=%s",
                job.order_number,
                job.attempt,
                exc,
            )
