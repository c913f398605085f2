"""Append-only order status timeline."""

from sqlalchemy import select

from gigorders.common.db import utcnow
from gigorders.services.orders.models import Order, OrderStatusHistory


class AuditTrailRecorder:
    """Writes and reads `order_status_history`; never updates or deletes rows."""

    def record(self, db, order: Order, status: str, changed_by: int | None, reason: str | None = None) -> OrderStatusHistory:
        """Append the next timeline row for an order whose history is loaded.

        The caller holds the order row lock (or the version guard), so the
        next sequence number cannot be taken concurrently.
        """

        entry = OrderStatusHistory(
            sequence=len(order.status_history) + 1,
            status=status,
            changed_by=changed_by,
            reason=reason,
            created_at=utcnow(),
        )
        order.status_history.append(entry)
        db.add(entry)
        return entry

    def history(self, db, order_id: int) -> list[OrderStatusHistory]:
        return list(
            db.execute(
                select(OrderStatusHistory)
                .where(OrderStatusHistory.order_id == order_id)
                .order_by(OrderStatusHistory.sequence)
            ).scalars()
        )
