"""Order lifecycle coordination.

Owns the transaction boundary for every order mutation: catalog validation,
pricing, the order row, its timeline entry and the counter deltas commit
together or not at all. Notification fan-out runs only after that commit and
can never fail the operation.
"""

from datetime import timedelta
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import selectinload

from gigorders.common.config import settings
from gigorders.common.db import as_utc, unit_of_work, utcnow, with_transaction
from gigorders.common.errors import (
    Conflict,
    Forbidden,
    InvalidPackage,
    InvalidTransition,
    NotAvailable,
    NotFound,
    OrderError,
)
from gigorders.common.logging import logger
from gigorders.common.metrics import (
    active_orders_drift,
    order_conflicts_total,
    order_number_collisions_total,
    order_operation_seconds,
    order_rejections_total,
    order_transitions_total,
    orders_created_total,
)
from gigorders.common.state_machine import (
    BUYER,
    CANCELLED,
    INITIAL_STATUS,
    PROVIDER,
    is_terminal,
    plan_extension,
    plan_transition,
    role_of,
)
from gigorders.common.tracing import tracer
from gigorders.services.catalog.store import ORDERABLE_GIG_STATUSES, CatalogStore, ProfileStore
from gigorders.services.notification.queue import (
    DEADLINE_EXTENDED,
    ORDER_CREATED,
    ORDER_STATUS_UPDATE,
    DeferredDeliveryJob,
    DeliveryQueue,
)
from gigorders.services.notification.service import NotificationFanout, NotificationRecord
from gigorders.services.orders.audit import AuditTrailRecorder
from gigorders.services.orders.counters import CounterReconciler, delta
from gigorders.services.orders.models import Order, OrderStatusHistory
from gigorders.services.orders.schemas import OrderOptions


# PostgreSQL serialization_failure / deadlock_detected.
CONTENTION_PGCODES = {"40001", "40P01"}


def generate_order_number(now) -> str:
    """`ORD-YYYYMMDD-XXXXXXXX` with a random hex suffix."""

    return f"ORD-{now:%Y%m%d}-{uuid4().hex[:8].upper()}"


def compute_price(base_price_cents: int, express: bool) -> tuple[int, int | None]:
    """Return `(total, priority_fee)`; express delivery adds half the base price."""

    if not express:
        return base_price_cents, None
    fee = base_price_cents // 2
    return base_price_cents + fee, fee


def _find_package(pricing, package_name: str) -> dict:
    for package in pricing or []:
        if isinstance(package, dict) and package.get("name") == package_name:
            price = package.get("price_cents")
            if not isinstance(price, int) or price <= 0:
                raise InvalidPackage(f"Package {package_name!r} has no valid price")
            return package
    raise InvalidPackage(f"Invalid package selected: {package_name!r}")


def _is_contention(exc: OperationalError) -> bool:
    if getattr(exc.orig, "pgcode", None) in CONTENTION_PGCODES:
        return True
    return "database is locked" in str(exc.orig)


def _is_order_number_collision(exc: IntegrityError) -> bool:
    return "order_number" in str(exc.orig)


class OrderCoordinator:
    """Single entry point for creating, transitioning and reading orders."""

    def __init__(self, session_factory, queue: DeliveryQueue, service_name: str = "orders") -> None:
        self.session_factory = session_factory
        self.audit = AuditTrailRecorder()
        self.counters = CounterReconciler()
        self.fanout = NotificationFanout(session_factory, queue, service_name=service_name)
        self.service_name = service_name

    # -- creation -----------------------------------------------------------

    def create(self, buyer_id: int, gig_id: int, package_name: str, options: OrderOptions | None = None) -> Order:
        """Place an order in `PENDING` and notify both parties after commit."""

        options = options or OrderOptions()
        with tracer.start_as_current_span("order.create") as span, order_operation_seconds.labels(
            service=self.service_name, operation="create"
        ).time():
            span.set_attribute("gig.id", gig_id)
            try:
                order, provider_user_id = self._create_with_unique_number(buyer_id, gig_id, package_name, options)
            except OrderError as exc:
                self._rejected(exc)
                raise
            span.set_attribute("order.id", order.id)

        orders_created_total.labels(service=self.service_name).inc()
        logger.info(
            "order_created order_number=%s buyer_id=%s gig_id=%s total_price_cents=%s",
            order.order_number,
            buyer_id,
            gig_id,
            order.total_price_cents,
        )
        self.fanout.dispatch(
            [
                NotificationRecord(
                    recipient_id=buyer_id,
                    content=f"Your order #{order.order_number} has been placed.",
                    entity_id=order.id,
                ),
                NotificationRecord(
                    recipient_id=provider_user_id,
                    content=f"You have a new order #{order.order_number}.",
                    entity_id=order.id,
                ),
            ],
            self._job(order, provider_user_id, ORDER_CREATED),
        )
        return order

    def _create_with_unique_number(self, buyer_id, gig_id, package_name, options) -> tuple[Order, int]:
        attempts = settings.order_number_attempts
        for attempt in range(1, attempts + 1):
            try:
                with unit_of_work(self.session_factory) as db:
                    return self._insert_order(db, buyer_id, gig_id, package_name, options)
            except IntegrityError as exc:
                # Another transaction committed the same number after our pre-check.
                if not _is_order_number_collision(exc) or attempt == attempts:
                    raise
                order_number_collisions_total.labels(service=self.service_name).inc()
                logger.warning("order_number_collision attempt=%s/%s", attempt, attempts)
        raise Conflict("could not allocate a unique order number")

    def _allocate_order_number(self, db, now) -> str:
        for _ in range(settings.order_number_attempts):
            candidate = generate_order_number(now)
            taken = db.execute(select(Order.id).where(Order.order_number == candidate)).first()
            if taken is None:
                return candidate
            order_number_collisions_total.labels(service=self.service_name).inc()
            logger.warning("order_number_collision order_number=%s", candidate)
        raise Conflict("could not allocate a unique order number")

    def _insert_order(self, db, buyer_id, gig_id, package_name, options: OrderOptions) -> tuple[Order, int]:
        gig = CatalogStore(db).get_gig(gig_id)
        if gig is None:
            raise NotFound(f"Gig {gig_id} not found")
        if gig.status not in ORDERABLE_GIG_STATUSES:
            raise NotAvailable(f"Gig {gig_id} is not available for ordering (status={gig.status})")
        package = _find_package(gig.pricing, package_name)
        profile = ProfileStore(db).get_profile(gig.provider_profile_id)
        if profile is None:
            raise NotFound(f"Provider profile {gig.provider_profile_id} not found")
        if profile.user_id == buyer_id:
            raise Forbidden("Providers cannot order their own gig")

        total, priority_fee = compute_price(package["price_cents"], options.express_delivery)
        now = utcnow()
        lead_time_days = gig.delivery_time_days or settings.default_lead_time_days
        metadata = {"client_ip": options.client_ip}
        if options.custom_details:
            metadata["custom_details"] = options.custom_details

        order = Order(
            order_number=self._allocate_order_number(db, now),
            buyer_id=buyer_id,
            provider_profile_id=profile.id,
            gig_id=gig.id,
            package_name=package_name,
            total_price_cents=total,
            priority_fee_cents=priority_fee,
            currency=settings.default_currency,
            status=INITIAL_STATUS,
            state_version=0,
            delivery_deadline=now + timedelta(days=lead_time_days),
            is_urgent=options.express_delivery,
            urgency_level="EXPRESS" if options.express_delivery else "STANDARD",
            order_priority=1 if options.express_delivery else 0,
            delivery_extensions=0,
            requirements=options.requirements,
            order_source=options.order_source,
            extra=metadata,
            last_notified_at=now,
            created_at=now,
            updated_at=now,
            status_history=[],
        )
        db.add(order)
        db.flush()
        self.audit.record(db, order, INITIAL_STATUS, buyer_id, reason="order_created")
        self.counters.record_gig_order(db, gig.id)
        self.counters.apply(db, profile.id, delta(None, INITIAL_STATUS))
        return order, profile.user_id

    # -- transitions --------------------------------------------------------

    def transition(
        self,
        order_id: int,
        acting_user_id: int | None,
        requested_status: str,
        reason: str | None = None,
    ) -> Order:
        """Move an order along one legal edge; `acting_user_id=None` acts as the system."""

        requested_status = requested_status.upper()
        with tracer.start_as_current_span("order.transition") as span, order_operation_seconds.labels(
            service=self.service_name, operation="transition"
        ).time():
            span.set_attribute("order.id", order_id)
            span.set_attribute("order.requested_status", requested_status)
            try:
                order, plan, provider_user_id = self._run_with_retry(
                    "transition",
                    lambda db: self._apply_transition(db, order_id, acting_user_id, requested_status, reason),
                )
            except OrderError as exc:
                self._rejected(exc)
                raise

        order_transitions_total.labels(
            service=self.service_name, from_status=plan.from_status, to_status=plan.to_status
        ).inc()
        logger.info(
            "order_transitioned order_number=%s from=%s to=%s role=%s acting_user_id=%s",
            order.order_number,
            plan.from_status,
            plan.to_status,
            plan.role,
            acting_user_id,
        )
        if plan.to_status == CANCELLED:
            content = f"Order #{order.order_number} has been cancelled."
        else:
            content = f"Order #{order.order_number} status updated to {plan.to_status}."
        self.fanout.dispatch(
            [
                NotificationRecord(recipient_id=recipient, content=content, entity_id=order.id)
                for recipient in self._counterparties(order, provider_user_id, plan.role)
            ],
            self._job(order, provider_user_id, ORDER_STATUS_UPDATE, status=plan.to_status),
        )
        return order

    def cancel(self, order_id: int, acting_user_id: int | None, reason: str | None = None) -> Order:
        """Cancel a non-terminal order on behalf of one of its parties."""

        try:
            with self.session_factory() as db:
                order = db.get(Order, order_id)
                if order is None:
                    raise NotFound(f"Order {order_id} not found")
                self._resolve_role(db, order, acting_user_id)
                if is_terminal(order.status):
                    raise InvalidTransition(
                        order.status,
                        CANCELLED,
                        f"Order #{order.order_number} is already {order.status} and cannot be cancelled",
                    )
        except OrderError as exc:
            self._rejected(exc)
            raise
        return self.transition(order_id, acting_user_id, CANCELLED, reason)

    def extend_deadline(
        self,
        order_id: int,
        acting_user_id: int | None,
        reason: str,
        days: int | None = None,
    ) -> Order:
        """Push the delivery deadline forward without a status change."""

        days = settings.extension_days if days is None else days
        with tracer.start_as_current_span("order.extend_deadline") as span:
            span.set_attribute("order.id", order_id)
            try:
                order, role, provider_user_id = self._run_with_retry(
                    "extend_deadline",
                    lambda db: self._apply_extension(db, order_id, acting_user_id, reason, days),
                )
            except OrderError as exc:
                self._rejected(exc)
                raise

        logger.info(
            "order_deadline_extended order_number=%s extensions=%s days=%s",
            order.order_number,
            order.delivery_extensions,
            days,
        )
        self.fanout.dispatch(
            [
                NotificationRecord(
                    recipient_id=recipient,
                    content=f"Delivery of order #{order.order_number} was extended by {days} days: {reason}",
                    entity_id=order.id,
                )
                for recipient in self._counterparties(order, provider_user_id, role)
            ],
            self._job(order, provider_user_id, DEADLINE_EXTENDED, status=order.status),
        )
        return order

    def _run_with_retry(self, operation: str, fn):
        """Run `fn(db)` in a transaction, re-reading once after a lost race."""

        attempts = settings.transition_attempts
        last_error: Conflict | None = None
        for attempt in range(1, attempts + 1):
            try:
                return with_transaction(self.session_factory, fn)
            except OperationalError as exc:
                if not _is_contention(exc):
                    raise
                last_error = Conflict(f"{operation} lost a concurrent update: {exc.orig}")
            except Conflict as exc:
                last_error = exc
            order_conflicts_total.labels(service=self.service_name, operation=operation).inc()
            logger.warning("order_conflict operation=%s attempt=%s/%s", operation, attempt, attempts)
        raise last_error

    def _load_for_update(self, db, order_id: int) -> Order:
        order = db.execute(
            select(Order)
            .where(Order.id == order_id)
            .options(selectinload(Order.status_history))
            .with_for_update()
        ).scalar_one_or_none()
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    def _resolve_role(self, db, order: Order, acting_user_id: int | None) -> tuple[str, int]:
        profile = ProfileStore(db).get_profile(order.provider_profile_id)
        if profile is None:
            raise NotFound(f"Provider profile {order.provider_profile_id} not found")
        role = role_of(order.buyer_id, profile.user_id, acting_user_id)
        if role is None:
            raise Forbidden("You can only update your own orders")
        return role, profile.user_id

    def _guarded_update(self, db, order: Order, new_status: str, fields: dict) -> None:
        """Write the order row only if nobody moved it since we read it."""

        current_version = order.state_version
        result = db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.status == order.status,
                Order.state_version == current_version,
            )
            .values(status=new_status, state_version=current_version + 1, updated_at=utcnow(), **fields)
        )
        if result.rowcount != 1:
            raise Conflict(
                f"optimistic concurrency conflict for order {order.order_number} "
                f"(expected version {current_version})"
            )
        order.status = new_status
        order.state_version = current_version + 1
        for key, value in fields.items():
            setattr(order, key, value)

    def _apply_transition(self, db, order_id, acting_user_id, requested_status, reason):
        order = self._load_for_update(db, order_id)
        role, provider_user_id = self._resolve_role(db, order, acting_user_id)
        now = utcnow()
        plan = plan_transition(order.status, requested_status, role, reason=reason, now=now)
        self._guarded_update(db, order, plan.to_status, {**plan.fields, "last_notified_at": now})
        self.audit.record(db, order, plan.to_status, acting_user_id, reason=reason)
        self.counters.apply(db, order.provider_profile_id, delta(plan.from_status, plan.to_status))
        return order, plan, provider_user_id

    def _apply_extension(self, db, order_id, acting_user_id, reason, days):
        order = self._load_for_update(db, order_id)
        role, provider_user_id = self._resolve_role(db, order, acting_user_id)
        plan = plan_extension(
            order.status,
            as_utc(order.delivery_deadline),
            order.delivery_extensions,
            reason,
            days,
        )
        self._guarded_update(
            db,
            order,
            order.status,
            {
                "delivery_deadline": plan.delivery_deadline,
                "delivery_extensions": plan.delivery_extensions,
                "extension_reason": plan.extension_reason,
                "last_notified_at": utcnow(),
            },
        )
        return order, role, provider_user_id

    # -- reads --------------------------------------------------------------

    def get_order(self, order_id: int, viewer_id: int | None = None) -> Order:
        """Fetch one order with its timeline; a viewer must be one of its parties."""

        with self.session_factory() as db:
            order = db.execute(
                select(Order).where(Order.id == order_id).options(selectinload(Order.status_history))
            ).scalar_one_or_none()
            if order is None:
                raise NotFound(f"Order {order_id} not found")
            if viewer_id is not None:
                self._resolve_role(db, order, viewer_id)
            return order

    def get_history(self, order_id: int, viewer_id: int | None = None) -> list[OrderStatusHistory]:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise NotFound(f"Order {order_id} not found")
            if viewer_id is not None:
                self._resolve_role(db, order, viewer_id)
            return self.audit.history(db, order_id)

    def list_buyer_orders(
        self, buyer_id: int, status: str | None = None, page: int = 1, limit: int = 10
    ) -> tuple[list[Order], int]:
        """Buyer's orders, newest first."""

        criteria = [Order.buyer_id == buyer_id]
        if status:
            criteria.append(Order.status == status.upper())
        return self._page(criteria, [Order.created_at.desc(), Order.id.desc()], page, limit)

    def list_provider_orders(
        self,
        provider_user_id: int,
        statuses: list[str] | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Order], int]:
        """Provider work queue: expedited orders first, then newest."""

        with self.session_factory() as db:
            profile = ProfileStore(db).get_profile_by_user_id(provider_user_id)
        if profile is None:
            return [], 0
        criteria = [Order.provider_profile_id == profile.id]
        if statuses:
            criteria.append(Order.status.in_([status.upper() for status in statuses]))
        return self._page(
            criteria,
            [Order.order_priority.desc(), Order.created_at.desc(), Order.id.desc()],
            page,
            limit,
        )

    def _page(self, criteria, ordering, page: int, limit: int) -> tuple[list[Order], int]:
        page = max(page, 1)
        with self.session_factory() as db:
            total = db.execute(select(func.count(Order.id)).where(*criteria)).scalar_one()
            orders = list(
                db.execute(
                    select(Order)
                    .where(*criteria)
                    .options(selectinload(Order.status_history))
                    .order_by(*ordering)
                    .offset((page - 1) * limit)
                    .limit(limit)
                ).scalars()
            )
        return orders, total

    def reconcile(self, fix: bool = False) -> dict:
        """Run the counter/timeline consistency check and publish drift as a gauge."""

        with unit_of_work(self.session_factory) as db:
            report = self.counters.reconcile_active_orders(db, fix=fix)
        active_orders_drift.labels(service=self.service_name).set(float(report["drifted_count"]))
        if report["drifted_count"] or report["broken_timeline_count"]:
            logger.error(
                "order_reconciliation_mismatch drifted=%s broken_timelines=%s fixed=%s",
                report["drifted_count"],
                report["broken_timeline_count"],
                fix,
            )
        return report

    # -- helpers ------------------------------------------------------------

    def _counterparties(self, order: Order, provider_user_id: int, role: str) -> list[int]:
        if role == BUYER:
            return [provider_user_id]
        if role == PROVIDER:
            return [order.buyer_id]
        return [order.buyer_id, provider_user_id]

    def _job(self, order: Order, provider_user_id: int, event_kind: str, status: str | None = None) -> DeferredDeliveryJob:
        return DeferredDeliveryJob(
            order_id=order.id,
            buyer_id=order.buyer_id,
            provider_id=provider_user_id,
            order_number=order.order_number,
            event_kind=event_kind,
            status=status,
        )

    def _rejected(self, exc: OrderError) -> None:
        order_rejections_total.labels(service=self.service_name, error_type=exc.error_type).inc()
        logger.info("order_rejected error_type=%s detail=%s", exc.error_type, exc.message)
