"""Order lifecycle coordinator behaviour against a seeded SQLite database."""

from datetime import timedelta

import pytest
from prometheus_client import REGISTRY

from gigorders.common.db import as_utc
from gigorders.common.errors import Conflict, Forbidden, InvalidPackage, InvalidTransition, NotAvailable, NotFound
from gigorders.common.state_machine import is_valid_path
from gigorders.services.catalog.models import ProviderProfile
from gigorders.services.notification.models import Notification
from gigorders.services.notification.service import NotificationStore
from gigorders.services.orders import service as order_service
from gigorders.services.orders.schemas import OrderOptions
from gigorders.services.orders.service import compute_price

from conftest import (
    BUYER_ID,
    GIG_ID,
    OTHER_BUYER_ID,
    PAUSED_GIG_ID,
    PROVIDER_USER_ID,
    STRANGER_ID,
)


def _sample(name: str, **labels) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def _accepted(coordinator):
    order = coordinator.create(BUYER_ID, GIG_ID, "basic")
    return coordinator.transition(order.id, PROVIDER_USER_ID, "ACCEPTED")


def test_compute_price_express_adds_half_base():
    assert compute_price(10000, False) == (10000, None)
    assert compute_price(10000, True) == (15000, 5000)
    assert compute_price(25001, True) == (37501, 12500)


def test_create_places_pending_order(coordinator, snapshot, queue):
    before = snapshot()
    order = coordinator.create(BUYER_ID, GIG_ID, "basic", OrderOptions(requirements="30s intro"))

    assert order.status == "PENDING"
    assert order.order_number.startswith("ORD-")
    assert len(order.order_number) == len("ORD-YYYYMMDD-XXXXXXXX")
    assert order.total_price_cents == 10000
    assert order.priority_fee_cents is None
    assert order.currency == "USD"
    assert order.requirements == "30s intro"
    assert as_utc(order.delivery_deadline) - as_utc(order.created_at) == timedelta(days=3)
    assert [(h.sequence, h.status, h.changed_by) for h in order.status_history] == [(1, "PENDING", BUYER_ID)]

    after = snapshot()
    assert after["orders"] == before["orders"] + 1
    assert after["provider_order_count"] == before["provider_order_count"] + 1
    assert after["active_orders"] == before["active_orders"]
    assert after["gig_order_count"] == before["gig_order_count"] + 1
    assert after["gig_last_ordered_at"] is not None
    assert after["notifications"] == 2
    assert [job.event_kind for job in queue.jobs] == ["ORDER_CREATED"]


def test_create_express_order_is_prioritised(coordinator):
    order = coordinator.create(BUYER_ID, GIG_ID, "premium", OrderOptions(express_delivery=True))

    assert order.total_price_cents == 37501
    assert order.priority_fee_cents == 12500
    assert order.is_urgent is True
    assert order.urgency_level == "EXPRESS"
    assert order.order_priority == 1


@pytest.mark.parametrize(
    ("gig_id", "package", "buyer_id", "error"),
    [
        (404, "basic", BUYER_ID, NotFound),
        (PAUSED_GIG_ID, "basic", BUYER_ID, NotAvailable),
        (GIG_ID, "platinum", BUYER_ID, InvalidPackage),
        (GIG_ID, "basic", PROVIDER_USER_ID, Forbidden),
    ],
)
def test_create_rejections_leave_no_trace(coordinator, snapshot, queue, gig_id, package, buyer_id, error):
    before = snapshot()
    rejected_before = _sample("order_rejections_total", service="orders-test", error_type=error.error_type)

    with pytest.raises(error):
        coordinator.create(buyer_id, gig_id, package)

    assert snapshot() == before
    assert queue.jobs == []
    assert _sample("order_rejections_total", service="orders-test", error_type=error.error_type) == rejected_before + 1


def test_full_happy_path_counters_and_timeline(coordinator, snapshot, session_factory):
    order = coordinator.create(BUYER_ID, GIG_ID, "basic")
    assert snapshot()["active_orders"] == 0

    coordinator.transition(order.id, PROVIDER_USER_ID, "ACCEPTED")
    assert snapshot()["active_orders"] == 1
    coordinator.transition(order.id, PROVIDER_USER_ID, "IN_PROGRESS")
    coordinator.transition(order.id, PROVIDER_USER_ID, "DELIVERED")
    assert snapshot()["active_orders"] == 1

    done = coordinator.transition(order.id, BUYER_ID, "COMPLETED")
    assert done.status == "COMPLETED"
    assert done.completed_at is not None
    assert done.state_version == 4

    state = snapshot()
    assert state["active_orders"] == 0
    assert state["live_active"] == 0
    assert state["provider_order_count"] == 1

    history = coordinator.get_history(order.id)
    assert [h.status for h in history] == ["PENDING", "ACCEPTED", "IN_PROGRESS", "DELIVERED", "COMPLETED"]
    assert [h.sequence for h in history] == [1, 2, 3, 4, 5]
    assert is_valid_path([h.status for h in history])

    # Every transition notifies the counterparty only.
    with session_factory() as db:
        buyer_inbox = NotificationStore(db).inbox(BUYER_ID)
        provider_inbox = NotificationStore(db).inbox(PROVIDER_USER_ID)
    assert len(buyer_inbox) == 4
    assert len(provider_inbox) == 2
    assert any("status updated to COMPLETED" in n.content for n in provider_inbox)


def test_provider_rejects_pending_order(coordinator, snapshot):
    order = coordinator.create(BUYER_ID, GIG_ID, "basic")
    rejected = coordinator.transition(order.id, PROVIDER_USER_ID, "rejected", reason="fully booked")

    assert rejected.status == "REJECTED"
    assert rejected.cancellation_reason == "fully booked"
    assert rejected.cancelled_at is not None
    assert snapshot()["active_orders"] == 0
    assert snapshot()["provider_order_count"] == 1


def test_buyer_cannot_accept(coordinator, snapshot):
    order = coordinator.create(BUYER_ID, GIG_ID, "basic")
    before = snapshot()

    with pytest.raises(Forbidden):
        coordinator.transition(order.id, BUYER_ID, "ACCEPTED")

    assert snapshot() == before
    assert coordinator.get_order(order.id).status == "PENDING"


def test_stranger_cannot_touch_order(coordinator, snapshot):
    order = _accepted(coordinator)
    before = snapshot()

    with pytest.raises(Forbidden):
        coordinator.cancel(order.id, STRANGER_ID, "not mine")
    with pytest.raises(Forbidden):
        coordinator.transition(order.id, OTHER_BUYER_ID, "IN_PROGRESS")
    with pytest.raises(Forbidden):
        coordinator.get_order(order.id, viewer_id=STRANGER_ID)
    with pytest.raises(Forbidden):
        coordinator.extend_deadline(order.id, STRANGER_ID, "more time")

    assert snapshot() == before


def test_buyer_cancels_accepted_order(coordinator, snapshot, session_factory):
    order = _accepted(coordinator)
    assert snapshot()["active_orders"] == 1

    cancelled = coordinator.cancel(order.id, BUYER_ID)

    assert cancelled.status == "CANCELLED"
    assert cancelled.cancellation_reason == "Not specified"
    assert snapshot()["active_orders"] == 0
    with session_factory() as db:
        inbox = NotificationStore(db).inbox(PROVIDER_USER_ID)
    assert inbox[0].content == f"Order #{order.order_number} has been cancelled."


def test_pending_order_cannot_be_cancelled(coordinator):
    order = coordinator.create(BUYER_ID, GIG_ID, "basic")

    with pytest.raises(InvalidTransition):
        coordinator.cancel(order.id, BUYER_ID)


def test_cancel_terminal_order_is_invalid(coordinator, snapshot):
    order = _accepted(coordinator)
    coordinator.cancel(order.id, PROVIDER_USER_ID, "sick")
    before = snapshot()

    with pytest.raises(InvalidTransition) as excinfo:
        coordinator.cancel(order.id, BUYER_ID)
    assert "already CANCELLED" in excinfo.value.message
    assert snapshot() == before


def test_repeated_transition_is_invalid_not_duplicated(coordinator, snapshot):
    order = coordinator.create(BUYER_ID, GIG_ID, "basic")
    coordinator.transition(order.id, PROVIDER_USER_ID, "ACCEPTED")
    before = snapshot()

    with pytest.raises(InvalidTransition):
        coordinator.transition(order.id, PROVIDER_USER_ID, "ACCEPTED")

    assert snapshot() == before
    assert len(coordinator.get_history(order.id)) == 2


def test_unknown_status_is_invalid(coordinator):
    order = coordinator.create(BUYER_ID, GIG_ID, "basic")

    with pytest.raises(InvalidTransition):
        coordinator.transition(order.id, PROVIDER_USER_ID, "SHIPPED")


def test_missing_order_is_not_found(coordinator):
    with pytest.raises(NotFound):
        coordinator.transition(4040, PROVIDER_USER_ID, "ACCEPTED")
    with pytest.raises(NotFound):
        coordinator.cancel(4040, BUYER_ID)
    with pytest.raises(NotFound):
        coordinator.get_order(4040)


def test_dispute_then_system_resolution(coordinator, snapshot):
    order = _accepted(coordinator)
    coordinator.transition(order.id, PROVIDER_USER_ID, "IN_PROGRESS")
    coordinator.transition(order.id, PROVIDER_USER_ID, "DELIVERED")
    disputed = coordinator.transition(order.id, BUYER_ID, "DISPUTED", reason="wrong format")
    assert disputed.status == "DISPUTED"
    assert snapshot()["active_orders"] == 1

    resolved = coordinator.transition(order.id, None, "CANCELLED", reason="refunded by support")
    assert resolved.status == "CANCELLED"
    assert snapshot()["active_orders"] == 0
    history = coordinator.get_history(order.id)
    assert history[-1].changed_by is None
    assert history[-1].reason == "refunded by support"


def test_extension_pushes_deadline_without_timeline_row(coordinator, queue):
    order = _accepted(coordinator)
    deadline = as_utc(order.delivery_deadline)

    extended = coordinator.extend_deadline(order.id, PROVIDER_USER_ID, "client sent new assets", days=2)

    assert as_utc(extended.delivery_deadline) == deadline + timedelta(days=2)
    assert extended.delivery_extensions == 1
    assert extended.extension_reason == "client sent new assets"
    assert extended.status == "ACCEPTED"
    assert len(coordinator.get_history(order.id)) == 2
    assert queue.jobs[-1].event_kind == "DEADLINE_EXTENDED"


def test_extension_uses_configured_default_days(coordinator):
    order = _accepted(coordinator)
    deadline = as_utc(order.delivery_deadline)

    extended = coordinator.extend_deadline(order.id, BUYER_ID, "holiday")

    assert as_utc(extended.delivery_deadline) == deadline + timedelta(days=7)


def test_extension_rejected_outside_working_states(coordinator):
    order = coordinator.create(BUYER_ID, GIG_ID, "basic")

    with pytest.raises(InvalidTransition):
        coordinator.extend_deadline(order.id, PROVIDER_USER_ID, "too early")
    accepted = coordinator.transition(order.id, PROVIDER_USER_ID, "ACCEPTED")
    with pytest.raises(InvalidTransition):
        coordinator.extend_deadline(accepted.id, PROVIDER_USER_ID, "backwards", days=-1)
    with pytest.raises(InvalidTransition):
        coordinator.extend_deadline(accepted.id, PROVIDER_USER_ID, "no-op", days=0)
    assert coordinator.get_order(accepted.id).delivery_extensions == 0


def test_order_number_collision_is_retried(coordinator, monkeypatch):
    first = coordinator.create(BUYER_ID, GIG_ID, "basic")
    numbers = iter([first.order_number, "ORD-20260101-0000BEEF"])
    monkeypatch.setattr(order_service, "generate_order_number", lambda now: next(numbers))
    collisions_before = _sample("order_number_collisions_total", service="orders-test")

    second = coordinator.create(OTHER_BUYER_ID, GIG_ID, "basic")

    assert second.order_number == "ORD-20260101-0000BEEF"
    assert _sample("order_number_collisions_total", service="orders-test") == collisions_before + 1


def test_unique_violation_after_precheck_retries_creation(coordinator, snapshot, monkeypatch):
    first = coordinator.create(BUYER_ID, GIG_ID, "basic")
    # The pre-check misses a number another transaction committed concurrently.
    numbers = iter([first.order_number, "ORD-20260101-0000CAFE"])
    monkeypatch.setattr(coordinator, "_allocate_order_number", lambda db, now: next(numbers))
    collisions_before = _sample("order_number_collisions_total", service="orders-test")
    before = snapshot()

    second = coordinator.create(OTHER_BUYER_ID, GIG_ID, "basic")

    assert second.order_number == "ORD-20260101-0000CAFE"
    assert [h.status for h in second.status_history] == ["PENDING"]
    after = snapshot()
    assert after["orders"] == before["orders"] + 1
    assert after["gig_order_count"] == before["gig_order_count"] + 1
    assert after["provider_order_count"] == before["provider_order_count"] + 1
    assert after["history_rows"] == before["history_rows"] + 1
    assert _sample("order_number_collisions_total", service="orders-test") == collisions_before + 1


def test_order_number_exhaustion_is_conflict(coordinator, snapshot, monkeypatch):
    first = coordinator.create(BUYER_ID, GIG_ID, "basic")
    monkeypatch.setattr(order_service, "generate_order_number", lambda now: first.order_number)
    before = snapshot()

    with pytest.raises(Conflict):
        coordinator.create(OTHER_BUYER_ID, GIG_ID, "basic")

    assert snapshot() == before


def test_buyer_listing_filters_and_paginates(coordinator):
    ids = [coordinator.create(BUYER_ID, GIG_ID, "basic").id for _ in range(3)]
    coordinator.create(OTHER_BUYER_ID, GIG_ID, "basic")
    coordinator.transition(ids[0], PROVIDER_USER_ID, "ACCEPTED")

    orders, total = coordinator.list_buyer_orders(BUYER_ID, page=1, limit=2)
    assert total == 3
    assert [o.id for o in orders] == [ids[2], ids[1]]

    orders, total = coordinator.list_buyer_orders(BUYER_ID, page=2, limit=2)
    assert [o.id for o in orders] == [ids[0]]

    orders, total = coordinator.list_buyer_orders(BUYER_ID, status="accepted")
    assert total == 1
    assert orders[0].status == "ACCEPTED"


def test_provider_queue_puts_express_first(coordinator):
    standard = coordinator.create(BUYER_ID, GIG_ID, "basic")
    express = coordinator.create(OTHER_BUYER_ID, GIG_ID, "basic", OrderOptions(express_delivery=True))
    newest = coordinator.create(BUYER_ID, GIG_ID, "basic")

    orders, total = coordinator.list_provider_orders(PROVIDER_USER_ID)
    assert total == 3
    assert [o.id for o in orders] == [express.id, newest.id, standard.id]

    orders, total = coordinator.list_provider_orders(PROVIDER_USER_ID, statuses=["ACCEPTED"])
    assert total == 0
    assert coordinator.list_provider_orders(STRANGER_ID) == ([], 0)


def test_reconcile_reports_and_fixes_drift(coordinator, session_factory):
    order = _accepted(coordinator)
    assert coordinator.reconcile()["drifted_count"] == 0

    with session_factory() as db:
        db.get(ProviderProfile, order.provider_profile_id).active_orders = 5
        db.commit()

    report = coordinator.reconcile()
    assert report["drifted_count"] == 1
    assert report["drifted_providers"][0]["stored"] == 5
    assert report["drifted_providers"][0]["expected"] == 1
    assert report["broken_timeline_count"] == 0
    assert _sample("active_orders_drift", service="orders-test") == 1.0

    coordinator.reconcile(fix=True)
    assert coordinator.reconcile()["drifted_count"] == 0


def test_notification_rows_reference_the_order(coordinator, session_factory):
    order = coordinator.create(BUYER_ID, GIG_ID, "basic")

    with session_factory() as db:
        rows = NotificationStore(db).pending_for_entity("ORDER", order.id)
    assert {row.recipient_id for row in rows} == {BUYER_ID, PROVIDER_USER_ID}
    assert all(isinstance(row, Notification) and row.delivery_status == "PENDING" for row in rows)
