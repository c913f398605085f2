"""Provider and gig aggregate counters driven by order status changes.

Deltas are applied inside the transaction that records the status change.
`reconcile_active_orders` recomputes counters from order rows and is only a
safety net for drift, never the primary mechanism.
"""

from dataclasses import dataclass

from sqlalchemy import func, select, update

from gigorders.common.state_machine import ACTIVE_STATUSES, is_active, is_valid_path
from gigorders.services.catalog.models import ProviderProfile
from gigorders.services.catalog.store import CatalogStore, ProfileStore
from gigorders.services.orders.models import Order, OrderStatusHistory


@dataclass(frozen=True)
class CounterDelta:
    active_orders: int = 0
    lifetime_orders: int = 0

    @property
    def is_zero(self) -> bool:
        return not self.active_orders and not self.lifetime_orders


def delta(old_status: str | None, new_status: str) -> CounterDelta:
    """Counter changes implied by `old_status -> new_status`.

    `old_status=None` means the order is being created.
    """

    active = int(is_active(new_status)) - int(is_active(old_status))
    lifetime = 1 if old_status is None else 0
    return CounterDelta(active_orders=active, lifetime_orders=lifetime)


class CounterReconciler:
    """Applies counter deltas through the catalog/profile stores."""

    def apply(self, db, provider_profile_id: int, change: CounterDelta) -> None:
        if change.is_zero:
            return
        ProfileStore(db).apply_profile_counter_delta(
            provider_profile_id,
            active_orders=change.active_orders,
            lifetime_orders=change.lifetime_orders,
        )

    def record_gig_order(self, db, gig_id: int) -> None:
        CatalogStore(db).increment_gig_order_stats(gig_id)

    def reconcile_active_orders(self, db, fix: bool = False) -> dict:
        """Compare stored active counters with live order status.

        Also reports orders whose timeline is not a legal state machine path.
        With `fix=True` drifted counters are recounted in the database.

        Provider rows are locked before counting, so a transition either
        committed before the count or waits and applies its delta on top of
        the corrected value.
        """

        profiles = db.execute(
            select(ProviderProfile).order_by(ProviderProfile.id).with_for_update()
        ).scalars().all()
        live = dict(
            db.execute(
                select(Order.provider_profile_id, func.count(Order.id))
                .where(Order.status.in_(ACTIVE_STATUSES))
                .group_by(Order.provider_profile_id)
            ).all()
        )
        drifted = []
        for profile in profiles:
            expected = int(live.get(profile.id, 0))
            if profile.active_orders != expected:
                drifted.append(
                    {
                        "provider_profile_id": profile.id,
                        "stored": profile.active_orders,
                        "expected": expected,
                    }
                )
        if fix and drifted:
            live_count = (
                select(func.count(Order.id))
                .where(
                    Order.provider_profile_id == ProviderProfile.id,
                    Order.status.in_(ACTIVE_STATUSES),
                )
                .correlate(ProviderProfile)
                .scalar_subquery()
            )
            db.execute(
                update(ProviderProfile)
                .where(ProviderProfile.id.in_([entry["provider_profile_id"] for entry in drifted]))
                .values(active_orders=live_count)
                .execution_options(synchronize_session=False)
            )

        timelines: dict[int, list[str]] = {}
        for order_id, status in db.execute(
            select(OrderStatusHistory.order_id, OrderStatusHistory.status).order_by(
                OrderStatusHistory.order_id, OrderStatusHistory.sequence
            )
        ).all():
            timelines.setdefault(order_id, []).append(status)
        current = dict(db.execute(select(Order.id, Order.status)).all())
        broken_timelines = [
            order_id
            for order_id, status in current.items()
            if not is_valid_path(timelines.get(order_id, [])) or timelines[order_id][-1] != status
        ]
        return {
            "providers_checked": len(profiles),
            "drifted_count": len(drifted),
            "drifted_providers": drifted,
            "orders_checked": len(current),
            "broken_timeline_count": len(broken_timelines),
            "broken_timelines": broken_timelines,
        }
