"""Session-scoped access to catalog entries and provider profiles.

Counter writes are relative SQL updates so two transactions touching the same
provider never overwrite each other's increments.
"""

from sqlalchemy import select, update

from gigorders.common.db import utcnow
from gigorders.services.catalog.models import Gig, ProviderProfile


ORDERABLE_GIG_STATUSES = frozenset({"ACTIVE"})


class CatalogStore:
    """Gig lookups and order statistics for one open session."""

    def __init__(self, db) -> None:
        self.db = db

    def get_gig(self, gig_id: int) -> Gig | None:
        return self.db.get(Gig, gig_id)

    def increment_gig_order_stats(self, gig_id: int) -> None:
        self.db.execute(
            update(Gig)
            .where(Gig.id == gig_id)
            .values(order_count=Gig.order_count + 1, last_ordered_at=utcnow())
        )


class ProfileStore:
    """Provider profile lookups and counter deltas for one open session."""

    def __init__(self, db) -> None:
        self.db = db

    def get_profile(self, profile_id: int) -> ProviderProfile | None:
        return self.db.get(ProviderProfile, profile_id)

    def get_profile_by_user_id(self, user_id: int) -> ProviderProfile | None:
        return self.db.execute(
            select(ProviderProfile).where(ProviderProfile.user_id == user_id)
        ).scalar_one_or_none()

    def apply_profile_counter_delta(self, profile_id: int, active_orders: int, lifetime_orders: int) -> None:
        """Add the deltas in-database; a zero delta issues no write."""

        if not active_orders and not lifetime_orders:
            return
        self.db.execute(
            update(ProviderProfile)
            .where(ProviderProfile.id == profile_id)
            .values(
                active_orders=ProviderProfile.active_orders + active_orders,
                order_count=ProviderProfile.order_count + lifetime_orders,
                last_active_at=utcnow(),
            )
        )
