"""Shared fixtures: SQLite-backed sessions, a seeded catalog and queue doubles."""

import os

# Settings are read at import time; point them at throwaway values first.
os.environ.setdefault("POSTGRES_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("DELIVERY_WEBHOOK_URL", "")

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from gigorders.common.db import Base
from gigorders.common.state_machine import ACTIVE_STATUSES
from gigorders.services.catalog.models import Gig, ProviderProfile
from gigorders.services.notification.models import Notification
from gigorders.services.orders.models import Order, OrderStatusHistory
from gigorders.services.orders.service import OrderCoordinator


BUYER_ID = 100
OTHER_BUYER_ID = 101
STRANGER_ID = 999
PROVIDER_USER_ID = 200
PROVIDER_PROFILE_ID = 1
GIG_ID = 1
PAUSED_GIG_ID = 2


class InMemoryQueue:
    """Delivery queue double that keeps jobs in a list."""

    def __init__(self) -> None:
        self.jobs = []

    def enqueue(self, job) -> None:
        self.jobs.append(job)

    def dequeue(self, timeout: int = 1):
        return self.jobs.pop(0) if self.jobs else None


class FailingQueue:
    """Delivery queue double whose broker is always down."""

    def __init__(self) -> None:
        self.calls = 0

    def enqueue(self, job) -> None:
        self.calls += 1
        raise ConnectionError("redis unavailable")


@pytest.fixture
def engine(tmp_path):
    # File-backed so worker threads get their own connections.
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'orders.db'}",
        connect_args={"timeout": 30, "check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    with factory() as db:
        db.add(ProviderProfile(id=PROVIDER_PROFILE_ID, user_id=PROVIDER_USER_ID, active_orders=0, order_count=0))
        db.add(
            Gig(
                id=GIG_ID,
                provider_profile_id=PROVIDER_PROFILE_ID,
                title="Explainer video",
                status="ACTIVE",
                pricing=[
                    {"name": "basic", "price_cents": 10000},
                    {"name": "premium", "price_cents": 25001},
                ],
                delivery_time_days=3,
                order_count=0,
            )
        )
        db.add(
            Gig(
                id=PAUSED_GIG_ID,
                provider_profile_id=PROVIDER_PROFILE_ID,
                title="Paused gig",
                status="PAUSED",
                pricing=[{"name": "basic", "price_cents": 5000}],
                order_count=0,
            )
        )
        db.commit()
    return factory


@pytest.fixture
def queue():
    return InMemoryQueue()


@pytest.fixture
def coordinator(session_factory, queue):
    return OrderCoordinator(session_factory, queue, service_name="orders-test")


@pytest.fixture
def snapshot(session_factory):
    """Read counters and row counts straight from the database."""

    def _snapshot() -> dict:
        with session_factory() as db:
            profile = db.get(ProviderProfile, PROVIDER_PROFILE_ID)
            gig = db.get(Gig, GIG_ID)
            live_active = db.execute(
                select(func.count(Order.id)).where(
                    Order.provider_profile_id == PROVIDER_PROFILE_ID,
                    Order.status.in_(ACTIVE_STATUSES),
                )
            ).scalar_one()
            return {
                "active_orders": profile.active_orders,
                "provider_order_count": profile.order_count,
                "live_active": live_active,
                "gig_order_count": gig.order_count,
                "gig_last_ordered_at": gig.last_ordered_at,
                "orders": db.execute(select(func.count(Order.id))).scalar_one(),
                "history_rows": db.execute(select(func.count(OrderStatusHistory.id))).scalar_one(),
                "notifications": db.execute(select(func.count(Notification.id))).scalar_one(),
            }

    return _snapshot
