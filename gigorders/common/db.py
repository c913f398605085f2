"""Database bootstrap and unit-of-work helpers shared by all services."""

from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from gigorders.common.config import settings


# Single SQLAlchemy engine per process.
engine = create_engine(settings.postgres_dsn, pool_pre_ping=True)
# `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


@contextmanager
def unit_of_work(session_factory):
    """Yield a session whose writes commit together or not at all."""

    with session_factory() as db:
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise


def with_transaction(session_factory, fn):
    """Run `fn(db)` inside one transaction and return its result."""

    with unit_of_work(session_factory) as db:
        return fn(db)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize timestamps read back from drivers that drop tzinfo."""

    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
