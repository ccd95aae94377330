"""Database bootstrap helpers shared by all components."""

import time
from datetime import datetime, timezone

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from rcmpay.common.logging import logger


# JSONB on PostgreSQL, generic JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize naive datetimes read back from SQLite to UTC-aware."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_engine(database_url: str) -> Engine:
    """Create one SQLAlchemy engine per process."""

    if database_url.startswith("sqlite") and ":memory:" in database_url:
        # One shared connection so every session sees the same in-memory DB.
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def create_schema(engine: Engine, retries: int = 20, delay_seconds: float = 1.0) -> None:
    """Create all tables; retry during cold-start races with the database."""

    # Models register themselves on Base.metadata when imported.
    import rcmpay.services.analytics.models  # noqa: F401
    import rcmpay.services.gateways.models  # noqa: F401
    import rcmpay.services.payments.models  # noqa: F401

    for attempt in range(1, retries + 1):
        try:
            Base.metadata.create_all(engine)
            return
        except Exception as exc:
            logger.warning("schema bootstrap retry=%s/%s error=%s", attempt, retries, exc)
            if attempt == retries:
                raise
            time.sleep(delay_seconds)
