"""
SQLAlchemy engine and session factories.

Two separate engines exist because:
- FastAPI is async → needs asyncpg driver + async sessions
- Worker threads are sync → need psycopg2 driver + sync sessions

You CANNOT use an async session inside a thread (it would block the event loop),
and you CANNOT use a sync session inside an async handler (it would block the server).

Tests swap PostgreSQL for a SQLite file. SQLite has no row locks, so
create_store_engine() makes every transaction start with BEGIN IMMEDIATE:
concurrent writers then queue up on the database lock instead of
failing halfway through a lease.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.types import TypeDecorator

from config.settings import settings


class Base(DeclarativeBase):
    """Base class for all ORM models. SQLAlchemy uses this to track table metadata."""
    pass


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamps on every backend.

    PostgreSQL returns aware datetimes already; SQLite drops the offset,
    so values read back are re-tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_store_engine(url: str, **kwargs) -> Engine:
    """Create a sync engine suitable for JobStore (PostgreSQL or SQLite)."""
    if not url.startswith("sqlite"):
        return create_engine(url, echo=False, pool_pre_ping=True, **kwargs)

    engine = create_engine(
        url,
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
        **kwargs,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself (see _begin_immediate)
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


# ── Async engine (for FastAPI) ──────────────────────────────────
async_engine = create_async_engine(settings.database_url, echo=False)
AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False)

# ── Sync engine (for worker threads) ────────────────────────────
sync_engine = create_store_engine(settings.sync_database_url)
SyncSessionLocal = sessionmaker(sync_engine, expire_on_commit=False)
