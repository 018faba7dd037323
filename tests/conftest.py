"""
Shared test fixtures.

These replace real infrastructure with lightweight alternatives:
- PostgreSQL → a SQLite file per test (sync driver for the store, aiosqlite for the API)
- real handlers → small scripted handlers that record their calls
- HTTP server → httpx.AsyncClient with ASGI transport (no network)

SQLite has no SKIP LOCKED; the store's conditional UPDATE is what keeps
leases exclusive there, which is exactly what the concurrency tests exercise.
"""

import os

# Keep module-level engines in models.base away from PostgreSQL during tests
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import sessionmaker

from api.dependencies import get_db
from api.main import create_app
from jobs.base import AbstractJobHandler, HandlerResult
from jobs.registry import HandlerRegistry
from models.base import Base, create_store_engine
from models.enums import JobType
from orchestrator.errors import HandlerError
from orchestrator.store import JobStore


class FakeClock:
    """Manually advanced UTC clock for lease-expiry tests."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ScriptedHandler(AbstractJobHandler):
    """
    Handler whose behaviour is set per test.

    outcomes: consumed one per call: "ok", "fail" (HandlerResult.failure),
              "raise" (RuntimeError), "handler_error" (HandlerError);
              once exhausted, every further call succeeds.
    hold: seconds to sleep inside execute().
    """

    def __init__(self, job_type, outcomes=(), hold=0.0):
        self._job_type = JobType(job_type)
        self._outcomes = list(outcomes)
        self._hold = hold
        self._lock = threading.Lock()
        self.calls: list[tuple[int, dict, datetime]] = []
        self.running = 0
        self.max_running = 0

    @property
    def job_type(self) -> JobType:
        return self._job_type

    def execute(self, job_id, payload, deadline=None):
        with self._lock:
            self.calls.append((job_id, payload, deadline))
            outcome = self._outcomes.pop(0) if self._outcomes else "ok"
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            if self._hold:
                time.sleep(self._hold)
            if outcome == "fail":
                return HandlerResult.failure(f"scripted failure of job {job_id}")
            if outcome == "raise":
                raise RuntimeError(f"boom on job {job_id}")
            if outcome == "handler_error":
                raise HandlerError("downstream rejected the request")
            return HandlerResult.success()
        finally:
            with self._lock:
                self.running -= 1


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "jobs.db"


@pytest.fixture
def engine(db_path):
    """A fresh SQLite file database with the delayed_jobs table."""
    engine = create_store_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(session_factory, clock):
    """JobStore on the test database, driven by the fake clock, 60s leases."""
    return JobStore(session_factory, lease_duration=60, default_max_attempts=5, clock=clock)


@pytest.fixture
def make_handler():
    return ScriptedHandler


@pytest.fixture
def registry():
    """Registry with a well-behaved handler for every job type used in tests."""
    return HandlerRegistry.from_handlers([
        ScriptedHandler(JobType.EMAIL_DELIVERY),
        ScriptedHandler(JobType.STOCK_REFRESH),
        ScriptedHandler(JobType.AI_TAGGING),
        ScriptedHandler(JobType.SCREENSHOT_CAPTURE),
    ])


# ── API fixtures ────────────────────────────────────────────────


@pytest_asyncio.fixture
async def async_session(engine, db_path):
    """Async session on the same SQLite file the sync store writes to."""
    async_engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", echo=False)
    factory = async_sessionmaker(async_engine, expire_on_commit=False)
    async with factory() as session:
        yield session
    await async_engine.dispose()


@pytest_asyncio.fixture
async def client(async_session):
    """
    Test HTTP client that talks directly to the FastAPI app.

    dependency_overrides swaps the real get_db for the test session;
    ASGITransport means requests go to the app in-process.
    """
    app = create_app()

    async def override_get_db():
        yield async_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
