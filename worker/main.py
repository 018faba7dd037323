"""
Worker process entry point.

This is a SEPARATE process from the monitoring API. Run as many of these as
you like against the same database: each one leases jobs independently and
the lease columns on delayed_jobs keep two workers from running the same job
at the same time.

Startup:
    1. Create tables if missing
    2. Discover handlers (entry point group HANDLER_ENTRY_POINT_GROUP) and
       build the registry (two handlers for one job type abort startup)
    3. Build store, gates, backoff policy and orchestrator
    4. Log the backlog per job state
    5. Start one poll loop per queue family

Shutdown on Ctrl+C (SIGINT) or SIGTERM: stop leasing, let in-flight jobs
finish, exit.

To run:
    python -m worker.main
"""

import logging
import signal
import sys
import threading

from config.settings import settings
from jobs.registry import HandlerRegistry, discover_handlers
from models.base import Base, sync_engine, SyncSessionLocal
from orchestrator.backoff import BackoffPolicy
from orchestrator.engine import JobOrchestrator
from orchestrator.errors import DuplicateHandler
from orchestrator.gate import build_gates
from orchestrator.store import JobStore
from worker.pool import build_pool

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_orchestrator() -> JobOrchestrator:
    """Wire the orchestrator from settings and the installed handlers."""
    handlers = discover_handlers(settings.HANDLER_ENTRY_POINT_GROUP)
    registry = HandlerRegistry.from_handlers(handlers)
    if not len(registry):
        logger.warning(
            f"No handlers found in entry point group "
            f"'{settings.HANDLER_ENTRY_POINT_GROUP}'; leased jobs will fail"
        )

    store = JobStore(
        SyncSessionLocal,
        lease_duration=settings.LEASE_DURATION_SECONDS,
        default_max_attempts=settings.DEFAULT_MAX_ATTEMPTS,
    )
    return JobOrchestrator(
        store,
        registry,
        gates=build_gates(settings.SCREENSHOT_CONCURRENCY),
        backoff=BackoffPolicy(
            settings.BACKOFF_BASE_SECONDS, max_delay_seconds=settings.BACKOFF_MAX_SECONDS
        ),
        gate_timeout=settings.GATE_ACQUIRE_TIMEOUT,
    )


def log_backlog(store: JobStore) -> dict[str, int]:
    """Log how many jobs sit in each state when the worker comes up."""
    counts = store.count_by_state()
    summary = ", ".join(f"{state}: {count}" for state, count in counts.items())
    logger.info(f"Job backlog at startup ({summary})")
    return counts


def main():
    logger.info("Ensuring database tables exist...")
    Base.metadata.create_all(sync_engine)

    try:
        orchestrator = build_orchestrator()
    except DuplicateHandler as e:
        logger.critical(f"Refusing to start: {e}")
        sys.exit(1)

    log_backlog(orchestrator.store)

    pool = build_pool(orchestrator)
    pool.start()

    # ── Graceful shutdown on Ctrl+C or SIGTERM ──────────────────
    shutdown_event = threading.Event()

    def shutdown(signum, frame):
        logger.info("Shutdown signal received, draining in-flight jobs...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)

    logger.info("Worker process running. Press Ctrl+C to stop.")

    # Block the main thread until shutdown signal
    # (using Event.wait() instead of signal.pause() for Windows compatibility)
    shutdown_event.wait()
    pool.stop()

    logger.info("Worker process exited")


if __name__ == "__main__":
    main()
