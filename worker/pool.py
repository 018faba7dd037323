"""
Worker pool — runs one poll loop per queue family inside this process.

Architecture:
    ┌──────────────────────────────────────────────────────────────┐
    │                         WorkerPool                            │
    │                                                               │
    │  poll-high    poll-default   poll-low   poll-bulk  poll-screenshot
    │     │              │            │          │            │     │
    │     ▼              ▼            ▼          ▼            ▼     │
    │  lease_batch ... every poll_interval, per family              │
    │     │                                                         │
    │     ▼                                                         │
    │  ThreadPoolExecutor per loop (max_parallel threads)           │
    │     └─ dispatch_one → handler (SCREENSHOT: through the gate)  │
    │                                                               │
    │  reaper (optional) — reclaim_expired() every REAPER_INTERVAL  │
    └──────────────────────────────────────────────────────────────┘

All loops share one stop event. stop() sets it and joins the loop threads,
each of which waits for its in-flight dispatches before returning.
Other worker processes run the same pool against the same database; the
lease columns keep them from running the same job at the same time.
"""

import logging
import os
import socket
import threading
from typing import Iterable, Optional, Union

from config.settings import settings
from models.enums import JobQueue
from orchestrator.engine import JobOrchestrator

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    """hostname:pid, unique per worker process."""
    return f"{socket.gethostname()}:{os.getpid()}"


class WorkerPool:

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        queues: Iterable[Union[JobQueue, str]],
        *,
        poll_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        max_parallel: Optional[int] = None,
        reaper_interval: Optional[float] = None,
        worker_id: Optional[str] = None,
    ):
        self._orchestrator = orchestrator
        self._queues = [JobQueue(queue) for queue in queues]
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._max_parallel = max_parallel
        self._reaper_interval = reaper_interval
        self.worker_id = worker_id or default_worker_id()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        """Start one daemon poll thread per queue family (and the reaper, if enabled)."""
        if self._threads:
            raise RuntimeError("Worker pool is already started")
        self._stop_event.clear()

        for queue in self._queues:
            thread = threading.Thread(
                target=self._orchestrator.run_worker_loop,
                args=(queue, f"{self.worker_id}:{queue.value.lower()}", self._stop_event),
                kwargs={
                    "poll_interval": self._poll_interval,
                    "batch_size": self._batch_size,
                    "max_parallel": self._max_parallel,
                },
                name=f"poll-{queue.value.lower()}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

        if self._reaper_interval:
            reaper = threading.Thread(target=self._reap_loop, name="lease-reaper", daemon=True)
            reaper.start()
            self._threads.append(reaper)

        logger.info(
            f"Worker pool {self.worker_id} started for queues "
            f"{[queue.value for queue in self._queues]}"
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop leasing and wait for in-flight jobs to finish (graceful drain)."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"{thread.name} still draining after {timeout}s")
        self._threads = [thread for thread in self._threads if thread.is_alive()]
        logger.info(f"Worker pool {self.worker_id} stopped")

    def _reap_loop(self) -> None:
        while not self._stop_event.wait(self._reaper_interval):
            self._orchestrator.reclaim_expired()


def build_pool(orchestrator: JobOrchestrator) -> WorkerPool:
    """WorkerPool configured from settings."""
    return WorkerPool(
        orchestrator,
        settings.WORKER_QUEUES,
        poll_interval=settings.WORKER_POLL_INTERVAL,
        batch_size=settings.WORKER_BATCH_SIZE,
        max_parallel=settings.WORKER_MAX_PARALLEL,
        reaper_interval=settings.REAPER_INTERVAL if settings.REAPER_ENABLED else None,
    )
