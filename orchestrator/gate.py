"""
Concurrency gate — a bounded permit pool for one queue family.

Browser-based screenshot capture eats memory and CPU, so no matter how many
screenshot jobs a worker leases, at most N of them run at once inside one
process. Other queue families have no gate.

Why not threading.BoundedSemaphore directly?
- we need available_permits() for monitoring
- acquire must be interruptible by the worker's stop event, not only by a timeout
"""

import logging
import threading
import time
from typing import Optional

from config.settings import settings
from models.enums import JobQueue

logger = logging.getLogger(__name__)

# How often a blocked acquire() re-checks its cancel event
_CANCEL_CHECK_INTERVAL = 0.1


class ConcurrencyGate:

    def __init__(self, permits: int = 3, name: str = "gate"):
        if permits < 1:
            raise ValueError("permits must be >= 1")
        self.name = name
        self.permits = permits
        self._available = permits
        self._cond = threading.Condition(threading.Lock())

    def acquire(
        self,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> bool:
        """
        Block until a permit is free.

        Returns False if `timeout` seconds pass or `cancel` is set first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._available == 0:
                if cancel is not None and cancel.is_set():
                    return False
                wait_for = _CANCEL_CHECK_INTERVAL if cancel is not None else None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(wait_for)
            self._available -= 1
            return True

    def release(self) -> None:
        with self._cond:
            if self._available >= self.permits:
                raise ValueError(f"{self.name}: released more permits than acquired")
            self._available += 1
            self._cond.notify()

    def available_permits(self) -> int:
        with self._cond:
            return self._available

    def __repr__(self) -> str:
        return f"<ConcurrencyGate {self.name} {self.available_permits()}/{self.permits}>"


def build_gates(screenshot_permits: Optional[int] = None) -> dict[JobQueue, ConcurrencyGate]:
    """One gate per resource-constrained queue family, scoped to this process."""
    permits = screenshot_permits or settings.SCREENSHOT_CONCURRENCY
    gates = {
        JobQueue.SCREENSHOT: ConcurrencyGate(permits, name=JobQueue.SCREENSHOT.value),
    }
    for queue, gate in gates.items():
        logger.info(f"Concurrency gate for {queue.value}: {gate.permits} permits")
    return gates
