"""
Job orchestrator — ties the store, the handler registry, the gates and the
backoff policy together.

    producer ──enqueue()──► JobStore.insert
                                 │
    worker loop (per queue) ─────┘
        every poll_interval:
            lease_batch(queue, worker_id, free slots)
                │
                ▼
            dispatch_one(job)  (on a dispatch thread)
                ├─ registry.lookup(job_type)
                ├─ gate.acquire()            only for gated families (SCREENSHOT)
                │    └─ no permit in time: defer(job), attempt not spent
                ├─ handler.execute(...)
                ├─ gate.release()            always, even if the handler blew up
                └─ mark_succeeded / mark_failed(backoff.delay(attempt))

What never leaves this class:
- LeaseConflict: someone else owns the job now, we just don't record anything
- StoreUnavailable inside the loop: log, wait for the next tick
- anything a handler raises: it becomes a failed attempt

What does leave it: UnknownJobType from enqueue() (the producer's bug), and
StoreUnavailable from enqueue() (the producer must know the job wasn't saved).
"""

import logging
import threading
import time
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Union

from config.settings import settings
from jobs.base import AbstractJobHandler, HandlerResult
from jobs.registry import HandlerRegistry
from models.enums import JobQueue, JobState, JobType
from orchestrator.backoff import BackoffPolicy
from orchestrator.errors import (
    HandlerError,
    LeaseConflict,
    PermanentFailure,
    StoreUnavailable,
    UnknownJobType,
)
from orchestrator.events import DispatchEvent, DispatchOutcome
from orchestrator.gate import ConcurrencyGate
from orchestrator.store import JobStore, LeasedJob

logger = logging.getLogger(__name__)

EventListener = Callable[[DispatchEvent], None]


class JobOrchestrator:

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        gates: Optional[dict[JobQueue, ConcurrencyGate]] = None,
        backoff: Optional[BackoffPolicy] = None,
        *,
        gate_timeout: Optional[float] = None,
        listeners: Iterable[EventListener] = (),
    ):
        registry.freeze()
        self._store = store
        self._registry = registry
        self._gates = {JobQueue(queue): gate for queue, gate in (gates or {}).items()}
        self._backoff = backoff or BackoffPolicy(
            settings.BACKOFF_BASE_SECONDS, max_delay_seconds=settings.BACKOFF_MAX_SECONDS
        )
        self._gate_timeout = (
            settings.GATE_ACQUIRE_TIMEOUT if gate_timeout is None else gate_timeout
        )
        self._listeners = list(listeners)

    @property
    def store(self) -> JobStore:
        return self._store

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def available_permits(self, queue: Union[JobQueue, str]) -> Optional[int]:
        """Free permits of the queue's gate, or None if the family is ungated."""
        gate = self._gates.get(JobQueue(queue))
        return gate.available_permits() if gate is not None else None

    # ── Producer side ───────────────────────────────────────────

    def enqueue(
        self,
        job_type: Union[JobType, str],
        payload: Optional[Mapping[str, Any]] = None,
        *,
        priority: Optional[int] = None,
        scheduled_at: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
    ) -> int:
        """
        Persist a new job and return its id.

        The queue family and default priority come from the job type.
        `priority` overrides the default, `scheduled_at` delays execution.
        Raises UnknownJobType (nothing is written) if no handler serves the type.
        """
        self._registry.lookup(job_type)
        if payload is not None and not isinstance(payload, Mapping):
            raise TypeError(f"payload must be a mapping, got {type(payload).__name__}")

        return self._store.insert(
            JobType(job_type),
            dict(payload or {}),
            priority=priority,
            scheduled_at=scheduled_at,
            max_attempts=max_attempts,
        )

    # ── Worker side ─────────────────────────────────────────────

    def poll_and_execute(
        self,
        queue: Union[JobQueue, str],
        worker_id: str,
        limit: Optional[int] = None,
    ) -> list[DispatchOutcome]:
        """
        One tick, sequentially: lease up to `limit` jobs and dispatch each in turn.

        Returns the outcome of every dispatched job, in lease order.
        """
        limit = settings.WORKER_BATCH_SIZE if limit is None else limit
        jobs = self._lease(JobQueue(queue), worker_id, limit)
        return [self.dispatch_one(job) for job in jobs]

    def run_worker_loop(
        self,
        queue: Union[JobQueue, str],
        worker_id: str,
        stop_event: threading.Event,
        *,
        poll_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        max_parallel: Optional[int] = None,
    ) -> None:
        """
        Poll one queue family until stop_event is set.

        Each tick leases only as many jobs as there are free dispatch threads,
        so leased jobs don't pile up in the executor's backlog with their
        lease ticking away. On stop, no new leases are taken and the call
        returns once every in-flight dispatch has finished.
        """
        queue = JobQueue(queue)
        poll_interval = settings.WORKER_POLL_INTERVAL if poll_interval is None else poll_interval
        batch_size = settings.WORKER_BATCH_SIZE if batch_size is None else batch_size
        max_parallel = settings.WORKER_MAX_PARALLEL if max_parallel is None else max_parallel

        in_flight: set[Future] = set()
        logger.info(
            f"Worker {worker_id} polling {queue.value} every {poll_interval}s "
            f"(batch {batch_size}, {max_parallel} dispatch threads)"
        )

        with ThreadPoolExecutor(
            max_workers=max_parallel,
            thread_name_prefix=f"dispatch-{queue.value.lower()}",
        ) as executor:
            while not stop_event.is_set():
                in_flight = {future for future in in_flight if not future.done()}
                free_slots = min(batch_size, max_parallel - len(in_flight))

                if free_slots > 0:
                    for job in self._lease(queue, worker_id, free_slots):
                        future = executor.submit(self.dispatch_one, job)
                        future.add_done_callback(_on_dispatch_done)
                        in_flight.add(future)

                stop_event.wait(poll_interval)

            pending = sum(1 for future in in_flight if not future.done())
            if pending:
                logger.info(f"Worker {worker_id} draining {pending} in-flight {queue.value} jobs")
            # leaving the with-block waits for every submitted dispatch

        logger.info(f"Worker {worker_id} stopped polling {queue.value}")

    def reclaim_expired(self) -> int:
        """Run the expired-lease sweep; store outages are logged, not raised."""
        try:
            return self._store.reclaim_expired()
        except StoreUnavailable as e:
            logger.error(f"Expired lease sweep failed: {e}")
            return 0

    def dispatch_one(self, job: LeasedJob) -> DispatchOutcome:
        """Run one leased job through its handler and record the outcome."""
        self._emit(DispatchEvent("start", job.job_id, job.job_type, job.queue, job.attempt))
        start_time = time.monotonic()
        outcome = DispatchOutcome.UNRECORDED
        try:
            outcome = self._dispatch(job)
        except StoreUnavailable as e:
            logger.error(
                f"Job {job.job_id} [{job.job_type}] outcome not recorded, "
                f"lease will expire and the job will run again: {e}"
            )
        finally:
            elapsed = time.monotonic() - start_time
            self._emit(
                DispatchEvent(
                    "end", job.job_id, job.job_type, job.queue, job.attempt,
                    outcome=outcome, elapsed=round(elapsed, 3),
                )
            )
        return outcome

    # ── Internals ───────────────────────────────────────────────

    def _lease(self, queue: JobQueue, worker_id: str, limit: int) -> list[LeasedJob]:
        try:
            jobs = self._store.lease_batch(queue, worker_id, limit)
        except StoreUnavailable as e:
            logger.error(f"Worker {worker_id} could not lease {queue.value} jobs: {e}")
            return []
        if jobs:
            logger.info(f"Worker {worker_id} leased {len(jobs)} {queue.value} jobs")
        return jobs

    def _dispatch(self, job: LeasedJob) -> DispatchOutcome:
        try:
            handler = self._registry.lookup(job.job_type)
        except UnknownJobType as e:
            # Written by a producer with a different handler set; another
            # worker may be able to run it, so it goes through normal retry.
            logger.error(f"Job {job.job_id}: {e}")
            return self._record_failure(job, str(e))

        gate = self._gates.get(JobQueue(job.queue))
        if gate is not None:
            logger.debug(
                f"Acquiring {gate.name} permit for job {job.job_id} "
                f"(available: {gate.available_permits()})"
            )
            if not gate.acquire(timeout=self._gate_timeout):
                return self._defer(job, gate)

        try:
            result = self._run_handler(handler, job)
        finally:
            if gate is not None:
                gate.release()
                logger.debug(
                    f"Released {gate.name} permit for job {job.job_id} "
                    f"(available: {gate.available_permits()})"
                )

        if result.ok:
            return self._record_success(job)
        return self._record_failure(job, result.error or "handler reported failure")

    def _run_handler(self, handler: AbstractJobHandler, job: LeasedJob) -> HandlerResult:
        start_time = time.monotonic()
        try:
            result = handler.execute(
                job.job_id, dict(job.payload), deadline=job.lease_expires_at
            )
        except HandlerError as e:
            return HandlerResult.failure(str(e) or type(e).__name__)
        except Exception as e:
            logger.error(
                f"Handler {type(handler).__name__} raised on job {job.job_id}: {e}",
                exc_info=True,
            )
            return HandlerResult.failure(f"{type(e).__name__}: {e}")

        elapsed = time.monotonic() - start_time
        logger.debug(f"Job {job.job_id} [{job.job_type}] handler returned in {elapsed:.3f}s")
        if result is None:
            return HandlerResult.success()
        if isinstance(result, HandlerResult):
            return result
        logger.warning(
            f"Handler {type(handler).__name__} returned {type(result).__name__} "
            f"for job {job.job_id}, counting it as a failure"
        )
        return HandlerResult.failure(
            f"handler returned {type(result).__name__}, expected HandlerResult or None"
        )

    def _record_success(self, job: LeasedJob) -> DispatchOutcome:
        try:
            self._store.mark_succeeded(job)
        except LeaseConflict as e:
            logger.info(f"Not recording success: {e}")
            return DispatchOutcome.LEASE_LOST

        logger.info(
            f"Job {job.job_id} [{job.job_type}] completed successfully "
            f"on attempt {job.attempt}"
        )
        return DispatchOutcome.SUCCEEDED

    def _record_failure(self, job: LeasedJob, error: str) -> DispatchOutcome:
        # no retry follows the last attempt, so there is no delay to compute
        delay = 0 if job.is_last_attempt else self._backoff.delay(job.attempt)
        try:
            state = self._store.mark_failed(job, error, delay)
        except LeaseConflict as e:
            logger.info(f"Not recording failure: {e}")
            return DispatchOutcome.LEASE_LOST

        if state == JobState.FAILED_PERMANENT:
            logger.error(str(PermanentFailure(job.job_id, job.attempt, error)))
            return DispatchOutcome.FAILED_PERMANENT

        logger.warning(
            f"Job {job.job_id} [{job.job_type}] failed on attempt "
            f"{job.attempt}/{job.max_attempts}: {error}; retrying in {delay}s"
        )
        return DispatchOutcome.RETRY_SCHEDULED

    def _defer(self, job: LeasedJob, gate: ConcurrencyGate) -> DispatchOutcome:
        """Hand back a job that never got a gate permit; the attempt isn't spent."""
        retry_in = max(1, int(self._gate_timeout))
        try:
            self._store.defer(job, retry_in)
        except LeaseConflict as e:
            logger.info(f"Not deferring: {e}")
            return DispatchOutcome.LEASE_LOST

        logger.warning(
            f"Job {job.job_id} [{job.job_type}] got no {gate.name} permit within "
            f"{self._gate_timeout}s, handed back for {retry_in}s"
        )
        return DispatchOutcome.SKIPPED

    def _emit(self, event: DispatchEvent) -> None:
        logger.debug(f"dispatch {event.phase}: {event.as_dict()}")
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Dispatch event listener failed: {e}", exc_info=True)


def _on_dispatch_done(future: Future) -> None:
    """
    Callback fired when a dispatch thread finishes.

    dispatch_one() handles every expected failure itself; this only logs
    what slipped through.
    """
    exc = future.exception()
    if exc is not None:
        logger.error(f"Unhandled dispatch exception: {exc}", exc_info=exc)
