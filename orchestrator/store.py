"""
JobStore — the durable queue. Every state transition of a job goes through here.

The delayed_jobs table is the only thing workers share. There is no broker and
no lock service: a lease is just three columns on the row (leased_by,
leased_at, lease_expires_at), and taking one is a conditional UPDATE.

    lease_batch:  ready / failed_retryable / expired leased ──► leased (attempt + 1)
    mark_succeeded:   leased ──► succeeded
    mark_failed:      leased ──► failed_retryable (scheduled_at = now + delay)
                      leased ──► failed_permanent (attempt == max_attempts)
    defer:            leased ──► ready (max_attempts + 1, attempt not spent)

Ownership check:
    The pair (leased_by, attempt) identifies one lease. A worker whose lease
    expired and was re-taken (by someone else, or even by itself on a later
    tick) no longer matches, so its late mark_succeeded / mark_failed / defer
    changes nothing and raises LeaseConflict.

Claiming rows:
    PostgreSQL: SELECT ... FOR UPDATE SKIP LOCKED, so concurrent pollers walk
    past each other's candidates instead of queueing behind them.
    Everywhere: each candidate is claimed with
        UPDATE ... WHERE id = :id AND attempt = :seen AND <still eligible>
    and only counted when exactly one row changed. Two pollers can therefore
    never both win the same row, even on a backend without row locks.

Every operation is one transaction in its own session. Any SQLAlchemy error
comes out as StoreUnavailable.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator, Optional, Union

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.base import utcnow
from models.enums import (
    LEASABLE_STATES,
    JobQueue,
    JobState,
    JobType,
    default_priority,
    queue_for,
)
from models.job import Job
from orchestrator.errors import LeaseConflict, StoreUnavailable

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 4000
EXPIRED_FINAL_LEASE_ERROR = "lease expired after final attempt"
EXPIRED_LEASE_ERROR = "lease expired before completion"

# ORM bulk UPDATEs below never touch objects in the session
_NO_SYNC = {"synchronize_session": False}


@dataclass(frozen=True)
class LeasedJob:
    """
    Detached snapshot of a row right after it was leased.

    Dispatch works from this instead of the ORM object so no session has to
    stay open while a handler runs (which can take minutes).
    """
    job_id: int
    job_type: str
    queue: str
    payload: dict[str, Any]
    priority: int
    attempt: int
    max_attempts: int
    leased_by: str
    lease_expires_at: datetime

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _truncate(message: Optional[str]) -> Optional[str]:
    if message is None or len(message) <= MAX_ERROR_LENGTH:
        return message
    return message[: MAX_ERROR_LENGTH - 3] + "..."


class JobStore:

    def __init__(
        self,
        session_factory: Callable[[], Session],
        lease_duration: Union[timedelta, int] = timedelta(seconds=300),
        default_max_attempts: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        if isinstance(lease_duration, (int, float)):
            lease_duration = timedelta(seconds=lease_duration)
        if lease_duration <= timedelta(0):
            raise ValueError("lease_duration must be positive")
        self._session_factory = session_factory
        self.lease_duration = lease_duration
        self.default_max_attempts = default_max_attempts
        self._clock = clock

    def now(self) -> datetime:
        return _as_utc(self._clock())

    @contextmanager
    def _transaction(self, commit: bool = True) -> Iterator[Session]:
        session: Session = self._session_factory()
        try:
            yield session
            if commit:
                session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreUnavailable(f"Job store transaction failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            # Always close the session
            session.close()

    # ── Producer side ───────────────────────────────────────────

    def insert(
        self,
        job_type: Union[JobType, str],
        payload: Optional[dict[str, Any]] = None,
        *,
        priority: Optional[int] = None,
        scheduled_at: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
    ) -> int:
        """Create a new row in `ready` state with attempt=0. Returns its id."""
        job_type = JobType(job_type)
        max_attempts = self.default_max_attempts if max_attempts is None else max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        now = self.now()
        queue = queue_for(job_type)
        priority = default_priority(job_type) if priority is None else priority
        scheduled_at = _as_utc(scheduled_at) if scheduled_at else now
        job = Job(
            job_type=job_type.value,
            queue=queue.value,
            payload=dict(payload or {}),
            priority=priority,
            state=JobState.READY.value,
            scheduled_at=scheduled_at,
            attempt=0,
            max_attempts=max_attempts,
            created_at=now,
            updated_at=now,
        )
        with self._transaction() as session:
            session.add(job)
            session.flush()  # assigns the id
            job_id = job.id

        logger.info(
            f"Created job {job_id} (type: {job_type.value}, queue: {queue.value}, "
            f"priority: {priority}, scheduled: {scheduled_at.isoformat()})"
        )
        return job_id

    # ── Worker side ─────────────────────────────────────────────

    def lease_batch(
        self,
        queue: Union[JobQueue, str],
        worker_id: str,
        limit: int,
        now: Optional[datetime] = None,
    ) -> list[LeasedJob]:
        """
        Lease up to `limit` due jobs of one queue family for `worker_id`.

        Order: priority DESC, scheduled_at ASC, id ASC. The returned list keeps
        that order. A job whose last allowed attempt expired mid-flight is not
        run again: it goes to failed_permanent instead.
        """
        if limit <= 0:
            return []
        queue = JobQueue(queue)
        now = _as_utc(now) if now else self.now()
        expires_at = now + self.lease_duration

        eligible = or_(
            Job.state.in_(LEASABLE_STATES),
            and_(Job.state == JobState.LEASED.value, Job.lease_expires_at < now),
        )

        with self._transaction() as session:
            candidates = session.execute(
                select(Job.id, Job.state, Job.attempt, Job.max_attempts)
                .where(Job.queue == queue.value, Job.scheduled_at <= now, eligible)
                .order_by(Job.priority.desc(), Job.scheduled_at.asc(), Job.id.asc())
                .limit(limit)
                .with_for_update(skip_locked=True)
            ).all()

            claimed: list[int] = []
            exhausted: list[int] = []
            for row in candidates:
                guard = and_(Job.id == row.id, Job.attempt == row.attempt, eligible)

                if row.state == JobState.LEASED.value and row.attempt >= row.max_attempts:
                    result = session.execute(
                        update(Job)
                        .where(guard)
                        .values(
                            state=JobState.FAILED_PERMANENT.value,
                            leased_by=None,
                            leased_at=None,
                            lease_expires_at=None,
                            last_error=EXPIRED_FINAL_LEASE_ERROR,
                            completed_at=now,
                            updated_at=now,
                        )
                        .execution_options(**_NO_SYNC)
                    )
                    if result.rowcount == 1:
                        exhausted.append(row.id)
                    continue

                result = session.execute(
                    update(Job)
                    .where(guard)
                    .values(
                        state=JobState.LEASED.value,
                        leased_by=worker_id,
                        leased_at=now,
                        lease_expires_at=expires_at,
                        attempt=Job.attempt + 1,
                        updated_at=now,
                    )
                    .execution_options(**_NO_SYNC)
                )
                if result.rowcount == 1:
                    claimed.append(row.id)

            leased: list[LeasedJob] = []
            if claimed:
                rows = session.execute(
                    select(Job).where(Job.id.in_(claimed))
                ).scalars().all()
                by_id = {job.id: job for job in rows}
                leased = [self._snapshot(by_id[job_id]) for job_id in claimed]

        for job_id in exhausted:
            logger.error(f"Job {job_id} failed permanently: {EXPIRED_FINAL_LEASE_ERROR}")
        if leased:
            logger.debug(
                f"Worker {worker_id} leased {len(leased)} {queue.value} jobs: "
                f"{[job.job_id for job in leased]}"
            )
        return leased

    def mark_succeeded(self, job: LeasedJob, now: Optional[datetime] = None) -> None:
        """leased → succeeded. Raises LeaseConflict if the lease isn't the caller's anymore."""
        now = _as_utc(now) if now else self.now()
        with self._transaction() as session:
            result = session.execute(
                update(Job)
                .where(self._owned(job))
                .values(
                    state=JobState.SUCCEEDED.value,
                    leased_by=None,
                    leased_at=None,
                    lease_expires_at=None,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                raise LeaseConflict(job.job_id, job.leased_by, job.attempt)
        logger.debug(f"Job {job.job_id} marked succeeded")

    def mark_failed(
        self,
        job: LeasedJob,
        error: str,
        next_delay: Union[timedelta, int, float],
        now: Optional[datetime] = None,
    ) -> JobState:
        """
        Record a failed attempt.

        attempt < max_attempts → failed_retryable, eligible again at now + next_delay
        otherwise             → failed_permanent

        Returns the state the job ended up in. Raises LeaseConflict like
        mark_succeeded.
        """
        now = _as_utc(now) if now else self.now()
        if not isinstance(next_delay, timedelta):
            next_delay = timedelta(seconds=next_delay)
        # the retry must land strictly after "now"
        next_delay = max(next_delay, timedelta(seconds=1))
        error = _truncate(error)

        if job.attempt < job.max_attempts:
            new_state = JobState.FAILED_RETRYABLE
            values = dict(
                state=new_state.value,
                scheduled_at=now + next_delay,
                last_error=error,
            )
        else:
            new_state = JobState.FAILED_PERMANENT
            values = dict(
                state=new_state.value,
                last_error=error,
                completed_at=now,
            )

        with self._transaction() as session:
            result = session.execute(
                update(Job)
                .where(self._owned(job))
                .values(
                    leased_by=None,
                    leased_at=None,
                    lease_expires_at=None,
                    updated_at=now,
                    **values,
                )
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                raise LeaseConflict(job.job_id, job.leased_by, job.attempt)
        return new_state

    def defer(
        self,
        job: LeasedJob,
        next_delay: Union[timedelta, int, float],
        now: Optional[datetime] = None,
    ) -> None:
        """
        Hand a leased job back without counting the attempt against it.

        Used when the job was never handed to its handler. The row goes back
        to ready at now + next_delay and max_attempts grows by one, so
        `attempt` stays monotonic while the job keeps the same number of real
        tries. Raises LeaseConflict like mark_succeeded.
        """
        now = _as_utc(now) if now else self.now()
        if not isinstance(next_delay, timedelta):
            next_delay = timedelta(seconds=next_delay)
        next_delay = max(next_delay, timedelta(seconds=1))

        with self._transaction() as session:
            result = session.execute(
                update(Job)
                .where(self._owned(job))
                .values(
                    state=JobState.READY.value,
                    leased_by=None,
                    leased_at=None,
                    lease_expires_at=None,
                    scheduled_at=now + next_delay,
                    max_attempts=Job.max_attempts + 1,
                    updated_at=now,
                )
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                raise LeaseConflict(job.job_id, job.leased_by, job.attempt)
        logger.debug(f"Job {job.job_id} deferred by {next_delay.total_seconds():.0f}s")

    def reclaim_expired(self, now: Optional[datetime] = None) -> int:
        """
        Sweep leases that expired without a recorded outcome.

        Not needed for correctness (lease_batch already treats expired leases
        as ready); it just makes the stored state tell the truth sooner.
        Jobs with attempts left become failed_retryable, due immediately;
        jobs on their last attempt become failed_permanent.
        """
        now = _as_utc(now) if now else self.now()
        expired = and_(Job.state == JobState.LEASED.value, Job.lease_expires_at < now)
        cleared = dict(leased_by=None, leased_at=None, lease_expires_at=None, updated_at=now)

        with self._transaction() as session:
            exhausted = session.execute(
                update(Job)
                .where(expired, Job.attempt >= Job.max_attempts)
                .values(
                    state=JobState.FAILED_PERMANENT.value,
                    last_error=EXPIRED_FINAL_LEASE_ERROR,
                    completed_at=now,
                    **cleared,
                )
                .execution_options(**_NO_SYNC)
            ).rowcount
            retryable = session.execute(
                update(Job)
                .where(expired, Job.attempt < Job.max_attempts)
                .values(
                    state=JobState.FAILED_RETRYABLE.value,
                    last_error=EXPIRED_LEASE_ERROR,
                    **cleared,
                )
                .execution_options(**_NO_SYNC)
            ).rowcount

        if exhausted or retryable:
            logger.warning(
                f"Reclaimed expired leases: {retryable} back to retry, "
                f"{exhausted} failed permanently"
            )
        return exhausted + retryable

    # ── Monitoring reads ────────────────────────────────────────

    def get(self, job_id: int) -> Optional[Job]:
        with self._transaction(commit=False) as session:
            return session.get(Job, job_id)

    def count_by_state(self, queue: Optional[Union[JobQueue, str]] = None) -> dict[str, int]:
        query = select(Job.state, func.count(Job.id)).group_by(Job.state)
        if queue is not None:
            query = query.where(Job.queue == JobQueue(queue).value)
        with self._transaction(commit=False) as session:
            counts = {state: count for state, count in session.execute(query).all()}
        return {state.value: counts.get(state.value, 0) for state in JobState}

    # ── Helpers ─────────────────────────────────────────────────

    @staticmethod
    def _owned(job: LeasedJob):
        return and_(
            Job.id == job.job_id,
            Job.state == JobState.LEASED.value,
            Job.leased_by == job.leased_by,
            Job.attempt == job.attempt,
        )

    @staticmethod
    def _snapshot(job: Job) -> LeasedJob:
        return LeasedJob(
            job_id=job.id,
            job_type=job.job_type,
            queue=job.queue,
            payload=dict(job.payload or {}),
            priority=job.priority,
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            leased_by=job.leased_by,
            lease_expires_at=job.lease_expires_at,
        )
