"""
Tests for JobOrchestrator: enqueue, dispatch outcomes, gates, events.

Dispatch is driven one tick at a time through poll_and_execute(), so
every test is deterministic; the threaded loop has its own tests.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from jobs.base import AbstractJobHandler
from jobs.registry import HandlerRegistry
from models.enums import JobQueue, JobState, JobType
from orchestrator.backoff import BackoffPolicy
from orchestrator.engine import JobOrchestrator
from orchestrator.errors import RegistryFrozen, StoreUnavailable, UnknownJobType
from orchestrator.events import DispatchOutcome
from orchestrator.gate import build_gates


def _orchestrator(store, handlers, **kwargs):
    kwargs.setdefault("gates", build_gates(3))
    kwargs.setdefault("backoff", BackoffPolicy(jitter_low=1.0, jitter_high=1.0))
    kwargs.setdefault("gate_timeout", 5)
    return JobOrchestrator(store, HandlerRegistry.from_handlers(handlers), **kwargs)


# ── enqueue ─────────────────────────────────────────────────────


def test_enqueue_unknown_type_creates_no_row(store, registry):
    orchestrator = JobOrchestrator(store, registry)

    with pytest.raises(UnknownJobType):
        orchestrator.enqueue(JobType.SITEMAP_GENERATION, {"site": "main"})
    with pytest.raises(UnknownJobType):
        orchestrator.enqueue("not_a_job_type")

    assert sum(store.count_by_state().values()) == 0


def test_enqueue_resolves_queue_and_priority(store, registry):
    orchestrator = JobOrchestrator(store, registry)

    job_id = orchestrator.enqueue("stock_refresh", {"symbol": "ACME"})
    job = store.get(job_id)
    assert job.queue == "HIGH"
    assert job.priority == 0
    assert job.state == JobState.READY.value


def test_enqueue_applies_overrides(store, registry, clock):
    orchestrator = JobOrchestrator(store, registry)
    later = clock.now + timedelta(minutes=10)

    job_id = orchestrator.enqueue(
        JobType.EMAIL_DELIVERY, {"to": "a@b.c"},
        priority=9, scheduled_at=later, max_attempts=2,
    )
    job = store.get(job_id)
    assert job.priority == 9
    assert job.scheduled_at == later
    assert job.max_attempts == 2


def test_enqueue_rejects_non_mapping_payload(store, registry):
    orchestrator = JobOrchestrator(store, registry)
    with pytest.raises(TypeError):
        orchestrator.enqueue(JobType.EMAIL_DELIVERY, ["not", "a", "dict"])


def test_enqueue_store_failure_reaches_the_producer(store, registry, monkeypatch):
    def broken_insert(*args, **kwargs):
        raise StoreUnavailable("database is down")

    monkeypatch.setattr(store, "insert", broken_insert)
    orchestrator = JobOrchestrator(store, registry)
    with pytest.raises(StoreUnavailable):
        orchestrator.enqueue(JobType.EMAIL_DELIVERY)


def test_orchestrator_freezes_registry(store, make_handler):
    registry = HandlerRegistry()
    registry.register(JobType.AI_TAGGING, make_handler(JobType.AI_TAGGING))
    JobOrchestrator(store, registry)

    with pytest.raises(RegistryFrozen):
        registry.register(JobType.STOCK_REFRESH, make_handler(JobType.STOCK_REFRESH))


# ── dispatch outcomes ───────────────────────────────────────────


def test_successful_dispatch(store, make_handler):
    handler = make_handler(JobType.AI_TAGGING)
    orchestrator = _orchestrator(store, [handler])
    job_id = orchestrator.enqueue(JobType.AI_TAGGING, {"listing": 42})

    outcomes = orchestrator.poll_and_execute(JobQueue.BULK, "w1")

    assert outcomes == [DispatchOutcome.SUCCEEDED]
    [(called_id, payload, deadline)] = handler.calls
    assert called_id == job_id
    assert payload == {"listing": 42}
    assert deadline == store.now() + store.lease_duration
    assert store.get(job_id).state == JobState.SUCCEEDED.value


def test_handler_returning_none_counts_as_success(store):
    class QuietHandler(AbstractJobHandler):
        job_type = JobType.STOCK_REFRESH

        def execute(self, job_id, payload, deadline=None):
            return None

    orchestrator = _orchestrator(store, [QuietHandler()])
    orchestrator.enqueue(JobType.STOCK_REFRESH)
    assert orchestrator.poll_and_execute(JobQueue.HIGH, "w1") == [DispatchOutcome.SUCCEEDED]


def test_unexpected_return_value_counts_as_failure(store):
    """Returning False (or anything but a HandlerResult or None) is not a success."""

    class SloppyHandler(AbstractJobHandler):
        job_type = JobType.STOCK_REFRESH

        def execute(self, job_id, payload, deadline=None):
            return False

    orchestrator = _orchestrator(store, [SloppyHandler()])
    job_id = orchestrator.enqueue(JobType.STOCK_REFRESH)

    assert orchestrator.poll_and_execute(JobQueue.HIGH, "w1") == [DispatchOutcome.RETRY_SCHEDULED]
    job = store.get(job_id)
    assert job.state == JobState.FAILED_RETRYABLE.value
    assert job.last_error == "handler returned bool, expected HandlerResult or None"


def test_reported_failure_schedules_retry_with_backoff(store, make_handler, clock):
    orchestrator = _orchestrator(store, [make_handler(JobType.AI_TAGGING, outcomes=["fail"])])
    job_id = orchestrator.enqueue(JobType.AI_TAGGING)

    assert orchestrator.poll_and_execute(JobQueue.BULK, "w1") == [DispatchOutcome.RETRY_SCHEDULED]

    job = store.get(job_id)
    assert job.state == JobState.FAILED_RETRYABLE.value
    assert job.last_error == f"scripted failure of job {job_id}"
    # jitter pinned to 1.0: 2^1 * 30
    assert job.scheduled_at == clock.now + timedelta(seconds=60)

    clock.advance(seconds=60)
    assert orchestrator.poll_and_execute(JobQueue.BULK, "w1") == [DispatchOutcome.SUCCEEDED]
    assert store.get(job_id).attempt == 2


def test_raising_handler_becomes_failed_attempt(store, make_handler):
    orchestrator = _orchestrator(store, [make_handler(JobType.AI_TAGGING, outcomes=["raise"])])
    job_id = orchestrator.enqueue(JobType.AI_TAGGING)

    assert orchestrator.poll_and_execute(JobQueue.BULK, "w1") == [DispatchOutcome.RETRY_SCHEDULED]
    assert store.get(job_id).last_error == f"RuntimeError: boom on job {job_id}"


def test_handler_error_message_recorded(store, make_handler):
    orchestrator = _orchestrator(
        store, [make_handler(JobType.AI_TAGGING, outcomes=["handler_error"])]
    )
    job_id = orchestrator.enqueue(JobType.AI_TAGGING)

    orchestrator.poll_and_execute(JobQueue.BULK, "w1")
    assert store.get(job_id).last_error == "downstream rejected the request"


def test_last_attempt_failure_is_permanent(store, make_handler, clock):
    handler = make_handler(JobType.AI_TAGGING, outcomes=["fail", "fail", "fail", "fail"])
    orchestrator = _orchestrator(store, [handler])
    job_id = orchestrator.enqueue(JobType.AI_TAGGING, max_attempts=3)

    outcomes = []
    for _ in range(4):
        outcomes.extend(orchestrator.poll_and_execute(JobQueue.BULK, "w1"))
        clock.advance(hours=1)

    assert outcomes == [
        DispatchOutcome.RETRY_SCHEDULED,
        DispatchOutcome.RETRY_SCHEDULED,
        DispatchOutcome.FAILED_PERMANENT,
    ]
    assert len(handler.calls) == 3
    assert store.get(job_id).state == JobState.FAILED_PERMANENT.value
    assert store.count_by_state()["failed_permanent"] == 1


def test_long_retry_budget_never_overflows(store, make_handler, clock):
    """50 failing attempts: late retries wait the one-day cap, the last one is final."""
    handler = make_handler(JobType.AI_TAGGING, outcomes=["fail"] * 50)
    orchestrator = _orchestrator(store, [handler])
    job_id = orchestrator.enqueue(JobType.AI_TAGGING, max_attempts=50)

    outcomes = []
    for _ in range(55):
        outcomes.extend(orchestrator.poll_and_execute(JobQueue.BULK, "w1"))
        if len(handler.calls) == 40:
            assert store.get(job_id).scheduled_at == clock.now + timedelta(days=1)
        clock.advance(days=2)

    assert outcomes == [DispatchOutcome.RETRY_SCHEDULED] * 49 + [DispatchOutcome.FAILED_PERMANENT]
    assert len(handler.calls) == 50
    job = store.get(job_id)
    assert job.state == JobState.FAILED_PERMANENT.value
    assert job.attempt == 50


def test_job_without_handler_in_this_worker_is_retried(store, make_handler):
    """A row written by a producer with a wider handler set."""
    orchestrator = _orchestrator(store, [make_handler(JobType.AI_TAGGING)])
    job_id = store.insert(JobType.SEARCH_INDEXING)

    assert orchestrator.poll_and_execute(JobQueue.BULK, "w1") == [DispatchOutcome.RETRY_SCHEDULED]
    assert "Unknown job type" in store.get(job_id).last_error


def test_lease_lost_while_running(store, make_handler, clock):
    """The lease expires mid-run and another worker takes the job."""
    orchestrator = _orchestrator(store, [make_handler(JobType.AI_TAGGING)])
    job_id = orchestrator.enqueue(JobType.AI_TAGGING)

    [stale] = store.lease_batch(JobQueue.BULK, "worker-a", 1)
    clock.advance(seconds=61)
    [current] = store.lease_batch(JobQueue.BULK, "worker-b", 1)

    assert orchestrator.dispatch_one(stale) == DispatchOutcome.LEASE_LOST
    row = store.get(job_id)
    assert row.state == JobState.LEASED.value
    assert row.leased_by == "worker-b"

    assert orchestrator.dispatch_one(current) == DispatchOutcome.SUCCEEDED


def test_store_outage_while_recording_leaves_job_to_expire(store, make_handler, monkeypatch):
    orchestrator = _orchestrator(store, [make_handler(JobType.AI_TAGGING)])
    job_id = orchestrator.enqueue(JobType.AI_TAGGING)

    def broken(*args, **kwargs):
        raise StoreUnavailable("connection reset")

    monkeypatch.setattr(store, "mark_succeeded", broken)
    assert orchestrator.poll_and_execute(JobQueue.BULK, "w1") == [DispatchOutcome.UNRECORDED]
    assert store.get(job_id).state == JobState.LEASED.value


def test_store_outage_while_leasing_is_absorbed(store, make_handler, monkeypatch):
    orchestrator = _orchestrator(store, [make_handler(JobType.AI_TAGGING)])
    orchestrator.enqueue(JobType.AI_TAGGING)

    def broken(*args, **kwargs):
        raise StoreUnavailable("connection refused")

    monkeypatch.setattr(store, "lease_batch", broken)
    monkeypatch.setattr(store, "reclaim_expired", broken)
    assert orchestrator.poll_and_execute(JobQueue.BULK, "w1") == []
    assert orchestrator.reclaim_expired() == 0


def test_poll_respects_limit(store, make_handler):
    handler = make_handler(JobType.AI_TAGGING)
    orchestrator = _orchestrator(store, [handler])
    for _ in range(5):
        orchestrator.enqueue(JobType.AI_TAGGING)

    assert len(orchestrator.poll_and_execute(JobQueue.BULK, "w1", limit=2)) == 2
    assert len(orchestrator.poll_and_execute(JobQueue.BULK, "w1", limit=10)) == 3
    assert len(handler.calls) == 5


# ── gates ───────────────────────────────────────────────────────


def test_available_permits(store, registry):
    orchestrator = JobOrchestrator(store, registry, gates=build_gates(3))
    assert orchestrator.available_permits(JobQueue.SCREENSHOT) == 3
    assert orchestrator.available_permits(JobQueue.HIGH) is None


def test_gate_released_when_handler_raises(store, make_handler):
    gates = build_gates(3)
    handler = make_handler(JobType.SCREENSHOT_CAPTURE, outcomes=["raise", "handler_error"])
    orchestrator = _orchestrator(store, [handler], gates=gates)
    orchestrator.enqueue(JobType.SCREENSHOT_CAPTURE)
    orchestrator.enqueue(JobType.SCREENSHOT_CAPTURE)

    outcomes = orchestrator.poll_and_execute(JobQueue.SCREENSHOT, "w1")

    assert outcomes == [DispatchOutcome.RETRY_SCHEDULED] * 2
    assert gates[JobQueue.SCREENSHOT].available_permits() == 3


def test_gate_caps_concurrent_screenshot_executions(store, make_handler):
    """12 screenshot jobs dispatched on 12 threads, never more than 3 inside execute()."""
    handler = make_handler(JobType.SCREENSHOT_CAPTURE, hold=0.05)
    gates = build_gates(3)
    orchestrator = _orchestrator(store, [handler], gates=gates, gate_timeout=30)
    for i in range(12):
        orchestrator.enqueue(JobType.SCREENSHOT_CAPTURE, {"url": f"https://site/{i}"})

    jobs = store.lease_batch(JobQueue.SCREENSHOT, "w1", 12)
    assert len(jobs) == 12
    with ThreadPoolExecutor(max_workers=12) as pool:
        outcomes = list(pool.map(orchestrator.dispatch_one, jobs))

    assert outcomes == [DispatchOutcome.SUCCEEDED] * 12
    assert handler.max_running == 3
    assert gates[JobQueue.SCREENSHOT].available_permits() == 3


def test_ungated_family_runs_unbounded(store, make_handler):
    handler = make_handler(JobType.AI_TAGGING, hold=0.3)
    orchestrator = _orchestrator(store, [handler])
    for _ in range(6):
        orchestrator.enqueue(JobType.AI_TAGGING)

    jobs = store.lease_batch(JobQueue.BULK, "w1", 6)
    with ThreadPoolExecutor(max_workers=6) as pool:
        list(pool.map(orchestrator.dispatch_one, jobs))

    assert handler.max_running > 3


def test_gate_timeout_hands_job_back_without_spending_attempt(store, make_handler, clock):
    gates = build_gates(1)
    handler = make_handler(JobType.SCREENSHOT_CAPTURE)
    orchestrator = _orchestrator(store, [handler], gates=gates, gate_timeout=0.05)
    job_id = orchestrator.enqueue(JobType.SCREENSHOT_CAPTURE)

    gates[JobQueue.SCREENSHOT].acquire()  # someone else holds the only permit
    assert orchestrator.poll_and_execute(JobQueue.SCREENSHOT, "w1") == [DispatchOutcome.SKIPPED]

    assert handler.calls == []
    job = store.get(job_id)
    assert job.state == JobState.READY.value
    assert job.leased_by is None
    assert job.attempt == 1
    assert job.max_attempts == 6
    assert job.scheduled_at == clock.now + timedelta(seconds=1)


def test_gate_timeout_on_final_attempt_does_not_burn_the_job(store, make_handler, clock):
    """A single-attempt job that never got a permit still runs once the gate frees up."""
    gates = build_gates(1)
    handler = make_handler(JobType.SCREENSHOT_CAPTURE)
    orchestrator = _orchestrator(store, [handler], gates=gates, gate_timeout=0.05)
    job_id = orchestrator.enqueue(JobType.SCREENSHOT_CAPTURE, max_attempts=1)

    gates[JobQueue.SCREENSHOT].acquire()
    assert orchestrator.poll_and_execute(JobQueue.SCREENSHOT, "w1") == [DispatchOutcome.SKIPPED]
    gates[JobQueue.SCREENSHOT].release()

    # well past the lease: a skipped lease must not expire into failed_permanent
    clock.advance(minutes=5)
    assert orchestrator.poll_and_execute(JobQueue.SCREENSHOT, "w1") == [DispatchOutcome.SUCCEEDED]

    assert len(handler.calls) == 1
    job = store.get(job_id)
    assert job.state == JobState.SUCCEEDED.value
    assert job.attempt == 2


# ── events ──────────────────────────────────────────────────────


def test_dispatch_emits_start_and_end_events(store, make_handler):
    events = []
    orchestrator = _orchestrator(store, [make_handler(JobType.AI_TAGGING)], listeners=[events.append])
    job_id = orchestrator.enqueue(JobType.AI_TAGGING)

    orchestrator.poll_and_execute(JobQueue.BULK, "w1")

    assert [e.phase for e in events] == ["start", "end"]
    start, end = events
    assert start.job_id == end.job_id == job_id
    assert start.job_type == "ai_tagging"
    assert start.queue == "BULK"
    assert start.attempt == 1
    assert start.outcome is None
    assert end.outcome == DispatchOutcome.SUCCEEDED
    assert end.elapsed is not None
    assert end.as_dict()["outcome"] == "succeeded"


def test_failing_listener_does_not_break_dispatch(store, make_handler):
    def broken_listener(event):
        raise RuntimeError("tracing backend down")

    seen = []
    orchestrator = _orchestrator(
        store, [make_handler(JobType.AI_TAGGING)], listeners=[broken_listener]
    )
    orchestrator.add_listener(seen.append)
    orchestrator.enqueue(JobType.AI_TAGGING)

    assert orchestrator.poll_and_execute(JobQueue.BULK, "w1") == [DispatchOutcome.SUCCEEDED]
    assert len(seen) == 2


def test_end_event_carries_failure_outcome(store, make_handler):
    events = []
    orchestrator = _orchestrator(
        store, [make_handler(JobType.AI_TAGGING, outcomes=["fail"])], listeners=[events.append]
    )
    orchestrator.enqueue(JobType.AI_TAGGING, max_attempts=1)

    orchestrator.poll_and_execute(JobQueue.BULK, "w1")
    assert events[-1].outcome == DispatchOutcome.FAILED_PERMANENT
