"""
Error taxonomy for the orchestrator.

Where each one ends up:
- UnknownJobType / DuplicateHandler: configuration mistakes, raised straight
  to the caller (enqueue) or the operator (startup)
- LeaseConflict, StoreUnavailable: absorbed inside the worker loop
- HandlerError: a handler's business failure, retried with backoff
- PermanentFailure: the retry budget is gone, the job is terminal
"""


class JobOrchestrationError(Exception):
    """Base class for everything raised by this package."""


class UnknownJobType(JobOrchestrationError, ValueError):
    def __init__(self, job_type, available=()):
        self.job_type = job_type
        super().__init__(
            f"Unknown job type: '{job_type}'. Available: {sorted(str(t) for t in available)}"
        )


class DuplicateHandler(JobOrchestrationError):
    def __init__(self, job_type, existing, duplicate):
        self.job_type = job_type
        super().__init__(
            f"Duplicate handlers registered for '{job_type}': "
            f"{type(existing).__name__} and {type(duplicate).__name__}"
        )


class RegistryFrozen(JobOrchestrationError, RuntimeError):
    pass


class LeaseConflict(JobOrchestrationError):
    """The caller's lease on a job is gone (expired and re-leased, or already finished)."""

    def __init__(self, job_id, worker_id, attempt):
        self.job_id = job_id
        self.worker_id = worker_id
        self.attempt = attempt
        super().__init__(
            f"Job {job_id} is no longer leased by {worker_id} (attempt {attempt})"
        )


class HandlerError(JobOrchestrationError):
    """Business failure reported by a handler. The job is retried."""


class PermanentFailure(JobOrchestrationError):
    def __init__(self, job_id, attempts, last_error):
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Job {job_id} failed permanently after {attempts} attempts: {last_error}"
        )


class StoreUnavailable(JobOrchestrationError):
    """The backing database could not complete a transaction."""
