"""
Per-dispatch observability events.

The orchestrator emits a "start" and an "end" event around every dispatch.
Listeners (a tracing adapter, a metrics counter, a test) receive them
synchronously on the dispatching thread; the transport is theirs to decide.
"""

import enum
from dataclasses import dataclass
from typing import Optional


class DispatchOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"                # handler ok, success recorded
    RETRY_SCHEDULED = "retry_scheduled"    # handler failed, job rescheduled with backoff
    FAILED_PERMANENT = "failed_permanent"  # handler failed on its last attempt
    LEASE_LOST = "lease_lost"              # another worker owns the job now, nothing recorded
    SKIPPED = "skipped"                    # no gate permit in time, handed back unspent
    UNRECORDED = "unrecorded"              # store unreachable, lease left to expire


@dataclass(frozen=True)
class DispatchEvent:
    phase: str  # "start" | "end"
    job_id: int
    job_type: str
    queue: str
    attempt: int
    outcome: Optional[DispatchOutcome] = None
    elapsed: Optional[float] = None  # seconds, end events only

    def as_dict(self) -> dict:
        return {
            "phase": self.phase,
            "job_id": self.job_id,
            "job_type": self.job_type,
            "queue": self.queue,
            "attempt": self.attempt,
            "outcome": self.outcome.value if self.outcome else None,
            "elapsed": self.elapsed,
        }
