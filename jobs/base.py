"""
Handler contract — the pluggable unit the orchestrator dispatches to.

Each job type (screenshot_capture, ai_tagging, email_delivery, ...) is served by
exactly one handler. The orchestrator calls handler.execute(job_id, payload)
without knowing which type it is; it looks the handler up in the
HandlerRegistry by job type.

To add a new job type handler:
1. Create a class that inherits AbstractJobHandler
2. Implement execute() and job_type
3. Advertise it under the "delayed_jobs.handlers" entry point group
   (or pass it to HandlerRegistry.from_handlers() directly)

Delivery is at-least-once: a worker can die after execute() returned but
before the success was recorded, and the job will run again. Handlers must
be idempotent (upserts, "already sent" checks, ...).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from models.enums import JobType


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of one execute() call: success, or failure with a message."""

    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "HandlerResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, message: str) -> "HandlerResult":
        return cls(ok=False, error=message)


class AbstractJobHandler(ABC):

    @abstractmethod
    def execute(
        self,
        job_id: int,
        payload: dict[str, Any],
        deadline: Optional[datetime] = None,
    ) -> Optional[HandlerResult]:
        """
        Execute the job.

        Args:
            job_id: the delayed_jobs row id. Stable across retries, handy as an
                    idempotency key.
            payload: job-specific parameters from the JSON column.
            deadline: when the current lease expires. After that another worker
                      may lease the same job, so long-running handlers should
                      stop before it.

        Returns:
            HandlerResult.success() (or None) on success,
            HandlerResult.failure(message) on a business failure.

        Raising counts as a failure too, and so does returning anything else;
        the job is retried with backoff.
        """
        ...

    @property
    @abstractmethod
    def job_type(self) -> JobType:
        """The JobType this handler serves."""
        ...
