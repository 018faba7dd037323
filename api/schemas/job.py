"""
Pydantic schemas for the monitoring endpoints.

These are NOT database models. They define the HTTP response contract:
- JobResponse: one delayed_jobs row
- JobListResponse: paginated list of jobs
- JobStats: counts per state
- QueueInfo: the fixed queue-family table
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class JobResponse(BaseModel):
    """A single job — returned by GET /jobs/{id} and inside lists."""

    id: int
    job_type: str
    queue: str
    state: str
    priority: int
    payload: dict
    attempt: int
    max_attempts: int
    scheduled_at: datetime
    leased_by: Optional[str] = None
    leased_at: Optional[datetime] = None
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    # from_attributes=True tells Pydantic to read from SQLAlchemy model attributes
    model_config = {"from_attributes": True}


class JobListResponse(BaseModel):
    """Paginated list of jobs — returned by GET /jobs/."""

    jobs: list[JobResponse]
    total: int       # total matching jobs (ignoring pagination)
    page: int
    page_size: int


class JobStats(BaseModel):
    """Job counts per state — returned by GET /jobs/stats."""

    total_jobs: int
    ready: int
    leased: int
    succeeded: int
    failed_retryable: int
    failed_permanent: int


class QueueInfo(BaseModel):
    """One queue family — returned by GET /queues."""

    name: str
    default_priority: int
    description: str
    job_types: list[str]
    gated: bool
    permits: Optional[int] = None
