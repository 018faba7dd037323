"""
Job inspection endpoints (read-only).

GET /jobs/          → List jobs with filtering + pagination
GET /jobs/stats     → Counts per state
GET /jobs/failed    → Permanently failed jobs, newest first (alerting feed)
GET /jobs/{job_id}  → A single job

Nothing here writes. State transitions belong to the workers; this only
lets an operator see what they did.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from api.schemas.job import JobListResponse, JobResponse, JobStats
from models.enums import JobQueue, JobState, JobType
from models.job import Job

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/", response_model=JobListResponse)
async def list_jobs(
    state: Optional[JobState] = Query(None, description="Filter by job state"),
    queue: Optional[JobQueue] = Query(None, description="Filter by queue family"),
    job_type: Optional[JobType] = Query(None, description="Filter by job type"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Jobs per page"),
    db: AsyncSession = Depends(get_db),
) -> JobListResponse:
    """
    List jobs with optional filtering and pagination, newest first.

    Two queries: the total count for the filter, then the requested page.
    """
    conditions = []
    if state:
        conditions.append(Job.state == state.value)
    if queue:
        conditions.append(Job.queue == queue.value)
    if job_type:
        conditions.append(Job.job_type == job_type.value)

    total = (
        await db.execute(select(func.count(Job.id)).where(*conditions))
    ).scalar() or 0

    offset = (page - 1) * page_size
    query = (
        select(Job)
        .where(*conditions)
        .order_by(Job.created_at.desc(), Job.id.desc())
        .offset(offset)
        .limit(page_size)
    )
    jobs = (await db.execute(query)).scalars().all()

    return JobListResponse(
        jobs=[JobResponse.model_validate(j) for j in jobs],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/stats", response_model=JobStats)
async def get_job_stats(
    queue: Optional[JobQueue] = Query(None, description="Restrict to one queue family"),
    db: AsyncSession = Depends(get_db),
) -> JobStats:
    """Counts per state in a single grouped query."""
    query = select(Job.state, func.count(Job.id)).group_by(Job.state)
    if queue:
        query = query.where(Job.queue == queue.value)
    counts = {state: count for state, count in (await db.execute(query)).all()}

    return JobStats(
        total_jobs=sum(counts.values()),
        ready=counts.get(JobState.READY.value, 0),
        leased=counts.get(JobState.LEASED.value, 0),
        succeeded=counts.get(JobState.SUCCEEDED.value, 0),
        failed_retryable=counts.get(JobState.FAILED_RETRYABLE.value, 0),
        failed_permanent=counts.get(JobState.FAILED_PERMANENT.value, 0),
    )


@router.get("/failed", response_model=list[JobResponse])
async def list_failed_jobs(
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> list[JobResponse]:
    """
    Jobs that exhausted their retry budget.

    These need a human (or an external remediation process): fix the root
    cause and enqueue a fresh job.
    """
    query = (
        select(Job)
        .where(Job.state == JobState.FAILED_PERMANENT.value)
        .order_by(Job.completed_at.desc(), Job.id.desc())
        .limit(limit)
    )
    jobs = (await db.execute(query)).scalars().all()
    return [JobResponse.model_validate(j) for j in jobs]


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: int,
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    """Get a single job by id."""
    job = await db.get(Job, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return JobResponse.model_validate(job)
