"""
Health check endpoint.

The job store is the only piece of infrastructure, so healthy means the
database answers. expired_leases counts jobs still marked leased after
their lease ran out: a steadily growing number usually means workers are
crashing mid-job (or none are running) and nobody has re-leased the work yet.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from models.base import utcnow
from models.enums import JobState
from models.job import Job

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Check that the database is reachable and report stuck leases."""
    expired = (
        await db.execute(
            select(func.count(Job.id)).where(
                Job.state == JobState.LEASED.value,
                Job.lease_expires_at < utcnow(),
            )
        )
    ).scalar() or 0
    return {"status": "healthy", "database": "ok", "expired_leases": expired}
