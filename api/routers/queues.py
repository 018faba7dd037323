"""
Queue family endpoint.

GET /queues → the compiled-in queue table: default priority, which job types
              land in each family, and whether the family is concurrency-gated.

Gate occupancy is per worker process, so it isn't reported here; workers log
it when they acquire and release permits.
"""

from fastapi import APIRouter

from api.schemas.job import QueueInfo
from config.settings import settings
from models.enums import JOB_QUEUES, JobQueue

router = APIRouter(prefix="/queues", tags=["queues"])

GATED_PERMITS = {JobQueue.SCREENSHOT: settings.SCREENSHOT_CONCURRENCY}


@router.get("", response_model=list[QueueInfo])
async def list_queues() -> list[QueueInfo]:
    return [
        QueueInfo(
            name=queue.value,
            default_priority=queue.default_priority,
            description=queue.description,
            job_types=[t.value for t, q in JOB_QUEUES.items() if q == queue],
            gated=queue in GATED_PERMITS,
            permits=GATED_PERMITS.get(queue),
        )
        for queue in JobQueue
    ]
