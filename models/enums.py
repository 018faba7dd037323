"""
Shared enumerations used across the entire project.

Using Python enums (inheriting from str) means:
- They serialize to JSON automatically ("ready", not "JobState.READY")
- They work as SQLAlchemy column values
- They work as FastAPI query parameters
- Typos become immediate errors instead of silent bugs

The job type → queue family table lives here too. It is compiled in on
purpose: a job's queue is never stored per-job by the producer, it is
always derived from the type.
"""

import enum


class JobState(str, enum.Enum):
    READY = "ready"                        # waiting for scheduled_at, lease eligible
    LEASED = "leased"                      # claimed by a worker until lease_expires_at
    SUCCEEDED = "succeeded"                # handler finished (terminal)
    FAILED_RETRYABLE = "failed_retryable"  # attempt failed, lease eligible again after backoff
    FAILED_PERMANENT = "failed_permanent"  # retry budget exhausted (terminal)

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED_PERMANENT)


# States a worker may lease without waiting for a lease to expire
LEASABLE_STATES = (JobState.READY.value, JobState.FAILED_RETRYABLE.value)


class JobQueue(str, enum.Enum):
    DEFAULT = "DEFAULT"        # periodic maintenance tasks
    HIGH = "HIGH"              # time-sensitive operations
    LOW = "LOW"                # background cleanup
    BULK = "BULK"              # bulk processing with cost/resource controls
    SCREENSHOT = "SCREENSHOT"  # browser captures, concurrency-gated

    @property
    def default_priority(self) -> int:
        return _QUEUE_PRIORITY[self]

    @property
    def description(self) -> str:
        return _QUEUE_DESCRIPTION[self]


_QUEUE_PRIORITY: dict[JobQueue, int] = {
    JobQueue.DEFAULT: 5,
    JobQueue.HIGH: 0,
    JobQueue.LOW: 7,
    JobQueue.BULK: 8,
    JobQueue.SCREENSHOT: 6,
}

_QUEUE_DESCRIPTION: dict[JobQueue, str] = {
    JobQueue.DEFAULT: "Standard priority for periodic maintenance tasks",
    JobQueue.HIGH: "High priority for time-sensitive operations",
    JobQueue.LOW: "Low priority for background cleanup tasks",
    JobQueue.BULK: "Bulk processing with cost/resource controls",
    JobQueue.SCREENSHOT: "Dedicated queue for browser-based captures",
}


class JobType(str, enum.Enum):
    RSS_FEED_REFRESH = "rss_feed_refresh"
    WEATHER_REFRESH = "weather_refresh"
    LISTING_EXPIRATION = "listing_expiration"
    LISTING_REMINDER = "listing_reminder"
    PROMOTION_EXPIRATION = "promotion_expiration"
    RANK_RECALCULATION = "rank_recalculation"
    INBOUND_EMAIL = "inbound_email"
    ACCOUNT_MERGE_CLEANUP = "account_merge_cleanup"
    EMAIL_DELIVERY = "email_delivery"
    STOCK_REFRESH = "stock_refresh"
    MESSAGE_RELAY = "message_relay"
    SOCIAL_REFRESH = "social_refresh"
    LINK_HEALTH_CHECK = "link_health_check"
    SITEMAP_GENERATION = "sitemap_generation"
    CLICK_ROLLUP = "click_rollup"
    AI_TAGGING = "ai_tagging"
    SEARCH_INDEXING = "search_indexing"
    LISTING_IMAGE_PROCESSING = "listing_image_processing"
    LISTING_IMAGE_CLEANUP = "listing_image_cleanup"
    SCREENSHOT_CAPTURE = "screenshot_capture"

    @property
    def queue(self) -> JobQueue:
        return JOB_QUEUES[self]


JOB_QUEUES: dict[JobType, JobQueue] = {
    JobType.RSS_FEED_REFRESH: JobQueue.DEFAULT,
    JobType.WEATHER_REFRESH: JobQueue.DEFAULT,
    JobType.LISTING_EXPIRATION: JobQueue.DEFAULT,
    JobType.LISTING_REMINDER: JobQueue.DEFAULT,
    JobType.PROMOTION_EXPIRATION: JobQueue.DEFAULT,
    JobType.RANK_RECALCULATION: JobQueue.DEFAULT,
    JobType.INBOUND_EMAIL: JobQueue.DEFAULT,
    JobType.ACCOUNT_MERGE_CLEANUP: JobQueue.DEFAULT,
    JobType.EMAIL_DELIVERY: JobQueue.DEFAULT,
    JobType.STOCK_REFRESH: JobQueue.HIGH,
    JobType.MESSAGE_RELAY: JobQueue.HIGH,
    JobType.SOCIAL_REFRESH: JobQueue.LOW,
    JobType.LINK_HEALTH_CHECK: JobQueue.LOW,
    JobType.SITEMAP_GENERATION: JobQueue.LOW,
    JobType.CLICK_ROLLUP: JobQueue.LOW,
    JobType.AI_TAGGING: JobQueue.BULK,
    JobType.SEARCH_INDEXING: JobQueue.BULK,
    JobType.LISTING_IMAGE_PROCESSING: JobQueue.BULK,
    JobType.LISTING_IMAGE_CLEANUP: JobQueue.BULK,
    JobType.SCREENSHOT_CAPTURE: JobQueue.SCREENSHOT,
}


def queue_for(job_type: JobType) -> JobQueue:
    return JOB_QUEUES[JobType(job_type)]


def default_priority(job_type: JobType) -> int:
    """Within-queue priority a job gets when the producer doesn't override it."""
    return queue_for(job_type).default_priority
