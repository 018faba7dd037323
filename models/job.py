"""
Job ORM model — maps to the "delayed_jobs" table.

Key design decisions:
- Integer identity key: opaque to producers, but monotonic, so it doubles as
  the last tie-break of the poll order (priority DESC, scheduled_at ASC, id ASC)
- queue is derived from job_type at insert time and stored so the poll
  query can filter on an indexed column
- JSONB payload on PostgreSQL (plain JSON elsewhere): each job type stores
  different data without schema changes, and the orchestrator never looks inside
- The lease lives in the row itself: leased_by + attempt identify the current
  lease generation, lease_expires_at bounds it
- Rows are never deleted here; retention is somebody else's problem
"""

from datetime import datetime

from sqlalchemy import BigInteger, Index, Integer, JSON, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, UTCDateTime, utcnow
from models.enums import JobState


class Job(Base):
    __tablename__ = "delayed_jobs"

    # ── Identity ────────────────────────────────────────────────
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    job_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    queue: Mapped[str] = mapped_column(String(20), nullable=False)

    # ── Payload ─────────────────────────────────────────────────
    payload: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), default=dict, nullable=False
    )

    # ── Scheduling fields ───────────────────────────────────────
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    state: Mapped[str] = mapped_column(
        String(20), default=JobState.READY.value, nullable=False, index=True
    )
    scheduled_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, nullable=False
    )

    # ── Retry tracking ──────────────────────────────────────────
    attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # ── Lease ───────────────────────────────────────────────────
    leased_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    leased_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )

    # ── Lifecycle timestamps ────────────────────────────────────
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_delayed_jobs_poll", "queue", "state", "priority", "scheduled_at"),
    )

    def __repr__(self) -> str:
        return f"<Job {self.id} [{self.job_type}/{self.queue}] {self.state} attempt={self.attempt}>"
