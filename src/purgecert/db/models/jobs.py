"""Job queue model for database-backed background processing.

Policy executions, run recovery, risk scans and ledger verification are all
dispatched through this table:
- SKIP LOCKED for concurrent worker safety
- Retry with exponential backoff
- Dead letter handling for failed jobs
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import Any

from sqlalchemy import BigInteger, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from purgecert.db.models.base import (
    Base,
    JobStatus,
    OptionalTimestampTZ,
    PortableJSON,
    TimestampTZ,
    UTCDateTime,
    UUIDPrimaryKey,
    enum_type,
)


class Job(Base):
    """Background job for async processing.

    Jobs are picked up by workers using SELECT ... FOR UPDATE SKIP LOCKED
    to ensure safe concurrent processing without external queue infrastructure.
    """

    __tablename__ = "jobs"

    job_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # Job type determines which handler processes it
    # e.g., 'policy_execute', 'run_recovery', 'risk_scan'
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        enum_type(JobStatus, "job_status"),
        nullable=False,
        default=JobStatus.PENDING,
    )

    # When the job should be run (for scheduled jobs)
    run_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # Lock tracking for concurrent workers
    locked_at: Mapped[OptionalTimestampTZ]
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lock_timeout_seconds: Mapped[int] = mapped_column(default=300, nullable=False)

    # Retry tracking
    attempts: Mapped[int] = mapped_column(default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(default=3, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Backoff configuration (seconds for next retry, doubles each attempt)
    base_backoff_seconds: Mapped[int] = mapped_column(default=60, nullable=False)

    payload_json: Mapped[dict[str, Any] | None] = mapped_column(PortableJSON(), nullable=True)
    result_json: Mapped[dict[str, Any] | None] = mapped_column(PortableJSON(), nullable=True)

    started_at: Mapped[OptionalTimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]

    # Priority (lower = higher priority)
    priority: Mapped[int] = mapped_column(default=100, nullable=False)

    # Queue name for routing to specific workers
    queue: Mapped[str] = mapped_column(String(100), default="default", nullable=False)

    # Correlation ID for tracing related jobs (the run_id for executions)
    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        # Primary query for workers: pending jobs ready to run, ordered by priority
        Index(
            "ix_jobs_queue_pending",
            "queue",
            "status",
            "run_at",
            "priority",
        ),
        Index("ix_jobs_job_type", "job_type"),
        Index("ix_jobs_correlation_id", "correlation_id"),
        Index("ix_jobs_completed_at", "completed_at"),
    )
