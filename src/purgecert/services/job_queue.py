"""Database-backed job queue for background processing.

Workers claim jobs with SELECT ... FOR UPDATE SKIP LOCKED on PostgreSQL, so
several worker processes can compete for the same queue without
double-processing a job. SQLite ignores the locking clause; a single worker
is assumed there.

Job types:
- policy_execute: run (or resume) one execution run; payload carries run_id
- run_recovery: find abandoned runs and requeue them
- risk_scan: run the risk assessment and log the report
- chain_verify: verify every ledger stream end to end

Usage:
    queue = JobQueueService(session)
    job = await queue.claim_job("worker-1")
    if job:
        try:
            ...
            await queue.complete_job(job.job_id)
        except Exception as e:
            await queue.fail_job(job.job_id, str(e))
"""

from __future__ import annotations

import logging
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from purgecert.db.models.base import JobStatus, utcnow
from purgecert.db.models.jobs import Job

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_OPEN_STATUSES = [JobStatus.PENDING, JobStatus.RUNNING]


class JobType(str, Enum):
    """Job types dispatched by the worker."""

    POLICY_EXECUTE = "policy_execute"
    RUN_RECOVERY = "run_recovery"
    RISK_SCAN = "risk_scan"
    CHAIN_VERIFY = "chain_verify"


class JobQueueError(Exception):
    """Base exception for job queue operations."""

    pass


class JobNotFoundError(JobQueueError):
    """Raised when a job cannot be found."""

    pass


class JobQueueService:
    """Job queue over the jobs table.

    Like the other services it flushes but never commits; the caller owns
    the transaction. A claimed job stays locked only until that transaction
    commits, so workers commit right after claiming.
    """

    def __init__(
        self,
        session: AsyncSession,
        default_queue: str = "default",
        default_max_attempts: int = 3,
        default_lock_timeout: int = 300,
        default_base_backoff: int = 60,
    ) -> None:
        self.session = session
        self.default_queue = default_queue
        self.default_max_attempts = default_max_attempts
        self.default_lock_timeout = default_lock_timeout
        self.default_base_backoff = default_base_backoff

    async def enqueue(
        self,
        job_type: str | JobType,
        payload: dict[str, Any] | None = None,
        run_at: datetime | None = None,
        queue: str | None = None,
        priority: int = 100,
        max_attempts: int | None = None,
        correlation_id: str | None = None,
    ) -> uuid.UUID:
        """Add a new job to the queue.

        Args:
            job_type: Type of job (selects the handler).
            payload: Handler-specific data.
            run_at: Earliest processing time. Defaults to now.
            queue: Queue name. Defaults to default_queue.
            priority: Lower runs first. Default 100.
            max_attempts: Attempts before dead-lettering.
            correlation_id: Tracing ID; the run_id for policy executions.

        Returns:
            UUID of the created job.

        Raises:
            JobQueueError: If the insert fails.
        """
        job_type_value = job_type.value if isinstance(job_type, JobType) else job_type
        job = Job(
            job_type=job_type_value,
            status=JobStatus.PENDING,
            run_at=run_at or utcnow(),
            payload_json=payload,
            queue=queue or self.default_queue,
            priority=priority,
            max_attempts=max_attempts or self.default_max_attempts,
            lock_timeout_seconds=self.default_lock_timeout,
            base_backoff_seconds=self.default_base_backoff,
            correlation_id=correlation_id,
        )

        try:
            self.session.add(job)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to enqueue job: %s", str(e))
            raise JobQueueError(f"Failed to enqueue job: {e}") from e

        logger.info(
            "Job enqueued: job_id=%s, job_type=%s, queue=%s, run_at=%s",
            job.job_id,
            job_type_value,
            job.queue,
            job.run_at.isoformat(),
        )
        return job.job_id

    async def has_open_job(self, job_type: str | JobType, correlation_id: str) -> bool:
        """Whether a pending or running job of this type already targets correlation_id."""
        job_type_value = job_type.value if isinstance(job_type, JobType) else job_type
        stmt = select(func.count(Job.job_id)).where(
            Job.job_type == job_type_value,
            Job.correlation_id == correlation_id,
            Job.status.in_(_OPEN_STATUSES),
        )
        return ((await self.session.execute(stmt)).scalar() or 0) > 0

    async def claim_job(
        self,
        worker_id: str,
        queue: str | None = None,
        job_types: list[str] | None = None,
    ) -> Job | None:
        """Claim the next due job, or None when the queue is idle.

        Raises:
            JobQueueError: If the claim fails.
        """
        queue_name = queue or self.default_queue
        now = utcnow()

        stmt = (
            select(Job)
            .where(
                Job.queue == queue_name,
                Job.status == JobStatus.PENDING,
                Job.run_at <= now,
            )
            .order_by(Job.priority, Job.run_at)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        if job_types:
            stmt = stmt.where(Job.job_type.in_(job_types))

        try:
            job = (await self.session.execute(stmt)).scalar_one_or_none()
            if job is None:
                return None

            job.status = JobStatus.RUNNING
            job.locked_at = now
            job.locked_by = worker_id
            job.started_at = now
            job.attempts += 1
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to claim job: %s", str(e))
            raise JobQueueError(f"Failed to claim job: {e}") from e

        logger.info(
            "Job claimed: job_id=%s, worker_id=%s, job_type=%s, attempt=%d/%d",
            job.job_id,
            worker_id,
            job.job_type,
            job.attempts,
            job.max_attempts,
        )
        return job

    async def complete_job(
        self,
        job_id: uuid.UUID,
        result: dict[str, Any] | None = None,
    ) -> None:
        """Mark a job as successfully completed.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        now = utcnow()
        job = await self._require_job(job_id)

        job.status = JobStatus.COMPLETED
        job.completed_at = now
        job.result_json = result
        job.duration_ms = _duration_ms(job, now)
        job.locked_at = None
        job.locked_by = None
        await self.session.flush()

        logger.info(
            "Job completed: job_id=%s, job_type=%s, duration_ms=%s",
            job_id,
            job.job_type,
            job.duration_ms,
        )

    async def fail_job(self, job_id: uuid.UUID, error: str) -> bool:
        """Record a failure and reschedule with exponential backoff.

        Returns:
            True if the job will be retried, False if it was dead-lettered.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        now = utcnow()
        job = await self._require_job(job_id)

        job.last_error = error
        job.locked_at = None
        job.locked_by = None

        if job.attempts >= job.max_attempts:
            job.status = JobStatus.FAILED
            job.completed_at = now
            job.duration_ms = _duration_ms(job, now)
            await self.session.flush()
            logger.warning(
                "Job dead-lettered: job_id=%s, job_type=%s, attempts=%d, error=%s",
                job_id,
                job.job_type,
                job.attempts,
                error,
            )
            return False

        backoff_seconds = job.base_backoff_seconds * (2 ** (job.attempts - 1))
        job.run_at = now + timedelta(seconds=backoff_seconds)
        job.status = JobStatus.PENDING
        await self.session.flush()

        logger.info(
            "Job scheduled for retry: job_id=%s, job_type=%s, attempt=%d/%d, backoff=%ds",
            job_id,
            job.job_type,
            job.attempts,
            job.max_attempts,
            backoff_seconds,
        )
        return True

    async def cancel_job(self, job_id: uuid.UUID) -> None:
        """Cancel a pending or running job.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobQueueError: If the job already finished.
        """
        job = await self._require_job(job_id)
        if job.status in (JobStatus.COMPLETED, JobStatus.FAILED):
            raise JobQueueError(f"Cannot cancel job in {job.status.value} status")

        job.status = JobStatus.CANCELLED
        job.completed_at = utcnow()
        job.locked_at = None
        job.locked_by = None
        await self.session.flush()
        logger.info("Job cancelled: job_id=%s, job_type=%s", job_id, job.job_type)

    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        stmt = select(Job).where(Job.job_id == job_id)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get_pending_count(
        self,
        queue: str | None = None,
        job_type: str | None = None,
    ) -> int:
        stmt = select(func.count(Job.job_id)).where(Job.status == JobStatus.PENDING)
        if queue:
            stmt = stmt.where(Job.queue == queue)
        if job_type:
            stmt = stmt.where(Job.job_type == job_type)
        return (await self.session.execute(stmt)).scalar() or 0

    async def get_failed_jobs(
        self,
        queue: str | None = None,
        job_type: str | None = None,
        limit: int = 100,
    ) -> list[Job]:
        """Dead-lettered jobs, most recent first."""
        stmt = (
            select(Job)
            .where(Job.status == JobStatus.FAILED)
            .order_by(Job.completed_at.desc())
            .limit(limit)
        )
        if queue:
            stmt = stmt.where(Job.queue == queue)
        if job_type:
            stmt = stmt.where(Job.job_type == job_type)
        return list((await self.session.execute(stmt)).scalars().all())

    async def retry_failed_job(self, job_id: uuid.UUID) -> None:
        """Move a dead-lettered job back to pending with a fresh attempt budget.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobQueueError: If the job is not in FAILED status.
        """
        job = await self._require_job(job_id)
        if job.status != JobStatus.FAILED:
            raise JobQueueError(f"Can only retry FAILED jobs, current status: {job.status.value}")

        job.status = JobStatus.PENDING
        job.run_at = utcnow()
        job.attempts = 0
        job.completed_at = None
        job.last_error = None
        job.duration_ms = None
        await self.session.flush()
        logger.info("Failed job queued for retry: job_id=%s, job_type=%s", job_id, job.job_type)

    async def cleanup_stale_jobs(self, stale_threshold_seconds: int = 600) -> int:
        """Return jobs locked longer than the threshold to the pending state.

        Returns:
            Number of jobs reset.
        """
        now = utcnow()
        threshold = now - timedelta(seconds=stale_threshold_seconds)
        stmt = (
            update(Job)
            .where(Job.status == JobStatus.RUNNING, Job.locked_at < threshold)
            .values(status=JobStatus.PENDING, locked_at=None, locked_by=None, run_at=now)
            .returning(Job.job_id)
            .execution_options(synchronize_session=False)
        )
        try:
            stale_job_ids = list((await self.session.execute(stmt)).scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to cleanup stale jobs: %s", str(e))
            raise JobQueueError(f"Failed to cleanup stale jobs: {e}") from e

        if stale_job_ids:
            logger.warning("Reset %d stale jobs: %s", len(stale_job_ids), stale_job_ids)
        return len(stale_job_ids)

    async def _require_job(self, job_id: uuid.UUID) -> Job:
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job


def _duration_ms(job: Job, now: datetime) -> int | None:
    if job.started_at is None:
        return None
    return int((now - job.started_at).total_seconds() * 1000)
