"""Tests for the database-backed job queue service.

Tests cover:
- Job enqueue with various parameters
- Claiming in priority order, only when due
- Job completion and failure handling
- Exponential backoff retry logic
- Dead letter handling (max_attempts exceeded) and manual retry
- Stale job cleanup and open-job deduplication
"""

import uuid
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import update

from purgecert.db.models.base import JobStatus, utcnow
from purgecert.db.models.jobs import Job
from purgecert.services.job_queue import (
    JobNotFoundError,
    JobQueueError,
    JobQueueService,
    JobType,
)


class TestJobQueueServiceInit:
    """Tests for JobQueueService initialization."""

    def test_init_with_defaults(self):
        """Test service initializes with default values."""
        session = MagicMock()
        service = JobQueueService(session)

        assert service.session is session
        assert service.default_queue == "default"
        assert service.default_max_attempts == 3
        assert service.default_lock_timeout == 300
        assert service.default_base_backoff == 60

    def test_job_types(self):
        assert JobType.POLICY_EXECUTE.value == "policy_execute"
        assert JobType("chain_verify") is JobType.CHAIN_VERIFY


class TestEnqueueAndClaim:
    """Tests for enqueue and claim_job."""

    @pytest.mark.asyncio
    async def test_enqueue_basic(self, session):
        service = JobQueueService(session)
        job_id = await service.enqueue(
            JobType.POLICY_EXECUTE,
            payload={"run_id": "abc"},
            correlation_id="abc",
        )
        await session.commit()

        job = await service.get_job(job_id)
        assert job.job_type == "policy_execute"
        assert job.status == JobStatus.PENDING
        assert job.payload_json == {"run_id": "abc"}
        assert job.queue == "default"
        assert job.priority == 100
        assert job.max_attempts == 3
        assert await service.get_pending_count() == 1
        assert await service.get_pending_count(job_type="risk_scan") == 0

    @pytest.mark.asyncio
    async def test_claim_marks_running(self, session):
        service = JobQueueService(session)
        job_id = await service.enqueue("risk_scan")
        await session.commit()

        job = await service.claim_job("worker-1")
        await session.commit()

        assert job.job_id == job_id
        assert job.status == JobStatus.RUNNING
        assert job.locked_by == "worker-1"
        assert job.attempts == 1
        assert job.started_at is not None
        assert await service.claim_job("worker-2") is None

    @pytest.mark.asyncio
    async def test_claim_respects_priority_and_run_at(self, session):
        """Test lower priority numbers run first and future jobs wait."""
        service = JobQueueService(session)
        await service.enqueue("chain_verify", priority=200)
        urgent = await service.enqueue("policy_execute", priority=50)
        await service.enqueue("risk_scan", priority=10, run_at=utcnow() + timedelta(hours=1))
        await session.commit()

        first = await service.claim_job("worker-1")
        second = await service.claim_job("worker-1")
        third = await service.claim_job("worker-1")

        assert first.job_id == urgent
        assert second.job_type == "chain_verify"
        assert third is None

    @pytest.mark.asyncio
    async def test_claim_filters_queue_and_type(self, session):
        service = JobQueueService(session)
        await service.enqueue("risk_scan", queue="maintenance")
        await service.enqueue("chain_verify")
        await session.commit()

        assert await service.claim_job("worker-1", job_types=["risk_scan"]) is None
        job = await service.claim_job("worker-1", queue="maintenance")
        assert job.job_type == "risk_scan"


class TestCompletionAndFailure:
    """Tests for complete_job, fail_job, cancel_job and retry_failed_job."""

    @pytest.mark.asyncio
    async def test_complete_job(self, session):
        service = JobQueueService(session)
        job_id = await service.enqueue("risk_scan")
        await service.claim_job("worker-1")

        await service.complete_job(job_id, {"findings": 0})
        await session.commit()

        job = await service.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result_json == {"findings": 0}
        assert job.locked_by is None
        assert job.duration_ms is not None

    @pytest.mark.asyncio
    async def test_fail_job_backs_off(self, session):
        """Test a failed attempt is rescheduled with exponential backoff."""
        service = JobQueueService(session)
        job_id = await service.enqueue("risk_scan")
        await service.claim_job("worker-1")
        before = utcnow()

        will_retry = await service.fail_job(job_id, "record store down")
        await session.commit()

        job = await service.get_job(job_id)
        assert will_retry
        assert job.status == JobStatus.PENDING
        assert job.last_error == "record store down"
        assert job.run_at >= before + timedelta(seconds=60)
        assert await service.claim_job("worker-1") is None

    @pytest.mark.asyncio
    async def test_dead_letter_and_retry(self, session):
        """Test the last allowed failure dead-letters the job until retried."""
        service = JobQueueService(session)
        job_id = await service.enqueue("chain_verify", max_attempts=1)
        await service.claim_job("worker-1")

        assert not await service.fail_job(job_id, "boom")
        await session.commit()

        failed = await service.get_failed_jobs()
        assert [job.job_id for job in failed] == [job_id]
        assert failed[0].status == JobStatus.FAILED

        await service.retry_failed_job(job_id)
        await session.commit()
        job = await service.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.last_error is None

        with pytest.raises(JobQueueError, match="Can only retry FAILED"):
            await service.retry_failed_job(job_id)

    @pytest.mark.asyncio
    async def test_cancel_job(self, session):
        service = JobQueueService(session)
        job_id = await service.enqueue("risk_scan")
        await service.cancel_job(job_id)
        await session.commit()

        assert (await service.get_job(job_id)).status == JobStatus.CANCELLED
        assert await service.claim_job("worker-1") is None

        done = await service.enqueue("risk_scan")
        await service.claim_job("worker-1")
        await service.complete_job(done)
        with pytest.raises(JobQueueError, match="Cannot cancel"):
            await service.cancel_job(done)

    @pytest.mark.asyncio
    async def test_unknown_job(self, session):
        service = JobQueueService(session)
        with pytest.raises(JobNotFoundError):
            await service.complete_job(uuid.uuid4())
        with pytest.raises(JobNotFoundError):
            await service.fail_job(uuid.uuid4(), "error")


class TestMaintenance:
    """Tests for stale job cleanup and open-job checks."""

    @pytest.mark.asyncio
    async def test_cleanup_stale_jobs(self, session):
        service = JobQueueService(session)
        job_id = await service.enqueue("policy_execute")
        await service.claim_job("worker-1")
        await session.commit()

        assert await service.cleanup_stale_jobs(stale_threshold_seconds=600) == 0

        await session.execute(
            update(Job)
            .where(Job.job_id == job_id)
            .values(locked_at=utcnow() - timedelta(hours=1))
        )
        assert await service.cleanup_stale_jobs(stale_threshold_seconds=600) == 1
        await session.commit()

        job = await service.get_job(job_id)
        await session.refresh(job)
        assert job.status == JobStatus.PENDING
        assert job.locked_by is None

    @pytest.mark.asyncio
    async def test_has_open_job(self, session):
        service = JobQueueService(session)
        run_id = str(uuid.uuid4())
        assert not await service.has_open_job(JobType.POLICY_EXECUTE, run_id)

        job_id = await service.enqueue(JobType.POLICY_EXECUTE, correlation_id=run_id)
        assert await service.has_open_job(JobType.POLICY_EXECUTE, run_id)
        assert not await service.has_open_job(JobType.RISK_SCAN, run_id)

        await service.claim_job("worker-1")
        await service.complete_job(job_id)
        assert not await service.has_open_job("policy_execute", run_id)
