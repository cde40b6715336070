"""Tests for the purgecert background worker.

Tests cover:
- Worker configuration and handler registration
- Job processing flow, failures and retries
- The default handlers: execution, recovery, risk scan, chain verification
"""

from __future__ import annotations

import contextlib
from datetime import timedelta

import pytest
from sqlalchemy import update

from purgecert.core.config import RiskSettings
from purgecert.db.models import ExecutionRun, LedgerEntry
from purgecert.db.models.base import JobStatus, LedgerStream, RunStatus, RunTrigger, utcnow
from purgecert.services.audit_log import AuditEventType, AuditLogService
from purgecert.services.job_queue import JobQueueService, JobType
from purgecert.services.ledger import HashChainLedger
from purgecert.services.policies import PolicyStore
from purgecert.services.runs import RunRegistry
from purgecert.worker.handlers import HandlerContext
from purgecert.worker.main import Worker, WorkerConfig, register_default_handlers
from purgecert.worker.scheduler import PolicyScheduler
from tests.factories import make_policy_spec, make_record


@pytest.fixture
def worker(session_factory) -> Worker:
    return Worker(WorkerConfig(worker_id="worker-test"), session_factory)


@pytest.fixture
def handler_context(session_factory, keyring, record_store, execution_config) -> HandlerContext:
    return HandlerContext(
        session_factory=session_factory,
        keyring=keyring,
        record_store_factory=lambda: contextlib.nullcontext(record_store),
        execution=execution_config,
        risk=RiskSettings(),
        issuer="purgecert-test",
    )


@pytest.fixture
def worker_with_handlers(worker, handler_context) -> Worker:
    register_default_handlers(worker, handler_context)
    return worker


async def enqueue(session, job_type, payload=None, **kwargs):
    job_id = await JobQueueService(session).enqueue(job_type, payload=payload, **kwargs)
    await session.commit()
    return job_id


async def job_status(session_factory, job_id):
    async with session_factory() as session:
        return await JobQueueService(session).get_job(job_id)


class TestWorkerConfig:
    """Tests for WorkerConfig."""

    def test_defaults(self):
        config = WorkerConfig()

        assert config.worker_id.startswith("worker-")
        assert config.poll_interval == 1.0
        assert config.queues == ["default"]
        assert config.job_types == []
        assert WorkerConfig().worker_id != config.worker_id

    def test_from_settings(self, settings):
        config = WorkerConfig.from_settings(settings)
        assert config.stale_job_threshold_seconds == settings.execution.liveness_timeout_seconds


class TestWorkerProcessing:
    """Tests for Worker.process_next."""

    def test_register_handler(self, worker):
        async def my_handler(session, job):
            return {"done": True}

        worker.register_handler(JobType.RISK_SCAN, my_handler)
        worker.register_handler("custom_job", my_handler)

        assert worker._handlers["risk_scan"] is my_handler
        assert worker._handlers["custom_job"] is my_handler

    @pytest.mark.asyncio
    async def test_empty_queue(self, worker):
        assert not await worker.process_next()
        assert worker.jobs_processed == 0

    @pytest.mark.asyncio
    async def test_successful_job(self, session, session_factory, worker):
        calls = []

        async def handler(session, job):
            calls.append(job.payload_json)
            return {"ok": True}

        worker.register_handler("custom_job", handler)
        job_id = await enqueue(session, "custom_job", {"n": 1})

        assert await worker.process_next()

        job = await job_status(session_factory, job_id)
        assert calls == [{"n": 1}]
        assert job.status == JobStatus.COMPLETED
        assert job.result_json == {"ok": True}
        assert worker.jobs_processed == 1

    @pytest.mark.asyncio
    async def test_failing_job_is_retried(self, session, session_factory, worker):
        async def handler(session, job):
            raise RuntimeError("record store exploded")

        worker.register_handler("custom_job", handler)
        job_id = await enqueue(session, "custom_job")

        assert await worker.process_next()

        job = await job_status(session_factory, job_id)
        assert job.status == JobStatus.PENDING
        assert job.last_error == "record store exploded"
        assert job.run_at > utcnow()
        assert worker.jobs_failed == 0

    @pytest.mark.asyncio
    async def test_last_attempt_dead_letters(self, session, session_factory, worker):
        async def handler(session, job):
            raise RuntimeError("still broken")

        worker.register_handler("custom_job", handler)
        job_id = await enqueue(session, "custom_job", max_attempts=1)

        assert await worker.process_next()

        assert (await job_status(session_factory, job_id)).status == JobStatus.FAILED
        assert worker.jobs_failed == 1

    @pytest.mark.asyncio
    async def test_missing_handler(self, session, session_factory, worker):
        job_id = await enqueue(session, "unknown_job")

        assert await worker.process_next()

        job = await job_status(session_factory, job_id)
        assert "No handler registered" in job.last_error
        assert worker.jobs_failed == 1


class TestDefaultHandlers:
    """Tests for the handlers registered by register_default_handlers."""

    def test_all_job_types_registered(self, worker_with_handlers):
        assert set(worker_with_handlers._handlers) == {job_type.value for job_type in JobType}

    @pytest.mark.asyncio
    async def test_triggered_run_executes(
        self, session, session_factory, keyring, record_store, worker_with_handlers
    ):
        """Test a manual trigger is picked up by the worker and driven to completion."""
        record_store.add(make_record("r-001", days_old=120))
        record_store.add(make_record("r-002", days_old=10))
        policy = await PolicyStore(session, keyring).create_policy(
            make_policy_spec(), created_by="dpo"
        )
        run = await PolicyScheduler(session, keyring).trigger(
            policy.policy_id, triggered_by="dpo"
        )
        await session.commit()

        assert await worker_with_handlers.process_next()

        finished = await RunRegistry(session).get_run(run.run_id)
        assert finished.status == RunStatus.COMPLETED
        assert finished.owner == "worker-test"
        assert finished.counts.executed == 1
        assert record_store.applied_ids() == ["r-001"]

        jobs = await JobQueueService(session).get_pending_count()
        assert jobs == 0

    @pytest.mark.asyncio
    async def test_execution_job_requires_run_id(
        self, session, session_factory, worker_with_handlers
    ):
        job_id = await enqueue(session, JobType.POLICY_EXECUTE, {}, max_attempts=1)

        assert await worker_with_handlers.process_next()

        job = await job_status(session_factory, job_id)
        assert job.status == JobStatus.FAILED
        assert "requires run_id" in job.last_error

    @pytest.mark.asyncio
    async def test_recovery_requeues_stale_runs(
        self, session, session_factory, keyring, worker_with_handlers
    ):
        policy = await PolicyStore(session, keyring).create_policy(
            make_policy_spec(), created_by="dpo"
        )
        run = await RunRegistry(session, keyring).try_start_run(
            policy, trigger=RunTrigger.MANUAL, triggered_by="dpo"
        )
        await session.execute(
            update(ExecutionRun)
            .where(ExecutionRun.run_id == run.run_id)
            .values(owner="worker-dead", heartbeat_at=utcnow() - timedelta(hours=1))
        )
        await session.commit()

        job_id = await enqueue(session, JobType.RUN_RECOVERY)
        assert await worker_with_handlers.process_next()

        job = await job_status(session_factory, job_id)
        assert job.result_json == {"stale_runs": 1, "requeued": [str(run.run_id)]}
        assert await JobQueueService(session).has_open_job(
            JobType.POLICY_EXECUTE, str(run.run_id)
        )

        # A second recovery pass does not queue the same run twice
        second = await enqueue(session, JobType.RUN_RECOVERY, priority=1)
        assert await worker_with_handlers.process_next()
        assert (await job_status(session_factory, second)).result_json["requeued"] == []

    @pytest.mark.asyncio
    async def test_resumed_execution_job(
        self, session, session_factory, keyring, record_store, worker_with_handlers
    ):
        """Test a requeued run is resumed by the worker."""
        record_store.add(make_record("r-001", days_old=120))
        policy = await PolicyStore(session, keyring).create_policy(
            make_policy_spec(), created_by="dpo"
        )
        run = await RunRegistry(session, keyring).try_start_run(
            policy, trigger=RunTrigger.MANUAL, triggered_by="dpo"
        )
        await session.execute(
            update(ExecutionRun)
            .where(ExecutionRun.run_id == run.run_id)
            .values(owner="worker-dead", heartbeat_at=utcnow() - timedelta(hours=1))
        )
        await session.commit()
        job_id = await enqueue(
            session, JobType.POLICY_EXECUTE, {"run_id": str(run.run_id), "resumed": True}
        )

        assert await worker_with_handlers.process_next()

        job = await job_status(session_factory, job_id)
        assert job.result_json["resumed"] is True
        assert job.result_json["status"] == "completed"
        resumed = await AuditLogService(session, keyring).list_entries(
            event_type=AuditEventType.EXECUTION_RESUMED
        )
        assert resumed[0].actor == "worker-test"

    @pytest.mark.asyncio
    async def test_risk_scan(self, session, session_factory, keyring, worker_with_handlers):
        await PolicyStore(session, keyring).create_policy(make_policy_spec(), created_by="dpo")
        await session.commit()
        job_id = await enqueue(session, JobType.RISK_SCAN)

        assert await worker_with_handlers.process_next()

        result = (await job_status(session_factory, job_id)).result_json
        assert result["compliance_status"] == "compliant"
        assert result["policies_assessed"] == 1
        assert result["errors"] is None

    @pytest.mark.asyncio
    async def test_chain_verify_records_violation(
        self, session, session_factory, keyring, worker_with_handlers
    ):
        """Test a broken stream is reported and recorded on the audit stream."""
        ledger = HashChainLedger(session, keyring)
        entry = await ledger.append(LedgerStream.CERTIFICATES, "deletion_certificate", {"n": 1})
        await session.commit()
        await session.execute(
            update(LedgerEntry)
            .where(LedgerEntry.entry_id == entry.entry_id)
            .values(content=entry.content.replace('"n":1', '"n":2'))
        )
        await session.commit()

        job_id = await enqueue(session, JobType.CHAIN_VERIFY)
        assert await worker_with_handlers.process_next()

        result = (await job_status(session_factory, job_id)).result_json
        assert result["all_valid"] is False
        assert result["streams"]["certificates"]["first_invalid_seq_no"] == 1
        assert result["streams"]["audit"]["valid"] is True

        violations = await AuditLogService(session, keyring).list_entries(
            event_type=AuditEventType.CHAIN_VERIFICATION_FAILED
        )
        assert violations[0].resource_id == "certificates"
        assert violations[0].actor == "worker:worker-test"
