"""Tests for the execution run registry.

Tests cover:
- At most one running execution per policy
- Ownership claims and liveness takeover
- Ownership-conditional checkpoints and terminal transitions
- Cancellation requests and stale run discovery
"""

import uuid
from datetime import timedelta

import pytest

from purgecert.db.models.base import CertificateOutcome, RunStatus, RunTrigger, utcnow
from purgecert.services.audit_log import AuditEventType, AuditLogService
from purgecert.services.policies import PolicyStore
from purgecert.services.runs import (
    RunAlreadyActiveError,
    RunCounts,
    RunNotActiveError,
    RunNotFoundError,
    RunRegistry,
)
from tests.factories import make_policy_spec

LIVENESS = timedelta(minutes=15)


@pytest.fixture
async def policy(session, keyring):
    created = await PolicyStore(session, keyring).create_policy(
        make_policy_spec(), created_by="dpo"
    )
    await session.commit()
    return created


async def _start(session, keyring, policy, **kwargs):
    registry = RunRegistry(session, keyring)
    run = await registry.try_start_run(
        policy, trigger=RunTrigger.MANUAL, triggered_by="dpo", **kwargs
    )
    await session.commit()
    return registry, run


class TestRunCounts:
    """Tests for RunCounts."""

    def test_from_outcomes(self):
        counts = RunCounts.from_outcomes(
            {
                CertificateOutcome.EXECUTED: 3,
                CertificateOutcome.SKIPPED_HOLD: 1,
                CertificateOutcome.FAILED: 2,
            }
        )
        assert counts.evaluated == 6
        assert counts.not_eligible == 0
        assert counts.as_columns()["failed_count"] == 2

    def test_run_already_active_error(self):
        policy_id = uuid.uuid4()
        error = RunAlreadyActiveError(policy_id)
        assert error.policy_id == policy_id
        assert str(policy_id) in str(error)


class TestStartRun:
    """Tests for try_start_run."""

    @pytest.mark.asyncio
    async def test_start_pins_policy_version(self, session, keyring, policy):
        _, run = await _start(session, keyring, policy)

        assert run.status == RunStatus.RUNNING
        assert run.policy_id == policy.policy_id
        assert run.policy_version == 1
        assert run.policy_version_id == policy.policy_version_id
        assert run.counts == RunCounts()
        assert not run.is_terminal

        entries = await AuditLogService(session, keyring).list_entries(
            event_type=AuditEventType.EXECUTION_STARTED
        )
        assert entries[0].resource_id == str(run.run_id)
        assert entries[0].details["trigger"] == "manual"

    @pytest.mark.asyncio
    async def test_second_start_is_refused(self, session, keyring, policy):
        """Test a policy never has two running executions."""
        registry, first = await _start(session, keyring, policy)
        second = await registry.try_start_run(
            policy, trigger=RunTrigger.SCHEDULED, triggered_by="scheduler"
        )
        await session.commit()

        assert first is not None
        assert second is None
        assert len(await registry.list_runs(policy_id=policy.policy_id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_starts_from_two_sessions(
        self, session_factory, session, keyring, policy
    ):
        """Test two schedulers that both saw nothing running still start only one run.

        Nothing but the partial unique index stops the second insert: both
        sessions read an empty running set before either writes.
        """
        async with session_factory() as first, session_factory() as second:
            registry_a = RunRegistry(first, keyring)
            registry_b = RunRegistry(second, keyring)
            assert await registry_a.list_runs(status=RunStatus.RUNNING) == []
            assert await registry_b.list_runs(status=RunStatus.RUNNING) == []

            won = await registry_a.try_start_run(
                policy, trigger=RunTrigger.SCHEDULED, triggered_by="scheduler-a"
            )
            await first.commit()
            lost = await registry_b.try_start_run(
                policy, trigger=RunTrigger.SCHEDULED, triggered_by="scheduler-b"
            )
            await second.commit()

        assert won is not None
        assert lost is None
        running = await RunRegistry(session).list_runs(status=RunStatus.RUNNING)
        assert [run.run_id for run in running] == [won.run_id]
        started = await AuditLogService(session, keyring).list_entries(
            event_type=AuditEventType.EXECUTION_STARTED
        )
        assert [entry.actor for entry in started] == ["scheduler-a"]

    @pytest.mark.asyncio
    async def test_new_run_after_finish(self, session, keyring, policy):
        registry, first = await _start(session, keyring, policy)
        assert await registry.claim(first.run_id, "engine-a", liveness_timeout=LIVENESS)
        await registry.finish_run(first.run_id, "engine-a", RunStatus.COMPLETED, counts=RunCounts())
        await session.commit()

        second = await registry.try_start_run(
            policy, trigger=RunTrigger.SCHEDULED, triggered_by="scheduler"
        )
        await session.commit()

        assert second is not None
        assert second.run_id != first.run_id
        latest = await registry.latest_finished_run(policy.policy_id)
        assert latest.run_id == first.run_id

    @pytest.mark.asyncio
    async def test_unknown_run(self, session, keyring):
        with pytest.raises(RunNotFoundError):
            await RunRegistry(session, keyring).get_run(uuid.uuid4())


class TestOwnership:
    """Tests for claim, checkpoint and finish_run."""

    @pytest.mark.asyncio
    async def test_live_owner_blocks_other_engines(self, session, keyring, policy):
        registry, run = await _start(session, keyring, policy)

        assert await registry.claim(run.run_id, "engine-a", liveness_timeout=LIVENESS)
        assert await registry.claim(run.run_id, "engine-a", liveness_timeout=LIVENESS)
        assert not await registry.claim(run.run_id, "engine-b", liveness_timeout=LIVENESS)
        await session.commit()

        assert (await registry.get_run(run.run_id)).owner == "engine-a"

    @pytest.mark.asyncio
    async def test_stale_owner_can_be_replaced(self, session, keyring, policy):
        """Test a run whose heartbeat expired is claimable by another engine."""
        registry, run = await _start(session, keyring, policy)
        assert await registry.claim(run.run_id, "engine-a", liveness_timeout=LIVENESS)
        await session.commit()

        later = utcnow() + LIVENESS + timedelta(minutes=1)
        assert await registry.claim(run.run_id, "engine-b", liveness_timeout=LIVENESS, now=later)
        await session.commit()

        # The previous owner can no longer make progress
        assert not await registry.checkpoint(
            run.run_id, "engine-a", cursor="r-9", batches_completed=1, counts=RunCounts()
        )
        with pytest.raises(RunNotActiveError):
            await registry.finish_run(
                run.run_id, "engine-a", RunStatus.COMPLETED, counts=RunCounts()
            )

    @pytest.mark.asyncio
    async def test_checkpoint_persists_progress(self, session, keyring, policy):
        registry, run = await _start(session, keyring, policy)
        assert await registry.claim(run.run_id, "engine-a", liveness_timeout=LIVENESS)
        counts = RunCounts(evaluated=2, executed=2)

        assert await registry.checkpoint(
            run.run_id, "engine-a", cursor="r-002", batches_completed=1, counts=counts
        )
        await session.commit()

        stored = await registry.get_run(run.run_id)
        assert stored.cursor == "r-002"
        assert stored.batches_completed == 1
        assert stored.counts == counts

    @pytest.mark.asyncio
    async def test_finish_run(self, session, keyring, policy):
        registry, run = await _start(session, keyring, policy)
        assert await registry.claim(run.run_id, "engine-a", liveness_timeout=LIVENESS)

        finished = await registry.finish_run(
            run.run_id,
            "engine-a",
            RunStatus.FAILED,
            counts=RunCounts(),
            error_message="Record store unavailable: down",
        )
        await session.commit()

        assert finished.status == RunStatus.FAILED
        assert finished.ended_at is not None
        assert finished.error_message == "Record store unavailable: down"
        assert finished.is_terminal

        entries = await AuditLogService(session, keyring).list_entries(
            event_type=AuditEventType.EXECUTION_FINISHED
        )
        assert entries[0].details["status"] == "failed"

    @pytest.mark.asyncio
    async def test_finish_requires_terminal_status(self, session, keyring, policy):
        registry, run = await _start(session, keyring, policy)
        with pytest.raises(ValueError, match="terminal"):
            await registry.finish_run(run.run_id, "engine-a", RunStatus.RUNNING, counts=RunCounts())


class TestCancelAndRecovery:
    """Tests for request_cancel, find_stale_runs and last_run_ends."""

    @pytest.mark.asyncio
    async def test_request_cancel(self, session, keyring, policy):
        registry, run = await _start(session, keyring, policy)
        assert not await registry.is_cancel_requested(run.run_id)

        cancelled = await registry.request_cancel(run.run_id, requested_by="dpo")
        await session.commit()

        assert cancelled.cancel_requested_by == "dpo"
        assert cancelled.cancel_requested_at is not None
        # Still running until the engine observes it
        assert cancelled.status == RunStatus.RUNNING
        assert await registry.is_cancel_requested(run.run_id)

    @pytest.mark.asyncio
    async def test_cancel_finished_run(self, session, keyring, policy):
        registry, run = await _start(session, keyring, policy)
        assert await registry.claim(run.run_id, "engine-a", liveness_timeout=LIVENESS)
        await registry.finish_run(run.run_id, "engine-a", RunStatus.COMPLETED, counts=RunCounts())
        await session.commit()

        with pytest.raises(RunNotActiveError):
            await registry.request_cancel(run.run_id, requested_by="dpo")

    @pytest.mark.asyncio
    async def test_find_stale_runs(self, session, keyring, policy):
        registry, run = await _start(session, keyring, policy)

        assert await registry.find_stale_runs(liveness_timeout=LIVENESS) == []
        later = utcnow() + LIVENESS + timedelta(seconds=1)
        stale = await registry.find_stale_runs(liveness_timeout=LIVENESS, now=later)
        assert [r.run_id for r in stale] == [run.run_id]

    @pytest.mark.asyncio
    async def test_last_run_ends(self, session, keyring, policy):
        """Test a running run counts from its start and a finished one from its end."""
        start = utcnow() - timedelta(hours=30)
        registry, run = await _start(session, keyring, policy, now=start)

        assert await registry.last_run_ends() == {policy.policy_id: run.started_at}

        end = start + timedelta(hours=26)
        assert await registry.claim(run.run_id, "engine-a", liveness_timeout=LIVENESS, now=end)
        await registry.finish_run(
            run.run_id, "engine-a", RunStatus.COMPLETED, counts=RunCounts(), now=end
        )
        await session.commit()

        assert await registry.last_run_ends() == {policy.policy_id: end}
