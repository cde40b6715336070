"""Scheduling: due policies become runs, maintenance work becomes jobs.

Two kinds of periodic work are driven from the same timer loop:
- Policy executions. Each active policy carries a cadence; when a policy is
  due, a running ExecutionRun is inserted (the partial unique index on
  running runs makes that insert the mutual-exclusion point) and a
  policy_execute job is queued for the worker.
- Maintenance jobs on fixed intervals: abandoned-run recovery, risk
  assessment and full ledger verification.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from purgecert.db.models.base import RunTrigger, utcnow
from purgecert.services.cadence import InvalidCadenceError, due_at
from purgecert.services.job_queue import JobQueueService, JobType
from purgecert.services.policies import PolicyNotFoundError, PolicyStore
from purgecert.services.runs import RunAlreadyActiveError, RunRegistry

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from purgecert.core.config import SchedulerSettings
    from purgecert.services.policies import PolicyVersion
    from purgecert.services.runs import RunInfo
    from purgecert.services.signing import KeyRing

logger = logging.getLogger(__name__)

SCHEDULER_ACTOR = "scheduler"

# Executions outrank maintenance work in the queue
EXECUTION_JOB_PRIORITY = 50


@dataclass
class ScheduledJob:
    """A maintenance job enqueued on a fixed interval.

    Attributes:
        job_type: Type of job to schedule.
        interval: Time between job executions.
        payload: Job-specific payload data.
        queue: Queue to schedule the job on.
        priority: Job priority (lower = higher priority).
        enabled: Whether this scheduled job is active.
        last_scheduled: When the job was last scheduled.
    """

    job_type: str
    interval: timedelta
    payload: dict[str, Any] = field(default_factory=dict)
    queue: str = "default"
    priority: int = 100
    enabled: bool = True
    last_scheduled: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        if self.last_scheduled is None:
            return True
        return now >= self.last_scheduled + self.interval


def default_maintenance_schedules(settings: SchedulerSettings) -> list[ScheduledJob]:
    """Recovery, risk scan and chain verification at their configured intervals."""
    return [
        ScheduledJob(
            job_type=JobType.RUN_RECOVERY.value,
            interval=timedelta(minutes=settings.recovery_interval_minutes),
            priority=60,
        ),
        ScheduledJob(
            job_type=JobType.RISK_SCAN.value,
            interval=timedelta(minutes=settings.risk_scan_interval_minutes),
            priority=150,
        ),
        ScheduledJob(
            job_type=JobType.CHAIN_VERIFY.value,
            interval=timedelta(minutes=settings.chain_verify_interval_minutes),
            priority=200,
        ),
    ]


@dataclass(frozen=True, slots=True)
class TickResult:
    """What one scheduler tick did."""

    started_runs: list[uuid.UUID] = field(default_factory=list)
    skipped_policies: list[uuid.UUID] = field(default_factory=list)
    maintenance_jobs: list[str] = field(default_factory=list)


class PolicyScheduler:
    """Starts due policy runs and enqueues maintenance jobs.

    Safe to run in several processes at once: two ticks racing on the same
    policy both attempt the insert, and only one of them gets a run.

    Example:
        scheduler = PolicyScheduler(session, keyring)
        result = await scheduler.tick()
        await session.commit()
    """

    def __init__(
        self,
        session: AsyncSession,
        keyring: KeyRing,
        *,
        schedules: list[ScheduledJob] | None = None,
    ) -> None:
        self.session = session
        self._keyring = keyring
        self._schedules = schedules or []
        self._job_queue = JobQueueService(session)
        self._runs = RunRegistry(session, keyring)

    async def tick(self, now: datetime | None = None) -> TickResult:
        """Start a run for every due policy and enqueue due maintenance jobs."""
        now = now or utcnow()
        result = TickResult()

        policies = await PolicyStore(self.session, self._keyring).get_active_policies()
        last_ends = await self._runs.last_run_ends()

        for policy in policies:
            try:
                decision = due_at(policy.schedule, last_ends.get(policy.policy_id), now)
            except InvalidCadenceError as e:
                logger.error(
                    "Policy has an invalid schedule, skipping: policy_id=%s schedule=%r error=%s",
                    policy.policy_id,
                    policy.schedule,
                    e,
                )
                continue
            if not decision.is_due:
                continue

            run = await self._start(
                policy, trigger=RunTrigger.SCHEDULED, triggered_by=SCHEDULER_ACTOR, now=now
            )
            if run is None:
                result.skipped_policies.append(policy.policy_id)
            else:
                result.started_runs.append(run.run_id)

        for schedule in self._schedules:
            if not schedule.enabled or not schedule.is_due(now):
                continue
            if await self._job_queue.has_open_job(schedule.job_type, schedule.job_type):
                logger.debug(
                    "Skipping schedule - open job exists: job_type=%s", schedule.job_type
                )
                continue
            await self._job_queue.enqueue(
                job_type=schedule.job_type,
                payload=schedule.payload,
                queue=schedule.queue,
                priority=schedule.priority,
                correlation_id=schedule.job_type,
            )
            schedule.last_scheduled = now
            result.maintenance_jobs.append(schedule.job_type)

        if result.started_runs or result.maintenance_jobs:
            logger.info(
                "Scheduler tick: started_runs=%d skipped=%d maintenance=%s",
                len(result.started_runs),
                len(result.skipped_policies),
                result.maintenance_jobs,
            )
        return result

    async def trigger(self, policy_id: uuid.UUID, *, triggered_by: str) -> RunInfo:
        """Start a manual run of the active version of a policy.

        Raises:
            PolicyNotFoundError: If the policy has no active version.
            RunAlreadyActiveError: If the policy already has a running execution.
        """
        policy = await PolicyStore(self.session, self._keyring).get_active_version(policy_id)
        if policy is None:
            raise PolicyNotFoundError(f"No active policy: {policy_id}")

        run = await self._start(policy, trigger=RunTrigger.MANUAL, triggered_by=triggered_by)
        if run is None:
            raise RunAlreadyActiveError(policy_id)
        return run

    async def enqueue_execution(self, run_id: uuid.UUID, *, resumed: bool = False) -> uuid.UUID:
        """Queue a policy_execute job for an existing run."""
        return await self._job_queue.enqueue(
            job_type=JobType.POLICY_EXECUTE,
            payload={"run_id": str(run_id), "resumed": resumed},
            priority=EXECUTION_JOB_PRIORITY,
            correlation_id=str(run_id),
        )

    async def _start(
        self,
        policy: PolicyVersion,
        *,
        trigger: RunTrigger,
        triggered_by: str,
        now: datetime | None = None,
    ) -> RunInfo | None:
        run = await self._runs.try_start_run(
            policy, trigger=trigger, triggered_by=triggered_by, now=now
        )
        if run is not None:
            await self.enqueue_execution(run.run_id)
        return run


async def run_scheduler_loop(
    session_factory: async_sessionmaker[AsyncSession],
    keyring: KeyRing,
    schedules: list[ScheduledJob] | None = None,
    check_interval: float = 60.0,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Tick the scheduler every check_interval seconds until shutdown.

    Maintenance schedules are kept across ticks so their last_scheduled
    times persist for the lifetime of the loop.
    """
    if shutdown_event is None:
        shutdown_event = asyncio.Event()
    schedules = schedules or []

    logger.info(
        "Scheduler starting: check_interval=%ss, maintenance_schedules=%d",
        check_interval,
        len(schedules),
    )

    while not shutdown_event.is_set():
        try:
            async with session_factory() as session:
                scheduler = PolicyScheduler(session, keyring, schedules=schedules)
                await scheduler.tick()
                await session.commit()
        except Exception as e:
            logger.exception("Error in scheduler loop: %s", e)

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=check_interval)

    logger.info("Scheduler stopped")
