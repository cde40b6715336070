"""Execution run registry.

Runs are coordinated entirely through conditional SQL statements:
- starting a run is an INSERT guarded by the partial unique index on
  (policy_id) WHERE status = 'running'; losing the race is not an error
- ownership is a conditional UPDATE of (owner, heartbeat_at); a run whose
  heartbeat is older than the liveness timeout can be claimed by another
  engine instance and resumed from its cursor
- every checkpoint and the final transition are conditional on ownership,
  so an instance that lost its run cannot overwrite the new owner's state
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from purgecert.db.models.base import (
    TERMINAL_RUN_STATUSES,
    CertificateOutcome,
    RunStatus,
    RunTrigger,
    utcnow,
)
from purgecert.db.models.runs import ExecutionRun
from purgecert.services.audit_log import AuditEventType, AuditLogService

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from purgecert.services.policies import PolicyVersion
    from purgecert.services.signing import KeyRing

logger = logging.getLogger(__name__)


class RunError(Exception):
    """Base exception for run registry errors."""

    pass


class RunNotFoundError(RunError):
    """Raised when a requested run does not exist."""

    pass


class RunAlreadyActiveError(RunError):
    """Raised when a policy already has a running execution."""

    def __init__(self, policy_id: uuid.UUID) -> None:
        super().__init__(f"Policy {policy_id} already has a running execution")
        self.policy_id = policy_id


class RunNotActiveError(RunError):
    """Raised when an operation needs a running execution."""

    pass


@dataclass(frozen=True, slots=True)
class RunCounts:
    """Per-outcome progress counters of a run."""

    evaluated: int = 0
    executed: int = 0
    held: int = 0
    not_eligible: int = 0
    failed: int = 0

    @classmethod
    def from_outcomes(cls, outcomes: dict[CertificateOutcome, int]) -> RunCounts:
        executed = outcomes.get(CertificateOutcome.EXECUTED, 0)
        held = outcomes.get(CertificateOutcome.SKIPPED_HOLD, 0)
        not_eligible = outcomes.get(CertificateOutcome.SKIPPED_NOT_ELIGIBLE, 0)
        failed = outcomes.get(CertificateOutcome.FAILED, 0)
        return cls(
            evaluated=executed + held + not_eligible + failed,
            executed=executed,
            held=held,
            not_eligible=not_eligible,
            failed=failed,
        )

    def as_columns(self) -> dict[str, int]:
        return {
            "evaluated_count": self.evaluated,
            "executed_count": self.executed,
            "held_count": self.held,
            "not_eligible_count": self.not_eligible,
            "failed_count": self.failed,
        }


@dataclass(frozen=True, slots=True)
class RunInfo:
    """Detached view of an execution run."""

    run_id: uuid.UUID
    policy_id: uuid.UUID
    policy_version: int
    policy_version_id: uuid.UUID
    trigger: RunTrigger
    triggered_by: str
    status: RunStatus
    started_at: datetime
    ended_at: datetime | None
    counts: RunCounts
    cursor: str | None
    batches_completed: int
    owner: str | None
    heartbeat_at: datetime | None
    cancel_requested_at: datetime | None
    cancel_requested_by: str | None
    error_message: str | None

    @classmethod
    def from_model(cls, run: ExecutionRun) -> RunInfo:
        return cls(
            run_id=run.run_id,
            policy_id=run.policy_id,
            policy_version=run.policy_version,
            policy_version_id=run.policy_version_id,
            trigger=run.trigger,
            triggered_by=run.triggered_by,
            status=run.status,
            started_at=run.started_at,
            ended_at=run.ended_at,
            counts=RunCounts(
                evaluated=run.evaluated_count,
                executed=run.executed_count,
                held=run.held_count,
                not_eligible=run.not_eligible_count,
                failed=run.failed_count,
            ),
            cursor=run.cursor,
            batches_completed=run.batches_completed,
            owner=run.owner,
            heartbeat_at=run.heartbeat_at,
            cancel_requested_at=run.cancel_requested_at,
            cancel_requested_by=run.cancel_requested_by,
            error_message=run.error_message,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": str(self.run_id),
            "policy_id": str(self.policy_id),
            "policy_version": self.policy_version,
            "trigger": self.trigger.value,
            "triggered_by": self.triggered_by,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "counts": {
                "evaluated": self.counts.evaluated,
                "executed": self.counts.executed,
                "held": self.counts.held,
                "not_eligible": self.counts.not_eligible,
                "failed": self.counts.failed,
            },
            "batches_completed": self.batches_completed,
            "heartbeat_at": self.heartbeat_at.isoformat() if self.heartbeat_at else None,
            "cancel_requested_at": (
                self.cancel_requested_at.isoformat() if self.cancel_requested_at else None
            ),
            "cancel_requested_by": self.cancel_requested_by,
            "error_message": self.error_message,
        }


class RunRegistry:
    """Service for execution run state.

    Methods flush but never commit, except where noted.
    """

    def __init__(self, session: AsyncSession, keyring: KeyRing | None = None) -> None:
        self._session = session
        self._keyring = keyring

    async def _audit(
        self,
        event_type: AuditEventType,
        actor: str,
        run_id: uuid.UUID,
        **details: Any,
    ) -> None:
        if self._keyring is None:
            return
        await AuditLogService(self._session, self._keyring).record(
            event_type,
            actor=actor,
            resource_type="execution_run",
            resource_id=str(run_id),
            details=details,
        )

    async def try_start_run(
        self,
        policy: PolicyVersion,
        *,
        trigger: RunTrigger,
        triggered_by: str,
        now: datetime | None = None,
    ) -> RunInfo | None:
        """Atomically create a running execution for a policy version.

        Returns:
            The new run, or None if the policy already has a running
            execution (another scheduler instance won).
        """
        now = now or utcnow()
        run = ExecutionRun(
            run_id=uuid.uuid4(),
            policy_id=policy.policy_id,
            policy_version=policy.version,
            policy_version_id=policy.policy_version_id,
            trigger=trigger,
            triggered_by=triggered_by,
            status=RunStatus.RUNNING,
            started_at=now,
            heartbeat_at=now,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(run)
                await self._session.flush()
        except IntegrityError:
            logger.info(
                "Run not started, policy already running: policy_id=%s trigger=%s",
                policy.policy_id,
                trigger.value,
            )
            return None

        logger.info(
            "Run started: run_id=%s policy_id=%s version=%d trigger=%s",
            run.run_id,
            policy.policy_id,
            policy.version,
            trigger.value,
        )
        await self._audit(
            AuditEventType.EXECUTION_STARTED,
            triggered_by,
            run.run_id,
            policy_id=str(policy.policy_id),
            policy_version=policy.version,
            trigger=trigger.value,
        )
        return RunInfo.from_model(run)

    async def get_run(self, run_id: uuid.UUID) -> RunInfo:
        query = select(ExecutionRun).where(ExecutionRun.run_id == run_id)
        result = await self._session.execute(query.execution_options(populate_existing=True))
        run = result.scalar_one_or_none()
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return RunInfo.from_model(run)

    async def list_runs(
        self,
        *,
        policy_id: uuid.UUID | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[RunInfo]:
        query = select(ExecutionRun)
        if policy_id is not None:
            query = query.where(ExecutionRun.policy_id == policy_id)
        if status is not None:
            query = query.where(ExecutionRun.status == status)
        query = query.order_by(ExecutionRun.started_at.desc()).limit(limit).offset(offset)
        result = await self._session.execute(query.execution_options(populate_existing=True))
        return [RunInfo.from_model(run) for run in result.scalars().all()]

    async def claim(
        self,
        run_id: uuid.UUID,
        owner: str,
        *,
        liveness_timeout: timedelta,
        now: datetime | None = None,
    ) -> bool:
        """Take ownership of a running execution.

        Succeeds when the run is unowned, already owned by `owner`, or its
        owner stopped heartbeating for longer than liveness_timeout.
        """
        now = now or utcnow()
        result = await self._session.execute(
            update(ExecutionRun)
            .where(
                ExecutionRun.run_id == run_id,
                ExecutionRun.status == RunStatus.RUNNING,
                or_(
                    ExecutionRun.owner.is_(None),
                    ExecutionRun.owner == owner,
                    ExecutionRun.heartbeat_at.is_(None),
                    ExecutionRun.heartbeat_at < now - liveness_timeout,
                ),
            )
            .values(owner=owner, heartbeat_at=now)
            .execution_options(synchronize_session=False)
        )
        claimed = result.rowcount == 1
        if claimed:
            logger.debug("Run claimed: run_id=%s owner=%s", run_id, owner)
        return claimed

    async def checkpoint(
        self,
        run_id: uuid.UUID,
        owner: str,
        *,
        cursor: str | None,
        batches_completed: int,
        counts: RunCounts,
        now: datetime | None = None,
    ) -> bool:
        """Persist progress and refresh the heartbeat.

        Returns:
            False if the run is no longer owned by `owner`.
        """
        now = now or utcnow()
        result = await self._session.execute(
            update(ExecutionRun)
            .where(
                ExecutionRun.run_id == run_id,
                ExecutionRun.status == RunStatus.RUNNING,
                ExecutionRun.owner == owner,
            )
            .values(
                cursor=cursor,
                batches_completed=batches_completed,
                heartbeat_at=now,
                **counts.as_columns(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def finish_run(
        self,
        run_id: uuid.UUID,
        owner: str,
        status: RunStatus,
        *,
        counts: RunCounts,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> RunInfo:
        """Move a run to a terminal status.

        Raises:
            RunNotActiveError: If the run is not running or not owned by `owner`.
        """
        if status not in TERMINAL_RUN_STATUSES:
            msg = f"Not a terminal status: {status.value}"
            raise ValueError(msg)

        now = now or utcnow()
        result = await self._session.execute(
            update(ExecutionRun)
            .where(
                ExecutionRun.run_id == run_id,
                ExecutionRun.status == RunStatus.RUNNING,
                ExecutionRun.owner == owner,
            )
            .values(
                status=status,
                ended_at=now,
                heartbeat_at=now,
                error_message=error_message,
                **counts.as_columns(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            msg = f"Run {run_id} is not running under owner {owner}"
            raise RunNotActiveError(msg)

        run = await self.get_run(run_id)
        logger.info(
            "Run finished: run_id=%s status=%s evaluated=%d executed=%d held=%d "
            "not_eligible=%d failed=%d",
            run_id,
            status.value,
            counts.evaluated,
            counts.executed,
            counts.held,
            counts.not_eligible,
            counts.failed,
        )
        await self._audit(
            AuditEventType.EXECUTION_FINISHED,
            owner,
            run_id,
            status=status.value,
            counts=run.to_dict()["counts"],
            error_message=error_message,
        )
        return run

    async def request_cancel(self, run_id: uuid.UUID, *, requested_by: str) -> RunInfo:
        """Ask the owning engine to stop at its next batch boundary.

        Raises:
            RunNotFoundError: If the run does not exist.
            RunNotActiveError: If the run already finished.
        """
        run = await self.get_run(run_id)
        if run.status != RunStatus.RUNNING:
            msg = f"Run {run_id} is {run.status.value}, cannot cancel"
            raise RunNotActiveError(msg)

        now = utcnow()
        await self._session.execute(
            update(ExecutionRun)
            .where(
                ExecutionRun.run_id == run_id,
                ExecutionRun.cancel_requested_at.is_(None),
            )
            .values(cancel_requested_at=now, cancel_requested_by=requested_by)
            .execution_options(synchronize_session=False)
        )
        logger.info("Run cancellation requested: run_id=%s by=%s", run_id, requested_by)
        await self._audit(AuditEventType.EXECUTION_CANCEL_REQUESTED, requested_by, run_id)
        return await self.get_run(run_id)

    async def is_cancel_requested(self, run_id: uuid.UUID) -> bool:
        query = select(ExecutionRun.cancel_requested_at).where(ExecutionRun.run_id == run_id)
        result = await self._session.execute(query)
        return result.scalar_one_or_none() is not None

    async def find_stale_runs(
        self,
        *,
        liveness_timeout: timedelta,
        now: datetime | None = None,
    ) -> list[RunInfo]:
        """Running executions whose heartbeat is older than the liveness timeout."""
        now = now or utcnow()
        query = select(ExecutionRun).where(
            ExecutionRun.status == RunStatus.RUNNING,
            or_(
                ExecutionRun.heartbeat_at.is_(None),
                ExecutionRun.heartbeat_at < now - liveness_timeout,
            ),
        )
        result = await self._session.execute(query.execution_options(populate_existing=True))
        return [RunInfo.from_model(run) for run in result.scalars().all()]

    async def latest_finished_run(self, policy_id: uuid.UUID) -> RunInfo | None:
        query = (
            select(ExecutionRun)
            .where(
                ExecutionRun.policy_id == policy_id,
                ExecutionRun.status.in_(list(TERMINAL_RUN_STATUSES)),
            )
            .order_by(ExecutionRun.started_at.desc())
            .limit(1)
        )
        result = await self._session.execute(query.execution_options(populate_existing=True))
        run = result.scalar_one_or_none()
        return RunInfo.from_model(run) if run else None

    async def last_run_ends(self) -> dict[uuid.UUID, datetime]:
        """policy_id -> end time of its most recent run.

        A run still in progress counts from its start, so a policy is never
        due again while its previous run is running.
        """
        mark = func.coalesce(ExecutionRun.ended_at, ExecutionRun.started_at)
        query = select(ExecutionRun.policy_id, func.max(mark)).group_by(ExecutionRun.policy_id)
        result = await self._session.execute(query)
        return {policy_id: ended for policy_id, ended in result.all()}
