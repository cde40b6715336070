"""Execution engine: applies a policy version to its records, one run at a time.

Per run:
    claim the run (owner + heartbeat)
    repeat, one window of up to max_concurrent_batches pages at a time:
        observe cancellation (window boundary only)
        scan the next pages from the record store (retried, timeout-bounded)
        process the pages concurrently, records within a page in order
        checkpoint cursor, counters and heartbeat
    finish: completed, partially_completed or failed

A run fails when a scan cannot be served, when every record processed in a
window failed because the store was unreachable, or when a page raises an
unexpected error (sibling pages are cancelled first).

Per record:
    0. certificate already issued for (run, record)  -> skip (replay)
    1. re-read the record from the store
    2. covered by an active legal hold               -> skipped_hold
    3. no longer eligible under the policy            -> skipped_not_eligible
    4. apply the action, retried with capped exponential backoff
                                                      -> executed | failed

No database transaction is held open across a record-store call. Replaying
a run after a crash re-scans from the last checkpoint; step 0 makes the
replay produce exactly the certificates an uninterrupted run would have.

The hold check and the action are not atomic with respect to hold creation:
a hold created between steps 2 and 4 is not observed for that record.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from purgecert.db.models.base import CertificateOutcome, RunStatus, utcnow
from purgecert.services.audit_log import AuditEventType, AuditLogService
from purgecert.services.certification import CertificationService
from purgecert.services.legal_holds import LegalHoldRegistry
from purgecert.services.policies import PolicyNotFoundError, PolicyStore, is_eligible
from purgecert.services.record_store import RecordStoreError, RecordStoreUnavailable
from purgecert.services.runs import RunCounts, RunRegistry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from purgecert.core.config import ExecutionSettings
    from purgecert.db.models.base import DeletionAction
    from purgecert.services.policies import PolicyVersion
    from purgecert.services.record_store import Record, RecordRef, RecordStore, ScanPage, ScanScope
    from purgecert.services.runs import RunInfo
    from purgecert.services.signing import KeyRing

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionConfig:
    """Limits applied by the execution engine."""

    batch_size: int = 100
    max_concurrent_batches: int = 4
    max_action_attempts: int = 3
    base_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    action_timeout_seconds: float = 30.0
    scan_timeout_seconds: float = 60.0
    max_scan_attempts: int = 3
    liveness_timeout_seconds: int = 900

    @classmethod
    def from_settings(cls, settings: ExecutionSettings) -> ExecutionConfig:
        return cls(
            batch_size=settings.batch_size,
            max_concurrent_batches=settings.max_concurrent_batches,
            max_action_attempts=settings.max_action_attempts,
            base_backoff_seconds=settings.base_backoff_seconds,
            max_backoff_seconds=settings.max_backoff_seconds,
            action_timeout_seconds=settings.action_timeout_seconds,
            scan_timeout_seconds=settings.scan_timeout_seconds,
            max_scan_attempts=settings.max_scan_attempts,
            liveness_timeout_seconds=settings.liveness_timeout_seconds,
        )

    @property
    def liveness_timeout(self) -> timedelta:
        return timedelta(seconds=self.liveness_timeout_seconds)

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` + 1."""
        return min(self.base_backoff_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds)


@dataclass(frozen=True, slots=True)
class RunSummary:
    """Final state of an execution as seen by the engine that drove it."""

    run_id: uuid.UUID
    policy_id: uuid.UUID
    status: RunStatus
    counts: RunCounts
    batches_completed: int
    cancelled: bool
    resumed: bool
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": str(self.run_id),
            "policy_id": str(self.policy_id),
            "status": self.status.value,
            "evaluated": self.counts.evaluated,
            "executed": self.counts.executed,
            "held": self.counts.held,
            "not_eligible": self.counts.not_eligible,
            "failed": self.counts.failed,
            "batches_completed": self.batches_completed,
            "cancelled": self.cancelled,
            "resumed": self.resumed,
            "error_message": self.error_message,
        }


@dataclass(frozen=True, slots=True)
class _ActionAttempts:
    succeeded: bool
    attempts: int
    detail: str | None
    # Last failure was the store not answering (outage or timeout)
    unreachable: bool = False


@dataclass(frozen=True, slots=True)
class _RecordResult:
    outcome: CertificateOutcome
    unreachable: bool = False
    replayed: bool = False
    detail: str | None = None


def _first_leaf(error: BaseException) -> BaseException:
    while isinstance(error, BaseExceptionGroup):
        error = error.exceptions[0]
    return error


class ExecutionEngine:
    """Drives execution runs against a record store.

    Each concurrent page gets its own session; sessions are short-lived and
    committed per record so certificates become durable as they are issued.
    Certificate issuance is serialized within an engine so its pages never
    race each other for the ledger head.

    Example:
        engine = ExecutionEngine(session_factory, record_store, keyring)
        summary = await engine.execute_run(run_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        record_store: RecordStore,
        keyring: KeyRing,
        *,
        config: ExecutionConfig | None = None,
        owner: str | None = None,
        issuer: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._record_store = record_store
        self._keyring = keyring
        self._config = config or ExecutionConfig()
        self._owner = owner or f"engine-{uuid.uuid4().hex[:8]}"
        self._issuer = issuer
        self._sleep = sleep
        self._issue_lock = asyncio.Lock()

    @property
    def owner(self) -> str:
        return self._owner

    async def execute_run(self, run_id: uuid.UUID, *, resumed: bool = False) -> RunSummary | None:
        """Drive a run to a terminal status.

        Returns:
            The run summary, or None if the run could not be claimed (it
            finished, or another live engine owns it) or ownership was lost
            midway.
        """
        async with self._session_factory() as session:
            registry = RunRegistry(session, self._keyring)
            claimed = await registry.claim(
                run_id,
                self._owner,
                liveness_timeout=self._config.liveness_timeout,
            )
            if not claimed:
                await session.rollback()
                logger.info("Run not claimable, skipping: run_id=%s owner=%s", run_id, self._owner)
                return None

            run = await registry.get_run(run_id)
            if resumed or run.batches_completed > 0:
                resumed = True
                await AuditLogService(session, self._keyring).record(
                    AuditEventType.EXECUTION_RESUMED,
                    actor=self._owner,
                    resource_type="execution_run",
                    resource_id=str(run_id),
                    details={"cursor": run.cursor, "batches_completed": run.batches_completed},
                )
            try:
                policy = await PolicyStore(session, self._keyring).get_policy_version(
                    run.policy_id, run.policy_version
                )
            except PolicyNotFoundError as e:
                summary = await self._finish(
                    session, run, RunStatus.FAILED, cancelled=False, resumed=resumed, error=str(e)
                )
                await session.commit()
                return summary
            await session.commit()

        logger.info(
            "Executing run: run_id=%s policy_id=%s version=%d action=%s resumed=%s cursor=%s",
            run.run_id,
            policy.policy_id,
            policy.version,
            policy.action.value,
            resumed,
            run.cursor,
        )

        as_of = run.started_at
        scope = policy.scan_scope(as_of)
        page_size = policy.batch_size or self._config.batch_size
        cursor = run.cursor
        batches_completed = run.batches_completed
        cancelled = False

        while True:
            async with self._session_factory() as session:
                if await RunRegistry(session).is_cancel_requested(run.run_id):
                    cancelled = True
                    logger.info("Run cancellation observed: run_id=%s", run.run_id)
                    break

            pages: list[ScanPage] = []
            exhausted = False
            try:
                for _ in range(self._config.max_concurrent_batches):
                    page = await self._scan(scope, cursor, page_size)
                    pages.append(page)
                    cursor = page.next_cursor
                    if cursor is None:
                        exhausted = True
                        break
            except RecordStoreError as e:
                logger.error("Scan failed, failing run: run_id=%s error=%s", run.run_id, e)
                prefix = (
                    "Record store unavailable"
                    if isinstance(e, RecordStoreUnavailable)
                    else "Record store error"
                )
                return await self._fail(
                    run, resumed, f"{prefix}: {e}", batches_completed=batches_completed
                )

            try:
                async with asyncio.TaskGroup() as group:
                    tasks = [
                        group.create_task(self._process_page(run, policy, page, as_of))
                        for page in pages
                    ]
            except BaseExceptionGroup as group_error:
                error = _first_leaf(group_error)
                if not isinstance(error, Exception):
                    # Process is going down, leave the run for liveness recovery
                    raise error from group_error
                logger.error(
                    "Unexpected error while processing pages, failing run: run_id=%s",
                    run.run_id,
                    exc_info=error,
                )
                return await self._fail(
                    run,
                    resumed,
                    f"Unexpected error: {type(error).__name__}: {error}",
                    batches_completed=batches_completed,
                )
            batches_completed += len(pages)

            fresh = [result for task in tasks for result in task.result() if not result.replayed]
            if fresh and all(result.unreachable for result in fresh):
                logger.error(
                    "Record store unreachable for a whole window, failing run: "
                    "run_id=%s records=%d",
                    run.run_id,
                    len(fresh),
                )
                return await self._fail(
                    run,
                    resumed,
                    f"Record store unavailable: {fresh[-1].detail}",
                    batches_completed=batches_completed,
                )

            async with self._session_factory() as session:
                counts = await self._counts(session, run.run_id)
                still_owner = await RunRegistry(session).checkpoint(
                    run.run_id,
                    self._owner,
                    cursor=cursor,
                    batches_completed=batches_completed,
                    counts=counts,
                )
                await session.commit()
            if not still_owner:
                logger.warning(
                    "Run ownership lost, stopping: run_id=%s owner=%s", run.run_id, self._owner
                )
                return None

            logger.debug(
                "Run checkpoint: run_id=%s batches=%d evaluated=%d cursor=%s",
                run.run_id,
                batches_completed,
                counts.evaluated,
                cursor,
            )
            if exhausted:
                break

        async with self._session_factory() as session:
            counts = await self._counts(session, run.run_id)
            status = (
                RunStatus.PARTIALLY_COMPLETED
                if cancelled or counts.failed > 0
                else RunStatus.COMPLETED
            )
            summary = await self._finish(
                session,
                run,
                status,
                cancelled=cancelled,
                resumed=resumed,
                counts=counts,
                batches_completed=batches_completed,
            )
            await session.commit()
        return summary

    async def recover_stale_runs(self, now: datetime | None = None) -> list[RunSummary]:
        """Resume every running execution whose heartbeat is stale."""
        async with self._session_factory() as session:
            stale = await RunRegistry(session).find_stale_runs(
                liveness_timeout=self._config.liveness_timeout,
                now=now,
            )

        summaries = []
        for run in stale:
            logger.warning(
                "Recovering stale run: run_id=%s policy_id=%s last_heartbeat=%s owner=%s",
                run.run_id,
                run.policy_id,
                run.heartbeat_at,
                run.owner,
            )
            summary = await self.execute_run(run.run_id, resumed=True)
            if summary is not None:
                summaries.append(summary)
        return summaries

    async def _fail(
        self,
        run: RunInfo,
        resumed: bool,
        error: str,
        *,
        batches_completed: int,
    ) -> RunSummary:
        async with self._session_factory() as session:
            summary = await self._finish(
                session,
                run,
                RunStatus.FAILED,
                cancelled=False,
                resumed=resumed,
                error=error,
                batches_completed=batches_completed,
            )
            await session.commit()
        return summary

    async def _finish(
        self,
        session: AsyncSession,
        run: RunInfo,
        status: RunStatus,
        *,
        cancelled: bool,
        resumed: bool,
        error: str | None = None,
        counts: RunCounts | None = None,
        batches_completed: int | None = None,
    ) -> RunSummary:
        if counts is None:
            counts = await self._counts(session, run.run_id)
        finished = await RunRegistry(session, self._keyring).finish_run(
            run.run_id,
            self._owner,
            status,
            counts=counts,
            error_message=error,
        )
        return RunSummary(
            run_id=run.run_id,
            policy_id=run.policy_id,
            status=finished.status,
            counts=counts,
            batches_completed=(
                batches_completed if batches_completed is not None else finished.batches_completed
            ),
            cancelled=cancelled,
            resumed=resumed,
            error_message=error,
        )

    async def _counts(self, session: AsyncSession, run_id: uuid.UUID) -> RunCounts:
        outcomes = await CertificationService(session, self._keyring).count_outcomes(run_id)
        return RunCounts.from_outcomes(outcomes)

    async def _scan(self, scope: ScanScope, cursor: str | None, limit: int) -> ScanPage:
        """One scan call, retried with backoff.

        Raises:
            RecordStoreUnavailable: When every attempt failed and the last one
                because the store did not answer.
            RecordStoreError: When the last attempt got an unusable answer.
        """
        last_error: RecordStoreError = RecordStoreUnavailable("no scan attempted")
        for attempt in range(1, self._config.max_scan_attempts + 1):
            try:
                return await asyncio.wait_for(
                    self._record_store.scan(scope, cursor, limit),
                    timeout=self._config.scan_timeout_seconds,
                )
            except TimeoutError:
                last_error = RecordStoreUnavailable(
                    f"scan timed out after {self._config.scan_timeout_seconds}s"
                )
            except RecordStoreError as e:
                last_error = e
            logger.warning(
                "Scan failed: entity_type=%s attempt=%d/%d error=%s",
                scope.entity_type,
                attempt,
                self._config.max_scan_attempts,
                last_error,
            )
            if attempt < self._config.max_scan_attempts:
                await self._sleep(self._config.backoff(attempt))
        if isinstance(last_error, RecordStoreUnavailable):
            raise RecordStoreUnavailable(str(last_error))
        raise RecordStoreError(str(last_error))

    async def _get(self, ref: RecordRef) -> Record | None:
        """Re-read one record, retried like a scan (same error contract)."""
        last_error: RecordStoreError = RecordStoreUnavailable("no lookup attempted")
        for attempt in range(1, self._config.max_scan_attempts + 1):
            try:
                return await asyncio.wait_for(
                    self._record_store.get(ref),
                    timeout=self._config.action_timeout_seconds,
                )
            except TimeoutError:
                last_error = RecordStoreUnavailable(
                    f"lookup timed out after {self._config.action_timeout_seconds}s"
                )
            except RecordStoreError as e:
                last_error = e
            if attempt < self._config.max_scan_attempts:
                await self._sleep(self._config.backoff(attempt))
        if isinstance(last_error, RecordStoreUnavailable):
            raise RecordStoreUnavailable(str(last_error))
        raise RecordStoreError(str(last_error))

    async def _apply(self, ref: RecordRef, action: DeletionAction) -> _ActionAttempts:
        """Apply the action with retries.

        A result with success=False is a rejection and is retried like an
        ActionFailure.
        """
        last_error = ""
        unreachable = False
        max_attempts = self._config.max_action_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                result = await asyncio.wait_for(
                    self._record_store.apply_action(ref, action),
                    timeout=self._config.action_timeout_seconds,
                )
            except TimeoutError:
                last_error = f"action timed out after {self._config.action_timeout_seconds}s"
                unreachable = True
            except RecordStoreError as e:
                last_error = str(e)
                unreachable = isinstance(e, RecordStoreUnavailable)
            else:
                if result.success:
                    return _ActionAttempts(succeeded=True, attempts=attempt, detail=result.detail)
                last_error = result.detail or "rejected by record store"
                unreachable = False
            logger.warning(
                "Action failed: record=%s action=%s attempt=%d/%d error=%s",
                ref,
                action.value,
                attempt,
                max_attempts,
                last_error,
            )
            if attempt < max_attempts:
                await self._sleep(self._config.backoff(attempt))
        return _ActionAttempts(
            succeeded=False, attempts=max_attempts, detail=last_error, unreachable=unreachable
        )

    async def _issue(
        self,
        run: RunInfo,
        policy: PolicyVersion,
        ref: RecordRef,
        outcome: CertificateOutcome,
        *,
        attempts: int = 0,
        detail: str | None = None,
    ) -> None:
        async with self._issue_lock, self._session_factory() as session:
            service = CertificationService(session, self._keyring, issuer=self._issuer)
            await service.issue_certificate(
                run.run_id,
                policy,
                ref,
                outcome,
                attempts=attempts,
                detail=detail,
            )
            await session.commit()

    async def _process_page(
        self,
        run: RunInfo,
        policy: PolicyVersion,
        page: ScanPage,
        as_of: datetime,
    ) -> list[_RecordResult]:
        results = []
        for record in page.records:
            # Scan filters are hints; only records eligible at run start are evaluated
            if not is_eligible(policy, record, as_of):
                continue
            results.append(await self._process_record(run, policy, record, as_of))
        return results

    async def _process_record(
        self,
        run: RunInfo,
        policy: PolicyVersion,
        record: Record,
        as_of: datetime,
    ) -> _RecordResult:
        ref = record.ref

        async with self._session_factory() as session:
            existing = await CertificationService(session, self._keyring).find_for_record(
                run.run_id, ref
            )
        if existing is not None:
            return _RecordResult(existing.outcome, replayed=True)

        try:
            current = await self._get(ref)
        except RecordStoreError as e:
            detail = f"Could not re-read record: {e}"
            await self._issue(run, policy, ref, CertificateOutcome.FAILED, detail=detail)
            return _RecordResult(
                CertificateOutcome.FAILED,
                unreachable=isinstance(e, RecordStoreUnavailable),
                detail=str(e),
            )

        attributes = current.attributes if current is not None else record.attributes
        async with self._session_factory() as session:
            holds = await LegalHoldRegistry(session).find_matching_holds(
                ref,
                utcnow(),
                policy_id=policy.policy_id,
                attributes=attributes,
            )
        if holds:
            hold_ids = ", ".join(str(hold.hold_id) for hold in holds)
            logger.info("Record under legal hold, skipping: record=%s holds=%s", ref, hold_ids)
            await self._issue(
                run,
                policy,
                ref,
                CertificateOutcome.SKIPPED_HOLD,
                detail=f"Legal hold: {hold_ids}",
            )
            return _RecordResult(CertificateOutcome.SKIPPED_HOLD)

        if current is None or not is_eligible(policy, current, as_of):
            detail = "Record no longer exists" if current is None else "Record no longer eligible"
            logger.info("Record not eligible at action time: record=%s reason=%s", ref, detail)
            await self._issue(
                run,
                policy,
                ref,
                CertificateOutcome.SKIPPED_NOT_ELIGIBLE,
                detail=detail,
            )
            return _RecordResult(CertificateOutcome.SKIPPED_NOT_ELIGIBLE)

        applied = await self._apply(ref, policy.action)
        outcome = CertificateOutcome.EXECUTED if applied.succeeded else CertificateOutcome.FAILED
        if not applied.succeeded:
            logger.error(
                "Action failed permanently: record=%s action=%s attempts=%d error=%s",
                ref,
                policy.action.value,
                applied.attempts,
                applied.detail,
            )
        await self._issue(
            run, policy, ref, outcome, attempts=applied.attempts, detail=applied.detail
        )
        return _RecordResult(outcome, unreachable=applied.unreachable, detail=applied.detail)
