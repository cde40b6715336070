"""Risk assessment: overdue, drifting or conflicting retention state.

The engine is strictly read-only. It never mutates policies, holds, runs or
the ledger; it only reports what an operator should look at.

Findings:
- scheduler_starvation: a policy has not run for longer than its cadence
  times the grace factor
- retention_drift: records past their deadline (plus grace) that the latest
  finished run did not certify as executed or skipped
- hold_overlap: an active hold overlaps a policy due within the lookahead
  window (informational)
- repeated_failures: the most recent runs of a policy all failed or only
  partially completed
- chain_integrity: a ledger stream failed verification
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from purgecert.db.models.base import CertificateOutcome, LedgerStream, RunStatus, utcnow
from purgecert.services.cadence import due_at, parse_cadence
from purgecert.services.certification import CertificationService
from purgecert.services.ledger import HashChainLedger
from purgecert.services.legal_holds import LegalHoldRegistry
from purgecert.services.policies import PolicyStore, is_eligible
from purgecert.services.record_store import RecordStoreError, ScanScope
from purgecert.services.runs import RunRegistry

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from purgecert.core.config import RiskSettings
    from purgecert.services.policies import PolicyVersion
    from purgecert.services.record_store import Record, RecordStore
    from purgecert.services.signing import KeyRing

logger = logging.getLogger(__name__)

# Retention risk above which the system is reported non-compliant
NON_COMPLIANT_RISK_THRESHOLD = 0.7

DRIFT_PAGE_SIZE = 100


class RiskKind(Enum):
    SCHEDULER_STARVATION = "scheduler_starvation"
    RETENTION_DRIFT = "retention_drift"
    HOLD_OVERLAP = "hold_overlap"
    REPEATED_FAILURES = "repeated_failures"
    CHAIN_INTEGRITY = "chain_integrity"


class Severity(Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)


class ComplianceStatus(Enum):
    COMPLIANT = "compliant"
    AT_RISK = "at_risk"
    NON_COMPLIANT = "non_compliant"


# Outcomes that count as "handled" for drift detection
_HANDLED_OUTCOMES = frozenset(
    {
        CertificateOutcome.EXECUTED,
        CertificateOutcome.SKIPPED_HOLD,
        CertificateOutcome.SKIPPED_NOT_ELIGIBLE,
    }
)


@dataclass(frozen=True, slots=True)
class RiskFinding:
    """One detected risk. policy_id is None for system-wide findings."""

    policy_id: uuid.UUID | None
    risk_kind: RiskKind
    severity: Severity
    detected_at: datetime
    detail: str
    evidence: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_id": str(self.policy_id) if self.policy_id else None,
            "risk_kind": self.risk_kind.value,
            "severity": self.severity.value,
            "detected_at": self.detected_at.isoformat(),
            "detail": self.detail,
            "evidence": self.evidence,
        }


@dataclass(frozen=True, slots=True)
class RiskReport:
    """Outcome of one assessment."""

    generated_at: datetime
    findings: list[RiskFinding]
    policies_assessed: int
    overdue_policies: int
    retention_risk: float
    compliance_status: ComplianceStatus
    errors: list[str] = field(default_factory=list)

    def findings_for(self, kind: RiskKind) -> list[RiskFinding]:
        return [finding for finding in self.findings if finding.risk_kind == kind]

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "policies_assessed": self.policies_assessed,
            "overdue_policies": self.overdue_policies,
            "retention_risk": self.retention_risk,
            "compliance_status": self.compliance_status.value,
            "findings": [finding.to_dict() for finding in self.findings],
            "errors": list(self.errors),
        }


class RiskAssessmentEngine:
    """Scans policies, runs, holds and the ledger for risk.

    Retention drift needs a record store; without one, drift detection is
    skipped.

    Example:
        engine = RiskAssessmentEngine(session, keyring, settings.risk, record_store=store)
        report = await engine.assess()
    """

    def __init__(
        self,
        session: AsyncSession,
        keyring: KeyRing,
        settings: RiskSettings,
        *,
        record_store: RecordStore | None = None,
    ) -> None:
        self._session = session
        self._keyring = keyring
        self._settings = settings
        self._record_store = record_store

    async def assess(
        self,
        now: datetime | None = None,
        *,
        verify_chain: bool = True,
    ) -> RiskReport:
        now = now or utcnow()
        findings: list[RiskFinding] = []
        errors: list[str] = []

        policies = await PolicyStore(self._session, self._keyring).get_active_policies()
        registry = RunRegistry(self._session)
        last_ends = await registry.last_run_ends()

        overdue: set[uuid.UUID] = set()
        for policy in policies:
            last_end = last_ends.get(policy.policy_id)

            starvation = self._check_starvation(policy, last_end, now)
            if starvation is not None:
                findings.append(starvation)
                overdue.add(policy.policy_id)

            if self._record_store is not None:
                try:
                    drift = await self._check_drift(policy, now)
                except RecordStoreError as e:
                    logger.warning(
                        "Drift check skipped: policy_id=%s error=%s", policy.policy_id, e
                    )
                    errors.append(f"policy {policy.policy_id}: drift check failed: {e}")
                    drift = None
                if drift is not None:
                    findings.append(drift)
                    overdue.add(policy.policy_id)

            findings.extend(await self._check_hold_overlap(policy, last_end, now))

            failures = await self._check_repeated_failures(policy, now)
            if failures is not None:
                findings.append(failures)

        chain_broken = False
        if verify_chain:
            ledger = HashChainLedger(self._session, self._keyring)
            for stream in LedgerStream:
                result = await ledger.verify(stream)
                if not result.valid:
                    chain_broken = True
                    findings.append(
                        RiskFinding(
                            policy_id=None,
                            risk_kind=RiskKind.CHAIN_INTEGRITY,
                            severity=Severity.CRITICAL,
                            detected_at=now,
                            detail=(
                                f"Ledger stream {stream.value} fails verification at "
                                f"seq_no={result.first_invalid_seq_no}"
                            ),
                            evidence={"stream": stream.value, **result.to_dict()},
                        )
                    )

        retention_risk = len(overdue) / len(policies) if policies else 0.0
        if chain_broken or retention_risk > NON_COMPLIANT_RISK_THRESHOLD:
            status = ComplianceStatus.NON_COMPLIANT
        elif any(finding.severity.rank >= Severity.MEDIUM.rank for finding in findings):
            status = ComplianceStatus.AT_RISK
        else:
            status = ComplianceStatus.COMPLIANT

        report = RiskReport(
            generated_at=now,
            findings=findings,
            policies_assessed=len(policies),
            overdue_policies=len(overdue),
            retention_risk=round(retention_risk, 4),
            compliance_status=status,
            errors=errors,
        )
        logger.info(
            "Risk assessment: policies=%d findings=%d overdue=%d status=%s",
            report.policies_assessed,
            len(findings),
            report.overdue_policies,
            status.value,
        )
        return report

    def _grace_window(self, policy: PolicyVersion) -> timedelta:
        return parse_cadence(policy.schedule) * self._settings.overdue_grace_factor

    def _check_starvation(
        self,
        policy: PolicyVersion,
        last_end: datetime | None,
        now: datetime,
    ) -> RiskFinding | None:
        window = self._grace_window(policy)
        reference = last_end or policy.created_at
        if now - reference <= window:
            return None

        if last_end is None:
            detail = f"Policy has never run since {policy.created_at.isoformat()}"
        else:
            overdue_by = now - reference - window
            detail = f"Last run ended {last_end.isoformat()}, overdue by {overdue_by}"
        return RiskFinding(
            policy_id=policy.policy_id,
            risk_kind=RiskKind.SCHEDULER_STARVATION,
            severity=Severity.HIGH,
            detected_at=now,
            detail=detail,
            evidence={
                "schedule": policy.schedule,
                "last_run_ended": last_end.isoformat() if last_end else None,
                "grace_window_seconds": int(window.total_seconds()),
            },
        )

    async def _check_drift(self, policy: PolicyVersion, now: datetime) -> RiskFinding | None:
        """Sample records overdue beyond the grace window and compare with the latest run."""
        cutoff = now - self._grace_window(policy)
        scope = ScanScope(
            entity_type=policy.entity_type,
            include=policy.include,
            exclude=policy.exclude,
            timestamp_field=policy.retention_from_field,
            older_than=cutoff - policy.retention_period,
        )

        sample: list[Record] = []
        cursor: str | None = None
        while len(sample) < self._settings.drift_sample_limit:
            page = await self._record_store.scan(scope, cursor, DRIFT_PAGE_SIZE)
            for record in page.records:
                if is_eligible(policy, record, cutoff):
                    sample.append(record)
                    if len(sample) >= self._settings.drift_sample_limit:
                        break
            cursor = page.next_cursor
            if cursor is None:
                break

        if not sample:
            return None

        latest = await RunRegistry(self._session).latest_finished_run(policy.policy_id)
        handled: dict[str, CertificateOutcome] = {}
        if latest is not None:
            handled = await CertificationService(self._session, self._keyring).outcomes_for_records(
                latest.run_id,
                policy.entity_type,
                [record.ref.record_id for record in sample],
            )

        drifted = [
            record.ref.record_id
            for record in sample
            if handled.get(record.ref.record_id) not in _HANDLED_OUTCOMES
        ]
        if not drifted:
            return None

        return RiskFinding(
            policy_id=policy.policy_id,
            risk_kind=RiskKind.RETENTION_DRIFT,
            severity=Severity.HIGH if len(drifted) >= 10 else Severity.MEDIUM,
            detected_at=now,
            detail=f"{len(drifted)} record(s) past retention without a certificate",
            evidence={
                "sampled": len(sample),
                "drifted_record_ids": drifted[:20],
                "latest_run_id": str(latest.run_id) if latest else None,
            },
        )

    async def _check_hold_overlap(
        self,
        policy: PolicyVersion,
        last_end: datetime | None,
        now: datetime,
    ) -> list[RiskFinding]:
        decision = due_at(policy.schedule, last_end, now)
        if decision.next_due_at > now + timedelta(hours=self._settings.hold_lookahead_hours):
            return []

        holds = await LegalHoldRegistry(self._session).holds_overlapping_policy(policy, now)
        return [
            RiskFinding(
                policy_id=policy.policy_id,
                risk_kind=RiskKind.HOLD_OVERLAP,
                severity=Severity.INFO,
                detected_at=now,
                detail=(
                    f"Legal hold {hold.hold_id} overlaps policy due at "
                    f"{decision.next_due_at.isoformat()}"
                ),
                evidence={"hold_id": str(hold.hold_id), "reason": hold.reason},
            )
            for hold in holds
        ]

    async def _check_repeated_failures(
        self,
        policy: PolicyVersion,
        now: datetime,
    ) -> RiskFinding | None:
        threshold = self._settings.repeated_failure_threshold
        registry = RunRegistry(self._session)
        runs = await registry.list_runs(policy_id=policy.policy_id, limit=threshold)
        if len(runs) < threshold:
            return None
        bad = {RunStatus.FAILED, RunStatus.PARTIALLY_COMPLETED}
        if not all(run.status in bad for run in runs):
            return None

        any_failed = any(run.status == RunStatus.FAILED for run in runs)
        return RiskFinding(
            policy_id=policy.policy_id,
            risk_kind=RiskKind.REPEATED_FAILURES,
            severity=Severity.HIGH if any_failed else Severity.MEDIUM,
            detected_at=now,
            detail=f"Last {threshold} runs did not complete",
            evidence={"run_ids": [str(run.run_id) for run in runs]},
        )
