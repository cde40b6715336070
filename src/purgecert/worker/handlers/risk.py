"""risk_scan handler: run the risk assessment and log the outcome."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from purgecert.services.risk import ComplianceStatus, RiskAssessmentEngine, Severity

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from purgecert.db.models.jobs import Job
    from purgecert.worker.handlers.context import HandlerContext

logger = logging.getLogger(__name__)


async def risk_scan_handler(
    session: AsyncSession,
    job: Job,
    context: HandlerContext,
) -> dict[str, Any] | None:
    """Assess retention risk. Chain verification runs as its own job.

    Expected job payload:
        verify_chain: (optional) Include ledger verification (default: False)
    """
    payload = job.payload_json or {}
    async with context.record_store_factory() as record_store:
        engine = RiskAssessmentEngine(
            session, context.keyring, context.risk, record_store=record_store
        )
        report = await engine.assess(verify_chain=bool(payload.get("verify_chain", False)))

    for finding in report.findings:
        if finding.severity.rank >= Severity.HIGH.rank:
            logger.warning(
                "Risk finding: kind=%s severity=%s policy_id=%s detail=%s",
                finding.risk_kind.value,
                finding.severity.value,
                finding.policy_id,
                finding.detail,
            )
    if report.compliance_status != ComplianceStatus.COMPLIANT:
        logger.warning(
            "Compliance status %s: retention_risk=%.2f overdue=%d/%d",
            report.compliance_status.value,
            report.retention_risk,
            report.overdue_policies,
            report.policies_assessed,
        )

    return {
        "compliance_status": report.compliance_status.value,
        "retention_risk": report.retention_risk,
        "policies_assessed": report.policies_assessed,
        "findings": len(report.findings),
        "errors": report.errors or None,
    }
