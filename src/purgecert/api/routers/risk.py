"""Risk report endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query

from purgecert.api.dependencies import AppSettings, DbSession, Keys, RecordStores
from purgecert.api.schemas.ledger import RiskReportResponse
from purgecert.services.risk import RiskAssessmentEngine

router = APIRouter(prefix="/risk", tags=["risk"])


@router.get("", response_model=RiskReportResponse)
async def get_risk_report(
    db: DbSession,
    keyring: Keys,
    settings: AppSettings,
    record_stores: RecordStores,
    verify_chain: bool = Query(True, description="Include full ledger verification"),
    check_drift: bool = Query(True, description="Sample the record store for retention drift"),
) -> dict[str, Any]:
    """Assess retention risk now. Read-only."""
    if not check_drift:
        engine = RiskAssessmentEngine(db, keyring, settings.risk)
        return (await engine.assess(verify_chain=verify_chain)).to_dict()

    async with record_stores() as record_store:
        engine = RiskAssessmentEngine(db, keyring, settings.risk, record_store=record_store)
        report = await engine.assess(verify_chain=verify_chain)
    return report.to_dict()
