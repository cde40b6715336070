"""Audit log endpoints: operator and system events from the audit stream."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query

from purgecert.api.dependencies import DbSession, Keys
from purgecert.api.schemas.ledger import AuditListResponse
from purgecert.services.audit_log import AuditEventType, AuditLogService

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("", response_model=AuditListResponse)
async def list_audit_entries(
    db: DbSession,
    keyring: Keys,
    event_type: AuditEventType | None = Query(None),
    start_seq: int | None = Query(None, ge=1),
    limit: int = Query(100, ge=1, le=1000),
) -> dict[str, Any]:
    entries = await AuditLogService(db, keyring).list_entries(
        event_type=event_type, start_seq=start_seq, limit=limit
    )
    return {"entries": [entry.to_dict() for entry in entries], "total": len(entries)}
