"""Pydantic schemas for ledger, audit and risk endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from purgecert.db.models.base import KeyStatus


class KeyResponse(BaseModel):
    """Public information about a signing key."""

    key_id: str
    algorithm: str
    status: KeyStatus
    created_at: datetime
    retired_at: datetime | None
    fingerprint: str
    public_key_pem: str


class KeyListResponse(BaseModel):
    keys: list[KeyResponse]


class VerificationResponse(BaseModel):
    stream: str
    valid: bool
    checked_entries: int
    first_seq_no: int | None
    last_seq_no: int | None
    first_invalid_seq_no: int | None
    errors: list[str]


class AuditEntryResponse(BaseModel):
    seq_no: int
    event_type: str
    actor: str
    resource_type: str | None
    resource_id: str | None
    details: dict[str, Any]
    recorded_at: datetime
    entry_hash: str


class AuditListResponse(BaseModel):
    entries: list[AuditEntryResponse]
    total: int


class RiskFindingResponse(BaseModel):
    policy_id: UUID | None
    risk_kind: str
    severity: str
    detected_at: datetime
    detail: str
    evidence: dict[str, Any]


class RiskReportResponse(BaseModel):
    generated_at: datetime
    policies_assessed: int
    overdue_policies: int
    retention_risk: float
    compliance_status: str
    findings: list[RiskFindingResponse]
    errors: list[str]
