"""Pydantic schemas for execution runs and deletion certificates."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from purgecert.db.models.base import CertificateOutcome, DeletionAction, RunStatus, RunTrigger


class RunTriggerRequest(BaseModel):
    policy_id: UUID = Field(..., description="Policy whose active version should run now")


class RunCountsSchema(BaseModel):
    evaluated: int
    executed: int
    held: int
    not_eligible: int
    failed: int


class RunResponse(BaseModel):
    run_id: UUID
    policy_id: UUID
    policy_version: int
    trigger: RunTrigger
    triggered_by: str
    status: RunStatus
    started_at: datetime
    ended_at: datetime | None
    counts: RunCountsSchema
    batches_completed: int
    heartbeat_at: datetime | None
    cancel_requested_at: datetime | None
    cancel_requested_by: str | None
    error_message: str | None


class RunListResponse(BaseModel):
    runs: list[RunResponse]
    total: int


class CertificateResponse(BaseModel):
    """A deletion certificate with the ledger entry that proves it."""

    certificate_id: UUID
    idempotency_key: str
    run_id: UUID
    policy_id: UUID
    policy_version: int
    entity_type: str
    record_id: str
    action: DeletionAction
    outcome: CertificateOutcome
    attempts: int
    detail: str | None
    issued_at: datetime
    ledger_seq_no: int
    content_hash: str
    prev_hash: str
    entry_hash: str
    signature: str
    key_id: str


class CertificateListResponse(BaseModel):
    certificates: list[CertificateResponse]
    total: int


class CertificateVerificationResponse(BaseModel):
    certificate_id: UUID
    valid: bool
    ledger_seq_no: int
    key_id: str
    checks: list[str]
    errors: list[str]
