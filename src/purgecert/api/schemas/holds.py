"""Pydantic schemas for legal hold endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from purgecert.services.legal_holds import HoldScope


class HoldScopeSchema(BaseModel):
    """Which records a hold covers. All fields empty means every record."""

    entity_type: str | None = None
    record_ids: list[str] = Field(default_factory=list)
    policy_ids: list[str] = Field(default_factory=list)
    match: dict[str, Any] = Field(default_factory=dict)

    def to_scope(self) -> HoldScope:
        return HoldScope(
            entity_type=self.entity_type,
            record_ids=list(self.record_ids),
            policy_ids=list(self.policy_ids),
            match=dict(self.match),
        )


class HoldCreateRequest(BaseModel):
    scope: HoldScopeSchema = Field(default_factory=HoldScopeSchema)
    reason: str = Field(..., min_length=1, description="Case reference or legal basis")
    starts_at: datetime | None = Field(None, description="Defaults to now")
    ends_at: datetime | None = Field(None, description="Open-ended when omitted")


class HoldResponse(BaseModel):
    hold_id: UUID
    scope: HoldScopeSchema
    reason: str
    created_by: str
    created_at: datetime
    starts_at: datetime
    ends_at: datetime | None
    released_at: datetime | None
    released_by: str | None


class HoldListResponse(BaseModel):
    holds: list[HoldResponse]
    total: int
