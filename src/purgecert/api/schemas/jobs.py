"""Pydantic schemas for background job administration."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from purgecert.db.models.base import JobStatus


class JobResponse(BaseModel):
    """A background job as seen by operators, payload included."""

    model_config = ConfigDict(from_attributes=True)

    job_id: UUID
    job_type: str
    status: JobStatus
    queue: str
    priority: int
    attempts: int
    max_attempts: int
    run_at: datetime
    created_at: datetime
    completed_at: datetime | None
    duration_ms: int | None
    last_error: str | None
    correlation_id: str | None
    payload_json: dict[str, Any] | None


class JobListResponse(BaseModel):
    jobs: list[JobResponse]
    total: int
