"""Pydantic schemas for retention policy endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from purgecert.db.models.base import DataCategory, DeletionAction, RetentionUnit
from purgecert.services.policies import PolicySpec


class PolicyRequest(BaseModel):
    """Body for creating a policy or a new version of one.

    Semantic checks (retention bounds, cadence syntax, priority range) are
    done by the policy store and reported as a 422 with the list of errors.
    """

    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    entity_type: str = Field(..., min_length=1, max_length=100)
    include: dict[str, Any] = Field(
        default_factory=dict, description="Attribute name -> accepted value or list of values"
    )
    exclude: dict[str, Any] = Field(
        default_factory=dict, description="Attribute name -> rejected value or list of values"
    )
    retention_value: int = Field(..., description="Retention period length")
    retention_unit: RetentionUnit = RetentionUnit.DAYS
    retention_from_field: str = Field(
        "created_at", description="Record attribute the retention period is measured from"
    )
    action: DeletionAction
    schedule: str = Field(..., description="Cadence, e.g. @daily or 'every 6h'")
    category: DataCategory = DataCategory.PERSONAL_DATA
    compliance_basis: str | None = None
    batch_size: int | None = Field(None, ge=1, le=10000)
    priority: int = 5

    def to_spec(self) -> PolicySpec:
        return PolicySpec(
            name=self.name,
            description=self.description,
            entity_type=self.entity_type,
            include=self.include,
            exclude=self.exclude,
            retention_value=self.retention_value,
            retention_unit=self.retention_unit,
            retention_from_field=self.retention_from_field,
            action=self.action,
            schedule=self.schedule,
            category=self.category,
            compliance_basis=self.compliance_basis,
            batch_size=self.batch_size,
            priority=self.priority,
        )


class PolicyResponse(BaseModel):
    """One stored policy version."""

    policy_version_id: UUID
    policy_id: UUID
    version: int
    name: str
    description: str | None
    entity_type: str
    include: dict[str, Any]
    exclude: dict[str, Any]
    retention_value: int
    retention_unit: RetentionUnit
    retention_from_field: str
    action: DeletionAction
    schedule: str
    category: DataCategory
    compliance_basis: str | None
    batch_size: int | None
    priority: int
    is_active: bool
    created_at: datetime
    created_by: str
    superseded_at: datetime | None


class PolicyListResponse(BaseModel):
    policies: list[PolicyResponse]
    total: int


class PolicyPreviewResponse(BaseModel):
    """Dry-run result: what the active version would act on now."""

    policy_id: UUID
    version: int
    scanned_count: int
    eligible_count: int
    sample_record_ids: list[str]
    truncated: bool
    risk_notes: list[str]


class PolicyTemplateResponse(BaseModel):
    template_id: str
    name: str
    description: str
    category: DataCategory
    retention_value: int
    retention_unit: RetentionUnit
    action: DeletionAction
    compliance_basis: str | None
    schedule: str


class PolicyTemplateListResponse(BaseModel):
    templates: list[PolicyTemplateResponse]
    total: int


class TemplateApplyRequest(BaseModel):
    """Body for creating a policy from a template.

    overrides replaces template values (e.g. schedule, include); the
    resulting policy is validated like one created directly.
    """

    entity_type: str = Field(..., min_length=1, max_length=100)
    name: str | None = Field(None, min_length=1, max_length=255)
    overrides: dict[str, Any] = Field(default_factory=dict)
