"""Compliance policy templates.

A template fixes the regulatory part of a policy (retention period,
action, data category, compliance basis). Applying one to an entity type
yields a PolicySpec, which the policy store validates like any other, so
an override that breaks a regulatory bound is rejected there.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from typing import Any

from purgecert.db.models.base import DataCategory, DeletionAction, RetentionUnit
from purgecert.services.policies import InvalidPolicySpec, PolicyNotFoundError, PolicySpec

logger = logging.getLogger(__name__)


class TemplateNotFoundError(PolicyNotFoundError):
    """Raised when a requested policy template does not exist."""

    pass


@dataclass(frozen=True, slots=True)
class PolicyTemplate:
    template_id: str
    name: str
    description: str
    category: DataCategory
    retention_value: int
    retention_unit: RetentionUnit
    action: DeletionAction
    compliance_basis: str | None = None
    schedule: str = "@daily"

    def to_dict(self) -> dict[str, Any]:
        return {
            "template_id": self.template_id,
            "name": self.name,
            "description": self.description,
            "category": self.category.value,
            "retention_value": self.retention_value,
            "retention_unit": self.retention_unit.value,
            "action": self.action.value,
            "compliance_basis": self.compliance_basis,
            "schedule": self.schedule,
        }


TEMPLATES: tuple[PolicyTemplate, ...] = (
    PolicyTemplate(
        template_id="hipaa_medical_data",
        name="HIPAA Medical Data Retention",
        description="7-year retention for medical data per HIPAA",
        category=DataCategory.MEDICAL_DATA,
        retention_value=7,
        retention_unit=RetentionUnit.YEARS,
        action=DeletionAction.HARD_DELETE,
        compliance_basis="HIPAA 45 CFR 164.316(b)(2)",
    ),
    PolicyTemplate(
        template_id="gdpr_personal_data",
        name="GDPR Personal Data Retention",
        description="3-year retention for personal data, anonymized afterwards",
        category=DataCategory.PERSONAL_DATA,
        retention_value=3,
        retention_unit=RetentionUnit.YEARS,
        action=DeletionAction.ANONYMIZE,
        compliance_basis="GDPR Art. 5(1)(e) storage limitation",
    ),
    PolicyTemplate(
        template_id="audit_log_retention",
        name="Audit Log Retention",
        description="6-year retention for audit logs, archived afterwards",
        category=DataCategory.AUDIT_DATA,
        retention_value=6,
        retention_unit=RetentionUnit.YEARS,
        action=DeletionAction.ARCHIVE,
        compliance_basis="HIPAA 45 CFR 164.316(b)(2)",
        schedule="@weekly",
    ),
    PolicyTemplate(
        template_id="session_data_retention",
        name="Session Data Retention",
        description="2-year retention for session history and timing data",
        category=DataCategory.SYSTEM_DATA,
        retention_value=2,
        retention_unit=RetentionUnit.YEARS,
        action=DeletionAction.HARD_DELETE,
    ),
    PolicyTemplate(
        template_id="notification_cleanup",
        name="Notification Cleanup",
        description="Soft delete notifications after 1 year",
        category=DataCategory.SYSTEM_DATA,
        retention_value=1,
        retention_unit=RetentionUnit.YEARS,
        action=DeletionAction.SOFT_DELETE,
    ),
)

_BY_ID = {template.template_id: template for template in TEMPLATES}

# entity_type comes from the apply request and name has its own argument
OVERRIDABLE_FIELDS = frozenset(
    f.name for f in fields(PolicySpec) if f.name not in ("name", "entity_type")
)


def list_templates() -> list[PolicyTemplate]:
    return list(TEMPLATES)


def get_template(template_id: str) -> PolicyTemplate:
    """Look up a template.

    Raises:
        TemplateNotFoundError: If no template has this ID.
    """
    template = _BY_ID.get(template_id)
    if template is None:
        raise TemplateNotFoundError(f"Policy template not found: {template_id}")
    return template


def build_spec(
    template_id: str,
    entity_type: str,
    *,
    name: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> PolicySpec:
    """Build a policy definition for entity_type from a template.

    Args:
        template_id: Template to start from.
        entity_type: Entity type the policy governs.
        name: Policy name. Defaults to "<template name> - <entity_type>".
        overrides: PolicySpec fields replacing the template's values.

    Raises:
        TemplateNotFoundError: If the template does not exist.
        InvalidPolicySpec: If an override names a field that cannot be set.
    """
    template = get_template(template_id)
    overrides = dict(overrides or {})
    unknown = sorted(set(overrides) - OVERRIDABLE_FIELDS)
    if unknown:
        raise InvalidPolicySpec([f"{key} cannot be overridden" for key in unknown])

    values: dict[str, Any] = {
        "name": name or f"{template.name} - {entity_type}",
        "description": f"Created from the {template.template_id} template",
        "entity_type": entity_type,
        "retention_value": template.retention_value,
        "retention_unit": template.retention_unit,
        "action": template.action,
        "schedule": template.schedule,
        "category": template.category,
        "compliance_basis": template.compliance_basis,
    }
    values.update(overrides)
    logger.debug(
        "Policy spec built from template: template_id=%s entity_type=%s overrides=%s",
        template_id,
        entity_type,
        sorted(overrides),
    )
    return PolicySpec(**values)
