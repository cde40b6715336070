"""Tests for compliance policy templates.

Tests cover:
- The catalogue and template lookup
- Building policy specs with names and overrides
- Templates passing (and overrides failing) policy validation
"""

import pytest

from purgecert.core.config import RetentionSettings
from purgecert.db.models.base import DataCategory, DeletionAction, RetentionUnit
from purgecert.services.policies import (
    InvalidPolicySpec,
    PolicyNotFoundError,
    retention_days,
    validate_policy_spec,
)
from purgecert.services.policy_templates import (
    OVERRIDABLE_FIELDS,
    TemplateNotFoundError,
    build_spec,
    get_template,
    list_templates,
)


class TestCatalogue:
    """Tests for list_templates and get_template."""

    def test_catalogue(self):
        ids = [template.template_id for template in list_templates()]

        assert ids == [
            "hipaa_medical_data",
            "gdpr_personal_data",
            "audit_log_retention",
            "session_data_retention",
            "notification_cleanup",
        ]

    def test_hipaa_template_keeps_seven_years(self):
        template = get_template("hipaa_medical_data")

        assert template.category == DataCategory.MEDICAL_DATA
        assert retention_days(template.retention_value, template.retention_unit) == 7 * 365
        assert template.to_dict()["action"] == "hard_delete"

    def test_unknown_template(self):
        with pytest.raises(TemplateNotFoundError) as exc_info:
            get_template("sox_everything")
        assert isinstance(exc_info.value, PolicyNotFoundError)

    @pytest.mark.parametrize("template", list_templates(), ids=lambda t: t.template_id)
    def test_every_template_validates(self, template):
        """Test each template yields a policy the store accepts under default bounds."""
        spec = build_spec(template.template_id, "reflection")
        validate_policy_spec(spec, RetentionSettings())


class TestBuildSpec:
    """Tests for build_spec."""

    def test_defaults_from_template(self):
        spec = build_spec("gdpr_personal_data", "message")

        assert spec.name == "GDPR Personal Data Retention - message"
        assert spec.entity_type == "message"
        assert spec.retention_value == 3
        assert spec.retention_unit == RetentionUnit.YEARS
        assert spec.action == DeletionAction.ANONYMIZE
        assert spec.category == DataCategory.PERSONAL_DATA
        assert spec.compliance_basis.startswith("GDPR")
        assert spec.description == "Created from the gdpr_personal_data template"

    def test_name_and_overrides(self):
        spec = build_spec(
            "notification_cleanup",
            "notification",
            name="Old notifications",
            overrides={"schedule": "every 6h", "include": {"status": "read"}},
        )

        assert spec.name == "Old notifications"
        assert spec.schedule == "every 6h"
        assert spec.include == {"status": "read"}
        assert spec.action == DeletionAction.SOFT_DELETE

    def test_fixed_fields_cannot_be_overridden(self):
        assert "entity_type" not in OVERRIDABLE_FIELDS
        with pytest.raises(InvalidPolicySpec) as exc_info:
            build_spec("gdpr_personal_data", "message", overrides={"entity_type": "x", "color": 1})
        assert exc_info.value.errors == [
            "color cannot be overridden",
            "entity_type cannot be overridden",
        ]

    def test_override_below_medical_minimum_is_rejected(self):
        spec = build_spec("hipaa_medical_data", "chart", overrides={"retention_value": 1})

        with pytest.raises(InvalidPolicySpec) as exc_info:
            validate_policy_spec(spec, RetentionSettings())
        assert "medical_data requires at least" in exc_info.value.errors[0]
