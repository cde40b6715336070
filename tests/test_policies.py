"""Tests for retention policies.

Tests cover:
- Pure eligibility helpers (deadline, scope filters, eligibility)
- Policy validation, including regulatory retention bounds
- Versioned create / update / deactivate with audit entries
- Read-only previews against a record store
"""

import uuid
from datetime import UTC, datetime, timedelta

import pytest

from purgecert.core.config import RetentionSettings
from purgecert.db.models.base import DataCategory, DeletionAction, RetentionUnit
from purgecert.services.audit_log import AuditEventType, AuditLogService
from purgecert.services.policies import (
    InvalidPolicySpec,
    PolicyConflictError,
    PolicyNotFoundError,
    PolicyStore,
    is_eligible,
    matches_scope,
    parse_timestamp,
    retention_days,
    retention_deadline,
    validate_policy_spec,
)
from purgecert.services.record_store import Record, RecordRef
from tests.factories import make_policy_spec, make_policy_version, make_record

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)


class TestRetentionArithmetic:
    """Tests for retention period helpers."""

    @pytest.mark.parametrize(
        ("value", "unit", "expected"),
        [
            (90, RetentionUnit.DAYS, 90),
            (6, RetentionUnit.MONTHS, 180),
            (7, RetentionUnit.YEARS, 2555),
        ],
    )
    def test_retention_days(self, value, unit, expected):
        assert retention_days(value, unit) == expected

    def test_parse_timestamp_variants(self):
        """Test ISO strings, Z suffixes and naive datetimes are read as UTC."""
        aware = datetime(2026, 1, 1, tzinfo=UTC)
        assert parse_timestamp("2026-01-01T00:00:00Z") == aware
        assert parse_timestamp("2026-01-01T00:00:00") == aware
        assert parse_timestamp(datetime(2026, 1, 1)) == aware
        assert parse_timestamp("not a date") is None
        assert parse_timestamp(1700000000) is None

    def test_deadline_from_configured_field(self):
        policy = make_policy_version(retention_from_field="closed_at", retention_value=30)
        record = Record(
            ref=RecordRef("reflection", "r-1"),
            attributes={"closed_at": "2026-01-01T00:00:00+00:00"},
        )
        assert retention_deadline(policy, record) == datetime(2026, 1, 31, tzinfo=UTC)

    def test_missing_timestamp_has_no_deadline(self):
        policy = make_policy_version()
        record = Record(ref=RecordRef("reflection", "r-1"), attributes={})
        assert retention_deadline(policy, record) is None
        assert not is_eligible(policy, record, NOW)


class TestEligibility:
    """Tests for matches_scope and is_eligible."""

    def test_ninety_day_boundary(self):
        """Test a record becomes eligible exactly when its retention ends."""
        policy = make_policy_version(retention_value=90)
        assert is_eligible(policy, make_record("r-1", days_old=90, now=NOW), NOW)
        assert is_eligible(policy, make_record("r-2", days_old=120, now=NOW), NOW)
        assert not is_eligible(policy, make_record("r-3", days_old=89, now=NOW), NOW)

    def test_other_entity_type_out_of_scope(self):
        policy = make_policy_version()
        record = make_record("m-1", days_old=400, now=NOW, entity_type="message")
        assert not matches_scope(policy, record)
        assert not is_eligible(policy, record, NOW)

    def test_include_filter(self):
        """Test include conditions accept a value or a list of values."""
        policy = make_policy_version(include={"status": ["closed", "archived"], "region": "eu"})

        assert matches_scope(
            policy, make_record("r-1", days_old=1, status="closed", region="eu")
        )
        assert not matches_scope(
            policy, make_record("r-2", days_old=1, status="open", region="eu")
        )
        assert not matches_scope(policy, make_record("r-3", days_old=1, status="closed"))

    def test_exclude_filter(self):
        """Test exclude conditions only apply when the attribute is present."""
        policy = make_policy_version(exclude={"flagged": True})

        assert not matches_scope(policy, make_record("r-1", days_old=1, flagged=True))
        assert matches_scope(policy, make_record("r-2", days_old=1, flagged=False))
        assert matches_scope(policy, make_record("r-3", days_old=1))


class TestValidation:
    """Tests for validate_policy_spec."""

    def test_valid_spec_normalizes_enums(self):
        spec = make_policy_spec(action="anonymize", retention_unit="months", category="system_data")
        unit, action, category = validate_policy_spec(spec)

        assert unit == RetentionUnit.MONTHS
        assert action == DeletionAction.ANONYMIZE
        assert category == DataCategory.SYSTEM_DATA

    def test_collects_every_error(self):
        """Test all problems are reported at once."""
        spec = make_policy_spec(
            name=" ",
            retention_value=0,
            action="shred",
            schedule="sometimes",
            priority=11,
        )
        with pytest.raises(InvalidPolicySpec) as exc_info:
            validate_policy_spec(spec)

        errors = exc_info.value.errors
        assert "name must not be empty" in errors
        assert "retention_value must be a positive integer" in errors
        assert "priority must be between 1 and 10" in errors
        assert any(error.startswith("action must be one of") for error in errors)
        assert any("Invalid cadence" in error for error in errors)

    def test_nested_filter_rejected(self):
        spec = make_policy_spec(include={"owner": {"id": 1}})
        with pytest.raises(InvalidPolicySpec, match="include.owner"):
            validate_policy_spec(spec)

    def test_medical_minimum_retention(self):
        """Test medical data cannot be retained for less than the minimum."""
        retention = RetentionSettings()
        short = make_policy_spec(category=DataCategory.MEDICAL_DATA, retention_value=365)
        with pytest.raises(InvalidPolicySpec, match="medical_data requires at least 2555 days"):
            validate_policy_spec(short, retention)

        seven_years = make_policy_spec(
            category=DataCategory.MEDICAL_DATA,
            retention_value=7,
            retention_unit=RetentionUnit.YEARS,
        )
        validate_policy_spec(seven_years, retention)

    def test_gdpr_maximum_retention(self):
        retention = RetentionSettings(gdpr_maximum_days=365)
        with pytest.raises(InvalidPolicySpec, match="at most 365 days"):
            validate_policy_spec(
                make_policy_spec(retention_value=2, retention_unit="years"), retention
            )


class TestPolicyStore:
    """Tests for versioned policy storage."""

    @pytest.mark.asyncio
    async def test_create_policy(self, session, keyring):
        """Test creation yields active version 1 and an audit entry."""
        store = PolicyStore(session, keyring)
        policy = await store.create_policy(make_policy_spec(), created_by="dpo")
        await session.commit()

        assert policy.version == 1
        assert policy.is_active
        assert policy.created_by == "dpo"
        assert policy.action == DeletionAction.HARD_DELETE

        entries = await AuditLogService(session, keyring).list_entries(
            event_type=AuditEventType.POLICY_CREATED
        )
        assert [entry.resource_id for entry in entries] == [str(policy.policy_id)]

    @pytest.mark.asyncio
    async def test_create_invalid_policy(self, session, keyring):
        store = PolicyStore(session, keyring, retention=RetentionSettings())
        with pytest.raises(InvalidPolicySpec):
            await store.create_policy(
                make_policy_spec(category=DataCategory.MEDICAL_DATA), created_by="dpo"
            )

    @pytest.mark.asyncio
    async def test_update_creates_new_version(self, session, keyring):
        """Test an update supersedes the previous version without editing it."""
        store = PolicyStore(session, keyring)
        v1 = await store.create_policy(make_policy_spec(), created_by="dpo")
        await session.commit()

        v2 = await store.update_policy(
            v1.policy_id, make_policy_spec(retention_value=30), updated_by="dpo"
        )
        await session.commit()

        assert v2.version == 2
        assert v2.is_active
        assert v2.retention_value == 30

        old = await store.get_policy_version(v1.policy_id, 1)
        assert not old.is_active
        assert old.superseded_at is not None
        assert old.retention_value == 90

        versions = await store.list_versions(v1.policy_id)
        assert [version.version for version in versions] == [1, 2]
        active = await store.get_active_version(v1.policy_id)
        assert active.policy_version_id == v2.policy_version_id

    @pytest.mark.asyncio
    async def test_update_unknown_policy(self, session, keyring):
        with pytest.raises(PolicyNotFoundError):
            await PolicyStore(session, keyring).update_policy(
                uuid.uuid4(), make_policy_spec(), updated_by="dpo"
            )

    @pytest.mark.asyncio
    async def test_deactivate(self, session, keyring):
        """Test deactivation keeps the policy but removes it from active lists."""
        store = PolicyStore(session, keyring)
        policy = await store.create_policy(make_policy_spec(), created_by="dpo")
        await session.commit()

        deactivated = await store.deactivate_policy(policy.policy_id, deactivated_by="dpo")
        await session.commit()

        assert not deactivated.is_active
        assert await store.get_active_policies() == []
        listed = await store.list_policies(include_inactive=True)
        assert [p.policy_id for p in listed] == [policy.policy_id]

        with pytest.raises(PolicyConflictError):
            await store.deactivate_policy(policy.policy_id, deactivated_by="dpo")
        with pytest.raises(PolicyConflictError):
            await store.update_policy(policy.policy_id, make_policy_spec(), updated_by="dpo")

    @pytest.mark.asyncio
    async def test_active_policies_by_priority(self, session, keyring):
        store = PolicyStore(session, keyring)
        await store.create_policy(make_policy_spec(name="low", priority=9), created_by="dpo")
        await store.create_policy(make_policy_spec(name="high", priority=1), created_by="dpo")
        await store.create_policy(
            make_policy_spec(name="other", entity_type="message"), created_by="dpo"
        )
        await session.commit()

        names = [p.name for p in await store.get_active_policies()]
        assert names == ["high", "other", "low"]
        scoped = await store.get_active_policies(entity_type="message")
        assert [p.name for p in scoped] == ["other"]

    @pytest.mark.asyncio
    async def test_missing_version(self, session, keyring):
        with pytest.raises(PolicyNotFoundError):
            await PolicyStore(session, keyring).get_policy_version(uuid.uuid4(), 1)


class TestPreview:
    """Tests for policy previews."""

    @pytest.mark.asyncio
    async def test_preview_counts_without_acting(self, session, keyring, record_store):
        """Test the preview counts eligible records and applies nothing."""
        now = datetime.now(UTC)
        for i, days in enumerate([200, 120, 95, 30, 10], start=1):
            record_store.add(make_record(f"r-{i:03d}", days_old=days, now=now))

        store = PolicyStore(session, keyring)
        policy = await store.create_policy(make_policy_spec(), created_by="dpo")
        await session.commit()

        preview = await store.preview(policy.policy_id, record_store, now=now, sample_size=2)

        assert preview.eligible_count == 3
        assert preview.sample_record_ids == ["r-001", "r-002"]
        assert not preview.truncated
        assert "Hard delete is irreversible" in preview.risk_notes
        assert record_store.applied == []

    @pytest.mark.asyncio
    async def test_preview_truncates(self, session, keyring, record_store):
        now = datetime.now(UTC)
        # More than one preview page
        for i in range(501):
            record_store.add(make_record(f"r-{i:04d}", days_old=100, now=now))

        store = PolicyStore(session, keyring)
        policy = await store.create_policy(
            make_policy_spec(action=DeletionAction.ARCHIVE), created_by="dpo"
        )
        await session.commit()

        preview = await store.preview(policy.policy_id, record_store, now=now, max_scanned=1)
        assert preview.truncated
        assert "Hard delete is irreversible" not in preview.risk_notes
        assert any(note.startswith("Preview stopped") for note in preview.risk_notes)

    @pytest.mark.asyncio
    async def test_preview_inactive_policy(self, session, keyring, record_store):
        store = PolicyStore(session, keyring)
        policy = await store.create_policy(make_policy_spec(), created_by="dpo")
        await store.deactivate_policy(policy.policy_id, deactivated_by="dpo")
        await session.commit()

        with pytest.raises(PolicyNotFoundError):
            await store.preview(policy.policy_id, record_store)

    def test_scan_scope_uses_retention_period(self):
        policy = make_policy_version(retention_value=3, retention_unit=RetentionUnit.MONTHS)
        scope = policy.scan_scope(NOW)
        assert scope.older_than == NOW - timedelta(days=90)
        assert scope.timestamp_field == "created_at"
