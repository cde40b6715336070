"""Versioned retention policies and record eligibility.

This module provides:
- PolicyStore: create, version, deactivate and query retention policies
- Pure eligibility helpers (retention_deadline, matches_scope, is_eligible)
  shared by the execution engine, previews and the risk engine
- Preview of a policy's effect without acting on any record

Policies are never edited in place. An update inserts version n+1 and
deactivates version n in the same transaction; a partial unique index
guarantees at most one active version per policy.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from purgecert.db.models.base import DataCategory, DeletionAction, RetentionUnit, utcnow
from purgecert.db.models.policies import RetentionPolicy
from purgecert.services.audit_log import AuditEventType, AuditLogService
from purgecert.services.cadence import InvalidCadenceError, parse_cadence
from purgecert.services.record_store import ScanScope

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from purgecert.core.config import RetentionSettings
    from purgecert.services.record_store import Record, RecordStore
    from purgecert.services.signing import KeyRing

logger = logging.getLogger(__name__)

DAYS_PER_UNIT = {
    RetentionUnit.DAYS: 1,
    RetentionUnit.MONTHS: 30,
    RetentionUnit.YEARS: 365,
}

# Preview risk-note thresholds
LARGE_DATASET_THRESHOLD = 10000
PREVIEW_MAX_SCANNED = 50000
PREVIEW_PAGE_SIZE = 500


class PolicyError(Exception):
    """Base exception for policy errors."""

    pass


class InvalidPolicySpec(PolicyError):
    """Raised when a policy definition is malformed. Never retried."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Invalid policy: " + "; ".join(errors))
        self.errors = errors


class PolicyNotFoundError(PolicyError):
    """Raised when a requested policy or policy version does not exist."""

    pass


class PolicyConflictError(PolicyError):
    """Raised when a concurrent change won, or the policy state forbids the change."""

    pass


@dataclass(frozen=True)
class PolicySpec:
    """Operator-supplied definition of a retention policy.

    include/exclude map record attribute names to an accepted value or a
    list of accepted values.
    """

    name: str
    entity_type: str
    retention_value: int
    action: DeletionAction | str
    schedule: str
    retention_unit: RetentionUnit | str = RetentionUnit.DAYS
    retention_from_field: str = "created_at"
    include: dict[str, Any] = field(default_factory=dict)
    exclude: dict[str, Any] = field(default_factory=dict)
    description: str | None = None
    category: DataCategory | str = DataCategory.PERSONAL_DATA
    compliance_basis: str | None = None
    batch_size: int | None = None
    priority: int = 5


@dataclass(frozen=True, slots=True)
class PolicyVersion:
    """Detached, immutable view of one stored policy version."""

    policy_version_id: uuid.UUID
    policy_id: uuid.UUID
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

    @classmethod
    def from_model(cls, policy: RetentionPolicy) -> PolicyVersion:
        return cls(
            policy_version_id=policy.policy_version_id,
            policy_id=policy.policy_id,
            version=policy.version,
            name=policy.name,
            description=policy.description,
            entity_type=policy.entity_type,
            include=dict(policy.include_filter or {}),
            exclude=dict(policy.exclude_filter or {}),
            retention_value=policy.retention_value,
            retention_unit=policy.retention_unit,
            retention_from_field=policy.retention_from_field,
            action=policy.action,
            schedule=policy.schedule,
            category=policy.category,
            compliance_basis=policy.compliance_basis,
            batch_size=policy.batch_size,
            priority=policy.priority,
            is_active=policy.is_active,
            created_at=policy.created_at,
            created_by=policy.created_by,
            superseded_at=policy.superseded_at,
        )

    @property
    def retention_period(self) -> timedelta:
        return timedelta(days=retention_days(self.retention_value, self.retention_unit))

    def scan_scope(self, now: datetime) -> ScanScope:
        """Scan scope for records whose retention has elapsed at `now`."""
        return ScanScope(
            entity_type=self.entity_type,
            include=self.include,
            exclude=self.exclude,
            timestamp_field=self.retention_from_field,
            older_than=now - self.retention_period,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_version_id": str(self.policy_version_id),
            "policy_id": str(self.policy_id),
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "entity_type": self.entity_type,
            "include": self.include,
            "exclude": self.exclude,
            "retention_value": self.retention_value,
            "retention_unit": self.retention_unit.value,
            "retention_from_field": self.retention_from_field,
            "action": self.action.value,
            "schedule": self.schedule,
            "category": self.category.value,
            "compliance_basis": self.compliance_basis,
            "batch_size": self.batch_size,
            "priority": self.priority,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "created_by": self.created_by,
            "superseded_at": self.superseded_at.isoformat() if self.superseded_at else None,
        }


@dataclass(frozen=True, slots=True)
class PolicyPreview:
    """What a policy would do right now, without doing it."""

    policy_id: uuid.UUID
    version: int
    scanned_count: int
    eligible_count: int
    sample_record_ids: list[str]
    truncated: bool
    risk_notes: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_id": str(self.policy_id),
            "version": self.version,
            "scanned_count": self.scanned_count,
            "eligible_count": self.eligible_count,
            "sample_record_ids": list(self.sample_record_ids),
            "truncated": self.truncated,
            "risk_notes": list(self.risk_notes),
        }


# =============================================================================
# Eligibility (pure)
# =============================================================================


def retention_days(value: int, unit: RetentionUnit) -> int:
    """Retention period in days (months are 30 days, years 365)."""
    return value * DAYS_PER_UNIT[unit]


def parse_timestamp(value: Any) -> datetime | None:
    """Interpret a record attribute as an aware UTC datetime.

    Accepts datetimes (naive values are taken as UTC) and ISO 8601 strings.
    Anything else yields None.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def retention_deadline(policy: PolicyVersion, record: Record) -> datetime | None:
    """When the record's retention under this policy ends.

    None when the record lacks a usable timestamp; such records are never
    eligible.
    """
    start = parse_timestamp(record.attributes.get(policy.retention_from_field))
    if start is None:
        return None
    return start + policy.retention_period


def _condition_matches(expected: Any, actual: Any) -> bool:
    if isinstance(expected, list):
        return actual in expected
    return actual == expected


def matches_scope(policy: PolicyVersion, record: Record) -> bool:
    """True if the record falls within the policy's entity type and filter."""
    if record.ref.entity_type != policy.entity_type:
        return False
    for name, expected in policy.include.items():
        if not _condition_matches(expected, record.attributes.get(name)):
            return False
    for name, expected in policy.exclude.items():
        if name in record.attributes and _condition_matches(expected, record.attributes[name]):
            return False
    return True


def is_eligible(policy: PolicyVersion, record: Record, now: datetime) -> bool:
    """True if the policy requires its action on this record at `now`."""
    if not matches_scope(policy, record):
        return False
    deadline = retention_deadline(policy, record)
    return deadline is not None and deadline <= now


# =============================================================================
# Validation
# =============================================================================


def _coerce_enum(enum_cls: type, value: Any, label: str, errors: list[str]) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        errors.append(f"{label} must be one of: {allowed}")
        return None


def _check_filter(label: str, conditions: Any, errors: list[str]) -> None:
    if not isinstance(conditions, dict):
        errors.append(f"{label} must be a mapping of attribute to value(s)")
        return
    for name, expected in conditions.items():
        if not isinstance(name, str) or not name:
            errors.append(f"{label} has an empty attribute name")
        elif isinstance(expected, dict):
            errors.append(f"{label}.{name} must be a scalar or a list")


def validate_policy_spec(
    spec: PolicySpec,
    retention: RetentionSettings | None = None,
) -> tuple[RetentionUnit, DeletionAction, DataCategory]:
    """Validate a policy definition.

    Returns:
        The normalized (unit, action, category) enums.

    Raises:
        InvalidPolicySpec: Listing every problem found.
    """
    errors: list[str] = []

    if not spec.name or not spec.name.strip():
        errors.append("name must not be empty")
    if not spec.entity_type or not spec.entity_type.strip():
        errors.append("entity_type must not be empty")
    if not spec.retention_from_field:
        errors.append("retention_from_field must not be empty")
    if not isinstance(spec.retention_value, int) or spec.retention_value < 1:
        errors.append("retention_value must be a positive integer")
    if spec.batch_size is not None and spec.batch_size < 1:
        errors.append("batch_size must be positive")
    if not 1 <= spec.priority <= 10:
        errors.append("priority must be between 1 and 10")

    unit = _coerce_enum(RetentionUnit, spec.retention_unit, "retention_unit", errors)
    action = _coerce_enum(DeletionAction, spec.action, "action", errors)
    category = _coerce_enum(DataCategory, spec.category, "category", errors)

    try:
        parse_cadence(spec.schedule)
    except InvalidCadenceError as e:
        errors.append(str(e))

    _check_filter("include", spec.include, errors)
    _check_filter("exclude", spec.exclude, errors)

    if retention is not None and unit is not None and isinstance(spec.retention_value, int):
        days = retention_days(spec.retention_value, unit)
        if category == DataCategory.MEDICAL_DATA and days < retention.medical_minimum_days:
            errors.append(
                f"medical_data requires at least {retention.medical_minimum_days} days "
                f"of retention (got {days})"
            )
        if (
            category == DataCategory.PERSONAL_DATA
            and retention.gdpr_maximum_days is not None
            and days > retention.gdpr_maximum_days
        ):
            errors.append(
                f"personal_data may be retained at most {retention.gdpr_maximum_days} days "
                f"(got {days})"
            )

    if errors:
        raise InvalidPolicySpec(errors)
    return unit, action, category


# =============================================================================
# Store
# =============================================================================


class PolicyStore:
    """Service for versioned retention policies.

    Methods flush but never commit; the caller owns the transaction so the
    policy row and its audit entry become durable together.
    """

    def __init__(
        self,
        session: AsyncSession,
        keyring: KeyRing,
        *,
        retention: RetentionSettings | None = None,
    ) -> None:
        self._session = session
        self._audit = AuditLogService(session, keyring)
        self._retention = retention

    def _build_row(
        self,
        spec: PolicySpec,
        *,
        policy_id: uuid.UUID,
        version: int,
        created_by: str,
    ) -> RetentionPolicy:
        unit, action, category = validate_policy_spec(spec, self._retention)
        return RetentionPolicy(
            policy_version_id=uuid.uuid4(),
            policy_id=policy_id,
            version=version,
            created_at=utcnow(),
            name=spec.name.strip(),
            description=spec.description,
            entity_type=spec.entity_type.strip(),
            include_filter=dict(spec.include),
            exclude_filter=dict(spec.exclude),
            retention_value=spec.retention_value,
            retention_unit=unit,
            retention_from_field=spec.retention_from_field,
            action=action,
            schedule=spec.schedule.strip(),
            category=category,
            compliance_basis=spec.compliance_basis,
            batch_size=spec.batch_size,
            priority=spec.priority,
            is_active=True,
            created_by=created_by,
        )

    async def create_policy(self, spec: PolicySpec, *, created_by: str) -> PolicyVersion:
        """Create version 1 of a new policy.

        Raises:
            InvalidPolicySpec: If the definition is malformed.
        """
        row = self._build_row(spec, policy_id=uuid.uuid4(), version=1, created_by=created_by)
        self._session.add(row)
        await self._session.flush()

        policy = PolicyVersion.from_model(row)
        logger.info(
            "Policy created: policy_id=%s name=%s entity_type=%s action=%s",
            policy.policy_id,
            policy.name,
            policy.entity_type,
            policy.action.value,
        )
        await self._audit.record(
            AuditEventType.POLICY_CREATED,
            actor=created_by,
            resource_type="policy",
            resource_id=str(policy.policy_id),
            details={"version": 1, "definition": policy.to_dict()},
        )
        return policy

    async def update_policy(
        self,
        policy_id: uuid.UUID,
        spec: PolicySpec,
        *,
        updated_by: str,
    ) -> PolicyVersion:
        """Create version n+1 and deactivate version n.

        Raises:
            InvalidPolicySpec: If the definition is malformed.
            PolicyNotFoundError: If the policy does not exist.
            PolicyConflictError: If the policy is inactive or was updated
                concurrently.
        """
        current = await self._get_active_row(policy_id)
        if current is None:
            if not await self.list_versions(policy_id):
                raise PolicyNotFoundError(f"Policy not found: {policy_id}")
            raise PolicyConflictError(f"Policy {policy_id} is deactivated")

        row = self._build_row(
            spec,
            policy_id=policy_id,
            version=current.version + 1,
            created_by=updated_by,
        )

        try:
            async with self._session.begin_nested():
                result = await self._session.execute(
                    update(RetentionPolicy)
                    .where(
                        RetentionPolicy.policy_version_id == current.policy_version_id,
                        RetentionPolicy.is_active.is_(True),
                    )
                    .values(is_active=False, superseded_at=row.created_at)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    msg = f"Policy {policy_id} was changed concurrently"
                    raise PolicyConflictError(msg)
                self._session.add(row)
                await self._session.flush()
        except IntegrityError as e:
            msg = f"Policy {policy_id} was changed concurrently"
            raise PolicyConflictError(msg) from e
        await self._session.refresh(current)

        policy = PolicyVersion.from_model(row)
        logger.info(
            "Policy updated: policy_id=%s version=%d->%d",
            policy_id,
            current.version,
            policy.version,
        )
        await self._audit.record(
            AuditEventType.POLICY_UPDATED,
            actor=updated_by,
            resource_type="policy",
            resource_id=str(policy_id),
            details={
                "from_version": current.version,
                "version": policy.version,
                "definition": policy.to_dict(),
            },
        )
        return policy

    async def deactivate_policy(
        self,
        policy_id: uuid.UUID,
        *,
        deactivated_by: str,
    ) -> PolicyVersion:
        """Mark the active version inactive. Policies are never deleted.

        Raises:
            PolicyNotFoundError: If the policy does not exist.
            PolicyConflictError: If the policy is already inactive.
        """
        current = await self._get_active_row(policy_id)
        if current is None:
            if not await self.list_versions(policy_id):
                raise PolicyNotFoundError(f"Policy not found: {policy_id}")
            raise PolicyConflictError(f"Policy {policy_id} is already inactive")

        result = await self._session.execute(
            update(RetentionPolicy)
            .where(
                RetentionPolicy.policy_version_id == current.policy_version_id,
                RetentionPolicy.is_active.is_(True),
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise PolicyConflictError(f"Policy {policy_id} was changed concurrently")
        await self._session.refresh(current)

        logger.info("Policy deactivated: policy_id=%s version=%d", policy_id, current.version)
        await self._audit.record(
            AuditEventType.POLICY_DEACTIVATED,
            actor=deactivated_by,
            resource_type="policy",
            resource_id=str(policy_id),
            details={"version": current.version},
        )
        return PolicyVersion.from_model(current)

    async def get_active_policies(self, *, entity_type: str | None = None) -> list[PolicyVersion]:
        """Active versions, highest priority (lowest number) first."""
        query = select(RetentionPolicy).where(RetentionPolicy.is_active.is_(True))
        if entity_type:
            query = query.where(RetentionPolicy.entity_type == entity_type)
        query = query.order_by(RetentionPolicy.priority, RetentionPolicy.name)
        result = await self._session.execute(query)
        return [PolicyVersion.from_model(row) for row in result.scalars().all()]

    async def list_policies(self, *, include_inactive: bool = False) -> list[PolicyVersion]:
        """Latest version of every policy (active only unless asked otherwise)."""
        if not include_inactive:
            return await self.get_active_policies()
        query = (
            select(RetentionPolicy)
            .where(RetentionPolicy.superseded_at.is_(None))
            .order_by(RetentionPolicy.priority, RetentionPolicy.name)
        )
        result = await self._session.execute(query)
        return [PolicyVersion.from_model(row) for row in result.scalars().all()]

    async def get_policy_version(self, policy_id: uuid.UUID, version: int) -> PolicyVersion:
        """Fetch one specific version.

        Raises:
            PolicyNotFoundError: If that version does not exist.
        """
        query = select(RetentionPolicy).where(
            RetentionPolicy.policy_id == policy_id,
            RetentionPolicy.version == version,
        )
        result = await self._session.execute(query)
        row = result.scalar_one_or_none()
        if row is None:
            raise PolicyNotFoundError(f"Policy version not found: {policy_id} v{version}")
        return PolicyVersion.from_model(row)

    async def get_active_version(self, policy_id: uuid.UUID) -> PolicyVersion | None:
        row = await self._get_active_row(policy_id)
        return PolicyVersion.from_model(row) if row else None

    async def list_versions(self, policy_id: uuid.UUID) -> list[PolicyVersion]:
        query = (
            select(RetentionPolicy)
            .where(RetentionPolicy.policy_id == policy_id)
            .order_by(RetentionPolicy.version)
        )
        result = await self._session.execute(query)
        return [PolicyVersion.from_model(row) for row in result.scalars().all()]

    async def preview(
        self,
        policy_id: uuid.UUID,
        record_store: RecordStore,
        *,
        now: datetime | None = None,
        sample_size: int = 10,
        max_scanned: int = PREVIEW_MAX_SCANNED,
    ) -> PolicyPreview:
        """Count the records the active version would act on right now.

        Read-only: no action is applied and nothing is certified.

        Raises:
            PolicyNotFoundError: If the policy has no active version.
        """
        policy = await self.get_active_version(policy_id)
        if policy is None:
            raise PolicyNotFoundError(f"No active version for policy {policy_id}")

        now = now or utcnow()
        scope = policy.scan_scope(now)
        cursor: str | None = None
        scanned = 0
        eligible = 0
        sample: list[str] = []
        truncated = False

        while True:
            page = await record_store.scan(scope, cursor, PREVIEW_PAGE_SIZE)
            for record in page.records:
                scanned += 1
                if is_eligible(policy, record, now):
                    eligible += 1
                    if len(sample) < sample_size:
                        sample.append(record.ref.record_id)
            cursor = page.next_cursor
            if cursor is None:
                break
            if scanned >= max_scanned:
                truncated = True
                break

        risk_notes = []
        if eligible > LARGE_DATASET_THRESHOLD:
            risk_notes.append("Large dataset: consider a smaller batch size")
        if policy.category == DataCategory.MEDICAL_DATA:
            risk_notes.append("Medical data: confirm minimum retention obligations are met")
        if policy.action == DeletionAction.HARD_DELETE:
            risk_notes.append("Hard delete is irreversible")
        if truncated:
            risk_notes.append(f"Preview stopped after scanning {scanned} records")

        return PolicyPreview(
            policy_id=policy.policy_id,
            version=policy.version,
            scanned_count=scanned,
            eligible_count=eligible,
            sample_record_ids=sample,
            truncated=truncated,
            risk_notes=risk_notes,
        )

    async def _get_active_row(self, policy_id: uuid.UUID) -> RetentionPolicy | None:
        query = select(RetentionPolicy).where(
            RetentionPolicy.policy_id == policy_id,
            RetentionPolicy.is_active.is_(True),
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none()
