"""Base model definitions, portable column types and shared enums.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Column types that map to native PostgreSQL types and degrade to
  portable equivalents on SQLite
- Enum types used across multiple models
"""

import enum
import uuid
from datetime import UTC, datetime
from typing import Annotated, Any

from sqlalchemy import JSON, DateTime, MetaData, String
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, mapped_column
from sqlalchemy.types import TypeDecorator

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class PortableJSON(TypeDecorator):
    """JSON type that uses JSONB on PostgreSQL and JSON elsewhere."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())


class PortableUUID(TypeDecorator):
    """UUID type that uses native UUID on PostgreSQL and CHAR(36) elsewhere."""

    impl = String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value) if value else None


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC.

    PostgreSQL stores TIMESTAMPTZ natively. SQLite has no timezone support,
    so values are normalized to naive UTC on write and tagged as UTC on read.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name != "postgresql":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def enum_type(enum_cls: type[enum.Enum], name: str) -> SAEnum:
    """Enum column type persisting the lowercase member values."""
    return SAEnum(
        enum_cls,
        name=name,
        create_constraint=True,
        values_callable=_enum_values,
        validate_strings=True,
    )


# Common type annotations for columns
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(PortableUUID(), primary_key=True, default=uuid.uuid4),
]

TimestampTZ = Annotated[
    datetime,
    mapped_column(UTCDateTime(), default=utcnow, nullable=False),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(UTCDateTime(), nullable=True),
]

ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(255))]
LongString = Annotated[str, mapped_column(String(1000))]
HashString = Annotated[str, mapped_column(String(64))]


class Base(DeclarativeBase):
    """Declarative base for all purgecert models."""

    metadata = metadata
    type_annotation_map = {
        datetime: UTCDateTime(),
        uuid.UUID: PortableUUID(),
        dict[str, Any]: PortableJSON(),
        list[str]: PortableJSON(),
    }


# =============================================================================
# Common Enums
# =============================================================================


class RetentionUnit(enum.Enum):
    """Unit of a policy retention period.

    Months count as 30 days and years as 365 days.
    """

    DAYS = "days"
    MONTHS = "months"
    YEARS = "years"


class DataCategory(enum.Enum):
    """Classification of the data a policy governs.

    Values:
        PERSONAL_DATA: Identifiable personal information (GDPR bound)
        MEDICAL_DATA: Health information (minimum retention applies)
        FINANCIAL_DATA: Billing and payment records
        SYSTEM_DATA: Operational data
        AUDIT_DATA: Audit trails kept for compliance review
    """

    PERSONAL_DATA = "personal_data"
    MEDICAL_DATA = "medical_data"
    FINANCIAL_DATA = "financial_data"
    SYSTEM_DATA = "system_data"
    AUDIT_DATA = "audit_data"


class DeletionAction(enum.Enum):
    """Closed set of actions a policy can apply to an eligible record."""

    SOFT_DELETE = "soft_delete"
    HARD_DELETE = "hard_delete"
    ANONYMIZE = "anonymize"
    ARCHIVE = "archive"


class RunStatus(enum.Enum):
    """Execution run lifecycle.

    PENDING is the scheduler's in-memory decision before the run row is
    claimed; persisted runs start as RUNNING.

    Values:
        RUNNING: Claimed and processing (at most one per policy)
        COMPLETED: Every evaluated record received a non-failed certificate
        FAILED: No forward progress was possible (record store unreachable)
        PARTIALLY_COMPLETED: Cancelled, or some records failed after retries
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIALLY_COMPLETED = "partially_completed"


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.PARTIALLY_COMPLETED}
)


class RunTrigger(enum.Enum):
    """What started an execution run."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"
    RECOVERY = "recovery"


class CertificateOutcome(enum.Enum):
    """Per-record outcome recorded in a deletion certificate."""

    EXECUTED = "executed"
    SKIPPED_HOLD = "skipped_hold"
    SKIPPED_NOT_ELIGIBLE = "skipped_not_eligible"
    FAILED = "failed"


class LedgerStream(enum.Enum):
    """Independent hash chains kept in the ledger.

    Values:
        CERTIFICATES: Deletion certificates
        AUDIT: Administrative audit entries (policies, holds, runs, keys)
    """

    CERTIFICATES = "certificates"
    AUDIT = "audit"


class KeyStatus(enum.Enum):
    """Signing key lifecycle status.

    Retired keys no longer sign but stay available for verification.
    """

    ACTIVE = "active"
    RETIRED = "retired"


class JobStatus(enum.Enum):
    """Status of a background job.

    Values:
        PENDING: Job is waiting to be processed
        RUNNING: Job is currently being executed
        COMPLETED: Job finished successfully
        FAILED: Job failed after max retries
        CANCELLED: Job was manually cancelled
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
