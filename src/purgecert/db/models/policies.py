"""Retention policy versions.

Each row is one immutable version of a policy. Editing a policy inserts a
new version and deactivates the previous one, so history is never lost.
"""

from __future__ import annotations

# Required at runtime for SQLAlchemy type resolution
import uuid  # noqa: TC003
from typing import Any

from sqlalchemy import Index, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from purgecert.db.models.base import (
    Base,
    DataCategory,
    DeletionAction,
    OptionalTimestampTZ,
    PortableJSON,
    PortableUUID,
    RetentionUnit,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_type,
)


class RetentionPolicy(Base):
    """One version of a retention policy.

    policy_id is stable across versions; (policy_id, version) is unique and at
    most one version per policy_id is active at a time.
    """

    __tablename__ = "retention_policies"

    policy_version_id: Mapped[UUIDPrimaryKey]
    policy_id: Mapped[uuid.UUID] = mapped_column(PortableUUID(), nullable=False)
    version: Mapped[int] = mapped_column(nullable=False)
    created_at: Mapped[TimestampTZ]

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Scope: which entity type and which records of it
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    include_filter: Mapped[dict[str, Any]] = mapped_column(
        PortableJSON(), nullable=False, default=dict
    )
    exclude_filter: Mapped[dict[str, Any]] = mapped_column(
        PortableJSON(), nullable=False, default=dict
    )

    # Retention period measured from a record timestamp field
    retention_value: Mapped[int] = mapped_column(nullable=False)
    retention_unit: Mapped[RetentionUnit] = mapped_column(
        enum_type(RetentionUnit, "retention_unit"),
        nullable=False,
        default=RetentionUnit.DAYS,
    )
    retention_from_field: Mapped[str] = mapped_column(
        String(100), nullable=False, default="created_at"
    )

    action: Mapped[DeletionAction] = mapped_column(
        enum_type(DeletionAction, "deletion_action"),
        nullable=False,
    )

    # Cadence expression (@daily, every 6h, ...)
    schedule: Mapped[str] = mapped_column(String(100), nullable=False)

    category: Mapped[DataCategory] = mapped_column(
        enum_type(DataCategory, "data_category"),
        nullable=False,
        default=DataCategory.PERSONAL_DATA,
    )
    compliance_basis: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Optional per-policy page size; falls back to the engine default
    batch_size: Mapped[int | None] = mapped_column(nullable=True)
    priority: Mapped[int] = mapped_column(nullable=False, default=5)

    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    superseded_at: Mapped[OptionalTimestampTZ]
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)

    __table_args__ = (
        UniqueConstraint("policy_id", "version", name="uq_retention_policies_policy_version"),
        # At most one active version per policy
        Index(
            "uq_retention_policies_active_policy",
            "policy_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_retention_policies_entity_type", "entity_type"),
        Index("ix_retention_policies_is_active", "is_active"),
    )
