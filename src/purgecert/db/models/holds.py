"""Legal hold model.

Holds are never deleted; releasing a hold stamps released_at/released_by so
the registry can still answer "was this record held at time t".
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import Any

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from purgecert.db.models.base import (
    Base,
    OptionalTimestampTZ,
    PortableJSON,
    TimestampTZ,
    UTCDateTime,
    UUIDPrimaryKey,
)


class LegalHold(Base):
    """A legal hold suspending retention actions for matching records.

    Scope fields narrow the hold; an empty field does not restrict. A hold
    with every scope field empty covers all records.
    """

    __tablename__ = "legal_holds"

    hold_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    # Scope
    entity_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    record_ids: Mapped[list[str]] = mapped_column(PortableJSON(), nullable=False, default=list)
    policy_ids: Mapped[list[str]] = mapped_column(PortableJSON(), nullable=False, default=list)
    # Attribute equality / membership match against record attributes
    match: Mapped[dict[str, Any]] = mapped_column(PortableJSON(), nullable=False, default=dict)

    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)

    starts_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    ends_at: Mapped[OptionalTimestampTZ]

    released_at: Mapped[OptionalTimestampTZ]
    released_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_legal_holds_entity_type", "entity_type"),
        Index("ix_legal_holds_starts_at", "starts_at"),
        Index("ix_legal_holds_released_at", "released_at"),
    )
