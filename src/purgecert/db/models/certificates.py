"""Deletion certificate model.

Certificates are the queryable index of the certificate ledger stream; the
proof itself is the chained, signed ledger entry they point at.
"""

from __future__ import annotations

# Required at runtime for SQLAlchemy type resolution
import uuid  # noqa: TC003
from datetime import datetime  # noqa: TC003

from sqlalchemy import BigInteger, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from purgecert.db.models.base import (
    Base,
    CertificateOutcome,
    DeletionAction,
    HashString,
    PortableUUID,
    UTCDateTime,
    UUIDPrimaryKey,
    enum_type,
)


class DeletionCertificate(Base):
    """Immutable per-record outcome of an execution run.

    idempotency_key is derived from (run_id, entity_type, record_id), so a
    replayed run can never certify the same record twice.
    """

    __tablename__ = "deletion_certificates"

    certificate_id: Mapped[UUIDPrimaryKey]
    idempotency_key: Mapped[HashString] = mapped_column(nullable=False, unique=True)

    # Non-owning back reference to the run
    run_id: Mapped[uuid.UUID] = mapped_column(PortableUUID(), nullable=False)
    policy_id: Mapped[uuid.UUID] = mapped_column(PortableUUID(), nullable=False)
    policy_version: Mapped[int] = mapped_column(nullable=False)

    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    record_id: Mapped[str] = mapped_column(String(255), nullable=False)

    action: Mapped[DeletionAction] = mapped_column(
        enum_type(DeletionAction, "deletion_action"),
        nullable=False,
    )
    outcome: Mapped[CertificateOutcome] = mapped_column(
        enum_type(CertificateOutcome, "certificate_outcome"),
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(nullable=False, default=0)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # Ledger proof
    ledger_entry_id: Mapped[uuid.UUID] = mapped_column(
        PortableUUID(),
        ForeignKey("ledger_entries.entry_id", ondelete="RESTRICT"),
        nullable=False,
    )
    ledger_seq_no: Mapped[int] = mapped_column(BigInteger, nullable=False)
    content_hash: Mapped[HashString] = mapped_column(nullable=False)
    prev_hash: Mapped[HashString] = mapped_column(nullable=False)
    entry_hash: Mapped[HashString] = mapped_column(nullable=False)
    signature: Mapped[str] = mapped_column(Text, nullable=False)
    key_id: Mapped[str] = mapped_column(String(100), nullable=False)

    __table_args__ = (
        Index("ix_deletion_certificates_run_id", "run_id"),
        Index("ix_deletion_certificates_policy_id", "policy_id"),
        Index("ix_deletion_certificates_record", "entity_type", "record_id"),
        Index("ix_deletion_certificates_outcome", "outcome"),
    )
