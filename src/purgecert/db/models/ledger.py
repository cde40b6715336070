"""Hash-chain ledger models: chained entries and per-stream tail pointers.

Covers deletion certificates and administrative audit entries, each in its
own stream. The head row is the single serialization point for appends: a
writer only wins if its conditional update sees the version it read.
"""

from __future__ import annotations

from sqlalchemy import BigInteger, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from purgecert.db.models.base import (
    Base,
    HashString,
    LedgerStream,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_type,
)


class LedgerHead(Base):
    """Tail pointer of one ledger stream.

    seq_no 0 with the genesis hash denotes an empty stream.
    """

    __tablename__ = "ledger_heads"

    stream: Mapped[LedgerStream] = mapped_column(
        enum_type(LedgerStream, "ledger_stream"),
        primary_key=True,
    )
    seq_no: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tail_hash: Mapped[HashString] = mapped_column(nullable=False)
    # Optimistic concurrency token, bumped on every append
    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[TimestampTZ]


class LedgerEntry(Base):
    """One signed, chained ledger entry.

    content holds the canonical JSON exactly as hashed, so verification is
    byte-exact and independent of database JSON normalization.
    """

    __tablename__ = "ledger_entries"

    entry_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    stream: Mapped[LedgerStream] = mapped_column(
        enum_type(LedgerStream, "ledger_stream"),
        nullable=False,
    )
    seq_no: Mapped[int] = mapped_column(BigInteger, nullable=False)
    entry_type: Mapped[str] = mapped_column(String(100), nullable=False)

    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[HashString] = mapped_column(nullable=False)
    prev_hash: Mapped[HashString] = mapped_column(nullable=False)
    entry_hash: Mapped[HashString] = mapped_column(nullable=False)

    # Base64 ECDSA signature over entry_hash, and the key that produced it
    signature: Mapped[str] = mapped_column(Text, nullable=False)
    key_id: Mapped[str] = mapped_column(String(100), nullable=False)

    __table_args__ = (
        UniqueConstraint("stream", "seq_no", name="uq_ledger_entries_stream_seq_no"),
        # A predecessor can be linked exactly once per stream
        UniqueConstraint("stream", "prev_hash", name="uq_ledger_entries_stream_prev_hash"),
        Index("ix_ledger_entries_entry_type", "entry_type"),
        Index("ix_ledger_entries_key_id", "key_id"),
    )
