"""Signing key material for the ledger.

Keys live in the database so every worker and API instance signs with the
same active key, and retired public keys stay available for verification.
"""

from __future__ import annotations

from sqlalchemy import Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from purgecert.db.models.base import (
    Base,
    KeyStatus,
    OptionalTimestampTZ,
    TimestampTZ,
    enum_type,
)


class SigningKey(Base):
    """ECDSA signing key (PEM encoded).

    private_key_pem is PKCS#8, encrypted when a key password is configured,
    and erased (NULL) once the key is retired.
    """

    __tablename__ = "signing_keys"

    key_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    created_at: Mapped[TimestampTZ]

    algorithm: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[KeyStatus] = mapped_column(
        enum_type(KeyStatus, "key_status"),
        nullable=False,
        default=KeyStatus.ACTIVE,
    )
    public_key_pem: Mapped[str] = mapped_column(Text, nullable=False)
    private_key_pem: Mapped[str | None] = mapped_column(Text, nullable=True)
    # SHA-256 of the DER SubjectPublicKeyInfo
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    is_encrypted: Mapped[bool] = mapped_column(nullable=False, default=False)

    retired_at: Mapped[OptionalTimestampTZ]
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)

    __table_args__ = (
        Index(
            "uq_signing_keys_active",
            "status",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )
