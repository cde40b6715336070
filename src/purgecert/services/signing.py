"""Ledger signing keys.

Keys are ECDSA P-384 with SHA-384 signatures. They are persisted in the
signing_keys table (private key as PKCS#8 PEM, encrypted when a password is
configured) so every process signs with the same active key and retired
public keys remain available to verifiers.

The active key is looked up on every signature, so a rotation performed by
one process takes effect in every other process on its next append.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    BestAvailableEncryption,
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
)
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from purgecert.db.models.base import KeyStatus, utcnow
from purgecert.db.models.keys import SigningKey

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from purgecert.core.config import SigningSettings

logger = logging.getLogger(__name__)

SIGNATURE_ALGORITHM = "ECDSA-P384"


class SigningError(Exception):
    """Base exception for signing key errors."""

    pass


class KeyNotFoundError(SigningError):
    """Raised when a requested key is not found."""

    def __init__(self, key_id: str) -> None:
        super().__init__(f"Key not found: {key_id}")
        self.key_id = key_id


class KeyRotationConflictError(SigningError):
    """Raised when another process rotated the active key concurrently."""

    pass


@dataclass(frozen=True, slots=True)
class KeyInfo:
    """Public information about a signing key.

    Safe to expose via API - contains no private material.
    """

    key_id: str
    algorithm: str
    status: KeyStatus
    created_at: datetime
    retired_at: datetime | None
    fingerprint: str
    public_key_pem: str

    @classmethod
    def from_model(cls, key: SigningKey) -> KeyInfo:
        return cls(
            key_id=key.key_id,
            algorithm=key.algorithm,
            status=key.status,
            created_at=key.created_at,
            retired_at=key.retired_at,
            fingerprint=key.fingerprint,
            public_key_pem=key.public_key_pem,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "key_id": self.key_id,
            "algorithm": self.algorithm,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "retired_at": self.retired_at.isoformat() if self.retired_at else None,
            "fingerprint": self.fingerprint,
            "public_key_pem": self.public_key_pem,
        }


@dataclass(frozen=True, slots=True)
class Signature:
    """A base64 signature and the key that produced it."""

    key_id: str
    value: str


class KeyRing:
    """Database-backed signing key ring.

    Decrypted private keys are cached per key_id; which key is active is
    always read from the database.

    Example:
        keyring = KeyRing.from_settings(settings.signing)
        signature = await keyring.sign(session, entry_hash.encode("ascii"))
    """

    def __init__(self, *, key_password: bytes | None = None) -> None:
        self._key_password = key_password
        self._private_keys: dict[str, ec.EllipticCurvePrivateKey] = {}

    @classmethod
    def from_settings(cls, signing: SigningSettings) -> KeyRing:
        password = None
        if signing.key_password is not None:
            password = signing.key_password.get_secret_value().encode("utf-8")
        return cls(key_password=password)

    async def get_active_key(self, session: AsyncSession) -> SigningKey | None:
        query = select(SigningKey).where(SigningKey.status == KeyStatus.ACTIVE)
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def ensure_active_key(
        self,
        session: AsyncSession,
        *,
        created_by: str = "system",
    ) -> KeyInfo:
        """Return the active key, generating the first one if none exists.

        Two processes racing to create the first key collide on the partial
        unique index; the loser re-reads the winner's key.
        """
        key = await self.get_active_key(session)
        if key is not None:
            return KeyInfo.from_model(key)

        try:
            async with session.begin_nested():
                key = self._generate_key(created_by=created_by)
                session.add(key)
                await session.flush()
        except IntegrityError:
            logger.info("Active signing key created concurrently, reloading")
            key = await self.get_active_key(session)
            if key is None:
                raise
            return KeyInfo.from_model(key)

        logger.info("Generated signing key: key_id=%s fingerprint=%s", key.key_id, key.fingerprint)
        await self._audit(
            session,
            "signing_key_generated",
            {"key_id": key.key_id, "fingerprint": key.fingerprint, "created_by": created_by},
        )
        return KeyInfo.from_model(key)

    async def rotate_key(self, session: AsyncSession, *, rotated_by: str) -> KeyInfo:
        """Retire the active key and generate a new one.

        Entries signed before the rotation keep verifying under the retired
        key; the rotation itself is recorded in the audit stream, signed by
        the new key. The retired key's private half is erased so it cannot
        sign again.

        Raises:
            KeyRotationConflictError: If the active key changed concurrently.
        """
        current = await self.get_active_key(session)
        now = utcnow()

        if current is not None:
            result = await session.execute(
                update(SigningKey)
                .where(
                    SigningKey.key_id == current.key_id,
                    SigningKey.status == KeyStatus.ACTIVE,
                )
                .values(status=KeyStatus.RETIRED, retired_at=now, private_key_pem=None)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                msg = f"Signing key {current.key_id} was rotated concurrently"
                raise KeyRotationConflictError(msg)
            await session.refresh(current)
            self._private_keys.pop(current.key_id, None)

        new_key = self._generate_key(created_by=rotated_by)
        try:
            async with session.begin_nested():
                session.add(new_key)
                await session.flush()
        except IntegrityError as e:
            msg = "Another active signing key was created concurrently"
            raise KeyRotationConflictError(msg) from e

        logger.info(
            "Rotated signing key: old_key_id=%s new_key_id=%s rotated_by=%s",
            current.key_id if current else None,
            new_key.key_id,
            rotated_by,
        )
        await self._audit(
            session,
            "signing_key_rotated",
            {
                "old_key_id": current.key_id if current else None,
                "new_key_id": new_key.key_id,
                "fingerprint": new_key.fingerprint,
                "rotated_by": rotated_by,
            },
        )
        return KeyInfo.from_model(new_key)

    async def sign(self, session: AsyncSession, data: bytes) -> Signature:
        """Sign data with the current active key (generated on first use)."""
        key = await self.get_active_key(session)
        if key is None:
            await self.ensure_active_key(session)
            key = await self.get_active_key(session)
            if key is None:
                msg = "No active signing key available"
                raise SigningError(msg)

        private_key = self._load_private_key(key)
        signature = private_key.sign(data, ec.ECDSA(hashes.SHA384()))
        return Signature(key_id=key.key_id, value=base64.b64encode(signature).decode("ascii"))

    async def list_keys(self, session: AsyncSession) -> list[KeyInfo]:
        """All keys, active and retired, oldest first."""
        result = await session.execute(select(SigningKey).order_by(SigningKey.created_at))
        return [KeyInfo.from_model(key) for key in result.scalars().all()]

    async def get_key(self, session: AsyncSession, key_id: str) -> KeyInfo:
        key = await session.get(SigningKey, key_id)
        if key is None:
            raise KeyNotFoundError(key_id)
        return KeyInfo.from_model(key)

    async def get_public_keys(self, session: AsyncSession) -> dict[str, str]:
        """key_id -> PEM public key for every key ever used."""
        result = await session.execute(select(SigningKey.key_id, SigningKey.public_key_pem))
        return {row.key_id: row.public_key_pem for row in result.all()}

    async def get_key_validity(self, session: AsyncSession) -> dict[str, dict[str, str | None]]:
        """key_id -> {created_at, retired_at} as ISO strings (retired_at None while active)."""
        result = await session.execute(
            select(SigningKey.key_id, SigningKey.created_at, SigningKey.retired_at)
        )
        return {
            row.key_id: {
                "created_at": row.created_at.isoformat(),
                "retired_at": row.retired_at.isoformat() if row.retired_at else None,
            }
            for row in result.all()
        }

    def _load_private_key(self, key: SigningKey) -> ec.EllipticCurvePrivateKey:
        if key.status != KeyStatus.ACTIVE or key.private_key_pem is None:
            msg = f"Signing key {key.key_id} is retired and can no longer sign"
            raise SigningError(msg)

        cached = self._private_keys.get(key.key_id)
        if cached is not None:
            return cached

        password = self._key_password if key.is_encrypted else None
        if key.is_encrypted and password is None:
            msg = f"Signing key {key.key_id} is encrypted but no key password is configured"
            raise SigningError(msg)

        private_key = load_pem_private_key(key.private_key_pem.encode("utf-8"), password=password)
        if not isinstance(private_key, ec.EllipticCurvePrivateKey):
            msg = f"Unsupported key type: {type(private_key)}"
            raise SigningError(msg)

        self._private_keys[key.key_id] = private_key
        return private_key

    def _generate_key(self, *, created_by: str) -> SigningKey:
        private_key = ec.generate_private_key(ec.SECP384R1())
        created_at = utcnow()

        public_der = private_key.public_key().public_bytes(
            encoding=Encoding.DER,
            format=PublicFormat.SubjectPublicKeyInfo,
        )
        fingerprint = hashlib.sha256(public_der).hexdigest()
        public_pem = private_key.public_key().public_bytes(
            encoding=Encoding.PEM,
            format=PublicFormat.SubjectPublicKeyInfo,
        )

        if self._key_password:
            encryption = BestAvailableEncryption(self._key_password)
        else:
            encryption = NoEncryption()
        private_pem = private_key.private_bytes(
            encoding=Encoding.PEM,
            format=PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )

        key_id = f"ledger-{created_at:%Y%m%d%H%M%S}-{fingerprint[:12]}"
        self._private_keys[key_id] = private_key

        return SigningKey(
            key_id=key_id,
            created_at=created_at,
            algorithm=SIGNATURE_ALGORITHM,
            status=KeyStatus.ACTIVE,
            public_key_pem=public_pem.decode("ascii"),
            private_key_pem=private_pem.decode("ascii"),
            fingerprint=fingerprint,
            is_encrypted=bool(self._key_password),
            created_by=created_by,
        )

    async def _audit(self, session: AsyncSession, event_type: str, details: dict[str, Any]) -> None:
        # Import here to avoid circular import (audit log signs through this key ring)
        from purgecert.services.audit_log import AuditEventType, AuditLogService

        await AuditLogService(session, self).record(
            AuditEventType(event_type),
            actor=details.get("created_by") or details.get("rotated_by") or "system",
            resource_type="signing_key",
            resource_id=details.get("new_key_id") or details.get("key_id"),
            details=details,
        )
