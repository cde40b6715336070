"""Deletion certificate issuance.

A certificate is the immutable, signed proof of what happened to one record
in one execution run. Issuing one appends a ledger entry on the certificate
stream and stores the certificate row pointing at it, in a single savepoint.

Issuance is idempotent per (run, record): the idempotency key is a hash of
run_id, entity_type and record_id, and a unique constraint on it resolves
concurrent or replayed issuance to the certificate that was stored first.

verify_certificate rechecks a stored certificate against its ledger entry,
so a single certificate can be proven without verifying the whole stream.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from purgecert.db.models.base import CertificateOutcome, LedgerStream, utcnow
from purgecert.db.models.certificates import DeletionCertificate
from purgecert.services.ledger import HashChainLedger
from purgecert.verification import GENESIS_HASH, verify_entries

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from purgecert.db.models.base import DeletionAction
    from purgecert.services.policies import PolicyVersion
    from purgecert.services.record_store import RecordRef
    from purgecert.services.signing import KeyRing

logger = logging.getLogger(__name__)

CERTIFICATE_ENTRY_TYPE = "deletion_certificate"


class CertificationError(Exception):
    """Base exception for certification errors."""

    pass


class CertificateNotFoundError(CertificationError):
    """Raised when a requested certificate does not exist."""

    pass


def idempotency_key(run_id: uuid.UUID, ref: RecordRef) -> str:
    """Deterministic key identifying the certificate of one record in one run."""
    material = f"{run_id}|{ref.entity_type}|{ref.record_id}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class CertificateInfo:
    """Detached view of a deletion certificate with its ledger proof."""

    certificate_id: uuid.UUID
    idempotency_key: str
    run_id: uuid.UUID
    policy_id: uuid.UUID
    policy_version: int
    entity_type: str
    record_id: str
    action: DeletionAction
    outcome: CertificateOutcome
    attempts: int
    detail: str | None
    issued_at: datetime
    ledger_seq_no: int
    content_hash: str
    prev_hash: str
    entry_hash: str
    signature: str
    key_id: str

    @classmethod
    def from_model(cls, cert: DeletionCertificate) -> CertificateInfo:
        return cls(
            certificate_id=cert.certificate_id,
            idempotency_key=cert.idempotency_key,
            run_id=cert.run_id,
            policy_id=cert.policy_id,
            policy_version=cert.policy_version,
            entity_type=cert.entity_type,
            record_id=cert.record_id,
            action=cert.action,
            outcome=cert.outcome,
            attempts=cert.attempts,
            detail=cert.detail,
            issued_at=cert.issued_at,
            ledger_seq_no=cert.ledger_seq_no,
            content_hash=cert.content_hash,
            prev_hash=cert.prev_hash,
            entry_hash=cert.entry_hash,
            signature=cert.signature,
            key_id=cert.key_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "certificate_id": str(self.certificate_id),
            "idempotency_key": self.idempotency_key,
            "run_id": str(self.run_id),
            "policy_id": str(self.policy_id),
            "policy_version": self.policy_version,
            "entity_type": self.entity_type,
            "record_id": self.record_id,
            "action": self.action.value,
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "detail": self.detail,
            "issued_at": self.issued_at.isoformat(),
            "ledger_seq_no": self.ledger_seq_no,
            "content_hash": self.content_hash,
            "prev_hash": self.prev_hash,
            "entry_hash": self.entry_hash,
            "signature": self.signature,
            "key_id": self.key_id,
        }


@dataclass(frozen=True, slots=True)
class CertificateVerification:
    """Result of checking one certificate against its ledger entry.

    Attributes:
        certificate_id: The certificate checked.
        valid: True if every check passed.
        ledger_seq_no: Certificate stream position the row points at.
        key_id: Key the row claims signed the entry.
        checks: Name of each check performed, in order.
        errors: Human-readable description of each failure.
    """

    certificate_id: uuid.UUID
    valid: bool
    ledger_seq_no: int
    key_id: str
    checks: list[str]
    errors: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "certificate_id": str(self.certificate_id),
            "valid": self.valid,
            "ledger_seq_no": self.ledger_seq_no,
            "key_id": self.key_id,
            "checks": list(self.checks),
            "errors": list(self.errors),
        }


def _payload_of(cert: DeletionCertificate) -> dict[str, Any]:
    """Fields of the signed payload as the certificate row states them."""
    return {
        "certificate_id": str(cert.certificate_id),
        "idempotency_key": cert.idempotency_key,
        "run_id": str(cert.run_id),
        "policy_id": str(cert.policy_id),
        "policy_version": cert.policy_version,
        "entity_type": cert.entity_type,
        "record_id": cert.record_id,
        "action": cert.action.value,
        "outcome": cert.outcome.value,
        "attempts": cert.attempts,
        "detail": cert.detail,
    }


class CertificationService:
    """Builds, signs and stores deletion certificates.

    Example:
        service = CertificationService(session, keyring)
        cert = await service.issue_certificate(
            run_id,
            policy,
            RecordRef("reflection", "r-1"),
            CertificateOutcome.EXECUTED,
            attempts=1,
        )
        await session.commit()
    """

    def __init__(
        self,
        session: AsyncSession,
        keyring: KeyRing,
        *,
        issuer: str | None = None,
    ) -> None:
        self._session = session
        self._keyring = keyring
        self._ledger = HashChainLedger(session, keyring)
        self._issuer = issuer

    async def issue_certificate(
        self,
        run_id: uuid.UUID,
        policy: PolicyVersion,
        ref: RecordRef,
        outcome: CertificateOutcome,
        *,
        attempts: int = 0,
        detail: str | None = None,
    ) -> CertificateInfo:
        """Issue the certificate for one record of a run.

        Returns the already stored certificate if one exists for the same
        (run, record); a replay never produces a second ledger entry.
        """
        key = idempotency_key(run_id, ref)
        existing = await self.find_by_idempotency_key(key)
        if existing is not None:
            logger.debug("Certificate already issued: run_id=%s record=%s", run_id, ref)
            return existing

        issued_at = utcnow()
        certificate_id = uuid.uuid4()
        payload = {
            "certificate_id": str(certificate_id),
            "idempotency_key": key,
            "run_id": str(run_id),
            "policy_id": str(policy.policy_id),
            "policy_version": policy.version,
            "entity_type": ref.entity_type,
            "record_id": ref.record_id,
            "action": policy.action.value,
            "outcome": outcome.value,
            "attempts": attempts,
            "detail": detail,
            "issued_at": issued_at.isoformat(),
        }
        if self._issuer:
            payload["issuer"] = self._issuer

        try:
            async with self._session.begin_nested():
                entry = await self._ledger.append(
                    LedgerStream.CERTIFICATES,
                    CERTIFICATE_ENTRY_TYPE,
                    payload,
                )
                cert = DeletionCertificate(
                    certificate_id=certificate_id,
                    idempotency_key=key,
                    run_id=run_id,
                    policy_id=policy.policy_id,
                    policy_version=policy.version,
                    entity_type=ref.entity_type,
                    record_id=ref.record_id,
                    action=policy.action,
                    outcome=outcome,
                    attempts=attempts,
                    detail=detail,
                    issued_at=issued_at,
                    ledger_entry_id=entry.entry_id,
                    ledger_seq_no=entry.seq_no,
                    content_hash=entry.content_hash,
                    prev_hash=entry.prev_hash,
                    entry_hash=entry.entry_hash,
                    signature=entry.signature,
                    key_id=entry.key_id,
                )
                self._session.add(cert)
                await self._session.flush()
        except IntegrityError:
            existing = await self.find_by_idempotency_key(key)
            if existing is None:
                raise
            logger.info("Certificate issued concurrently: run_id=%s record=%s", run_id, ref)
            return existing

        logger.info(
            "Certificate issued: run_id=%s record=%s outcome=%s attempts=%d seq_no=%d",
            run_id,
            ref,
            outcome.value,
            attempts,
            entry.seq_no,
        )
        return CertificateInfo.from_model(cert)

    async def find_by_idempotency_key(self, key: str) -> CertificateInfo | None:
        query = select(DeletionCertificate).where(DeletionCertificate.idempotency_key == key)
        result = await self._session.execute(query)
        cert = result.scalar_one_or_none()
        return CertificateInfo.from_model(cert) if cert else None

    async def find_for_record(self, run_id: uuid.UUID, ref: RecordRef) -> CertificateInfo | None:
        return await self.find_by_idempotency_key(idempotency_key(run_id, ref))

    async def get_certificate(self, certificate_id: uuid.UUID) -> CertificateInfo:
        cert = await self._session.get(DeletionCertificate, certificate_id)
        if cert is None:
            raise CertificateNotFoundError(f"Certificate not found: {certificate_id}")
        return CertificateInfo.from_model(cert)

    async def verify_certificate(self, certificate_id: uuid.UUID) -> CertificateVerification:
        """Check a stored certificate against the ledger entry it points at.

        Recomputes the entry's content and entry hashes, its link to the
        preceding certificate entry and its signature under the recorded
        key, checks the key was active when the entry was recorded, and
        compares the row's proof fields and signed payload with the entry.

        Raises:
            CertificateNotFoundError: If the certificate does not exist.
        """
        cert = await self._session.get(DeletionCertificate, certificate_id)
        if cert is None:
            raise CertificateNotFoundError(f"Certificate not found: {certificate_id}")

        checks: list[str] = []
        errors: list[str] = []

        checks.append("ledger_entry")
        entry = await self._ledger.get_entry(LedgerStream.CERTIFICATES, cert.ledger_seq_no)
        if entry is None:
            errors.append(f"No certificate ledger entry at seq_no={cert.ledger_seq_no}")
        else:
            if entry.entry_id != cert.ledger_entry_id:
                errors.append(f"Ledger entry at seq_no={cert.ledger_seq_no} is not the one issued")

            checks.append("proof_fields")
            for name in ("content_hash", "prev_hash", "entry_hash", "signature", "key_id"):
                if getattr(cert, name) != getattr(entry, name):
                    errors.append(f"Certificate {name} does not match the ledger entry")

            checks.append("chain")
            if entry.seq_no == 1:
                expected_prev: str | None = GENESIS_HASH
            else:
                predecessor = await self._ledger.get_entry(
                    LedgerStream.CERTIFICATES, entry.seq_no - 1
                )
                expected_prev = predecessor.entry_hash if predecessor else None
                if predecessor is None:
                    errors.append(f"Preceding entry seq_no={entry.seq_no - 1} is missing")
            chain = verify_entries(
                [entry.to_dict()],
                await self._keyring.get_public_keys(self._session),
                expected_prev_hash=expected_prev,
                stream=LedgerStream.CERTIFICATES.value,
                key_validity=await self._keyring.get_key_validity(self._session),
            )
            errors.extend(chain.errors)

            checks.append("payload")
            errors.extend(self._payload_mismatches(cert, entry.content))

        result = CertificateVerification(
            certificate_id=cert.certificate_id,
            valid=not errors,
            ledger_seq_no=cert.ledger_seq_no,
            key_id=cert.key_id,
            checks=checks,
            errors=errors,
        )
        if result.valid:
            logger.info("Certificate verified: certificate_id=%s", certificate_id)
        else:
            logger.error(
                "Certificate verification FAILED: certificate_id=%s errors=%d",
                certificate_id,
                len(errors),
            )
        return result

    @staticmethod
    def _payload_mismatches(cert: DeletionCertificate, content: str) -> list[str]:
        try:
            payload = json.loads(content)["payload"]
        except (TypeError, ValueError, KeyError):
            return ["Ledger entry content has no readable payload"]
        if not isinstance(payload, dict):
            return ["Ledger entry content has no readable payload"]

        errors = [
            f"Certificate {name} differs from the signed payload"
            for name, value in _payload_of(cert).items()
            if payload.get(name) != value
        ]
        try:
            signed_at = datetime.fromisoformat(payload.get("issued_at", ""))
        except (TypeError, ValueError):
            signed_at = None
        if signed_at != cert.issued_at:
            errors.append("Certificate issued_at differs from the signed payload")
        return errors

    async def list_certificates(
        self,
        *,
        run_id: uuid.UUID | None = None,
        policy_id: uuid.UUID | None = None,
        entity_type: str | None = None,
        record_id: str | None = None,
        outcome: CertificateOutcome | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[CertificateInfo]:
        """Certificates matching all given filters, in ledger order."""
        query = select(DeletionCertificate)
        if run_id is not None:
            query = query.where(DeletionCertificate.run_id == run_id)
        if policy_id is not None:
            query = query.where(DeletionCertificate.policy_id == policy_id)
        if entity_type is not None:
            query = query.where(DeletionCertificate.entity_type == entity_type)
        if record_id is not None:
            query = query.where(DeletionCertificate.record_id == record_id)
        if outcome is not None:
            query = query.where(DeletionCertificate.outcome == outcome)
        query = query.order_by(DeletionCertificate.ledger_seq_no).limit(limit).offset(offset)

        result = await self._session.execute(query)
        return [CertificateInfo.from_model(cert) for cert in result.scalars().all()]

    async def count_outcomes(self, run_id: uuid.UUID) -> dict[CertificateOutcome, int]:
        """Number of certificates per outcome for a run (zero-filled)."""
        query = (
            select(DeletionCertificate.outcome, func.count())
            .where(DeletionCertificate.run_id == run_id)
            .group_by(DeletionCertificate.outcome)
        )
        result = await self._session.execute(query)
        counts = dict.fromkeys(CertificateOutcome, 0)
        for outcome, count in result.all():
            counts[outcome] = count
        return counts

    async def outcomes_for_records(
        self,
        run_id: uuid.UUID,
        entity_type: str,
        record_ids: Iterable[str],
    ) -> dict[str, CertificateOutcome]:
        """record_id -> outcome for the given records in one run."""
        ids = list(record_ids)
        if not ids:
            return {}
        query = select(DeletionCertificate.record_id, DeletionCertificate.outcome).where(
            DeletionCertificate.run_id == run_id,
            DeletionCertificate.entity_type == entity_type,
            DeletionCertificate.record_id.in_(ids),
        )
        result = await self._session.execute(query)
        return {row.record_id: row.outcome for row in result.all()}
