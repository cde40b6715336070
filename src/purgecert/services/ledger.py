"""Hash-chain ledger service.

Append-only, signed hash chains stored in ledger_entries, one chain per
stream. The ledger_heads row of each stream is the tail pointer; an append
wins only if its conditional update sees the head version it read, so
concurrent writers across processes serialize without application locks.

Chain construction (see purgecert.verification):
    content_hash = SHA-256(canonical content)
    entry_hash   = SHA-256(content_hash || prev_hash)
    signature    = ECDSA-P384(entry_hash)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from purgecert.db.models.base import LedgerStream, utcnow
from purgecert.db.models.ledger import LedgerEntry, LedgerHead
from purgecert.verification import (
    EXPORT_FORMAT,
    GENESIS_HASH,
    ChainVerificationResult,
    ChainVerifier,
    canonicalize,
    compute_content_hash,
    compute_entry_hash,
)

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from purgecert.services.signing import KeyRing

logger = logging.getLogger(__name__)

DEFAULT_MAX_APPEND_ATTEMPTS = 10
VERIFY_CHUNK_SIZE = 1000


class LedgerError(Exception):
    """Base exception for ledger errors."""

    pass


class LedgerConflictError(LedgerError):
    """Raised when an append keeps losing the race for the stream head."""

    def __init__(self, stream: LedgerStream, attempts: int) -> None:
        super().__init__(f"Could not append to {stream.value} after {attempts} attempts")
        self.stream = stream
        self.attempts = attempts


class ChainIntegrityViolation(LedgerError):
    """Raised when a caller requires a valid chain and verification fails."""

    def __init__(self, stream: LedgerStream, result: ChainVerificationResult) -> None:
        super().__init__(
            f"Ledger stream {stream.value} failed verification at "
            f"seq_no={result.first_invalid_seq_no}"
        )
        self.stream = stream
        self.result = result


class _StaleHead(Exception):
    pass


@dataclass(frozen=True, slots=True)
class LedgerHeadState:
    """Snapshot of a stream's tail pointer."""

    stream: LedgerStream
    seq_no: int
    tail_hash: str
    version: int


@dataclass(frozen=True, slots=True)
class ChainedEntry:
    """An appended ledger entry with its proof fields."""

    entry_id: uuid.UUID
    stream: LedgerStream
    seq_no: int
    entry_type: str
    content: str
    content_hash: str
    prev_hash: str
    entry_hash: str
    signature: str
    key_id: str
    recorded_at: datetime

    @classmethod
    def from_model(cls, entry: LedgerEntry) -> ChainedEntry:
        return cls(
            entry_id=entry.entry_id,
            stream=entry.stream,
            seq_no=entry.seq_no,
            entry_type=entry.entry_type,
            content=entry.content,
            content_hash=entry.content_hash,
            prev_hash=entry.prev_hash,
            entry_hash=entry.entry_hash,
            signature=entry.signature,
            key_id=entry.key_id,
            recorded_at=entry.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the exported (verifiable) representation."""
        return {
            "entry_id": str(self.entry_id),
            "stream": self.stream.value,
            "seq_no": self.seq_no,
            "entry_type": self.entry_type,
            "content": self.content,
            "content_hash": self.content_hash,
            "prev_hash": self.prev_hash,
            "entry_hash": self.entry_hash,
            "signature": self.signature,
            "key_id": self.key_id,
            "recorded_at": self.recorded_at.isoformat(),
        }


class HashChainLedger:
    """Append-only signed hash chains.

    The ledger works within the caller's session and never commits; the
    entry becomes durable with the caller's transaction, together with the
    records (certificates, audit subjects) that reference it.

    Example:
        ledger = HashChainLedger(session, keyring)
        entry = await ledger.append(
            LedgerStream.CERTIFICATES,
            "deletion_certificate",
            {"record_id": "r-1", "outcome": "executed"},
        )
        await session.commit()
    """

    def __init__(
        self,
        session: AsyncSession,
        keyring: KeyRing,
        *,
        max_attempts: int = DEFAULT_MAX_APPEND_ATTEMPTS,
    ) -> None:
        self._session = session
        self._keyring = keyring
        self._max_attempts = max_attempts

    async def append(
        self,
        stream: LedgerStream,
        entry_type: str,
        payload: dict[str, Any],
    ) -> ChainedEntry:
        """Append a signed entry to the end of a stream.

        Raises:
            LedgerConflictError: If the head moved under every attempt.
        """
        # Generating the first key writes to the audit stream, do it before
        # reading any head.
        await self._keyring.ensure_active_key(self._session)

        for attempt in range(1, self._max_attempts + 1):
            head = await self._load_head(stream)
            seq_no = head.seq_no + 1
            recorded_at = utcnow()

            content = canonicalize(
                {
                    "stream": stream.value,
                    "seq_no": seq_no,
                    "entry_type": entry_type,
                    "recorded_at": recorded_at.isoformat(),
                    "payload": payload,
                }
            )
            content_hash = compute_content_hash(content)
            entry_hash = compute_entry_hash(content_hash, head.tail_hash)
            signature = await self._keyring.sign(self._session, entry_hash.encode("ascii"))

            entry = LedgerEntry(
                entry_id=uuid.uuid4(),
                created_at=recorded_at,
                stream=stream,
                seq_no=seq_no,
                entry_type=entry_type,
                content=content,
                content_hash=content_hash,
                prev_hash=head.tail_hash,
                entry_hash=entry_hash,
                signature=signature.value,
                key_id=signature.key_id,
            )

            try:
                async with self._session.begin_nested():
                    result = await self._session.execute(
                        update(LedgerHead)
                        .where(
                            LedgerHead.stream == stream,
                            LedgerHead.version == head.version,
                        )
                        .values(
                            seq_no=seq_no,
                            tail_hash=entry_hash,
                            version=head.version + 1,
                            updated_at=recorded_at,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise _StaleHead()
                    self._session.add(entry)
                    await self._session.flush()
            except (_StaleHead, IntegrityError):
                logger.debug(
                    "Ledger head moved, retrying: stream=%s seq_no=%d attempt=%d",
                    stream.value,
                    seq_no,
                    attempt,
                )
                continue

            logger.debug(
                "Ledger append: stream=%s seq_no=%d entry_type=%s key_id=%s",
                stream.value,
                seq_no,
                entry_type,
                signature.key_id,
            )
            return ChainedEntry.from_model(entry)

        logger.warning(
            "Ledger append gave up: stream=%s attempts=%d", stream.value, self._max_attempts
        )
        raise LedgerConflictError(stream, self._max_attempts)

    async def get_head(self, stream: LedgerStream) -> LedgerHeadState:
        """Current tail pointer (genesis state for an empty stream)."""
        head = await self._read_head(stream)
        if head is None:
            return LedgerHeadState(stream=stream, seq_no=0, tail_hash=GENESIS_HASH, version=0)
        return head

    async def get_entry(self, stream: LedgerStream, seq_no: int) -> ChainedEntry | None:
        query = select(LedgerEntry).where(
            LedgerEntry.stream == stream,
            LedgerEntry.seq_no == seq_no,
        )
        result = await self._session.execute(query)
        entry = result.scalar_one_or_none()
        return ChainedEntry.from_model(entry) if entry else None

    async def get_entries(
        self,
        stream: LedgerStream,
        *,
        start_seq: int | None = None,
        end_seq: int | None = None,
        entry_type: str | None = None,
        limit: int | None = None,
    ) -> list[ChainedEntry]:
        """Entries of a stream in sequence order, optionally bounded."""
        query = select(LedgerEntry).where(LedgerEntry.stream == stream)
        if start_seq is not None:
            query = query.where(LedgerEntry.seq_no >= start_seq)
        if end_seq is not None:
            query = query.where(LedgerEntry.seq_no <= end_seq)
        if entry_type is not None:
            query = query.where(LedgerEntry.entry_type == entry_type)
        query = query.order_by(LedgerEntry.seq_no)
        if limit is not None:
            query = query.limit(limit)

        result = await self._session.execute(query)
        return [ChainedEntry.from_model(entry) for entry in result.scalars().all()]

    async def verify(
        self,
        stream: LedgerStream,
        *,
        start_seq: int | None = None,
        end_seq: int | None = None,
        trusted_prev_hash: str | None = None,
    ) -> ChainVerificationResult:
        """Verify hashes, links and signatures of a stream (or a range of it).

        A full-stream verification also checks the tail pointer, which
        detects entries removed from the end. A range starting after the
        genesis links to trusted_prev_hash when given, otherwise to the
        stored predecessor entry.
        """
        public_keys = await self._keyring.get_public_keys(self._session)
        key_validity = await self._keyring.get_key_validity(self._session)

        first = start_seq if start_seq is not None else 1
        expected_prev: str | None
        if first <= 1:
            expected_prev = GENESIS_HASH
        elif trusted_prev_hash is not None:
            expected_prev = trusted_prev_hash
        else:
            predecessor = await self.get_entry(stream, first - 1)
            expected_prev = predecessor.entry_hash if predecessor else None

        verifier = ChainVerifier(
            public_keys=public_keys,
            expected_prev_hash=expected_prev,
            stream=stream.value,
            key_validity=key_validity,
        )
        cursor = first
        while True:
            chunk = await self.get_entries(
                stream,
                start_seq=cursor,
                end_seq=end_seq,
                limit=VERIFY_CHUNK_SIZE,
            )
            for entry in chunk:
                verifier.feed(entry.to_dict())
            if len(chunk) < VERIFY_CHUNK_SIZE:
                break
            cursor = chunk[-1].seq_no + 1

        if start_seq is None and end_seq is None:
            head = await self.get_head(stream)
            verifier.check_head(head.seq_no, head.tail_hash)

        result = verifier.result()
        if result.valid:
            logger.info(
                "Ledger verified: stream=%s checked_entries=%d",
                stream.value,
                result.checked_entries,
            )
        else:
            logger.error(
                "Ledger verification FAILED: stream=%s first_invalid_seq_no=%s errors=%d",
                stream.value,
                result.first_invalid_seq_no,
                len(result.errors),
            )
        return result

    async def export(self, stream: LedgerStream) -> dict[str, Any]:
        """Self-contained export for offline verification.

        Contains every entry of the stream, the tail pointer, all public
        keys (active and retired) and the window each key was active in.
        """
        head = await self.get_head(stream)
        entries = await self.get_entries(stream, end_seq=head.seq_no)
        public_keys = await self._keyring.get_public_keys(self._session)
        key_validity = await self._keyring.get_key_validity(self._session)
        return {
            "format": EXPORT_FORMAT,
            "stream": stream.value,
            "exported_at": utcnow().isoformat(),
            "head": {"seq_no": head.seq_no, "tail_hash": head.tail_hash},
            "public_keys": public_keys,
            "key_validity": key_validity,
            "entries": [entry.to_dict() for entry in entries],
        }

    async def _read_head(self, stream: LedgerStream) -> LedgerHeadState | None:
        # Column select so a head cached in the identity map is never reused
        query = select(LedgerHead.seq_no, LedgerHead.tail_hash, LedgerHead.version).where(
            LedgerHead.stream == stream
        )
        result = await self._session.execute(query)
        row = result.one_or_none()
        if row is None:
            return None
        return LedgerHeadState(
            stream=stream,
            seq_no=row.seq_no,
            tail_hash=row.tail_hash,
            version=row.version,
        )

    async def _load_head(self, stream: LedgerStream) -> LedgerHeadState:
        """Read the head, creating it at genesis on first use."""
        head = await self._read_head(stream)
        if head is not None:
            return head

        try:
            async with self._session.begin_nested():
                await self._session.execute(
                    insert(LedgerHead).values(
                        stream=stream,
                        seq_no=0,
                        tail_hash=GENESIS_HASH,
                        version=0,
                        updated_at=utcnow(),
                    )
                )
        except IntegrityError:
            logger.debug("Ledger head for %s created concurrently", stream.value)

        head = await self._read_head(stream)
        if head is None:
            msg = f"Ledger head for {stream.value} could not be created"
            raise LedgerError(msg)
        return head
