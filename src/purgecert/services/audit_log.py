"""Tamper-evident administrative audit log.

Audit entries are ledger entries on the audit stream: every policy change,
hold change, run transition and key rotation is chained and signed exactly
like a deletion certificate, so an operator cannot quietly rewrite the
history of who changed what.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from purgecert.db.models.base import LedgerStream
from purgecert.services.ledger import HashChainLedger

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from purgecert.services.ledger import ChainedEntry
    from purgecert.services.signing import KeyRing
    from purgecert.verification import ChainVerificationResult

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Audit event types for categorization and filtering."""

    # Policies
    POLICY_CREATED = "policy_created"
    POLICY_UPDATED = "policy_updated"
    POLICY_DEACTIVATED = "policy_deactivated"

    # Legal holds
    HOLD_CREATED = "hold_created"
    HOLD_RELEASED = "hold_released"

    # Execution runs
    EXECUTION_STARTED = "execution_started"
    EXECUTION_FINISHED = "execution_finished"
    EXECUTION_CANCEL_REQUESTED = "execution_cancel_requested"
    EXECUTION_RESUMED = "execution_resumed"

    # Keys and ledger
    SIGNING_KEY_GENERATED = "signing_key_generated"
    SIGNING_KEY_ROTATED = "signing_key_rotated"
    CHAIN_VERIFICATION_FAILED = "chain_verification_failed"


@dataclass(frozen=True, slots=True)
class AuditLogEntry:
    """Decoded audit stream entry.

    Attributes:
        seq_no: Position in the audit stream.
        event_type: Category of event.
        actor: Operator or component that caused the event.
        resource_type: Type of resource affected (policy, hold, run, ...).
        resource_id: Identifier of the affected resource.
        details: Event-specific payload.
        recorded_at: When the entry was appended.
        entry_hash: Chain hash of the entry.
    """

    seq_no: int
    event_type: str
    actor: str
    resource_type: str | None
    resource_id: str | None
    details: dict[str, Any]
    recorded_at: datetime
    entry_hash: str

    @classmethod
    def from_chained(cls, entry: ChainedEntry) -> AuditLogEntry:
        payload = json.loads(entry.content).get("payload", {})
        return cls(
            seq_no=entry.seq_no,
            event_type=entry.entry_type,
            actor=payload.get("actor", ""),
            resource_type=payload.get("resource_type"),
            resource_id=payload.get("resource_id"),
            details=payload.get("details", {}),
            recorded_at=entry.recorded_at,
            entry_hash=entry.entry_hash,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq_no": self.seq_no,
            "event_type": self.event_type,
            "actor": self.actor,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "details": self.details,
            "recorded_at": self.recorded_at.isoformat(),
            "entry_hash": self.entry_hash,
        }


class AuditLogService:
    """Records administrative events on the audit ledger stream.

    Example:
        audit = AuditLogService(session, keyring)
        await audit.record(
            AuditEventType.HOLD_CREATED,
            actor="counsel@example.com",
            resource_type="legal_hold",
            resource_id=str(hold_id),
            details={"reason": "Litigation 2026-114"},
        )
    """

    def __init__(self, session: AsyncSession, keyring: KeyRing) -> None:
        self._session = session
        self._ledger = HashChainLedger(session, keyring)

    async def record(
        self,
        event_type: AuditEventType,
        *,
        actor: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        """Append an audit entry. The caller commits."""
        entry = await self._ledger.append(
            LedgerStream.AUDIT,
            event_type.value,
            {
                "actor": actor,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "details": details or {},
            },
        )
        logger.info(
            "Audit: event=%s actor=%s resource=%s/%s seq_no=%d",
            event_type.value,
            actor,
            resource_type,
            resource_id,
            entry.seq_no,
        )
        return AuditLogEntry.from_chained(entry)

    async def list_entries(
        self,
        *,
        event_type: AuditEventType | None = None,
        start_seq: int | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        entries = await self._ledger.get_entries(
            LedgerStream.AUDIT,
            start_seq=start_seq,
            entry_type=event_type.value if event_type else None,
            limit=limit,
        )
        return [AuditLogEntry.from_chained(entry) for entry in entries]

    async def verify_chain(self) -> ChainVerificationResult:
        return await self._ledger.verify(LedgerStream.AUDIT)
