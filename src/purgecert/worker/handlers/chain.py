"""chain_verify handler: verify every ledger stream end to end.

A failed verification is never repaired. It is logged at ERROR and
recorded on the audit stream so that it survives in the tamper-evident
record itself.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from purgecert.db.models.base import LedgerStream
from purgecert.services.audit_log import AuditEventType, AuditLogService
from purgecert.services.ledger import HashChainLedger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from purgecert.db.models.jobs import Job
    from purgecert.worker.handlers.context import HandlerContext

logger = logging.getLogger(__name__)

# Errors copied into the audit entry
MAX_RECORDED_ERRORS = 20


async def verify_chain_handler(
    session: AsyncSession,
    job: Job,
    context: HandlerContext,
) -> dict[str, Any] | None:
    """Verify the streams named in the payload (default: all).

    Expected job payload:
        streams: (optional) List of stream names to verify
    """
    payload = job.payload_json or {}
    names = payload.get("streams")
    streams = [LedgerStream(name) for name in names] if names else list(LedgerStream)

    ledger = HashChainLedger(session, context.keyring)
    results: dict[str, Any] = {}
    all_valid = True

    for stream in streams:
        result = await ledger.verify(stream)
        results[stream.value] = {
            "valid": result.valid,
            "checked_entries": result.checked_entries,
            "first_invalid_seq_no": result.first_invalid_seq_no,
        }
        if result.valid:
            continue

        all_valid = False
        logger.error(
            "Chain integrity violation: stream=%s first_invalid_seq_no=%s errors=%s",
            stream.value,
            result.first_invalid_seq_no,
            result.errors[:MAX_RECORDED_ERRORS],
        )
        await AuditLogService(session, context.keyring).record(
            AuditEventType.CHAIN_VERIFICATION_FAILED,
            actor=f"worker:{job.locked_by or 'unknown'}",
            resource_type="ledger_stream",
            resource_id=stream.value,
            details={
                "first_invalid_seq_no": result.first_invalid_seq_no,
                "checked_entries": result.checked_entries,
                "errors": result.errors[:MAX_RECORDED_ERRORS],
            },
        )

    return {"all_valid": all_valid, "streams": results}
