"""Ledger verification endpoints.

The export is self-contained: entries, tail pointer and every public key
(active and retired), enough for `purgecert-verify` to check it offline.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query

from purgecert.api.dependencies import DbSession, Keys, Operator
from purgecert.api.schemas.ledger import KeyListResponse, KeyResponse, VerificationResponse
from purgecert.db.models.base import LedgerStream
from purgecert.services.ledger import HashChainLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ledger", tags=["ledger"])


@router.get("/keys", response_model=KeyListResponse)
async def list_keys(db: DbSession, keyring: Keys) -> dict[str, Any]:
    keys = await keyring.list_keys(db)
    return {"keys": [key.to_dict() for key in keys]}


@router.post("/keys/rotate", response_model=KeyResponse)
async def rotate_key(db: DbSession, keyring: Keys, operator: Operator) -> dict[str, Any]:
    """Retire the active signing key and generate a new one."""
    key = await keyring.rotate_key(db, rotated_by=operator)
    await db.commit()
    return key.to_dict()


@router.get("/{stream}/verify", response_model=VerificationResponse)
async def verify_stream(
    stream: LedgerStream,
    db: DbSession,
    keyring: Keys,
    start_seq: int | None = Query(None, ge=1),
    end_seq: int | None = Query(None, ge=1),
) -> dict[str, Any]:
    """Verify hashes, links and signatures. A full check also checks the tail."""
    result = await HashChainLedger(db, keyring).verify(
        stream, start_seq=start_seq, end_seq=end_seq
    )
    return {"stream": stream.value, **result.to_dict()}


@router.get("/{stream}/export")
async def export_stream(stream: LedgerStream, db: DbSession, keyring: Keys) -> dict[str, Any]:
    export = await HashChainLedger(db, keyring).export(stream)
    logger.info(
        "Ledger exported: stream=%s entries=%d", stream.value, len(export["entries"])
    )
    return export
