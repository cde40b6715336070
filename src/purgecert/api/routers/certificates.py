"""Deletion certificate endpoints: browsing and per-certificate verification."""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Query

from purgecert.api.dependencies import DbSession, Keys
from purgecert.api.schemas.runs import (
    CertificateListResponse,
    CertificateResponse,
    CertificateVerificationResponse,
)
from purgecert.db.models.base import CertificateOutcome
from purgecert.services.certification import CertificationService

router = APIRouter(prefix="/certificates", tags=["certificates"])


@router.get("", response_model=CertificateListResponse)
async def list_certificates(
    db: DbSession,
    keyring: Keys,
    run_id: uuid.UUID | None = Query(None),
    policy_id: uuid.UUID | None = Query(None),
    entity_type: str | None = Query(None),
    record_id: str | None = Query(None),
    outcome: CertificateOutcome | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> dict[str, Any]:
    certificates = await CertificationService(db, keyring).list_certificates(
        run_id=run_id,
        policy_id=policy_id,
        entity_type=entity_type,
        record_id=record_id,
        outcome=outcome,
        limit=limit,
        offset=offset,
    )
    return {
        "certificates": [certificate.to_dict() for certificate in certificates],
        "total": len(certificates),
    }


@router.get("/{certificate_id}", response_model=CertificateResponse)
async def get_certificate(
    certificate_id: uuid.UUID, db: DbSession, keyring: Keys
) -> dict[str, Any]:
    return (await CertificationService(db, keyring).get_certificate(certificate_id)).to_dict()


@router.post("/{certificate_id}/verify", response_model=CertificateVerificationResponse)
async def verify_certificate(
    certificate_id: uuid.UUID, db: DbSession, keyring: Keys
) -> dict[str, Any]:
    """Recheck one certificate against its ledger entry, chain link and signing key."""
    result = await CertificationService(db, keyring).verify_certificate(certificate_id)
    return result.to_dict()
