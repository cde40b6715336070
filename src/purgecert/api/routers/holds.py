"""Legal hold endpoints. Holds are released, never deleted."""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Query, status

from purgecert.api.dependencies import DbSession, Keys, Operator
from purgecert.api.schemas.holds import HoldCreateRequest, HoldListResponse, HoldResponse
from purgecert.services.legal_holds import LegalHoldRegistry

router = APIRouter(prefix="/holds", tags=["holds"])


@router.post("", response_model=HoldResponse, status_code=status.HTTP_201_CREATED)
async def create_hold(
    body: HoldCreateRequest,
    db: DbSession,
    keyring: Keys,
    operator: Operator,
) -> dict[str, Any]:
    hold = await LegalHoldRegistry(db, keyring).create_hold(
        body.scope.to_scope(),
        body.reason,
        created_by=operator,
        starts_at=body.starts_at,
        ends_at=body.ends_at,
    )
    await db.commit()
    return hold.to_dict()


@router.get("", response_model=HoldListResponse)
async def list_holds(
    db: DbSession,
    include_released: bool = Query(False, description="Include released holds"),
) -> dict[str, Any]:
    holds = await LegalHoldRegistry(db).list_holds(include_released=include_released)
    return {"holds": [hold.to_dict() for hold in holds], "total": len(holds)}


@router.get("/{hold_id}", response_model=HoldResponse)
async def get_hold(hold_id: uuid.UUID, db: DbSession) -> dict[str, Any]:
    return (await LegalHoldRegistry(db).get_hold(hold_id)).to_dict()


@router.post("/{hold_id}/release", response_model=HoldResponse)
async def release_hold(
    hold_id: uuid.UUID,
    db: DbSession,
    keyring: Keys,
    operator: Operator,
) -> dict[str, Any]:
    hold = await LegalHoldRegistry(db, keyring).release_hold(hold_id, released_by=operator)
    await db.commit()
    return hold.to_dict()
