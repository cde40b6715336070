"""Execution run endpoints: manual trigger, status and cancellation.

A manual trigger only creates the run and queues it; a worker executes it.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import APIRouter, Query, status

from purgecert.api.dependencies import DbSession, Keys, Operator
from purgecert.api.schemas.runs import RunListResponse, RunResponse, RunTriggerRequest
from purgecert.db.models.base import RunStatus
from purgecert.services.runs import RunRegistry
from purgecert.worker.scheduler import PolicyScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["runs"])


@router.post("", response_model=RunResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_run(
    body: RunTriggerRequest,
    db: DbSession,
    keyring: Keys,
    operator: Operator,
) -> dict[str, Any]:
    """Start a run of the policy's active version now.

    409 run_already_active if the policy already has a running execution.
    """
    run = await PolicyScheduler(db, keyring).trigger(body.policy_id, triggered_by=operator)
    await db.commit()
    logger.info("Manual run queued: run_id=%s operator=%s", run.run_id, operator)
    return run.to_dict()


@router.get("", response_model=RunListResponse)
async def list_runs(
    db: DbSession,
    policy_id: uuid.UUID | None = Query(None),
    run_status: RunStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> dict[str, Any]:
    runs = await RunRegistry(db).list_runs(
        policy_id=policy_id, status=run_status, limit=limit, offset=offset
    )
    return {"runs": [run.to_dict() for run in runs], "total": len(runs)}


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(run_id: uuid.UUID, db: DbSession) -> dict[str, Any]:
    return (await RunRegistry(db).get_run(run_id)).to_dict()


@router.post("/{run_id}/cancel", response_model=RunResponse)
async def cancel_run(
    run_id: uuid.UUID,
    db: DbSession,
    keyring: Keys,
    operator: Operator,
) -> dict[str, Any]:
    """Request cancellation; the engine stops at the next batch boundary."""
    run = await RunRegistry(db, keyring).request_cancel(run_id, requested_by=operator)
    await db.commit()
    return run.to_dict()
