"""Retention policy endpoints.

Policies are versioned: an update creates a new version and deactivates the
previous one, and nothing is ever deleted.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import APIRouter, Query, status

from purgecert.api.dependencies import AppSettings, DbSession, Keys, Operator, RecordStores
from purgecert.api.middleware.errors import NotFoundError
from purgecert.api.schemas.policies import (
    PolicyListResponse,
    PolicyPreviewResponse,
    PolicyRequest,
    PolicyResponse,
)
from purgecert.services.policies import PolicyStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/policies", tags=["policies"])


@router.post("", response_model=PolicyResponse, status_code=status.HTTP_201_CREATED)
async def create_policy(
    body: PolicyRequest,
    db: DbSession,
    keyring: Keys,
    settings: AppSettings,
    operator: Operator,
) -> dict[str, Any]:
    store = PolicyStore(db, keyring, retention=settings.retention)
    policy = await store.create_policy(body.to_spec(), created_by=operator)
    await db.commit()
    return policy.to_dict()


@router.get("", response_model=PolicyListResponse)
async def list_policies(
    db: DbSession,
    keyring: Keys,
    include_inactive: bool = Query(False, description="Include deactivated policies"),
) -> dict[str, Any]:
    policies = await PolicyStore(db, keyring).list_policies(include_inactive=include_inactive)
    return {"policies": [policy.to_dict() for policy in policies], "total": len(policies)}


@router.get("/{policy_id}", response_model=PolicyResponse)
async def get_policy(policy_id: uuid.UUID, db: DbSession, keyring: Keys) -> dict[str, Any]:
    """Latest version of a policy, active or not."""
    versions = await PolicyStore(db, keyring).list_versions(policy_id)
    if not versions:
        raise NotFoundError(f"Policy not found: {policy_id}")
    return versions[-1].to_dict()


@router.put("/{policy_id}", response_model=PolicyResponse)
async def update_policy(
    policy_id: uuid.UUID,
    body: PolicyRequest,
    db: DbSession,
    keyring: Keys,
    settings: AppSettings,
    operator: Operator,
) -> dict[str, Any]:
    store = PolicyStore(db, keyring, retention=settings.retention)
    policy = await store.update_policy(policy_id, body.to_spec(), updated_by=operator)
    await db.commit()
    return policy.to_dict()


@router.post("/{policy_id}/deactivate", response_model=PolicyResponse)
async def deactivate_policy(
    policy_id: uuid.UUID,
    db: DbSession,
    keyring: Keys,
    operator: Operator,
) -> dict[str, Any]:
    policy = await PolicyStore(db, keyring).deactivate_policy(policy_id, deactivated_by=operator)
    await db.commit()
    return policy.to_dict()


@router.get("/{policy_id}/versions", response_model=PolicyListResponse)
async def list_policy_versions(
    policy_id: uuid.UUID, db: DbSession, keyring: Keys
) -> dict[str, Any]:
    versions = await PolicyStore(db, keyring).list_versions(policy_id)
    if not versions:
        raise NotFoundError(f"Policy not found: {policy_id}")
    return {"policies": [version.to_dict() for version in versions], "total": len(versions)}


@router.get("/{policy_id}/versions/{version}", response_model=PolicyResponse)
async def get_policy_version(
    policy_id: uuid.UUID, version: int, db: DbSession, keyring: Keys
) -> dict[str, Any]:
    policy = await PolicyStore(db, keyring).get_policy_version(policy_id, version)
    return policy.to_dict()


@router.post("/{policy_id}/preview", response_model=PolicyPreviewResponse)
async def preview_policy(
    policy_id: uuid.UUID,
    db: DbSession,
    keyring: Keys,
    record_stores: RecordStores,
    sample_size: int = Query(10, ge=0, le=100),
) -> dict[str, Any]:
    """Count what the active version would act on now. Nothing is changed."""
    async with record_stores() as record_store:
        preview = await PolicyStore(db, keyring).preview(
            policy_id, record_store, sample_size=sample_size
        )
    return preview.to_dict()
