"""Compliance policy templates and policy creation from them."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, status

from purgecert.api.dependencies import AppSettings, DbSession, Keys, Operator
from purgecert.api.schemas.policies import (
    PolicyResponse,
    PolicyTemplateListResponse,
    TemplateApplyRequest,
)
from purgecert.services.policies import PolicyStore
from purgecert.services.policy_templates import build_spec, list_templates

router = APIRouter(prefix="/policy-templates", tags=["policies"])


@router.get("", response_model=PolicyTemplateListResponse)
async def get_templates() -> dict[str, Any]:
    templates = list_templates()
    return {"templates": [template.to_dict() for template in templates], "total": len(templates)}


@router.post(
    "/{template_id}/apply", response_model=PolicyResponse, status_code=status.HTTP_201_CREATED
)
async def apply_template(
    template_id: str,
    body: TemplateApplyRequest,
    db: DbSession,
    keyring: Keys,
    settings: AppSettings,
    operator: Operator,
) -> dict[str, Any]:
    spec = build_spec(template_id, body.entity_type, name=body.name, overrides=body.overrides)
    store = PolicyStore(db, keyring, retention=settings.retention)
    policy = await store.create_policy(spec, created_by=operator)
    await db.commit()
    return policy.to_dict()
