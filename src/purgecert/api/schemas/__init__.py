"""Pydantic request/response schemas for the purgecert API."""

from purgecert.api.schemas.holds import (
    HoldCreateRequest,
    HoldListResponse,
    HoldResponse,
    HoldScopeSchema,
)
from purgecert.api.schemas.jobs import JobListResponse, JobResponse
from purgecert.api.schemas.ledger import (
    AuditEntryResponse,
    AuditListResponse,
    KeyListResponse,
    KeyResponse,
    RiskReportResponse,
    VerificationResponse,
)
from purgecert.api.schemas.policies import (
    PolicyListResponse,
    PolicyPreviewResponse,
    PolicyRequest,
    PolicyResponse,
    PolicyTemplateListResponse,
    PolicyTemplateResponse,
    TemplateApplyRequest,
)
from purgecert.api.schemas.runs import (
    CertificateListResponse,
    CertificateResponse,
    CertificateVerificationResponse,
    RunListResponse,
    RunResponse,
    RunTriggerRequest,
)

__all__ = [
    "AuditEntryResponse",
    "AuditListResponse",
    "CertificateListResponse",
    "CertificateResponse",
    "CertificateVerificationResponse",
    "HoldCreateRequest",
    "HoldListResponse",
    "HoldResponse",
    "HoldScopeSchema",
    "JobListResponse",
    "JobResponse",
    "KeyListResponse",
    "KeyResponse",
    "PolicyListResponse",
    "PolicyPreviewResponse",
    "PolicyRequest",
    "PolicyResponse",
    "PolicyTemplateListResponse",
    "PolicyTemplateResponse",
    "RiskReportResponse",
    "RunListResponse",
    "RunResponse",
    "RunTriggerRequest",
    "TemplateApplyRequest",
    "VerificationResponse",
]
