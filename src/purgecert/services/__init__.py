"""purgecert service layer.

- PolicyStore: versioned retention policies and eligibility evaluation
- LegalHoldRegistry: legal holds that override deletion
- KeyRing: ledger signing keys and rotation
- HashChainLedger: signed, hash-chained append-only ledger
- CertificationService: deletion certificates, one per run and record
- AuditLogService: operator and system events on the audit stream
- RunRegistry: execution run lifecycle, ownership and checkpoints
- ExecutionEngine: resumable policy execution against a RecordStore
- RiskAssessmentEngine: overdue, drifting and conflicting retention state
- JobQueueService: database-backed background jobs
"""

from purgecert.services.audit_log import AuditEventType, AuditLogEntry, AuditLogService
from purgecert.services.certification import CertificateInfo, CertificationService
from purgecert.services.execution import ExecutionConfig, ExecutionEngine, RunSummary
from purgecert.services.job_queue import JobQueueService, JobType
from purgecert.services.ledger import ChainedEntry, HashChainLedger
from purgecert.services.legal_holds import HoldInfo, HoldScope, LegalHoldRegistry
from purgecert.services.policies import PolicySpec, PolicyStore, PolicyVersion
from purgecert.services.record_store import (
    HttpRecordStore,
    HttpRecordStoreConfig,
    Record,
    RecordRef,
    RecordStore,
)
from purgecert.services.risk import RiskAssessmentEngine, RiskReport
from purgecert.services.runs import RunInfo, RunRegistry
from purgecert.services.signing import KeyRing

__all__ = [
    "AuditEventType",
    "AuditLogEntry",
    "AuditLogService",
    "CertificateInfo",
    "CertificationService",
    "ChainedEntry",
    "ExecutionConfig",
    "ExecutionEngine",
    "HashChainLedger",
    "HoldInfo",
    "HoldScope",
    "HttpRecordStore",
    "HttpRecordStoreConfig",
    "JobQueueService",
    "JobType",
    "KeyRing",
    "LegalHoldRegistry",
    "PolicySpec",
    "PolicyStore",
    "PolicyVersion",
    "Record",
    "RecordRef",
    "RecordStore",
    "RiskAssessmentEngine",
    "RiskReport",
    "RunInfo",
    "RunRegistry",
    "RunSummary",
]
