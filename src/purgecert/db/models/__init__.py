"""SQLAlchemy ORM models for purgecert.

- base: Common metadata, portable column types and enums
- policies: Versioned retention policies
- holds: Legal holds
- runs: Execution runs
- ledger: Hash-chain ledger entries and stream heads
- certificates: Deletion certificates
- keys: Ledger signing keys
- jobs: Database-backed job queue
"""

from purgecert.db.models.base import Base, metadata
from purgecert.db.models.certificates import DeletionCertificate
from purgecert.db.models.holds import LegalHold
from purgecert.db.models.jobs import Job
from purgecert.db.models.keys import SigningKey
from purgecert.db.models.ledger import LedgerEntry, LedgerHead
from purgecert.db.models.policies import RetentionPolicy
from purgecert.db.models.runs import ExecutionRun

__all__ = [
    "Base",
    "DeletionCertificate",
    "ExecutionRun",
    "Job",
    "LedgerEntry",
    "LedgerHead",
    "LegalHold",
    "RetentionPolicy",
    "SigningKey",
    "metadata",
]
