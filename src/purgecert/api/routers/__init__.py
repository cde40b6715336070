"""purgecert API routers, all mounted under /api.

- policies: versioned retention policies and dry-run previews
- holds: legal holds
- runs: manual trigger, status, cancellation
- certificates: deletion certificates
- audit: audit stream entries
- risk: risk report
- ledger: verification, export and signing keys
- jobs: dead-lettered background jobs, retry and cancel
- policy-templates: compliance templates and policies created from them
"""

from purgecert.api.routers.audit import router as audit_router
from purgecert.api.routers.certificates import router as certificates_router
from purgecert.api.routers.holds import router as holds_router
from purgecert.api.routers.jobs import router as jobs_router
from purgecert.api.routers.ledger import router as ledger_router
from purgecert.api.routers.policies import router as policies_router
from purgecert.api.routers.risk import router as risk_router
from purgecert.api.routers.runs import router as runs_router
from purgecert.api.routers.templates import router as templates_router

__all__ = [
    "audit_router",
    "certificates_router",
    "holds_router",
    "jobs_router",
    "ledger_router",
    "policies_router",
    "risk_router",
    "runs_router",
    "templates_router",
]
