"""Job handlers for the purgecert worker.

- execution: drive a policy execution run
- recovery: requeue abandoned runs
- risk: periodic risk assessment
- chain: full ledger verification
"""

from purgecert.worker.handlers.chain import verify_chain_handler
from purgecert.worker.handlers.context import HandlerContext
from purgecert.worker.handlers.execution import execute_policy_handler
from purgecert.worker.handlers.recovery import recover_runs_handler
from purgecert.worker.handlers.risk import risk_scan_handler

__all__ = [
    "HandlerContext",
    "execute_policy_handler",
    "recover_runs_handler",
    "risk_scan_handler",
    "verify_chain_handler",
]
