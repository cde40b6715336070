"""purgecert worker service.

Database-backed background runner for:
- policy executions (scheduled or manually triggered)
- recovery of runs abandoned by a crashed engine
- periodic risk assessment
- periodic full ledger verification

Usage:
    purgecert-worker
    python -m purgecert.worker
"""

from purgecert.worker.main import Worker, WorkerConfig, run

__all__ = ["Worker", "WorkerConfig", "run"]
