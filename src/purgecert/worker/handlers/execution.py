"""policy_execute handler: drive one execution run to completion."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from purgecert.services.execution import ExecutionEngine

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from purgecert.db.models.jobs import Job
    from purgecert.worker.handlers.context import HandlerContext

logger = logging.getLogger(__name__)


async def execute_policy_handler(
    session: AsyncSession,
    job: Job,
    context: HandlerContext,
) -> dict[str, Any] | None:
    """Run or resume the execution named in the job payload.

    Expected job payload:
        run_id: The execution run to drive.
        resumed: (optional) Whether this is a recovery of an abandoned run.

    The engine opens its own sessions; the job session is not used for
    run state so that certificates commit independently of the job row.
    """
    payload = job.payload_json or {}
    if "run_id" not in payload:
        msg = "policy_execute job requires run_id in payload"
        raise ValueError(msg)
    run_id = uuid.UUID(payload["run_id"])

    async with context.record_store_factory() as record_store:
        engine = ExecutionEngine(
            context.session_factory,
            record_store,
            context.keyring,
            config=context.execution,
            owner=job.locked_by,
            issuer=context.issuer,
        )
        summary = await engine.execute_run(run_id, resumed=bool(payload.get("resumed")))

    if summary is None:
        logger.info("Execution job had nothing to do: run_id=%s job_id=%s", run_id, job.job_id)
        return {"run_id": str(run_id), "claimed": False}
    return summary.to_dict()
