"""run_recovery handler: requeue runs whose engine stopped heartbeating."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from purgecert.services.job_queue import JobQueueService, JobType
from purgecert.services.runs import RunRegistry

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from purgecert.db.models.jobs import Job
    from purgecert.worker.handlers.context import HandlerContext

logger = logging.getLogger(__name__)


async def recover_runs_handler(
    session: AsyncSession,
    job: Job,
    context: HandlerContext,
) -> dict[str, Any] | None:
    """Queue a resuming policy_execute job for every stale running run.

    A run that already has an open execution job is left alone; that job
    will claim it once the heartbeat is stale.
    """
    stale = await RunRegistry(session).find_stale_runs(
        liveness_timeout=context.execution.liveness_timeout
    )
    queue = JobQueueService(session)

    requeued: list[str] = []
    for run in stale:
        if await queue.has_open_job(JobType.POLICY_EXECUTE, str(run.run_id)):
            continue
        logger.warning(
            "Requeueing abandoned run: run_id=%s policy_id=%s owner=%s last_heartbeat=%s",
            run.run_id,
            run.policy_id,
            run.owner,
            run.heartbeat_at,
        )
        await queue.enqueue(
            JobType.POLICY_EXECUTE,
            payload={"run_id": str(run.run_id), "resumed": True},
            priority=50,
            correlation_id=str(run.run_id),
        )
        requeued.append(str(run.run_id))

    return {"stale_runs": len(stale), "requeued": requeued}
