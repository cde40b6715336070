"""purgecert worker entry point.

One process runs two loops:
- the scheduler loop, which turns due policies into runs and enqueues
  maintenance jobs
- the job loop, which claims jobs from the queue and dispatches them to
  handlers, with retries handled by JobQueueService

SIGTERM/SIGINT stop both loops gracefully.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import signal
import sys
import uuid
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, NoReturn

from purgecert.db import create_engine_from_settings, create_session_factory
from purgecert.db.models.base import utcnow
from purgecert.services.job_queue import JobQueueService, JobType

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from purgecert.core.config import Settings
    from purgecert.db.models.jobs import Job
    from purgecert.worker.handlers.context import HandlerContext

logger = logging.getLogger(__name__)

JobHandler = Callable[["AsyncSession", "Job"], Coroutine[Any, Any, dict[str, Any] | None]]


@dataclass
class WorkerConfig:
    """Configuration for the worker process.

    Attributes:
        worker_id: Unique identifier for this worker instance; also used as
            the execution engine's run owner.
        poll_interval: Seconds between job queue polls when idle.
        queues: Queue names to process.
        job_types: Job types to process. Empty means all types.
        stale_job_threshold_seconds: How long before a running job is considered stale.
        shutdown_timeout: Seconds to wait for graceful shutdown.
    """

    worker_id: str = field(default_factory=lambda: f"worker-{uuid.uuid4().hex[:8]}")
    poll_interval: float = 1.0
    queues: list[str] = field(default_factory=lambda: ["default"])
    job_types: list[str] = field(default_factory=list)
    stale_job_threshold_seconds: int = 600
    shutdown_timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> WorkerConfig:
        # A job that outlives the run liveness timeout is stale as well
        return cls(stale_job_threshold_seconds=settings.execution.liveness_timeout_seconds)


class Worker:
    """Polls the job queue and dispatches jobs to registered handlers.

    A claimed job is committed before its handler runs, so the handler's
    own work (which may open further sessions) never waits on the claim.

    Example:
        worker = Worker(WorkerConfig(), session_factory)
        worker.register_handler(JobType.RISK_SCAN, handler)
        await worker.start()
    """

    def __init__(
        self,
        config: WorkerConfig,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self.config = config
        self._session_factory = session_factory
        self._shutdown_event = asyncio.Event()
        self._handlers: dict[str, JobHandler] = {}
        self._started_at: datetime | None = None
        self._jobs_processed = 0
        self._jobs_failed = 0

    @property
    def jobs_processed(self) -> int:
        return self._jobs_processed

    @property
    def jobs_failed(self) -> int:
        return self._jobs_failed

    def register_handler(self, job_type: str | JobType, handler: JobHandler) -> None:
        type_str = job_type.value if isinstance(job_type, JobType) else job_type
        self._handlers[type_str] = handler
        logger.debug("Registered handler for job_type=%s", type_str)

    async def start(self) -> None:
        """Process jobs until stop() is called."""
        self._started_at = utcnow()
        logger.info(
            "Worker starting: worker_id=%s, queues=%s, handlers=%s",
            self.config.worker_id,
            self.config.queues,
            sorted(self._handlers),
        )
        try:
            await self._run_loop()
        finally:
            logger.info(
                "Worker stopped: worker_id=%s, processed=%d, failed=%d, uptime=%s",
                self.config.worker_id,
                self._jobs_processed,
                self._jobs_failed,
                self._get_uptime(),
            )

    async def stop(self) -> None:
        logger.info("Worker shutdown requested: worker_id=%s", self.config.worker_id)
        self._shutdown_event.set()

    async def _run_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                for queue in self.config.queues:
                    if self._shutdown_event.is_set():
                        break
                    # Drain the queue before sleeping
                    while not self._shutdown_event.is_set() and await self.process_next(queue):
                        pass

                if not self._shutdown_event.is_set():
                    await self._cleanup_stale_jobs()

                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.config.poll_interval,
                    )
            except Exception as e:
                logger.exception("Error in worker loop: %s", e)
                await asyncio.sleep(1.0)

    async def process_next(self, queue: str = "default") -> bool:
        """Claim and process one job.

        Returns:
            True if a job was processed (successfully or not), False if the
            queue had nothing due.
        """
        async with self._session_factory() as session:
            job_queue = JobQueueService(session)
            job = await job_queue.claim_job(
                worker_id=self.config.worker_id,
                queue=queue,
                job_types=self.config.job_types or None,
            )
            if job is None:
                return False
            await session.commit()

            logger.info(
                "Processing job: job_id=%s, job_type=%s, attempt=%d/%d",
                job.job_id,
                job.job_type,
                job.attempts,
                job.max_attempts,
            )

            handler = self._handlers.get(job.job_type)
            if handler is None:
                error_msg = f"No handler registered for job_type={job.job_type}"
                logger.error(error_msg)
                await job_queue.fail_job(job.job_id, error_msg)
                await session.commit()
                self._jobs_failed += 1
                return True

            job_id = job.job_id
            try:
                result = await handler(session, job)
                await job_queue.complete_job(job_id, result)
                await session.commit()
                self._jobs_processed += 1
                return True
            except Exception as e:
                logger.exception(
                    "Job failed: job_id=%s, job_type=%s, error=%s",
                    job_id,
                    job.job_type,
                    e,
                )
                await session.rollback()
                error = str(e)

        # Fresh session for the failure update
        async with self._session_factory() as fail_session:
            will_retry = await JobQueueService(fail_session).fail_job(job_id, error)
            await fail_session.commit()
        if not will_retry:
            self._jobs_failed += 1
        return True

    async def _cleanup_stale_jobs(self) -> None:
        async with self._session_factory() as session:
            count = await JobQueueService(session).cleanup_stale_jobs(
                stale_threshold_seconds=self.config.stale_job_threshold_seconds
            )
            if count > 0:
                await session.commit()

    def _get_uptime(self) -> str:
        if self._started_at is None:
            return "0s"
        delta = utcnow() - self._started_at
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        if minutes > 0:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"


def register_default_handlers(worker: Worker, context: HandlerContext) -> None:
    """Bind the handler context and register every purgecert job handler."""
    from purgecert.worker.handlers import (
        execute_policy_handler,
        recover_runs_handler,
        risk_scan_handler,
        verify_chain_handler,
    )

    handlers = {
        JobType.POLICY_EXECUTE: execute_policy_handler,
        JobType.RUN_RECOVERY: recover_runs_handler,
        JobType.RISK_SCAN: risk_scan_handler,
        JobType.CHAIN_VERIFY: verify_chain_handler,
    }
    for job_type, handler in handlers.items():
        worker.register_handler(job_type, functools.partial(handler, context=context))


# Global shutdown event for signal handlers
_shutdown_event: asyncio.Event | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None:
        _shutdown_event.get_loop().call_soon_threadsafe(_shutdown_event.set)


async def _async_main(settings: Settings, shutdown_event: asyncio.Event) -> None:
    from purgecert.worker.handlers.context import HandlerContext
    from purgecert.worker.scheduler import default_maintenance_schedules, run_scheduler_loop

    engine = create_engine_from_settings(settings.database)
    session_factory = create_session_factory(engine)
    context = HandlerContext.from_settings(settings, session_factory)

    # Make sure a signing key exists before the first append races for one
    async with session_factory() as session:
        await context.keyring.ensure_active_key(session, created_by="worker")
        await session.commit()

    config = WorkerConfig.from_settings(settings)
    worker = Worker(config, session_factory)
    register_default_handlers(worker, context)

    scheduler_task = asyncio.create_task(
        run_scheduler_loop(
            session_factory,
            context.keyring,
            schedules=default_maintenance_schedules(settings.scheduler),
            check_interval=settings.scheduler.check_interval_seconds,
            shutdown_event=shutdown_event,
        )
    )
    worker_task = asyncio.create_task(worker.start())

    try:
        await shutdown_event.wait()
        await worker.stop()
        try:
            await asyncio.wait_for(
                asyncio.gather(worker_task, scheduler_task),
                timeout=config.shutdown_timeout,
            )
        except TimeoutError:
            logger.warning("Worker did not stop within timeout, forcing shutdown")
            worker_task.cancel()
            scheduler_task.cancel()
    finally:
        await engine.dispose()


def run() -> NoReturn:
    """Console entry point: purgecert-worker."""
    from purgecert.core.settings import get_settings

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    logger.info(
        "purgecert worker starting: environment=%s, config_hash=%s",
        settings.environment.value,
        settings.get_config_hash()[:16],
    )

    async def _run_with_event() -> None:
        global _shutdown_event
        _shutdown_event = asyncio.Event()
        await _async_main(settings, _shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("purgecert worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
