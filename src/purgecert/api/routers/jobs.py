"""Background job administration: dead-lettered jobs, retry and cancel."""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Query

from purgecert.api.dependencies import DbSession, Operator
from purgecert.api.schemas.jobs import JobListResponse, JobResponse
from purgecert.services.job_queue import JobNotFoundError, JobQueueService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


async def _job_response(queue: JobQueueService, job_id: uuid.UUID) -> JobResponse:
    job = await queue.get_job(job_id)
    if job is None:
        raise JobNotFoundError(f"Job not found: {job_id}")
    return JobResponse.model_validate(job)


@router.get("/failed", response_model=JobListResponse)
async def list_failed_jobs(
    db: DbSession,
    job_type: str | None = Query(None, description="Only jobs of this type"),
    queue: str | None = Query(None, description="Only jobs on this queue"),
    limit: int = Query(100, ge=1, le=1000),
) -> JobListResponse:
    jobs = await JobQueueService(db).get_failed_jobs(queue=queue, job_type=job_type, limit=limit)
    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs], total=len(jobs)
    )


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: uuid.UUID, db: DbSession) -> JobResponse:
    return await _job_response(JobQueueService(db), job_id)


@router.post("/{job_id}/retry", response_model=JobResponse)
async def retry_job(job_id: uuid.UUID, db: DbSession, operator: Operator) -> JobResponse:
    """Return a dead-lettered job to the queue with a fresh attempt budget."""
    queue = JobQueueService(db)
    await queue.retry_failed_job(job_id)
    response = await _job_response(queue, job_id)
    await db.commit()
    logger.info("Job retry requested: job_id=%s, operator=%s", job_id, operator)
    return response


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: uuid.UUID, db: DbSession, operator: Operator) -> JobResponse:
    queue = JobQueueService(db)
    await queue.cancel_job(job_id)
    response = await _job_response(queue, job_id)
    await db.commit()
    logger.info("Job cancelled by operator: job_id=%s, operator=%s", job_id, operator)
    return response
