"""
Job management API endpoints.

Provides admin endpoints for enqueueing and monitoring jobs, inspecting
dead-lettered jobs and requeueing them.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from storefront.config.logging import get_logger
from storefront.v1.core.exceptions import NotFoundError, create_success_response
from storefront.v1.infra.jobs.models import JobStatus
from storefront.v1.infra.jobs.schemas import (
    JobEnqueueRequest,
    JobListFilters,
    JobListResponse,
    JobRequeueResponse,
    JobResponse,
)
from storefront.v1.infra.jobs.service import JobQueue

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_job_queue(request: Request) -> JobQueue:
    """Get the queue client created by create_app()."""
    return request.app.state.job_queue


def _list_response(jobs, total: int, limit: int, offset: int) -> dict[str, Any]:
    response_data = JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )
    return create_success_response(data=response_data.model_dump(mode="json"))


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def enqueue_job(
    job_request: JobEnqueueRequest,
    request: Request,
    job_queue: JobQueue = Depends(get_job_queue),
) -> dict[str, Any]:
    """Enqueue a job by name; the payload must match the job's schema."""

    request_id = getattr(request.state, "request_id", None)
    try:
        handle = await job_queue.enqueue(
            job_request.job_name,
            job_request.payload,
            job_request.options(),
            channel=job_request.channel,
            dedupe_key=job_request.dedupe_key,
            request_id=request_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(
        "Job enqueued via API",
        job_id=str(handle.job_id),
        job_name=handle.job_name,
        channel=handle.channel,
        deduplicated=handle.deduplicated,
    )

    return create_success_response(
        data=handle.model_dump(mode="json"), request_id=request_id
    )


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    channel: str | None = Query(default=None, description="Filter by channel"),
    job_name: str | None = Query(default=None, description="Filter by job name"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    job_queue: JobQueue = Depends(get_job_queue),
) -> dict[str, Any]:
    """List jobs with filtering and pagination."""

    filters = JobListFilters(
        status=status, channel=channel, job_name=job_name, limit=limit, offset=offset
    )
    jobs, total = await job_queue.list_jobs(filters)
    return _list_response(jobs, total, limit, offset)


@router.get("/stats", response_model=dict)
async def get_job_stats(
    channel: str | None = Query(default=None, description="Scope to a channel"),
    job_queue: JobQueue = Depends(get_job_queue),
) -> dict[str, Any]:
    """Get queue statistics."""

    stats = await job_queue.get_stats(channel)
    return create_success_response(data=stats.model_dump())


@router.get("/dead-letter", response_model=dict)
async def list_dead_letters(
    channel: str | None = Query(default=None, description="Scope to a channel"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    job_queue: JobQueue = Depends(get_job_queue),
) -> dict[str, Any]:
    """List jobs that exhausted their attempts."""

    jobs, total = await job_queue.list_dead_letters(channel, limit, offset)
    return _list_response(jobs, total, limit, offset)


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    job_queue: JobQueue = Depends(get_job_queue),
) -> dict[str, Any]:
    """Get a specific job by ID."""

    job = await job_queue.get_job(job_id)
    if not job:
        raise NotFoundError("Job not found", details={"job_id": str(job_id)})

    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )


@router.post("/{job_id}/requeue", response_model=dict)
async def requeue_job(
    job_id: UUID,
    job_queue: JobQueue = Depends(get_job_queue),
) -> dict[str, Any]:
    """Send a dead-lettered job back to the channel."""

    job = await job_queue.get_job(job_id)
    if not job:
        raise NotFoundError("Job not found", details={"job_id": str(job_id)})
    if job.status != JobStatus.DEADLETTER.value:
        raise HTTPException(
            status_code=409,
            detail=f"Only dead-lettered jobs can be requeued (status: {job.status})",
        )

    requeued = await job_queue.requeue(job_id)
    logger.info("Job requeue requested via API", job_id=str(job_id), requeued=requeued)

    return create_success_response(
        data=JobRequeueResponse(job_id=job_id, requeued=requeued).model_dump(mode="json")
    )
