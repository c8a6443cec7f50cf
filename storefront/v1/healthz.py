from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config.logging import get_logger
from storefront.config.settings import Settings, SettingsDep
from storefront.infra.database import SessionDep
from storefront.v1.core.exceptions import create_success_response
from storefront.v1.infra.jobs.models import CLAIMABLE_STATUSES, Job, JobStatus, as_utc
from storefront.v1.infra.jobs.routes import get_job_queue
from storefront.v1.infra.jobs.service import JobQueue

logger = get_logger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Job queue health status."""

    active_workers: int
    last_heartbeat_age_seconds: int | None = None
    stuck_jobs_count: int = 0
    queue_depth: int = 0
    dead_letter_count: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(
    response: Response,
    settings: Settings = SettingsDep,
    session: AsyncSession = SessionDep,
    job_queue: JobQueue = Depends(get_job_queue),
):
    """Health check with database and job queue status.

    Answers 503 when the database is unreachable.
    """

    timestamp = datetime.now(UTC).isoformat()
    overall_ok = True

    db_health = await _check_database_health(session)
    if not db_health.connected:
        overall_ok = False

    # Queue health failure doesn't fail overall health
    queue_health = None
    try:
        async with job_queue.database.SessionLocal() as queue_session:
            queue_health = await _check_queue_health(queue_session, settings)
    except Exception as e:
        logger.warning("Queue health check failed", error=str(e))
        queue_health = QueueHealth(active_workers=0)

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "queue": queue_health.model_dump(),
    }

    if not overall_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_queue_health(
    session: AsyncSession, settings: Settings
) -> QueueHealth:
    """Check worker liveness and queue status."""
    now = datetime.now(UTC)
    processing = Job.status == JobStatus.PROCESSING.value

    # Workers with a heartbeat in the last 5 minutes
    heartbeat_cutoff = now - timedelta(minutes=5)
    active_workers_result = await session.execute(
        select(func.count(func.distinct(Job.locked_by))).where(
            processing, Job.heartbeat_at > heartbeat_cutoff
        )
    )
    active_workers = active_workers_result.scalar() or 0

    last_heartbeat_result = await session.execute(
        select(func.max(Job.heartbeat_at)).where(
            processing, Job.heartbeat_at.is_not(None)
        )
    )
    last_heartbeat = as_utc(last_heartbeat_result.scalar())

    last_heartbeat_age_seconds = None
    if last_heartbeat:
        last_heartbeat_age_seconds = int((now - last_heartbeat).total_seconds())

    stuck_cutoff = now - timedelta(seconds=settings.job_visibility_timeout_s)
    stuck_jobs_result = await session.execute(
        select(func.count(Job.id)).where(processing, Job.heartbeat_at < stuck_cutoff)
    )
    stuck_jobs_count = stuck_jobs_result.scalar() or 0

    queue_depth_result = await session.execute(
        select(func.count(Job.id)).where(
            Job.status.in_([*CLAIMABLE_STATUSES, JobStatus.PROCESSING.value])
        )
    )
    queue_depth = queue_depth_result.scalar() or 0

    dead_letter_result = await session.execute(
        select(func.count(Job.id)).where(Job.status == JobStatus.DEADLETTER.value)
    )
    dead_letter_count = dead_letter_result.scalar() or 0

    return QueueHealth(
        active_workers=active_workers,
        last_heartbeat_age_seconds=last_heartbeat_age_seconds,
        stuck_jobs_count=stuck_jobs_count,
        queue_depth=queue_depth,
        dead_letter_count=dead_letter_count,
    )
