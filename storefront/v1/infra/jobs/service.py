"""
Queue client for enqueueing and inspecting background jobs.
"""

import asyncio
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, delete, desc, func, select, true, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config.logging import get_logger
from storefront.config.settings import Settings
from storefront.infra.database import Database
from storefront.v1.core.exceptions import QueueUnavailable, UnknownJobError
from storefront.v1.infra.jobs.envelope import JobPayload, serialize_payload
from storefront.v1.infra.jobs.models import (
    CLAIMABLE_STATUSES,
    TERMINAL_STATUSES,
    Job,
    JobStatus,
)
from storefront.v1.infra.jobs.schemas import (
    JobHandle,
    JobListFilters,
    JobOptions,
    JobStatsResponse,
)

logger = get_logger(__name__)

# Errors that mean the backing store could not be reached or written
UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, OSError, TimeoutError)

# QueueUnavailable.details["write_outcome"]
WRITE_FAILED = "not_written"
WRITE_UNKNOWN = "unknown"


class JobQueue:
    """
    Producer side of the job channel.

    Owns its own Database so the queue store can live apart from the
    order store. Construct once per process and pass it where needed.
    """

    def __init__(
        self,
        database: Database,
        settings: Settings,
        default_channel: str | None = None,
    ):
        self.database = database
        self.settings = settings
        self.default_channel = default_channel or settings.order_email_channel

    async def enqueue(
        self,
        job_name: str,
        payload: JobPayload | Mapping[str, Any],
        options: JobOptions | None = None,
        *,
        channel: str | None = None,
        dedupe_key: str | None = None,
        request_id: str | None = None,
    ) -> JobHandle:
        """
        Durably record a job in a channel.

        Args:
            job_name: Registered job name
            payload: Payload model or mapping valid for job_name
            options: Retry policy overrides
            channel: Target channel, defaults to the queue's default channel
            dedupe_key: Return the existing job instead of writing a new one
            request_id: Request ID for tracing

        Returns:
            Handle of the committed (or deduplicated) job

        Raises:
            ValueError: job_name or payload is invalid
            QueueUnavailable: the channel store could not be written in time.
                ``details["write_outcome"]`` is ``"not_written"`` when the job
                is known to be absent and ``"unknown"`` when a timed-out write
                could not be checked by its dedupe_key.
        """
        if not job_name or not job_name.strip():
            raise ValueError("job_name must be a non-empty identifier")

        try:
            data = serialize_payload(job_name, payload)
        except UnknownJobError as e:
            raise ValueError(str(e)) from e

        options = options or JobOptions()
        max_attempts = options.max_attempts or self.settings.job_default_max_attempts
        backoff = options.backoff_base_delay
        if backoff is None:
            backoff = timedelta(seconds=self.settings.job_default_backoff_s)

        channel = channel or self.default_channel
        now = datetime.now(UTC)
        job = Job(
            channel=channel,
            job_name=job_name,
            payload=data,
            max_attempts=max_attempts,
            backoff_base_delay_ms=int(backoff.total_seconds() * 1000),
            status=JobStatus.PENDING.value,
            attempt_count=0,
            run_at=now,
            enqueued_at=now,
            dedupe_key=dedupe_key,
            request_id=request_id,
            created_at=now,
            updated_at=now,
        )

        try:
            return await asyncio.wait_for(
                self._write(job), timeout=self.settings.queue_enqueue_timeout_s
            )
        except UNAVAILABLE_ERRORS as e:
            # A timeout can fire after the commit reached the store
            outcome = WRITE_UNKNOWN if isinstance(e, TimeoutError) else WRITE_FAILED
            if outcome == WRITE_UNKNOWN and dedupe_key:
                try:
                    existing = await self._reconcile(channel, dedupe_key)
                except UNAVAILABLE_ERRORS as lookup_error:
                    logger.error(
                        "Job enqueue could not be reconciled",
                        job_name=job_name,
                        channel=channel,
                        dedupe_key=dedupe_key,
                        error=str(lookup_error),
                    )
                else:
                    if existing:
                        logger.warning(
                            "Job enqueue acknowledged late",
                            job_id=str(existing.id),
                            job_name=job_name,
                            channel=channel,
                            dedupe_key=dedupe_key,
                        )
                        return self._handle(existing)
                    outcome = WRITE_FAILED

            logger.error(
                "Job enqueue failed",
                job_name=job_name,
                channel=channel,
                write_outcome=outcome,
                error=str(e) or e.__class__.__name__,
            )
            raise QueueUnavailable(
                details={
                    "channel": channel,
                    "job_name": job_name,
                    "write_outcome": outcome,
                }
            ) from e

    async def _reconcile(self, channel: str, dedupe_key: str) -> Job | None:
        """Look up a job whose enqueue did not acknowledge in time."""

        async def _lookup():
            async with self.database.SessionLocal() as session:
                return await self._find_existing_job(session, channel, dedupe_key)

        return await asyncio.wait_for(
            _lookup(), timeout=self.settings.queue_enqueue_timeout_s
        )

    async def _write(self, job: Job) -> JobHandle:
        async with self.database.SessionLocal() as session:
            if job.dedupe_key:
                existing = await self._find_existing_job(
                    session, job.channel, job.dedupe_key
                )
                if existing:
                    logger.info(
                        "Job deduplicated",
                        job_id=str(existing.id),
                        dedupe_key=job.dedupe_key,
                        job_name=job.job_name,
                        channel=job.channel,
                    )
                    return self._handle(existing, deduplicated=True)

            session.add(job)
            await session.commit()

        logger.info(
            "Job enqueued",
            job_id=str(job.id),
            job_name=job.job_name,
            channel=job.channel,
            max_attempts=job.max_attempts,
            backoff_base_delay_ms=job.backoff_base_delay_ms,
        )
        return self._handle(job)

    @staticmethod
    def _handle(job: Job, deduplicated: bool = False) -> JobHandle:
        return JobHandle(
            job_id=job.id,
            channel=job.channel,
            job_name=job.job_name,
            status=job.status,
            enqueued_at=job.enqueued_at,
            deduplicated=deduplicated,
        )

    async def _find_existing_job(
        self, session: AsyncSession, channel: str, dedupe_key: str
    ) -> Job | None:
        """Find a live or completed job with the same dedupe key."""
        result = await session.execute(
            select(Job)
            .where(
                and_(
                    Job.channel == channel,
                    Job.dedupe_key == dedupe_key,
                    Job.status != JobStatus.DEADLETTER.value,
                )
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_job(self, job_id: UUID) -> Job | None:
        """Get job by ID."""
        async with self.database.SessionLocal() as session:
            result = await session.execute(select(Job).where(Job.id == job_id))
            return result.scalar_one_or_none()

    async def list_jobs(self, filters: JobListFilters) -> tuple[list[Job], int]:
        """List jobs newest first, returning the page and the total count."""
        query = select(Job)

        if filters.status:
            query = query.where(Job.status.in_([s.value for s in filters.status]))
        if filters.channel:
            query = query.where(Job.channel == filters.channel)
        if filters.job_name:
            query = query.where(Job.job_name == filters.job_name)

        async with self.database.SessionLocal() as session:
            total_result = await session.execute(
                select(func.count()).select_from(query.subquery())
            )
            total = total_result.scalar() or 0

            jobs_result = await session.execute(
                query.order_by(desc(Job.created_at))
                .offset(filters.offset)
                .limit(filters.limit)
            )
            return list(jobs_result.scalars().all()), total

    async def list_dead_letters(
        self, channel: str | None = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[Job], int]:
        """List jobs that exhausted their attempts."""
        return await self.list_jobs(
            JobListFilters(
                status=[JobStatus.DEADLETTER],
                channel=channel,
                limit=limit,
                offset=offset,
            )
        )

    async def requeue(self, job_id: UUID) -> bool:
        """Move a dead-lettered job back to pending with a fresh attempt budget.

        Dead-lettered jobs are never retried automatically; this is the
        operator's way out.
        """
        now = datetime.now(UTC)
        async with self.database.SessionLocal() as session:
            result = await session.execute(
                update(Job)
                .where(
                    and_(
                        Job.id == job_id,
                        Job.status == JobStatus.DEADLETTER.value,
                    )
                )
                .values(
                    status=JobStatus.PENDING.value,
                    attempt_count=0,
                    run_at=now,
                    locked_at=None,
                    locked_by=None,
                    heartbeat_at=None,
                    failed_at=None,
                    error_code=None,
                    updated_at=now,
                )
            )
            await session.commit()

        success = result.rowcount > 0
        if success:
            logger.info("Dead-lettered job requeued", job_id=str(job_id))

        return success

    async def get_stats(self, channel: str | None = None) -> JobStatsResponse:
        """Get job statistics, optionally scoped to a channel."""
        base_filter = Job.channel == channel if channel else true()

        async with self.database.SessionLocal() as session:
            total_result = await session.execute(
                select(func.count(Job.id)).where(base_filter)
            )
            total_jobs = total_result.scalar() or 0

            status_result = await session.execute(
                select(Job.status, func.count(Job.id))
                .where(base_filter)
                .group_by(Job.status)
            )
            by_status = dict(status_result.all())

            name_result = await session.execute(
                select(Job.job_name, func.count(Job.id))
                .where(base_filter)
                .group_by(Job.job_name)
            )
            by_job_name = dict(name_result.all())

            one_hour_ago = datetime.now(UTC) - timedelta(hours=1)
            recent_result = await session.execute(
                select(func.count(Job.id)).where(
                    and_(
                        base_filter,
                        Job.status == JobStatus.DEADLETTER.value,
                        Job.failed_at >= one_hour_ago,
                    )
                )
            )
            dead_lettered_last_hour = recent_result.scalar() or 0

        queue_depth = sum(
            by_status.get(status, 0)
            for status in (*CLAIMABLE_STATUSES, JobStatus.PROCESSING.value)
        )

        return JobStatsResponse(
            total_jobs=total_jobs,
            by_status=by_status,
            by_job_name=by_job_name,
            queue_depth=queue_depth,
            dead_letter_count=by_status.get(JobStatus.DEADLETTER.value, 0),
            dead_lettered_last_hour=dead_lettered_last_hour,
        )

    async def cleanup_old_jobs(self) -> int:
        """Delete completed and dead-lettered jobs past the retention window."""
        retention_days = self.settings.job_cleanup_after_days
        cutoff = datetime.now(UTC) - timedelta(days=retention_days)

        async with self.database.SessionLocal() as session:
            result = await session.execute(
                delete(Job).where(
                    and_(
                        Job.status.in_(TERMINAL_STATUSES),
                        Job.updated_at < cutoff,
                    )
                )
            )
            deleted_count = result.rowcount
            await session.commit()

        if deleted_count > 0:
            logger.info(
                "Cleaned up old jobs",
                deleted_count=deleted_count,
                retention_days=retention_days,
            )

        return deleted_count
