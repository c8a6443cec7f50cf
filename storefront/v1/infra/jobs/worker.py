"""
Database-backed worker runtime with leases and fixed-delay retries.
"""

import asyncio
import os
import socket
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config.logging import get_logger
from storefront.config.settings import Settings
from storefront.infra.database import Database
from storefront.v1.core.exceptions import UnknownJobError
from storefront.v1.core.registries import JobHandler
from storefront.v1.infra.jobs.envelope import parse_payload
from storefront.v1.infra.jobs.models import (
    CLAIMABLE_STATUSES,
    Job,
    JobStatus,
    as_utc,
    utcnow,
)
from storefront.v1.infra.jobs.schemas import JobContext

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class ChannelWorker:
    """
    Pulls jobs from one channel and hands them to one processor.

    At most ``concurrency_limit`` jobs are in flight at once. A job is only
    processed after its claim UPDATE succeeded, so two workers never run
    the same job concurrently.
    """

    def __init__(
        self,
        runtime: "WorkerRuntime",
        channel: str,
        processor: JobHandler,
        concurrency_limit: int,
    ):
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")

        self.runtime = runtime
        self.channel = channel
        self.processor = processor
        self.concurrency_limit = concurrency_limit
        self.active_jobs: set[UUID] = set()
        self._tasks: set[asyncio.Task] = set()

    @property
    def available_slots(self) -> int:
        return max(0, self.concurrency_limit - len(self.active_jobs))

    async def poll(self) -> list[asyncio.Task]:
        """Claim as many jobs as there are free slots and start them."""
        if self.available_slots == 0:
            return []

        async with self.runtime.database.SessionLocal() as session:
            jobs = await self.runtime.claim_jobs(
                session, self.channel, self.available_slots
            )

        tasks = []
        for job in jobs:
            self.active_jobs.add(job.id)
            task = asyncio.create_task(self._process_job(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        return tasks

    async def run(self) -> None:
        """Claim loop; runs until the runtime stops."""
        poll_interval = self.runtime.settings.job_poll_interval_ms / 1000

        while self.runtime.running:
            try:
                if self.available_slots == 0:
                    await self.runtime.idle(poll_interval)
                    continue

                tasks = await self.poll()
                if not tasks:
                    await self.runtime.idle(poll_interval)

            except Exception:
                logger.exception(
                    "Error in worker loop",
                    worker_id=self.runtime.worker_id,
                    channel=self.channel,
                )
                await self.runtime.idle(5)  # Back off on errors

    async def drain(self) -> None:
        """Wait for every in-flight job of this channel."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _process_job(self, job: Job) -> None:
        """Process a single delivery and record the outcome."""
        job_logger = logger.bind(
            job_id=str(job.id),
            job_name=job.job_name,
            channel=job.channel,
            attempt=job.attempt_count,
            max_attempts=job.max_attempts,
        )

        try:
            job_logger.info("Processing job started")

            expected = getattr(self.processor, "job_name", None)
            if expected and expected != job.job_name:
                raise UnknownJobError(
                    f"Channel '{self.channel}' has no processor for job '{job.job_name}'"
                )

            payload = parse_payload(job.job_name, job.payload)
            context = JobContext(
                job_id=job.id,
                job_name=job.job_name,
                channel=job.channel,
                attempt=job.attempt_count,
                max_attempts=job.max_attempts,
                enqueued_at=as_utc(job.enqueued_at),
            )
            result = await self.processor.handle(payload, context)

        except Exception as e:
            # Every processor error counts as a failed attempt
            job_logger.warning(
                "Job attempt failed",
                error=str(e),
                exception=e.__class__.__name__,
            )
            await self.runtime.record_failure(job, e)

        else:
            await self.runtime.mark_completed(job, result)
            job_logger.info("Processing job completed successfully")

        finally:
            self.active_jobs.discard(job.id)


class WorkerRuntime:
    """
    Consumer side of the job channels.

    Register one processor per channel, then either ``start()`` the
    long-running loops or call ``run_once()`` for a single claim cycle.

    Retry policy: a failed attempt is re-scheduled after the job's fixed
    ``backoff_base_delay``; once ``attempt_count`` reaches ``max_attempts``
    the job is dead-lettered and left in place for inspection.
    """

    def __init__(
        self,
        database: Database,
        settings: Settings,
        clock: Clock | None = None,
        worker_id: str | None = None,
    ):
        self.database = database
        self.settings = settings
        self.clock = clock or utcnow
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.running = False
        self.channels: dict[str, ChannelWorker] = {}
        self._stop_event = asyncio.Event()

    def register_worker(
        self,
        channel: str,
        processor: JobHandler,
        concurrency_limit: int | None = None,
    ) -> ChannelWorker:
        """Attach a processor to a channel."""
        if self.running:
            raise RuntimeError("Cannot register workers while the runtime is running")
        if channel in self.channels:
            raise ValueError(f"Channel '{channel}' already has a worker")

        if concurrency_limit is None:
            concurrency_limit = self.settings.job_concurrency

        worker = ChannelWorker(self, channel, processor, concurrency_limit)
        self.channels[channel] = worker

        logger.info(
            "Worker registered",
            worker_id=self.worker_id,
            channel=channel,
            job_name=getattr(processor, "job_name", None),
            concurrency=worker.concurrency_limit,
        )
        return worker

    @property
    def active_jobs(self) -> set[UUID]:
        return set().union(*(w.active_jobs for w in self.channels.values()))

    async def idle(self, seconds: float) -> None:
        """Sleep between loop iterations, waking early on stop()."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def start(self) -> None:
        """Run every channel loop plus heartbeats and lease recovery."""
        if self.running:
            raise RuntimeError("Worker is already running")
        if not self.channels:
            raise RuntimeError("No workers registered")

        self.running = True
        self._stop_event.clear()
        logger.info(
            "Starting job worker",
            worker_id=self.worker_id,
            channels=list(self.channels),
            poll_interval_ms=self.settings.job_poll_interval_ms,
        )

        try:
            await asyncio.gather(
                *(worker.run() for worker in self.channels.values()),
                self._heartbeat_loop(),
                self._stuck_job_recovery_loop(),
            )
        except Exception:
            logger.exception("Worker crashed", worker_id=self.worker_id)
            raise
        finally:
            self.running = False

    async def stop(self) -> None:
        """Stop claiming and wait for in-flight jobs.

        In-flight jobs are not cancelled. Anything still running after the
        shutdown timeout keeps its lease and is recovered once it expires.
        """
        logger.info("Stopping job worker", worker_id=self.worker_id)
        self.running = False
        self._stop_event.set()

        pending = [w.drain() for w in self.channels.values()]
        try:
            await asyncio.wait_for(
                asyncio.gather(*pending),
                timeout=self.settings.job_shutdown_timeout_s,
            )
        except TimeoutError:
            logger.warning(
                "Worker stopped with active jobs",
                worker_id=self.worker_id,
                active_jobs=len(self.active_jobs),
            )

    async def run_once(self) -> int:
        """One claim cycle over every channel; returns jobs processed."""
        tasks: list[asyncio.Task] = []
        for worker in self.channels.values():
            tasks.extend(await worker.poll())
        if tasks:
            await asyncio.gather(*tasks)
        return len(tasks)

    async def claim_jobs(
        self, session: AsyncSession, channel: str, limit: int
    ) -> list[Job]:
        """
        Claim up to ``limit`` due jobs of a channel for this worker.

        PostgreSQL claims with SELECT ... FOR UPDATE SKIP LOCKED; SQLite uses
        a status-guarded UPDATE per candidate row. Either way attempt_count
        is incremented in the same statement that takes the lease.
        """
        now = self.clock()
        due = and_(
            Job.channel == channel,
            Job.status.in_(CLAIMABLE_STATUSES),
            Job.run_at <= now,
        )
        candidates = (
            select(Job.id).where(due).order_by(Job.run_at, Job.enqueued_at).limit(limit)
        )
        claim_values = dict(
            status=JobStatus.PROCESSING.value,
            locked_at=now,
            locked_by=self.worker_id,
            heartbeat_at=now,
            attempt_count=Job.attempt_count + 1,
            updated_at=now,
        )

        if self.database.is_postgres:
            result = await session.execute(candidates.with_for_update(skip_locked=True))
            job_ids = list(result.scalars().all())
            if job_ids:
                await session.execute(
                    update(Job).where(Job.id.in_(job_ids)).values(**claim_values)
                )
        else:
            result = await session.execute(candidates)
            job_ids = []
            for job_id in result.scalars().all():
                claimed = await session.execute(
                    update(Job)
                    .where(and_(Job.id == job_id, Job.status.in_(CLAIMABLE_STATUSES)))
                    .values(**claim_values)
                )
                if claimed.rowcount == 1:
                    job_ids.append(job_id)

        await session.commit()

        if not job_ids:
            return []

        claimed_result = await session.execute(
            select(Job)
            .where(Job.id.in_(job_ids))
            .execution_options(populate_existing=True)
        )
        jobs = list(claimed_result.scalars().all())

        logger.info(
            "Claimed jobs",
            worker_id=self.worker_id,
            channel=channel,
            job_count=len(jobs),
            job_ids=[str(job.id) for job in jobs],
        )
        return jobs

    async def mark_completed(self, job: Job, result: dict[str, Any] | None) -> None:
        """Mark a processing job as completed."""
        now = self.clock()
        async with self.database.SessionLocal() as session:
            await session.execute(
                update(Job)
                .where(and_(Job.id == job.id, Job.locked_by == self.worker_id))
                .values(
                    status=JobStatus.COMPLETED.value,
                    result=result,
                    locked_at=None,
                    locked_by=None,
                    heartbeat_at=None,
                    completed_at=now,
                    updated_at=now,
                )
            )
            await session.commit()

    async def record_failure(self, job: Job, error: Exception) -> JobStatus:
        """Schedule a retry or dead-letter the job, depending on attempts left."""
        now = self.clock()
        message = f"{error.__class__.__name__}: {error}"

        if job.attempt_count < job.max_attempts:
            status = JobStatus.DELAYED
            values = dict(
                status=status.value,
                run_at=now + timedelta(milliseconds=job.backoff_base_delay_ms),
                error_code="RETRY_SCHEDULED",
            )
        else:
            status = JobStatus.DEADLETTER
            values = dict(
                status=status.value,
                error_code="PROCESSING_ERROR",
                failed_at=now,
            )

        async with self.database.SessionLocal() as session:
            await session.execute(
                update(Job)
                .where(and_(Job.id == job.id, Job.locked_by == self.worker_id))
                .values(
                    **values,
                    last_error=message,
                    locked_at=None,
                    locked_by=None,
                    heartbeat_at=None,
                    updated_at=now,
                )
            )
            await session.commit()

        if status == JobStatus.DELAYED:
            logger.info(
                "Job scheduled for retry",
                job_id=str(job.id),
                attempt=job.attempt_count,
                max_attempts=job.max_attempts,
                next_run_at=values["run_at"].isoformat(),
            )
        else:
            logger.error(
                "Job moved to dead-letter",
                job_id=str(job.id),
                job_name=job.job_name,
                channel=job.channel,
                attempts=job.attempt_count,
                error=message,
            )
        return status

    async def heartbeat(self) -> None:
        """Renew the lease of every job this worker is processing."""
        active = self.active_jobs
        if not active:
            return

        async with self.database.SessionLocal() as session:
            await session.execute(
                update(Job)
                .where(and_(Job.id.in_(list(active)), Job.locked_by == self.worker_id))
                .values(heartbeat_at=self.clock())
            )
            await session.commit()

    async def recover_stale_jobs(self) -> int:
        """Release jobs whose worker stopped heart-beating.

        A recovered job goes back to pending, or to the dead-letter state
        when the lost attempt was its last one.
        """
        timeout_seconds = self.settings.job_visibility_timeout_s
        now = self.clock()
        cutoff = now - timedelta(seconds=timeout_seconds)
        stale = and_(
            Job.status == JobStatus.PROCESSING.value,
            Job.heartbeat_at < cutoff,
        )
        released = dict(
            locked_at=None,
            locked_by=None,
            heartbeat_at=None,
            last_error=f"Job lease expired after {timeout_seconds}s",
            updated_at=now,
        )

        async with self.database.SessionLocal() as session:
            requeued = await session.execute(
                update(Job)
                .where(and_(stale, Job.attempt_count < Job.max_attempts))
                .values(
                    status=JobStatus.PENDING.value,
                    run_at=now,
                    error_code="WORKER_TIMEOUT",
                    **released,
                )
            )
            dead = await session.execute(
                update(Job)
                .where(and_(stale, Job.attempt_count >= Job.max_attempts))
                .values(
                    status=JobStatus.DEADLETTER.value,
                    error_code="WORKER_TIMEOUT",
                    failed_at=now,
                    **released,
                )
            )
            await session.commit()

        recovered = requeued.rowcount + dead.rowcount
        if recovered:
            logger.warning(
                "Recovered stuck jobs",
                requeued=requeued.rowcount,
                dead_lettered=dead.rowcount,
                timeout_seconds=timeout_seconds,
            )
        return recovered

    async def _heartbeat_loop(self) -> None:
        """Update heartbeats for active jobs."""
        while self.running:
            try:
                await self.heartbeat()
                await self.idle(self.settings.job_heartbeat_interval_s)

            except Exception:
                logger.exception(
                    "Error updating heartbeats", worker_id=self.worker_id
                )
                await self.idle(self.settings.job_heartbeat_interval_s)

    async def _stuck_job_recovery_loop(self) -> None:
        """Recover jobs that are stuck due to worker crashes."""
        interval = max(1, self.settings.job_visibility_timeout_s // 2)
        while self.running:
            try:
                await self.recover_stale_jobs()
                await self.idle(interval)

            except Exception:
                logger.exception("Error in stuck job recovery")
                await self.idle(interval)
