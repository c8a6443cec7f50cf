import asyncio
from datetime import timedelta

import pytest

from storefront.infra.database import Database
from storefront.v1.infra.jobs.models import JobStatus, as_utc
from storefront.v1.infra.jobs.schemas import JobOptions
from storefront.v1.infra.jobs.service import JobQueue
from storefront.v1.infra.jobs.worker import WorkerRuntime
from storefront.v1.notifications.handlers import (
    OrderConfirmationHandler,
    confirmation_message_id,
)
from storefront.v1.notifications.schemas import SEND_CONFIRMATION
from storefront.v1.notifications.templates import TemplateStore
from tests.factories import CHANNEL, RecordingTransport, make_payload

BACKOFF = timedelta(seconds=5)


class FlakyProcessor:
    """Fails the first ``fail_times`` attempts, then succeeds."""

    job_name = SEND_CONFIRMATION

    def __init__(self, fail_times: int = 0, delay: float = 0):
        self.fail_times = fail_times
        self.delay = delay
        self.attempts: list[int] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def handle(self, payload, context):
        self.attempts.append(context.attempt)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if len(self.attempts) <= self.fail_times:
                raise RuntimeError(f"boom #{len(self.attempts)}")
            return {"order_id": str(payload.order_id)}
        finally:
            self.in_flight -= 1


async def _enqueue(job_queue, max_attempts=3, **payload_overrides):
    return await job_queue.enqueue(
        SEND_CONFIRMATION,
        make_payload(**payload_overrides),
        JobOptions(max_attempts=max_attempts, backoff_base_delay=BACKOFF),
    )


def _runtime(database, settings, clock, processor, concurrency=None, worker_id=None):
    runtime = WorkerRuntime(database, settings, clock=clock, worker_id=worker_id)
    runtime.register_worker(CHANNEL, processor, concurrency_limit=concurrency)
    return runtime


class TestRegistration:
    def test_register_rejects_invalid_concurrency(self, database, settings):
        runtime = WorkerRuntime(database, settings)

        with pytest.raises(ValueError, match="concurrency_limit"):
            runtime.register_worker(CHANNEL, FlakyProcessor(), concurrency_limit=0)

    def test_register_defaults_concurrency_from_settings(self, database, settings):
        runtime = WorkerRuntime(database, settings)

        worker = runtime.register_worker(CHANNEL, FlakyProcessor())
        assert worker.concurrency_limit == settings.job_concurrency

        other = runtime.register_worker("other", FlakyProcessor(), concurrency_limit=1)
        assert other.concurrency_limit == 1

    def test_register_rejects_second_worker_on_channel(self, database, settings):
        runtime = WorkerRuntime(database, settings)
        runtime.register_worker(CHANNEL, FlakyProcessor())

        with pytest.raises(ValueError, match="already has a worker"):
            runtime.register_worker(CHANNEL, FlakyProcessor())

    def test_default_concurrency_from_settings(self, database, settings):
        runtime = WorkerRuntime(database, settings)
        worker = runtime.register_worker(CHANNEL, FlakyProcessor())

        assert worker.concurrency_limit == settings.job_concurrency == 5

    async def test_start_without_workers_fails(self, database, settings):
        runtime = WorkerRuntime(database, settings)

        with pytest.raises(RuntimeError, match="No workers registered"):
            await runtime.start()


class TestRetryPolicy:
    async def test_success_on_first_attempt(self, database, settings, job_queue, clock):
        processor = FlakyProcessor()
        handle = await _enqueue(job_queue)
        runtime = _runtime(database, settings, clock, processor)

        assert await runtime.run_once() == 1

        job = await job_queue.get_job(handle.job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.attempt_count == 1
        assert job.locked_by is None
        assert job.completed_at is not None
        assert job.result == {"order_id": job.payload["order_id"]}

    @pytest.mark.parametrize("failures", [1, 2])
    async def test_fails_k_times_then_succeeds(
        self, database, settings, job_queue, clock, failures
    ):
        processor = FlakyProcessor(fail_times=failures)
        handle = await _enqueue(job_queue)
        runtime = _runtime(database, settings, clock, processor)

        for _ in range(failures + 1):
            assert await runtime.run_once() == 1
            clock.advance(seconds=5)

        job = await job_queue.get_job(handle.job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.attempt_count == failures + 1
        assert processor.attempts == list(range(1, failures + 2))

    async def test_failed_attempt_is_delayed_by_fixed_backoff(
        self, database, settings, job_queue, clock
    ):
        processor = FlakyProcessor(fail_times=10)
        handle = await _enqueue(job_queue, max_attempts=4)
        runtime = _runtime(database, settings, clock, processor)

        for attempt in range(1, 4):
            assert await runtime.run_once() == 1

            job = await job_queue.get_job(handle.job_id)
            assert job.status == JobStatus.DELAYED.value
            assert job.attempt_count == attempt
            assert job.error_code == "RETRY_SCHEDULED"
            assert f"boom #{attempt}" in job.last_error
            # Same delay after every failure, never doubled
            assert as_utc(job.run_at) == clock.now + BACKOFF

            clock.advance(seconds=5)

    async def test_retry_not_delivered_before_backoff_elapses(
        self, database, settings, job_queue, clock
    ):
        processor = FlakyProcessor(fail_times=1)
        handle = await _enqueue(job_queue)
        runtime = _runtime(database, settings, clock, processor)

        assert await runtime.run_once() == 1

        clock.advance(seconds=4)
        assert await runtime.run_once() == 0

        clock.advance(seconds=1)
        assert await runtime.run_once() == 1

        job = await job_queue.get_job(handle.job_id)
        assert job.status == JobStatus.COMPLETED.value

    async def test_exhausted_attempts_dead_letter_the_job(
        self, database, settings, job_queue, clock
    ):
        processor = FlakyProcessor(fail_times=99)
        handle = await _enqueue(job_queue)
        runtime = _runtime(database, settings, clock, processor)

        for _ in range(3):
            assert await runtime.run_once() == 1
            clock.advance(seconds=5)

        job = await job_queue.get_job(handle.job_id)
        assert job.status == JobStatus.DEADLETTER.value
        assert job.attempt_count == 3
        assert job.error_code == "PROCESSING_ERROR"
        assert job.failed_at is not None
        assert "boom #3" in job.last_error

        # Never retried automatically
        clock.advance(hours=1)
        assert await runtime.run_once() == 0
        assert processor.attempts == [1, 2, 3]

    async def test_single_attempt_job_dead_letters_immediately(
        self, database, settings, job_queue, clock
    ):
        handle = await _enqueue(job_queue, max_attempts=1)
        runtime = _runtime(database, settings, clock, FlakyProcessor(fail_times=1))

        await runtime.run_once()

        job = await job_queue.get_job(handle.job_id)
        assert job.status == JobStatus.DEADLETTER.value
        assert job.attempt_count == 1

    async def test_requeued_dead_letter_gets_fresh_attempts(
        self, database, settings, job_queue, clock
    ):
        processor = FlakyProcessor(fail_times=3)
        handle = await _enqueue(job_queue)
        runtime = _runtime(database, settings, clock, processor)

        for _ in range(3):
            await runtime.run_once()
            clock.advance(seconds=5)

        assert await job_queue.requeue(handle.job_id) is True
        assert await runtime.run_once() == 1

        job = await job_queue.get_job(handle.job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.attempt_count == 1

    async def test_job_name_mismatch_counts_as_failed_attempt(
        self, database, settings, job_queue, clock
    ):
        class InvoiceProcessor(FlakyProcessor):
            job_name = "send-invoice"

        processor = InvoiceProcessor()
        handle = await _enqueue(job_queue)
        runtime = _runtime(database, settings, clock, processor)

        await runtime.run_once()

        job = await job_queue.get_job(handle.job_id)
        assert job.status == JobStatus.DELAYED.value
        assert "UnknownJobError" in job.last_error
        assert processor.attempts == []


class TestOrderConfirmationScenarios:
    async def test_third_attempt_succeeds_and_sends_one_message(
        self, database, settings, job_queue, clock
    ):
        transport = RecordingTransport(fail_times=2)
        handler = OrderConfirmationHandler(TemplateStore(), transport)
        handle = await _enqueue(job_queue)
        runtime = _runtime(database, settings, clock, handler)

        for _ in range(3):
            assert await runtime.run_once() == 1
            clock.advance(seconds=5)

        job = await job_queue.get_job(handle.job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.attempt_count == 3
        assert transport.calls == 3
        assert len(transport.sent) == 1
        assert transport.sent[0]["recipient"] == "budi@example.com"

    async def test_all_attempts_fail_no_message_sent(
        self, database, settings, job_queue, clock
    ):
        transport = RecordingTransport(fail_times=3)
        handler = OrderConfirmationHandler(TemplateStore(), transport)
        handle = await _enqueue(job_queue)
        runtime = _runtime(database, settings, clock, handler)

        for _ in range(3):
            await runtime.run_once()
            clock.advance(seconds=5)

        job = await job_queue.get_job(handle.job_id)
        assert job.status == JobStatus.DEADLETTER.value
        assert "SMTP relay unreachable" in job.last_error
        assert transport.sent == []

        # Still inspectable
        jobs, total = await job_queue.list_dead_letters(CHANNEL)
        assert total == 1
        assert jobs[0].payload["user_email"] == "budi@example.com"

    async def test_failure_after_send_delivers_twice(
        self, database, settings, job_queue, clock
    ):
        """At-least-once: a send reported as failed is repeated on retry."""
        transport = RecordingTransport(fail_after_send=1)
        handler = OrderConfirmationHandler(TemplateStore(), transport)
        handle = await _enqueue(job_queue)
        runtime = _runtime(database, settings, clock, handler)

        await runtime.run_once()
        clock.advance(seconds=5)
        await runtime.run_once()

        job = await job_queue.get_job(handle.job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert len(transport.sent) == 2

        order_id = job.payload["order_id"]
        message_ids = {sent["headers"]["Message-ID"] for sent in transport.sent}
        assert message_ids == {confirmation_message_id(order_id)}


class TestConcurrency:
    async def test_single_cycle_claims_at_most_concurrency_limit(
        self, database, settings, job_queue, clock
    ):
        processor = FlakyProcessor(delay=0.01)
        for _ in range(20):
            await _enqueue(job_queue)
        runtime = _runtime(database, settings, clock, processor, concurrency=5)

        assert await runtime.run_once() == 5
        assert processor.max_in_flight <= 5

        stats = await job_queue.get_stats(CHANNEL)
        assert stats.by_status == {"completed": 5, "pending": 15}

    async def test_running_worker_never_exceeds_concurrency_limit(
        self, database, settings, job_queue, clock
    ):
        processor = FlakyProcessor(delay=0.05)
        for _ in range(20):
            await _enqueue(job_queue)
        runtime = _runtime(database, settings, clock, processor, concurrency=5)

        worker_task = asyncio.create_task(runtime.start())
        try:
            for _ in range(500):
                stats = await job_queue.get_stats(CHANNEL)
                if stats.by_status.get("completed") == 20:
                    break
                await asyncio.sleep(0.02)
        finally:
            await runtime.stop()
            await worker_task

        assert stats.by_status == {"completed": 20}
        assert len(processor.attempts) == 20
        assert 1 <= processor.max_in_flight <= 5

    async def test_two_workers_never_process_the_same_job(
        self, database, settings, job_queue, clock
    ):
        first = FlakyProcessor(delay=0.01)
        second = FlakyProcessor(delay=0.01)
        for _ in range(10):
            await _enqueue(job_queue)
        runtime_a = _runtime(database, settings, clock, first, concurrency=5, worker_id="a")
        runtime_b = _runtime(database, settings, clock, second, concurrency=5, worker_id="b")

        await asyncio.gather(runtime_a.run_once(), runtime_b.run_once())
        await asyncio.gather(runtime_a.run_once(), runtime_b.run_once())

        assert len(first.attempts) + len(second.attempts) == 10
        stats = await job_queue.get_stats(CHANNEL)
        assert stats.by_status == {"completed": 10}


class TestDurability:
    async def test_pending_job_survives_consumer_restart(
        self, settings, job_queue, clock
    ):
        handle = await _enqueue(job_queue)
        await job_queue.database.close()

        # A fresh process: new engine on the same store
        restarted = Database(settings)
        try:
            processor = FlakyProcessor()
            runtime = _runtime(restarted, settings, clock, processor)

            assert await runtime.run_once() == 1

            job = await JobQueue(restarted, settings).get_job(handle.job_id)
            assert job.status == JobStatus.COMPLETED.value
        finally:
            await restarted.close()

    async def test_lost_lease_is_recovered_and_redelivered(
        self, database, settings, job_queue, clock
    ):
        handle = await _enqueue(job_queue)

        # Worker A claims the job and dies without finishing it
        crashed = WorkerRuntime(database, settings, clock=clock, worker_id="crashed")
        async with database.SessionLocal() as session:
            claimed = await crashed.claim_jobs(session, CHANNEL, 1)
        assert [job.id for job in claimed] == [handle.job_id]

        processor = FlakyProcessor()
        runtime = _runtime(database, settings, clock, processor, worker_id="survivor")

        # Lease still valid: nothing to recover or claim
        assert await runtime.recover_stale_jobs() == 0
        assert await runtime.run_once() == 0

        clock.advance(seconds=settings.job_visibility_timeout_s + 1)
        assert await runtime.recover_stale_jobs() == 1

        job = await job_queue.get_job(handle.job_id)
        assert job.status == JobStatus.PENDING.value
        assert job.error_code == "WORKER_TIMEOUT"

        assert await runtime.run_once() == 1
        job = await job_queue.get_job(handle.job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.attempt_count == 2

    async def test_lost_lease_on_last_attempt_dead_letters(
        self, database, settings, job_queue, clock
    ):
        handle = await _enqueue(job_queue, max_attempts=1)
        crashed = WorkerRuntime(database, settings, clock=clock, worker_id="crashed")
        async with database.SessionLocal() as session:
            await crashed.claim_jobs(session, CHANNEL, 1)

        clock.advance(seconds=settings.job_visibility_timeout_s + 1)
        assert await crashed.recover_stale_jobs() == 1

        job = await job_queue.get_job(handle.job_id)
        assert job.status == JobStatus.DEADLETTER.value
        assert job.error_code == "WORKER_TIMEOUT"

    async def test_heartbeat_extends_lease(self, database, settings, job_queue, clock):
        handle = await _enqueue(job_queue)
        runtime = WorkerRuntime(database, settings, clock=clock, worker_id="alive")
        worker = runtime.register_worker(CHANNEL, FlakyProcessor())
        async with database.SessionLocal() as session:
            await runtime.claim_jobs(session, CHANNEL, 1)
        worker.active_jobs.add(handle.job_id)

        clock.advance(seconds=settings.job_visibility_timeout_s - 10)
        await runtime.heartbeat()
        clock.advance(seconds=20)

        assert await runtime.recover_stale_jobs() == 0
        job = await job_queue.get_job(handle.job_id)
        assert job.status == JobStatus.PROCESSING.value
        assert job.is_stuck(settings.job_visibility_timeout_s, clock.now) is False

