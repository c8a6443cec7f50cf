"""
Job envelope persisted in the channel's backing store.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    SmallInteger,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from storefront.infra.database import Base


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored value is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    DELAYED = "delayed"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DEADLETTER = "deadletter"


CLAIMABLE_STATUSES = (JobStatus.PENDING.value, JobStatus.DELAYED.value)
TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.DEADLETTER.value)


class Job(Base):
    """
    A queued unit of work.

    The producer sets job_name, payload and the retry options. Everything
    else (attempt_count, status, lease fields, run_at after the first
    attempt) is owned by the worker runtime.
    """

    __tablename__ = "jobs"

    # Core fields
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    channel: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Named channel the job is delivered through"
    )
    job_name: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Operation the processor performs"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Self-contained, schema-validated job parameters",
    )

    # Retry policy
    max_attempts: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=3, comment="Delivery attempts before dead-letter"
    )
    backoff_base_delay_ms: Mapped[int] = mapped_column(
        Integer, nullable=False, default=5000, comment="Fixed delay between attempts"
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="pending|delayed|processing|completed|deadletter",
    )
    attempt_count: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=0, comment="Deliveries made so far"
    )
    run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="Earliest time to deliver the job",
    )
    enqueued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    # Worker coordination
    locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="When job was locked by worker"
    )
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker ID that locked the job"
    )
    heartbeat_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Last worker heartbeat"
    )

    # Outcome
    result: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Processor result"
    )
    error_code: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Structured error identifier"
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last error message"
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="When the job was dead-lettered"
    )

    # Tracing and deduplication
    dedupe_key: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Producer-side deduplication key"
    )
    request_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Originating request ID for tracing"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'delayed', 'processing', 'completed', 'deadletter')",
            name="jobs_status_check",
        ),
        CheckConstraint("max_attempts >= 1", name="jobs_max_attempts_check"),
        CheckConstraint("backoff_base_delay_ms >= 0", name="jobs_backoff_check"),
        Index("ix_jobs_claim", "channel", "status", "run_at"),
        Index("ix_jobs_dedupe_key", "channel", "dedupe_key"),
        Index("ix_jobs_heartbeat_at", "heartbeat_at"),
        Index("ix_jobs_created_at", "created_at"),
    )

    @property
    def backoff_base_delay_s(self) -> float:
        return self.backoff_base_delay_ms / 1000

    def is_terminal(self) -> bool:
        """Check if the job reached completed or dead-letter."""
        return self.status in TERMINAL_STATUSES

    def attempts_exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts

    def is_stuck(self, visibility_timeout_s: int, now: datetime | None = None) -> bool:
        """Check if a processing job lost its lease."""
        if self.status != JobStatus.PROCESSING.value or not self.heartbeat_at:
            return False

        now = now or utcnow()
        return (now - as_utc(self.heartbeat_at)).total_seconds() > visibility_timeout_s
