"""
Job system Pydantic schemas.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from storefront.v1.infra.jobs.models import JobStatus


class JobOptions(BaseModel):
    """Retry policy overrides supplied by the producer."""

    max_attempts: int | None = Field(
        default=None, ge=1, description="Delivery attempts before dead-letter"
    )
    backoff_base_delay: timedelta | None = Field(
        default=None, description="Fixed delay before each retry"
    )

    @field_validator("backoff_base_delay")
    @classmethod
    def validate_backoff(cls, v):
        if v is not None and v < timedelta(0):
            raise ValueError("backoff_base_delay must not be negative")
        return v


class JobEnqueueRequest(BaseModel):
    """Schema for enqueueing a job through the admin API."""

    model_config = ConfigDict(extra="forbid")

    job_name: str = Field(..., min_length=1, description="Registered job name")
    payload: dict[str, Any] = Field(..., description="Payload for the job's schema")
    channel: str | None = Field(default=None, description="Target channel")
    max_attempts: int | None = Field(default=None, ge=1)
    backoff_base_delay_s: float | None = Field(default=None, ge=0)
    dedupe_key: str | None = Field(default=None, max_length=255)

    def options(self) -> JobOptions:
        backoff = None
        if self.backoff_base_delay_s is not None:
            backoff = timedelta(seconds=self.backoff_base_delay_s)
        return JobOptions(max_attempts=self.max_attempts, backoff_base_delay=backoff)


@dataclass(frozen=True)
class JobContext:
    """Delivery metadata handed to a processor alongside the payload."""

    job_id: UUID
    job_name: str
    channel: str
    attempt: int
    max_attempts: int
    enqueued_at: datetime

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


class JobHandle(BaseModel):
    """Returned by enqueue once the job is durably recorded."""

    job_id: UUID
    channel: str
    job_name: str
    status: str
    enqueued_at: datetime
    deduplicated: bool = Field(
        default=False, description="Whether an existing job was returned"
    )


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    channel: str
    job_name: str
    payload: dict[str, Any]
    status: str
    max_attempts: int
    backoff_base_delay_ms: int
    attempt_count: int
    run_at: datetime
    enqueued_at: datetime

    # Worker coordination
    locked_at: datetime | None = None
    locked_by: str | None = None
    heartbeat_at: datetime | None = None

    # Outcome
    result: dict[str, Any] | None = None
    error_code: str | None = None
    last_error: str | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    # Metadata
    dedupe_key: str | None = None
    request_id: str | None = None
    created_at: datetime
    updated_at: datetime


class JobListFilters(BaseModel):
    """Schema for job listing filters."""

    status: list[JobStatus] | None = Field(
        default=None, description="Filter by job status"
    )
    channel: str | None = Field(default=None, description="Filter by channel")
    job_name: str | None = Field(default=None, description="Filter by job name")
    limit: int = Field(
        default=50, ge=1, le=1000, description="Maximum results to return"
    )
    offset: int = Field(default=0, ge=0, description="Results offset for pagination")


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_job_name: dict[str, int]
    queue_depth: int  # pending + delayed + processing
    dead_letter_count: int
    dead_lettered_last_hour: int


class JobRequeueResponse(BaseModel):
    """Schema for a manual requeue of a dead-lettered job."""

    job_id: UUID
    requeued: bool
