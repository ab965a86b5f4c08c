"""
API request and response type definitions.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from queuectl.constants import JobState


class EnqueueResponse(BaseModel):
    """Response body after enqueueing a job."""

    id: str
    message: str = "Job enqueued"


class JobResponse(BaseModel):
    """Full job details response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    command: str
    state: JobState
    attempts: int
    max_retries: int
    next_run_at: datetime
    locked_by: str | None
    locked_at: datetime | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime


class JobListResponse(BaseModel):
    """Jobs in one state."""

    state: JobState
    jobs: list[JobResponse]
    total: int


class DeadLetterResponse(BaseModel):
    """A dead-letter entry."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    command: str
    attempts: int
    max_retries: int
    created_at: datetime
    moved_at: datetime
    last_error: str | None


class DeadLetterListResponse(BaseModel):
    """All dead-letter entries."""

    jobs: list[DeadLetterResponse]
    total: int


class RetryJobResponse(BaseModel):
    """Response body after retrying a job from the dead-letter queue."""

    id: str
    state: JobState
    attempts: int
    message: str = "Job queued for retry"


class StatusResponse(BaseModel):
    """Job counts per state plus jobs that look stuck in processing."""

    counts: dict[str, int]
    total: int
    stuck_jobs: list[JobResponse]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
