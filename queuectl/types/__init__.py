"""
Type definitions for queuectl.
Contains input/output type definitions, grouped by module.
"""

from queuectl.types.api import (
    DeadLetterListResponse,
    DeadLetterResponse,
    EnqueueResponse,
    ErrorResponse,
    HealthResponse,
    JobListResponse,
    JobResponse,
    RetryJobResponse,
    StatusResponse,
)
from queuectl.types.job import (
    CommandResult,
    FailureOutcome,
    JobSpec,
    parse_job_spec,
)

__all__ = [
    # API types
    "EnqueueResponse",
    "JobResponse",
    "JobListResponse",
    "DeadLetterResponse",
    "DeadLetterListResponse",
    "RetryJobResponse",
    "StatusResponse",
    "HealthResponse",
    "ErrorResponse",
    # Job types
    "JobSpec",
    "parse_job_spec",
    "CommandResult",
    "FailureOutcome",
]
