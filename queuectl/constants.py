"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> PROCESSING (atomic claim)
    - PROCESSING -> COMPLETED (success)
    - PROCESSING -> PENDING (retry with backoff)
    - PROCESSING -> DEAD (retries exhausted, mirrored to the dead-letter table)
    - DEAD -> PENDING (operator retry from the dead-letter table)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DEAD = "dead"


# Store-backed config keys
CONFIG_BACKOFF_BASE = "backoff_base"
CONFIG_MAX_RETRIES = "max_retries"

# Default values
DEFAULT_BACKOFF_BASE = 2
DEFAULT_MAX_RETRIES = 3

CONFIG_DEFAULTS: dict[str, int] = {
    CONFIG_BACKOFF_BASE: DEFAULT_BACKOFF_BASE,
    CONFIG_MAX_RETRIES: DEFAULT_MAX_RETRIES,
}

# API constants
API_V1_PREFIX = "/v1"

# Failure outcomes
OUTCOME_COMPLETED = "completed"
OUTCOME_RETRIED = "retried"
OUTCOME_DEAD = "dead"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_CLAIMED = "jobs_claimed_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_DLQ_RETRIES = "dlq_retries_total"
METRIC_STORE_ERRORS = "store_errors_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_REPORT_OUTCOME = "report_outcome"
