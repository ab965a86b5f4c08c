"""
Job management routes.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from queuectl.config import get_settings
from queuectl.constants import API_V1_PREFIX, SPAN_ENQUEUE_JOB, JobState
from queuectl.db import get_async_session
from queuectl.db.repository import JobRepository
from queuectl.observability.metrics import get_metrics
from queuectl.observability.tracing import get_tracer
from queuectl.types.api import (
    EnqueueResponse,
    JobListResponse,
    JobResponse,
    StatusResponse,
)
from queuectl.types.job import JobSpec

logger = logging.getLogger(__name__)

router = APIRouter(prefix=API_V1_PREFIX, tags=["Jobs"])


@router.post(
    "/jobs",
    response_model=EnqueueResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue a job",
    description="Add a job to the queue. Re-enqueueing an existing id updates its command and max_retries.",
)
async def enqueue_job(
    spec: JobSpec,
    session: AsyncSession = Depends(get_async_session),
) -> EnqueueResponse:
    """
    Enqueue a job.

    Args:
        spec: Job specification.
        session: Database session.

    Returns:
        EnqueueResponse with the job id.
    """
    repo = JobRepository(session)

    with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB):
        job_id = await repo.enqueue(
            command=spec.command,
            job_id=spec.id,
            max_retries=spec.max_retries,
            next_run_at=spec.next_run_at,
        )

    get_metrics().record_job_enqueued()
    return EnqueueResponse(id=job_id)


@router.get(
    "/jobs",
    response_model=JobListResponse,
    summary="List jobs",
    description="List jobs in one state, newest first.",
)
async def list_jobs(
    state: JobState = Query(default=JobState.PENDING),
    session: AsyncSession = Depends(get_async_session),
) -> JobListResponse:
    """
    List jobs by state.

    Args:
        state: State filter.
        session: Database session.

    Returns:
        JobListResponse with the matching jobs.
    """
    repo = JobRepository(session)
    jobs = await repo.list_by_state(state)

    return JobListResponse(
        state=state,
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=len(jobs),
    )


@router.get(
    "/jobs/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
)
async def get_job(
    job_id: str,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    """
    Get job details by ID.

    Raises:
        HTTPException: If the job does not exist.
    """
    repo = JobRepository(session)
    job = await repo.get_job(job_id)

    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    return JobResponse.model_validate(job)


@router.get(
    "/status",
    response_model=StatusResponse,
    summary="Queue status",
    description="Job counts per state and jobs held in processing for too long.",
)
async def get_status(
    session: AsyncSession = Depends(get_async_session),
) -> StatusResponse:
    """
    Summarize the queue.

    Args:
        session: Database session.

    Returns:
        StatusResponse with counts per state and stuck jobs.
    """
    settings = get_settings()
    repo = JobRepository(session)

    counts = await repo.summary()
    stuck = await repo.list_stuck(settings.stuck_job_threshold_seconds)

    get_metrics().update_queue_depth(counts)

    return StatusResponse(
        counts=counts,
        total=sum(counts.values()),
        stuck_jobs=[JobResponse.model_validate(job) for job in stuck],
    )
