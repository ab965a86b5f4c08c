"""
Dead-letter queue routes.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from queuectl.constants import API_V1_PREFIX
from queuectl.db import get_async_session
from queuectl.db.repository import JobRepository
from queuectl.observability.metrics import get_metrics
from queuectl.types.api import (
    DeadLetterListResponse,
    DeadLetterResponse,
    RetryJobResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/dlq", tags=["Dead-letter queue"])


@router.get(
    "",
    response_model=DeadLetterListResponse,
    summary="List dead-lettered jobs",
)
async def list_dlq(
    session: AsyncSession = Depends(get_async_session),
) -> DeadLetterListResponse:
    """List dead-letter entries, most recently moved first."""
    repo = JobRepository(session)
    entries = await repo.list_dlq()

    return DeadLetterListResponse(
        jobs=[DeadLetterResponse.model_validate(entry) for entry in entries],
        total=len(entries),
    )


@router.post(
    "/{job_id}/retry",
    response_model=RetryJobResponse,
    summary="Retry a dead-lettered job",
    description="Move a job from the dead-letter queue back to pending. Attempts are preserved.",
)
async def retry_dlq_job(
    job_id: str,
    session: AsyncSession = Depends(get_async_session),
) -> RetryJobResponse:
    """
    Retry a job from the dead-letter queue.

    A missing entry raises NotFoundError, answered with 404 by the
    application's exception handler.

    Args:
        job_id: The job id.
        session: Database session.

    Returns:
        RetryJobResponse with the revived job's state.
    """
    repo = JobRepository(session)
    job = await repo.retry_dlq_job(job_id)

    get_metrics().record_dlq_retry()

    return RetryJobResponse(
        id=job.id,
        state=job.state,
        attempts=job.attempts,
    )
