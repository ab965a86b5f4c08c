"""
Job repository for database operations.
Implements the claim protocol, retry/dead-letter transitions and the
read-only projections used by operators.
"""

import logging
from datetime import datetime, timedelta
from typing import Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from queuectl.backoff import BackoffPolicy
from queuectl.config import get_settings
from queuectl.constants import (
    CONFIG_BACKOFF_BASE,
    CONFIG_DEFAULTS,
    CONFIG_MAX_RETRIES,
    JobState,
)
from queuectl.db.models import ConfigEntry, DeadLetterEntry, Job, generate_job_id
from queuectl.errors import NotFoundError, ValidationError
from queuectl.types.job import FailureOutcome

logger = logging.getLogger(__name__)


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Idempotent enqueue (upsert by id)
    - Claiming with FOR UPDATE SKIP LOCKED
    - Completion, retry with backoff and dead-lettering
    - Reviving dead-lettered jobs

    Every method runs inside the caller's session; the session context
    commits or rolls back the whole call as one transaction.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session
        self._settings = get_settings()

    async def enqueue(
        self,
        command: str,
        job_id: str | None = None,
        max_retries: int | None = None,
        next_run_at: datetime | None = None,
    ) -> str:
        """
        Insert a pending job, or update an existing one with the same id.

        An existing job only gets its command and max_retries overwritten;
        its state and attempts are left alone.

        Args:
            command: Shell command to run.
            job_id: Optional caller-supplied id.
            max_retries: Dead-letter threshold. Falls back to the
                ``max_retries`` config value.
            next_run_at: Earliest claim time. Defaults to now.

        Returns:
            The job id.

        Raises:
            ValidationError: If the command is blank or max_retries is negative.
        """
        if not command or not command.strip():
            raise ValidationError("Job command must not be empty")

        if max_retries is None:
            max_retries = await ConfigRepository(self._session).get_int(
                CONFIG_MAX_RETRIES, self._settings.default_max_retries
            )
        if max_retries < 0:
            raise ValidationError("max_retries must be non-negative")

        job_id = job_id or generate_job_id()
        values = {
            "id": job_id,
            "command": command,
            "state": JobState.PENDING,
            "attempts": 0,
            "max_retries": max_retries,
            "next_run_at": next_run_at if next_run_at is not None else func.now(),
        }

        stmt = insert(Job).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Job.id],
            set_={
                "command": stmt.excluded.command,
                "max_retries": stmt.excluded.max_retries,
                "updated_at": func.now(),
            },
        )
        await self._session.execute(stmt)

        logger.info(
            "Enqueued job",
            extra={"job_id": job_id, "max_retries": max_retries}
        )
        return job_id

    async def get_job(self, job_id: str) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job id.

        Returns:
            The Job or None if not found.
        """
        stmt = (
            select(Job)
            .where(Job.id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def claim_job(self, worker_id: str) -> Job | None:
        """
        Atomically claim the oldest ready job for a worker.

        This is the single serialization point between workers. The
        candidate row is selected with FOR UPDATE SKIP LOCKED inside the
        UPDATE itself, so a row another transaction is mid-claim on is
        skipped rather than waited for, and no row is claimed twice.

        Args:
            worker_id: Identity recorded in locked_by.

        Returns:
            The claimed job with attempts already incremented, or None if
            nothing is ready.
        """
        candidate = (
            select(Job.id)
            .where(
                Job.state == JobState.PENDING,
                Job.next_run_at <= func.now(),
            )
            .order_by(Job.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )

        stmt = (
            update(Job)
            .where(Job.id == candidate)
            .values(
                state=JobState.PROCESSING,
                attempts=Job.attempts + 1,
                locked_by=worker_id,
                locked_at=func.now(),
                updated_at=func.now(),
            )
            .returning(Job)
            .execution_options(synchronize_session=False, populate_existing=True)
        )

        result = await self._session.execute(stmt)
        job = result.scalar_one_or_none()

        if job is not None:
            logger.info(
                "Claimed job",
                extra={
                    "job_id": job.id,
                    "worker_id": worker_id,
                    "attempt": job.attempts,
                    "max_retries": job.max_retries,
                }
            )

        return job

    async def mark_completed(self, job_id: str) -> bool:
        """
        Mark a job as completed and release its lock. Idempotent.

        Args:
            job_id: The job id.

        Returns:
            True if a row was updated.
        """
        stmt = (
            update(Job)
            .where(Job.id == job_id)
            .values(
                state=JobState.COMPLETED,
                locked_by=None,
                locked_at=None,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def fail_and_maybe_retry(
        self,
        job: Job,
        error: str,
        backoff: BackoffPolicy,
    ) -> FailureOutcome:
        """
        Record a failed execution and either requeue or dead-letter the job.

        Uses the attempts count from the claim that just failed.

        Args:
            job: The claimed job.
            error: Failure message to store as last_error.
            backoff: Policy giving the delay before the retry.

        Returns:
            FailureOutcome describing the transition taken.
        """
        attempts = job.attempts
        max_retries = job.max_retries

        if not job.is_retryable:
            entry = insert(DeadLetterEntry).values(
                id=job.id,
                command=job.command,
                attempts=attempts,
                max_retries=max_retries,
                created_at=job.created_at,
                moved_at=func.now(),
                last_error=error,
            )
            entry = entry.on_conflict_do_update(
                index_elements=[DeadLetterEntry.id],
                set_={
                    "last_error": entry.excluded.last_error,
                    "moved_at": entry.excluded.moved_at,
                },
            )
            await self._session.execute(entry)

            await self._session.execute(
                update(Job)
                .where(Job.id == job.id)
                .values(
                    state=JobState.DEAD,
                    locked_by=None,
                    locked_at=None,
                    last_error=error,
                    updated_at=func.now(),
                )
                .execution_options(synchronize_session=False)
            )

            logger.warning(
                f"Job moved to dead-letter queue after {attempts} attempts",
                extra={"job_id": job.id, "error": error}
            )
            return FailureOutcome(moved_to_dlq=True, attempts=attempts)

        delay = backoff.delay(attempts)
        await self._session.execute(
            update(Job)
            .where(Job.id == job.id)
            .values(
                state=JobState.PENDING,
                next_run_at=func.now() + timedelta(seconds=delay),
                locked_by=None,
                locked_at=None,
                last_error=error,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )

        logger.info(
            "Job queued for retry",
            extra={"job_id": job.id, "attempt": attempts, "delay_seconds": delay}
        )
        return FailureOutcome(moved_to_dlq=False, attempts=attempts, delay_seconds=delay)

    async def list_by_state(self, state: JobState) -> Sequence[Job]:
        """
        List jobs in one state, newest first.

        Args:
            state: The state to filter on.

        Returns:
            The matching jobs.
        """
        stmt = (
            select(Job)
            .where(Job.state == state)
            .order_by(Job.created_at.desc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def summary(self) -> dict[str, int]:
        """
        Count jobs per state. Every state is present, zero-filled.

        Returns:
            Dictionary of state -> count.
        """
        stmt = select(Job.state, func.count()).group_by(Job.state)
        result = await self._session.execute(stmt)

        counts = {state.value: 0 for state in JobState}
        for state, count in result.all():
            counts[JobState(state).value] = count
        return counts

    async def list_dlq(self) -> Sequence[DeadLetterEntry]:
        """List dead-letter entries, most recently moved first."""
        stmt = (
            select(DeadLetterEntry)
            .order_by(DeadLetterEntry.moved_at.desc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def retry_dlq_job(self, job_id: str) -> Job:
        """
        Move a dead-lettered job back to pending.

        attempts and max_retries are preserved, last_error is cleared and
        the job is immediately claimable. The job upsert and the entry
        delete share one transaction.

        Args:
            job_id: The job id.

        Returns:
            The revived job.

        Raises:
            NotFoundError: If there is no dead-letter entry for the id.
        """
        result = await self._session.execute(
            select(DeadLetterEntry)
            .where(DeadLetterEntry.id == job_id)
            .with_for_update()
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise NotFoundError(f"Dead-letter job not found: {job_id}", job_id=job_id)

        stmt = insert(Job).values(
            id=entry.id,
            command=entry.command,
            state=JobState.PENDING,
            attempts=entry.attempts,
            max_retries=entry.max_retries,
            created_at=entry.created_at,
            next_run_at=func.now(),
            last_error=None,
        )
        stmt = (
            stmt.on_conflict_do_update(
                index_elements=[Job.id],
                set_={
                    "command": stmt.excluded.command,
                    "state": stmt.excluded.state,
                    "next_run_at": func.now(),
                    "locked_by": None,
                    "locked_at": None,
                    "last_error": None,
                    "updated_at": func.now(),
                },
            )
            .returning(Job)
            .execution_options(populate_existing=True)
        )
        job = (await self._session.execute(stmt)).scalar_one()

        await self._session.execute(
            delete(DeadLetterEntry)
            .where(DeadLetterEntry.id == job_id)
            .execution_options(synchronize_session=False)
        )

        logger.info(
            "Job retried from dead-letter queue",
            extra={"job_id": job_id, "attempts": job.attempts}
        )
        return job

    async def list_stuck(self, older_than_seconds: int) -> Sequence[Job]:
        """
        List processing jobs whose lock is older than a threshold.

        These usually belong to a worker that died mid-execution. They are
        reported for an operator to act on; nothing here reclaims them.

        Args:
            older_than_seconds: Minimum lock age.

        Returns:
            The stuck jobs, oldest lock first.
        """
        stmt = (
            select(Job)
            .where(
                Job.state == JobState.PROCESSING,
                Job.locked_at < func.now() - timedelta(seconds=older_than_seconds),
            )
            .order_by(Job.locked_at.asc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()


class ConfigRepository:
    """
    String-keyed configuration values stored alongside the jobs.

    Values are written as strings and read back as integers.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, name: str) -> str | None:
        result = await self._session.execute(
            select(ConfigEntry.value).where(ConfigEntry.name == name)
        )
        return result.scalar_one_or_none()

    async def get_int(self, name: str, default: int) -> int:
        """
        Read a value as an integer.

        Args:
            name: Config key.
            default: Returned when the key is unset or not an integer.

        Returns:
            The integer value.
        """
        raw = await self.get(name)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError:
            logger.warning(
                "Ignoring non-integer config value",
                extra={"config_key": name, "value": raw}
            )
            return default

    async def set(self, name: str, value: str) -> None:
        """
        Store a config value.

        Raises:
            ValidationError: If the key is unknown or the value is not a
                valid integer for it.
        """
        if name not in CONFIG_DEFAULTS:
            known = ", ".join(sorted(CONFIG_DEFAULTS))
            raise ValidationError(f"Unknown config key '{name}' (expected one of: {known})")
        try:
            parsed = int(value)
        except ValueError:
            raise ValidationError(f"Config '{name}' must be an integer, got '{value}'") from None
        minimum = 1 if name == CONFIG_BACKOFF_BASE else 0
        if parsed < minimum:
            raise ValidationError(f"Config '{name}' must be >= {minimum}")

        stmt = insert(ConfigEntry).values(name=name, value=str(parsed))
        stmt = stmt.on_conflict_do_update(
            index_elements=[ConfigEntry.name],
            set_={"value": stmt.excluded.value, "updated_at": func.now()},
        )
        await self._session.execute(stmt)
        logger.info("Config updated", extra={"config_key": name, "value": parsed})

    async def all(self) -> dict[str, str]:
        result = await self._session.execute(select(ConfigEntry.name, ConfigEntry.value))
        return {name: value for name, value in result.all()}
