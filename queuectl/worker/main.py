"""
Worker pool for executing jobs.

Each worker claims one ready job at a time, runs its command, and reports
the outcome back to the store, which either completes it, schedules a
retry with backoff, or moves it to the dead-letter queue. Workers share
nothing but a shutdown event; all coordination goes through the store.
"""

import asyncio
import logging
import os
import signal
import time
from uuid import uuid4

from queuectl.backoff import BackoffPolicy
from queuectl.config import get_settings
from queuectl.constants import (
    CONFIG_BACKOFF_BASE,
    OUTCOME_COMPLETED,
    OUTCOME_DEAD,
    OUTCOME_RETRIED,
    SPAN_CLAIM_JOB,
    SPAN_EXECUTE_JOB,
    SPAN_REPORT_OUTCOME,
)
from queuectl.db import close_db, get_session_context, init_db
from queuectl.db.models import Job
from queuectl.db.repository import ConfigRepository, JobRepository
from queuectl.errors import StoreError
from queuectl.observability.logging import (
    bind_worker_context,
    clear_context,
    job_log_context,
    setup_logging,
)
from queuectl.observability.metrics import get_metrics
from queuectl.observability.tracing import job_span
from queuectl.types.job import CommandResult
from queuectl.worker.pidfile import PidFile
from queuectl.worker.runner import CommandRunner

logger = logging.getLogger(__name__)


def make_worker_id(index: int) -> str:
    """Build a unique worker identity: host, pid, index and a random suffix."""
    return f"{os.uname().nodename}-{os.getpid()}-{index}-{uuid4().hex[:6]}"


class Worker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - Atomic claim using FOR UPDATE SKIP LOCKED
    - Exponential backoff and dead-lettering on failure
    - Cooperative shutdown between jobs, never mid-claim
    - Cooldown after store errors instead of a tight error loop
    """

    def __init__(
        self,
        worker_id: str,
        shutdown_event: asyncio.Event,
        backoff: BackoffPolicy,
        runner: CommandRunner | None = None,
        poll_interval: float | None = None,
        error_cooldown: float | None = None,
        execution_timeout: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            worker_id: Unique worker identifier, recorded in locked_by.
            shutdown_event: Shared event that ends the loop when set.
            backoff: Retry delay policy.
            runner: Command runner. Defaults to a shell runner.
            poll_interval: Seconds to wait when no job is ready.
            error_cooldown: Seconds to wait after a store error.
            execution_timeout: Hard timeout for each command.
        """
        settings = get_settings()

        self.worker_id = worker_id
        self.backoff = backoff
        self.runner = runner or CommandRunner()
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
        )
        self.error_cooldown = (
            error_cooldown if error_cooldown is not None else settings.worker_error_cooldown_seconds
        )
        self.execution_timeout = (
            execution_timeout
            if execution_timeout is not None
            else settings.worker_execution_timeout_seconds
        )

        self.current_job: Job | None = None
        self.jobs_processed = 0
        self._shutdown = shutdown_event
        self._metrics = get_metrics()

    async def run(self) -> None:
        """Run the claim-execute-report loop until shutdown is signalled."""
        bind_worker_context(self.worker_id)
        logger.info("Worker starting", extra={"worker_id": self.worker_id})

        while not self._shutdown.is_set():
            try:
                processed = await self.run_once()
                if not processed:
                    await self._pause(self.poll_interval)
            except StoreError as e:
                self.current_job = None
                self._metrics.record_store_error(self.worker_id)
                logger.error(
                    f"Store error in worker loop: {e}",
                    extra={"worker_id": self.worker_id}
                )
                await self._pause(self.error_cooldown)
            except Exception as e:
                self.current_job = None
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id}
                )
                await self._pause(self.error_cooldown)

        logger.info(
            "Shutdown signal received, worker stopped",
            extra={"worker_id": self.worker_id, "jobs_processed": self.jobs_processed}
        )
        clear_context()

    async def run_once(self) -> bool:
        """
        Claim, execute and report at most one job.

        Returns:
            True if a job was processed, False if none was ready.
        """
        job = await self._claim()
        if job is None:
            return False

        self.current_job = job
        start_time = time.time()

        with job_log_context(job.id, job.attempts):
            with job_span(SPAN_EXECUTE_JOB, self.worker_id, job.id, attempt=job.attempts) as span:
                result = await self.runner.run(job.command, self.execution_timeout)
                span.set_attribute("queuectl.success", result.success)

            duration = time.time() - start_time
            outcome = await self._report(job, result)

        self._metrics.record_job_finished(outcome, duration)
        self.jobs_processed += 1
        self.current_job = None
        return True

    async def _claim(self) -> Job | None:
        with job_span(SPAN_CLAIM_JOB, self.worker_id):
            async with get_session_context() as session:
                repo = JobRepository(session)
                job = await repo.claim_job(self.worker_id)

        if job is not None:
            self._metrics.record_job_claimed(self.worker_id)
            logger.info(
                f"Claimed job {job.id}. Attempt {job.attempts}/{job.max_retries}",
                extra={"worker_id": self.worker_id, "job_id": job.id}
            )
        return job

    async def _report(self, job: Job, result: CommandResult) -> str:
        """
        Record the execution result in the store.

        Returns:
            The outcome label: completed, retried or dead.
        """
        with job_span(SPAN_REPORT_OUTCOME, self.worker_id, job.id, success=result.success):
            async with get_session_context() as session:
                repo = JobRepository(session)

                if result.success:
                    await repo.mark_completed(job.id)
                    logger.info(
                        "Job completed",
                        extra={
                            "worker_id": self.worker_id,
                            "job_id": job.id,
                            "output": result.stdout.strip(),
                        }
                    )
                    return OUTCOME_COMPLETED

                error = result.error or "Unknown error"
                logger.warning(
                    f"Job {job.id} failed: {error}",
                    extra={"worker_id": self.worker_id, "attempt": job.attempts}
                )
                failure = await repo.fail_and_maybe_retry(job, error, self.backoff)
                return OUTCOME_DEAD if failure.moved_to_dlq else OUTCOME_RETRIED

    async def _pause(self, seconds: float) -> None:
        """Sleep, waking early if shutdown is signalled."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


class WorkerPool:
    """
    Supervises a fixed number of concurrent workers.

    All workers share one shutdown event. ``start`` returns only once every
    worker has left its loop.
    """

    def __init__(
        self,
        count: int = 1,
        backoff: BackoffPolicy | None = None,
        runner: CommandRunner | None = None,
        pid_file: str | None = None,
        **worker_options: float,
    ):
        """
        Initialize the pool.

        Args:
            count: Number of workers.
            backoff: Retry delay policy shared by every worker.
            runner: Command runner shared by every worker.
            pid_file: Write a daemon marker here while running.
            **worker_options: poll_interval, error_cooldown and
                execution_timeout overrides passed to each Worker.
        """
        if count < 1:
            raise ValueError("Worker count must be at least 1")

        self.count = count
        self.pid_file = pid_file
        self.shutdown_event = asyncio.Event()
        self.workers = [
            Worker(
                worker_id=make_worker_id(i),
                shutdown_event=self.shutdown_event,
                backoff=backoff or BackoffPolicy(),
                runner=runner,
                **worker_options,
            )
            for i in range(count)
        ]

    async def start(self) -> None:
        """Run every worker concurrently and wait for all of them to exit."""
        logger.info(f"Starting {self.count} worker(s)")

        if self.pid_file:
            with PidFile(self.pid_file):
                await self._run_workers()
        else:
            await self._run_workers()

        logger.info("All workers stopped")

    async def _run_workers(self) -> None:
        await asyncio.gather(*(worker.run() for worker in self.workers))

    def stop(self) -> None:
        """Signal every worker to exit after its current job."""
        if not self.shutdown_event.is_set():
            logger.info("Worker pool stopping")
            self.shutdown_event.set()


async def load_backoff_policy() -> BackoffPolicy:
    """Resolve the backoff base from the store, falling back to settings."""
    settings = get_settings()
    async with get_session_context() as session:
        base = await ConfigRepository(session).get_int(
            CONFIG_BACKOFF_BASE, settings.backoff_base
        )
    return BackoffPolicy(base=base, max_delay=settings.backoff_max_seconds)


async def run_async(count: int | None = None, daemon: bool = False) -> None:
    """
    Start a worker pool and run it until SIGINT/SIGTERM.

    Args:
        count: Number of workers. Defaults to the configured worker count.
        daemon: Write the daemon marker so ``queuectl worker stop`` can
            reach this process.
    """
    setup_logging()
    settings = get_settings()
    await init_db()

    try:
        pool = WorkerPool(
            count=count or settings.worker_count,
            backoff=await load_backoff_policy(),
            pid_file=settings.worker_pid_file if daemon else None,
        )

        # Handle shutdown signals
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, pool.stop)

        await pool.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker pool."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
