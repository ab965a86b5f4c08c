"""
Integration tests for the job and config repositories against PostgreSQL.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from queuectl.backoff import BackoffPolicy
from queuectl.constants import JobState
from queuectl.db.models import ConfigEntry, Job
from queuectl.db.repository import ConfigRepository, JobRepository
from queuectl.errors import NotFoundError, ValidationError

pytestmark = pytest.mark.integration


class TestEnqueue:
    """Tests for JobRepository.enqueue."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> JobRepository:
        """Create a repository instance."""
        return JobRepository(db_session)

    async def test_enqueue_creates_pending_job(self, repo: JobRepository, db_session: AsyncSession):
        job_id = await repo.enqueue("echo hi", job_id="job1")
        await db_session.commit()

        job = await repo.get_job(job_id)
        assert job_id == "job1"
        assert job.state == JobState.PENDING
        assert job.attempts == 0
        assert job.max_retries == 3
        assert job.locked_by is None
        assert job.last_error is None

    async def test_enqueue_generates_id(self, repo: JobRepository, db_session: AsyncSession):
        job_id = await repo.enqueue("true")
        await db_session.commit()

        assert job_id
        assert await repo.get_job(job_id) is not None

    async def test_enqueue_uses_configured_max_retries(self, repo: JobRepository, db_session: AsyncSession):
        await ConfigRepository(db_session).set("max_retries", "5")
        job_id = await repo.enqueue("true")
        await db_session.commit()

        assert (await repo.get_job(job_id)).max_retries == 5

    async def test_enqueue_rejects_blank_command(self, repo: JobRepository):
        with pytest.raises(ValidationError):
            await repo.enqueue("   ")

    async def test_enqueue_rejects_negative_max_retries(self, repo: JobRepository):
        with pytest.raises(ValidationError):
            await repo.enqueue("true", max_retries=-1)

    async def test_reenqueue_updates_command_only(self, repo: JobRepository, db_session: AsyncSession):
        """Test that re-enqueueing an id keeps state and attempts."""
        await repo.enqueue("echo one", job_id="job1", max_retries=3)
        await db_session.commit()
        await repo.claim_job("worker-1")
        await db_session.commit()

        await repo.enqueue("echo two", job_id="job1", max_retries=7)
        await db_session.commit()

        job = await repo.get_job("job1")
        assert job.command == "echo two"
        assert job.max_retries == 7
        assert job.state == JobState.PROCESSING
        assert job.attempts == 1


class TestClaim:
    """Tests for JobRepository.claim_job."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> JobRepository:
        return JobRepository(db_session)

    async def test_claim_empty_queue(self, repo: JobRepository):
        assert await repo.claim_job("worker-1") is None

    async def test_claim_sets_ownership(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("true", job_id="job1")
        await db_session.commit()

        job = await repo.claim_job("worker-1")
        await db_session.commit()

        assert job.id == "job1"
        assert job.state == JobState.PROCESSING
        assert job.attempts == 1
        assert job.locked_by == "worker-1"
        assert job.locked_at is not None

    async def test_claim_oldest_first(self, repo: JobRepository, db_session: AsyncSession):
        for job_id in ("first", "second", "third"):
            await repo.enqueue("true", job_id=job_id)
            await db_session.commit()

        claimed = []
        for _ in range(3):
            claimed.append((await repo.claim_job("worker-1")).id)
            await db_session.commit()

        assert claimed == ["first", "second", "third"]

    async def test_claim_skips_future_jobs(self, repo: JobRepository, db_session: AsyncSession):
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        await repo.enqueue("true", job_id="later", next_run_at=later)
        await db_session.commit()

        assert await repo.claim_job("worker-1") is None

    async def test_claim_skips_non_pending(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("true", job_id="job1")
        await db_session.commit()
        await repo.claim_job("worker-1")
        await repo.mark_completed("job1")
        await db_session.commit()

        assert await repo.claim_job("worker-2") is None

    async def test_concurrent_claims_never_overlap(
        self,
        db_session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        """Test that ten workers racing for five jobs claim each exactly once."""
        repo = JobRepository(db_session)
        for i in range(5):
            await repo.enqueue("true", job_id=f"job-{i}")
        await db_session.commit()

        async def claim(worker_id: str):
            async with session_factory() as session:
                job = await JobRepository(session).claim_job(worker_id)
                await session.commit()
                return job.id if job else None

        results = await asyncio.gather(*(claim(f"worker-{i}") for i in range(10)))
        claimed = [job_id for job_id in results if job_id is not None]

        assert sorted(claimed) == [f"job-{i}" for i in range(5)]
        assert results.count(None) == 5

        counts = await repo.summary()
        assert counts[JobState.PROCESSING.value] == 5
        assert counts[JobState.PENDING.value] == 0


class TestOutcomes:
    """Tests for completion, retry and dead-lettering."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> JobRepository:
        return JobRepository(db_session)

    async def test_mark_completed(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("true", job_id="job1")
        await repo.claim_job("worker-1")
        await db_session.commit()

        assert await repo.mark_completed("job1") is True
        await db_session.commit()

        job = await repo.get_job("job1")
        assert job.state == JobState.COMPLETED
        assert job.locked_by is None
        assert job.locked_at is None

    async def test_mark_completed_twice_is_harmless(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("true", job_id="job1")
        await repo.claim_job("worker-1")
        await db_session.commit()

        assert await repo.mark_completed("job1") is True
        await db_session.commit()
        assert (await repo.get_job("job1")).state == JobState.COMPLETED

        assert await repo.mark_completed("job1") is True
        await db_session.commit()

        job = await repo.get_job("job1")
        assert job.state == JobState.COMPLETED
        assert job.attempts == 1

    async def test_failure_schedules_retry_with_backoff(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("false", job_id="job1", max_retries=3)
        await db_session.commit()
        job = await repo.claim_job("worker-1")
        await db_session.commit()

        outcome = await repo.fail_and_maybe_retry(job, "Command exited with code 1", BackoffPolicy(base=2))
        await db_session.commit()

        assert outcome.moved_to_dlq is False
        assert outcome.attempts == 1
        assert outcome.delay_seconds == 2.0

        job = await repo.get_job("job1")
        assert job.state == JobState.PENDING
        assert job.last_error == "Command exited with code 1"
        assert job.locked_by is None
        assert job.next_run_at - job.updated_at == timedelta(seconds=2)

        # Not claimable until the backoff has elapsed
        assert await repo.claim_job("worker-1") is None

    async def test_failure_backoff_is_capped(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("false", job_id="job1", max_retries=10)
        await db_session.commit()
        job = await repo.claim_job("worker-1")

        outcome = await repo.fail_and_maybe_retry(job, "boom", BackoffPolicy(base=100, max_delay=5))

        assert outcome.delay_seconds == 5.0

    async def test_exhausted_job_moves_to_dlq(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("false", job_id="job1", max_retries=1)
        await db_session.commit()
        job = await repo.claim_job("worker-1")
        await db_session.commit()

        outcome = await repo.fail_and_maybe_retry(job, "final failure", BackoffPolicy(base=2))
        await db_session.commit()

        assert outcome.moved_to_dlq is True
        assert outcome.attempts == 1

        job = await repo.get_job("job1")
        assert job.state == JobState.DEAD
        assert job.locked_by is None

        entries = await repo.list_dlq()
        assert [e.id for e in entries] == ["job1"]
        assert entries[0].attempts == 1
        assert entries[0].last_error == "final failure"
        assert entries[0].command == "false"

    async def test_dead_letter_again_overwrites_entry(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("false", job_id="job1", max_retries=1)
        await db_session.commit()
        job = await repo.claim_job("worker-1")
        await repo.fail_and_maybe_retry(job, "first failure", BackoffPolicy(base=2))
        await db_session.commit()
        first_moved_at = (await repo.list_dlq())[0].moved_at

        # A leftover entry from an earlier dead-lettering is refreshed, not duplicated
        await db_session.execute(
            update(Job)
            .where(Job.id == "job1")
            .values(state=JobState.PENDING, next_run_at=func.now())
        )
        await db_session.commit()
        job = await repo.claim_job("worker-2")
        await asyncio.sleep(0.01)
        outcome = await repo.fail_and_maybe_retry(job, "second failure", BackoffPolicy(base=2))
        await db_session.commit()

        assert outcome.moved_to_dlq is True
        entries = await repo.list_dlq()
        assert len(entries) == 1
        assert entries[0].last_error == "second failure"
        assert entries[0].moved_at > first_moved_at

    async def test_zero_max_retries_dead_on_first_failure(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("false", job_id="job1", max_retries=0)
        await db_session.commit()
        job = await repo.claim_job("worker-1")

        outcome = await repo.fail_and_maybe_retry(job, "boom", BackoffPolicy(base=2))
        await db_session.commit()

        assert outcome.moved_to_dlq is True
        assert (await repo.get_job("job1")).state == JobState.DEAD

    async def test_retry_dlq_job(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("false", job_id="job1", max_retries=1)
        await db_session.commit()
        job = await repo.claim_job("worker-1")
        await repo.fail_and_maybe_retry(job, "boom", BackoffPolicy(base=2))
        await db_session.commit()

        revived = await repo.retry_dlq_job("job1")
        await db_session.commit()

        assert revived.state == JobState.PENDING
        assert revived.attempts == 1
        assert revived.max_retries == 1
        assert revived.last_error is None
        assert await repo.list_dlq() == []

        # Immediately claimable again, and one more failure dead-letters it
        claimed = await repo.claim_job("worker-2")
        assert claimed.id == "job1"
        assert claimed.attempts == 2

    async def test_retry_dlq_job_missing(self, repo: JobRepository):
        with pytest.raises(NotFoundError):
            await repo.retry_dlq_job("nope")


class TestProjections:
    """Tests for the read-only operator views."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> JobRepository:
        return JobRepository(db_session)

    async def test_summary_is_zero_filled(self, repo: JobRepository):
        assert await repo.summary() == {state.value: 0 for state in JobState}

    async def test_summary_counts(self, repo: JobRepository, db_session: AsyncSession):
        for i in range(3):
            await repo.enqueue("true", job_id=f"job-{i}")
        await db_session.commit()
        await repo.claim_job("worker-1")
        await db_session.commit()

        counts = await repo.summary()
        assert counts == {"pending": 2, "processing": 1, "completed": 0, "dead": 0}

    async def test_summary_matches_listings(self, repo: JobRepository, db_session: AsyncSession):
        for job_id in ("done", "failed", "running", "waiting-1", "waiting-2"):
            await repo.enqueue("true", job_id=job_id, max_retries=0)
            await db_session.commit()

        done = await repo.claim_job("worker-1")
        await repo.mark_completed(done.id)
        failed = await repo.claim_job("worker-1")
        await repo.fail_and_maybe_retry(failed, "boom", BackoffPolicy(base=2))
        await repo.claim_job("worker-1")
        await db_session.commit()

        counts = await repo.summary()
        for state in JobState:
            assert counts[state.value] == len(await repo.list_by_state(state))
        assert all(counts[state.value] == 1 for state in (JobState.COMPLETED, JobState.DEAD, JobState.PROCESSING))
        assert counts[JobState.PENDING.value] == 2
        assert sum(counts.values()) == 5

    async def test_list_by_state(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("true", job_id="a")
        await db_session.commit()
        await repo.enqueue("true", job_id="b")
        await db_session.commit()

        pending = await repo.list_by_state(JobState.PENDING)
        assert [job.id for job in pending] == ["b", "a"]
        assert await repo.list_by_state(JobState.DEAD) == []

    async def test_list_stuck(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("sleep 100", job_id="stuck")
        await repo.enqueue("sleep 100", job_id="fresh")
        await db_session.commit()
        await repo.claim_job("worker-1")
        await repo.claim_job("worker-1")
        await db_session.execute(
            update(Job)
            .where(Job.id == "stuck")
            .values(locked_at=func.now() - timedelta(hours=2))
        )
        await db_session.commit()

        stuck = await repo.list_stuck(3600)
        assert [job.id for job in stuck] == ["stuck"]


class TestConfigRepository:
    """Tests for ConfigRepository."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> ConfigRepository:
        return ConfigRepository(db_session)

    async def test_set_and_get(self, repo: ConfigRepository, db_session: AsyncSession):
        await repo.set("backoff_base", "3")
        await db_session.commit()

        assert await repo.get("backoff_base") == "3"
        assert await repo.get_int("backoff_base", 2) == 3
        assert await repo.all() == {"backoff_base": "3"}

    async def test_set_overwrites(self, repo: ConfigRepository, db_session: AsyncSession):
        await repo.set("max_retries", "4")
        await repo.set("max_retries", "6")
        await db_session.commit()

        assert await repo.get_int("max_retries", 3) == 6

    async def test_unset_returns_default(self, repo: ConfigRepository):
        assert await repo.get("backoff_base") is None
        assert await repo.get_int("backoff_base", 2) == 2

    async def test_non_integer_stored_value_falls_back(self, repo: ConfigRepository, db_session: AsyncSession):
        db_session.add(ConfigEntry(name="backoff_base", value="fast"))
        await db_session.commit()

        assert await repo.get_int("backoff_base", 2) == 2

    @pytest.mark.parametrize(
        ("name", "value"),
        [
            ("colour", "blue"),
            ("backoff_base", "abc"),
            ("backoff_base", "0"),
            ("max_retries", "-1"),
        ],
    )
    async def test_set_rejects_invalid(self, repo: ConfigRepository, name: str, value: str):
        with pytest.raises(ValidationError):
            await repo.set(name, value)

