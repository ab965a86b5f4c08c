"""
Integration tests for the API endpoints.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from queuectl.backoff import BackoffPolicy
from queuectl.constants import JobState
from queuectl.db.repository import JobRepository

pytestmark = pytest.mark.integration


class TestJobAPI:
    """Integration tests for job endpoints."""

    async def test_enqueue_job(self, client: AsyncClient):
        """Test successful job creation."""
        response = await client.post(
            "/v1/jobs",
            json={"id": "job1", "command": "echo hello", "max_retries": 2},
        )

        assert response.status_code == 201
        assert response.json()["id"] == "job1"

        response = await client.get("/v1/jobs/job1")
        assert response.status_code == 200
        data = response.json()
        assert data["state"] == JobState.PENDING
        assert data["attempts"] == 0
        assert data["max_retries"] == 2

    async def test_enqueue_generates_id(self, client: AsyncClient):
        response = await client.post("/v1/jobs", json={"command": "true"})

        assert response.status_code == 201
        assert response.json()["id"]

    async def test_enqueue_rejects_unknown_fields(self, client: AsyncClient):
        response = await client.post("/v1/jobs", json={"command": "true", "payload": {}})
        assert response.status_code == 422

    async def test_enqueue_rejects_blank_command(self, client: AsyncClient):
        response = await client.post("/v1/jobs", json={"command": "  "})
        assert response.status_code == 422

    async def test_get_job_not_found(self, client: AsyncClient):
        response = await client.get("/v1/jobs/missing")
        assert response.status_code == 404

    async def test_list_jobs_by_state(self, client: AsyncClient):
        await client.post("/v1/jobs", json={"id": "a", "command": "true"})

        response = await client.get("/v1/jobs", params={"state": "pending"})
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["jobs"][0]["id"] == "a"

        response = await client.get("/v1/jobs", params={"state": "dead"})
        assert response.json()["total"] == 0

    async def test_list_jobs_invalid_state(self, client: AsyncClient):
        response = await client.get("/v1/jobs", params={"state": "failed"})
        assert response.status_code == 422

    async def test_status(self, client: AsyncClient):
        await client.post("/v1/jobs", json={"id": "a", "command": "true"})
        await client.post("/v1/jobs", json={"id": "b", "command": "true"})

        response = await client.get("/v1/status")

        assert response.status_code == 200
        data = response.json()
        assert data["counts"] == {"pending": 2, "processing": 0, "completed": 0, "dead": 0}
        assert data["total"] == 2
        assert data["stuck_jobs"] == []


class TestDeadLetterAPI:
    """Integration tests for dead-letter endpoints."""

    async def test_retry_missing_entry(self, client: AsyncClient):
        response = await client.post("/v1/dlq/missing/retry")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    async def test_dead_letter_and_retry(self, client: AsyncClient, db_session: AsyncSession):
        await client.post("/v1/jobs", json={"id": "doomed", "command": "false", "max_retries": 0})

        repo = JobRepository(db_session)
        job = await repo.claim_job("worker-1")
        await repo.fail_and_maybe_retry(job, "Command exited with code 1", BackoffPolicy(base=2))
        await db_session.commit()

        response = await client.get("/v1/dlq")
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["jobs"][0]["id"] == "doomed"
        assert data["jobs"][0]["last_error"] == "Command exited with code 1"

        response = await client.post("/v1/dlq/doomed/retry")
        assert response.status_code == 200
        data = response.json()
        assert data["state"] == JobState.PENDING
        assert data["attempts"] == 1

        response = await client.get("/v1/dlq")
        assert response.json()["total"] == 0


class TestHealthAPI:
    """Integration tests for health and metrics endpoints."""

    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "healthy"

    async def test_ready_and_live(self, client: AsyncClient):
        assert (await client.get("/ready")).json() == {"ready": True}
        assert (await client.get("/live")).json() == {"alive": True}

    async def test_metrics(self, client: AsyncClient):
        await client.post("/v1/jobs", json={"command": "true"})

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "jobs_enqueued_total" in response.text
