"""
Integration tests for the API endpoints.
"""

from collections.abc import AsyncGenerator
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from jobflow.api.main import create_app
from jobflow.constants import API_JOBS_PREFIX, EventType, JobStatus
from jobflow.lifecycle import transition
from jobflow.services import JobService
from jobflow.types.events import utcnow

pytestmark = pytest.mark.integration


@pytest.fixture
def service(test_settings, store, channel, guard, metrics) -> JobService:
    return JobService(test_settings, store, channel, guard, metrics=metrics)


@pytest.fixture
def app(test_settings, service) -> FastAPI:
    return create_app(test_settings, service=service)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def created_job(client: AsyncClient, sample_job_request) -> dict:
    """Create a job for testing."""
    response = await client.post(API_JOBS_PREFIX, json=sample_job_request)
    return response.json()


class TestJobAPI:
    """Integration tests for job endpoints."""

    @pytest.mark.asyncio
    async def test_create_job_success(self, client, sample_job_request, channel, test_settings):
        response = await client.post(API_JOBS_PREFIX, json=sample_job_request)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == JobStatus.PENDING
        assert data["name"] == "welcome-email"
        assert data["priority"] == 7
        assert data["retry_count"] == 0
        assert data["max_retries"] == 2

        [request] = channel.events(test_settings.topic_requests)
        assert str(request.job_id) == data["id"]

    @pytest.mark.asyncio
    async def test_create_job_invalid_body(self, client):
        response = await client.post(
            API_JOBS_PREFIX, json={"name": "x", "type": "SEND_EMAIL", "priority": 42}
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_create_job_unknown_type(self, client):
        response = await client.post(API_JOBS_PREFIX, json={"name": "x", "type": "FAX"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_get_job(self, client, created_job):
        response = await client.get(f"{API_JOBS_PREFIX}/{created_job['id']}")

        assert response.status_code == 200
        assert response.json()["id"] == created_job["id"]

    @pytest.mark.asyncio
    async def test_get_job_not_found(self, client):
        response = await client.get(f"{API_JOBS_PREFIX}/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"] == "Not Found"

    @pytest.mark.asyncio
    async def test_get_job_malformed_id(self, client):
        response = await client.get(f"{API_JOBS_PREFIX}/not-a-uuid")

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_list_jobs(self, client, sample_job_request):
        for i in range(3):
            await client.post(API_JOBS_PREFIX, json={**sample_job_request, "name": f"job-{i}"})

        response = await client.get(API_JOBS_PREFIX, params={"page": 1, "page_size": 2})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 3
        assert len(data["jobs"]) == 2
        assert data["has_next"] is True

    @pytest.mark.asyncio
    async def test_list_jobs_filtered_by_status(self, client, created_job):
        await client.delete(f"{API_JOBS_PREFIX}/{created_job['id']}")
        await client.post(
            API_JOBS_PREFIX, json={"name": "still-pending", "type": "PROCESS_DATA"}
        )

        response = await client.get(API_JOBS_PREFIX, params={"status": "CANCELLED"})

        data = response.json()
        assert data["total"] == 1
        assert data["jobs"][0]["id"] == created_job["id"]

    @pytest.mark.asyncio
    async def test_search_jobs(self, client, created_job):
        response = await client.get(f"{API_JOBS_PREFIX}/search", params={"name": "WELCOME"})

        assert response.status_code == 200
        assert [job["id"] for job in response.json()["jobs"]] == [created_job["id"]]

    @pytest.mark.asyncio
    async def test_job_stats(self, client, created_job):
        response = await client.get(f"{API_JOBS_PREFIX}/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["pending"] == 1
        assert data["avg_execution_time_ms"] == 0.0

    @pytest.mark.asyncio
    async def test_cancel_job(self, client, created_job, channel, test_settings):
        response = await client.delete(f"{API_JOBS_PREFIX}/{created_job['id']}")

        assert response.status_code == 200
        assert response.json()["status"] == JobStatus.CANCELLED
        [event] = channel.events(test_settings.topic_status)
        assert event.event_type == EventType.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_running_job_conflicts(self, client, created_job, store):
        job = await store.get(UUID(created_job["id"]))
        await store.save(transition(job, EventType.STARTED, now=utcnow()).state)

        response = await client.delete(f"{API_JOBS_PREFIX}/{created_job['id']}")

        assert response.status_code == 409
        assert response.json()["error"] == "Invalid Operation"

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, client):
        response = await client.delete(f"{API_JOBS_PREFIX}/{uuid4()}")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_channel_down_returns_503(self, client, channel, sample_job_request):
        await channel.stop()

        response = await client.post(API_JOBS_PREFIX, json=sample_job_request)

        assert response.status_code == 503


class TestHealthAPI:
    """Integration tests for health and metrics endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert data["idempotency_guard"] == "healthy"

    @pytest.mark.asyncio
    async def test_ready_and_live(self, client):
        assert (await client.get("/ready")).json() == {"ready": True}
        assert (await client.get("/live")).json() == {"alive": True}

    @pytest.mark.asyncio
    async def test_metrics(self, client, created_job):
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "jobs_submitted_total" in response.text
        assert "api_requests_total" in response.text
