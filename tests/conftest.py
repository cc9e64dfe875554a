"""
Pytest configuration and shared fixtures.

Every fixture runs against in-process backends: the in-memory event channel
and idempotency guard, and either the in-memory job store or a SQLite file
through SqlJobStore.
"""

from collections.abc import AsyncGenerator, Callable
from dataclasses import replace
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from jobflow.channel.memory import InMemoryEventChannel
from jobflow.config import Settings
from jobflow.constants import JobStatus, JobType
from jobflow.db import Database, InMemoryJobStore, SqlJobStore
from jobflow.idempotency.memory import InMemoryIdempotencyGuard
from jobflow.observability.metrics import MetricsCollector
from jobflow.types.events import utcnow
from jobflow.types.job import JobState


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with in-process backends and short delays."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobflow.db'}",
        channel_backend="memory",
        guard_backend="memory",
        topic_partitions=3,
        worker_id="test-worker",
        worker_concurrency=2,
        reconciler_concurrency=2,
        max_redeliveries=3,
        redelivery_backoff_seconds=0.01,
        retry_base_delay_seconds=0.01,
        retry_multiplier=2.0,
        retry_max_delay_seconds=0.05,
        log_level="INFO",
        log_format="console",
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on a private registry, so tests never share counters."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def guard(test_settings: Settings) -> InMemoryIdempotencyGuard:
    return InMemoryIdempotencyGuard.from_settings(test_settings)


@pytest_asyncio.fixture
async def channel(test_settings: Settings) -> AsyncGenerator[InMemoryEventChannel]:
    """Started in-memory channel with the configured topic partitions."""
    channel = InMemoryEventChannel.from_settings(test_settings)
    await channel.start()
    yield channel
    await channel.stop()


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database]:
    """SQLite database with the schema created."""
    database = Database.from_settings(test_settings)
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
def sql_store(database: Database) -> SqlJobStore:
    return database.job_store()


@pytest.fixture
def make_job() -> Callable[..., JobState]:
    """Factory for job snapshots; keyword arguments override the defaults."""

    def factory(**overrides: Any) -> JobState:
        now = utcnow()
        job = JobState(
            id=uuid4(),
            name="nightly-report",
            type=JobType.GENERATE_REPORT,
            status=JobStatus.PENDING,
            priority=5,
            max_retries=3,
            payload={"work_seconds": 0},
            created_at=now,
            updated_at=now,
        )
        return replace(job, **overrides)

    return factory


@pytest.fixture
def sample_job_request() -> dict[str, Any]:
    """A job creation body whose handler finishes at once and succeeds."""
    return {
        "name": "welcome-email",
        "type": "SEND_EMAIL",
        "priority": 7,
        "payload": {"to": "user@example.com", "work_seconds": 0, "simulate_failure": False},
        "max_retries": 2,
    }
