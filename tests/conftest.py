"""Pytest configuration and shared fixtures.

Unit tests run entirely in process: the in-memory repository, job store
and cache stand in for PostgreSQL and Redis, and a recording sink
captures outbound emails and pushes. The clock of the job store is a
FakeClock so backoff and stall timing can be driven without sleeping.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from taskflow.api import create_app
from taskflow.bootstrap import Services, build_memory_services
from taskflow.core.config import (
    AdminSettings,
    QueueSettings,
    RedisSettings,
    Settings,
    WorkerSettings,
)
from taskflow.services.repository import InMemoryRepository
from taskflow.worker.dispatcher import Dispatcher
from tests.fakes import FakeClock, RecordingNotificationSink

ADMIN_USERNAME = "ops"
ADMIN_PASSWORD = "correct-horse-battery"


# ---------------------------------------------------------------------------
# Settings and collaborators
# ---------------------------------------------------------------------------
@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings for in-process tests: no Redis, known retry timings."""
    return Settings(
        redis=RedisSettings(enabled=False),
        queue=QueueSettings(
            max_attempts=3,
            backoff_strategy="exponential",
            backoff_base_seconds=2.0,
            backoff_max_seconds=60.0,
            stall_timeout_seconds=30.0,
        ),
        worker=WorkerSettings(storage_root=str(tmp_path)),
        admin=AdminSettings(username=ADMIN_USERNAME, password=ADMIN_PASSWORD),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
async def services(
    settings: Settings,
    sink: RecordingNotificationSink,
    repository: InMemoryRepository,
    clock: FakeClock,
) -> AsyncGenerator[Services, None]:
    """Fully wired in-memory services, started and closed around the test."""
    built = build_memory_services(settings, sink=sink, repository=repository, clock=clock)
    await built.start()
    yield built
    await built.close()


@pytest.fixture
def dispatcher(services: Services) -> Dispatcher:
    """Dispatcher over every queue, driven manually with process_next()."""
    return Dispatcher(
        services.job_queue,
        services.registry,
        services.worker_services(),
        worker_id="test-worker",
        stall_timeout=services.settings.queue.stall_timeout_seconds,
    )



# ---------------------------------------------------------------------------
# API client fixture (in-process testing via ASGI transport)
# ---------------------------------------------------------------------------
@pytest.fixture
def test_app(services: Services):
    """FastAPI application bound to the in-memory services."""
    return create_app(services=services)


@pytest.fixture
async def api_client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API.

    Uses httpx with ASGI transport for in-process testing.
    """
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def admin_auth() -> tuple[str, str]:
    return (ADMIN_USERNAME, ADMIN_PASSWORD)
