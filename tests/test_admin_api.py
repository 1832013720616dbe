"""Tests for Admin API endpoints.

Tests cover:
- Basic authentication requirements
- Queue statistics
- Dead job listing, re-drive and cleaning
- Error mapping of core exceptions (404, 409, 422)
- Request ID propagation
"""

from __future__ import annotations

import uuid

import pytest

from taskflow.db.models.base import JobStatus
from taskflow.services.job_queue import ANALYTICS, CLEANUP

PROJECT_PAYLOAD = {"project_id": "7d444840-9dc0-11d1-b245-5ffdce74fad2"}


async def make_dead_job(services, clock) -> uuid.UUID:
    """Drive one analytics job through every attempt."""
    job_id = await services.job_queue.enqueue("update_project_stats", PROJECT_PAYLOAD)
    for _ in range(services.settings.queue.max_attempts):
        job = await services.job_queue.claim(ANALYTICS, "w1")
        await services.job_queue.fail(job, "RuntimeError: boom")
        clock.advance(120)
    return job_id


# -----------------------------------------------------------------------------
# Authentication
# -----------------------------------------------------------------------------


class TestAuthentication:
    """Every admin endpoint requires basic auth."""

    @pytest.mark.asyncio
    async def test_missing_credentials(self, api_client):
        response = await api_client.get("/api/admin/queues/stats")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Basic"
        assert response.json()["error"] == "unauthorized"

    @pytest.mark.asyncio
    async def test_wrong_password(self, api_client):
        response = await api_client.get("/api/admin/queues/stats", auth=("ops", "guess"))

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid admin credentials"

    @pytest.mark.asyncio
    async def test_wrong_username(self, api_client, admin_auth):
        response = await api_client.get(
            "/api/admin/queues/stats", auth=("root", admin_auth[1])
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_health_is_public(self, api_client):
        response = await api_client.get("/api/admin/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "namespace": "admin"}


# -----------------------------------------------------------------------------
# Statistics
# -----------------------------------------------------------------------------


class TestQueueStats:
    """GET /api/admin/queues/stats."""

    @pytest.mark.asyncio
    async def test_counts_every_queue(self, api_client, admin_auth, services):
        await services.job_queue.enqueue("update_project_stats", PROJECT_PAYLOAD)
        await services.job_queue.enqueue("update_project_stats", PROJECT_PAYLOAD)
        await services.job_queue.claim(ANALYTICS, "w1")

        response = await api_client.get("/api/admin/queues/stats", auth=admin_auth)

        assert response.status_code == 200
        queues = response.json()["queues"]
        assert set(queues) == {
            "notification-email",
            "in-app-notification",
            "file-processing",
            "analytics",
            "cleanup",
        }
        assert queues["analytics"] == {"waiting": 1, "active": 1, "completed": 0, "failed": 0}
        assert "error" not in queues["cleanup"]

    @pytest.mark.asyncio
    async def test_dead_jobs_count_as_failed(self, api_client, admin_auth, services, clock):
        await make_dead_job(services, clock)

        response = await api_client.get("/api/admin/queues/stats", auth=admin_auth)

        assert response.json()["queues"]["analytics"]["failed"] == 1


# -----------------------------------------------------------------------------
# Dead jobs
# -----------------------------------------------------------------------------


class TestDeadJobs:
    """Listing and re-driving dead jobs."""

    @pytest.mark.asyncio
    async def test_list_dead_jobs(self, api_client, admin_auth, services, clock):
        dead_id = await make_dead_job(services, clock)

        response = await api_client.get("/api/admin/queues/analytics/dead", auth=admin_auth)

        assert response.status_code == 200
        data = response.json()
        assert data["queue"] == "analytics"
        assert data["total"] == 1
        job = data["jobs"][0]
        assert job["job_id"] == str(dead_id)
        assert job["status"] == "dead"
        assert job["attempts"] == 3
        assert job["last_error"] == "RuntimeError: boom"
        assert job["payload_json"] == PROJECT_PAYLOAD

    @pytest.mark.asyncio
    async def test_unknown_queue(self, api_client, admin_auth):
        response = await api_client.get("/api/admin/queues/reports/dead", auth=admin_auth)

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_limit_is_validated(self, api_client, admin_auth):
        response = await api_client.get(
            "/api/admin/queues/analytics/dead", params={"limit": 0}, auth=admin_auth
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_retry_dead_job(self, api_client, admin_auth, services, clock):
        dead_id = await make_dead_job(services, clock)

        response = await api_client.post(f"/api/admin/jobs/{dead_id}/retry", auth=admin_auth)

        assert response.status_code == 201
        job = response.json()
        assert job["job_id"] != str(dead_id)
        assert job["status"] == "waiting"
        assert job["attempts"] == 0
        assert job["correlation_id"] == str(dead_id)
        counts = await services.job_queue.counts(ANALYTICS)
        assert counts[JobStatus.DEAD] == 0
        assert counts[JobStatus.WAITING] == 1

    @pytest.mark.asyncio
    async def test_retry_missing_job(self, api_client, admin_auth):
        response = await api_client.post(f"/api/admin/jobs/{uuid.uuid4()}/retry", auth=admin_auth)

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_retry_live_job_conflicts(self, api_client, admin_auth, services):
        job_id = await services.job_queue.enqueue("update_project_stats", PROJECT_PAYLOAD)

        response = await api_client.post(f"/api/admin/jobs/{job_id}/retry", auth=admin_auth)

        assert response.status_code == 409
        assert response.json()["error"] == "conflict"


# -----------------------------------------------------------------------------
# Cleaning
# -----------------------------------------------------------------------------


class TestCleanQueue:
    """DELETE /api/admin/queues/{queue}/jobs."""

    @pytest.mark.asyncio
    async def test_clean_completed(self, api_client, admin_auth, services):
        await services.job_queue.enqueue_job_history_cleanup()
        job = await services.job_queue.claim(CLEANUP, "w1")
        await services.job_queue.complete(job)

        response = await api_client.delete("/api/admin/queues/cleanup/jobs", auth=admin_auth)

        assert response.status_code == 200
        assert response.json() == {"queue": "cleanup", "status": "completed", "removed": 1}

    @pytest.mark.asyncio
    async def test_clean_dead(self, api_client, admin_auth, services, clock):
        await make_dead_job(services, clock)

        response = await api_client.delete(
            "/api/admin/queues/analytics/jobs", params={"status": "dead"}, auth=admin_auth
        )

        assert response.json()["removed"] == 1

    @pytest.mark.asyncio
    async def test_live_status_rejected(self, api_client, admin_auth):
        response = await api_client.delete(
            "/api/admin/queues/analytics/jobs", params={"status": "waiting"}, auth=admin_auth
        )

        assert response.status_code == 422


# -----------------------------------------------------------------------------
# Request ID
# -----------------------------------------------------------------------------


class TestRequestId:
    """X-Request-ID on every response."""

    @pytest.mark.asyncio
    async def test_generated_when_absent(self, api_client):
        response = await api_client.get("/health")

        assert response.status_code == 200
        assert response.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_client_id_echoed_on_errors(self, api_client):
        response = await api_client.get(
            "/api/admin/queues/stats", headers={"X-Request-ID": "req-42"}
        )

        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "req-42"
        assert response.json()["request_id"] == "req-42"
