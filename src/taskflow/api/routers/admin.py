"""Admin API router.

Operator endpoints over the job queues: per-queue statistics, dead-job
inspection and re-drive, and cleaning of terminal jobs. All endpoints
require HTTP basic authentication against the configured admin
credentials.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from taskflow.api.middleware.errors import AuthenticationError
from taskflow.api.schemas.admin import (
    CleanQueueResponse,
    DeadJobsResponse,
    JobSummary,
    QueueCounts,
    QueueStatsResponse,
)
from taskflow.bootstrap import Services
from taskflow.db.models.base import JobStatus

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    responses={
        401: {"description": "Admin authentication required"},
    },
)

security = HTTPBasic(auto_error=False)


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------


def get_services(request: Request) -> Services:
    """Service container attached to the application at startup."""
    return request.app.state.services


async def require_admin(
    request: Request,
    credentials: Annotated[HTTPBasicCredentials | None, Depends(security)],
) -> str:
    """Check basic-auth credentials against the admin settings.

    Returns:
        The authenticated admin username.

    Raises:
        AuthenticationError: If credentials are missing or wrong.
    """
    if credentials is None:
        raise AuthenticationError()

    admin = get_services(request).settings.admin
    username_ok = secrets.compare_digest(
        credentials.username.encode("utf-8"), admin.username.encode("utf-8")
    )
    password_ok = secrets.compare_digest(
        credentials.password.encode("utf-8"),
        admin.password.get_secret_value().encode("utf-8"),
    )
    if not (username_ok and password_ok):
        logger.warning("Rejected admin credentials: username=%s", credentials.username)
        raise AuthenticationError("Invalid admin credentials")
    return credentials.username


AdminUser = Annotated[str, Depends(require_admin)]
AppServices = Annotated[Services, Depends(get_services)]


# -----------------------------------------------------------------------------
# Health Check
# -----------------------------------------------------------------------------


@router.get("/health")
async def health() -> dict[str, str]:
    """Health check for the admin namespace."""
    return {"status": "healthy", "namespace": "admin"}


# -----------------------------------------------------------------------------
# Queue statistics
# -----------------------------------------------------------------------------


@router.get(
    "/queues/stats",
    response_model=QueueStatsResponse,
    response_model_exclude_none=True,
    summary="Queue statistics",
)
async def queue_stats(user: AdminUser, services: AppServices) -> QueueStatsResponse:
    """Waiting, active, completed and failed counts for every queue."""
    stats = await services.monitor.stats()
    return QueueStatsResponse(
        queues={name: QueueCounts(**counts) for name, counts in stats.items()}
    )


# -----------------------------------------------------------------------------
# Dead jobs
# -----------------------------------------------------------------------------


@router.get(
    "/queues/{queue}/dead",
    response_model=DeadJobsResponse,
    summary="List dead jobs",
)
async def list_dead_jobs(
    queue: str,
    user: AdminUser,
    services: AppServices,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> DeadJobsResponse:
    """Jobs of a queue that exhausted their attempts.

    Raises:
        QueueNotDeclaredError: If the queue does not exist (404).
    """
    jobs = await services.job_queue.list_dead_jobs(queue, limit=limit)
    return DeadJobsResponse(
        queue=queue,
        jobs=[JobSummary.model_validate(job) for job in jobs],
        total=len(jobs),
    )


@router.post(
    "/jobs/{job_id}/retry",
    response_model=JobSummary,
    status_code=201,
    summary="Re-drive a dead job",
)
async def retry_dead_job(job_id: uuid.UUID, user: AdminUser, services: AppServices) -> JobSummary:
    """Enqueue a fresh copy of a dead job.

    The new job has a new id and keeps the dead job's correlation id.
    """
    job = await services.job_queue.retry_dead_job(job_id)
    logger.info("Admin re-drove dead job: job_id=%s, new_job_id=%s, admin=%s", job_id, job.job_id, user)
    return JobSummary.model_validate(job)


# -----------------------------------------------------------------------------
# Cleaning
# -----------------------------------------------------------------------------


@router.delete(
    "/queues/{queue}/jobs",
    response_model=CleanQueueResponse,
    summary="Remove terminal jobs",
)
async def clean_queue(
    queue: str,
    user: AdminUser,
    services: AppServices,
    status: Annotated[Literal["completed", "dead"], Query()] = "completed",
) -> CleanQueueResponse:
    """Delete every completed or dead job of a queue."""
    removed = await services.job_queue.clean_queue(queue, JobStatus(status))
    logger.info("Admin cleaned queue: queue=%s, status=%s, removed=%d, admin=%s", queue, status, removed, user)
    return CleanQueueResponse(queue=queue, status=status, removed=removed)
