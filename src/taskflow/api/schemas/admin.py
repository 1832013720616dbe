"""Pydantic schemas for the queue monitor endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from taskflow.db.models.base import JobStatus


class QueueCounts(BaseModel):
    """Job counts of one queue.

    When the counts of a queue cannot be read, only ``error`` is set.
    """

    waiting: int | None = Field(None, description="Jobs waiting to run (including delayed)")
    active: int | None = Field(None, description="Jobs claimed by a worker")
    completed: int | None = Field(None, description="Completed jobs kept in history")
    failed: int | None = Field(None, description="Failed and dead jobs kept in history")
    error: str | None = Field(None, description="Why the counts are unavailable")


class QueueStatsResponse(BaseModel):
    """Counts for every declared queue, keyed by queue name."""

    queues: dict[str, QueueCounts]


class JobSummary(BaseModel):
    """Operator view of a single job."""

    model_config = ConfigDict(from_attributes=True)

    job_id: UUID
    job_type: str
    queue: str
    status: JobStatus
    attempts: int
    max_attempts: int
    last_error: str | None = None
    run_at: datetime
    created_at: datetime
    completed_at: datetime | None = None
    correlation_id: str | None = None
    payload_json: dict[str, Any] | None = None


class DeadJobsResponse(BaseModel):
    """Dead jobs of one queue, most recent first."""

    queue: str
    jobs: list[JobSummary]
    total: int


class CleanQueueResponse(BaseModel):
    """Result of removing terminal jobs from a queue."""

    queue: str
    status: str
    removed: int
