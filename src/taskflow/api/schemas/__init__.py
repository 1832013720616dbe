"""Request and response schemas for the TaskFlow API."""

from taskflow.api.schemas.admin import (
    CleanQueueResponse,
    DeadJobsResponse,
    JobSummary,
    QueueCounts,
    QueueStatsResponse,
)

__all__ = [
    "CleanQueueResponse",
    "DeadJobsResponse",
    "JobSummary",
    "QueueCounts",
    "QueueStatsResponse",
]
