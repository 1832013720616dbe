"""Read-only queue statistics for operators."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from taskflow.db.models.base import JobStatus

if TYPE_CHECKING:
    from taskflow.services.job_queue import JobQueueService

logger = logging.getLogger(__name__)


class QueueMonitor:
    """Reports per-queue job counts. Never mutates jobs."""

    def __init__(self, job_queue: JobQueueService) -> None:
        self.job_queue = job_queue

    async def stats(self) -> dict[str, dict[str, Any]]:
        """Counts for every declared queue.

        ``failed`` includes jobs that exhausted their attempts (dead),
        since a job only rests in the failed state for the duration of
        a single transition. A queue whose counts cannot be read is
        reported as ``{"error": ...}`` and does not hide the others.
        """
        names = sorted(self.job_queue.queues)
        results = await asyncio.gather(
            *(self.job_queue.counts(name) for name in names),
            return_exceptions=True,
        )

        stats: dict[str, dict[str, Any]] = {}
        for name, counts in zip(names, results, strict=True):
            if isinstance(counts, BaseException):
                logger.error("Queue stats unavailable: queue=%s, error=%s", name, counts)
                stats[name] = {"error": str(counts)}
                continue
            stats[name] = {
                "waiting": counts[JobStatus.WAITING],
                "active": counts[JobStatus.ACTIVE],
                "completed": counts[JobStatus.COMPLETED],
                "failed": counts[JobStatus.FAILED] + counts[JobStatus.DEAD],
            }
        return stats
