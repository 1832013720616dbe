"""Tests for the read-only queue monitor."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from taskflow.db.models.base import JobStatus
from taskflow.services.job_queue import ANALYTICS, CLEANUP, JobQueueError
from taskflow.services.queue_monitor import QueueMonitor


def counts(**values: int) -> dict[JobStatus, int]:
    result = dict.fromkeys(JobStatus, 0)
    for name, value in values.items():
        result[JobStatus(name)] = value
    return result


class TestQueueMonitor:
    """QueueMonitor.stats()."""

    @pytest.mark.asyncio
    async def test_empty_queues(self, services):
        stats = await services.monitor.stats()

        assert len(stats) == 5
        for queue_stats in stats.values():
            assert queue_stats == {"waiting": 0, "active": 0, "completed": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_delayed_jobs_count_as_waiting(self, services):
        await services.job_queue.enqueue_job_history_cleanup()
        await services.job_queue.enqueue("cleanup_job_history", {}, delay=3600)

        stats = await services.monitor.stats()

        assert stats[CLEANUP]["waiting"] == 2

    @pytest.mark.asyncio
    async def test_failed_includes_dead(self):
        job_queue = MagicMock()
        job_queue.queues = {ANALYTICS: object()}
        job_queue.counts = AsyncMock(
            return_value=counts(waiting=2, active=1, completed=7, failed=1, dead=3)
        )

        stats = await QueueMonitor(job_queue).stats()

        assert stats == {ANALYTICS: {"waiting": 2, "active": 1, "completed": 7, "failed": 4}}

    @pytest.mark.asyncio
    async def test_unreadable_queue_does_not_hide_others(self):
        async def fake_counts(name):
            if name == CLEANUP:
                raise JobQueueError("Failed to count jobs: connection lost")
            return counts(waiting=1)

        job_queue = MagicMock()
        job_queue.queues = {ANALYTICS: object(), CLEANUP: object()}
        job_queue.counts = AsyncMock(side_effect=fake_counts)

        stats = await QueueMonitor(job_queue).stats()

        assert stats[ANALYTICS]["waiting"] == 1
        assert stats[CLEANUP] == {"error": "Failed to count jobs: connection lost"}

    @pytest.mark.asyncio
    async def test_monitor_does_not_mutate(self, services):
        await services.job_queue.enqueue_job_history_cleanup()

        await services.monitor.stats()
        await services.monitor.stats()

        job_counts = await services.job_queue.counts(CLEANUP)
        assert job_counts[JobStatus.WAITING] == 1
        assert job_counts[JobStatus.ACTIVE] == 0
