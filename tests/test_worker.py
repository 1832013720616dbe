"""Tests for the TaskFlow worker process.

Tests cover:
- Worker initialization from settings
- Processing jobs between start and graceful shutdown
- Logging configuration
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from unittest.mock import patch

import pytest

from taskflow.bootstrap import build_memory_services
from taskflow.core.config import QueueSettings, RedisSettings, Settings, WorkerSettings
from taskflow.db.models.base import JobStatus
from taskflow.services.job_queue import ANALYTICS
from taskflow.worker.main import Worker, configure_logging
from tests.fakes import RecordingNotificationSink


@pytest.fixture
def worker_settings(tmp_path) -> Settings:
    return Settings(
        redis=RedisSettings(enabled=False),
        queue=QueueSettings(stall_timeout_seconds=30.0),
        worker=WorkerSettings(
            worker_id="worker-test-7",
            queues=[ANALYTICS],
            poll_interval=0.01,
            sweep_interval=0.01,
            shutdown_timeout=1.0,
            storage_root=str(tmp_path),
        ),
    )


class TestWorkerInit:
    """Worker construction."""

    def test_configured_worker_id_and_queues(self, worker_settings):
        worker = Worker(build_memory_services(worker_settings, sink=RecordingNotificationSink()))

        assert worker.worker_id == "worker-test-7"
        assert worker.dispatcher.queue_names == [ANALYTICS]
        assert worker.dispatcher.stall_timeout == 30.0
        assert worker.dispatcher.poll_interval == 0.01

    def test_defaults_serve_every_queue(self, settings):
        worker = Worker(build_memory_services(settings, sink=RecordingNotificationSink()))

        assert worker.worker_id.startswith("worker-")
        assert len(worker.dispatcher.queue_names) == 5

    def test_uptime_before_start(self, settings):
        worker = Worker(build_memory_services(settings, sink=RecordingNotificationSink()))

        assert worker._get_uptime() == "0s"


class TestWorkerRun:
    """Start, process, stop."""

    @pytest.mark.asyncio
    async def test_processes_jobs_until_stopped(self, worker_settings):
        sink = RecordingNotificationSink()
        services = build_memory_services(worker_settings, sink=sink)
        worker = Worker(services)
        job_id = await services.job_queue.enqueue_project_stats(uuid.uuid4())

        run_task = asyncio.create_task(worker.run())
        for _ in range(200):
            if worker.dispatcher.jobs_processed:
                break
            await asyncio.sleep(0.01)
        worker.stop()
        await asyncio.wait_for(run_task, timeout=5)

        job = await services.job_queue.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.locked_by is None
        assert sink.closed is True

    @pytest.mark.asyncio
    async def test_stop_before_any_job(self, worker_settings):
        sink = RecordingNotificationSink()
        worker = Worker(build_memory_services(worker_settings, sink=sink))

        run_task = asyncio.create_task(worker.run())
        await asyncio.sleep(0.05)
        worker.stop()
        await asyncio.wait_for(run_task, timeout=5)

        assert worker.dispatcher.jobs_processed == 0
        assert sink.closed is True


class TestConfigureLogging:
    """Root logger setup."""

    def test_uses_configured_level(self):
        settings = Settings(log_level="DEBUG")

        with patch("taskflow.worker.main.logging.basicConfig") as basic_config:
            configure_logging(settings)

        basic_config.assert_called_once()
        assert basic_config.call_args.kwargs["level"] == logging.DEBUG
