"""TaskFlow worker service entry point.

This module provides the Worker class that:
- Builds the services from settings and registers the declared queues
- Runs one dispatcher claim loop per served queue
- Sweeps stalled jobs and trims job history periodically
- Handles graceful shutdown via SIGTERM/SIGINT
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, NoReturn

from taskflow.bootstrap import build_services
from taskflow.core.settings import get_settings
from taskflow.worker.dispatcher import Dispatcher

if TYPE_CHECKING:
    from taskflow.bootstrap import Services
    from taskflow.core.config import Settings

logger = logging.getLogger(__name__)


class Worker:
    """Background job worker processing the declared queues.

    Several workers can run against the same PostgreSQL database; the
    job store keeps claims atomic and within each queue's concurrency.

    Example:
        services = build_services(settings)
        worker = Worker(services)
        await worker.run()
    """

    def __init__(self, services: Services) -> None:
        self.services = services
        settings = services.settings
        self.dispatcher = Dispatcher(
            services.job_queue,
            services.registry,
            services.worker_services(),
            worker_id=settings.worker.worker_id,
            queues=settings.worker.queues or None,
            poll_interval=settings.worker.poll_interval,
            sweep_interval=settings.worker.sweep_interval,
            stall_timeout=settings.queue.stall_timeout_seconds,
        )
        self._shutdown_event = asyncio.Event()
        self._started_at: datetime | None = None

    @property
    def worker_id(self) -> str:
        return self.dispatcher.worker_id

    async def run(self) -> None:
        """Process jobs until stop() is called, then shut down gracefully."""
        self._started_at = datetime.now(UTC)
        await self.services.start()
        try:
            await self.dispatcher.start()
            await self._shutdown_event.wait()
            await self.dispatcher.stop(timeout=self.services.settings.worker.shutdown_timeout)
        finally:
            await self.services.close()
            logger.info(
                "Worker stopped: worker_id=%s, processed=%d, failed=%d, uptime=%s",
                self.worker_id,
                self.dispatcher.jobs_processed,
                self.dispatcher.jobs_failed,
                self._get_uptime(),
            )

    def stop(self) -> None:
        """Request graceful shutdown."""
        logger.info("Worker shutdown requested: worker_id=%s", self.worker_id)
        self._shutdown_event.set()

    def _get_uptime(self) -> str:
        """Calculate worker uptime as a human-readable string."""
        if self._started_at is None:
            return "0s"
        delta = datetime.now(UTC) - self._started_at
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        elif minutes > 0:
            return f"{minutes}m {seconds}s"
        else:
            return f"{seconds}s"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _async_main(settings: Settings) -> None:
    worker = Worker(build_services(settings))

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, worker.stop)

    await worker.run()


def run() -> NoReturn:
    """Run the worker process.

    This is the entry point of the ``taskflow-worker`` console script
    and of ``python -m taskflow.worker``.
    """
    settings = get_settings()
    configure_logging(settings)
    logger.info("TaskFlow worker starting: environment=%s", settings.environment.value)

    try:
        asyncio.run(_async_main(settings))
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("TaskFlow worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
