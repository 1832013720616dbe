"""Service construction.

Builds every long-lived collaborator from settings and hands them out
as one Services container. Nothing is stored at module level: the API
lifespan and the worker entry point each build their own container and
close it on shutdown.

Usage:
    services = build_services(settings)
    await services.start()
    try:
        ...
    finally:
        await services.close()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from taskflow.db import Database
from taskflow.services.cache import CacheService, MemoryCacheBackend, create_cache_backend
from taskflow.services.cache_invalidation import CacheInvalidator
from taskflow.services.job_queue import JobQueueService, build_default_queues
from taskflow.services.job_store import MemoryJobStore, SqlJobStore, utcnow
from taskflow.services.notification_sink import EmailTemplates, SmtpNotificationSink
from taskflow.services.projects import ProjectService
from taskflow.services.queue_monitor import QueueMonitor
from taskflow.services.repository import (
    InMemoryRepository,
    memory_repository_scope,
    sql_repository_scope,
)
from taskflow.services.tasks import TaskService
from taskflow.services.users import UserService
from taskflow.worker.context import WorkerServices
from taskflow.worker.handlers import build_registry

if TYPE_CHECKING:
    from collections.abc import Callable
    from contextlib import AbstractAsyncContextManager
    from datetime import datetime

    from taskflow.core.config import Settings
    from taskflow.services.job_store import JobStore
    from taskflow.services.notification_sink import NotificationSink
    from taskflow.services.repository import Repository
    from taskflow.worker.registry import JobRegistry

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Every long-lived collaborator of a TaskFlow process."""

    settings: Settings
    repository_scope: Callable[[], AbstractAsyncContextManager[Repository]]
    cache: CacheService
    invalidator: CacheInvalidator
    store: JobStore
    registry: JobRegistry
    job_queue: JobQueueService
    monitor: QueueMonitor
    sink: NotificationSink
    templates: EmailTemplates
    users: UserService
    projects: ProjectService
    tasks: TaskService
    database: Database | None = None

    async def start(self) -> None:
        """Connect the cache and register the declared queues."""
        await self.cache.startup()
        await self.job_queue.start()
        logger.info("Services started: environment=%s", self.settings.environment.value)

    async def close(self) -> None:
        """Release connections. Safe to call more than once."""
        await self.sink.close()
        await self.cache.close()
        if self.database is not None:
            await self.database.close()
        logger.info("Services closed")

    def worker_services(self) -> WorkerServices:
        return WorkerServices(
            repository_scope=self.repository_scope,
            cache=self.cache,
            sink=self.sink,
            job_queue=self.job_queue,
            templates=self.templates,
            settings=self.settings,
        )


def _assemble(
    settings: Settings,
    repository_scope: Callable[[], AbstractAsyncContextManager[Repository]],
    cache: CacheService,
    store: JobStore,
    sink: NotificationSink,
    database: Database | None,
) -> Services:
    registry = build_registry()
    job_queue = JobQueueService(store, registry, build_default_queues(settings.queue))
    invalidator = CacheInvalidator(cache)
    return Services(
        settings=settings,
        repository_scope=repository_scope,
        cache=cache,
        invalidator=invalidator,
        store=store,
        registry=registry,
        job_queue=job_queue,
        monitor=QueueMonitor(job_queue),
        sink=sink,
        templates=EmailTemplates(settings.app_name, settings.base_url),
        users=UserService(repository_scope, cache, invalidator, job_queue),
        projects=ProjectService(repository_scope, cache, invalidator, job_queue),
        tasks=TaskService(repository_scope, cache, invalidator, job_queue),
        database=database,
    )


def build_services(settings: Settings, sink: NotificationSink | None = None) -> Services:
    """PostgreSQL store and job queue, Redis (or memory) cache, SMTP sink."""
    database = Database(settings.database)
    return _assemble(
        settings,
        repository_scope=sql_repository_scope(database),
        cache=CacheService(create_cache_backend(settings.redis), settings.cache),
        store=SqlJobStore(database.session_factory),
        sink=sink or SmtpNotificationSink(settings.smtp, settings.push),
        database=database,
    )


def build_memory_services(
    settings: Settings,
    sink: NotificationSink | None = None,
    repository: InMemoryRepository | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    """Everything in process memory: single-process development and tests."""
    return _assemble(
        settings,
        repository_scope=memory_repository_scope(repository or InMemoryRepository()),
        cache=CacheService(MemoryCacheBackend(), settings.cache),
        store=MemoryJobStore(clock),
        sink=sink or SmtpNotificationSink(settings.smtp, settings.push),
        database=None,
    )
