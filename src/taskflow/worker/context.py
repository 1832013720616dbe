"""Per-job handler context.

A handler receives everything it may touch through one HandlerContext:
a repository bound to a fresh unit of work, the cache and its
invalidation rules, the notification sink and the job queue (to spawn
follow-up jobs). Handlers never reach for module-level state.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from taskflow.services.cache_invalidation import CacheInvalidator

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from contextlib import AbstractAsyncContextManager

    from taskflow.core.config import Settings
    from taskflow.db.models.jobs import Job
    from taskflow.services.cache import CacheService
    from taskflow.services.job_queue import JobQueueService
    from taskflow.services.notification_sink import EmailTemplates, NotificationSink
    from taskflow.services.repository import Repository

    RepositoryScope = Callable[[], AbstractAsyncContextManager[Repository]]


@dataclass
class HandlerContext:
    """What a job handler may use while it runs."""

    job: Job
    repository: Repository
    cache: CacheService
    invalidator: CacheInvalidator
    sink: NotificationSink
    job_queue: JobQueueService
    templates: EmailTemplates
    settings: Settings


@dataclass
class WorkerServices:
    """Long-lived collaborators shared by every job execution."""

    repository_scope: RepositoryScope
    cache: CacheService
    sink: NotificationSink
    job_queue: JobQueueService
    templates: EmailTemplates
    settings: Settings

    @asynccontextmanager
    async def context_for(self, job: Job) -> AsyncIterator[HandlerContext]:
        """Open a unit of work for one execution of ``job``."""
        async with self.repository_scope() as repository:
            yield HandlerContext(
                job=job,
                repository=repository,
                cache=self.cache,
                invalidator=CacheInvalidator(self.cache),
                sink=self.sink,
                job_queue=self.job_queue,
                templates=self.templates,
                settings=self.settings,
            )
