"""Job queue service for background side effects.

Request handlers describe side effects (emails, notifications, stats
recomputation, cleanup) as jobs and return without waiting for them.
Workers claim jobs from the statically declared queues, run the
registered handler and report the terminal state back through this
service.

Key features:
- Typed job registry: unknown job types and invalid payloads are
  rejected at enqueue time, never inside a worker
- Atomic claiming with a per-queue concurrency ceiling
- Fixed or exponential retry backoff, then the dead state
- Heartbeat-based stalled job recovery
- Bounded completed and dead history per queue

Job lifecycle:
    waiting -> active -> completed
                      -> failed -> waiting   (retry after backoff)
                                -> dead      (attempts exhausted)

Usage:
    queues = build_default_queues(settings.queue)
    service = JobQueueService(store, registry, queues)
    await service.start()

    job_id = await service.enqueue(
        "update_project_stats",
        {"project_id": str(project.project_id)},
    )
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from taskflow.db.models.base import JobStatus
from taskflow.db.models.jobs import InvalidTransitionError, Job

if TYPE_CHECKING:
    from collections.abc import Iterable

    from taskflow.core.config import QueueSettings
    from taskflow.services.job_store import JobStore
    from taskflow.worker.registry import JobRegistry

logger = logging.getLogger(__name__)

# Declared queues
NOTIFICATION_EMAIL = "notification-email"
IN_APP_NOTIFICATION = "in-app-notification"
FILE_PROCESSING = "file-processing"
ANALYTICS = "analytics"
CLEANUP = "cleanup"

# Concurrent executions per queue when no override is configured
DEFAULT_CONCURRENCY: dict[str, int] = {
    NOTIFICATION_EMAIL: 8,
    IN_APP_NOTIFICATION: 30,
    FILE_PROCESSING: 3,
    ANALYTICS: 4,
    CLEANUP: 2,
}

__all__ = [
    "ANALYTICS",
    "CLEANUP",
    "DEFAULT_CONCURRENCY",
    "FILE_PROCESSING",
    "IN_APP_NOTIFICATION",
    "NOTIFICATION_EMAIL",
    "InvalidPayloadError",
    "InvalidTransitionError",
    "JobLockLostError",
    "JobNotDeadError",
    "JobNotFoundError",
    "JobQueueError",
    "JobQueueService",
    "QueueDefinition",
    "QueueNotDeclaredError",
    "RetryPolicy",
    "UnknownJobTypeError",
    "build_default_queues",
]


class JobQueueError(Exception):
    """Base exception for job queue operations."""

    pass


class JobNotFoundError(JobQueueError):
    """Raised when a job cannot be found."""

    pass


class JobNotDeadError(JobQueueError):
    """Raised when re-driving a job that is not dead."""

    pass


class JobLockLostError(JobQueueError):
    """Raised when a worker settles a job it no longer holds.

    The job was reclaimed as stalled (and possibly claimed again) while
    the worker was still running it.
    """

    pass


class UnknownJobTypeError(JobQueueError):
    """Raised when enqueuing a job type that has no registered handler."""

    pass


class InvalidPayloadError(JobQueueError):
    """Raised when a payload does not match the job type's model."""

    def __init__(self, job_type: str, errors: list[dict[str, Any]]) -> None:
        self.job_type = job_type
        self.errors = errors
        super().__init__(f"Invalid payload for {job_type}: {errors}")


class QueueNotDeclaredError(JobQueueError):
    """Raised when a queue name is not one of the declared queues."""

    pass


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how late a failed job is retried.

    Attributes:
        max_attempts: Total executions allowed, including the first.
        strategy: "exponential" or "fixed".
        base_delay: Delay in seconds before the first retry.
        max_delay: Upper bound for any single delay.
    """

    max_attempts: int = 3
    strategy: str = "exponential"
    base_delay: float = 2.0
    max_delay: float = 300.0

    def delay_for(self, attempts: int) -> float:
        """Seconds to wait after the ``attempts``-th failed execution."""
        if self.strategy == "fixed":
            return min(self.base_delay, self.max_delay)
        exponent = max(attempts, 1) - 1
        return min(self.base_delay * (2**exponent), self.max_delay)


@dataclass(frozen=True)
class QueueDefinition:
    """A named queue with its execution limits and history windows."""

    name: str
    concurrency: int
    retry_policy: RetryPolicy
    keep_completed: int = 10
    keep_failed: int = 5


def build_default_queues(settings: QueueSettings) -> dict[str, QueueDefinition]:
    """Declare the application queues from settings.

    Concurrency overrides in ``settings.concurrency`` must name declared
    queues.

    Raises:
        QueueNotDeclaredError: If an override names an unknown queue.
    """
    unknown = set(settings.concurrency) - set(DEFAULT_CONCURRENCY)
    if unknown:
        msg = f"Concurrency override for undeclared queue(s): {', '.join(sorted(unknown))}"
        raise QueueNotDeclaredError(msg)

    policy = RetryPolicy(
        max_attempts=settings.max_attempts,
        strategy=settings.backoff_strategy,
        base_delay=settings.backoff_base_seconds,
        max_delay=settings.backoff_max_seconds,
    )
    return {
        name: QueueDefinition(
            name=name,
            concurrency=settings.concurrency.get(name, default),
            retry_policy=policy,
            keep_completed=settings.keep_completed,
            keep_failed=settings.keep_failed,
        )
        for name, default in DEFAULT_CONCURRENCY.items()
    }


class JobQueueService:
    """Enqueue, claim and settle jobs across the declared queues.

    The service owns no storage: a JobStore (PostgreSQL or in-memory)
    holds the jobs and performs every state change atomically.

    Attributes:
        store: Durable job storage.
        registry: Job type -> (queue, payload model, handler) table.
        queues: Declared queues keyed by name.
    """

    def __init__(
        self,
        store: JobStore,
        registry: JobRegistry,
        queues: dict[str, QueueDefinition],
    ) -> None:
        self.store = store
        self.registry = registry
        self.queues = queues

        for definition in registry.definitions():
            if definition.queue not in queues:
                msg = f"Job type {definition.job_type} uses undeclared queue {definition.queue}"
                raise QueueNotDeclaredError(msg)

    async def start(self) -> None:
        """Register the declared queues with the store."""
        await self.store.ensure_queues(self.queues.values())
        logger.info("Job queues ready: queues=%s", sorted(self.queues))

    def queue(self, name: str) -> QueueDefinition:
        """Look up a declared queue.

        Raises:
            QueueNotDeclaredError: If ``name`` is not declared.
        """
        try:
            return self.queues[name]
        except KeyError:
            raise QueueNotDeclaredError(f"Queue not declared: {name}") from None

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        delay: float | timedelta | None = None,
        correlation_id: str | None = None,
        queue_name: str | None = None,
    ) -> uuid.UUID:
        """Add a job and return its id once it is durably waiting.

        Never waits for the job to run.

        Args:
            job_type: Registered job type, e.g. "update_project_stats".
            payload: JSON-compatible data validated against the job
                type's payload model.
            delay: Seconds (or a timedelta) before the job may run.
            correlation_id: Optional id tying jobs to the request that
                spawned them.
            queue_name: Optional expected queue; the job type decides
                the queue, this only guards against a mismatch.

        Returns:
            UUID of the created job.

        Raises:
            UnknownJobTypeError: If no handler is registered for job_type.
            InvalidPayloadError: If the payload fails validation.
            QueueNotDeclaredError: If queue_name does not match the job type.
            JobQueueError: If the job could not be stored.
        """
        definition = self.registry.get(job_type)
        if queue_name is not None and queue_name != definition.queue:
            msg = f"Job type {job_type} runs on queue {definition.queue}, not {queue_name}"
            raise QueueNotDeclaredError(msg)
        validated = definition.validate(payload or {})
        queue = self.queue(definition.queue)

        if isinstance(delay, timedelta):
            delay_seconds = delay.total_seconds()
        else:
            delay_seconds = float(delay or 0)
        if delay_seconds < 0:
            msg = f"Delay must not be negative, got {delay_seconds}"
            raise ValueError(msg)

        now = self.store.now()
        job = Job(
            job_id=uuid.uuid4(),
            created_at=now,
            job_type=job_type,
            queue=queue.name,
            status=JobStatus.WAITING,
            run_at=now + timedelta(seconds=delay_seconds),
            attempts=0,
            max_attempts=queue.retry_policy.max_attempts,
            payload_json=validated.model_dump(mode="json"),
            correlation_id=correlation_id,
        )
        await self.store.add(job)

        logger.info(
            "Job enqueued: job_id=%s, job_type=%s, queue=%s, run_at=%s",
            job.job_id,
            job_type,
            queue.name,
            job.run_at.isoformat(),
        )
        return job.job_id

    # -------------------------------------------------------------------------
    # Worker side
    # -------------------------------------------------------------------------

    async def claim(self, queue_name: str, worker_id: str) -> Job | None:
        """Activate the next runnable job of a queue, if any.

        Returns None when the queue is empty or already runs
        ``concurrency`` jobs.
        """
        job = await self.store.claim(self.queue(queue_name), worker_id)
        if job is not None:
            logger.info(
                "Job claimed: job_id=%s, worker_id=%s, job_type=%s, attempt=%d/%d",
                job.job_id,
                worker_id,
                job.job_type,
                job.attempts,
                job.max_attempts,
            )
        return job

    async def heartbeat(self, job_id: uuid.UUID, worker_id: str) -> bool:
        """Refresh the liveness timestamp of an active job.

        Returns False when the job is no longer held by ``worker_id``.
        """
        return await self.store.heartbeat(job_id, worker_id)

    async def complete(
        self,
        job: Job,
        result: dict[str, Any] | None = None,
        *,
        worker_id: str | None = None,
        attempt: int | None = None,
    ) -> Job:
        """Record a successful execution and trim completed history.

        ``worker_id`` and ``attempt`` identify the claim being settled and
        default to the job's current holder.

        Raises:
            JobLockLostError: If that claim no longer holds the job.
        """
        done = await self.store.complete(
            job.job_id,
            worker_id or job.locked_by,
            attempt or job.attempts,
            result,
            self.queue(job.queue),
        )
        logger.info(
            "Job completed: job_id=%s, job_type=%s, duration_ms=%s",
            done.job_id,
            done.job_type,
            done.duration_ms,
        )
        return done

    async def fail(
        self,
        job: Job,
        error: str,
        *,
        worker_id: str | None = None,
        attempt: int | None = None,
    ) -> Job:
        """Record a failed execution.

        The job goes back to waiting with a backoff delay, or to dead
        when its attempts are exhausted.

        Raises:
            JobLockLostError: If the claim no longer holds the job.
        """
        failed = await self.store.fail(
            job.job_id,
            worker_id or job.locked_by,
            attempt or job.attempts,
            error,
            self.queue(job.queue),
        )
        if failed.status == JobStatus.DEAD:
            logger.warning(
                "Job dead-lettered: job_id=%s, job_type=%s, attempts=%d, error=%s",
                failed.job_id,
                failed.job_type,
                failed.attempts,
                error,
            )
        else:
            logger.info(
                "Job scheduled for retry: job_id=%s, job_type=%s, attempt=%d/%d, retry_at=%s",
                failed.job_id,
                failed.job_type,
                failed.attempts,
                failed.max_attempts,
                failed.run_at.isoformat(),
            )
        return failed

    async def reclaim_stalled(
        self,
        stall_timeout: float,
        queue_names: Iterable[str] | None = None,
    ) -> list[Job]:
        """Return active jobs without a recent heartbeat to waiting.

        A stalled execution counts as an attempt; a stalled job whose
        attempts are exhausted goes to dead.
        """
        reclaimed: list[Job] = []
        for name in queue_names or self.queues:
            jobs = await self.store.reclaim_stalled(self.queue(name), stall_timeout)
            for job in jobs:
                logger.warning(
                    "Stalled job reclaimed: job_id=%s, job_type=%s, queue=%s, status=%s",
                    job.job_id,
                    job.job_type,
                    name,
                    job.status.value,
                )
            reclaimed.extend(jobs)
        return reclaimed

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        return await self.store.get(job_id)

    async def counts(self, queue_name: str) -> dict[JobStatus, int]:
        """Number of jobs per state for one queue."""
        return await self.store.counts(self.queue(queue_name).name)

    async def list_dead_jobs(self, queue_name: str, limit: int = 100) -> list[Job]:
        """Dead jobs of a queue, most recent first."""
        return await self.store.list_jobs(self.queue(queue_name).name, JobStatus.DEAD, limit)

    async def retry_dead_job(self, job_id: uuid.UUID) -> Job:
        """Operator re-drive: enqueue a fresh copy of a dead job and drop the dead one.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobNotDeadError: If the job is not dead.
        """
        job = await self.store.retry_dead(job_id)
        logger.info("Dead job re-queued: job_id=%s, job_type=%s", job.job_id, job.job_type)
        return job

    async def clean_queue(self, queue_name: str, status: JobStatus) -> int:
        """Delete every completed or dead job of a queue.

        Raises:
            JobQueueError: If ``status`` is not a terminal state.
        """
        if status not in (JobStatus.COMPLETED, JobStatus.DEAD):
            msg = f"Only completed or dead jobs can be cleaned, got {status.value}"
            raise JobQueueError(msg)
        removed = await self.store.remove(self.queue(queue_name).name, status)
        logger.info("Queue cleaned: queue=%s, status=%s, removed=%d", queue_name, status.value, removed)
        return removed

    async def trim_history(self, queue_names: Iterable[str] | None = None) -> int:
        """Apply the history windows of each queue. Returns rows removed."""
        removed = 0
        for name in queue_names or self.queues:
            removed += await self.store.trim_history(self.queue(name))
        return removed

    # -------------------------------------------------------------------------
    # Typed producers
    # -------------------------------------------------------------------------

    async def enqueue_welcome_email(
        self, user_id: uuid.UUID, email: str, name: str, delay: float | None = None
    ) -> uuid.UUID:
        return await self.enqueue(
            "send_welcome_email",
            {"user_id": str(user_id), "email": email, "name": name},
            delay=delay,
        )

    async def enqueue_notification_email(
        self,
        email: str,
        subject: str,
        content: str,
        notification_type: str = "notification",
        delay: float | None = None,
    ) -> uuid.UUID:
        return await self.enqueue(
            "send_notification_email",
            {"email": email, "subject": subject, "content": content, "type": notification_type},
            delay=delay,
        )

    async def enqueue_push_notification(
        self,
        user_id: uuid.UUID,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
        delay: float | None = None,
    ) -> uuid.UUID:
        return await self.enqueue(
            "send_push_notification",
            {"user_id": str(user_id), "title": title, "body": body, "data": data or {}},
            delay=delay,
        )

    async def enqueue_in_app_notification(
        self,
        user_id: uuid.UUID,
        notification_type: str,
        message: str,
        metadata: dict[str, Any] | None = None,
        delay: float | None = None,
    ) -> uuid.UUID:
        return await self.enqueue(
            "send_in_app_notification",
            {
                "user_id": str(user_id),
                "type": notification_type,
                "message": message,
                "metadata": metadata or {},
            },
            delay=delay,
        )

    async def enqueue_task_notification(
        self,
        task_id: uuid.UUID,
        event: str,
        actor_id: uuid.UUID,
        assigned_to: uuid.UUID | None = None,
        new_status: str | None = None,
    ) -> uuid.UUID:
        return await self.enqueue(
            "send_task_notification",
            {
                "task_id": str(task_id),
                "event": event,
                "actor_id": str(actor_id),
                "assigned_to": str(assigned_to) if assigned_to else None,
                "new_status": new_status,
            },
        )

    async def enqueue_file_processing(
        self, attachment_id: uuid.UUID, file_path: str, file_type: str
    ) -> uuid.UUID:
        return await self.enqueue(
            "process_uploaded_file",
            {"attachment_id": str(attachment_id), "file_path": file_path, "file_type": file_type},
        )

    async def enqueue_temp_file_cleanup(
        self, file_paths: list[str], delay: float | None = None
    ) -> uuid.UUID:
        return await self.enqueue("cleanup_temp_files", {"file_paths": file_paths}, delay=delay)

    async def enqueue_project_analytics(
        self, project_id: uuid.UUID, date_range: str = "30d"
    ) -> uuid.UUID:
        return await self.enqueue(
            "generate_project_stats",
            {"project_id": str(project_id), "date_range": date_range},
        )

    async def enqueue_project_stats(self, project_id: uuid.UUID) -> uuid.UUID:
        return await self.enqueue("update_project_stats", {"project_id": str(project_id)})

    async def enqueue_task_stats(
        self, user_id: uuid.UUID, project_id: uuid.UUID | None = None
    ) -> uuid.UUID:
        return await self.enqueue(
            "update_task_stats",
            {"user_id": str(user_id), "project_id": str(project_id) if project_id else None},
        )

    async def enqueue_task_view(self, task_id: uuid.UUID, user_id: uuid.UUID) -> uuid.UUID:
        return await self.enqueue(
            "track_task_view", {"task_id": str(task_id), "user_id": str(user_id)}
        )

    async def enqueue_task_cleanup(
        self,
        task_id: uuid.UUID,
        project_id: uuid.UUID,
        deleted_by: uuid.UUID,
    ) -> uuid.UUID:
        return await self.enqueue(
            "cleanup_task_data",
            {
                "task_id": str(task_id),
                "project_id": str(project_id),
                "deleted_by": str(deleted_by),
            },
        )

    async def enqueue_job_history_cleanup(self) -> uuid.UUID:
        return await self.enqueue("cleanup_job_history", {})
