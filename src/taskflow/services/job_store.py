"""Durable job storage.

Two implementations of the same contract:

- SqlJobStore: PostgreSQL. Claims lock the queue's ``job_queues`` row
  FOR UPDATE, count the queue's active jobs against its concurrency and
  pick the oldest runnable job with FOR UPDATE SKIP LOCKED, all in one
  transaction. Several worker processes can claim concurrently without
  exceeding the ceiling or executing a job twice.
- MemoryJobStore: a dictionary guarded by an asyncio.Lock, for tests and
  single-process development.

Every state change goes through Job.transition_to(), so both stores
enforce the same lifecycle edges. Both take an injectable clock.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError

from taskflow.db.models.base import JobStatus
from taskflow.db.models.jobs import Job, JobQueueRow
from taskflow.services.job_queue import (
    JobLockLostError,
    JobNotDeadError,
    JobNotFoundError,
    JobQueueError,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Iterable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from taskflow.services.job_queue import QueueDefinition, RetryPolicy

logger = logging.getLogger(__name__)

STALLED_ERROR = "Job stalled: no heartbeat within {timeout}s"


def utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Lifecycle steps shared by both stores
# =============================================================================


def activate(job: Job, worker_id: str, now: datetime) -> None:
    """waiting -> active. Counts one attempt."""
    job.transition_to(JobStatus.ACTIVE)
    job.attempts += 1
    job.locked_by = worker_id
    job.locked_at = now
    job.heartbeat_at = now
    job.started_at = now
    job.completed_at = None
    job.duration_ms = None


def ensure_held(job: Job, worker_id: str | None, attempt: int) -> None:
    """Refuse to settle a job unless this claim still holds it.

    A claim is identified by the worker and the attempt it started, so a
    worker whose job was reclaimed and claimed again (even by itself)
    cannot settle the newer execution.
    """
    if job.status != JobStatus.ACTIVE or job.locked_by != worker_id or job.attempts != attempt:
        msg = (
            f"Job {job.job_id} is no longer held by {worker_id} at attempt {attempt} "
            f"(status={job.status.value}, locked_by={job.locked_by}, attempts={job.attempts})"
        )
        raise JobLockLostError(msg)


def settle_success(job: Job, result: dict[str, Any] | None, now: datetime) -> None:
    """active -> completed."""
    job.transition_to(JobStatus.COMPLETED)
    job.result_json = result
    job.last_error = None
    job.completed_at = now
    job.duration_ms = _elapsed_ms(job, now)
    _release(job)


def settle_failure(
    job: Job,
    error: str,
    policy: RetryPolicy,
    now: datetime,
    delay: float | None = None,
) -> None:
    """active -> failed -> waiting (after backoff) or dead.

    ``delay`` overrides the policy's backoff; stalled jobs are returned
    with no delay.
    """
    job.transition_to(JobStatus.FAILED)
    job.last_error = error
    job.duration_ms = _elapsed_ms(job, now)
    _release(job)

    if job.attempts >= job.max_attempts:
        job.transition_to(JobStatus.DEAD)
        job.completed_at = now
        return

    wait = policy.delay_for(job.attempts) if delay is None else delay
    job.run_at = now + timedelta(seconds=wait)
    job.transition_to(JobStatus.WAITING)


def redrive(job: Job, now: datetime) -> Job:
    """Build a fresh waiting job from a dead one.

    Dead is terminal, so an operator retry enqueues a copy with a new id
    and a reset attempt counter.
    """
    if job.status != JobStatus.DEAD:
        msg = f"Can only retry dead jobs, current status: {job.status.value}"
        raise JobNotDeadError(msg)
    return Job(
        job_id=uuid.uuid4(),
        created_at=now,
        job_type=job.job_type,
        queue=job.queue,
        status=JobStatus.WAITING,
        run_at=now,
        attempts=0,
        max_attempts=job.max_attempts,
        payload_json=job.payload_json,
        correlation_id=job.correlation_id or str(job.job_id),
    )


def _release(job: Job) -> None:
    job.locked_by = None
    job.locked_at = None
    job.heartbeat_at = None


def _elapsed_ms(job: Job, now: datetime) -> int | None:
    if job.started_at is None:
        return None
    return int((now - job.started_at).total_seconds() * 1000)


def _history_order_key(job: Job) -> datetime:
    return job.completed_at or job.created_at


# =============================================================================
# Contract
# =============================================================================


class JobStore(ABC):
    """Storage and atomic state changes for jobs."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    @abstractmethod
    async def ensure_queues(self, queues: Iterable[QueueDefinition]) -> None: ...

    @abstractmethod
    async def add(self, job: Job) -> Job: ...

    @abstractmethod
    async def claim(self, queue: QueueDefinition, worker_id: str) -> Job | None:
        """Activate the oldest runnable job if the queue is below its concurrency."""

    @abstractmethod
    async def heartbeat(self, job_id: uuid.UUID, worker_id: str) -> bool: ...

    @abstractmethod
    async def complete(
        self,
        job_id: uuid.UUID,
        worker_id: str | None,
        attempt: int,
        result: dict[str, Any] | None,
        queue: QueueDefinition,
    ) -> Job:
        """Settle the claim (``worker_id``, ``attempt``) as completed."""

    @abstractmethod
    async def fail(
        self,
        job_id: uuid.UUID,
        worker_id: str | None,
        attempt: int,
        error: str,
        queue: QueueDefinition,
    ) -> Job:
        """Settle the claim (``worker_id``, ``attempt``) as failed."""

    @abstractmethod
    async def reclaim_stalled(self, queue: QueueDefinition, stall_timeout: float) -> list[Job]: ...

    @abstractmethod
    async def get(self, job_id: uuid.UUID) -> Job | None: ...

    @abstractmethod
    async def counts(self, queue_name: str) -> dict[JobStatus, int]: ...

    @abstractmethod
    async def list_jobs(self, queue_name: str, status: JobStatus, limit: int = 100) -> list[Job]: ...

    @abstractmethod
    async def retry_dead(self, job_id: uuid.UUID) -> Job: ...

    @abstractmethod
    async def remove(self, queue_name: str, status: JobStatus) -> int: ...

    @abstractmethod
    async def trim_history(self, queue: QueueDefinition) -> int: ...


# =============================================================================
# PostgreSQL
# =============================================================================


class SqlJobStore(JobStore):
    """PostgreSQL job store. Each call runs in its own committed transaction."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(clock)
        self.session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, action: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                yield session
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to %s: %s", action, e)
            raise JobQueueError(f"Failed to {action}: {e}") from e

    async def _locked_job(self, session: AsyncSession, job_id: uuid.UUID) -> Job:
        result = await session.execute(select(Job).where(Job.job_id == job_id).with_for_update())
        job = result.scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    async def ensure_queues(self, queues: Iterable[QueueDefinition]) -> None:
        async with self._transaction("register queues") as session:
            for queue in queues:
                stmt = pg_insert(JobQueueRow).values(
                    name=queue.name, concurrency=queue.concurrency, updated_at=self.now()
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[JobQueueRow.name],
                    set_={"concurrency": queue.concurrency, "updated_at": self.now()},
                )
                await session.execute(stmt)

    async def add(self, job: Job) -> Job:
        async with self._transaction("enqueue job") as session:
            session.add(job)
        return job

    async def claim(self, queue: QueueDefinition, worker_id: str) -> Job | None:
        now = self.now()
        async with self._transaction("claim job") as session:
            # Serializes claims per queue so the active count cannot race
            queue_row = await session.get(JobQueueRow, queue.name, with_for_update=True)
            if queue_row is None:
                raise JobQueueError(f"Queue not registered: {queue.name}")

            active = await session.scalar(
                select(func.count(Job.job_id)).where(
                    Job.queue == queue.name, Job.status == JobStatus.ACTIVE
                )
            )
            if (active or 0) >= queue.concurrency:
                return None

            result = await session.execute(
                select(Job)
                .where(
                    Job.queue == queue.name,
                    Job.status == JobStatus.WAITING,
                    Job.run_at <= now,
                )
                .order_by(Job.run_at, Job.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            job = result.scalar_one_or_none()
            if job is None:
                return None

            activate(job, worker_id, now)
        return job

    async def heartbeat(self, job_id: uuid.UUID, worker_id: str) -> bool:
        async with self._transaction("record heartbeat") as session:
            result = await session.execute(
                update(Job)
                .where(
                    Job.job_id == job_id,
                    Job.status == JobStatus.ACTIVE,
                    Job.locked_by == worker_id,
                )
                .values(heartbeat_at=self.now())
            )
        return result.rowcount > 0

    async def complete(
        self,
        job_id: uuid.UUID,
        worker_id: str | None,
        attempt: int,
        result: dict[str, Any] | None,
        queue: QueueDefinition,
    ) -> Job:
        async with self._transaction("complete job") as session:
            job = await self._locked_job(session, job_id)
            ensure_held(job, worker_id, attempt)
            settle_success(job, result, self.now())
            await session.flush()
            await self._trim(session, queue.name, JobStatus.COMPLETED, queue.keep_completed)
        return job

    async def fail(
        self,
        job_id: uuid.UUID,
        worker_id: str | None,
        attempt: int,
        error: str,
        queue: QueueDefinition,
    ) -> Job:
        async with self._transaction("fail job") as session:
            job = await self._locked_job(session, job_id)
            ensure_held(job, worker_id, attempt)
            settle_failure(job, error, queue.retry_policy, self.now())
            await session.flush()
            if job.status == JobStatus.DEAD:
                await self._trim(session, queue.name, JobStatus.DEAD, queue.keep_failed)
        return job

    async def reclaim_stalled(self, queue: QueueDefinition, stall_timeout: float) -> list[Job]:
        now = self.now()
        threshold = now - timedelta(seconds=stall_timeout)
        async with self._transaction("reclaim stalled jobs") as session:
            result = await session.execute(
                select(Job)
                .where(
                    Job.queue == queue.name,
                    Job.status == JobStatus.ACTIVE,
                    or_(
                        Job.heartbeat_at < threshold,
                        and_(Job.heartbeat_at.is_(None), Job.locked_at < threshold),
                    ),
                )
                .with_for_update(skip_locked=True)
            )
            jobs = list(result.scalars().all())
            error = STALLED_ERROR.format(timeout=stall_timeout)
            for job in jobs:
                settle_failure(job, error, queue.retry_policy, now, delay=0)
            await session.flush()
            if any(job.status == JobStatus.DEAD for job in jobs):
                await self._trim(session, queue.name, JobStatus.DEAD, queue.keep_failed)
        return jobs

    async def get(self, job_id: uuid.UUID) -> Job | None:
        async with self._transaction("load job") as session:
            return await session.get(Job, job_id)

    async def counts(self, queue_name: str) -> dict[JobStatus, int]:
        async with self._transaction("count jobs") as session:
            result = await session.execute(
                select(Job.status, func.count(Job.job_id))
                .where(Job.queue == queue_name)
                .group_by(Job.status)
            )
            rows = result.all()
        counts = dict.fromkeys(JobStatus, 0)
        for status, count in rows:
            counts[status] = count
        return counts

    async def list_jobs(self, queue_name: str, status: JobStatus, limit: int = 100) -> list[Job]:
        async with self._transaction("list jobs") as session:
            result = await session.execute(
                select(Job)
                .where(Job.queue == queue_name, Job.status == status)
                .order_by(Job.completed_at.desc().nulls_last(), Job.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def retry_dead(self, job_id: uuid.UUID) -> Job:
        async with self._transaction("retry dead job") as session:
            dead = await self._locked_job(session, job_id)
            fresh = redrive(dead, self.now())
            await session.delete(dead)
            session.add(fresh)
        return fresh

    async def remove(self, queue_name: str, status: JobStatus) -> int:
        async with self._transaction("clean queue") as session:
            result = await session.execute(
                delete(Job).where(Job.queue == queue_name, Job.status == status)
            )
        return result.rowcount

    async def trim_history(self, queue: QueueDefinition) -> int:
        async with self._transaction("trim job history") as session:
            removed = await self._trim(session, queue.name, JobStatus.COMPLETED, queue.keep_completed)
            removed += await self._trim(session, queue.name, JobStatus.DEAD, queue.keep_failed)
        return removed

    async def _trim(self, session: AsyncSession, queue_name: str, status: JobStatus, keep: int) -> int:
        """Delete all but the ``keep`` most recent jobs in ``status``."""
        overflow = (
            select(Job.job_id)
            .where(Job.queue == queue_name, Job.status == status)
            .order_by(Job.completed_at.desc().nulls_last(), Job.created_at.desc())
            .offset(keep)
        )
        result = await session.execute(delete(Job).where(Job.job_id.in_(overflow)))
        return result.rowcount or 0


# =============================================================================
# In-memory
# =============================================================================


class MemoryJobStore(JobStore):
    """In-process job store.

    A single asyncio.Lock makes every operation atomic with respect to
    the other coroutines of the event loop.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__(clock)
        self._jobs: dict[uuid.UUID, Job] = {}
        self._sequence: dict[uuid.UUID, int] = {}
        self._next_sequence = 0
        self._queues: dict[str, int] = {}
        self._lock = asyncio.Lock()

    def _insert(self, job: Job) -> None:
        self._jobs[job.job_id] = job
        self._sequence[job.job_id] = self._next_sequence
        self._next_sequence += 1

    def _require(self, job_id: uuid.UUID) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def _in(self, queue_name: str, status: JobStatus) -> list[Job]:
        return [j for j in self._jobs.values() if j.queue == queue_name and j.status == status]

    async def ensure_queues(self, queues: Iterable[QueueDefinition]) -> None:
        async with self._lock:
            for queue in queues:
                self._queues[queue.name] = queue.concurrency

    async def add(self, job: Job) -> Job:
        async with self._lock:
            self._insert(job)
        return job

    async def claim(self, queue: QueueDefinition, worker_id: str) -> Job | None:
        async with self._lock:
            if len(self._in(queue.name, JobStatus.ACTIVE)) >= queue.concurrency:
                return None
            now = self.now()
            runnable = [j for j in self._in(queue.name, JobStatus.WAITING) if j.run_at <= now]
            if not runnable:
                return None
            job = min(runnable, key=lambda j: (j.run_at, self._sequence[j.job_id]))
            activate(job, worker_id, now)
            return job

    async def heartbeat(self, job_id: uuid.UUID, worker_id: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.ACTIVE or job.locked_by != worker_id:
                return False
            job.heartbeat_at = self.now()
            return True

    async def complete(
        self,
        job_id: uuid.UUID,
        worker_id: str | None,
        attempt: int,
        result: dict[str, Any] | None,
        queue: QueueDefinition,
    ) -> Job:
        async with self._lock:
            job = self._require(job_id)
            ensure_held(job, worker_id, attempt)
            settle_success(job, result, self.now())
            self._trim(queue.name, JobStatus.COMPLETED, queue.keep_completed)
            return job

    async def fail(
        self,
        job_id: uuid.UUID,
        worker_id: str | None,
        attempt: int,
        error: str,
        queue: QueueDefinition,
    ) -> Job:
        async with self._lock:
            job = self._require(job_id)
            ensure_held(job, worker_id, attempt)
            settle_failure(job, error, queue.retry_policy, self.now())
            if job.status == JobStatus.DEAD:
                self._trim(queue.name, JobStatus.DEAD, queue.keep_failed)
            return job

    async def reclaim_stalled(self, queue: QueueDefinition, stall_timeout: float) -> list[Job]:
        async with self._lock:
            now = self.now()
            threshold = now - timedelta(seconds=stall_timeout)
            stalled = [
                j
                for j in self._in(queue.name, JobStatus.ACTIVE)
                if (j.heartbeat_at or j.locked_at or now) < threshold
            ]
            error = STALLED_ERROR.format(timeout=stall_timeout)
            for job in stalled:
                settle_failure(job, error, queue.retry_policy, now, delay=0)
            if any(job.status == JobStatus.DEAD for job in stalled):
                self._trim(queue.name, JobStatus.DEAD, queue.keep_failed)
            return stalled

    async def get(self, job_id: uuid.UUID) -> Job | None:
        async with self._lock:
            return self._jobs.get(job_id)

    async def counts(self, queue_name: str) -> dict[JobStatus, int]:
        async with self._lock:
            counts = dict.fromkeys(JobStatus, 0)
            for job in self._jobs.values():
                if job.queue == queue_name:
                    counts[job.status] += 1
            return counts

    async def list_jobs(self, queue_name: str, status: JobStatus, limit: int = 100) -> list[Job]:
        async with self._lock:
            jobs = sorted(self._in(queue_name, status), key=self._recency, reverse=True)
            return jobs[:limit]

    async def retry_dead(self, job_id: uuid.UUID) -> Job:
        async with self._lock:
            dead = self._require(job_id)
            fresh = redrive(dead, self.now())
            self._delete(dead.job_id)
            self._insert(fresh)
            return fresh

    async def remove(self, queue_name: str, status: JobStatus) -> int:
        async with self._lock:
            doomed = self._in(queue_name, status)
            for job in doomed:
                self._delete(job.job_id)
            return len(doomed)

    async def trim_history(self, queue: QueueDefinition) -> int:
        async with self._lock:
            return self._trim(queue.name, JobStatus.COMPLETED, queue.keep_completed) + self._trim(
                queue.name, JobStatus.DEAD, queue.keep_failed
            )

    def _recency(self, job: Job) -> tuple[datetime, int]:
        return (_history_order_key(job), self._sequence[job.job_id])

    def _delete(self, job_id: uuid.UUID) -> None:
        self._jobs.pop(job_id, None)
        self._sequence.pop(job_id, None)

    def _trim(self, queue_name: str, status: JobStatus, keep: int) -> int:
        jobs = sorted(self._in(queue_name, status), key=self._recency, reverse=True)
        for job in jobs[keep:]:
            self._delete(job.job_id)
        return len(jobs[keep:])
