"""Job dispatcher: claims jobs and runs their handlers.

One claim loop per served queue. Each loop keeps at most
``concurrency`` executions in flight (the store enforces the same
ceiling across processes). Executions send heartbeats while they run;
a sweep loop returns jobs whose heartbeats stopped (crashed or killed
workers) to waiting and trims job history.

Handler errors never escape an execution: every run ends in a
JobOutcome that is logged and returned. Failures in one queue never
block another.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from taskflow.db.models.base import JobStatus
from taskflow.db.models.jobs import InvalidTransitionError
from taskflow.services.job_queue import JobQueueError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from taskflow.db.models.jobs import Job
    from taskflow.services.job_queue import JobQueueService, QueueDefinition
    from taskflow.worker.context import WorkerServices
    from taskflow.worker.registry import JobRegistry

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    """How an execution ended."""

    COMPLETED = "completed"
    RETRYING = "retrying"
    DEAD = "dead"
    # The result could not be recorded (job reclaimed meanwhile or store
    # unreachable); stalled-job recovery takes it from here.
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class JobOutcome:
    """Result of one job execution."""

    job_id: uuid.UUID
    job_type: str
    queue: str
    status: OutcomeStatus
    attempts: int
    duration_ms: int
    result: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def from_job(
        cls, job: Job, duration_ms: int, result: dict[str, Any] | None, error: str | None
    ) -> JobOutcome:
        if job.status == JobStatus.COMPLETED:
            status = OutcomeStatus.COMPLETED
        elif job.status == JobStatus.DEAD:
            status = OutcomeStatus.DEAD
        else:
            status = OutcomeStatus.RETRYING
        return cls(
            job_id=job.job_id,
            job_type=job.job_type,
            queue=job.queue,
            status=status,
            attempts=job.attempts,
            duration_ms=duration_ms,
            result=result,
            error=error,
        )


def format_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class Dispatcher:
    """Runs registered handlers for claimed jobs.

    Attributes:
        job_queue: Queue service used to claim and settle jobs.
        registry: Job type -> handler table.
        services: Collaborators handed to handlers.
        worker_id: Identifier recorded on claimed jobs.
    """

    def __init__(
        self,
        job_queue: JobQueueService,
        registry: JobRegistry,
        services: WorkerServices,
        worker_id: str | None = None,
        queues: Iterable[str] | None = None,
        poll_interval: float = 1.0,
        sweep_interval: float = 15.0,
        stall_timeout: float = 30.0,
        heartbeat_interval: float | None = None,
    ) -> None:
        self.job_queue = job_queue
        self.registry = registry
        self.services = services
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.queue_names = list(queues or job_queue.queues)
        for name in self.queue_names:
            job_queue.queue(name)
        self.poll_interval = poll_interval
        self.sweep_interval = sweep_interval
        self.stall_timeout = stall_timeout
        self.heartbeat_interval = heartbeat_interval or stall_timeout / 3

        self._stopping = asyncio.Event()
        self._loops: list[asyncio.Task[None]] = []
        self._in_flight: set[asyncio.Task[JobOutcome]] = set()
        self.jobs_processed = 0
        self.jobs_failed = 0

    # -------------------------------------------------------------------------
    # Single execution
    # -------------------------------------------------------------------------

    async def process_next(self, queue_name: str) -> JobOutcome | None:
        """Claim and run one job of a queue. None when nothing was claimable."""
        job = await self.job_queue.claim(queue_name, self.worker_id)
        if job is None:
            return None
        return await self.execute(job)

    async def execute(self, job: Job) -> JobOutcome:
        """Run the handler of an active job and settle it."""
        started = time.monotonic()
        attempt = job.attempts
        result: dict[str, Any] | None = None
        error: str | None = None

        heartbeat = asyncio.create_task(self._heartbeat(job))
        try:
            definition = self.registry.get(job.job_type)
            payload = definition.validate(job.payload_json or {})
            async with self.services.context_for(job) as context:
                result = await definition.handler(context, payload)
        except Exception as e:
            error = format_error(e)
            logger.exception(
                "Job handler failed: job_id=%s, job_type=%s, attempt=%d/%d",
                job.job_id,
                job.job_type,
                attempt,
                job.max_attempts,
            )
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

        duration_ms = int((time.monotonic() - started) * 1000)
        try:
            if error is None:
                settled = await self.job_queue.complete(
                    job, result, worker_id=self.worker_id, attempt=attempt
                )
            else:
                settled = await self.job_queue.fail(
                    job, error, worker_id=self.worker_id, attempt=attempt
                )
        except (InvalidTransitionError, JobQueueError) as e:
            logger.warning(
                "Job outcome not recorded: job_id=%s, job_type=%s, error=%s",
                job.job_id,
                job.job_type,
                e,
            )
            outcome = JobOutcome(
                job_id=job.job_id,
                job_type=job.job_type,
                queue=job.queue,
                status=OutcomeStatus.ABANDONED,
                attempts=attempt,
                duration_ms=duration_ms,
                result=result,
                error=error or format_error(e),
            )
        else:
            outcome = JobOutcome.from_job(settled, duration_ms, result, error)

        self._record(outcome)
        return outcome

    def _record(self, outcome: JobOutcome) -> None:
        if outcome.status == OutcomeStatus.COMPLETED:
            self.jobs_processed += 1
        elif outcome.status == OutcomeStatus.DEAD:
            self.jobs_failed += 1
        log = logger.warning if outcome.status == OutcomeStatus.DEAD else logger.info
        log(
            "Job outcome: job_id=%s, job_type=%s, queue=%s, status=%s, attempts=%d, "
            "duration_ms=%d, error=%s",
            outcome.job_id,
            outcome.job_type,
            outcome.queue,
            outcome.status.value,
            outcome.attempts,
            outcome.duration_ms,
            outcome.error,
        )

    async def _heartbeat(self, job: Job) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                alive = await self.job_queue.heartbeat(job.job_id, self.worker_id)
            except JobQueueError as e:
                logger.warning("Heartbeat failed: job_id=%s, error=%s", job.job_id, e)
                continue
            if not alive:
                logger.warning("Job no longer held by this worker: job_id=%s", job.job_id)
                return

    # -------------------------------------------------------------------------
    # Loops
    # -------------------------------------------------------------------------

    async def sweep(self) -> int:
        """Reclaim stalled jobs and trim history once. Returns jobs reclaimed."""
        reclaimed = await self.job_queue.reclaim_stalled(self.stall_timeout, self.queue_names)
        await self.job_queue.trim_history(self.queue_names)
        return len(reclaimed)

    async def start(self) -> None:
        """Start one claim loop per queue and the sweep loop."""
        self._stopping.clear()
        for name in self.queue_names:
            queue = self.job_queue.queue(name)
            self._loops.append(asyncio.create_task(self._queue_loop(queue), name=f"queue:{name}"))
        self._loops.append(asyncio.create_task(self._sweep_loop(), name="sweep"))
        logger.info(
            "Dispatcher started: worker_id=%s, queues=%s",
            self.worker_id,
            self.queue_names,
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop claiming, then wait up to ``timeout`` for in-flight jobs.

        Jobs still running after the timeout are abandoned; their
        heartbeats stop and stalled-job recovery redelivers them.
        """
        self._stopping.set()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()

        if self._in_flight:
            logger.info("Waiting for %d in-flight job(s)", len(self._in_flight))
            _, pending = await asyncio.wait(self._in_flight, timeout=timeout)
            if pending:
                logger.warning(
                    "Abandoning %d job(s) still running after %.1fs", len(pending), timeout
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        logger.info(
            "Dispatcher stopped: worker_id=%s, processed=%d, failed=%d",
            self.worker_id,
            self.jobs_processed,
            self.jobs_failed,
        )

    async def _queue_loop(self, queue: QueueDefinition) -> None:
        slots = asyncio.Semaphore(queue.concurrency)
        while not self._stopping.is_set():
            await slots.acquire()
            if self._stopping.is_set():
                slots.release()
                break
            try:
                job = await self.job_queue.claim(queue.name, self.worker_id)
            except Exception:
                slots.release()
                logger.exception("Claim failed: queue=%s", queue.name)
                await self._idle(self.poll_interval)
                continue

            if job is None:
                slots.release()
                await self._idle(self.poll_interval)
                continue

            task = asyncio.create_task(self.execute(job))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            task.add_done_callback(lambda _: slots.release())

    async def _sweep_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                reclaimed = await self.sweep()
                if reclaimed:
                    logger.warning("Reclaimed %d stalled job(s)", reclaimed)
            except Exception:
                logger.exception("Stalled job sweep failed")
            await self._idle(self.sweep_interval)

    async def _idle(self, seconds: float) -> None:
        """Sleep, waking early on stop."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
