"""Job queue model for PostgreSQL-backed background processing.

This provides a simple, reliable job queue using PostgreSQL:
- SKIP LOCKED for concurrent worker safety
- Per-queue concurrency ceiling enforced at claim time
- Retry with exponential backoff
- Dead state for jobs that exhausted their attempts
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import BigInteger, DateTime, Enum, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from taskflow.db.models.base import (
    Base,
    JobStatus,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)

# Allowed lifecycle edges. Anything else is a programming error.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.WAITING: frozenset({JobStatus.ACTIVE}),
    JobStatus.ACTIVE: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.WAITING, JobStatus.DEAD}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.DEAD: frozenset(),
}

TERMINAL_STATES = frozenset({JobStatus.COMPLETED, JobStatus.DEAD})


class InvalidTransitionError(Exception):
    """Raised when a job is moved along an edge the lifecycle does not allow."""

    def __init__(self, job_id: object, current: JobStatus, target: JobStatus) -> None:
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid job transition for {job_id}: {current.value} -> {target.value}"
        )


class Job(Base):
    """Background job for async processing.

    Jobs are claimed by workers using SELECT ... FOR UPDATE SKIP LOCKED
    so that no two workers execute the same job concurrently.
    """

    __tablename__ = "jobs"

    job_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    # Job type selects the registered handler, e.g. 'update_project_stats'
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)

    # Queue name, one of the statically declared queues
    queue: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status", create_constraint=True),
        nullable=False,
        default=JobStatus.WAITING,
    )

    # Earliest activation time (enqueue delay and retry backoff)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Claim tracking
    locked_at: Mapped[OptionalTimestampTZ]
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    heartbeat_at: Mapped[OptionalTimestampTZ]

    # Retry tracking
    attempts: Mapped[int] = mapped_column(default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(default=3, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Validated handler payload (JSON only, never live objects)
    payload_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    # Handler result for completed jobs
    result_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    started_at: Mapped[OptionalTimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]

    # Actual duration of the last attempt in milliseconds
    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Correlation ID for tracing jobs spawned from one request
    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        # Primary query for workers: waiting jobs ready to run in FIFO order
        Index("ix_jobs_queue_waiting", "queue", "status", "run_at", "created_at"),
        Index("ix_jobs_status", "status"),
        Index("ix_jobs_job_type", "job_type"),
        # Stalled-job sweep
        Index("ix_jobs_heartbeat_at", "heartbeat_at"),
        # History trimming
        Index("ix_jobs_completed_at", "completed_at"),
    )

    def transition_to(self, target: JobStatus) -> None:
        """Move the job to ``target``, enforcing the lifecycle edges.

        Raises:
            InvalidTransitionError: If the edge is not allowed.
        """
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.job_id, self.status, target)
        self.status = target

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


class JobQueueRow(Base):
    """One row per declared queue.

    Claims lock this row FOR UPDATE so that counting active jobs and
    activating a new one happen atomically, which keeps the number of
    active jobs within the queue's concurrency across worker processes.
    """

    __tablename__ = "job_queues"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    concurrency: Mapped[int] = mapped_column(nullable=False)
    updated_at: Mapped[TimestampTZ]
