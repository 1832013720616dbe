"""TaskFlow service layer.

- CacheService: JSON cache over Redis or memory, degrading to misses
- CacheInvalidator: entity mutation -> stale cache key rules
- JobQueueService: enqueue, claim and settle background jobs
- JobStore: PostgreSQL and in-memory job storage
- QueueMonitor: read-only per-queue job counts
- Repository: narrow access to the authoritative store
- NotificationSink: email and in-app push delivery
- UserService, ProjectService, TaskService: request-path mutations
  (commit, enqueue, invalidate) and cached reads
"""

from taskflow.services.cache import CacheService, CacheUnavailableError, create_cache_backend
from taskflow.services.cache_invalidation import CacheInvalidator, EntityKind
from taskflow.services.job_queue import (
    InvalidPayloadError,
    JobNotDeadError,
    JobNotFoundError,
    JobQueueError,
    JobQueueService,
    QueueDefinition,
    QueueNotDeclaredError,
    RetryPolicy,
    UnknownJobTypeError,
    build_default_queues,
)
from taskflow.services.job_store import JobStore, MemoryJobStore, SqlJobStore
from taskflow.services.notification_sink import (
    EmailTemplates,
    NotificationDeliveryError,
    NotificationSink,
    SmtpNotificationSink,
)
from taskflow.services.projects import PermissionDeniedError, ProjectService
from taskflow.services.queue_monitor import QueueMonitor
from taskflow.services.repository import (
    EntityNotFoundError,
    InMemoryRepository,
    Repository,
    RepositoryError,
    SqlRepository,
)
from taskflow.services.tasks import TaskService
from taskflow.services.users import UserService

__all__ = [
    "CacheInvalidator",
    "CacheService",
    "CacheUnavailableError",
    "EmailTemplates",
    "EntityKind",
    "EntityNotFoundError",
    "InMemoryRepository",
    "InvalidPayloadError",
    "JobNotDeadError",
    "JobNotFoundError",
    "JobQueueError",
    "JobQueueService",
    "JobStore",
    "MemoryJobStore",
    "NotificationDeliveryError",
    "NotificationSink",
    "PermissionDeniedError",
    "ProjectService",
    "QueueDefinition",
    "QueueMonitor",
    "QueueNotDeclaredError",
    "Repository",
    "RepositoryError",
    "RetryPolicy",
    "SmtpNotificationSink",
    "SqlJobStore",
    "SqlRepository",
    "TaskService",
    "UnknownJobTypeError",
    "UserService",
    "build_default_queues",
    "create_cache_backend",
]
