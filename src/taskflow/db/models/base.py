"""Base model definitions, mixins, and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Common column type annotations for UUIDs and timestamps
- Enum types used across multiple models
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, MetaData, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# UUID primary key. Ids are normally assigned in Python so that callers
# (job enqueue, notification upserts) know them before the flush.
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    ),
]

UUIDForeignKey = Annotated[uuid.UUID, mapped_column(UUID(as_uuid=True))]

OptionalUUID = Annotated[uuid.UUID | None, mapped_column(UUID(as_uuid=True), nullable=True)]

TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(255))]
LongString = Annotated[str, mapped_column(String(1000))]


class Base(DeclarativeBase):
    """Declarative base for all TaskFlow models."""

    metadata = metadata
    registry = type_registry


# =============================================================================
# Common Enums
# =============================================================================


class JobStatus(enum.Enum):
    """Lifecycle state of a background job.

    Values:
        WAITING: Job is queued (possibly delayed) and can be claimed
        ACTIVE: Job is claimed by a worker and executing
        COMPLETED: Handler returned normally
        FAILED: Handler raised; about to be retried or dead-lettered
        DEAD: Attempts exhausted, retained for operator inspection
    """

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


class ProjectStatus(enum.Enum):
    """Project lifecycle status."""

    ACTIVE = "active"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class MemberRole(enum.Enum):
    """Role of a user inside a project.

    Values:
        OWNER: Created the project, full control
        ADMIN: Can manage members and settings
        MEMBER: Can create and edit tasks
        VIEWER: Read-only access
    """

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


class TaskStatus(enum.Enum):
    """Task workflow status."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


class TaskPriority(enum.Enum):
    """Task priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class AttachmentStatus(enum.Enum):
    """Post-processing status of an uploaded file."""

    UPLOADED = "uploaded"
    PROCESSED = "processed"
