"""Tasks and the records hanging off them (comments, attachments, views)."""

from __future__ import annotations

from sqlalchemy import BigInteger, Enum, Index, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from taskflow.db.models.base import (
    AttachmentStatus,
    Base,
    OptionalTimestampTZ,
    OptionalUUID,
    TaskPriority,
    TaskStatus,
    TimestampTZ,
    UUIDForeignKey,
    UUIDPrimaryKey,
)


class Task(Base):
    """A unit of work inside a project."""

    __tablename__ = "tasks"

    task_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    project_id: Mapped[UUIDForeignKey]
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus, name="task_status", create_constraint=True),
        default=TaskStatus.TODO,
        nullable=False,
    )
    priority: Mapped[TaskPriority] = mapped_column(
        Enum(TaskPriority, name="task_priority", create_constraint=True),
        default=TaskPriority.MEDIUM,
        nullable=False,
    )
    assigned_to: Mapped[OptionalUUID]
    created_by: Mapped[UUIDForeignKey]
    due_date: Mapped[OptionalTimestampTZ]
    # Set when the task moves to DONE, cleared when it leaves DONE
    completed_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        Index("ix_tasks_project_id", "project_id"),
        Index("ix_tasks_assigned_to", "assigned_to"),
    )


class Comment(Base):
    """A comment left on a task."""

    __tablename__ = "comments"

    comment_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    task_id: Mapped[UUIDForeignKey]
    user_id: Mapped[UUIDForeignKey]
    content: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (Index("ix_comments_task_id", "task_id"),)


class Attachment(Base):
    """A file uploaded to a task.

    Size, MIME type and checksum are filled in asynchronously by the
    file-processing queue.
    """

    __tablename__ = "attachments"

    attachment_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    task_id: Mapped[UUIDForeignKey]
    uploaded_by: Mapped[UUIDForeignKey]
    file_path: Mapped[str] = mapped_column(String(1000), nullable=False)
    file_type: Mapped[str] = mapped_column(String(100), nullable=False)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[AttachmentStatus] = mapped_column(
        Enum(AttachmentStatus, name="attachment_status", create_constraint=True),
        default=AttachmentStatus.UPLOADED,
        nullable=False,
    )
    metadata_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    processed_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (Index("ix_attachments_task_id", "task_id"),)


class TaskView(Base):
    """Last time a user viewed a task. One row per (task, user)."""

    __tablename__ = "task_views"

    view_id: Mapped[UUIDPrimaryKey]
    task_id: Mapped[UUIDForeignKey]
    user_id: Mapped[UUIDForeignKey]
    viewed_at: Mapped[TimestampTZ]

    __table_args__ = (UniqueConstraint("task_id", "user_id"),)
