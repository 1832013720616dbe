"""SQLAlchemy ORM models for TaskFlow.

This package contains all database models organized by domain:
- base: Common metadata, column types and enums
- users: Accounts and per-user task statistics
- projects: Projects, memberships and project statistics
- tasks: Tasks, comments, attachments and task views
- notifications: In-app notifications
- jobs: PostgreSQL-backed job queue
"""

from taskflow.db.models.base import Base, metadata
from taskflow.db.models.jobs import Job, JobQueueRow
from taskflow.db.models.notifications import Notification
from taskflow.db.models.projects import Project, ProjectMember, ProjectStats
from taskflow.db.models.tasks import Attachment, Comment, Task, TaskView
from taskflow.db.models.users import User, UserTaskStats

__all__ = [
    "Attachment",
    "Base",
    "Comment",
    "Job",
    "JobQueueRow",
    "Notification",
    "Project",
    "ProjectMember",
    "ProjectStats",
    "Task",
    "TaskView",
    "User",
    "UserTaskStats",
    "metadata",
]
