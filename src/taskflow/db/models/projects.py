"""Projects, memberships and project statistics."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Enum, Float, Index, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from taskflow.db.models.base import (
    Base,
    MemberRole,
    OptionalTimestampTZ,
    ProjectStatus,
    TimestampTZ,
    UUIDForeignKey,
    UUIDPrimaryKey,
)


class Project(Base):
    """A project grouping tasks and members."""

    __tablename__ = "projects"

    project_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status: Mapped[ProjectStatus] = mapped_column(
        Enum(ProjectStatus, name="project_status", create_constraint=True),
        default=ProjectStatus.ACTIVE,
        nullable=False,
    )
    owner_id: Mapped[UUIDForeignKey]


class ProjectMember(Base):
    """Membership of a user in a project with a role."""

    __tablename__ = "project_members"

    membership_id: Mapped[UUIDPrimaryKey]
    project_id: Mapped[UUIDForeignKey]
    user_id: Mapped[UUIDForeignKey]
    role: Mapped[MemberRole] = mapped_column(
        Enum(MemberRole, name="member_role", create_constraint=True),
        default=MemberRole.MEMBER,
        nullable=False,
    )
    joined_at: Mapped[TimestampTZ]

    __table_args__ = (
        UniqueConstraint("project_id", "user_id"),
        Index("ix_project_members_user_id", "user_id"),
    )


class ProjectStats(Base):
    """Materialized statistics for one project.

    Written by the analytics handlers. A recompute replaces every column.
    """

    __tablename__ = "project_stats"

    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    total_tasks: Mapped[int] = mapped_column(default=0, nullable=False)
    completed_tasks: Mapped[int] = mapped_column(default=0, nullable=False)
    completion_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    member_count: Mapped[int] = mapped_column(default=0, nullable=False)
    status_breakdown: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    computed_at: Mapped[OptionalTimestampTZ]

    def as_dict(self) -> dict:
        """Serializable view used by the cache and the stats endpoint."""
        return {
            "tasks": {
                "total": self.total_tasks,
                "completed": self.completed_tasks,
                "completionRate": self.completion_rate,
            },
            "members": self.member_count,
            "statusBreakdown": dict(self.status_breakdown or {}),
        }
