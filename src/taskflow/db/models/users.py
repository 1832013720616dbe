"""User accounts and per-user task statistics."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Boolean, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from taskflow.db.models.base import (
    Base,
    MediumString,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)


class User(Base):
    """A TaskFlow account."""

    __tablename__ = "users"

    user_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    first_name: Mapped[MediumString]
    last_name: Mapped[MediumString]
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_login_at: Mapped[OptionalTimestampTZ]

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class UserTaskStats(Base):
    """Rolled-up task counters for one user.

    Recomputed from the tasks table by the analytics queue and always
    overwritten, never incremented.
    """

    __tablename__ = "user_task_stats"

    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    assigned: Mapped[int] = mapped_column(default=0, nullable=False)
    completed: Mapped[int] = mapped_column(default=0, nullable=False)
    in_progress: Mapped[int] = mapped_column(default=0, nullable=False)
    overdue: Mapped[int] = mapped_column(default=0, nullable=False)
    computed_at: Mapped[OptionalTimestampTZ]
