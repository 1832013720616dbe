"""In-app notifications."""

from __future__ import annotations

from sqlalchemy import Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from taskflow.db.models.base import (
    Base,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDForeignKey,
    UUIDPrimaryKey,
)


class Notification(Base):
    """A notification shown in a user's inbox.

    The primary key is derived from the job that created it, so running
    the same job twice upserts the same row instead of adding a duplicate.
    """

    __tablename__ = "notifications"

    notification_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    user_id: Mapped[UUIDForeignKey]
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    read_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (Index("ix_notifications_user_id", "user_id"),)
