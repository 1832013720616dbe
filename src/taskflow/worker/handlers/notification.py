"""Push and in-app notification handlers (in-app-notification queue).

In-app notifications are stored with ids derived from the job id and
the recipient, so a re-executed job overwrites the same rows instead of
adding duplicates to a user's inbox.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field

from taskflow.db.models.notifications import Notification
from taskflow.db.models.tasks import Task
from taskflow.worker.handlers.common import already_done, mark_done, stable_id

if TYPE_CHECKING:
    from taskflow.worker.context import HandlerContext

logger = logging.getLogger(__name__)

TaskEvent = Literal["task_created", "task_updated", "task_assigned", "task_status_changed"]


class PushNotificationPayload(BaseModel):
    user_id: uuid.UUID
    title: str = Field(min_length=1, max_length=255)
    body: str
    data: dict[str, Any] = Field(default_factory=dict)


class InAppNotificationPayload(BaseModel):
    user_id: uuid.UUID
    type: str = Field(min_length=1, max_length=100)
    message: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TaskNotificationPayload(BaseModel):
    task_id: uuid.UUID
    event: TaskEvent
    actor_id: uuid.UUID
    assigned_to: uuid.UUID | None = None
    new_status: str | None = None


async def send_push_notification(
    ctx: HandlerContext, payload: PushNotificationPayload
) -> dict[str, Any] | None:
    if await already_done(ctx):
        return {"notification_sent": True, "duplicate": True}

    await ctx.sink.push_in_app(
        payload.user_id, "push", payload.title, {"body": payload.body, "data": payload.data}
    )
    await mark_done(ctx)
    return {"notification_sent": True}


async def send_in_app_notification(
    ctx: HandlerContext, payload: InAppNotificationPayload
) -> dict[str, Any] | None:
    """Store a notification in the user's inbox and push it."""
    notification = await _deliver(
        ctx, payload.user_id, payload.type, payload.message, payload.metadata
    )
    return {"notification_stored": True, "notification_id": str(notification.notification_id)}


async def send_task_notification(
    ctx: HandlerContext, payload: TaskNotificationPayload
) -> dict[str, Any] | None:
    """Notify the users concerned by a task event, never the actor."""
    task = await ctx.repository.get(Task, payload.task_id)
    if task is None:
        logger.info("Task gone, skipping notification: task_id=%s", payload.task_id)
        return {"skipped": True, "reason": "task_not_found"}

    assignee = payload.assigned_to or task.assigned_to
    if payload.event == "task_created":
        recipients = [assignee]
        message = f"You have been assigned to the new task '{task.title}'"
    elif payload.event == "task_assigned":
        recipients = [assignee]
        message = f"You have been assigned to task '{task.title}'"
    elif payload.event == "task_status_changed":
        recipients = [assignee, task.created_by]
        message = f"Task '{task.title}' moved to {payload.new_status or task.status.value}"
    else:
        recipients = [assignee]
        message = f"Task '{task.title}' was updated"

    notified: list[str] = []
    for user_id in dict.fromkeys(recipients):
        if user_id is None or user_id == payload.actor_id:
            continue
        await _deliver(
            ctx,
            user_id,
            payload.event,
            message,
            {"task_id": str(task.task_id), "project_id": str(task.project_id)},
        )
        notified.append(str(user_id))

    return {"notification_sent": bool(notified), "type": payload.event, "notified": notified}


async def _deliver(
    ctx: HandlerContext,
    user_id: uuid.UUID,
    notification_type: str,
    message: str,
    metadata: dict[str, Any],
) -> Notification:
    notification_id = stable_id(ctx.job.job_id, user_id)
    existing = await ctx.repository.get(Notification, notification_id)
    notification = Notification(
        notification_id=notification_id,
        created_at=ctx.job.created_at or datetime.now(UTC),
        user_id=user_id,
        type=notification_type,
        message=message,
        metadata_json=metadata,
        # A re-run must not mark a read notification unread again
        read_at=existing.read_at if existing else None,
    )
    notification = await ctx.repository.save(notification)
    await ctx.repository.commit()

    scope = f"push:{user_id}"
    if not await already_done(ctx, scope):
        await ctx.sink.push_in_app(user_id, notification_type, message, metadata)
        await mark_done(ctx, scope)
    return notification
