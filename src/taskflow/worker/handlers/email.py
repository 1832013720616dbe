"""Email job handlers (notification-email queue)."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from taskflow.worker.handlers.common import already_done, mark_done

if TYPE_CHECKING:
    from taskflow.worker.context import HandlerContext

logger = logging.getLogger(__name__)


class WelcomeEmailPayload(BaseModel):
    user_id: uuid.UUID
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    name: str = Field(min_length=1, max_length=255)


class NotificationEmailPayload(BaseModel):
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    subject: str = Field(min_length=1, max_length=255)
    content: str = Field(min_length=1)
    type: str = "notification"


async def send_welcome_email(
    ctx: HandlerContext, payload: WelcomeEmailPayload
) -> dict[str, Any] | None:
    """Send the account welcome email once per job."""
    if await already_done(ctx):
        logger.info("Welcome email already sent: job_id=%s", ctx.job.job_id)
        return {"email_sent": True, "duplicate": True}

    rendered = ctx.templates.welcome(payload.name)
    message_id = await ctx.sink.send_email(
        payload.email, rendered.subject, rendered.text_body, rendered.html_body
    )
    await mark_done(ctx)

    logger.info("Welcome email sent: user_id=%s, message_id=%s", payload.user_id, message_id)
    return {"email_sent": True, "message_id": message_id}


async def send_notification_email(
    ctx: HandlerContext, payload: NotificationEmailPayload
) -> dict[str, Any] | None:
    """Send a notification email once per job."""
    if await already_done(ctx):
        return {"email_sent": True, "duplicate": True}

    rendered = ctx.templates.notification(payload.subject, payload.content, payload.type)
    message_id = await ctx.sink.send_email(
        payload.email, rendered.subject, rendered.text_body, rendered.html_body
    )
    await mark_done(ctx)
    return {"email_sent": True, "message_id": message_id, "type": payload.type}
