"""In-process stand-ins used across the test suite."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from taskflow.services.notification_sink import NotificationDeliveryError, NotificationSink

if TYPE_CHECKING:
    from taskflow.worker.dispatcher import Dispatcher, JobOutcome


class FakeClock:
    """Settable clock for the job store."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 15, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


class RecordingNotificationSink(NotificationSink):
    """Sink that records deliveries instead of sending them.

    ``fail_emails`` makes the next N email sends raise.
    """

    def __init__(self) -> None:
        self.emails: list[dict[str, Any]] = []
        self.pushes: list[dict[str, Any]] = []
        self.fail_emails = 0
        self.closed = False

    async def send_email(
        self, to: str, subject: str, body: str, html_body: str | None = None
    ) -> str:
        if self.fail_emails > 0:
            self.fail_emails -= 1
            raise NotificationDeliveryError("SMTP error: connection refused")
        message_id = f"<{uuid.uuid4().hex}@test>"
        self.emails.append(
            {"to": to, "subject": subject, "body": body, "html_body": html_body, "id": message_id}
        )
        return message_id

    async def push_in_app(
        self,
        user_id: object,
        notification_type: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.pushes.append(
            {
                "user_id": str(user_id),
                "type": notification_type,
                "message": message,
                "metadata": metadata or {},
            }
        )

    async def close(self) -> None:
        self.closed = True


async def drain(dispatcher: Dispatcher, queue_name: str, limit: int = 50) -> list[JobOutcome]:
    """Run jobs of one queue until none is claimable."""
    outcomes: list[JobOutcome] = []
    for _ in range(limit):
        outcome = await dispatcher.process_next(queue_name)
        if outcome is None:
            break
        outcomes.append(outcome)
    return outcomes
