"""Outbound notification delivery.

The sink is the only way job handlers reach users outside the
application:

    send_email(to, subject, body)                     -> message id
    push_in_app(user_id, type, message, metadata)     -> None

Both raise NotificationDeliveryError on failure so the job goes through
the retry path. SmtpNotificationSink sends mail through smtplib in a
worker thread and POSTs in-app pushes to a webhook with httpx.

Email bodies are rendered from Jinja2 templates in
``taskflow/templates/email``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import smtplib
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING, Any

import httpx
from jinja2 import Environment, PackageLoader, select_autoescape

if TYPE_CHECKING:
    from taskflow.core.config import PushSettings, SMTPSettings

logger = logging.getLogger(__name__)


class NotificationDeliveryError(Exception):
    """Raised when an email or push could not be delivered."""

    pass


@dataclass(frozen=True, slots=True)
class RenderedEmail:
    subject: str
    text_body: str
    html_body: str


class EmailTemplates:
    """Renders the transactional email templates."""

    def __init__(self, app_name: str, base_url: str) -> None:
        self.app_name = app_name
        self.base_url = base_url.rstrip("/")
        self._env = Environment(
            loader=PackageLoader("taskflow", "templates/email"),
            autoescape=select_autoescape(["html", "xml"]),
        )

    def render(self, name: str, subject: str, **context: Any) -> RenderedEmail:
        context = {"app_name": self.app_name, "base_url": self.base_url, **context}
        return RenderedEmail(
            subject=subject,
            text_body=self._env.get_template(f"{name}.txt").render(**context),
            html_body=self._env.get_template(f"{name}.html").render(**context),
        )

    def welcome(self, user_name: str) -> RenderedEmail:
        return self.render(
            "welcome",
            f"Welcome to {self.app_name}, {user_name}!",
            user_name=user_name,
        )

    def notification(self, subject: str, content: str, notification_type: str) -> RenderedEmail:
        return self.render(
            "notification",
            subject,
            content=content,
            notification_type=notification_type,
        )


class NotificationSink(ABC):
    """Delivery channel for emails and in-app pushes."""

    @abstractmethod
    async def send_email(
        self, to: str, subject: str, body: str, html_body: str | None = None
    ) -> str:
        """Send one email. Returns the message id."""

    @abstractmethod
    async def push_in_app(
        self,
        user_id: object,
        notification_type: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...

    async def close(self) -> None:  # noqa: B027 - optional hook
        """Release connections."""


class SmtpNotificationSink(NotificationSink):
    """SMTP email plus webhook push delivery.

    Without a push webhook URL, pushes are logged and considered
    delivered (development mode).
    """

    def __init__(self, smtp_settings: SMTPSettings, push_settings: PushSettings) -> None:
        self.smtp_settings = smtp_settings
        self.push_settings = push_settings
        self._http_client: httpx.AsyncClient | None = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.push_settings.timeout)
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def send_email(
        self, to: str, subject: str, body: str, html_body: str | None = None
    ) -> str:
        # smtplib blocks, keep it off the event loop
        message_id = await asyncio.to_thread(self._send_email_sync, to, subject, body, html_body)
        logger.info("Email sent: message_id=%s, subject=%s", message_id, subject)
        return message_id

    def _send_email_sync(self, to: str, subject: str, body: str, html_body: str | None) -> str:
        settings = self.smtp_settings

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{settings.from_name} <{settings.from_address}>"
        msg["To"] = to
        domain = settings.from_address.rpartition("@")[2] or "localhost"
        message_id = f"<{secrets.token_hex(16)}@{domain}>"
        msg["Message-ID"] = message_id

        msg.attach(MIMEText(body, "plain", "utf-8"))
        if html_body:
            msg.attach(MIMEText(html_body, "html", "utf-8"))

        try:
            if settings.use_ssl:
                server = smtplib.SMTP_SSL(
                    settings.host,
                    settings.port,
                    timeout=settings.timeout,
                    context=ssl.create_default_context(),
                )
            else:
                server = smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout)
                if settings.use_tls:
                    server.starttls(context=ssl.create_default_context())

            with server:
                if settings.username and settings.password:
                    server.login(settings.username, settings.password.get_secret_value())
                server.sendmail(settings.from_address, [to], msg.as_string())

        except smtplib.SMTPException as e:
            raise NotificationDeliveryError(f"SMTP error: {e}") from e
        except OSError as e:
            raise NotificationDeliveryError(f"Connection error: {e}") from e

        return message_id

    async def push_in_app(
        self,
        user_id: object,
        notification_type: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        event = {
            "user_id": str(user_id),
            "type": notification_type,
            "message": message,
            "metadata": metadata or {},
        }

        if not self.push_settings.webhook_url:
            logger.info("Push (no webhook configured): user_id=%s, type=%s", user_id, notification_type)
            return

        client = await self._get_http_client()
        try:
            response = await client.post(
                self.push_settings.webhook_url,
                content=json.dumps(event, default=str),
                headers={"Content-Type": "application/json"},
            )
        except httpx.RequestError as e:
            raise NotificationDeliveryError(f"Push request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            msg = f"Push webhook returned status {response.status_code}"
            raise NotificationDeliveryError(msg)

        logger.info(
            "Push delivered: user_id=%s, type=%s, status=%d",
            user_id,
            notification_type,
            response.status_code,
        )
