"""Delivery channels for ``notification`` workflow steps.

A channel turns a Notification into a DeliveryResult. Transport problems
are reported in the result, not raised; the step decides whether a failed
delivery fails the run.
"""

import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.message import EmailMessage
from enum import Enum
from typing import Any, Optional

import httpx

from core.utils import utc_now

logger = logging.getLogger(__name__)


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def is_urgent(self) -> bool:
        return self in (NotificationPriority.HIGH, NotificationPriority.CRITICAL)


class NotificationChannel(str, Enum):
    LOG = "log"
    EMAIL = "email"
    SLACK = "slack"
    WEBHOOK = "webhook"


@dataclass
class Notification:
    """A rendered message produced by a workflow run."""
    title: str
    message: str
    channel: NotificationChannel
    priority: NotificationPriority = NotificationPriority.NORMAL
    recipient: str = ""  # email address, Slack channel or webhook URL
    metadata: dict[str, Any] = field(default_factory=dict)
    organization_id: Optional[str] = None
    workflow_id: Optional[str] = None
    run_id: Optional[str] = None
    created_at: str = field(default_factory=lambda: utc_now().isoformat())

    def as_payload(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "priority": self.priority.value,
            "organization_id": self.organization_id,
            "workflow_id": self.workflow_id,
            "run_id": self.run_id,
            "metadata": self.metadata,
            "timestamp": self.created_at,
        }


@dataclass
class DeliveryResult:
    success: bool
    channel: NotificationChannel
    recipient: str
    message: str = ""
    error: Optional[str] = None
    delivered_at: Optional[str] = None


class BaseChannel(ABC):
    """One transport. Subclasses set ``channel_type`` and implement ``send``."""

    channel_type: NotificationChannel

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}

    @abstractmethod
    async def send(self, notification: Notification) -> DeliveryResult:
        ...

    def _delivered(self, recipient: str, message: str) -> DeliveryResult:
        return DeliveryResult(
            success=True,
            channel=self.channel_type,
            recipient=recipient,
            message=message,
            delivered_at=utc_now().isoformat(),
        )

    def _failed(self, notification: Notification, error: str) -> DeliveryResult:
        logger.error(f"{self.channel_type.value} delivery failed for run {notification.run_id}: {error}")
        return DeliveryResult(
            success=False,
            channel=self.channel_type,
            recipient=notification.recipient,
            error=error,
        )


class LogChannel(BaseChannel):
    """Writes to the application log. Always registered."""

    channel_type = NotificationChannel.LOG

    async def send(self, notification: Notification) -> DeliveryResult:
        level = logging.WARNING if notification.priority.is_urgent else logging.INFO
        logger.log(
            level,
            f"[{notification.workflow_id or 'workflow'}] {notification.title}: {notification.message}",
        )
        return self._delivered(notification.recipient or "log", "Logged")


class EmailChannel(BaseChannel):
    """Plain-text mail over SMTP.

    Config keys: smtp_host, smtp_port, smtp_user, smtp_password,
    from_address, use_tls.
    """

    channel_type = NotificationChannel.EMAIL

    async def send(self, notification: Notification) -> DeliveryResult:
        if not notification.recipient:
            return self._failed(notification, "No email recipient")

        mail = EmailMessage()
        mail["Subject"] = notification.title
        mail["From"] = self.config.get("from_address", "automation@localhost")
        mail["To"] = notification.recipient
        mail.set_content(notification.message)

        try:
            # smtplib blocks; keep it off the event loop
            await asyncio.get_running_loop().run_in_executor(None, self._deliver, mail)
        except (smtplib.SMTPException, OSError) as e:
            return self._failed(notification, str(e))
        return self._delivered(notification.recipient, "Email sent")

    def _deliver(self, mail: EmailMessage) -> None:
        host = self.config.get("smtp_host", "localhost")
        port = self.config.get("smtp_port", 587)
        with smtplib.SMTP(host, port) as server:
            if self.config.get("use_tls", True):
                server.starttls()
            user = self.config.get("smtp_user")
            if user and self.config.get("smtp_password"):
                server.login(user, self.config["smtp_password"])
            server.send_message(mail)


async def _post_json(url: str, payload: dict, headers: Optional[dict] = None, timeout: float = 15) -> httpx.Response:
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.post(url, json=payload, headers=headers)
        response.raise_for_status()
        return response


class SlackChannel(BaseChannel):
    """Posts to a Slack incoming webhook (config key ``webhook_url``).

    The recipient, when given, overrides the webhook's default channel.
    """

    channel_type = NotificationChannel.SLACK

    async def send(self, notification: Notification) -> DeliveryResult:
        webhook_url = self.config.get("webhook_url")
        if not webhook_url:
            return self._failed(notification, "No Slack webhook URL configured")

        prefix = ":warning: " if notification.priority.is_urgent else ""
        payload = {
            "text": f"{prefix}{notification.title}",
            "blocks": [{
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*{notification.title}*\n{notification.message}"},
            }],
        }
        if notification.recipient:
            payload["channel"] = notification.recipient

        try:
            await _post_json(webhook_url, payload, timeout=10)
        except httpx.HTTPError as e:
            return self._failed(notification, str(e))
        return self._delivered(notification.recipient or "default", "Slack message sent")


class WebhookChannel(BaseChannel):
    """POSTs the notification as JSON to the recipient URL.

    ``config["url"]`` is used when the step names no recipient, and
    ``config["headers"]`` are added to every request.
    """

    channel_type = NotificationChannel.WEBHOOK

    async def send(self, notification: Notification) -> DeliveryResult:
        url = notification.recipient or self.config.get("url")
        if not url:
            return self._failed(notification, "No webhook URL")

        headers = {"X-Automation-Event": "notification", **self.config.get("headers", {})}
        try:
            response = await _post_json(url, notification.as_payload(), headers=headers)
        except httpx.HTTPError as e:
            return self._failed(notification, str(e))
        return self._delivered(url, f"Webhook delivered (HTTP {response.status_code})")
