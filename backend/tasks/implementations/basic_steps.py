"""Built-in steps with no external data access: log_event, wait, notification."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict

import structlog

from core.exceptions import ConfigurationError, IntegrationRequestError
from notifications.channels import Notification, NotificationChannel, NotificationPriority
from tasks.base_task import BaseStepHandler, StepResult, config_value
from workflow.context import ExecutionContext
from workflow.templating import render_template, resolve_parameters

logger = structlog.get_logger(__name__)


class LogEventHandler(BaseStepHandler):
    """Record the triggering event's metadata as the step output.

    Config:
        message: Optional ``{{...}}`` template added to the entry
    """

    step_type = "log_event"
    display_name = "Log Event"
    description = "Record trigger metadata without any external call"

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepResult:
        webhook_data = context.webhook_data or {}
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": webhook_data.get("event", "unknown"),
            "integration": webhook_data.get("integration", "unknown"),
            "event_id": webhook_data.get("event_id", webhook_data.get("eventId")),
            "event_data": webhook_data.get("data", {}),
            "context": {
                "organization_id": context.organization_id,
                "trigger_source": context.trigger_source,
                "workflow_id": context.workflow_id,
                "run_id": context.run_id,
            },
        }
        if config.get("message"):
            entry["message"] = render_template(config["message"], context.lookup())

        logger.info("Event logged", **entry["context"], event_type=entry["event_type"])
        return StepResult.ok(entry)


class WaitHandler(BaseStepHandler):
    """Sleep for ``duration_ms`` (default 1000), capped by WAIT_STEP_MAX_SECONDS."""

    step_type = "wait"
    display_name = "Wait"
    description = "Pause the run for a fixed duration"

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepResult:
        raw = config_value(config, "duration_ms", "duration", default=1000)
        try:
            duration_ms = float(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid wait duration: {raw!r}")
        if duration_ms < 0:
            raise ConfigurationError("Wait duration cannot be negative")

        cap_ms = self.settings.WAIT_STEP_MAX_SECONDS * 1000
        if duration_ms > cap_ms:
            logger.warning("Wait duration capped", requested_ms=duration_ms, cap_ms=cap_ms)
            duration_ms = cap_ms

        await asyncio.sleep(duration_ms / 1000)
        return StepResult.ok({"waited_ms": duration_ms})


class NotificationHandler(BaseStepHandler):
    """Render a message template and deliver it through a channel.

    Config:
        channel: log (default), webhook, email or slack (``type`` is accepted too)
        message / template: ``{{...}}`` template for the body
        title / subject: Optional title template
        recipient: Email address, Slack channel or webhook URL
        priority: low, normal, high or critical
    """

    step_type = "notification"
    display_name = "Send Notification"
    description = "Send a templated message via log, webhook, email or Slack"

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepResult:
        lookup = context.lookup()
        channel_name = config_value(config, "channel", "type", default="log")
        try:
            channel = NotificationChannel(channel_name)
        except ValueError:
            raise ConfigurationError(f"Unknown notification channel: {channel_name}")

        message = render_template(config_value(config, "template", "message", default=""), lookup)
        title = render_template(
            config_value(config, "title", "subject", default=context.workflow_name or "Workflow notification"),
            lookup,
        )
        recipient = render_template(config_value(config, "recipient", "to", default=""), lookup)

        try:
            priority = NotificationPriority(config.get("priority", "normal"))
        except ValueError:
            priority = NotificationPriority.NORMAL

        notification = Notification(
            title=str(title),
            message=str(message),
            channel=channel,
            priority=priority,
            recipient=str(recipient or ""),
            metadata=resolve_parameters(config.get("metadata") or {}, lookup),
            organization_id=context.organization_id,
            workflow_id=context.workflow_id,
            run_id=context.run_id,
        )
        delivery = await self.services.notifications.send(notification)
        if not delivery.success:
            raise IntegrationRequestError(f"Notification via {channel.value} failed: {delivery.error}")

        return StepResult.ok({
            "sent": True,
            "message": notification.message,
            "channel": channel.value,
            "recipient": delivery.recipient,
        })


BASIC_STEP_TYPES = {
    "log_event": LogEventHandler,
    "wait": WaitHandler,
    "notification": NotificationHandler,
}
