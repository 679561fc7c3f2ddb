"""Notification Manager — routes workflow notifications to their channel."""

import logging
from typing import Optional

from notifications.channels import (
    BaseChannel,
    DeliveryResult,
    EmailChannel,
    LogChannel,
    Notification,
    NotificationChannel,
    SlackChannel,
    WebhookChannel,
)

logger = logging.getLogger(__name__)

CONFIGURABLE_CHANNELS: dict[str, type[BaseChannel]] = {
    "email": EmailChannel,
    "slack": SlackChannel,
    "webhook": WebhookChannel,
}


class NotificationManager:
    """Holds one channel per NotificationChannel value.

    Log and webhook delivery work without configuration; email and Slack
    exist only once ``configure_channels`` has been given their settings.
    """

    def __init__(self):
        self._channels: dict[NotificationChannel, BaseChannel] = {}
        self.register_channel(LogChannel())
        self.register_channel(WebhookChannel())

    def register_channel(self, channel: BaseChannel) -> None:
        self._channels[channel.channel_type] = channel
        logger.debug(f"Notification channel registered: {channel.channel_type.value}")

    def configure_channels(self, config: dict) -> None:
        """Register channels from a ``{"email": {...}, "slack": {...}}`` mapping.

        Unknown keys are ignored. A configured channel replaces the
        default instance of the same type.
        """
        for name, channel_config in config.items():
            channel_cls = CONFIGURABLE_CHANNELS.get(name)
            if channel_cls is None:
                logger.warning(f"Ignoring unknown notification channel config: {name}")
                continue
            self.register_channel(channel_cls(channel_config))

    @property
    def available_channels(self) -> list[str]:
        return [channel.value for channel in self._channels]

    async def send(self, notification: Notification) -> DeliveryResult:
        channel = self._channels.get(notification.channel)
        if channel is None:
            return DeliveryResult(
                success=False,
                channel=notification.channel,
                recipient=notification.recipient,
                error=f"Channel not configured: {notification.channel.value}",
            )

        result = await channel.send(notification)
        if result.success:
            logger.info(
                f"Run {notification.run_id}: notification sent via "
                f"{notification.channel.value} to {result.recipient}"
            )
        return result


_manager: Optional[NotificationManager] = None


def get_notification_manager() -> NotificationManager:
    """Return the process-wide NotificationManager, creating it on first use."""
    global _manager
    if _manager is None:
        _manager = NotificationManager()
    return _manager
