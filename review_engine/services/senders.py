from __future__ import annotations

import logging

import httpx

from review_engine.config import Settings
from review_engine.errors import DeliveryError
from review_engine.models.notification import DeliveryChannel, NotificationMessage
from review_engine.ports import NotificationSender

logger = logging.getLogger(__name__)


class LogSender:
    """Writes notifications to the log. Used when no webhook is configured."""

    async def send(self, message: NotificationMessage, channel: DeliveryChannel) -> None:
        logger.info(
            "[%s] %s -> %s: %s",
            channel.value,
            message.type.value,
            message.recipient_id,
            message.title,
        )


class WebhookSender:
    """POSTs each notification as JSON to a single endpoint; the receiver fans out per channel."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def send(self, message: NotificationMessage, channel: DeliveryChannel) -> None:
        payload = {"channel": channel.value, "message": message.model_dump(mode="json")}
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                res = await client.post(self.url, json=payload, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise DeliveryError(f"{channel.value} delivery of {message.id} failed: {e}") from e
        if res.is_error:
            raise DeliveryError(
                f"{channel.value} delivery of {message.id} rejected with HTTP {res.status_code}"
            )


def sender_from_settings(config: Settings) -> NotificationSender:
    if config.webhook_url:
        return WebhookSender(config.webhook_url, timeout=config.webhook_timeout)
    return LogSender()
