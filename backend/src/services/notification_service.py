"""
Prediction Notifications
Delivers one PredictionEvent per completed cycle to an outbound sink.
"""
import logging
from typing import List, Optional, Protocol

import httpx

from models.schemas import PredictionEvent

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def publish(self, event: PredictionEvent) -> None:
        ...


class LoggingNotificationSink:
    """Writes events to the log and keeps the last few for inspection."""

    def __init__(self, history_size: int = 50):
        self.history_size = history_size
        self.events: List[PredictionEvent] = []

    async def publish(self, event: PredictionEvent) -> None:
        self.events.append(event)
        del self.events[:-self.history_size]
        partial = " (partial)" if event.isPartial else ""
        logger.info(
            f"Prediction #{event.sequenceCount}{partial}: "
            f"{event.aggregateValueMgdl:.0f} mg/dL from {event.modelSuccessCount} models"
        )


class WebhookNotificationSink:
    """POSTs each event as JSON to a webhook URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def publish(self, event: PredictionEvent) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.url, json=event.model_dump(mode='json'))
            response.raise_for_status()
        logger.debug(f"Webhook delivered prediction #{event.sequenceCount}")


async def deliver(sink: NotificationSink, event: PredictionEvent) -> bool:
    """
    Publish without letting sink errors fail the cycle.

    Returns:
        True if the sink accepted the event
    """
    try:
        await sink.publish(event)
        return True
    except Exception as e:
        logger.error(f"Notification delivery failed for prediction #{event.sequenceCount}: {e}")
        return False


def create_notification_sink(webhook_url: str = "") -> NotificationSink:
    if webhook_url:
        return WebhookNotificationSink(webhook_url)
    return LoggingNotificationSink()
