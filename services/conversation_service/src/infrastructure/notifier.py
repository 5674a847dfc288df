"""
Haven Conversation Service - Notifiers.
Delivery side of notification events. Publishing never fails the caller.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
import structlog

from ..events import NotificationEvent, NotificationType

logger = structlog.get_logger(__name__)


class Notifier(ABC):
    """Sink for notification events."""

    @abstractmethod
    async def publish(self, event: NotificationEvent) -> None:
        """Publish one event."""

    async def safe_publish(self, event: NotificationEvent) -> None:
        """Publish, logging instead of raising on delivery failure."""
        try:
            await self.publish(event)
        except Exception as e:
            logger.warning("notification_failed", event_type=event.event_type.value, error=str(e))


class LoggingNotifier(Notifier):
    """Writes events to the structured log; operator alerts at error level."""

    async def publish(self, event: NotificationEvent) -> None:
        log = logger.error if event.event_type == NotificationType.OPERATOR_ALERT else logger.info
        log("notification_published", **event.to_dict())


class RecordingNotifier(Notifier):
    """Keeps events in memory, in publish order."""

    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []

    async def publish(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: NotificationType) -> list[NotificationEvent]:
        return [e for e in self.events if e.event_type == event_type]
