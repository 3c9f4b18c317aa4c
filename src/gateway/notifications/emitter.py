"""Notification emitter implementations.

This module provides the notification infrastructure for the gateway.
It defines an abstract NotificationEmitter interface and concrete
implementations for different sinks:

- LoggingNotificationEmitter: Emits notifications as structured log entries
- CompositeNotificationEmitter: Emits to multiple sinks simultaneously
- NullNotificationEmitter: Discards notifications

The observer fan-out (delivery/observers.py) and the Prometheus sink
(notifications/metrics.py) implement the same interface, so components
emit once and the composite routes to every sink.

Source:
- src/gateway/notifications/models.py (Notification, NotificationType)
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from src.gateway.notifications.models import Notification, NotificationType


logger = logging.getLogger(__name__)


class NotificationEmitter(ABC):
    """Abstract base class for notification emitters.

    Implementations should be:
    - Async-safe: emit() is called from async contexts
    - Non-blocking: emit() must not stall webhook ingestion
    - Fault-tolerant: emit() failures must not crash the caller
    """

    @abstractmethod
    async def emit(self, notification: Notification) -> None:
        """Emit a notification.

        Args:
            notification: The notification to emit.
        """
        pass

    async def close(self) -> None:
        """Close the emitter and release resources."""
        pass


class LoggingNotificationEmitter(NotificationEmitter):
    """Emitter that writes notifications as structured log entries.

    Webhook outcomes are logged at DEBUG because every inbound request
    produces one; everything else is logged at INFO.

    Example:
        >>> emitter = LoggingNotificationEmitter()
        >>> await emitter.emit(Notification(
        ...     type=NotificationType.SUBSCRIPTION_CREATED,
        ...     subject_id="3f2a...",
        ...     details={"session_id": "sess-1"},
        ... ))
        # Logs: INFO - Gateway notification: subscription_created for 3f2a...
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = (
            logging.getLogger(logger_name)
            if logger_name
            else logger
        )
        self._log_level_map = {
            NotificationType.WEBHOOK_PROCESSED: logging.DEBUG,
        }

    async def emit(self, notification: Notification) -> None:
        log_level = self._log_level_map.get(notification.type, logging.INFO)
        self._logger.log(
            log_level,
            "Gateway notification: %s for %s",
            notification.type.value,
            notification.subject_id,
            extra=notification.to_log_dict(),
        )


class CompositeNotificationEmitter(NotificationEmitter):
    """Emitter that delegates to multiple child emitters.

    Each child emitter is called independently. Failures in one emitter
    are logged and do not affect the others.

    Example:
        >>> composite = CompositeNotificationEmitter(
        ...     [LoggingNotificationEmitter(), observer_hub]
        ... )
        >>> await composite.emit(notification)  # Emits to both sinks
    """

    def __init__(self, emitters: Optional[List[NotificationEmitter]] = None):
        self._emitters: List[NotificationEmitter] = emitters or []

    def add_emitter(self, emitter: NotificationEmitter) -> None:
        self._emitters.append(emitter)

    @property
    def emitters(self) -> List[NotificationEmitter]:
        """Get the list of child emitters (copy)."""
        return list(self._emitters)

    async def emit(self, notification: Notification) -> None:
        for emitter in self._emitters:
            try:
                await emitter.emit(notification)
            except Exception as e:
                logger.error(
                    "Failed to emit notification to %s: %s",
                    type(emitter).__name__,
                    str(e),
                    extra={
                        "emitter_type": type(emitter).__name__,
                        "notification_type": notification.type.value,
                        "subject_id": notification.subject_id,
                    },
                )

    async def close(self) -> None:
        for emitter in self._emitters:
            try:
                await emitter.close()
            except Exception as e:
                logger.error(
                    "Failed to close emitter %s: %s",
                    type(emitter).__name__,
                    str(e),
                )


class NullNotificationEmitter(NotificationEmitter):
    """Emitter that discards all notifications."""

    async def emit(self, notification: Notification) -> None:
        pass
