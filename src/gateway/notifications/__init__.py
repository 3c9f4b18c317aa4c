"""Control-plane notifications and metrics.

Notification Emitters:
- NotificationEmitter: Abstract base class for notification sinks
- LoggingNotificationEmitter: Structured log entries
- CompositeNotificationEmitter: Fans out to multiple sinks
- MetricsNotificationEmitter: Prometheus metrics
- NullNotificationEmitter: Discards notifications (for testing)

Metrics:
- GatewayMetrics: Container for all Prometheus metrics
- get_metrics / generate_metrics_output: /metrics endpoint helpers
"""

from src.gateway.notifications.emitter import (
    CompositeNotificationEmitter,
    LoggingNotificationEmitter,
    NotificationEmitter,
    NullNotificationEmitter,
)
from src.gateway.notifications.metrics import (
    GatewayMetrics,
    MetricsNotificationEmitter,
    generate_metrics_output,
    get_metrics,
)
from src.gateway.notifications.models import Notification, NotificationType

__all__ = [
    "Notification",
    "NotificationType",
    "NotificationEmitter",
    "LoggingNotificationEmitter",
    "CompositeNotificationEmitter",
    "MetricsNotificationEmitter",
    "NullNotificationEmitter",
    "GatewayMetrics",
    "get_metrics",
    "generate_metrics_output",
]
