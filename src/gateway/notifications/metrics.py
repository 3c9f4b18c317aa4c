"""Prometheus metrics for gateway observability.

Metrics Defined:
- gateway_webhook_requests_total: Counter of inbound webhooks by outcome
- gateway_events_delivered_total: Counter of events handed to a mailbox
- gateway_subscription_mutations_total: Counter of registry mutations
- gateway_tunnel_state: Gauge, 1 for the current tunnel state, else 0

The MetricsNotificationEmitter folds gateway notifications into these
metrics. They are exposed at the `/metrics` endpoint.

Source:
- src/gateway/notifications/models.py (Notification, NotificationType)
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

from src.gateway.notifications.emitter import NotificationEmitter
from src.gateway.notifications.models import Notification, NotificationType


logger = logging.getLogger(__name__)


# These match TunnelState values from tunnel/models.py
TUNNEL_STATES = ("stopped", "starting", "active", "failed")


class GatewayMetrics:
    """Container for all gateway Prometheus metrics.

    Supports custom registries so tests can create isolated instances.

    Attributes:
        registry: The Prometheus registry for these metrics.
        webhook_requests_total: Counter labelled by ingress outcome.
        events_delivered_total: Counter labelled by live/queued delivery.
        subscription_mutations_total: Counter labelled by action.
        tunnel_state: Gauge labelled by tunnel state.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.webhook_requests_total = Counter(
            "gateway_webhook_requests_total",
            "Inbound webhook requests by ingress outcome",
            labelnames=["outcome"],
            registry=self.registry,
        )

        self.events_delivered_total = Counter(
            "gateway_events_delivered_total",
            "Events handed to a session mailbox",
            labelnames=["mode"],
            registry=self.registry,
        )

        self.subscription_mutations_total = Counter(
            "gateway_subscription_mutations_total",
            "Subscription registry mutations",
            labelnames=["action"],
            registry=self.registry,
        )

        self.tunnel_state = Gauge(
            "gateway_tunnel_state",
            "Current tunnel supervisor state (1 for the current state)",
            labelnames=["state"],
            registry=self.registry,
        )

        self.set_tunnel_state("stopped")

    def record_webhook(self, outcome: str) -> None:
        self.webhook_requests_total.labels(outcome=outcome).inc()

    def record_delivery(self, live: bool) -> None:
        self.events_delivered_total.labels(
            mode="live" if live else "queued"
        ).inc()

    def record_mutation(self, action: str) -> None:
        self.subscription_mutations_total.labels(action=action).inc()

    def set_tunnel_state(self, state: str) -> None:
        """Mark one tunnel state as current and zero the others."""
        for candidate in TUNNEL_STATES:
            self.tunnel_state.labels(state=candidate).set(
                1 if candidate == state else 0
            )


_default_metrics: Optional[GatewayMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> GatewayMetrics:
    """Get or create the gateway metrics instance.

    Args:
        registry: Optional Prometheus registry. If None, returns the
                  global metrics instance for the default registry.
    """
    global _default_metrics

    if registry is not None:
        return GatewayMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = GatewayMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus metrics output for the /metrics endpoint."""
    target_registry = registry or REGISTRY
    return generate_latest(target_registry)


class MetricsNotificationEmitter(NotificationEmitter):
    """Notification emitter that updates Prometheus metrics.

    - WEBHOOK_PROCESSED: Increments webhook_requests_total by outcome
    - EVENT_DELIVERED: Increments events_delivered_total
    - SUBSCRIPTION_*: Increments subscription_mutations_total
    - TUNNEL_STATE_CHANGED: Moves the tunnel_state gauge
    """

    _MUTATION_ACTIONS = {
        NotificationType.SUBSCRIPTION_CREATED: "created",
        NotificationType.SUBSCRIPTION_UPDATED: "updated",
        NotificationType.SUBSCRIPTION_DELETED: "deleted",
    }

    def __init__(
        self,
        metrics: Optional[GatewayMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        if metrics is not None:
            self._metrics = metrics
        else:
            self._metrics = get_metrics(registry)

    @property
    def metrics(self) -> GatewayMetrics:
        return self._metrics

    async def emit(self, notification: Notification) -> None:
        try:
            if notification.type == NotificationType.WEBHOOK_PROCESSED:
                self._metrics.record_webhook(
                    notification.details.get("outcome", "unknown")
                )
            elif notification.type == NotificationType.EVENT_DELIVERED:
                self._metrics.record_delivery(
                    bool(notification.details.get("live"))
                )
            elif notification.type in self._MUTATION_ACTIONS:
                self._metrics.record_mutation(
                    self._MUTATION_ACTIONS[notification.type]
                )
            elif notification.type == NotificationType.TUNNEL_STATE_CHANGED:
                to_state = notification.details.get("to_state")
                if to_state:
                    self._metrics.set_tunnel_state(to_state)
        except Exception as e:
            logger.error(
                "Failed to update metrics for notification %s: %s",
                notification.type.value,
                str(e),
            )
