"""Gateway service wiring and control-plane operations.

GatewayService owns every gateway component (registry, event store,
delivery channel, observer hub, tunnel supervisor, ingress handler) and
exposes one method per control-plane operation. The HTTP layer in
main.py, or any other RPC surface, maps requests onto these methods.

Source:
- src/gateway/registry/registry.py (SubscriptionRegistry)
- src/gateway/registry/event_store.py (EventStore)
- src/gateway/tunnel/supervisor.py (TunnelSupervisor)
- src/gateway/delivery/channel.py (SessionDeliveryChannel)
- src/gateway/delivery/observers.py (ObserverHub)
- src/gateway/webhook/handler.py (WebhookIngressHandler)
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from src.gateway.config import GatewaySettings
from src.gateway.delivery.channel import SessionDeliveryChannel
from src.gateway.delivery.observers import ObserverHub
from src.gateway.filters.executor import FilterExecutor
from src.gateway.notifications.emitter import (
    CompositeNotificationEmitter,
    LoggingNotificationEmitter,
)
from src.gateway.notifications.metrics import (
    GatewayMetrics,
    MetricsNotificationEmitter,
    get_metrics,
)
from src.gateway.registry.event_store import EventStore
from src.gateway.registry.registry import SubscriptionRegistry
from src.gateway.storage.memory import InMemoryRepository
from src.gateway.storage.models import Subscription, WebhookEvent, webhook_url_for
from src.gateway.storage.repository import GatewayRepository, PostgresRepository
from src.gateway.tunnel.models import TunnelMode, TunnelStatus
from src.gateway.tunnel.supervisor import TunnelSupervisor
from src.gateway.webhook.handler import WebhookIngressHandler

logger = logging.getLogger(__name__)


class GatewayService:
    """Container for the gateway components and its control-plane API.

    Attributes:
        settings: Validated gateway settings.
        repository: Persistence backend.
        emitter: Composite notification emitter (log, metrics, observers).
        observers: Control-plane observer fan-out.
        registry: Subscription registry.
        event_store: Webhook event store.
        channel: Session mailboxes.
        supervisor: cloudflared tunnel supervisor.
        handler: Webhook ingress pipeline.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        repository: GatewayRepository,
        metrics: Optional[GatewayMetrics] = None,
    ):
        self.settings = settings
        self.repository = repository
        self.metrics = metrics or get_metrics()

        self.observers = ObserverHub(queue_size=settings.observer_queue_size)
        self.emitter = CompositeNotificationEmitter(
            [
                LoggingNotificationEmitter(),
                MetricsNotificationEmitter(metrics=self.metrics),
                self.observers,
            ]
        )

        self.registry = SubscriptionRegistry(
            repository=repository,
            local_base_url=settings.local_base_url,
            emitter=self.emitter,
        )
        self.event_store = EventStore(repository)
        self.channel = SessionDeliveryChannel(
            mailbox_capacity=settings.mailbox_capacity,
            max_sessions=settings.max_sessions,
        )
        self.supervisor = TunnelSupervisor(
            cloudflared_path=settings.cloudflared_path,
            local_base_url=settings.local_base_url,
            config_path=settings.tunnel_config_path,
            tunnel_name=settings.tunnel_name,
            ready_timeout=settings.tunnel_ready_timeout_seconds,
            stop_timeout=settings.tunnel_stop_timeout_seconds,
            emitter=self.emitter,
        )
        self.handler = WebhookIngressHandler(
            registry=self.registry,
            event_store=self.event_store,
            channel=self.channel,
            filters=FilterExecutor(),
            emitter=self.emitter,
            filter_timeout=settings.filter_timeout_seconds,
        )

    async def start(self) -> None:
        """Connect persistence and optionally start the tunnel."""
        await self.repository.connect()
        if self.settings.tunnel_autostart:
            url = await self.supervisor.start(TunnelMode.PERSISTENT)
            logger.info("Tunnel autostart finished", extra={"public_url": url})

    async def close(self) -> None:
        """Stop the tunnel, detach consumers and close persistence."""
        await self.supervisor.stop()
        await self.channel.close()
        await self.emitter.close()
        await self.repository.disconnect()

    async def health_check(self) -> bool:
        return await self.repository.health_check()

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------
    async def create_subscription(
        self, session_id: Optional[str], **fields: Any
    ) -> Subscription:
        return await self.registry.create(session_id, **fields)

    async def list_subscriptions(
        self, session_id: Optional[str] = None
    ) -> List[Subscription]:
        return await self.registry.list(session_id)

    async def get_subscription(self, subscription_id: str) -> Subscription:
        return await self.registry.get(subscription_id)

    async def update_subscription(
        self, subscription_id: str, changes: Mapping[str, Any]
    ) -> Subscription:
        return await self.registry.update(subscription_id, changes)

    async def delete_subscription(self, subscription_id: str) -> None:
        await self.registry.delete(subscription_id)

    async def public_webhook_url(self, subscription_id: str) -> Dict[str, Optional[str]]:
        """Webhook URLs for a subscription.

        The public URL is set only while the tunnel is active; "url" is
        the address a provider should be given right now.

        Raises:
            SubscriptionNotFoundError: If the id is unknown.
        """
        subscription = await self.registry.get(subscription_id)
        public_base = self.supervisor.public_url if self.supervisor.is_active else None
        public_url = (
            webhook_url_for(public_base, subscription.id) if public_base else None
        )
        return {
            "subscription_id": subscription.id,
            "local_url": subscription.webhook_url,
            "public_url": public_url,
            "url": public_url or subscription.webhook_url,
        }

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------
    async def event_payload(self, event_id: str) -> WebhookEvent:
        """Full stored event, including the raw payload.

        Raises:
            EventNotFoundError: If the id is unknown.
        """
        return await self.event_store.get(event_id)

    # -------------------------------------------------------------------------
    # Tunnel
    # -------------------------------------------------------------------------
    async def start_tunnel(self) -> TunnelStatus:
        await self.supervisor.start(TunnelMode.PERSISTENT)
        return self.supervisor.status()

    async def start_quick_tunnel(self) -> TunnelStatus:
        await self.supervisor.start_quick()
        return self.supervisor.status()

    async def stop_tunnel(self) -> TunnelStatus:
        await self.supervisor.stop()
        return self.supervisor.status()

    def tunnel_status(self) -> TunnelStatus:
        return self.supervisor.status()


def create_repository(settings: GatewaySettings) -> GatewayRepository:
    """Create the persistence backend for the configured database.

    Returns:
        PostgresRepository when database_url is set, otherwise an
        InMemoryRepository.
    """
    if settings.database_url:
        return PostgresRepository(settings.database_url)

    logger.warning(
        "GATEWAY_DATABASE_URL not set, using in-memory persistence; "
        "subscriptions and events will not survive a restart"
    )
    return InMemoryRepository()


def build_gateway(
    settings: GatewaySettings,
    repository: Optional[GatewayRepository] = None,
    metrics: Optional[GatewayMetrics] = None,
) -> GatewayService:
    """Wire all gateway dependencies into a GatewayService.

    Args:
        settings: Validated gateway settings.
        repository: Persistence backend; derived from settings if None.
        metrics: Metrics container; the process-wide one if None.

    Returns:
        Fully wired GatewayService (not yet started).
    """
    return GatewayService(
        settings=settings,
        repository=repository or create_repository(settings),
        metrics=metrics,
    )
