"""Pytest configuration and shared gateway fixtures."""

from typing import List

import pytest

from src.gateway.delivery.channel import SessionDeliveryChannel
from src.gateway.notifications.emitter import NotificationEmitter
from src.gateway.notifications.models import Notification, NotificationType
from src.gateway.registry.event_store import EventStore
from src.gateway.registry.registry import SubscriptionRegistry
from src.gateway.storage.memory import InMemoryRepository
from src.gateway.webhook.handler import WebhookIngressHandler

LOCAL_BASE_URL = "http://127.0.0.1:7842"


class RecordingEmitter(NotificationEmitter):
    """Keeps every emitted notification for assertions."""

    def __init__(self) -> None:
        self.notifications: List[Notification] = []

    async def emit(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def of_type(self, notification_type: NotificationType) -> List[Notification]:
        return [n for n in self.notifications if n.type == notification_type]


@pytest.fixture
def recorder():
    return RecordingEmitter()


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def registry(repository, recorder):
    return SubscriptionRegistry(repository, LOCAL_BASE_URL, emitter=recorder)


@pytest.fixture
def event_store(repository):
    return EventStore(repository)


@pytest.fixture
def channel():
    return SessionDeliveryChannel(mailbox_capacity=5, max_sessions=4)


@pytest.fixture
def handler(registry, event_store, channel, recorder):
    return WebhookIngressHandler(
        registry=registry,
        event_store=event_store,
        channel=channel,
        emitter=recorder,
        filter_timeout=2.0,
    )
