"""In-memory gateway repository for local development and tests.

Satisfies the GatewayRepository protocol without a database. State does
not survive a restart; main.py logs a warning when it falls back to this
repository.
"""

from typing import Dict, List, Optional

from src.gateway.storage.models import Subscription, WebhookEvent


class InMemoryRepository:
    """Dictionary-backed implementation of GatewayRepository.

    Records are copied on the way in and out so callers can never mutate
    stored state without going through the repository.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, Subscription] = {}
        self._events: Dict[str, WebhookEvent] = {}

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True

    async def save_subscription(self, subscription: Subscription) -> None:
        if subscription.id in self._subscriptions:
            raise ValueError(f"Subscription already exists: {subscription.id}")
        self._subscriptions[subscription.id] = subscription.model_copy()

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        subscription = self._subscriptions.get(subscription_id)
        return subscription.model_copy() if subscription is not None else None

    async def list_subscriptions(
        self, session_id: Optional[str] = None
    ) -> List[Subscription]:
        # dicts keep insertion order, which is creation order here
        return [
            subscription.model_copy()
            for subscription in self._subscriptions.values()
            if session_id is None or subscription.session_id == session_id
        ]

    async def update_subscription_with_version(
        self, subscription: Subscription
    ) -> bool:
        existing = self._subscriptions.get(subscription.id)
        if existing is None:
            return False
        if existing.version != subscription.version - 1:
            return False
        self._subscriptions[subscription.id] = subscription.model_copy()
        return True

    async def delete_subscription(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    async def save_event(self, event: WebhookEvent) -> None:
        if event.id in self._events:
            raise ValueError(f"Webhook event already exists: {event.id}")
        self._events[event.id] = event.model_copy()

    async def get_event(self, event_id: str) -> Optional[WebhookEvent]:
        event = self._events.get(event_id)
        return event.model_copy() if event is not None else None

    async def mark_event_delivered(self, event_id: str) -> bool:
        event = self._events.get(event_id)
        if event is None:
            return False
        self._events[event_id] = event.model_copy(update={"delivered": True})
        return True

    def events(self) -> List[WebhookEvent]:
        """All stored events in insertion order."""
        return [event.model_copy() for event in self._events.values()]

    def clear(self) -> None:
        """Clear all subscriptions and events."""
        self._subscriptions.clear()
        self._events.clear()
