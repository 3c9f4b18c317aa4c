"""Subscription registry and event store.

The registry owns subscription records (create, get, list, partial
update, delete); the event store persists accepted webhook payloads.
"""

from src.gateway.registry.event_store import EventNotFoundError, EventStore
from src.gateway.registry.registry import (
    UPDATABLE_FIELDS,
    SubscriptionNotFoundError,
    SubscriptionRegistry,
    SubscriptionValidationError,
    VersionConflictError,
)

__all__ = [
    "EventNotFoundError",
    "EventStore",
    "UPDATABLE_FIELDS",
    "SubscriptionNotFoundError",
    "SubscriptionRegistry",
    "SubscriptionValidationError",
    "VersionConflictError",
]
