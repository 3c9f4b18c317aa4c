"""Gateway persistence.

Subscriptions and webhook events are persisted to PostgreSQL with
optimistic locking on subscription updates. An in-memory repository
with the same interface is used when no database is configured.
"""

from src.gateway.storage.memory import InMemoryRepository
from src.gateway.storage.models import (
    DEFAULT_SERVICE,
    SignatureEncoding,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
    webhook_url_for,
)
from src.gateway.storage.repository import (
    DatabaseError,
    GatewayRepository,
    PostgresRepository,
)

__all__ = [
    # Models
    "DEFAULT_SERVICE",
    "SignatureEncoding",
    "Subscription",
    "SubscriptionStatus",
    "WebhookEvent",
    "webhook_url_for",
    # Repositories
    "DatabaseError",
    "GatewayRepository",
    "InMemoryRepository",
    "PostgresRepository",
]
