"""Gateway persistence: repository protocol and PostgreSQL implementation.

This module defines the GatewayRepository protocol used by the registry
and event store, and implements it using asyncpg for async PostgreSQL
access. It provides:
- Connection pooling for production use
- Schema bootstrap on connect (CREATE TABLE IF NOT EXISTS)
- Optimistic locking via the subscription version field

Events are deliberately not linked to subscriptions by a foreign key:
one-shot subscriptions are deleted right after delivery while their
events must remain retrievable.

Source:
- src/gateway/storage/models.py (Subscription, WebhookEvent)
"""

import logging
from contextlib import asynccontextmanager
from datetime import timezone
from typing import Any, AsyncIterator, List, Optional, Protocol, runtime_checkable

import asyncpg

from src.gateway.storage.models import (
    SignatureEncoding,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
)


logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS subscriptions (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    webhook_url TEXT NOT NULL,
    secret_token TEXT,
    hmac_header TEXT,
    signature_encoding TEXT NOT NULL DEFAULT 'hex',
    name TEXT,
    service TEXT NOT NULL DEFAULT 'custom',
    prompt TEXT NOT NULL DEFAULT '',
    jq_filter TEXT,
    summary_filter TEXT,
    one_shot BOOLEAN NOT NULL DEFAULT FALSE,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    version INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_subscriptions_session_id
    ON subscriptions (session_id);

CREATE TABLE IF NOT EXISTS webhook_events (
    id TEXT PRIMARY KEY,
    subscription_id TEXT NOT NULL,
    received_at TIMESTAMPTZ NOT NULL,
    payload BYTEA NOT NULL,
    summary TEXT,
    delivered BOOLEAN NOT NULL DEFAULT FALSE
);

CREATE INDEX IF NOT EXISTS idx_webhook_events_subscription_id
    ON webhook_events (subscription_id);
"""

_SUBSCRIPTION_COLUMNS = """
    id,
    session_id,
    webhook_url,
    secret_token,
    hmac_header,
    signature_encoding,
    name,
    service,
    prompt,
    jq_filter,
    summary_filter,
    one_shot,
    status,
    created_at,
    updated_at,
    version
"""


class DatabaseError(Exception):
    """Raised when a database operation fails.

    This exception wraps underlying database errors to provide
    a consistent interface for error handling.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


@runtime_checkable
class GatewayRepository(Protocol):
    """Protocol defining the interface for gateway persistence.

    Implementations store subscriptions and webhook events. Every method
    is a single transactional operation; subscription updates use the
    version field for optimistic locking.
    """

    async def save_subscription(self, subscription: Subscription) -> None:
        """Insert a new subscription."""
        ...

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        """Get a subscription by id, or None."""
        ...

    async def list_subscriptions(
        self, session_id: Optional[str] = None
    ) -> List[Subscription]:
        """List subscriptions in creation order, optionally for one session."""
        ...

    async def update_subscription_with_version(
        self, subscription: Subscription
    ) -> bool:
        """Replace a subscription if the stored version is subscription.version - 1.

        Returns:
            True if the update was applied, False on version conflict
            or when the subscription no longer exists.
        """
        ...

    async def delete_subscription(self, subscription_id: str) -> bool:
        """Delete a subscription. Returns False if it did not exist."""
        ...

    async def save_event(self, event: WebhookEvent) -> None:
        """Insert a new webhook event."""
        ...

    async def get_event(self, event_id: str) -> Optional[WebhookEvent]:
        """Get a webhook event by id, or None."""
        ...

    async def mark_event_delivered(self, event_id: str) -> bool:
        """Flip the delivered flag. Returns False if the event is unknown."""
        ...


def _utc(value):
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_to_subscription(row: Any) -> Subscription:
    return Subscription(
        id=row["id"],
        session_id=row["session_id"],
        webhook_url=row["webhook_url"],
        secret_token=row["secret_token"],
        hmac_header=row["hmac_header"],
        signature_encoding=SignatureEncoding(row["signature_encoding"]),
        name=row["name"],
        service=row["service"],
        prompt=row["prompt"],
        jq_filter=row["jq_filter"],
        summary_filter=row["summary_filter"],
        one_shot=row["one_shot"],
        status=SubscriptionStatus(row["status"]),
        created_at=_utc(row["created_at"]),
        updated_at=_utc(row["updated_at"]),
        version=row["version"],
    )


def _row_to_event(row: Any) -> WebhookEvent:
    return WebhookEvent(
        id=row["id"],
        subscription_id=row["subscription_id"],
        received_at=_utc(row["received_at"]),
        payload=bytes(row["payload"]),
        summary=row["summary"],
        delivered=row["delivered"],
    )


class PostgresRepository:
    """PostgreSQL implementation of the GatewayRepository protocol.

    Subscriptions and events survive process restarts. The schema is
    created on connect if it does not exist yet.

    Attributes:
        connection_string: PostgreSQL connection URL.
        min_pool_size: Minimum connections in pool.
        max_pool_size: Maximum connections in pool.

    Example:
        >>> async with PostgresRepository("postgresql://...") as repo:
        ...     subscription = await repo.get_subscription("3f2a...")
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 1,
        max_pool_size: int = 5,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool, raising if not connected.

        Raises:
            DatabaseError: If the pool is not initialized.
        """
        if self._pool is None:
            raise DatabaseError(
                "Database pool not initialized. Call connect() first."
            )
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool and bootstrap the schema.

        Raises:
            DatabaseError: If connection or schema creation fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            async with self._pool.acquire() as conn:
                await conn.execute(SCHEMA_SQL)
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error(
                "Failed to connect to PostgreSQL",
                extra={"error": str(e)},
            )
            raise DatabaseError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresRepository":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def save_subscription(self, subscription: Subscription) -> None:
        """Insert a new subscription row.

        Raises:
            DatabaseError: If the id already exists or the insert fails.
        """
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO subscriptions ({_SUBSCRIPTION_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8,
                            $9, $10, $11, $12, $13, $14, $15, $16)
                    """,
                    subscription.id,
                    subscription.session_id,
                    subscription.webhook_url,
                    subscription.secret_token,
                    subscription.hmac_header,
                    subscription.signature_encoding.value,
                    subscription.name,
                    subscription.service,
                    subscription.prompt,
                    subscription.jq_filter,
                    subscription.summary_filter,
                    subscription.one_shot,
                    subscription.status.value,
                    subscription.created_at,
                    subscription.updated_at,
                    subscription.version,
                )
        except asyncpg.UniqueViolationError as e:
            raise DatabaseError(
                f"Subscription already exists: {subscription.id}",
                original_error=e,
            ) from e
        except Exception as e:
            logger.error(
                "Failed to save subscription",
                extra={"subscription_id": subscription.id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to save subscription: {e}",
                original_error=e,
            ) from e

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {_SUBSCRIPTION_COLUMNS}
                    FROM subscriptions
                    WHERE id = $1
                    """,
                    subscription_id,
                )
        except Exception as e:
            logger.error(
                "Failed to get subscription",
                extra={"subscription_id": subscription_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to get subscription: {e}",
                original_error=e,
            ) from e

        return _row_to_subscription(row) if row is not None else None

    async def list_subscriptions(
        self, session_id: Optional[str] = None
    ) -> List[Subscription]:
        try:
            async with self.pool.acquire() as conn:
                if session_id is None:
                    rows = await conn.fetch(
                        f"""
                        SELECT {_SUBSCRIPTION_COLUMNS}
                        FROM subscriptions
                        ORDER BY created_at ASC, id ASC
                        """
                    )
                else:
                    rows = await conn.fetch(
                        f"""
                        SELECT {_SUBSCRIPTION_COLUMNS}
                        FROM subscriptions
                        WHERE session_id = $1
                        ORDER BY created_at ASC, id ASC
                        """,
                        session_id,
                    )
        except Exception as e:
            logger.error(
                "Failed to list subscriptions",
                extra={"session_id": session_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to list subscriptions: {e}",
                original_error=e,
            ) from e

        return [_row_to_subscription(row) for row in rows]

    async def update_subscription_with_version(
        self, subscription: Subscription
    ) -> bool:
        """Update a subscription with optimistic locking.

        The row is only updated if its stored version equals
        subscription.version - 1. The id, session and webhook URL are
        never rewritten.

        Returns:
            True if update succeeded, False if version conflict.

        Raises:
            DatabaseError: If the update fails for other reasons.
        """
        expected_version = subscription.version - 1

        try:
            async with self._transaction() as conn:
                result = await conn.execute(
                    """
                    UPDATE subscriptions
                    SET
                        secret_token = $2,
                        hmac_header = $3,
                        signature_encoding = $4,
                        name = $5,
                        service = $6,
                        prompt = $7,
                        jq_filter = $8,
                        summary_filter = $9,
                        status = $10,
                        updated_at = $11,
                        version = $12
                    WHERE id = $1 AND version = $13
                    """,
                    subscription.id,
                    subscription.secret_token,
                    subscription.hmac_header,
                    subscription.signature_encoding.value,
                    subscription.name,
                    subscription.service,
                    subscription.prompt,
                    subscription.jq_filter,
                    subscription.summary_filter,
                    subscription.status.value,
                    subscription.updated_at,
                    subscription.version,
                    expected_version,
                )
        except Exception as e:
            logger.error(
                "Failed to update subscription",
                extra={"subscription_id": subscription.id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to update subscription: {e}",
                original_error=e,
            ) from e

        rows_affected = int(result.split()[-1])
        if rows_affected == 0:
            logger.warning(
                "Version conflict during subscription update",
                extra={
                    "subscription_id": subscription.id,
                    "expected_version": expected_version,
                },
            )
            return False
        return True

    async def delete_subscription(self, subscription_id: str) -> bool:
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM subscriptions WHERE id = $1",
                    subscription_id,
                )
        except Exception as e:
            logger.error(
                "Failed to delete subscription",
                extra={"subscription_id": subscription_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to delete subscription: {e}",
                original_error=e,
            ) from e

        return int(result.split()[-1]) > 0

    async def save_event(self, event: WebhookEvent) -> None:
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO webhook_events (
                        id,
                        subscription_id,
                        received_at,
                        payload,
                        summary,
                        delivered
                    ) VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    event.id,
                    event.subscription_id,
                    event.received_at,
                    event.payload,
                    event.summary,
                    event.delivered,
                )
        except Exception as e:
            logger.error(
                "Failed to save webhook event",
                extra={"event_id": event.id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to save webhook event: {e}",
                original_error=e,
            ) from e

    async def get_event(self, event_id: str) -> Optional[WebhookEvent]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT id, subscription_id, received_at, payload, summary, delivered
                    FROM webhook_events
                    WHERE id = $1
                    """,
                    event_id,
                )
        except Exception as e:
            logger.error(
                "Failed to get webhook event",
                extra={"event_id": event_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to get webhook event: {e}",
                original_error=e,
            ) from e

        return _row_to_event(row) if row is not None else None

    async def mark_event_delivered(self, event_id: str) -> bool:
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute(
                    "UPDATE webhook_events SET delivered = TRUE WHERE id = $1",
                    event_id,
                )
        except Exception as e:
            logger.error(
                "Failed to mark webhook event delivered",
                extra={"event_id": event_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to mark webhook event delivered: {e}",
                original_error=e,
            ) from e

        return int(result.split()[-1]) > 0

    async def health_check(self) -> bool:
        """Check if the database connection is healthy."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.warning(
                "Database health check failed",
                extra={"error": str(e)},
            )
            return False
