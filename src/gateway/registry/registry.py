"""Subscription registry.

This module implements the SubscriptionRegistry class that owns
subscription records: creation with derived webhook URLs, lookup,
listing, partial updates and deletion.

Mutations on one subscription id are serialised by a per-id asyncio
lock; the repository additionally enforces an optimistic version check
so a lost update is detected even if two registries share a database.

Source:
- src/gateway/storage/repository.py (GatewayRepository)
- src/gateway/notifications/emitter.py (NotificationEmitter)
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from src.gateway.notifications.emitter import NotificationEmitter, NullNotificationEmitter
from src.gateway.notifications.models import Notification, NotificationType
from src.gateway.storage.models import (
    DEFAULT_SERVICE,
    SignatureEncoding,
    Subscription,
    SubscriptionStatus,
    webhook_url_for,
)
from src.gateway.storage.repository import GatewayRepository


logger = logging.getLogger(__name__)


# Fields that update() may overwrite. id, session_id, webhook_url,
# one_shot and created_at are fixed at creation.
UPDATABLE_FIELDS = (
    "secret_token",
    "hmac_header",
    "signature_encoding",
    "name",
    "service",
    "prompt",
    "jq_filter",
    "summary_filter",
    "status",
)

# Optional fields where an empty string clears the value
_CLEARABLE_FIELDS = {
    "secret_token",
    "hmac_header",
    "name",
    "jq_filter",
    "summary_filter",
}


class SubscriptionValidationError(Exception):
    """Raised when a subscription field is missing or invalid.

    No mutation is applied when this error is raised.

    Attributes:
        field: The offending field name, if known.
    """

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class SubscriptionNotFoundError(Exception):
    """Raised when a subscription id is unknown.

    Attributes:
        subscription_id: The id that was not found.
    """

    def __init__(self, subscription_id: str):
        self.subscription_id = subscription_id
        super().__init__(f"Subscription '{subscription_id}' not found")


class VersionConflictError(Exception):
    """Raised when optimistic locking detects a concurrent update.

    Attributes:
        subscription_id: The id with the conflict.
        expected_version: The version the update was based on.
    """

    def __init__(self, subscription_id: str, expected_version: int):
        self.subscription_id = subscription_id
        self.expected_version = expected_version
        super().__init__(
            f"Version conflict for subscription {subscription_id}: "
            f"expected {expected_version}"
        )


def _parse_enum(enum_cls, value: Any, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(f"'{member.value}'" for member in enum_cls)
        raise SubscriptionValidationError(
            f"{field} must be one of {allowed}", field=field
        ) from None


def _normalize(field: str, value: Any) -> Any:
    if field in _CLEARABLE_FIELDS and isinstance(value, str) and not value.strip():
        return None
    if field == "service" and isinstance(value, str) and not value.strip():
        return DEFAULT_SERVICE
    if field == "status":
        return _parse_enum(SubscriptionStatus, value, field)
    if field == "signature_encoding":
        return _parse_enum(SignatureEncoding, value, field)
    return value


class SubscriptionRegistry:
    """Owns persisted subscription records.

    Attributes:
        repository: Persistence backend.
        local_base_url: Base address used to derive webhook URLs.
        emitter: Receives a notification for every mutation.

    Example:
        >>> registry = SubscriptionRegistry(repo, "http://127.0.0.1:7842")
        >>> sub = await registry.create("sess-1", jq_filter='select(.action=="opened")')
        >>> sub = await registry.update(sub.id, {"status": "paused"})
    """

    def __init__(
        self,
        repository: GatewayRepository,
        local_base_url: str,
        emitter: Optional[NotificationEmitter] = None,
    ):
        self.repository = repository
        self.local_base_url = local_base_url
        self.emitter = emitter or NullNotificationEmitter()
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, subscription_id: str) -> asyncio.Lock:
        """Return the mutation lock for a subscription id."""
        return self._locks.setdefault(subscription_id, asyncio.Lock())

    async def create(
        self,
        session_id: Optional[str],
        *,
        secret_token: Optional[str] = None,
        hmac_header: Optional[str] = None,
        signature_encoding: Optional[str] = None,
        name: Optional[str] = None,
        service: Optional[str] = None,
        prompt: Optional[str] = None,
        jq_filter: Optional[str] = None,
        summary_filter: Optional[str] = None,
        one_shot: bool = False,
    ) -> Subscription:
        """Register a new subscription.

        Args:
            session_id: Target session. Required.
            secret_token: HMAC secret; when set, requests must be signed.
            hmac_header: Header carrying the signature.
            signature_encoding: hex, prefixed_hex or base64 (default hex).
            name: Human-readable name.
            service: Sending service, used in the delivered envelope.
            prompt: Text prepended to each delivered payload.
            jq_filter: Gate expression.
            summary_filter: Projection expression.
            one_shot: Delete after the first delivery.

        Returns:
            The persisted subscription.

        Raises:
            SubscriptionValidationError: If session_id is missing or a
                field is invalid.
        """
        if session_id is None or not str(session_id).strip():
            raise SubscriptionValidationError(
                "Missing required parameter: session_id", field="session_id"
            )

        subscription_id = str(uuid.uuid4())
        fields: Dict[str, Any] = {
            "secret_token": secret_token,
            "hmac_header": hmac_header,
            "signature_encoding": signature_encoding,
            "name": name,
            "service": service,
            "prompt": prompt,
            "jq_filter": jq_filter,
            "summary_filter": summary_filter,
        }
        provided = {
            field: _normalize(field, value)
            for field, value in fields.items()
            if value is not None
        }

        try:
            subscription = Subscription(
                id=subscription_id,
                session_id=str(session_id).strip(),
                webhook_url=webhook_url_for(self.local_base_url, subscription_id),
                one_shot=bool(one_shot),
                **{k: v for k, v in provided.items() if v is not None},
            )
        except ValidationError as e:
            raise SubscriptionValidationError(str(e)) from e

        await self.repository.save_subscription(subscription)

        logger.info(
            "Created subscription",
            extra={
                "subscription_id": subscription.id,
                "session_id": subscription.session_id,
                "service": subscription.service,
                "one_shot": subscription.one_shot,
            },
        )
        await self.emitter.emit(
            Notification(
                type=NotificationType.SUBSCRIPTION_CREATED,
                subject_id=subscription.id,
                details={
                    "session_id": subscription.session_id,
                    "service": subscription.service,
                },
            )
        )
        return subscription

    async def get(self, subscription_id: str) -> Subscription:
        """Get a subscription by id.

        Raises:
            SubscriptionNotFoundError: If the id is unknown.
        """
        subscription = await self.repository.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    async def find(self, subscription_id: str) -> Optional[Subscription]:
        """Get a subscription by id, or None."""
        return await self.repository.get_subscription(subscription_id)

    async def list(self, session_id: Optional[str] = None) -> List[Subscription]:
        """List subscriptions in creation order, optionally for one session."""
        return await self.repository.list_subscriptions(session_id)

    async def update(
        self,
        subscription_id: str,
        changes: Mapping[str, Any],
    ) -> Subscription:
        """Apply a partial update.

        Only recognised keys with non-None values are applied; every
        other field keeps its prior value. A call without recognised
        keys returns the unchanged record.

        Args:
            subscription_id: The subscription to update.
            changes: Field name to new value.

        Returns:
            The updated (or unchanged) subscription.

        Raises:
            SubscriptionNotFoundError: If the id is unknown.
            SubscriptionValidationError: If status or signature_encoding
                has an invalid value.
            VersionConflictError: If a concurrent writer won the race.
        """
        provided = {
            field: changes[field]
            for field in UPDATABLE_FIELDS
            if field in changes and changes[field] is not None
        }
        normalized = {field: _normalize(field, value) for field, value in provided.items()}

        if not normalized:
            return await self.get(subscription_id)

        async with self.lock_for(subscription_id):
            current = await self.get(subscription_id)
            try:
                updated = Subscription.model_validate(
                    {
                        **current.model_dump(),
                        **normalized,
                        "updated_at": datetime.now(timezone.utc),
                        "version": current.version + 1,
                    }
                )
            except ValidationError as e:
                raise SubscriptionValidationError(str(e)) from e

            success = await self.repository.update_subscription_with_version(updated)
            if not success:
                raise VersionConflictError(subscription_id, current.version)

        changed_fields = sorted(normalized)
        logger.info(
            "Updated subscription",
            extra={
                "subscription_id": subscription_id,
                "changes": changed_fields,
                "version": updated.version,
            },
        )
        await self.emitter.emit(
            Notification(
                type=NotificationType.SUBSCRIPTION_UPDATED,
                subject_id=subscription_id,
                details={
                    "session_id": updated.session_id,
                    "changes": changed_fields,
                    "status": updated.status.value,
                },
            )
        )
        return updated

    async def delete(self, subscription_id: str, reason: str = "explicit") -> None:
        """Delete a subscription.

        Args:
            subscription_id: The subscription to delete.
            reason: Recorded in the notification ("explicit" or "one_shot").

        Raises:
            SubscriptionNotFoundError: If the id is unknown.
        """
        async with self.lock_for(subscription_id):
            subscription = await self.get(subscription_id)
            deleted = await self.repository.delete_subscription(subscription_id)
            if not deleted:
                raise SubscriptionNotFoundError(subscription_id)
        self._locks.pop(subscription_id, None)

        logger.info(
            "Deleted subscription",
            extra={"subscription_id": subscription_id, "reason": reason},
        )
        await self.emitter.emit(
            Notification(
                type=NotificationType.SUBSCRIPTION_DELETED,
                subject_id=subscription_id,
                details={
                    "session_id": subscription.session_id,
                    "reason": reason,
                },
            )
        )
