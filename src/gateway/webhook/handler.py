"""Webhook ingress pipeline.

This module provides the WebhookIngressHandler class that takes one
inbound request addressed to a subscription through the pipeline:

1. Resolve the subscription (unknown id: rejected_not_found, 404)
2. Paused subscriptions: dropped_paused, nothing stored
3. Verify the HMAC signature when a secret is configured (401 on failure)
4. Gate filter: falsy, failing or non-JSON: dropped_filtered
5. Summary filter, falling back to a generic projection
6. Persist the event
7. Compose the envelope
8. Hand it to the session delivery channel
9. Mark delivered; retire one-shot subscriptions

Every stage short-circuits with an IngressResult; only signature
failures and unknown subscriptions are rejections.

Source:
- src/gateway/registry/registry.py (SubscriptionRegistry)
- src/gateway/registry/event_store.py (EventStore)
- src/gateway/delivery/channel.py (SessionDeliveryChannel)
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Tuple

from src.gateway.delivery.channel import DeliveryError, SessionDeliveryChannel
from src.gateway.filters.executor import FilterExecutor, fallback_projection
from src.gateway.notifications.emitter import NotificationEmitter, NullNotificationEmitter
from src.gateway.notifications.models import Notification, NotificationType
from src.gateway.registry.event_store import EventStore
from src.gateway.registry.registry import SubscriptionNotFoundError, SubscriptionRegistry
from src.gateway.storage.models import Subscription
from src.gateway.webhook.formatting import format_delivery_message, render_summary
from src.gateway.webhook.models import IngressOutcome, IngressResult
from src.gateway.webhook.signature import CredentialVerifier

logger = logging.getLogger(__name__)


DEFAULT_FILTER_TIMEOUT_SECONDS = 2.0

_NOT_JSON = object()


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def _parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return _NOT_JSON


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    # Starlette headers are already case-insensitive; plain dicts are not
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


class WebhookIngressHandler:
    """Runs inbound webhook requests through the ingress pipeline.

    Attributes:
        registry: Subscription lookup and one-shot retirement.
        event_store: Persists accepted payloads.
        channel: Session mailboxes.
        filters: jq evaluator for gate and summary expressions.
        verifier: HMAC signature verifier.
        filter_timeout: Seconds allowed for one filter evaluation.

    Example:
        >>> handler = WebhookIngressHandler(registry, events, channel)
        >>> result = await handler.handle(sub.id, b'{"action":"opened"}', {})
        >>> result.outcome
        <IngressOutcome.DELIVERED: 'delivered'>
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        event_store: EventStore,
        channel: SessionDeliveryChannel,
        filters: Optional[FilterExecutor] = None,
        verifier: Optional[CredentialVerifier] = None,
        emitter: Optional[NotificationEmitter] = None,
        filter_timeout: float = DEFAULT_FILTER_TIMEOUT_SECONDS,
    ):
        self.registry = registry
        self.event_store = event_store
        self.channel = channel
        self.filters = filters or FilterExecutor()
        self.verifier = verifier or CredentialVerifier()
        self.emitter = emitter or NullNotificationEmitter()
        self.filter_timeout = filter_timeout
        self._one_shot_locks: Dict[str, _LockEntry] = {}

    async def handle(
        self,
        subscription_id: str,
        body: bytes,
        headers: Mapping[str, str],
    ) -> IngressResult:
        """Process one inbound request.

        Args:
            subscription_id: Id from the request path.
            body: Raw request body, exactly as received.
            headers: Request headers.

        Returns:
            IngressResult with the outcome and stored event id, if any.
        """
        subscription = await self.registry.find(subscription_id)
        if subscription is None:
            result = IngressResult(
                outcome=IngressOutcome.REJECTED_NOT_FOUND,
                detail="Unknown subscription",
            )
        elif subscription.one_shot:
            async with self._one_shot_lock(subscription_id):
                # Re-read: a concurrent request may have retired it
                subscription = await self.registry.find(subscription_id)
                if subscription is None:
                    result = IngressResult(
                        outcome=IngressOutcome.REJECTED_NOT_FOUND,
                        detail="Unknown subscription",
                    )
                else:
                    result = await self._process(subscription, body, headers)
        else:
            result = await self._process(subscription, body, headers)

        logger.info(
            "Webhook processed",
            extra={
                "subscription_id": subscription_id,
                "outcome": result.outcome.value,
                "event_id": result.event_id,
            },
        )
        await self.emitter.emit(
            Notification(
                type=NotificationType.WEBHOOK_PROCESSED,
                subject_id=subscription_id,
                details={
                    "outcome": result.outcome.value,
                    "event_id": result.event_id,
                },
            )
        )
        return result

    @asynccontextmanager
    async def _one_shot_lock(self, subscription_id: str) -> AsyncIterator[None]:
        """Serialise requests for one one-shot subscription.

        The entry is dropped once no request holds or awaits it, so the
        map only contains subscriptions with requests in flight.
        """
        entry = self._one_shot_locks.setdefault(subscription_id, _LockEntry())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._one_shot_locks[subscription_id]

    async def _process(
        self,
        subscription: Subscription,
        body: bytes,
        headers: Mapping[str, str],
    ) -> IngressResult:
        if subscription.is_paused:
            return IngressResult(
                outcome=IngressOutcome.DROPPED_PAUSED,
                detail="Subscription is paused",
            )

        if not self._verify(subscription, body, headers):
            return IngressResult(
                outcome=IngressOutcome.REJECTED_SIGNATURE,
                detail="Invalid signature",
            )

        # Decoded only for filtering; the event keeps the raw bytes
        text = body.decode("utf-8", errors="replace")
        value = _parse_json(text)

        if subscription.jq_filter:
            passed, reason = await self._gate(subscription.jq_filter, value)
            if not passed:
                logger.debug(
                    "Gate filter dropped event",
                    extra={"subscription_id": subscription.id, "reason": reason},
                )
                return IngressResult(
                    outcome=IngressOutcome.DROPPED_FILTERED,
                    detail=reason,
                )

        summary = render_summary(await self._summarize(subscription, value, text))

        event = await self.event_store.record(
            subscription_id=subscription.id,
            payload=bytes(body),
            summary=summary,
        )
        message = format_delivery_message(
            service=subscription.service,
            event_id=event.id,
            prompt=subscription.prompt,
            summary=summary,
        )

        try:
            receipt = self.channel.push(subscription.session_id, message)
        except DeliveryError as e:
            logger.warning(
                "Session refused event: %s",
                e,
                extra={
                    "subscription_id": subscription.id,
                    "session_id": subscription.session_id,
                    "event_id": event.id,
                },
            )
            return IngressResult(
                outcome=IngressOutcome.UNDELIVERED,
                event_id=event.id,
                detail=str(e),
            )

        await self.event_store.mark_delivered(event.id)
        await self.emitter.emit(
            Notification(
                type=NotificationType.EVENT_DELIVERED,
                subject_id=event.id,
                details={
                    "session_id": subscription.session_id,
                    "subscription_id": subscription.id,
                    "live": receipt.live,
                },
            )
        )

        if subscription.one_shot:
            try:
                await self.registry.delete(subscription.id, reason="one_shot")
            except SubscriptionNotFoundError:
                logger.debug(
                    "One-shot subscription already deleted",
                    extra={"subscription_id": subscription.id},
                )

        return IngressResult(outcome=IngressOutcome.DELIVERED, event_id=event.id)

    def _verify(
        self,
        subscription: Subscription,
        body: bytes,
        headers: Mapping[str, str],
    ) -> bool:
        if not subscription.requires_signature:
            logger.debug(
                "No secret configured, accepting unsigned request",
                extra={"subscription_id": subscription.id},
            )
            return True

        if not subscription.hmac_header:
            logger.warning(
                "Secret configured without a signature header name",
                extra={"subscription_id": subscription.id},
            )
            return False

        return self.verifier.verify(
            _header(headers, subscription.hmac_header),
            subscription.secret_token,
            body,
            subscription.signature_encoding,
        )

    async def _gate(self, expression: str, value: Any) -> Tuple[bool, Optional[str]]:
        if value is _NOT_JSON:
            return False, "Payload is not JSON"

        result = await self.filters.evaluate_async(expression, value, self.filter_timeout)
        if result.error is not None:
            logger.warning(
                "Gate filter failed: %s",
                result.error,
                extra={"expression": expression},
            )
            return False, result.error
        if result.is_falsy:
            return False, "Filter result is falsy"
        return True, None

    async def _summarize(self, subscription: Subscription, value: Any, text: str) -> Any:
        if value is _NOT_JSON:
            return {"type": "text", "length": len(text)}

        if subscription.summary_filter:
            result = await self.filters.evaluate_async(
                subscription.summary_filter, value, self.filter_timeout
            )
            if result.ok:
                return result.projection()
            logger.warning(
                "Summary filter failed, using fallback: %s",
                result.error,
                extra={"subscription_id": subscription.id},
            )

        return fallback_projection(value)
