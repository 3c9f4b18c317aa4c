"""Event store for accepted webhook requests.

Events are written once per accepted inbound request and never deleted
by the gateway; only the delivered flag changes afterwards. The raw
payload is kept verbatim so the full body can be fetched after the
compact summary has been injected into a session.
"""

import logging
import uuid
from typing import Optional

from src.gateway.storage.models import WebhookEvent
from src.gateway.storage.repository import GatewayRepository


logger = logging.getLogger(__name__)


class EventNotFoundError(Exception):
    """Raised when an event id is unknown.

    Attributes:
        event_id: The id that was not found.
    """

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event '{event_id}' not found")


class EventStore:
    """Persists raw payloads and delivery metadata, keyed by event id."""

    def __init__(self, repository: GatewayRepository):
        self.repository = repository

    async def record(
        self,
        subscription_id: str,
        payload: bytes,
        summary: Optional[str] = None,
    ) -> WebhookEvent:
        """Persist a new, undelivered event with a fresh id.

        Args:
            subscription_id: The subscription that accepted the request.
            payload: The raw request body, stored byte for byte.
            summary: JSON text of the derived projection.

        Returns:
            The stored event.
        """
        event = WebhookEvent(
            id=str(uuid.uuid4()),
            subscription_id=subscription_id,
            payload=payload,
            summary=summary,
        )
        await self.repository.save_event(event)

        logger.info(
            "Stored webhook event",
            extra={
                "event_id": event.id,
                "subscription_id": subscription_id,
                "payload_bytes": len(payload),
            },
        )
        return event

    async def get(self, event_id: str) -> WebhookEvent:
        """Get an event by id.

        Raises:
            EventNotFoundError: If the id is unknown.
        """
        event = await self.repository.get_event(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    async def mark_delivered(self, event_id: str) -> None:
        if not await self.repository.mark_event_delivered(event_id):
            logger.warning(
                "Cannot mark unknown event delivered",
                extra={"event_id": event_id},
            )
