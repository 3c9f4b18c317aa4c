"""Control-plane notification models.

This module defines the data models for gateway notifications:
- NotificationType: Enum of all notification types emitted by the gateway
- Notification: Structured notification with metadata

Notifications are broadcast to attached control-plane observers, written
to the log and folded into Prometheus metrics.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class NotificationType(str, Enum):
    """Types of notifications emitted by the gateway.

    Attributes:
        SUBSCRIPTION_CREATED: A subscription was registered.
        SUBSCRIPTION_UPDATED: A subscription was partially updated.
        SUBSCRIPTION_DELETED: A subscription was deleted, explicitly or
            after its one-shot delivery.
        WEBHOOK_PROCESSED: An inbound webhook request finished the ingress
            pipeline. details["outcome"] holds the IngressOutcome value.
        EVENT_DELIVERED: A formatted event was handed to a session mailbox.
        TUNNEL_STATE_CHANGED: The tunnel supervisor changed state.
    """

    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    WEBHOOK_PROCESSED = "webhook_processed"
    EVENT_DELIVERED = "event_delivered"
    TUNNEL_STATE_CHANGED = "tunnel_state_changed"


class Notification(BaseModel):
    """Structured notification emitted by the gateway.

    Attributes:
        type: The category of notification.
        subject_id: Id of the affected subscription, event or "tunnel".
        timestamp: When the notification was created (UTC timezone).
        details: Additional context specific to the notification type.

    Details Field Conventions:
        For SUBSCRIPTION_* notifications:
            - session_id: Target session of the subscription
            - changes: Updated field names (SUBSCRIPTION_UPDATED only)
            - reason: "explicit" or "one_shot" (SUBSCRIPTION_DELETED only)

        For WEBHOOK_PROCESSED:
            - outcome: IngressOutcome value
            - event_id: Stored event id, if any

        For EVENT_DELIVERED:
            - session_id, subscription_id, live

        For TUNNEL_STATE_CHANGED:
            - from_state, to_state, public_url, error
    """

    type: NotificationType = Field(
        ...,
        description="The category of notification",
    )

    subject_id: str = Field(
        ...,
        min_length=1,
        description="Id of the affected subscription, event or tunnel",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the notification was created (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the notification type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert the notification to a flat dictionary for structured logging.

        Returns:
            Dict[str, Any]: Flat dictionary representation of the notification.
        """
        return {
            "notification_type": self.type.value,
            "subject_id": self.subject_id,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }

    def to_wire(self) -> Dict[str, Any]:
        """JSON-compatible representation sent to observers."""
        return self.model_dump(mode="json")
