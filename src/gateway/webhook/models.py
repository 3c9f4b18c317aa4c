"""Ingress pipeline result models.

The ingress handler reports every request as exactly one IngressOutcome.
Rejections map to HTTP error statuses; drops and deliveries are
acknowledged with 200 so senders do not retry them.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class IngressOutcome(str, Enum):
    """Terminal outcome of one inbound webhook request.

    Attributes:
        REJECTED_NOT_FOUND: No subscription with the requested id.
        DROPPED_PAUSED: The subscription is paused; nothing stored.
        REJECTED_SIGNATURE: Signature header missing or invalid.
        DROPPED_FILTERED: The gate expression was falsy or failed.
        DELIVERED: The event was stored and handed to the session.
        UNDELIVERED: The event was stored but the session channel
            refused it.
    """

    REJECTED_NOT_FOUND = "rejected_not_found"
    DROPPED_PAUSED = "dropped_paused"
    REJECTED_SIGNATURE = "rejected_signature"
    DROPPED_FILTERED = "dropped_filtered"
    DELIVERED = "delivered"
    UNDELIVERED = "undelivered"


_STATUS_CODES = {
    IngressOutcome.REJECTED_NOT_FOUND: 404,
    IngressOutcome.REJECTED_SIGNATURE: 401,
}


class IngressResult(BaseModel):
    """Result of running one request through the ingress pipeline.

    Attributes:
        outcome: What happened to the request.
        event_id: Id of the stored event, when one was stored.
        detail: Short human-readable reason for drops and rejections.
    """

    outcome: IngressOutcome = Field(..., description="Terminal outcome")

    event_id: Optional[str] = Field(
        default=None,
        description="Id of the stored event, if any",
    )

    detail: Optional[str] = Field(
        default=None,
        description="Reason for a drop or rejection",
    )

    @property
    def status_code(self) -> int:
        """HTTP status code returned to the sender."""
        return _STATUS_CODES.get(self.outcome, 200)

    def to_response(self) -> dict:
        return {"status": self.outcome.value, "event_id": self.event_id}
