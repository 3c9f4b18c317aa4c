"""Persisted gateway records.

This module defines the data models stored by the gateway:
- SubscriptionStatus: Whether a subscription accepts deliveries
- SignatureEncoding: How a provider encodes its HMAC signature header
- Subscription: A rule binding a webhook URL to a target session
- WebhookEvent: One accepted inbound webhook request

The models use Pydantic for validation, consistent with the gateway's
configuration approach in config.py.
"""

import base64
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


DEFAULT_SERVICE = "custom"


class SubscriptionStatus(str, Enum):
    """Lifecycle status of a subscription.

    Attributes:
        ACTIVE: Inbound webhooks are verified, filtered and delivered.
        PAUSED: Inbound webhooks are acknowledged and dropped.
    """

    ACTIVE = "active"
    PAUSED = "paused"


class SignatureEncoding(str, Enum):
    """Encoding of the HMAC-SHA256 digest carried in the signature header.

    Attributes:
        HEX: Lowercase hex digest (Linear, most custom senders).
        PREFIXED_HEX: Hex digest prefixed with ``sha256=`` (GitHub).
        BASE64: Standard base64 of the raw digest (Shopify, Svix).
    """

    HEX = "hex"
    PREFIXED_HEX = "prefixed_hex"
    BASE64 = "base64"


def webhook_path(subscription_id: str) -> str:
    """Return the ingress path for a subscription."""
    return f"/webhook/{subscription_id}"


def webhook_url_for(base_url: str, subscription_id: str) -> str:
    """Derive the webhook URL for a subscription from a base address.

    Args:
        base_url: Gateway base address, local or public.
        subscription_id: The subscription identifier.

    Returns:
        str: URL in format "{base_url}/webhook/{subscription_id}".
    """
    return f"{base_url.rstrip('/')}{webhook_path(subscription_id)}"


class Subscription(BaseModel):
    """Registered rule binding an inbound webhook URL to a target session.

    The webhook URL is derived from the id once, at creation, and never
    changes afterwards. The version field is bumped on every persisted
    update and used for optimistic locking.

    Attributes:
        id: Globally unique identifier, never reused.
        session_id: The agent session that receives deliveries.
        webhook_url: Local webhook URL derived from the id.
        secret_token: Optional HMAC secret for signature verification.
        hmac_header: Name of the header carrying the signature.
        signature_encoding: Encoding of the signature header value.
        name: Optional human-readable name.
        service: Sending service (github, linear, stripe, custom).
        prompt: Text prepended to the payload on delivery.
        jq_filter: Optional gate expression; falsy results drop the event.
        summary_filter: Optional projection expression for the summary.
        one_shot: Delete the subscription after the first delivery.
        status: Whether the subscription is active or paused.
        created_at: When the subscription was created (UTC).
        updated_at: When the subscription was last updated (UTC).
        version: Optimistic locking version.
    """

    id: str = Field(..., min_length=1, description="Unique subscription id")

    session_id: str = Field(
        ...,
        min_length=1,
        description="The agent session that receives deliveries",
    )

    webhook_url: str = Field(
        ...,
        min_length=1,
        description="Local webhook URL derived from the id",
    )

    secret_token: Optional[str] = Field(
        default=None,
        description="HMAC secret for signature verification",
    )

    hmac_header: Optional[str] = Field(
        default=None,
        description="Header containing the HMAC signature (e.g. X-Hub-Signature-256)",
    )

    signature_encoding: SignatureEncoding = Field(
        default=SignatureEncoding.HEX,
        description="Encoding of the signature header value",
    )

    name: Optional[str] = Field(default=None, description="Human-readable name")

    service: str = Field(
        default=DEFAULT_SERVICE,
        description="Sending service (github, linear, stripe, custom)",
    )

    prompt: str = Field(
        default="",
        description="Text prepended to the payload on delivery",
    )

    jq_filter: Optional[str] = Field(
        default=None,
        description="Gate expression evaluated against the raw payload",
    )

    summary_filter: Optional[str] = Field(
        default=None,
        description="Projection expression producing the delivered summary",
    )

    one_shot: bool = Field(
        default=False,
        description="Delete the subscription after the first delivery",
    )

    status: SubscriptionStatus = Field(
        default=SubscriptionStatus.ACTIVE,
        description="Whether inbound webhooks are processed",
    )

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the subscription was created (UTC)",
    )

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the subscription was last updated (UTC)",
    )

    version: int = Field(
        default=1,
        ge=1,
        description="Optimistic locking version for concurrent update protection",
    )

    @property
    def is_paused(self) -> bool:
        return self.status == SubscriptionStatus.PAUSED

    @property
    def requires_signature(self) -> bool:
        """Whether inbound requests must carry a valid HMAC signature."""
        return bool(self.secret_token)

    def redacted(self) -> dict:
        """Dump the subscription with the secret token masked.

        Returns:
            dict: JSON-compatible representation safe for logs and
            control-plane responses.
        """
        data = self.model_dump(mode="json")
        if self.secret_token:
            data["secret_token"] = self.secret_token[:4] + "..."
        return data


class WebhookEvent(BaseModel):
    """An inbound webhook request that passed the status and gate checks.

    Events are written once and only the delivered flag changes
    afterwards. The raw payload is stored verbatim so the full body can
    be retrieved later, while the summary holds the compact projection
    that was injected into the session.

    Attributes:
        id: Unique event identifier, included in the delivered envelope.
        subscription_id: The subscription that accepted the request.
        received_at: When the request was received (UTC).
        payload: The raw request body.
        summary: JSON text of the derived projection.
        delivered: Whether the session mailbox accepted the message.
    """

    id: str = Field(..., min_length=1, description="Unique event id")

    subscription_id: str = Field(
        ...,
        min_length=1,
        description="The subscription that accepted the request",
    )

    received_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the request was received (UTC)",
    )

    payload: bytes = Field(default=b"", description="Raw request body, byte for byte")

    summary: Optional[str] = Field(
        default=None,
        description="JSON text of the derived summary projection",
    )

    delivered: bool = Field(
        default=False,
        description="Whether the session mailbox accepted the message",
    )

    @property
    def payload_text(self) -> str:
        """The payload decoded as UTF-8, invalid bytes replaced."""
        return self.payload.decode("utf-8", errors="replace")

    def to_response(self) -> dict:
        """JSON-safe representation for the control plane.

        ``payload`` is the decoded text for display; ``payload_base64``
        carries the exact bytes that were received.
        """
        data = self.model_dump(mode="json", exclude={"payload"})
        data["payload"] = self.payload_text
        data["payload_base64"] = base64.b64encode(self.payload).decode("ascii")
        return data
