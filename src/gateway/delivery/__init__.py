"""Delivery to target sessions and control-plane observers."""

from src.gateway.delivery.channel import (
    ConsumerAttachedError,
    DeliveryError,
    DeliveryReceipt,
    MailboxFullError,
    SessionConsumer,
    SessionDeliveryChannel,
    SessionNotFoundError,
)
from src.gateway.delivery.observers import ObserverHub
from src.gateway.delivery.sse import format_sse_event

__all__ = [
    "ConsumerAttachedError",
    "DeliveryError",
    "DeliveryReceipt",
    "MailboxFullError",
    "ObserverHub",
    "SessionConsumer",
    "SessionDeliveryChannel",
    "SessionNotFoundError",
    "format_sse_event",
]
