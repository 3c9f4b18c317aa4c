"""Webhook ingress for the session gateway.

This module receives inbound webhook requests addressed to a
subscription, verifies their HMAC signature, filters them and hands a
compact envelope to the target session.
"""

from src.gateway.webhook.formatting import format_delivery_message, render_summary
from src.gateway.webhook.handler import WebhookIngressHandler
from src.gateway.webhook.models import IngressOutcome, IngressResult
from src.gateway.webhook.signature import CredentialVerifier

__all__ = [
    "CredentialVerifier",
    "IngressOutcome",
    "IngressResult",
    "WebhookIngressHandler",
    "format_delivery_message",
    "render_summary",
]
