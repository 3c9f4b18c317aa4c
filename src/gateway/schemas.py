"""Pydantic request models for the control-plane HTTP API."""

from typing import Optional

from pydantic import BaseModel


class CreateSubscriptionRequest(BaseModel):
    """Register a webhook subscription for a session."""
    session_id: Optional[str] = None
    secret_token: Optional[str] = None
    hmac_header: Optional[str] = None
    signature_encoding: Optional[str] = None
    name: Optional[str] = None
    service: Optional[str] = None
    prompt: Optional[str] = None
    jq_filter: Optional[str] = None
    summary_filter: Optional[str] = None
    one_shot: bool = False


class UpdateSubscriptionRequest(BaseModel):
    """Partial update; omitted or null fields keep their value."""
    secret_token: Optional[str] = None
    hmac_header: Optional[str] = None
    signature_encoding: Optional[str] = None
    name: Optional[str] = None
    service: Optional[str] = None
    prompt: Optional[str] = None
    jq_filter: Optional[str] = None
    summary_filter: Optional[str] = None
    status: Optional[str] = None
