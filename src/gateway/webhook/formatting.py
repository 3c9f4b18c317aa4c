"""Delivered message envelope.

Sessions receive a compact, fixed-layout envelope instead of the raw
payload; the full body stays in the event store under the event id.
"""

import json
from typing import Any

ENVELOPE_TEMPLATE = (
    '<webhook-event service="{service}" event-id="{event_id}">\n'
    "{prompt}\n"
    "<payload>\n"
    "{summary}\n"
    "</payload>\n"
    "</webhook-event>"
)


def render_summary(projection: Any) -> str:
    """Render a projection for the envelope.

    Strings are inserted as-is; every other value is rendered as JSON.
    """
    if isinstance(projection, str):
        return projection
    return json.dumps(projection, ensure_ascii=False)


def format_delivery_message(
    service: str,
    event_id: str,
    prompt: str,
    summary: str,
) -> str:
    """Compose the envelope delivered to a session.

    Args:
        service: Sending service recorded on the subscription.
        event_id: Id of the stored event.
        prompt: Subscription prompt, may be empty.
        summary: Rendered summary text.

    Returns:
        The envelope text.

    Example:
        >>> format_delivery_message("github", "e1", "Review this", '{"title":"Fix"}')
        '<webhook-event service="github" event-id="e1">\\nReview this\\n<payload>\\n{"title":"Fix"}\\n</payload>\\n</webhook-event>'
    """
    return ENVELOPE_TEMPLATE.format(
        service=service,
        event_id=event_id,
        prompt=prompt,
        summary=summary,
    )
