"""Server-Sent Events formatting helpers."""

import json
from typing import Any, Optional


def format_sse_event(
    data: Any,
    event: Optional[str] = None,
    id: Optional[str] = None,
) -> str:
    """Format data as one SSE frame.

    Args:
        data: Event data, JSON-encoded unless already a string.
        event: Optional event type name.
        id: Optional event id.

    Returns:
        The frame, terminated by a blank line.
    """
    lines = []

    if id is not None:
        lines.append(f"id: {id}")

    if event is not None:
        lines.append(f"event: {event}")

    data_str = data if isinstance(data, str) else json.dumps(data, default=str)

    # Multi-line data needs one "data:" field per line
    for line in data_str.split("\n"):
        lines.append(f"data: {line}")

    return "\n".join(lines) + "\n\n"
