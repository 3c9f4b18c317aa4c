"""jq-based gate and summary filters."""

from src.gateway.filters.executor import (
    FilterExecutor,
    FilterResult,
    fallback_projection,
    json_type,
)

__all__ = [
    "FilterExecutor",
    "FilterResult",
    "fallback_projection",
    "json_type",
]
