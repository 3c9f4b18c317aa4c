"""Outbound tunnel process supervision."""

from src.gateway.tunnel.models import (
    TunnelMode,
    TunnelProcessError,
    TunnelState,
    TunnelStatus,
)
from src.gateway.tunnel.supervisor import TunnelSupervisor, read_config_hostname

__all__ = [
    "TunnelMode",
    "TunnelProcessError",
    "TunnelState",
    "TunnelStatus",
    "TunnelSupervisor",
    "read_config_hostname",
]
