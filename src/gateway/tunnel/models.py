"""Tunnel supervisor state models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class TunnelState(str, Enum):
    """Lifecycle state of the tunnel process.

    Transitions: stopped -> starting -> active, starting -> failed,
    active -> failed. stop() returns to stopped from any state.
    """

    STOPPED = "stopped"
    STARTING = "starting"
    ACTIVE = "active"
    FAILED = "failed"


class TunnelMode(str, Enum):
    """How the tunnel is established.

    Attributes:
        PERSISTENT: Named tunnel from a cloudflared config file, with a
            stable hostname.
        QUICK: Throwaway trycloudflare.com tunnel with a random hostname.
    """

    PERSISTENT = "persistent"
    QUICK = "quick"


class TunnelProcessError(Exception):
    """Raised internally when the tunnel process cannot be started or dies.

    The supervisor records the message in TunnelStatus.error instead of
    raising it to callers of start().
    """


@dataclass(frozen=True)
class TunnelStatus:
    """Point-in-time snapshot of the supervisor.

    Attributes:
        state: Current lifecycle state.
        mode: Mode of the current or last start attempt.
        public_url: Public base URL, only set while active.
        error: Failure reason, only set while failed.
        pid: Process id of the running tunnel process.
        changed_at: When the state last changed.
    """

    state: TunnelState
    mode: Optional[TunnelMode] = None
    public_url: Optional[str] = None
    error: Optional[str] = None
    pid: Optional[int] = None
    changed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.state == TunnelState.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "mode": self.mode.value if self.mode else None,
            "public_url": self.public_url,
            "error": self.error,
            "pid": self.pid,
            "changed_at": self.changed_at.isoformat() if self.changed_at else None,
        }
