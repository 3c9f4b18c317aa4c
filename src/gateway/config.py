"""Gateway configuration using pydantic-settings.

This module defines the GatewaySettings class that reads configuration
from environment variables with the GATEWAY_ prefix. Every field has a
default, so the gateway starts with an empty environment using in-memory
persistence and no tunnel.
"""

from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class GatewaySettings(BaseSettings):
    """Session gateway configuration from environment variables.

    All environment variables are prefixed with GATEWAY_ (e.g., GATEWAY_PORT).
    """

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    # Loopback by default; public traffic arrives through the tunnel
    host: str = "127.0.0.1"

    port: int = 7842

    # Base address used to derive subscription webhook URLs
    local_base_url: str = "http://127.0.0.1:7842"

    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; unset means in-memory persistence
    database_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Tunnel Configuration
    # -------------------------------------------------------------------------
    cloudflared_path: str = "cloudflared"

    # cloudflared config for the persistent tunnel
    tunnel_config_path: str = "~/.cloudflared/config.yml"

    # Named tunnel passed to `cloudflared tunnel run`
    tunnel_name: Optional[str] = None

    tunnel_ready_timeout_seconds: float = 15.0

    tunnel_stop_timeout_seconds: float = 5.0

    # Start the persistent tunnel on application startup
    tunnel_autostart: bool = False

    # -------------------------------------------------------------------------
    # Delivery Configuration
    # -------------------------------------------------------------------------
    mailbox_capacity: int = 100

    max_sessions: int = 256

    observer_queue_size: int = 64

    # -------------------------------------------------------------------------
    # Filter Configuration
    # -------------------------------------------------------------------------
    filter_timeout_seconds: float = 2.0

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("local_base_url")
    @classmethod
    def validate_local_base_url(cls, v: str) -> str:
        """Validate URL format and drop any trailing slash."""
        if not v or not v.strip():
            raise ValueError("local_base_url cannot be empty")
        if not v.startswith(("http://", "https://")):
            raise ValueError("local_base_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate database URL format when set; blank means unset."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("tunnel_name")
    @classmethod
    def validate_tunnel_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()

    @field_validator("cloudflared_path", "tunnel_config_path")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("path cannot be empty")
        return v

    @field_validator(
        "tunnel_ready_timeout_seconds",
        "tunnel_stop_timeout_seconds",
        "filter_timeout_seconds",
    )
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate that timeouts are positive."""
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("mailbox_capacity", "max_sessions", "observer_queue_size")
    @classmethod
    def validate_size(cls, v: int) -> int:
        """Validate that capacities are at least 1."""
        if v < 1:
            raise ValueError("capacities must be at least 1")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level


def get_settings() -> GatewaySettings:
    """Create and return a GatewaySettings instance.

    Returns:
        GatewaySettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If a value is invalid.
    """
    return GatewaySettings()
