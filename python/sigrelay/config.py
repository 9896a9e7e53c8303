"""
Environment configuration for sigrelay.

Every setting can be supplied as ``SIGRELAY_<NAME>`` in the environment
or in a ``.env`` file.
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Runtime tunables for the relay."""

    model_config = SettingsConfigDict(env_prefix="SIGRELAY_", env_file=".env", extra="ignore")

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8080, ge=1, le=65535, description="Bind port")
    path: str = Field(default="/ws", description="WebSocket endpoint path")

    require_auth: bool = Field(default=False, description="Require a token on WebSocket connect")
    auth_key: Optional[SecretStr] = Field(default=None, description="Shared key checked by POST /auth")
    bind_peer_identity: bool = Field(
        default=False,
        description="Only evict a peer id holder with the same token client id",
    )

    max_room_size: int = Field(default=10, ge=1, description="Global ceiling on guests per room")
    max_message_size: int = Field(default=256 * 1024, ge=1024, description="Max inbound frame size")

    max_tokens: int = Field(default=10_000, ge=1, description="Max live tokens")
    token_ttl: float = Field(default=24 * 60 * 60.0, gt=0, description="Token lifetime in seconds")
    token_sweep_interval: float = Field(default=60 * 60.0, gt=0, description="Token sweep period")

    max_connections_per_ip: int = Field(default=10, ge=1, description="Admissions per window per address")
    rate_limit_window: float = Field(default=60.0, gt=0, description="Admission window in seconds")

    heartbeat_interval: float = Field(default=30.0, gt=0, description="Liveness probe period")

    log_level: str = Field(default="INFO", description="Root log level")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("path must start with '/'")
        return v


def configure_logging(settings: Settings) -> None:
    """Apply the configured level to the root logger."""
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


__all__ = ["Settings", "configure_logging"]
