"""
Configuration schema and loader for the ERP PRIME realtime client.
Uses Pydantic for validation.
"""

from pathlib import Path
from typing import Optional
import json
import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr

logger = logging.getLogger(__name__)

# Load .env from current directory or parent directories (PRIME_TOKEN etc.)
load_dotenv()

HEARTBEAT_DEFAULT_SEC = 30
HEARTBEAT_MIN_SEC = 5
HEARTBEAT_MAX_SEC = 300


def get_heartbeat_interval() -> int:
    """
    Load keep-alive interval from environment.

    Environment:
        PRIME_HEARTBEAT_SEC: Keep-alive interval in seconds.

    Returns:
        int: Keep-alive interval (default 30s, clamped to [5, 300]).
    """
    env_value = os.getenv("PRIME_HEARTBEAT_SEC")
    if env_value is None:
        return HEARTBEAT_DEFAULT_SEC

    try:
        interval = int(env_value)
    except (ValueError, TypeError):
        logger.warning(
            "[Config] Invalid PRIME_HEARTBEAT_SEC=%r, using default: %ds",
            env_value,
            HEARTBEAT_DEFAULT_SEC,
        )
        return HEARTBEAT_DEFAULT_SEC

    if interval < HEARTBEAT_MIN_SEC:
        logger.warning(
            "[Config] PRIME_HEARTBEAT_SEC=%d below minimum, clamping to %ds",
            interval,
            HEARTBEAT_MIN_SEC,
        )
        return HEARTBEAT_MIN_SEC
    if interval > HEARTBEAT_MAX_SEC:
        logger.warning(
            "[Config] PRIME_HEARTBEAT_SEC=%d above maximum, clamping to %ds",
            interval,
            HEARTBEAT_MAX_SEC,
        )
        return HEARTBEAT_MAX_SEC
    return interval


class RealtimeConfig(BaseModel):
    """
    Realtime channel configuration.

    ``origin`` plays the role of the hosting page: the push and pull
    endpoints are derived from its scheme, host and port.
    """
    origin: str = Field(
        default_factory=lambda: os.getenv("PRIME_ORIGIN", "http://localhost:3000"),
        description="Origin the endpoints are resolved against",
    )
    token: Optional[SecretStr] = Field(
        default_factory=lambda: SecretStr(os.getenv("PRIME_TOKEN", "")) if os.getenv("PRIME_TOKEN") else None,
        repr=False,
        exclude=True,
        description="Bearer token (JWT) for the realtime endpoints",
    )
    client_id: str = Field(
        default_factory=lambda: os.getenv("PRIME_CLIENT_ID", "erp-prime-client"),
        description="Client id reported by the fallback keep-alive",
    )

    # Endpoints
    default_port: int = Field(default=3000, description="Port used when the origin has none")
    websocket_path: str = Field(default="/ws")
    health_path: str = Field(default="/health")
    realtime_path: str = Field(default="/api/realtime")

    # Push channel timings (seconds)
    probe_timeout: float = Field(default=2.0, description="Health probe timeout")
    connect_timeout: float = Field(default=10.0, description="Connection establishment timeout")
    heartbeat_interval: float = Field(
        default_factory=lambda: float(get_heartbeat_interval()),
        description="Keep-alive frame interval",
    )
    close_timeout: float = Field(default=10.0)
    subscribe_retry_delay: float = Field(default=0.1, description="Delay of the single subscribe retry")

    # Reconnection
    max_reconnect_attempts: int = Field(default=3, description="Retry budget before permanent fallback")
    reconnect_base_delay: float = Field(default=2.0)
    reconnect_max_delay: float = Field(default=10.0)

    # Fallback (SSE) channel
    fallback_max_reconnect_attempts: int = Field(default=5)
    fallback_reconnect_delay: float = Field(default=3.0, description="First fallback retry delay, doubled per attempt")
    fallback_heartbeat_interval: float = Field(default=30.0)

    def get_token(self) -> Optional[str]:
        """Return the raw token, or None when not configured."""
        if self.token is None:
            return None
        return self.token.get_secret_value() or None

    def __str__(self) -> str:
        """Token is always masked."""
        return (
            f"RealtimeConfig(origin={self.origin}, "
            f"connect_timeout={self.connect_timeout}, "
            f"max_reconnect_attempts={self.max_reconnect_attempts}, "
            f"token=<MASKED>)"
        )

    def __repr__(self) -> str:
        return self.__str__()


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[dict] = None,
) -> RealtimeConfig:
    """
    Load realtime configuration.

    Priority:
    1. Explicit overrides
    2. Config file (if provided)
    3. Environment / defaults
    """
    config_data: dict = {}

    if config_path and config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            file_config = json.load(f)
            config_data.update(file_config)

    if overrides:
        config_data.update(overrides)

    return RealtimeConfig(**config_data)
