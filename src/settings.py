"""Centralized settings for broker connectivity.

Uses pydantic-settings to load from environment variables (prefixed
BROKER_CONNECT_) with defaults matching the local development backend.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Broker connectivity settings loaded from environment variables."""

    # --- Backend ---
    api_base_url: str = "http://localhost:3001"
    stream_base_url: str = "ws://localhost:3001"
    health_path: str = "/health"
    health_timeout_seconds: float = 3.0
    request_timeout_seconds: float = 10.0
    default_user_id: str = "1"

    # --- Streams ---
    stream_reconnect_attempts: int = 0  # 0 keeps a dropped stream closed
    stream_reconnect_base_delay: float = 1.0
    stream_reconnect_max_delay: float = 30.0
    stream_open_timeout: float = 10.0

    # --- Credentials ---
    credential_ttl_seconds: Optional[float] = None  # None = never expire

    # --- Charges (rates applied to order value) ---
    brokerage_rate: float = 0.0003
    brokerage_cap: float = 20.0
    stt_rate: float = 0.001
    exchange_rate: float = 0.0000345
    gst_rate: float = 0.18

    model_config = {
        "env_prefix": "BROKER_CONNECT_",
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
