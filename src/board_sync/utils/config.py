"""Configuration management for board-sync."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class Config:
    """
    Application configuration.

    Loaded from environment variables with sensible defaults.
    """

    # Endpoints
    api_url: str = "http://127.0.0.1:3000"
    realtime_url: str = "ws://127.0.0.1:4000/realtime"
    api_token: str | None = None

    # Local state (durable pending-write queue lives here)
    data_dir: str = "~/.boardsync"

    # Timing (milliseconds unless noted)
    debounce_ms: int = 300
    throttle_ms: int = 50
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 16000
    max_retries: int = 5
    request_timeout: float = 30.0  # seconds
    probe_interval: float = 5.0  # seconds

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def pending_db_path(self) -> Path:
        return self.data_path / "pending_writes.db"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""

        def get_int(key: str, default: int) -> int:
            value = os.getenv(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError:
                return default

        def get_float(key: str, default: float) -> float:
            value = os.getenv(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError:
                return default

        return cls(
            api_url=os.getenv("BOARD_SYNC_API_URL", "http://127.0.0.1:3000"),
            realtime_url=os.getenv("BOARD_SYNC_REALTIME_URL", "ws://127.0.0.1:4000/realtime"),
            api_token=os.getenv("BOARD_SYNC_API_TOKEN") or None,
            data_dir=os.getenv("BOARD_SYNC_DIR", "~/.boardsync"),
            debounce_ms=get_int("BOARD_SYNC_DEBOUNCE_MS", 300),
            throttle_ms=get_int("BOARD_SYNC_THROTTLE_MS", 50),
            backoff_base_ms=get_int("BOARD_SYNC_BACKOFF_BASE_MS", 1000),
            backoff_max_ms=get_int("BOARD_SYNC_BACKOFF_MAX_MS", 16000),
            max_retries=get_int("BOARD_SYNC_MAX_RETRIES", 5),
            request_timeout=get_float("BOARD_SYNC_REQUEST_TIMEOUT", 30.0),
            probe_interval=get_float("BOARD_SYNC_PROBE_INTERVAL", 5.0),
        )


# Singleton config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Reset the global configuration (useful for testing)."""
    global _config
    _config = None
