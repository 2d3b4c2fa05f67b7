"""
Client configuration

Every setting can be overridden via ROUNDSYNC_* environment variables.
Numeric variables are parsed safely: invalid values fall back to the default
with a warning, out-of-range values are clamped.
"""

import logging
import os
from dataclasses import asdict, dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://localhost:3001"


class ConfigError(Exception):
    """Configuration validation error"""

    pass


def _safe_int_env(name: str, default: int, min_val: int = None, max_val: int = None) -> int:
    """
    Safely parse integer environment variable with bounds.
    Falls back to default on invalid values.
    """
    try:
        value = int(os.getenv(name, str(default)))
        if min_val is not None:
            value = max(min_val, value)
        if max_val is not None:
            value = min(max_val, value)
        return value
    except (ValueError, TypeError):
        logger.warning(f"Invalid {name}, using default {default}")
        return default


def _safe_float_env(name: str, default: float, min_val: float = None) -> float:
    try:
        value = float(os.getenv(name, str(default)))
        if min_val is not None:
            value = max(min_val, value)
        return value
    except (ValueError, TypeError):
        logger.warning(f"Invalid {name}, using default {default}")
        return default


def _optional_int_env(name: str, min_val: int = 1) -> int | None:
    """Unset or empty means no limit."""
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return max(min_val, int(raw))
    except ValueError:
        logger.warning(f"Invalid {name}, ignoring")
        return None


@dataclass
class ClientConfig:
    """
    Configuration for RoundSyncClient.

    All settings can be overridden via environment variables.
    """

    # Server and identity
    server_url: str = field(
        default_factory=lambda: os.getenv("ROUNDSYNC_SERVER_URL", DEFAULT_SERVER_URL)
    )
    wallet_address: str = field(default_factory=lambda: os.getenv("ROUNDSYNC_WALLET_ADDRESS", ""))
    user_id: str | None = field(default_factory=lambda: os.getenv("ROUNDSYNC_USER_ID") or None)

    # Self-healing resync
    heartbeat_sec: float = field(
        default_factory=lambda: _safe_float_env("ROUNDSYNC_HEARTBEAT_SEC", 15.0, min_val=0.0)
    )

    # Correlated request timeouts
    wager_timeout_ms: int = field(
        default_factory=lambda: _safe_int_env("ROUNDSYNC_WAGER_TIMEOUT_MS", 30_000, 1, 600_000)
    )
    balance_timeout_ms: int = field(
        default_factory=lambda: _safe_int_env("ROUNDSYNC_BALANCE_TIMEOUT_MS", 10_000, 1, 600_000)
    )
    resync_timeout_ms: int = field(
        default_factory=lambda: _safe_int_env("ROUNDSYNC_RESYNC_TIMEOUT_MS", 10_000, 1, 600_000)
    )

    # Reconnect / transport fallback
    reconnect_delay_sec: float = field(
        default_factory=lambda: _safe_float_env("ROUNDSYNC_RECONNECT_DELAY_SEC", 1.0, min_val=0.0)
    )
    max_reconnect_delay_sec: float = field(
        default_factory=lambda: _safe_float_env(
            "ROUNDSYNC_MAX_RECONNECT_DELAY_SEC", 30.0, min_val=0.0
        )
    )
    reconnect_multiplier: float = field(
        default_factory=lambda: _safe_float_env("ROUNDSYNC_RECONNECT_MULTIPLIER", 1.5, min_val=1.0)
    )
    downgrade_after: int = field(
        default_factory=lambda: _safe_int_env("ROUNDSYNC_DOWNGRADE_AFTER", 3, 0, 100)
    )
    max_connect_attempts: int | None = field(
        default_factory=lambda: _optional_int_env("ROUNDSYNC_MAX_CONNECT_ATTEMPTS")
    )

    # Round state
    history_size: int = field(
        default_factory=lambda: _safe_int_env("ROUNDSYNC_HISTORY_SIZE", 50, 1, 10_000)
    )
    bet_lockout_ms: int = field(
        default_factory=lambda: _safe_int_env("ROUNDSYNC_BET_LOCKOUT_MS", 2000, 0, 60_000)
    )

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv("ROUNDSYNC_LOG_LEVEL", "INFO"))
    log_dir: str | None = field(default_factory=lambda: os.getenv("ROUNDSYNC_LOG_DIR") or None)

    def validate(self) -> "ClientConfig":
        """
        Check settings for consistency.

        Raises:
            ConfigError: On the first invalid setting found
        """
        if not self.server_url or not self.server_url.startswith(("http://", "https://", "ws://", "wss://")):
            raise ConfigError(f"server_url must be an http(s) or ws(s) URL, got {self.server_url!r}")
        if self.max_reconnect_delay_sec < self.reconnect_delay_sec:
            raise ConfigError(
                f"max_reconnect_delay_sec ({self.max_reconnect_delay_sec}) "
                f"is below reconnect_delay_sec ({self.reconnect_delay_sec})"
            )
        if self.reconnect_multiplier < 1.0:
            raise ConfigError(f"reconnect_multiplier must be >= 1.0, got {self.reconnect_multiplier}")
        for name in ("wager_timeout_ms", "balance_timeout_ms", "resync_timeout_ms", "history_size"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")
        if self.bet_lockout_ms < 0:
            raise ConfigError(f"bet_lockout_ms must be non-negative, got {self.bet_lockout_ms}")
        if self.heartbeat_sec < 0:
            raise ConfigError(f"heartbeat_sec must be non-negative, got {self.heartbeat_sec}")
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"Unknown log_level {self.log_level!r}")
        return self

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
