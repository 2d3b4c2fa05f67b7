"""
Transport Fallback Policy

Decides when the connection manager gives up on the websocket transport and
downgrades to HTTP long-polling, and how long to wait between reconnect
attempts. Holds no Socket.IO code.
"""

import logging
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from roundsync.models.enums import TransportMode

logger = logging.getLogger(__name__)


class TransportFallbackPolicy:
    """
    Tracks consecutive connect failures and the transport mode.

    Modes:
    - REALTIME: websocket transport (default)
    - FALLBACK_POLLING: long-polling after `downgrade_after` consecutive failures

    The downgrade lasts until reset(); a successful connection clears the
    failure count and the backoff delay but keeps the mode.
    """

    def __init__(
        self,
        downgrade_after: int = 3,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
        reconnect_multiplier: float = 1.5,
    ):
        """
        Args:
            downgrade_after: Consecutive failures before switching to polling
            reconnect_delay: Initial reconnect delay in seconds
            max_reconnect_delay: Maximum reconnect delay in seconds
            reconnect_multiplier: Backoff multiplier for reconnection
        """
        self.downgrade_after = downgrade_after
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.reconnect_multiplier = reconnect_multiplier

        self.current_mode = TransportMode.REALTIME
        self.consecutive_failures = 0
        self.mode_history: deque = deque(maxlen=20)
        self._current_delay = reconnect_delay

        self.on_mode_change: Callable[[TransportMode, TransportMode], None] | None = None

    def record_failure(self) -> TransportMode:
        """Record a failed connect attempt; returns the mode for the next attempt."""
        self.consecutive_failures += 1
        if (
            self.current_mode is TransportMode.REALTIME
            and self.downgrade_after > 0
            and self.consecutive_failures >= self.downgrade_after
        ):
            logger.warning(
                f"{self.consecutive_failures} consecutive connect failures, "
                f"downgrading to {TransportMode.FALLBACK_POLLING.value}"
            )
            self._set_mode(TransportMode.FALLBACK_POLLING)
        return self.current_mode

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self._current_delay = self.reconnect_delay

    def next_delay(self) -> float:
        """Delay before the next attempt; grows geometrically up to the cap."""
        delay = self._current_delay
        self._current_delay = min(
            self._current_delay * self.reconnect_multiplier,
            self.max_reconnect_delay,
        )
        return delay

    def reset(self) -> None:
        """Back to websocket with a fresh failure count."""
        self.record_success()
        self._set_mode(TransportMode.REALTIME)

    def _set_mode(self, new_mode: TransportMode) -> None:
        if new_mode is self.current_mode:
            return

        old_mode = self.current_mode
        self.current_mode = new_mode
        self.mode_history.append(
            {
                "from": old_mode.value,
                "to": new_mode.value,
                "timestamp": time.time(),
                "failures": self.consecutive_failures,
            }
        )

        if self.on_mode_change:
            try:
                self.on_mode_change(old_mode, new_mode)
            except Exception as e:
                logger.error(f"Error in transport mode callback: {e}", exc_info=True)

    def get_status(self) -> dict[str, Any]:
        return {
            "mode": self.current_mode.value,
            "consecutive_failures": self.consecutive_failures,
            "next_delay_sec": self._current_delay,
            "recent_transitions": list(self.mode_history)[-5:],
        }
