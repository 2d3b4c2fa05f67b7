"""
Clock Synchronizer - server/client clock offset

Every inbound message that carries a server timestamp refreshes the offset,
so accuracy improves over the session instead of being fixed at connect
time. All countdown and deadline math reads now(), never the arrival time of
an event.
"""

import logging
import time
from collections import deque
from collections.abc import Callable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

SERVER_TIME_FIELD = "serverTime"


def _wall_clock_ms() -> float:
    return time.time() * 1000.0


class ClockSynchronizer:
    """
    Tracks offset = serverTimestamp - localNow().

    Usage:
        clock = ClockSynchronizer()
        clock.sync(payload["serverTime"])
        deadline = clock.now() + payload["countdown"]
    """

    def __init__(self, time_fn: Callable[[], float] = _wall_clock_ms, sample_history: int = 20):
        """
        Args:
            time_fn: Local clock in milliseconds (injectable for tests)
            sample_history: Number of recent offset samples kept for diagnostics
        """
        self._time_fn = time_fn
        self._offset_ms = 0.0
        self._last_sync_local_ms: float | None = None
        self._samples: deque = deque(maxlen=sample_history)
        self.sync_count = 0

    def local_now(self) -> float:
        """Local wall clock (ms)."""
        return self._time_fn()

    def sync(self, server_timestamp: float | None) -> None:
        """Record a server timestamp; None is ignored."""
        if server_timestamp is None:
            return
        try:
            server_ms = float(server_timestamp)
        except (TypeError, ValueError):
            logger.debug(f"Ignoring non-numeric server timestamp: {server_timestamp!r}")
            return

        local_ms = self.local_now()
        self._offset_ms = server_ms - local_ms
        self._last_sync_local_ms = local_ms
        self._samples.append(self._offset_ms)
        self.sync_count += 1

    def sync_from_payload(self, payload: Any) -> bool:
        """Sync from a raw payload's serverTime field; returns True when one was present."""
        if not isinstance(payload, Mapping):
            return False
        server_timestamp = payload.get(SERVER_TIME_FIELD)
        if server_timestamp is None:
            return False
        self.sync(server_timestamp)
        return True

    def now(self) -> float:
        """Server-aligned time (ms)."""
        return self.local_now() + self._offset_ms

    @property
    def offset_ms(self) -> float:
        return self._offset_ms

    @property
    def is_synced(self) -> bool:
        return self._last_sync_local_ms is not None

    def sample_age_ms(self) -> float | None:
        """Local ms since the last sync, or None if never synced."""
        if self._last_sync_local_ms is None:
            return None
        return self.local_now() - self._last_sync_local_ms

    def get_stats(self) -> dict[str, Any]:
        samples = list(self._samples)
        jitter = (max(samples) - min(samples)) if len(samples) > 1 else 0.0
        return {
            "offset_ms": self._offset_ms,
            "sync_count": self.sync_count,
            "sample_age_ms": self.sample_age_ms(),
            "offset_jitter_ms": jitter,
        }
