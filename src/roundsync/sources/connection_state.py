"""
Connection state machine

ConnectionState is the read view every component consumes; only the
ConnectionStateMachine owned by the ConnectionManager produces new ones.

State machine:
    DISCONNECTED -> CONNECTING -> CONNECTED
                               -> DEGRADED_POLLING (connected over the polling fallback)
                               -> DISCONNECTED (attempts exhausted)
    CONNECTED / DEGRADED_POLLING -> CONNECTING (transient drop, reconnecting)
                                 -> DISCONNECTED (client or server initiated)
"""

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from roundsync.models.enums import TransportMode

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    """Connection health states."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    DEGRADED_POLLING = "DEGRADED_POLLING"


LEGAL_TRANSITIONS: dict[ConnectionStatus, set[ConnectionStatus]] = {
    ConnectionStatus.DISCONNECTED: {ConnectionStatus.CONNECTING},
    ConnectionStatus.CONNECTING: {
        ConnectionStatus.CONNECTING,
        ConnectionStatus.CONNECTED,
        ConnectionStatus.DEGRADED_POLLING,
        ConnectionStatus.DISCONNECTED,
    },
    ConnectionStatus.CONNECTED: {
        ConnectionStatus.CONNECTING,
        ConnectionStatus.DEGRADED_POLLING,
        ConnectionStatus.DISCONNECTED,
    },
    ConnectionStatus.DEGRADED_POLLING: {
        ConnectionStatus.CONNECTING,
        ConnectionStatus.DISCONNECTED,
    },
}


@dataclass(frozen=True)
class ConnectionState:
    """Immutable view of the transport's health."""

    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    active_transport: TransportMode = TransportMode.REALTIME
    last_error: str | None = None
    consecutive_failures: int = 0
    disconnect_reason: str | None = None
    connected_at: float | None = None

    @property
    def is_connected(self) -> bool:
        return self.status in (ConnectionStatus.CONNECTED, ConnectionStatus.DEGRADED_POLLING)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "is_connected": self.is_connected,
            "active_transport": self.active_transport.value,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "disconnect_reason": self.disconnect_reason,
            "connected_at": self.connected_at,
        }


class ConnectionStateMachine:
    """
    Validates and records connection state transitions.

    Illegal transitions are refused and counted as anomalies; the published
    state never changes in that case.
    """

    def __init__(self, history_size: int = 20):
        self._state = ConnectionState()
        self.transition_history: deque = deque(maxlen=history_size)
        self.anomaly_count = 0
        self._listeners: list[Callable[[ConnectionState, ConnectionState], None]] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    def on_change(
        self, callback: Callable[[ConnectionState, ConnectionState], None]
    ) -> Callable[[], None]:
        """
        Register a transition listener called with (old, new).

        Returns:
            Unsubscribe function
        """
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def transition(self, status: ConnectionStatus, **changes: Any) -> bool:
        """
        Move to `status`, replacing any other supplied fields.

        Returns:
            True if the transition was legal and applied
        """
        old = self._state
        if status not in LEGAL_TRANSITIONS[old.status]:
            self.anomaly_count += 1
            logger.warning(
                f"Illegal connection transition: {old.status.value} -> {status.value} "
                f"(anomaly #{self.anomaly_count})"
            )
            return False

        if status in (ConnectionStatus.CONNECTED, ConnectionStatus.DEGRADED_POLLING):
            changes.setdefault("connected_at", time.time())
        elif status is ConnectionStatus.DISCONNECTED:
            changes.setdefault("connected_at", None)

        new = replace(old, status=status, **changes)
        self._state = new

        if old.status is not new.status:
            self.transition_history.append(
                {
                    "from": old.status.value,
                    "to": new.status.value,
                    "transport": new.active_transport.value,
                    "reason": new.disconnect_reason or new.last_error,
                    "timestamp": int(time.time() * 1000),
                }
            )
            logger.info(f"Connection {old.status.value} -> {new.status.value}")

        self._notify(old, new)
        return True

    def update(self, **changes: Any) -> None:
        """Replace non-status fields (failure counters, errors)."""
        old = self._state
        self._state = replace(old, **changes)
        self._notify(old, self._state)

    def _notify(self, old: ConnectionState, new: ConnectionState) -> None:
        for callback in list(self._listeners):
            try:
                callback(old, new)
            except Exception as e:
                logger.error(f"Error in connection state listener: {e}", exc_info=True)

    def get_state_summary(self) -> dict[str, Any]:
        return {
            **self._state.to_dict(),
            "anomaly_count": self.anomaly_count,
            "recent_transitions": list(self.transition_history)[-5:],
        }
