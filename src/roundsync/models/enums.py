"""
Enumerations for round and transport states
"""

from enum import Enum


class RoundStatus(str, Enum):
    """Round lifecycle status"""

    WAITING = "waiting"
    ACTIVE = "active"
    CRASHED = "crashed"

    @classmethod
    def parse(cls, value: str | None, default: "RoundStatus") -> "RoundStatus":
        """Parse a wire status string, falling back to default for unknown values."""
        if value is None:
            return default
        try:
            return cls(str(value).lower())
        except ValueError:
            return default


class TransportMode(str, Enum):
    """Socket.IO transport in use"""

    REALTIME = "realtime"  # websocket
    FALLBACK_POLLING = "fallback-polling"  # HTTP long-polling

    @property
    def engineio_transports(self) -> list[str]:
        """Transport list handed to socketio.AsyncClient.connect()"""
        if self is TransportMode.REALTIME:
            return ["websocket"]
        return ["polling"]


class ResultStatus(str, Enum):
    """Outcome of a correlated operation"""

    SUCCESS = "success"
    REJECTED = "rejected"  # server answered with success=False
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    PRECONDITION_FAILED = "precondition_failed"
