"""
Data models - round snapshots, wire event schemas, operation results
"""

from .enums import ResultStatus, RoundStatus, TransportMode
from .events import (
    INBOUND_EVENTS,
    CountdownTick,
    FullRoundState,
    HistoryRecord,
    LiquidityUpdate,
    MalformedEventError,
    MultiplierTick,
    PlayerCashedOut,
    ResyncResponse,
    RoundCrashed,
    RoundHistoryBatch,
    RoundStarted,
    RoundWaiting,
    ServerSync,
    WagerAccepted,
    WaitingRoundUpdate,
    decode_event,
    is_round_event,
)
from .results import OperationResult
from .round_snapshot import HistoryEntry, LiquiditySnapshot, RoundSnapshot, to_decimal

__all__ = [
    # Enums
    "ResultStatus",
    "RoundStatus",
    "TransportMode",
    # Snapshots
    "HistoryEntry",
    "LiquiditySnapshot",
    "RoundSnapshot",
    "to_decimal",
    # Events
    "INBOUND_EVENTS",
    "CountdownTick",
    "FullRoundState",
    "HistoryRecord",
    "LiquidityUpdate",
    "MalformedEventError",
    "MultiplierTick",
    "PlayerCashedOut",
    "ResyncResponse",
    "RoundCrashed",
    "RoundHistoryBatch",
    "RoundStarted",
    "RoundWaiting",
    "ServerSync",
    "WagerAccepted",
    "WaitingRoundUpdate",
    "decode_event",
    "is_round_event",
    # Results
    "OperationResult",
]
