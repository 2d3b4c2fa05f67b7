"""
Round snapshot data models

RoundSnapshot is the canonical view of the current round. Instances are
frozen: the reconciler never patches one in place, it builds a replacement
with dataclasses.replace() and swaps the reference in a single assignment.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from roundsync.models.enums import RoundStatus

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    """Coerce a wire number to Decimal without float artifacts."""
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        logger.warning(f"Invalid decimal value: {value!r}, using {default}")
        return default


@dataclass(frozen=True)
class LiquiditySnapshot:
    """
    Real and synthetic liquidity for one round.

    `real` is the sum of actual player wagers, `synthetic` the house-injected
    display boost. They are stored apart so the true wagered amount is always
    recoverable; only `combined` mixes them, and it is never stored.
    """

    real: Decimal = ZERO
    synthetic: Decimal = ZERO
    synthetic_players: int = 0

    def __post_init__(self):
        if self.real < 0 or self.synthetic < 0:
            raise ValueError(
                f"Liquidity must be non-negative (real={self.real}, synthetic={self.synthetic})"
            )
        if self.synthetic_players < 0:
            raise ValueError(f"synthetic_players must be non-negative, got {self.synthetic_players}")

    @property
    def combined(self) -> Decimal:
        """Display total (real + synthetic)"""
        return self.real + self.synthetic

    def to_dict(self) -> dict[str, Any]:
        return {
            "real": str(self.real),
            "synthetic": str(self.synthetic),
            "combined": str(self.combined),
            "synthetic_players": self.synthetic_players,
        }


@dataclass(frozen=True)
class RoundSnapshot:
    """
    Canonical state of the current round.

    Attributes:
        round_id: Server round identifier (gameId)
        round_number: Monotonic round number (gameNumber) used for acceptance checks
        multiplier: Current multiplier (>= 0)
        status: WAITING, ACTIVE or CRASHED
        total_players: Real player count
        liquidity: Real/synthetic wager totals
        countdown_ms: Pre-round countdown as last reported by the server
        countdown_deadline: Server-clock ms at which the countdown reaches zero
        can_bet: Betting window derived from status + countdown at snapshot time
        server_timestamp: Server time (ms) of the last applied message
        started_at: Round start time (ms, server clock)
    """

    round_id: str
    round_number: int
    multiplier: float = 1.0
    status: RoundStatus = RoundStatus.WAITING
    total_players: int = 0
    liquidity: LiquiditySnapshot = field(default_factory=LiquiditySnapshot)
    countdown_ms: int = 0
    countdown_deadline: float | None = None
    can_bet: bool = False
    server_timestamp: int | None = None
    started_at: int | None = None

    def __post_init__(self):
        if self.multiplier < 0:
            raise ValueError(f"Multiplier must be non-negative, got {self.multiplier}")

    @property
    def total_wagered(self) -> Decimal:
        """Sum of real player wagers"""
        return self.liquidity.real

    @property
    def display_players(self) -> int:
        """Player count shown to users (real + synthetic)"""
        return self.total_players + self.liquidity.synthetic_players

    def matches(self, round_number: int | None, round_id: str | None) -> bool:
        """True when every identifier supplied equals this round's."""
        if round_number is None and round_id is None:
            return False
        if round_number is not None and round_number != self.round_number:
            return False
        if round_id is not None and round_id != self.round_id:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "round_id": self.round_id,
            "round_number": self.round_number,
            "multiplier": self.multiplier,
            "status": self.status.value,
            "total_wagered": str(self.total_wagered),
            "total_players": self.total_players,
            "liquidity": self.liquidity.to_dict(),
            "countdown_ms": self.countdown_ms,
            "can_bet": self.can_bet,
            "server_timestamp": self.server_timestamp,
            "started_at": self.started_at,
        }


@dataclass(frozen=True)
class HistoryEntry:
    """Immutable record of a completed round"""

    round_id: str
    round_number: int
    crash_multiplier: float
    total_wagered: Decimal = ZERO
    total_players: int = 0
    liquidity: LiquiditySnapshot = field(default_factory=LiquiditySnapshot)
    started_at: int | None = None
    crashed_at: int | None = None

    @classmethod
    def from_snapshot(cls, snapshot: RoundSnapshot, crashed_at: int | None = None) -> "HistoryEntry":
        """Copy a crashed snapshot into a history record."""
        return cls(
            round_id=snapshot.round_id,
            round_number=snapshot.round_number,
            crash_multiplier=snapshot.multiplier,
            total_wagered=snapshot.total_wagered,
            total_players=snapshot.total_players,
            liquidity=snapshot.liquidity,
            started_at=snapshot.started_at,
            crashed_at=crashed_at if crashed_at is not None else snapshot.server_timestamp,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "round_id": self.round_id,
            "round_number": self.round_number,
            "crash_multiplier": self.crash_multiplier,
            "total_wagered": str(self.total_wagered),
            "total_players": self.total_players,
            "liquidity": self.liquidity.to_dict(),
            "started_at": self.started_at,
            "crashed_at": self.crashed_at,
        }
