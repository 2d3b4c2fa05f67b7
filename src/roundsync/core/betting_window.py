"""
Betting window derivation

Pure functions over (status, countdown). Callers re-derive on every read
because countdown changes every tick.
"""

from roundsync.core.clock_sync import ClockSynchronizer
from roundsync.models.enums import RoundStatus
from roundsync.models.round_snapshot import RoundSnapshot

# Bets lock in the final window before a round starts
BETTING_LOCKOUT_MS = 2000


def derive_can_bet(
    status: RoundStatus | None, countdown_ms: float | None, lockout_ms: int = BETTING_LOCKOUT_MS
) -> bool:
    """
    Decide whether a wager may be placed.

    ACTIVE -> True. WAITING -> True only while countdown is strictly above the
    lockout. Anything else, including no current round, -> False.
    """
    if status is RoundStatus.ACTIVE:
        return True
    if status is RoundStatus.WAITING:
        return countdown_ms is not None and countdown_ms > lockout_ms
    return False


def remaining_countdown_ms(snapshot: RoundSnapshot | None, clock: ClockSynchronizer) -> int:
    """Countdown left according to the server-aligned clock."""
    if snapshot is None or snapshot.status is not RoundStatus.WAITING:
        return 0
    if snapshot.countdown_deadline is None:
        return max(0, snapshot.countdown_ms)
    return max(0, int(snapshot.countdown_deadline - clock.now()))


def can_bet_now(
    snapshot: RoundSnapshot | None,
    clock: ClockSynchronizer,
    connected: bool,
    lockout_ms: int = BETTING_LOCKOUT_MS,
) -> bool:
    """Live betting window: disconnected or no round means no bets."""
    if not connected or snapshot is None:
        return False
    return derive_can_bet(snapshot.status, remaining_countdown_ms(snapshot, clock), lockout_ms)
