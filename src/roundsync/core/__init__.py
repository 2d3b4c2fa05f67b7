"""
Core round-state logic: clock offset, betting window, history, reconciliation
"""

from .betting_window import BETTING_LOCKOUT_MS, can_bet_now, derive_can_bet, remaining_countdown_ms
from .clock_sync import ClockSynchronizer
from .reconciler import RoundReconciler
from .round_history import DEFAULT_HISTORY_SIZE, RoundHistoryBuffer

__all__ = [
    "BETTING_LOCKOUT_MS",
    "DEFAULT_HISTORY_SIZE",
    "ClockSynchronizer",
    "RoundHistoryBuffer",
    "RoundReconciler",
    "can_bet_now",
    "derive_can_bet",
    "remaining_countdown_ms",
]
