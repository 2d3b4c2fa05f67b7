"""
RoundHistoryBuffer - Bounded FIFO of completed rounds

Keeps the most recent crashed rounds in memory (default: 50), evicting the
oldest entry on overflow. Entries are frozen HistoryEntry records, so a live
snapshot changing later can never alter what was recorded.
"""

import logging
import threading
from collections import deque
from collections.abc import Iterable

from roundsync.models.round_snapshot import HistoryEntry

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 50


class RoundHistoryBuffer:
    """
    Thread-safe ring buffer of HistoryEntry records

    Features:
    - Fixed capacity, oldest evicted first
    - Read-only externally: all() returns a new list each call
    - Wholesale replacement for history rehydrate batches
    """

    def __init__(self, max_size: int = DEFAULT_HISTORY_SIZE):
        """
        Args:
            max_size: Maximum number of rounds to keep
        """
        if max_size <= 0:
            raise ValueError(f"Buffer size must be positive, got {max_size}")

        self.max_size = max_size
        self._buffer: deque[HistoryEntry] = deque(maxlen=max_size)
        self._lock = threading.RLock()

        logger.debug(f"RoundHistoryBuffer initialized: max_size={max_size}")

    def push(self, entry: HistoryEntry) -> None:
        """Append a completed round (evicts oldest if full)."""
        if not isinstance(entry, HistoryEntry):
            raise TypeError(f"Expected HistoryEntry, got {type(entry).__name__}")
        with self._lock:
            self._buffer.append(entry)

    def replace_all(self, entries: Iterable[HistoryEntry]) -> None:
        """Replace contents with a rehydrated batch (oldest first)."""
        with self._lock:
            self._buffer = deque(entries, maxlen=self.max_size)
            logger.debug(f"Round history rehydrated with {len(self._buffer)} entries")

    def all(self) -> list[HistoryEntry]:
        """All entries, most recent last."""
        with self._lock:
            return list(self._buffer)

    def latest(self) -> HistoryEntry | None:
        with self._lock:
            if not self._buffer:
                return None
            return self._buffer[-1]

    def contains_round(self, round_number: int) -> bool:
        with self._lock:
            return any(entry.round_number == round_number for entry in self._buffer)

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    def __repr__(self) -> str:
        with self._lock:
            return (
                f"RoundHistoryBuffer(size={len(self._buffer)}/{self.max_size}, "
                f"oldest={self._buffer[0].round_number if self._buffer else None}, "
                f"newest={self._buffer[-1].round_number if self._buffer else None})"
            )
