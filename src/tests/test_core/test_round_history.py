"""
Tests for RoundHistoryBuffer
"""

import threading
from decimal import Decimal

import pytest

from roundsync.core.round_history import DEFAULT_HISTORY_SIZE, RoundHistoryBuffer
from roundsync.models import HistoryEntry


def make_entry(round_number: int) -> HistoryEntry:
    return HistoryEntry(
        round_id=f"game-{round_number}",
        round_number=round_number,
        crash_multiplier=1.0 + round_number / 10,
        total_wagered=Decimal("0.5"),
    )


class TestBufferInit:
    """Construction"""

    def test_default_size_is_50(self):
        assert DEFAULT_HISTORY_SIZE == 50
        assert RoundHistoryBuffer().max_size == 50

    @pytest.mark.parametrize("size", [0, -1])
    def test_non_positive_size_rejected(self, size):
        with pytest.raises(ValueError, match="must be positive"):
            RoundHistoryBuffer(size)

    def test_starts_empty(self, history):
        assert len(history) == 0
        assert history.all() == []
        assert history.latest() is None


class TestPushAndEvict:
    """FIFO with bounded capacity"""

    def test_push_keeps_arrival_order(self, history):
        for n in (1, 2, 3):
            history.push(make_entry(n))

        assert [e.round_number for e in history.all()] == [1, 2, 3]
        assert history.latest().round_number == 3

    def test_fifty_five_pushes_keep_last_fifty(self, history):
        for n in range(1, 56):
            history.push(make_entry(n))

        entries = history.all()
        assert len(entries) == 50
        assert [e.round_number for e in entries] == list(range(6, 56))
        assert not history.contains_round(5)
        assert history.contains_round(6)

    def test_51st_push_evicts_oldest(self, history):
        for n in range(1, 52):
            history.push(make_entry(n))

        assert history.all()[0].round_number == 2

    def test_rejects_non_entries(self, history):
        with pytest.raises(TypeError):
            history.push({"round_number": 1})


class TestReadOnlyView:
    """Callers cannot alter stored history"""

    def test_all_returns_new_list(self, history):
        history.push(make_entry(1))

        view = history.all()
        view.clear()

        assert len(history) == 1

    def test_entries_are_frozen(self, history):
        history.push(make_entry(1))

        with pytest.raises(AttributeError):
            history.all()[0].crash_multiplier = 99.0


class TestReplaceAll:
    """History rehydrate"""

    def test_replaces_contents(self, history):
        history.push(make_entry(1))

        history.replace_all([make_entry(10), make_entry(11)])

        assert [e.round_number for e in history.all()] == [10, 11]

    def test_batch_larger_than_capacity_keeps_newest(self):
        buffer = RoundHistoryBuffer(3)

        buffer.replace_all(make_entry(n) for n in range(1, 6))

        assert [e.round_number for e in buffer.all()] == [3, 4, 5]

    def test_clear(self, history):
        history.push(make_entry(1))
        history.clear()

        assert len(history) == 0


class TestConcurrentPush:
    """Thread safety"""

    def test_parallel_pushes_never_exceed_capacity(self):
        buffer = RoundHistoryBuffer(50)

        def writer(offset):
            for n in range(200):
                buffer.push(make_entry(offset + n))

        threads = [threading.Thread(target=writer, args=(i * 1000,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(buffer) == 50

    def test_repr(self, history):
        history.push(make_entry(7))

        assert "1/50" in repr(history)
        assert "newest=7" in repr(history)
