"""
Shared test fixtures for pytest
"""

import asyncio
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest

from roundsync.core import ClockSynchronizer, RoundHistoryBuffer, RoundReconciler
from roundsync.sources import ConnectionStateMachine, ConnectionStatus, CorrelatedRequestGateway


class FakeClock:
    """Manually advanced local clock (ms)."""

    def __init__(self, start_ms: float = 1_000_000.0):
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> None:
        self.now_ms += ms


class FakeTransport:
    """
    In-memory stand-in for ConnectionManager.

    deliver() plays a server event through the same dispatch order the real
    manager uses: specific handlers first, then "*" handlers.
    """

    def __init__(self, connected: bool = True):
        self.state_machine = ConnectionStateMachine()
        self.handlers: dict[str, list[Callable]] = {}
        self.emitted: list[tuple[str, Any]] = []
        self.auto_replies: dict[str, tuple[str, Any]] = {}
        self.connect_calls = 0
        if connected:
            self.set_connected()

    @property
    def state(self):
        return self.state_machine.state

    @property
    def is_connected(self) -> bool:
        return self.state_machine.state.is_connected

    def on(self, event_name: str, handler: Callable) -> Callable[[], None]:
        self.handlers.setdefault(event_name, []).append(handler)

        def unsubscribe():
            if handler in self.handlers.get(event_name, []):
                self.handlers[event_name].remove(handler)

        return unsubscribe

    def on_state_change(self, callback):
        return self.state_machine.on_change(callback)

    def listener_count(self, event_name: str) -> int:
        return len(self.handlers.get(event_name, []))

    def _dispatch(self, event_name: str, *args: Any) -> None:
        for handler in list(self.handlers.get(event_name, [])):
            handler(*args)

    def deliver(self, event_name: str, payload: Any = None) -> None:
        self._dispatch(event_name, payload)
        self._dispatch("*", event_name, payload)

    def reply_to(self, command: str, response_event: str, body: Any) -> None:
        """Answer `command` with `response_event` on the next loop iteration.

        `body` is a dict or a callable taking the command payload.
        """
        self.auto_replies[command] = (response_event, body)

    async def emit(self, event_name: str, payload: Any = None) -> bool:
        if not self.is_connected:
            return False
        self.emitted.append((event_name, payload))
        if event_name in self.auto_replies:
            response_event, body = self.auto_replies[event_name]
            reply = body(payload) if callable(body) else dict(body)
            asyncio.get_running_loop().call_soon(self.deliver, response_event, reply)
        return True

    def emitted_names(self) -> list[str]:
        return [name for name, _ in self.emitted]

    def set_connected(self) -> None:
        self.state_machine.transition(ConnectionStatus.CONNECTING)
        self.state_machine.transition(ConnectionStatus.CONNECTED)
        self._dispatch("connect", self.state)

    def drop(self, reason: str = "transport close") -> None:
        self.state_machine.transition(ConnectionStatus.DISCONNECTED, disconnect_reason=reason)
        self._dispatch("disconnect", reason)

    async def connect(self) -> bool:
        self.connect_calls += 1
        if not self.is_connected:
            self.set_connected()
        return True

    async def disconnect(self) -> None:
        if self.state.status is not ConnectionStatus.DISCONNECTED:
            self.drop("client disconnect")

    def get_stats(self) -> dict:
        return {"emitted": len(self.emitted)}


@pytest.fixture
def fake_clock():
    """Local clock starting at 1,000,000 ms"""
    return FakeClock()


@pytest.fixture
def clock(fake_clock):
    """ClockSynchronizer driven by fake_clock"""
    return ClockSynchronizer(time_fn=fake_clock)


@pytest.fixture
def history():
    return RoundHistoryBuffer()


@pytest.fixture
def resync_requests():
    """Records reconciler resync requests"""
    return MagicMock(name="request_resync")


@pytest.fixture
def reconciler(clock, history, resync_requests):
    """RoundReconciler with no current round"""
    return RoundReconciler(clock, history, request_resync=resync_requests)


@pytest.fixture
def fake_transport():
    """Connected FakeTransport"""
    return FakeTransport()


@pytest.fixture
def gateway(fake_transport):
    """CorrelatedRequestGateway over fake_transport with predictable ids"""
    counter = iter(range(1, 10_000))
    return CorrelatedRequestGateway(fake_transport, id_factory=lambda: f"req-{next(counter)}")


@pytest.fixture
def offline_transport():
    """FakeTransport that never connected"""
    return FakeTransport(connected=False)
